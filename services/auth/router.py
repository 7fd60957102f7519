"""
services/auth/router.py
Email/password authentication endpoints.
Implements: Register → Login → JWT issue → Logout (deny-list)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.user.roles import register_user
from shared.middleware.auth import get_current_user, security
from shared.models.models import User, UserStatus
from shared.schemas.schemas import (
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from shared.store.errors import store_errors
from shared.utils.security import (
    create_access_token,
    get_token_remaining_ttl,
    verify_access_token,
    verify_and_upgrade_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _issue_token(user: User) -> TokenResponse:
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
    )
    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


# ── Endpoints ─────────────────────────────────────────────────

@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an account",
)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """New accounts always start as an active `user`; roles are granted by admins."""
    user = await register_user(db, body.display_name, body.email, body.password)
    return _issue_token(user)


@router.post("/login", response_model=TokenResponse, summary="Log in with email and password")
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    with store_errors("log in"):
        user = await db.scalar(select(User).where(User.email == body.email.lower()))
    verified, new_hash = (False, None)
    if user and user.password_hash:
        verified, new_hash = verify_and_upgrade_password(body.password, user.password_hash)
    if not verified:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if user.status == UserStatus.BLOCKED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is blocked",
        )
    if new_hash:
        user.password_hash = new_hash
        with store_errors("upgrade password hash"):
            await db.commit()
    logger.info(f"User {user.id} logged in")
    return _issue_token(user)


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    current_user: User = Depends(get_current_user),
    credentials: HTTPAuthorizationCredentials = Depends(security),
    redis=Depends(get_redis),
):
    """Add the current access token to the Redis deny-list until it expires."""
    payload = verify_access_token(credentials.credentials)
    ttl = get_token_remaining_ttl(payload)
    if ttl > 0:
        await RedisCache(redis).revoke_token(payload["jti"], ttl)
    logger.info(f"User {current_user.id} logged out")
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)
