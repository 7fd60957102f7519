"""
services/user/router.py
The signed-in user's own profile.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.user.roles import update_profile
from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import UserResponse, UserUpdateRequest

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_profile(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
async def edit_profile(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Change display name or interface language. Omitted fields are left as they are."""
    user = await update_profile(db, current_user, data.model_dump(exclude_none=True))
    return UserResponse.model_validate(user)
