"""
services/user/roles.py
Role & status model: predicates over User plus the admin-only mutators.

Every mutator takes the acting user explicitly. `apply_role` is the shared
primitive (no commit) that role-request approval runs inside its own
transaction.
"""

import logging
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.admin.audit import record_admin_action
from shared.exceptions import InvalidTransition, NotFound, PermissionDenied, ValidationError
from shared.models.models import (
    Notification,
    Question,
    QuestionLanguage,
    QuestionStatus,
    RoleRequest,
    User,
    UserRole,
    UserStatus,
    utcnow,
)
from shared.store.errors import store_errors
from shared.utils.security import hash_password

logger = logging.getLogger(__name__)


# ── Predicates ────────────────────────────────────────────────

def is_admin(user: User | None) -> bool:
    return user is not None and user.role == UserRole.ADMIN


def is_scholar(user: User | None) -> bool:
    return user is not None and user.role == UserRole.SCHOLAR


def is_active(user: User | None) -> bool:
    return user is not None and user.status == UserStatus.ACTIVE


def _require_admin(actor: User, what: str) -> None:
    if not is_admin(actor):
        raise PermissionDenied(f"Only admins can {what}")


async def get_user_or_raise(db: AsyncSession, user_id: uuid.UUID) -> User:
    with store_errors("load user"):
        user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found", entity_id=str(user_id))
    return user


# ── Registration ──────────────────────────────────────────────

async def register_user(db: AsyncSession, display_name: str, email: str, password: str) -> User:
    """Self-registration. Always role=user, status=active regardless of input."""
    display_name = display_name.strip()
    email = email.strip().lower()
    if not display_name:
        raise ValidationError("Display name is required", field="display_name")
    if not email:
        raise ValidationError("Email is required", field="email")

    with store_errors("check email"):
        existing = await db.scalar(select(User.id).where(User.email == email))
    if existing:
        raise ValidationError("Email is already registered", field="email")

    user = User(
        display_name=display_name,
        email=email,
        password_hash=hash_password(password),
        role=UserRole.USER,
        status=UserStatus.ACTIVE,
    )
    db.add(user)
    try:
        with store_errors("register user"):
            await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationError("Email is already registered", field="email")
    logger.info(f"Registered user {user.id}")
    return user


# ── Own profile ───────────────────────────────────────────────

PROFILE_FIELDS = {"display_name", "language"}


async def update_profile(db: AsyncSession, actor: User, changes: dict) -> User:
    """The actor edits their own display name or language. Role and status are never touched."""
    values = {k: v for k, v in changes.items() if k in PROFILE_FIELDS and v is not None}
    if "display_name" in values:
        values["display_name"] = values["display_name"].strip()
        if not values["display_name"]:
            raise ValidationError("Display name cannot be blank", field="display_name")
    if "language" in values:
        values["language"] = QuestionLanguage(values["language"]).value
    if not values:
        return actor

    for field, value in values.items():
        setattr(actor, field, value)
    actor.updated_at = utcnow()
    with store_errors("update profile"):
        await db.commit()
    return actor


# ── Admin mutators ────────────────────────────────────────────

def apply_role(user: User, role: UserRole) -> None:
    """Primitive role write. Caller owns the transaction."""
    user.role = role
    user.updated_at = utcnow()


async def update_role(db: AsyncSession, actor: User, user_id: uuid.UUID, role: UserRole) -> User:
    _require_admin(actor, "change user roles")
    user = await get_user_or_raise(db, user_id)

    previous = user.role
    apply_role(user, role)
    record_admin_action(db, actor, "CHANGE_ROLE", "User", str(user_id),
                        {"from": previous.value, "to": role.value})
    with store_errors("update user role"):
        await db.commit()
    logger.info(f"User {user_id} role {previous.value} -> {role.value} by {actor.id}")
    return user


async def update_status(db: AsyncSession, actor: User, user_id: uuid.UUID, status: UserStatus) -> User:
    """Block or unblock. The user's existing questions are left untouched."""
    _require_admin(actor, "change user status")
    if user_id == actor.id and status == UserStatus.BLOCKED:
        raise InvalidTransition("Admins cannot block themselves")
    user = await get_user_or_raise(db, user_id)

    if user.status == status:
        raise InvalidTransition(f"User is already {status.value}", entity_id=str(user_id))

    user.status = status
    user.updated_at = utcnow()
    action = "BLOCK_USER" if status == UserStatus.BLOCKED else "UNBLOCK_USER"
    record_admin_action(db, actor, action, "User", str(user_id))
    with store_errors("update user status"):
        await db.commit()
    logger.info(f"User {user_id} status -> {status.value} by {actor.id}")
    return user


async def delete_user(db: AsyncSession, actor: User, user_id: uuid.UUID) -> int:
    """
    Remove a user and every question they authored. Returns questions deleted.
    Approved questions still assigned to them go back to the unassigned backlog.
    """
    _require_admin(actor, "delete users")
    if user_id == actor.id:
        raise InvalidTransition("Admins cannot delete themselves")
    user = await get_user_or_raise(db, user_id)

    with store_errors("delete user"):
        result = await db.execute(delete(Question).where(Question.author_id == user_id))
        released = await db.execute(
            update(Question)
            .where(Question.assigned_to == user_id, Question.status == QuestionStatus.APPROVED)
            .values(assigned_to=None, scholar_name=None, version=Question.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.execute(delete(Notification).where(Notification.user_id == user_id))
        await db.execute(delete(RoleRequest).where(RoleRequest.user_id == user_id))
        await db.execute(delete(User).where(User.id == user.id))
        record_admin_action(db, actor, "DELETE_USER", "User", str(user_id),
                            {"questions_deleted": result.rowcount or 0,
                             "questions_unassigned": released.rowcount or 0})
        await db.commit()
    logger.info(
        f"User {user_id} deleted by {actor.id} with {result.rowcount} questions, "
        f"{released.rowcount} returned to backlog"
    )
    return result.rowcount or 0


async def list_users(db: AsyncSession, role: UserRole | None = None) -> list[User]:
    query = select(User).order_by(User.created_at.desc())
    if role is not None:
        query = query.where(User.role == role)
    with store_errors("list users"):
        result = await db.execute(query)
    return list(result.scalars().all())
