"""
shared/models/models.py
All SQLAlchemy ORM models for the Scholar Q&A Platform.
Portable column types (Uuid, JSON) so the same models run on PostgreSQL
and on the in-memory SQLite used by the test suite.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TZDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "user"
    SCHOLAR = "scholar"
    ADMIN = "admin"


class UserStatus(str, PyEnum):
    ACTIVE = "active"
    BLOCKED = "blocked"


class QuestionStatus(str, PyEnum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ANSWERED = "answered"


class QuestionLanguage(str, PyEnum):
    EN = "en"
    UR = "ur"


class RoleRequestStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestedRole(str, PyEnum):
    SCHOLAR = "scholar"
    ADMIN = "admin"


class NotificationType(str, PyEnum):
    QUESTION_ANSWERED = "question_answered"
    QUESTION_APPROVED = "question_approved"
    QUESTION_REJECTED = "question_rejected"
    QUESTION_ASSIGNED = "question_assigned"
    SYSTEM_ANNOUNCEMENT = "system_announcement"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Platform account. Role and status are changed only by admins."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=_values, name="user_role"),
        nullable=False,
        default=UserRole.USER,
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus, values_callable=_values, name="user_status"),
        nullable=False,
        default=UserStatus.ACTIVE,
    )
    language: Mapped[str] = mapped_column(String(5), default="en", nullable=False)

    __table_args__ = (
        Index("ix_users_role", "role"),
    )

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Category(TimestampMixin, Base):
    """Topic a question is filed under."""
    __tablename__ = "categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Question(TimestampMixin, Base):
    """
    A question and, once answered, its answer.
    Status transitions: DRAFT → PENDING → APPROVED → ANSWERED
                                        ↘ REJECTED
    Every workflow write bumps `version` and is conditional on the prior one.
    """
    __tablename__ = "questions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    author_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    author_name: Mapped[str] = mapped_column(String(255), nullable=False)
    language: Mapped[QuestionLanguage] = mapped_column(
        Enum(QuestionLanguage, values_callable=_values, name="question_language"),
        nullable=False,
        default=QuestionLanguage.EN,
    )
    status: Mapped[QuestionStatus] = mapped_column(
        Enum(QuestionStatus, values_callable=_values, name="question_status"),
        nullable=False,
        default=QuestionStatus.DRAFT,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Assignment (plain references, names denormalized for listings)
    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    scholar_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Answer
    answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    answered_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    answered_by_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    answered_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_questions_status", "status"),
        Index("ix_questions_author_id", "author_id"),
        Index("ix_questions_status_assigned_to", "status", "assigned_to"),
        Index("ix_questions_status_answered_by", "status", "answered_by"),
        Index("ix_questions_status_language", "status", "language"),
    )


class RoleRequest(Base):
    """A user's application to be promoted to scholar or admin."""
    __tablename__ = "role_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_role: Mapped[RequestedRole] = mapped_column(
        Enum(RequestedRole, values_callable=_values, name="requested_role"), nullable=False
    )
    qualifications: Mapped[str] = mapped_column(Text, nullable=False, default="")
    institution: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    experience: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[RoleRequestStatus] = mapped_column(
        Enum(RoleRequestStatus, values_callable=_values, name="role_request_status"),
        nullable=False,
        default=RoleRequestStatus.PENDING,
    )
    reviewed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_role_requests_status", "status"),
        Index("ix_role_requests_user_id", "user_id"),
    )


class Notification(Base):
    """In-app notification. Only the recipient may flip `is_read`."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, values_callable=_values, name="notification_type"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_read: Mapped[bool] = mapped_column(default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
