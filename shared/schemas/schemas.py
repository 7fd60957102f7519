"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from shared.models.models import (
    QuestionLanguage,
    RequestedRole,
    UserRole,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    display_name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: "UserResponse"


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: str
    display_name: str
    role: str
    status: str
    language: str
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    display_name: Optional[str] = Field(None, min_length=2, max_length=255)
    language: Optional[QuestionLanguage] = None


class UserRoleUpdateRequest(BaseSchema):
    role: UserRole


class UserDeleteResponse(BaseSchema):
    message: str
    questions_deleted: int


# ── Category ──────────────────────────────────────────────────

class CategoryCreate(BaseSchema):
    slug: str = Field(..., min_length=2, max_length=120, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    name: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)


class CategoryUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)


class CategoryResponse(BaseSchema):
    id: uuid.UUID
    slug: str
    name: str
    description: Optional[str]
    question_count: int = 0  # answered questions


# ── Question ──────────────────────────────────────────────────

class QuestionCreateRequest(BaseSchema):
    title: str = Field("", max_length=500)
    body: str = Field("", max_length=20000)
    category_id: Optional[uuid.UUID] = None
    language: QuestionLanguage = QuestionLanguage.EN
    submit: bool = True  # False saves a draft


class QuestionUpdateRequest(BaseSchema):
    title: Optional[str] = Field(None, max_length=500)
    body: Optional[str] = Field(None, max_length=20000)
    category_id: Optional[uuid.UUID] = None
    language: Optional[QuestionLanguage] = None


class AnswerRequest(BaseSchema):
    answer: str = Field(..., max_length=50000)


class AssignRequest(BaseSchema):
    scholar_id: uuid.UUID
    expected_version: Optional[int] = Field(None, ge=1)


class QuestionResponse(BaseSchema):
    id: uuid.UUID
    title: str
    body: str
    category_id: Optional[uuid.UUID]
    author_id: uuid.UUID
    author_name: str
    language: str
    status: str
    version: int
    assigned_to: Optional[uuid.UUID]
    scholar_name: Optional[str]
    answer: Optional[str]
    answered_by: Optional[uuid.UUID]
    answered_by_name: Optional[str]
    answered_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class PublicQuestionResponse(BaseSchema):
    """Answered question as shown on the public feed."""
    id: uuid.UUID
    title: str
    body: str
    category_id: Optional[uuid.UUID]
    author_name: str
    language: str
    answer: Optional[str]
    answered_by_name: Optional[str]
    answered_at: Optional[datetime]


# ── Role Request ──────────────────────────────────────────────

class RoleRequestCreate(BaseSchema):
    requested_role: RequestedRole
    qualifications: str = Field("", max_length=5000)
    institution: str = Field("", max_length=255)
    experience: str = Field("", max_length=5000)


class RoleRequestResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    user_name: str
    user_email: str
    requested_role: str
    qualifications: str
    institution: str
    experience: str
    status: str
    reviewed_by_id: Optional[uuid.UUID]
    created_at: datetime
    updated_at: Optional[datetime]


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    message: str
    related_id: Optional[str]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class UnreadCountResponse(BaseSchema):
    unread: int


class AnnouncementRequest(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=5000)


# ── Admin ─────────────────────────────────────────────────────

class AdminAnalyticsResponse(BaseSchema):
    total_users: int
    total_scholars: int
    total_admins: int
    blocked_users: int
    questions_by_status: Dict[str, int]
    unassigned_backlog: int
    pending_role_requests: int


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    payload: Optional[dict]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class CountResponse(BaseSchema):
    message: str
    count: int


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    request_id: Optional[str] = None


TokenResponse.model_rebuild()
