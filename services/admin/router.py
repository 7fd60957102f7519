"""
services/admin/router.py
Admin-only endpoints: question moderation and assignment, user and
role-request management, announcements, analytics, and the audit log.

ALL mutations are logged to AdminAuditLog by the service they call.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.notification.notifier import announce, publish_pending_feeds
from services.question import assignment, queries, workflow
from services.role_request import workflow as role_requests
from services.user import roles
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    QuestionStatus,
    RoleRequestStatus,
    RoleRequest,
    User,
    UserRole,
    UserStatus,
)
from shared.schemas.schemas import (
    AdminAnalyticsResponse,
    AnnouncementRequest,
    AssignRequest,
    AuditLogResponse,
    CountResponse,
    QuestionResponse,
    RoleRequestResponse,
    UserDeleteResponse,
    UserResponse,
    UserRoleUpdateRequest,
)
from shared.store.errors import store_errors

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Question Moderation ───────────────────────────────────────

@router.get("/questions", response_model=List[QuestionResponse])
async def list_questions(
    status: Optional[QuestionStatus] = Query(None, description="Filter by status, e.g. pending"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    questions = await queries.list_by_status(db, current_user, status)
    return [QuestionResponse.model_validate(q) for q in questions]


@router.get("/questions/backlog", response_model=List[QuestionResponse])
async def unassigned_backlog(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Approved questions still waiting for a scholar."""
    questions = await assignment.list_unassigned_backlog(db, current_user)
    return [QuestionResponse.model_validate(q) for q in questions]


@router.post("/questions/{question_id}/approve", response_model=QuestionResponse)
async def approve_question(
    question_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    question = await workflow.approve_question(db, current_user, question_id)
    return QuestionResponse.model_validate(question)


@router.post("/questions/{question_id}/reject", response_model=QuestionResponse)
async def reject_question(
    question_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    question = await workflow.reject_question(db, current_user, question_id)
    await publish_pending_feeds(db, redis)
    return QuestionResponse.model_validate(question)


@router.post("/questions/{question_id}/assign", response_model=QuestionResponse)
async def assign_question(
    question_id: UUID,
    data: AssignRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Assign or re-assign. Send `expected_version` to refuse if someone else changed it first."""
    question = await assignment.assign_question(
        db, current_user, question_id, data.scholar_id, expected_version=data.expected_version
    )
    await publish_pending_feeds(db, redis)
    return QuestionResponse.model_validate(question)


@router.get("/scholars", response_model=List[UserResponse])
async def list_scholars(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return [UserResponse.model_validate(u) for u in await assignment.list_scholars(db)]


# ── User Management ───────────────────────────────────────────

@router.get("/users", response_model=List[UserResponse])
async def list_users(
    role: Optional[UserRole] = Query(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return [UserResponse.model_validate(u) for u in await roles.list_users(db, role)]


@router.post("/users/{user_id}/role", response_model=UserResponse)
async def change_role(
    user_id: UUID,
    data: UserRoleUpdateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await roles.update_role(db, current_user, user_id, UserRole(data.role))
    return UserResponse.model_validate(user)


@router.post("/users/{user_id}/block", response_model=UserResponse)
async def block_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Blocked users cannot sign in. Their questions stay where they are."""
    user = await roles.update_status(db, current_user, user_id, UserStatus.BLOCKED)
    return UserResponse.model_validate(user)


@router.post("/users/{user_id}/unblock", response_model=UserResponse)
async def unblock_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await roles.update_status(db, current_user, user_id, UserStatus.ACTIVE)
    return UserResponse.model_validate(user)


@router.delete("/users/{user_id}", response_model=UserDeleteResponse)
async def delete_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Delete a user together with every question they asked."""
    deleted = await roles.delete_user(db, current_user, user_id)
    await queries.invalidate_recent_feed(redis)
    return UserDeleteResponse(message="User deleted", questions_deleted=deleted)


# ── Role Requests ─────────────────────────────────────────────

@router.get("/role-requests", response_model=List[RoleRequestResponse])
async def list_role_requests(
    status: Optional[RoleRequestStatus] = Query(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    requests = await role_requests.list_role_requests(db, current_user, status)
    return [RoleRequestResponse.model_validate(r) for r in requests]


@router.post("/role-requests/{request_id}/approve", response_model=RoleRequestResponse)
async def approve_role_request(
    request_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Approve and grant the requested role in the same transaction."""
    request = await role_requests.approve_role_request(db, current_user, request_id)
    return RoleRequestResponse.model_validate(request)


@router.post("/role-requests/{request_id}/reject", response_model=RoleRequestResponse)
async def reject_role_request(
    request_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    request = await role_requests.reject_role_request(db, current_user, request_id)
    return RoleRequestResponse.model_validate(request)


# ── Announcements ─────────────────────────────────────────────

@router.post("/announcements", response_model=CountResponse)
async def send_announcement(
    data: AnnouncementRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    created = await announce(db, current_user, data.title, data.message)
    await publish_pending_feeds(db, redis)
    return CountResponse(message="Announcement sent", count=created)


# ── Analytics ─────────────────────────────────────────────────

@router.get("/analytics", response_model=AdminAnalyticsResponse)
async def get_analytics(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide counts for the admin dashboard."""
    with store_errors("load analytics"):
        users_by_role = dict(
            (await db.execute(select(User.role, func.count(User.id)).group_by(User.role))).all()
        )
        blocked_users = await db.scalar(
            select(func.count(User.id)).where(User.status == UserStatus.BLOCKED)
        )
        pending_role_requests = await db.scalar(
            select(func.count(RoleRequest.id)).where(RoleRequest.status == RoleRequestStatus.PENDING)
        )
    backlog = await assignment.list_unassigned_backlog(db, current_user)

    return AdminAnalyticsResponse(
        total_users=sum(users_by_role.values()),
        total_scholars=users_by_role.get(UserRole.SCHOLAR, 0),
        total_admins=users_by_role.get(UserRole.ADMIN, 0),
        blocked_users=blocked_users or 0,
        questions_by_status=await queries.count_by_status(db),
        unassigned_backlog=len(backlog),
        pending_role_requests=pending_role_requests or 0,
    )


# ── Audit Log ─────────────────────────────────────────────────

@router.get("/audit-logs", response_model=List[AuditLogResponse])
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type e.g. ASSIGN_QUESTION"),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None, description="e.g. a question id, to see its assignment history"),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, newest first."""
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc()).limit(limit)
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)
    if entity_id:
        query = query.where(AdminAuditLog.entity_id == entity_id)
    with store_errors("list audit log"):
        result = await db.execute(query)
    return [AuditLogResponse.model_validate(log) for log in result.scalars()]
