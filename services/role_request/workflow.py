"""
services/role_request/workflow.py
Applications for the scholar or admin role.

    PENDING ──► APPROVED   (requester's role changes in the same commit)
            └─► REJECTED

Both outcomes are terminal. Review writes are conditional on the request
still being pending, so replaying an approval cannot mutate the role twice.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.admin.audit import record_admin_action
from services.user.roles import apply_role, get_user_or_raise, is_admin
from shared.exceptions import InvalidTransition, NotFound, PermissionDenied, StaleRecord
from shared.models.models import (
    RequestedRole,
    RoleRequest,
    RoleRequestStatus,
    User,
    UserRole,
    utcnow,
)
from shared.store.errors import store_errors
from shared.store.query import by_timestamp

logger = logging.getLogger(__name__)


async def submit_role_request(
    db: AsyncSession,
    actor: User,
    requested_role: RequestedRole,
    qualifications: str = "",
    institution: str = "",
    experience: str = "",
) -> RoleRequest:
    # Several pending requests from the same user are accepted
    request = RoleRequest(
        user_id=actor.id,
        user_name=actor.display_name,
        user_email=actor.email,
        requested_role=requested_role,
        qualifications=qualifications.strip(),
        institution=institution.strip(),
        experience=experience.strip(),
        status=RoleRequestStatus.PENDING,
    )
    db.add(request)
    with store_errors("submit role request"):
        await db.commit()
    logger.info(f"Role request {request.id} for {requested_role.value} submitted by {actor.id}")
    return request


async def _load_pending(db: AsyncSession, request_id: uuid.UUID, verb: str) -> RoleRequest:
    with store_errors("load role request"):
        request = await db.get(RoleRequest, request_id, populate_existing=True)
    if request is None:
        raise NotFound("Role request not found", entity_id=str(request_id))
    if request.status != RoleRequestStatus.PENDING:
        raise InvalidTransition(
            f"Cannot {verb} a role request that is {request.status.value}", entity_id=str(request_id)
        )
    return request


async def _close_request(
    db: AsyncSession,
    actor: User,
    request: RoleRequest,
    status: RoleRequestStatus,
) -> None:
    with store_errors("review role request"):
        result = await db.execute(
            update(RoleRequest)
            .where(RoleRequest.id == request.id, RoleRequest.status == RoleRequestStatus.PENDING)
            .values(status=status, reviewed_by_id=actor.id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
    if result.rowcount != 1:
        raise StaleRecord("Role request was reviewed concurrently", entity_id=str(request.id))


async def approve_role_request(db: AsyncSession, actor: User, request_id: uuid.UUID) -> RoleRequest:
    """Close the request and promote the requester in one transaction."""
    if not is_admin(actor):
        raise PermissionDenied("Only admins can review role requests", entity_id=str(request_id))
    request = await _load_pending(db, request_id, "approve")
    requester = await get_user_or_raise(db, request.user_id)

    await _close_request(db, actor, request, RoleRequestStatus.APPROVED)
    previous = requester.role
    apply_role(requester, UserRole(request.requested_role.value))
    record_admin_action(db, actor, "APPROVE_ROLE_REQUEST", "RoleRequest", str(request_id), {
        "user_id": str(requester.id),
        "from": previous.value,
        "to": request.requested_role.value,
    })
    with store_errors("approve role request"):
        await db.commit()
        await db.refresh(request)
    logger.info(f"Role request {request_id} approved by {actor.id}; {requester.id} is now {requester.role.value}")
    return request


async def reject_role_request(db: AsyncSession, actor: User, request_id: uuid.UUID) -> RoleRequest:
    if not is_admin(actor):
        raise PermissionDenied("Only admins can review role requests", entity_id=str(request_id))
    request = await _load_pending(db, request_id, "reject")

    await _close_request(db, actor, request, RoleRequestStatus.REJECTED)
    record_admin_action(db, actor, "REJECT_ROLE_REQUEST", "RoleRequest", str(request_id))
    with store_errors("reject role request"):
        await db.commit()
        await db.refresh(request)
    logger.info(f"Role request {request_id} rejected by {actor.id}")
    return request


async def list_role_requests(
    db: AsyncSession,
    actor: User,
    status: Optional[RoleRequestStatus] = None,
) -> list[RoleRequest]:
    if not is_admin(actor):
        raise PermissionDenied("Only admins can list role requests")
    query = select(RoleRequest)
    if status is not None:
        query = query.where(RoleRequest.status == status)
    with store_errors("list role requests"):
        result = await db.execute(query)
    return sorted(result.scalars().all(), key=by_timestamp("created_at"), reverse=True)


async def list_my_role_requests(db: AsyncSession, actor: User) -> list[RoleRequest]:
    with store_errors("list own role requests"):
        result = await db.execute(select(RoleRequest).where(RoleRequest.user_id == actor.id))
    return sorted(result.scalars().all(), key=by_timestamp("created_at"), reverse=True)
