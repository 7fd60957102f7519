"""
tests/test_role_requests.py
Role applications: submit, approve (promotes in the same commit), reject,
and replay protection.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.role_request import workflow
from services.user.roles import get_user_or_raise, update_role
from shared.exceptions import InvalidTransition, NotFound, PermissionDenied
from shared.models.models import (
    AdminAuditLog,
    RequestedRole,
    RoleRequestStatus,
    User,
    UserRole,
)
from tests.conftest import auth_headers


async def scholar_request(db, user):
    return await workflow.submit_role_request(
        db,
        user,
        RequestedRole.SCHOLAR,
        qualifications="Alim course, Darul Uloom",
        institution="Darul Uloom Karachi",
        experience="Ten years of teaching fiqh",
    )


@pytest.mark.asyncio
async def test_submit_creates_pending_request(db: AsyncSession, user: User):
    request = await scholar_request(db, user)
    assert request.status == RoleRequestStatus.PENDING
    assert request.user_id == user.id
    assert request.user_email == user.email
    assert request.requested_role == RequestedRole.SCHOLAR
    assert request.updated_at is None


@pytest.mark.asyncio
async def test_duplicate_pending_requests_are_accepted(db: AsyncSession, user: User):
    await scholar_request(db, user)
    await scholar_request(db, user)
    assert len(await workflow.list_my_role_requests(db, user)) == 2


@pytest.mark.asyncio
async def test_approve_promotes_requester(db: AsyncSession, user: User, admin_user: User):
    request = await scholar_request(db, user)

    approved = await workflow.approve_role_request(db, admin_user, request.id)

    assert approved.status == RoleRequestStatus.APPROVED
    assert approved.updated_at is not None
    assert approved.reviewed_by_id == admin_user.id
    assert (await get_user_or_raise(db, user.id)).role == UserRole.SCHOLAR

    audit = await db.scalar(select(AdminAuditLog).where(AdminAuditLog.action == "APPROVE_ROLE_REQUEST"))
    assert audit.payload == {"user_id": str(user.id), "from": "user", "to": "scholar"}


@pytest.mark.asyncio
async def test_replayed_approval_does_not_touch_role(db: AsyncSession, user: User, admin_user: User):
    request = await scholar_request(db, user)
    await workflow.approve_role_request(db, admin_user, request.id)
    # An admin later demotes the user by hand
    await update_role(db, admin_user, user.id, UserRole.USER)

    with pytest.raises(InvalidTransition):
        await workflow.approve_role_request(db, admin_user, request.id)
    assert (await get_user_or_raise(db, user.id)).role == UserRole.USER


@pytest.mark.asyncio
async def test_reject_leaves_role_unchanged(db: AsyncSession, user: User, admin_user: User):
    request = await scholar_request(db, user)
    rejected = await workflow.reject_role_request(db, admin_user, request.id)

    assert rejected.status == RoleRequestStatus.REJECTED
    assert (await get_user_or_raise(db, user.id)).role == UserRole.USER
    with pytest.raises(InvalidTransition):
        await workflow.approve_role_request(db, admin_user, request.id)


@pytest.mark.asyncio
async def test_review_requires_admin(db: AsyncSession, user: User, scholar_user: User):
    request = await scholar_request(db, user)
    with pytest.raises(PermissionDenied):
        await workflow.approve_role_request(db, scholar_user, request.id)
    with pytest.raises(PermissionDenied):
        await workflow.reject_role_request(db, user, request.id)
    with pytest.raises(PermissionDenied):
        await workflow.list_role_requests(db, user)


@pytest.mark.asyncio
async def test_missing_request_is_not_found(db: AsyncSession, admin_user: User):
    import uuid
    with pytest.raises(NotFound):
        await workflow.approve_role_request(db, admin_user, uuid.uuid4())


@pytest.mark.asyncio
async def test_admin_lists_requests_by_status(
    db: AsyncSession, user: User, other_user: User, admin_user: User
):
    first = await scholar_request(db, user)
    second = await workflow.submit_role_request(db, other_user, RequestedRole.ADMIN)
    await workflow.reject_role_request(db, admin_user, first.id)

    pending = await workflow.list_role_requests(db, admin_user, RoleRequestStatus.PENDING)
    everything = await workflow.list_role_requests(db, admin_user)

    assert [r.id for r in pending] == [second.id]
    assert {r.id for r in everything} == {first.id, second.id}


# ── HTTP ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_apply_and_get_promoted_over_http(client: AsyncClient, user: User, admin_user: User):
    response = await client.post(
        "/role-requests",
        json={"requested_role": "scholar", "qualifications": "Ijazah in hadith"},
        headers=auth_headers(user),
    )
    assert response.status_code == 201
    request_id = response.json()["id"]

    mine = await client.get("/role-requests/mine", headers=auth_headers(user))
    assert [r["id"] for r in mine.json()] == [request_id]

    response = await client.post(f"/admin/role-requests/{request_id}/approve", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["status"] == "approved"

    me = await client.get("/auth/me", headers=auth_headers(user))
    assert me.json()["role"] == "scholar"

    replay = await client.post(f"/admin/role-requests/{request_id}/approve", headers=auth_headers(admin_user))
    assert replay.status_code == 409
    assert replay.json()["code"] == "invalid_transition"


@pytest.mark.asyncio
async def test_cannot_request_plain_user_role(client: AsyncClient, user: User):
    response = await client.post(
        "/role-requests", json={"requested_role": "user"}, headers=auth_headers(user)
    )
    assert response.status_code == 422
