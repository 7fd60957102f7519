"""
tests/test_assignment.py
Routing approved questions to scholars, the scholar work queues, and the
two-tier backlog query.
"""

import pytest
import pytest_asyncio
from sqlalchemy import literal_column, select, table
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.question import assignment, workflow
from shared.exceptions import (
    InvalidTransition,
    PermissionDenied,
    StaleRecord,
    StoreUnavailable,
    ValidationError,
)
from shared.models.models import (
    AdminAuditLog,
    Category,
    Notification,
    NotificationType,
    Question,
    QuestionStatus,
    User,
)
from shared.store.query import TwoTierQuery, by_timestamp
from tests.conftest import ask


async def approved(db, author, admin, category, title="Combining prayers") -> Question:
    question = await ask(db, author, category, title=title)
    return await workflow.approve_question(db, admin, question.id)


# ── assign_question ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_assign_sets_scholar_and_notifies(
    db: AsyncSession, user: User, admin_user: User, scholar_user: User, category: Category
):
    question = await approved(db, user, admin_user, category)
    assigned = await assignment.assign_question(db, admin_user, question.id, scholar_user.id)

    assert assigned.status == QuestionStatus.APPROVED
    assert assigned.assigned_to == scholar_user.id
    assert assigned.scholar_name == "Mufti Yusuf"

    result = await db.execute(select(Notification).where(Notification.user_id == scholar_user.id))
    notifications = result.scalars().all()
    assert len(notifications) == 1
    assert notifications[0].type == NotificationType.QUESTION_ASSIGNED
    assert notifications[0].related_id == str(question.id)


@pytest.mark.asyncio
async def test_assign_requires_admin(
    db: AsyncSession, user: User, admin_user: User, scholar_user: User, category: Category
):
    question = await approved(db, user, admin_user, category)
    with pytest.raises(PermissionDenied):
        await assignment.assign_question(db, scholar_user, question.id, scholar_user.id)
    assert (await workflow.load_question(db, question.id)).assigned_to is None


@pytest.mark.asyncio
async def test_assign_requires_scholar_target(
    db: AsyncSession, user: User, other_user: User, admin_user: User, category: Category
):
    question = await approved(db, user, admin_user, category)
    with pytest.raises(ValidationError):
        await assignment.assign_question(db, admin_user, question.id, other_user.id)
    with pytest.raises(ValidationError):
        await assignment.assign_question(db, admin_user, question.id, admin_user.id)


@pytest.mark.asyncio
async def test_pending_question_cannot_be_assigned(
    db: AsyncSession, user: User, admin_user: User, scholar_user: User, category: Category
):
    question = await ask(db, user, category)
    with pytest.raises(InvalidTransition):
        await assignment.assign_question(db, admin_user, question.id, scholar_user.id)


@pytest.mark.asyncio
async def test_answered_question_cannot_be_reassigned(
    db: AsyncSession,
    user: User,
    admin_user: User,
    scholar_user: User,
    other_scholar: User,
    category: Category,
):
    question = await approved(db, user, admin_user, category)
    await assignment.assign_question(db, admin_user, question.id, scholar_user.id)
    await workflow.answer_question(db, scholar_user, question.id, "Answered")

    with pytest.raises(InvalidTransition):
        await assignment.assign_question(db, admin_user, question.id, other_scholar.id)


@pytest.mark.asyncio
async def test_reassignment_overwrites_and_is_audited(
    db: AsyncSession,
    user: User,
    admin_user: User,
    scholar_user: User,
    other_scholar: User,
    category: Category,
):
    question = await approved(db, user, admin_user, category)
    await assignment.assign_question(db, admin_user, question.id, scholar_user.id)
    reassigned = await assignment.assign_question(db, admin_user, question.id, other_scholar.id)

    assert reassigned.assigned_to == other_scholar.id
    assert reassigned.scholar_name == "Shaykh Hamza"

    # Previous assignee can no longer answer
    with pytest.raises(PermissionDenied):
        await workflow.answer_question(db, scholar_user, question.id, "Too late")

    result = await db.execute(
        select(AdminAuditLog)
        .where(AdminAuditLog.action == "ASSIGN_QUESTION", AdminAuditLog.entity_id == str(question.id))
    )
    history = sorted(result.scalars().all(), key=by_timestamp("created_at"))
    assert [entry.payload for entry in history] == [
        {"from": None, "to": str(scholar_user.id)},
        {"from": str(scholar_user.id), "to": str(other_scholar.id)},
    ]


@pytest.mark.asyncio
async def test_racing_assigns_from_same_snapshot_leave_one_assignee(
    db: AsyncSession,
    user: User,
    admin_user: User,
    scholar_user: User,
    other_scholar: User,
    category: Category,
):
    question = await approved(db, user, admin_user, category)
    seen_version = question.version

    first = await assignment.assign_question(
        db, admin_user, question.id, scholar_user.id, expected_version=seen_version
    )
    with pytest.raises(StaleRecord):
        await assignment.assign_question(
            db, admin_user, question.id, other_scholar.id, expected_version=seen_version
        )

    stored = await workflow.load_question(db, question.id)
    assert stored.assigned_to == first.assigned_to == scholar_user.id
    assert stored.version == seen_version + 1

    result = await db.execute(select(Notification).where(Notification.user_id == other_scholar.id))
    assert result.scalars().all() == []


# ── Work queues ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_scholar_queues(
    db: AsyncSession,
    user: User,
    admin_user: User,
    scholar_user: User,
    other_scholar: User,
    category: Category,
):
    waiting = await approved(db, user, admin_user, category, title="Waiting")
    done = await approved(db, user, admin_user, category, title="Done")
    elsewhere = await approved(db, user, admin_user, category, title="Someone else's")
    for question, scholar in ((waiting, scholar_user), (done, scholar_user), (elsewhere, other_scholar)):
        await assignment.assign_question(db, admin_user, question.id, scholar.id)
    await workflow.answer_question(db, scholar_user, done.id, "Answer")

    assigned = await assignment.list_assigned(db, scholar_user)
    answered = await assignment.list_answered_by(db, scholar_user)

    assert [q.id for q in assigned] == [waiting.id]
    assert [q.id for q in answered] == [done.id]


@pytest.mark.asyncio
async def test_list_scholars_only_returns_scholars(
    db: AsyncSession, user: User, admin_user: User, scholar_user: User, other_scholar: User
):
    scholars = await assignment.list_scholars(db)
    assert {s.id for s in scholars} == {scholar_user.id, other_scholar.id}


# ── Unassigned backlog (two-tier query) ───────────────────────

@pytest_asyncio.fixture
async def backlog_setup(db, user, admin_user, scholar_user, category):
    unassigned = await approved(db, user, admin_user, category, title="Unassigned")
    taken = await approved(db, user, admin_user, category, title="Taken")
    await assignment.assign_question(db, admin_user, taken.id, scholar_user.id)
    await ask(db, user, category, title="Still pending")
    return unassigned


@pytest.mark.asyncio
async def test_backlog_indexed_tier(db: AsyncSession, admin_user: User, backlog_setup: Question):
    backlog = await assignment.list_unassigned_backlog(db, admin_user)
    assert [q.id for q in backlog] == [backlog_setup.id]


@pytest.mark.asyncio
async def test_backlog_degraded_tier_gives_same_result(
    db: AsyncSession, admin_user: User, backlog_setup: Question, monkeypatch
):
    monkeypatch.setattr(settings, "QUERY_INDEXED_TIER_ENABLED", False)
    backlog = await assignment.list_unassigned_backlog(db, admin_user)
    assert [q.id for q in backlog] == [backlog_setup.id]


@pytest.mark.asyncio
async def test_backlog_requires_admin(db: AsyncSession, scholar_user: User):
    with pytest.raises(PermissionDenied):
        await assignment.list_unassigned_backlog(db, scholar_user)


@pytest.mark.asyncio
async def test_two_tier_query_falls_back_when_store_rejects_filter(
    db: AsyncSession, admin_user: User, backlog_setup: Question
):
    # An indexed query the store cannot serve
    rejected = select(literal_column("id")).select_from(table("missing_composite_index"))
    query = TwoTierQuery(
        "backlog without index",
        indexed=rejected,
        broad=select(Question).where(Question.status == QuestionStatus.APPROVED),
        predicate=lambda q: q.assigned_to is None,
        sort_key=by_timestamp("created_at"),
    )

    rows = await query.run(db)

    assert query.degraded is True
    assert [q.id for q in rows] == [backlog_setup.id]
    # The session is still usable afterwards
    assert admin_user.display_name == "Site Admin"
    assert len(await assignment.list_scholars(db)) == 1


@pytest.mark.asyncio
async def test_two_tier_query_surfaces_outage_when_both_tiers_fail(db: AsyncSession):
    unreachable = select(literal_column("id")).select_from(table("unreachable_store"))
    query = TwoTierQuery(
        "backlog during outage",
        indexed=unreachable,
        broad=unreachable,
        predicate=lambda q: True,
    )

    with pytest.raises(StoreUnavailable):
        await query.run(db)
    assert query.degraded is True
