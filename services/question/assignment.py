"""
services/question/assignment.py
Routing approved questions to scholars, and the scholar-side work queues.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.admin.audit import record_admin_action
from services.notification.notifier import notify_from_template
from services.question.workflow import (
    check_question_invariants,
    commit_and_reload,
    conditional_write,
    load_question,
)
from services.user.roles import get_user_or_raise, is_admin, is_scholar
from shared.exceptions import InvalidTransition, PermissionDenied, ValidationError
from shared.models.models import NotificationType, Question, QuestionStatus, User, UserRole
from shared.store.errors import store_errors
from shared.store.query import TwoTierQuery, by_timestamp

logger = logging.getLogger(__name__)


async def assign_question(
    db: AsyncSession,
    actor: User,
    question_id: uuid.UUID,
    scholar_id: uuid.UUID,
    expected_version: Optional[int] = None,
) -> Question:
    """
    Point an approved, unanswered question at a scholar.

    Re-assigning overwrites the previous assignee without telling them.
    Pass `expected_version` to make the write conditional on a version the
    caller has already seen; otherwise the version read here is used.
    """
    if not is_admin(actor):
        raise PermissionDenied("Only admins can assign questions", entity_id=str(question_id))
    question = await load_question(db, question_id)
    if question.status != QuestionStatus.APPROVED:
        raise InvalidTransition(
            f"Cannot assign a question that is {question.status.value}", entity_id=str(question_id)
        )

    scholar = await get_user_or_raise(db, scholar_id)
    if not is_scholar(scholar):
        raise ValidationError("Questions can only be assigned to scholars", field="scholar_id")

    previous = question.assigned_to
    await conditional_write(
        db,
        question,
        QuestionStatus.APPROVED,
        {"assigned_to": scholar.id, "scholar_name": scholar.display_name},
        "assign question",
        expected_version=expected_version,
    )
    await notify_from_template(
        db,
        scholar.id,
        NotificationType.QUESTION_ASSIGNED,
        related_id=str(question_id),
        question_title=question.title,
    )
    record_admin_action(db, actor, "ASSIGN_QUESTION", "Question", str(question_id), {
        "from": str(previous) if previous else None,
        "to": str(scholar.id),
    })
    logger.info(f"Question {question_id} assigned to scholar {scholar.id} by {actor.id}")
    return await commit_and_reload(db, question_id, "assign question")


# ── Work queues ───────────────────────────────────────────────

def _checked(questions: list[Question]) -> list[Question]:
    for question in questions:
        check_question_invariants(question)
    return questions


async def list_assigned(db: AsyncSession, scholar: User) -> list[Question]:
    """Approved questions waiting on this scholar, newest first."""
    query = TwoTierQuery(
        "assigned awaiting answer",
        indexed=select(Question)
        .where(Question.status == QuestionStatus.APPROVED, Question.assigned_to == scholar.id)
        .order_by(Question.created_at.desc()),
        broad=select(Question).where(Question.assigned_to == scholar.id),
        predicate=lambda q: q.status == QuestionStatus.APPROVED,
        sort_key=by_timestamp("created_at"),
    )
    return _checked(await query.run(db))


async def list_answered_by(db: AsyncSession, scholar: User, limit: Optional[int] = None) -> list[Question]:
    """This scholar's answers, most recently answered first."""
    query = TwoTierQuery(
        "answered by scholar",
        indexed=select(Question)
        .where(Question.status == QuestionStatus.ANSWERED, Question.answered_by == scholar.id)
        .order_by(Question.answered_at.desc()),
        broad=select(Question).where(Question.answered_by == scholar.id),
        predicate=lambda q: q.status == QuestionStatus.ANSWERED,
        sort_key=by_timestamp("answered_at"),
        limit=limit,
    )
    return _checked(await query.run(db))


async def list_unassigned_backlog(db: AsyncSession, actor: User) -> list[Question]:
    """Approved questions nobody has been assigned to yet."""
    if not is_admin(actor):
        raise PermissionDenied("Only admins can view the assignment backlog")
    query = TwoTierQuery(
        "unassigned backlog",
        indexed=select(Question)
        .where(Question.status == QuestionStatus.APPROVED, Question.assigned_to.is_(None))
        .order_by(Question.created_at.desc()),
        broad=select(Question).where(Question.status == QuestionStatus.APPROVED),
        predicate=lambda q: q.assigned_to is None,
        sort_key=by_timestamp("created_at"),
    )
    return _checked(await query.run(db))


async def list_scholars(db: AsyncSession) -> list[User]:
    with store_errors("list scholars"):
        result = await db.execute(
            select(User).where(User.role == UserRole.SCHOLAR).order_by(User.display_name)
        )
    return list(result.scalars().all())
