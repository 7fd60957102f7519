"""
services/question/workflow.py
Question status state machine.

    (new) ──► DRAFT ──► PENDING ──► APPROVED ──► ANSWERED
                │  ▲                  │   ▲ (re)assign
    (new) ──────┼──┘                  │   └──────┘
                                      ▼
                                  REJECTED

Every operation takes the acting user explicitly and checks its guards
before touching the store, in this order: role, status, ownership or
assignment, field values. Writes are a single UPDATE conditional on the
status and version that were read, so a concurrent transition makes the
second writer fail with StaleRecord instead of overwriting.
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from services.admin.audit import record_admin_action
from services.notification.notifier import notify_from_template
from services.user.roles import is_admin, is_scholar
from shared.exceptions import (
    InvalidTransition,
    MalformedRecord,
    NotFound,
    PermissionDenied,
    StaleRecord,
    ValidationError,
)
from shared.models.models import (
    Category,
    NotificationType,
    Question,
    QuestionLanguage,
    QuestionStatus,
    User,
    utcnow,
)
from shared.store.errors import store_errors

logger = logging.getLogger(__name__)

ASSIGNABLE_STATUSES = {QuestionStatus.APPROVED, QuestionStatus.ANSWERED}
DRAFT_FIELDS = {"title", "body", "category_id", "language"}


# ── Loading ───────────────────────────────────────────────────

def check_question_invariants(question: Question) -> None:
    """Refuse records whose answer/assignment fields contradict their status."""
    answer_fields = (bool(question.answer), question.answered_by is not None, question.answered_at is not None)
    if question.status == QuestionStatus.ANSWERED and not all(answer_fields):
        raise MalformedRecord(
            f"Question {question.id} is answered but answer fields are missing",
            entity_id=str(question.id),
        )
    if question.status != QuestionStatus.ANSWERED and any(answer_fields):
        raise MalformedRecord(
            f"Question {question.id} has status {question.status.value} but carries answer fields",
            entity_id=str(question.id),
        )
    if question.assigned_to is not None and question.status not in ASSIGNABLE_STATUSES:
        raise MalformedRecord(
            f"Question {question.id} is assigned while {question.status.value}",
            entity_id=str(question.id),
        )


async def load_question(db: AsyncSession, question_id: uuid.UUID) -> Question:
    with store_errors("load question"):
        question = await db.get(Question, question_id, populate_existing=True)
    if question is None:
        raise NotFound("Question not found", entity_id=str(question_id))
    check_question_invariants(question)
    return question


def can_view(viewer: Optional[User], question: Question) -> bool:
    """Authors, admins and scholars always; everyone else only once answered."""
    if question.status == QuestionStatus.ANSWERED:
        return True
    if viewer is None:
        return False
    return viewer.id == question.author_id or is_admin(viewer) or is_scholar(viewer)


async def get_visible_question(db: AsyncSession, viewer: Optional[User], question_id: uuid.UUID) -> Question:
    question = await load_question(db, question_id)
    if not can_view(viewer, question):
        # Hidden questions are indistinguishable from missing ones
        raise NotFound("Question not found", entity_id=str(question_id))
    return question


# ── Write helpers ─────────────────────────────────────────────

async def _validate_category(db: AsyncSession, category_id: Optional[uuid.UUID]) -> None:
    if category_id is None:
        return
    with store_errors("load category"):
        category = await db.get(Category, category_id)
    if category is None:
        raise ValidationError("Unknown category", field="category_id")


def _require_submittable(title: str, body: str, category_id: Optional[uuid.UUID]) -> None:
    if not (title or "").strip():
        raise ValidationError("Title is required", field="title")
    if not (body or "").strip():
        raise ValidationError("Question text is required", field="body")
    if category_id is None:
        raise ValidationError("Category is required", field="category_id")


async def conditional_write(
    db: AsyncSession,
    question: Question,
    expected_status: QuestionStatus,
    values: dict[str, Any],
    operation: str,
    expected_version: Optional[int] = None,
) -> None:
    """
    UPDATE the question only if it still has the status and version we read.
    The caller commits. A miss writes nothing and raises StaleRecord.
    """
    version = question.version if expected_version is None else expected_version
    stmt = (
        update(Question)
        .where(
            Question.id == question.id,
            Question.status == expected_status,
            Question.version == version,
        )
        .values(**values, version=version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    with store_errors(operation):
        result = await db.execute(stmt)
    if result.rowcount != 1:
        logger.warning(f"{operation} on question {question.id} lost a concurrent update (version {version})")
        raise StaleRecord(
            f"Question changed while trying to {operation}; reload and retry",
            entity_id=str(question.id),
        )


async def commit_and_reload(db: AsyncSession, question_id: uuid.UUID, operation: str) -> Question:
    """Commit the transition and return the authoritative stored record."""
    with store_errors(operation):
        await db.commit()
    return await load_question(db, question_id)


# ── Creation & drafts ─────────────────────────────────────────

async def create_question(
    db: AsyncSession,
    actor: User,
    *,
    title: str,
    body: str,
    category_id: Optional[uuid.UUID],
    language: QuestionLanguage = QuestionLanguage.EN,
    submit: bool = True,
) -> Question:
    """Ask a question. `submit=False` saves a draft without any field checks."""
    if submit:
        _require_submittable(title, body, category_id)
    await _validate_category(db, category_id)

    question = Question(
        title=(title or "").strip(),
        body=(body or "").strip(),
        category_id=category_id,
        author_id=actor.id,
        author_name=actor.display_name,
        language=language,
        status=QuestionStatus.PENDING if submit else QuestionStatus.DRAFT,
        version=1,
    )
    db.add(question)
    with store_errors("create question"):
        await db.commit()
    logger.info(f"Question {question.id} created as {question.status.value} by {actor.id}")
    return await load_question(db, question.id)


async def update_draft(
    db: AsyncSession,
    actor: User,
    question_id: uuid.UUID,
    changes: dict[str, Any],
) -> Question:
    """Edit a draft's fields. Only the author, only while still a draft."""
    question = await load_question(db, question_id)
    if question.author_id != actor.id:
        raise PermissionDenied("Only the author can edit a draft", entity_id=str(question_id))
    if question.status != QuestionStatus.DRAFT:
        raise InvalidTransition(
            "This question is no longer a draft and cannot be edited", entity_id=str(question_id)
        )

    values = {k: v for k, v in changes.items() if k in DRAFT_FIELDS}
    for field in ("title", "body"):
        if field in values:
            values[field] = (values[field] or "").strip()
    if "language" in values:
        if values["language"] is None:
            del values["language"]
        else:
            values["language"] = QuestionLanguage(values["language"])
    if "category_id" in values:
        await _validate_category(db, values["category_id"])
    if not values:
        return question

    await conditional_write(db, question, QuestionStatus.DRAFT, values, "edit draft")
    return await commit_and_reload(db, question_id, "edit draft")


async def submit_draft(db: AsyncSession, actor: User, question_id: uuid.UUID) -> Question:
    """draft → pending."""
    question = await load_question(db, question_id)
    if question.author_id != actor.id:
        raise PermissionDenied("Only the author can submit a draft", entity_id=str(question_id))
    if question.status != QuestionStatus.DRAFT:
        raise InvalidTransition(
            f"Only drafts can be submitted (question is {question.status.value})",
            entity_id=str(question_id),
        )
    _require_submittable(question.title, question.body, question.category_id)

    await conditional_write(db, question, QuestionStatus.DRAFT, {"status": QuestionStatus.PENDING}, "submit draft")
    logger.info(f"Question {question_id} submitted for review by {actor.id}")
    return await commit_and_reload(db, question_id, "submit draft")


# ── Moderation ────────────────────────────────────────────────

async def approve_question(db: AsyncSession, actor: User, question_id: uuid.UUID) -> Question:
    """pending → approved. Assignment is a separate step."""
    if not is_admin(actor):
        raise PermissionDenied("Only admins can approve questions", entity_id=str(question_id))
    question = await load_question(db, question_id)
    if question.status != QuestionStatus.PENDING:
        raise InvalidTransition(
            f"Cannot approve a question that is {question.status.value}", entity_id=str(question_id)
        )

    await conditional_write(db, question, QuestionStatus.PENDING, {"status": QuestionStatus.APPROVED}, "approve question")
    record_admin_action(db, actor, "APPROVE_QUESTION", "Question", str(question_id))
    logger.info(f"Question {question_id} approved by {actor.id}")
    return await commit_and_reload(db, question_id, "approve question")


async def reject_question(db: AsyncSession, actor: User, question_id: uuid.UUID) -> Question:
    """pending → rejected, and tell the author."""
    if not is_admin(actor):
        raise PermissionDenied("Only admins can reject questions", entity_id=str(question_id))
    question = await load_question(db, question_id)
    if question.status != QuestionStatus.PENDING:
        raise InvalidTransition(
            f"Cannot reject a question that is {question.status.value}", entity_id=str(question_id)
        )

    await conditional_write(db, question, QuestionStatus.PENDING, {"status": QuestionStatus.REJECTED}, "reject question")
    await notify_from_template(
        db,
        question.author_id,
        NotificationType.QUESTION_REJECTED,
        related_id=str(question_id),
        question_title=question.title,
    )
    record_admin_action(db, actor, "REJECT_QUESTION", "Question", str(question_id))
    logger.info(f"Question {question_id} rejected by {actor.id}")
    return await commit_and_reload(db, question_id, "reject question")


# ── Answering ─────────────────────────────────────────────────

async def answer_question(db: AsyncSession, actor: User, question_id: uuid.UUID, answer: str) -> Question:
    """approved → answered, by the assigned scholar only."""
    if not is_scholar(actor):
        raise PermissionDenied("Only scholars can answer questions", entity_id=str(question_id))
    question = await load_question(db, question_id)
    if question.status != QuestionStatus.APPROVED:
        raise InvalidTransition(
            f"Cannot answer a question that is {question.status.value}", entity_id=str(question_id)
        )
    if question.assigned_to != actor.id:
        raise PermissionDenied("Only the assigned scholar can answer this question", entity_id=str(question_id))
    answer = (answer or "").strip()
    if not answer:
        raise ValidationError("Answer text is required", field="answer")

    await conditional_write(
        db,
        question,
        QuestionStatus.APPROVED,
        {
            "status": QuestionStatus.ANSWERED,
            "answer": answer,
            "answered_by": actor.id,
            "answered_by_name": actor.display_name,
            "answered_at": utcnow(),
        },
        "answer question",
    )
    await notify_from_template(
        db,
        question.author_id,
        NotificationType.QUESTION_ANSWERED,
        related_id=str(question_id),
        question_title=question.title,
        scholar_name=actor.display_name,
    )
    logger.info(f"Question {question_id} answered by scholar {actor.id}")
    return await commit_and_reload(db, question_id, "answer question")
