"""
services/question/queries.py
Read paths over questions: the public answered feed, category listings,
search, the author's own questions and the admin moderation queues.
"""

import logging
import uuid
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from services.question.workflow import check_question_invariants
from services.user.roles import is_admin
from shared.exceptions import PermissionDenied
from shared.models.models import Question, QuestionLanguage, QuestionStatus, User
from shared.schemas.schemas import PublicQuestionResponse
from shared.store.errors import store_errors
from shared.store.query import TwoTierQuery, by_timestamp

logger = logging.getLogger(__name__)


def _checked(questions: list[Question]) -> list[Question]:
    for question in questions:
        check_question_invariants(question)
    return questions


async def recent_answered(
    db: AsyncSession,
    language: QuestionLanguage,
    limit: int,
) -> list[Question]:
    """Latest answers in one language, most recently answered first."""
    query = TwoTierQuery(
        "recent answered",
        indexed=select(Question)
        .where(Question.status == QuestionStatus.ANSWERED, Question.language == language)
        .order_by(Question.answered_at.desc())
        .limit(limit),
        broad=select(Question).where(Question.status == QuestionStatus.ANSWERED),
        predicate=lambda q: q.language == language,
        sort_key=by_timestamp("answered_at"),
        limit=limit,
    )
    return _checked(await query.run(db))


async def answered_in_category(
    db: AsyncSession,
    category_id: uuid.UUID,
    language: Optional[QuestionLanguage] = None,
) -> list[Question]:
    query = TwoTierQuery(
        "answered in category",
        indexed=select(Question)
        .where(
            Question.status == QuestionStatus.ANSWERED,
            Question.category_id == category_id,
            *([Question.language == language] if language else []),
        )
        .order_by(Question.answered_at.desc()),
        broad=select(Question).where(Question.category_id == category_id),
        predicate=lambda q: q.status == QuestionStatus.ANSWERED and (language is None or q.language == language),
        sort_key=by_timestamp("answered_at"),
    )
    return _checked(await query.run(db))


async def search_answered(db: AsyncSession, term: str, limit: int = 50) -> list[Question]:
    """Case-insensitive substring match on title, body and answer. Answered only."""
    term = term.strip()
    if not term:
        return []
    pattern = f"%{term}%"
    with store_errors("search questions"):
        result = await db.execute(
            select(Question)
            .where(
                Question.status == QuestionStatus.ANSWERED,
                or_(
                    Question.title.ilike(pattern),
                    Question.body.ilike(pattern),
                    Question.answer.ilike(pattern),
                ),
            )
            .order_by(Question.answered_at.desc())
            .limit(limit)
        )
    return _checked(list(result.scalars().all()))


async def list_my_questions(db: AsyncSession, actor: User) -> list[Question]:
    """Everything the actor has asked, drafts included, newest first."""
    with store_errors("list own questions"):
        result = await db.execute(select(Question).where(Question.author_id == actor.id))
    questions = sorted(result.scalars().all(), key=by_timestamp("created_at"), reverse=True)
    return _checked(questions)


async def list_by_status(
    db: AsyncSession,
    actor: User,
    status: Optional[QuestionStatus] = None,
) -> list[Question]:
    """Admin moderation queue. Drafts are private to their authors and never listed."""
    if not is_admin(actor):
        raise PermissionDenied("Only admins can list questions by status")
    query = select(Question).order_by(Question.created_at.desc())
    if status is not None:
        query = query.where(Question.status == status)
    else:
        query = query.where(Question.status != QuestionStatus.DRAFT)
    with store_errors("list questions by status"):
        result = await db.execute(query)
    return _checked(list(result.scalars().all()))


async def count_by_status(db: AsyncSession) -> dict[str, int]:
    with store_errors("count questions"):
        result = await db.execute(
            select(Question.status, func.count(Question.id)).group_by(Question.status)
        )
    counts = {status.value: 0 for status in QuestionStatus}
    for status, count in result.all():
        counts[status.value] = count
    return counts


# ── Public feed cache ─────────────────────────────────────────

async def cached_recent_answered(
    db: AsyncSession,
    redis,
    language: QuestionLanguage,
    limit: int,
) -> list[dict]:
    """recent_answered() behind a Redis read-through cache. Redis outages fall through to the store."""
    cache = RedisCache(redis)
    try:
        cached = await cache.get_recent_feed(language.value, limit)
    except RedisError as exc:
        logger.warning(f"Recent feed cache read failed: {exc}")
        cached = None
    if cached is not None:
        return cached

    questions = await recent_answered(db, language, limit)
    payload = [PublicQuestionResponse.model_validate(q).model_dump(mode="json") for q in questions]
    try:
        await cache.set_recent_feed(language.value, limit, payload)
    except RedisError as exc:
        logger.warning(f"Recent feed cache write failed: {exc}")
    return payload


async def invalidate_recent_feed(redis) -> None:
    try:
        await RedisCache(redis).invalidate_recent_feeds()
    except RedisError as exc:
        logger.warning(f"Recent feed cache invalidation failed: {exc}")
