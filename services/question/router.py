"""
services/question/router.py
Asking, drafting, reading and answering questions.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.notification.notifier import publish_pending_feeds
from services.question import queries, workflow
from shared.middleware.auth import get_current_user, get_optional_user
from shared.models.models import QuestionLanguage, User
from shared.schemas.schemas import (
    AnswerRequest,
    PublicQuestionResponse,
    QuestionCreateRequest,
    QuestionResponse,
    QuestionUpdateRequest,
)

router = APIRouter(prefix="/questions", tags=["Questions"])


@router.post("", response_model=QuestionResponse, status_code=status.HTTP_201_CREATED)
async def ask_question(
    body: QuestionCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Submit a question for review, or save it as a draft with `submit: false`."""
    question = await workflow.create_question(
        db,
        current_user,
        title=body.title,
        body=body.body,
        category_id=body.category_id,
        language=QuestionLanguage(body.language),
        submit=body.submit,
    )
    return QuestionResponse.model_validate(question)


@router.get("/mine", response_model=List[QuestionResponse])
async def my_questions(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    questions = await queries.list_my_questions(db, current_user)
    return [QuestionResponse.model_validate(q) for q in questions]


@router.get("/recent", response_model=List[PublicQuestionResponse])
async def recent_answers(
    language: QuestionLanguage = Query(QuestionLanguage.EN),
    limit: Optional[int] = Query(None, ge=1, le=settings.PUBLIC_FEED_MAX_LIMIT),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Public feed of the latest answers in one language."""
    return await queries.cached_recent_answered(
        db, redis, language, limit or settings.PUBLIC_FEED_DEFAULT_LIMIT
    )


@router.get("/search", response_model=List[PublicQuestionResponse])
async def search_questions(
    q: str = Query(..., min_length=2, max_length=200),
    db: AsyncSession = Depends(get_db),
):
    questions = await queries.search_answered(db, q)
    return [PublicQuestionResponse.model_validate(question) for question in questions]


@router.get("/{question_id}", response_model=QuestionResponse)
async def get_question(
    question_id: UUID,
    viewer: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Unanswered questions are only visible to their author, admins and scholars."""
    question = await workflow.get_visible_question(db, viewer, question_id)
    return QuestionResponse.model_validate(question)


@router.patch("/{question_id}", response_model=QuestionResponse)
async def edit_draft(
    question_id: UUID,
    body: QuestionUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    question = await workflow.update_draft(
        db, current_user, question_id, body.model_dump(exclude_unset=True)
    )
    return QuestionResponse.model_validate(question)


@router.post("/{question_id}/submit", response_model=QuestionResponse)
async def submit_draft(
    question_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    question = await workflow.submit_draft(db, current_user, question_id)
    return QuestionResponse.model_validate(question)


@router.post("/{question_id}/answer", response_model=QuestionResponse)
async def answer_question(
    question_id: UUID,
    body: AnswerRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Only the scholar the question is assigned to may answer it."""
    question = await workflow.answer_question(db, current_user, question_id, body.answer)
    await publish_pending_feeds(db, redis)
    await queries.invalidate_recent_feed(redis)
    return QuestionResponse.model_validate(question)
