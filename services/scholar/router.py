"""
services/scholar/router.py
A scholar's work queues: questions assigned to them and their past answers.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.question import assignment
from shared.middleware.auth import require_scholar
from shared.models.models import User
from shared.schemas.schemas import QuestionResponse

router = APIRouter(prefix="/scholar", tags=["Scholar"])


@router.get("/questions", response_model=List[QuestionResponse])
async def assigned_questions(
    current_user: User = Depends(require_scholar),
    db: AsyncSession = Depends(get_db),
):
    """Approved questions assigned to me that still need an answer."""
    questions = await assignment.list_assigned(db, current_user)
    return [QuestionResponse.model_validate(q) for q in questions]


@router.get("/answered", response_model=List[QuestionResponse])
async def answered_questions(
    limit: Optional[int] = Query(None, ge=1, le=200),
    current_user: User = Depends(require_scholar),
    db: AsyncSession = Depends(get_db),
):
    questions = await assignment.list_answered_by(db, current_user, limit=limit)
    return [QuestionResponse.model_validate(q) for q in questions]
