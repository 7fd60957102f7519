"""
services/category/router.py
Question categories: public listing with answered counts, per-category
answered questions, and admin create/update/delete.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from services.admin.audit import record_admin_action
from services.question import queries
from shared.middleware.auth import require_admin
from shared.models.models import Category, Question, QuestionLanguage, QuestionStatus, User
from shared.schemas.schemas import (
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    MessageResponse,
    PublicQuestionResponse,
)
from shared.store.errors import store_errors

router = APIRouter(prefix="/categories", tags=["Categories"])


async def _get_category(db: AsyncSession, category_id: UUID) -> Category:
    with store_errors("load category"):
        category = await db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


def _to_response(category: Category, question_count: int = 0) -> CategoryResponse:
    return CategoryResponse(
        id=category.id,
        slug=category.slug,
        name=category.name,
        description=category.description,
        question_count=question_count,
    )


@router.get("", response_model=List[CategoryResponse])
async def list_categories(db: AsyncSession = Depends(get_db)):
    """All categories with how many answered questions each holds."""
    with store_errors("list categories"):
        counts = dict(
            (await db.execute(
                select(Question.category_id, func.count(Question.id))
                .where(Question.status == QuestionStatus.ANSWERED)
                .group_by(Question.category_id)
            )).all()
        )
        result = await db.execute(select(Category).order_by(Category.name))
    return [_to_response(c, counts.get(c.id, 0)) for c in result.scalars()]


@router.get("/{slug}/questions", response_model=List[PublicQuestionResponse])
async def category_questions(
    slug: str,
    language: Optional[QuestionLanguage] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    with store_errors("load category"):
        category = await db.scalar(select(Category).where(Category.slug == slug))
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    questions = await queries.answered_in_category(db, category.id, language)
    return [PublicQuestionResponse.model_validate(q) for q in questions]


@router.post("", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
async def create_category(
    data: CategoryCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    with store_errors("create category"):
        existing = await db.scalar(select(Category.id).where(Category.slug == data.slug))
    if existing:
        raise HTTPException(status_code=409, detail="A category with this slug already exists")

    category = Category(slug=data.slug, name=data.name.strip(), description=data.description)
    db.add(category)
    with store_errors("create category"):
        await db.flush()
        record_admin_action(db, current_user, "CREATE_CATEGORY", "Category", str(category.id),
                            {"slug": data.slug})
        await db.commit()
    return _to_response(category)


@router.put("/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: UUID,
    data: CategoryUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    category = await _get_category(db, category_id)
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(category, field, value)
    record_admin_action(db, current_user, "UPDATE_CATEGORY", "Category", str(category_id), changes)
    with store_errors("update category"):
        await db.commit()
    return _to_response(category)


@router.delete("/{category_id}", response_model=MessageResponse)
async def delete_category(
    category_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Questions in the category are kept and lose their category."""
    category = await _get_category(db, category_id)
    with store_errors("delete category"):
        await db.execute(
            update(Question).where(Question.category_id == category_id).values(category_id=None)
        )
        await db.delete(category)
        record_admin_action(db, current_user, "DELETE_CATEGORY", "Category", str(category_id),
                            {"slug": category.slug})
        await db.commit()
    await queries.invalidate_recent_feed(redis)
    return MessageResponse(message="Category deleted")
