"""
tests/test_categories.py
Category listing with answered counts, per-category questions, and admin CRUD.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from services.question import assignment, workflow
from shared.models.models import Category, User
from tests.conftest import ask, auth_headers


async def answer(db, author, admin, scholar, category, title):
    question = await ask(db, author, category, title=title)
    await workflow.approve_question(db, admin, question.id)
    await assignment.assign_question(db, admin, question.id, scholar.id)
    return await workflow.answer_question(db, scholar, question.id, "Answered.")


@pytest.mark.asyncio
async def test_list_categories_counts_answered_only(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User,
    scholar_user: User, category: Category
):
    await answer(db, user, admin_user, scholar_user, category, "Answered one")
    await ask(db, user, category, title="Still pending")

    response = await client.get("/categories")
    assert response.status_code == 200
    assert response.json() == [{
        "id": str(category.id),
        "slug": "prayer",
        "name": "Prayer (Salah)",
        "description": "Questions related to prayer times, methods, and rulings",
        "question_count": 1,
    }]


@pytest.mark.asyncio
async def test_category_questions(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User,
    scholar_user: User, category: Category
):
    answered = await answer(db, user, admin_user, scholar_user, category, "Answered one")
    await ask(db, user, category, title="Still pending")

    response = await client.get("/categories/prayer/questions")
    assert [q["id"] for q in response.json()] == [str(answered.id)]

    response = await client.get("/categories/unknown/questions")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_creates_and_updates_category(client: AsyncClient, admin_user: User):
    response = await client.post(
        "/categories",
        json={"slug": "fasting", "name": "Fasting (Sawm)"},
        headers=auth_headers(admin_user),
    )
    assert response.status_code == 201
    category_id = response.json()["id"]

    response = await client.post(
        "/categories", json={"slug": "fasting", "name": "Again"}, headers=auth_headers(admin_user)
    )
    assert response.status_code == 409

    response = await client.put(
        f"/categories/{category_id}",
        json={"description": "Ramadan and voluntary fasts"},
        headers=auth_headers(admin_user),
    )
    assert response.status_code == 200
    assert response.json()["description"] == "Ramadan and voluntary fasts"
    assert response.json()["name"] == "Fasting (Sawm)"


@pytest.mark.asyncio
async def test_non_admin_cannot_manage_categories(client: AsyncClient, user: User, category: Category):
    response = await client.post(
        "/categories", json={"slug": "misc", "name": "Misc"}, headers=auth_headers(user)
    )
    assert response.status_code == 403
    response = await client.delete(f"/categories/{category.id}", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_deleting_category_keeps_questions(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User, category: Category
):
    question = await ask(db, user, category)

    response = await client.delete(f"/categories/{category.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200

    await db.refresh(question)
    assert question.category_id is None
    assert (await client.get("/categories")).json() == []


async def _store_down(*args, **kwargs):
    raise OperationalError("SELECT", {}, ConnectionResetError("server closed the connection"))


@pytest.mark.asyncio
async def test_listing_during_store_outage_is_503(client: AsyncClient, db: AsyncSession, monkeypatch):
    monkeypatch.setattr(db, "execute", _store_down)

    response = await client.get("/categories")

    assert response.status_code == 503
    assert response.json()["code"] == "store_unavailable"


@pytest.mark.asyncio
async def test_create_during_store_outage_is_503(
    client: AsyncClient, db: AsyncSession, admin_user: User, monkeypatch
):
    monkeypatch.setattr(db, "commit", _store_down)

    response = await client.post(
        "/categories",
        json={"slug": "fasting", "name": "Fasting"},
        headers=auth_headers(admin_user),
    )

    assert response.status_code == 503
    assert response.json()["code"] == "store_unavailable"
