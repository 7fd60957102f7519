"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, fake Redis, HTTP client,
and users in each role.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("APP_ENV", "test")

import pytest_asyncio  # noqa: E402
from fakeredis import FakeAsyncRedis  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from config.database import Base, get_db  # noqa: E402
from config.redis_client import get_redis  # noqa: E402
from main import app  # noqa: E402
from services.question import workflow  # noqa: E402
from shared.models.models import Category, Question, User, UserRole, UserStatus  # noqa: E402
from shared.utils.security import create_access_token, hash_password  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user_id=str(user.id), role=user.role.value, email=user.email)
    return {"Authorization": f"Bearer {token}"}


async def make_user(
    db: AsyncSession,
    name: str,
    role: UserRole = UserRole.USER,
    status: UserStatus = UserStatus.ACTIVE,
) -> User:
    user = User(
        email=f"{name.lower().replace(' ', '.')}@example.com",
        display_name=name,
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        status=status,
    )
    db.add(user)
    await db.commit()
    return user


async def ask(db: AsyncSession, author: User, category: Category, title: str = "Combining prayers",
              **kwargs) -> Question:
    """A freshly submitted (pending) question."""
    return await workflow.create_question(
        db,
        author,
        title=title,
        body=kwargs.pop("body", "Is it permissible to combine prayers while travelling?"),
        category_id=category.id,
        **kwargs,
    )


async def create_test_engine():
    """In-memory SQLite shared by every session, with the schema created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite/aiosqlite emit no BEGIN of their own; take over so SAVEPOINT works
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


# ── Fixtures ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = await create_test_engine()
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def client(db, redis):
    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_redis] = lambda: redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def user(db) -> User:
    return await make_user(db, "Aisha Khan")


@pytest_asyncio.fixture
async def other_user(db) -> User:
    return await make_user(db, "Bilal Ahmed")


@pytest_asyncio.fixture
async def scholar_user(db) -> User:
    return await make_user(db, "Mufti Yusuf", role=UserRole.SCHOLAR)


@pytest_asyncio.fixture
async def other_scholar(db) -> User:
    return await make_user(db, "Shaykh Hamza", role=UserRole.SCHOLAR)


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, "Site Admin", role=UserRole.ADMIN)


@pytest_asyncio.fixture
async def category(db) -> Category:
    category = Category(
        slug="prayer",
        name="Prayer (Salah)",
        description="Questions related to prayer times, methods, and rulings",
    )
    db.add(category)
    await db.commit()
    return category
