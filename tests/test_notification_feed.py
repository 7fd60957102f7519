"""
tests/test_notification_feed.py
Live notification feed over WebSocket: initial snapshot, pushes on Redis
ticks, policy closes, and cleanup when the client goes away.

These run the real app lifespan under Starlette's TestClient, so the
database and fake Redis are created on the app's own event loop and
all seeding goes through `feed.portal`.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import FakeAsyncRedis
from fastapi import WebSocketDisconnect, status
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import config.database
import config.redis_client
import main
from config.redis_client import notification_channel
from services.notification import notifier
from shared.models.models import Notification, NotificationType, User, UserStatus
from shared.utils.security import create_access_token
from tests.conftest import create_test_engine, make_user


@pytest.fixture
def feed(monkeypatch):
    engines = []

    async def init_test_db():
        engine = await create_test_engine()
        engines.append(engine)
        monkeypatch.setattr(
            config.database,
            "AsyncSessionLocal",
            async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False),
        )

    async def close_test_db():
        for engine in engines:
            await engine.dispose()

    async def init_fake_redis():
        monkeypatch.setattr(config.redis_client, "redis_client", FakeAsyncRedis(decode_responses=True))

    monkeypatch.setattr(main, "init_db", init_test_db)
    monkeypatch.setattr(main, "close_db", close_test_db)
    monkeypatch.setattr(main, "init_redis", init_fake_redis)
    with TestClient(main.app) as client:
        yield client


def token_for(user: User) -> str:
    token, _ = create_access_token(user_id=str(user.id), role=user.role.value, email=user.email)
    return token


# ── Helpers run on the app loop ───────────────────────────────

async def _make_user(name: str, user_status: UserStatus = UserStatus.ACTIVE) -> User:
    async with config.database.AsyncSessionLocal() as db:
        return await make_user(db, name, status=user_status)


async def _seed_notifications(user: User) -> None:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    async with config.database.AsyncSessionLocal() as db:
        for i in range(3):
            db.add(Notification(
                user_id=user.id,
                type=NotificationType.QUESTION_ANSWERED,
                title=f"Notification {i}",
                message=f"Message {i}",
                is_read=i == 0,
                created_at=base + timedelta(minutes=i),
            ))
        await db.commit()


async def _notify_and_publish(user: User, title: str) -> None:
    async with config.database.AsyncSessionLocal() as db:
        await notifier.notify(db, user.id, NotificationType.SYSTEM_ANNOUNCEMENT, title, "Hello")
        await db.commit()
        await notifier.publish_pending_feeds(db, config.redis_client.redis_client)


async def _block(user: User) -> None:
    async with config.database.AsyncSessionLocal() as db:
        stored = await db.get(User, user.id)
        stored.status = UserStatus.BLOCKED
        await db.commit()


async def _wait_for_no_subscribers(channel: str) -> int:
    count = -1
    for _ in range(50):
        count = dict(await config.redis_client.redis_client.pubsub_numsub(channel)).get(channel, 0)
        if count == 0:
            break
        await asyncio.sleep(0.05)
    return count


# ── Snapshot & Pushes ─────────────────────────────────────────

def test_feed_sends_newest_first_snapshot(feed: TestClient):
    user = feed.portal.call(_make_user, "Aisha Khan")
    feed.portal.call(_seed_notifications, user)

    with feed.websocket_connect(f"/notifications/ws?token={token_for(user)}") as ws:
        snapshot = ws.receive_json()

    assert [n["title"] for n in snapshot["notifications"]] == [
        "Notification 2", "Notification 1", "Notification 0",
    ]
    assert snapshot["unread"] == 2


def test_feed_pushes_updated_list_after_notify(feed: TestClient):
    user = feed.portal.call(_make_user, "Aisha Khan")
    feed.portal.call(_seed_notifications, user)

    with feed.websocket_connect(f"/notifications/ws?token={token_for(user)}") as ws:
        ws.receive_json()
        feed.portal.call(_notify_and_publish, user, "Maintenance tonight")
        pushed = ws.receive_json()

    assert pushed["notifications"][0]["title"] == "Maintenance tonight"
    assert len(pushed["notifications"]) == 4
    assert pushed["unread"] == 3


def test_other_users_ticks_are_not_delivered(feed: TestClient):
    user = feed.portal.call(_make_user, "Aisha Khan")
    other = feed.portal.call(_make_user, "Bilal Ahmed")

    with feed.websocket_connect(f"/notifications/ws?token={token_for(user)}") as ws:
        ws.receive_json()
        feed.portal.call(_notify_and_publish, other, "Not for Aisha")
        feed.portal.call(_notify_and_publish, user, "For Aisha")
        pushed = ws.receive_json()

    assert [n["title"] for n in pushed["notifications"]] == ["For Aisha"]


# ── Policy Closes ─────────────────────────────────────────────

def test_bad_token_is_closed_with_policy_violation(feed: TestClient):
    with pytest.raises(WebSocketDisconnect) as exc:
        with feed.websocket_connect("/notifications/ws?token=not-a-jwt") as ws:
            ws.receive_json()
    assert exc.value.code == status.WS_1008_POLICY_VIOLATION


def test_blocked_user_is_closed_with_policy_violation(feed: TestClient):
    blocked = feed.portal.call(_make_user, "Blocked Person", UserStatus.BLOCKED)

    with pytest.raises(WebSocketDisconnect) as exc:
        with feed.websocket_connect(f"/notifications/ws?token={token_for(blocked)}") as ws:
            ws.receive_json()
    assert exc.value.code == status.WS_1008_POLICY_VIOLATION


def test_feed_closes_when_user_is_blocked_mid_session(feed: TestClient):
    user = feed.portal.call(_make_user, "Aisha Khan")

    with pytest.raises(WebSocketDisconnect) as exc:
        with feed.websocket_connect(f"/notifications/ws?token={token_for(user)}") as ws:
            ws.receive_json()
            feed.portal.call(_block, user)
            feed.portal.call(_notify_and_publish, user, "Should not arrive")
            ws.receive_json()
    assert exc.value.code == status.WS_1008_POLICY_VIOLATION


# ── Cleanup ───────────────────────────────────────────────────

def test_client_disconnect_releases_subscription(feed: TestClient):
    user = feed.portal.call(_make_user, "Aisha Khan")
    channel = notification_channel(str(user.id))

    with feed.websocket_connect(f"/notifications/ws?token={token_for(user)}") as ws:
        ws.receive_json()
        ws.send_text("ignored")

    assert feed.portal.call(_wait_for_no_subscribers, channel) == 0
