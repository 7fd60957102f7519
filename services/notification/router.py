"""
services/notification/router.py
In-app notifications: REST endpoints for the recipient, plus a live feed
over WebSocket that re-sends the sorted list whenever Redis signals a change.
"""

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, get_db_context
from config.redis_client import get_redis, notification_channel
from services.notification import notifier
from shared.exceptions import StoreUnavailable
from shared.middleware.auth import decode_token, get_current_user
from shared.models.models import User, UserStatus
from shared.schemas.schemas import (
    CountResponse,
    MessageResponse,
    NotificationResponse,
    UnreadCountResponse,
)
from shared.store.errors import store_errors

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])

FEED_POLL_SECONDS = 1.0


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    notifications = await notifier.list_notifications(db, current_user, unread_only=unread_only, limit=limit)
    return [NotificationResponse.model_validate(n) for n in notifications]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return UnreadCountResponse(unread=await notifier.unread_count(db, current_user))


@router.post("/read-all", response_model=CountResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await notifier.mark_all_read(db, current_user)
    return CountResponse(message="All notifications marked as read", count=count)


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await notifier.mark_read(db, current_user, notification_id)
    return MessageResponse(message="Marked as read")


# ── Live Feed ─────────────────────────────────────────────────

async def _send_snapshot(websocket: WebSocket, user: User) -> None:
    async with get_db_context() as db:
        notifications = await notifier.list_notifications(db, user)
    items = [NotificationResponse.model_validate(n).model_dump(mode="json") for n in notifications]
    await websocket.send_json({
        "notifications": items,
        "unread": sum(1 for item in items if not item["is_read"]),
    })


async def _still_allowed(redis, token: str, user_id: UUID) -> bool:
    """Token not revoked and account not blocked or deleted."""
    if await decode_token(token, redis) is None:
        return False
    async with get_db_context() as db:
        with store_errors("load feed user"):
            user = await db.get(User, user_id)
    return user is not None and user.status != UserStatus.BLOCKED


async def _push_on_tick(websocket: WebSocket, redis, pubsub, token: str, user: User) -> None:
    while True:
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=FEED_POLL_SECONDS)
        if message is None:
            continue
        if not await _still_allowed(redis, token, user.id):
            logger.info(f"Notification feed for user {user.id} closed: access revoked")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await _send_snapshot(websocket, user)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Client frames are ignored; returns once the client goes away."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Notification feed client disconnected")


@router.websocket("/ws")
async def notification_feed(websocket: WebSocket, token: str = Query(...)):
    """
    Authenticated live notification feed.

    Auth
    ----
    - Expects the access token as the `token` query parameter.
    - Re-checked on every tick: a revoked token or blocked user ends the feed.

    Protocol
    --------
    - Upon connect: sends the full list, newest first, with the unread count.
    - Each tick on the user's Redis channel: sends the list again.
    - Anything the client sends is ignored.

    Close Codes
    -----------
    - 1008: Policy Violation (bad token or blocked user).
    - 1011: Redis or the database became unavailable.
    """
    redis = get_redis()
    await websocket.accept()

    token_data = await decode_token(token, redis)
    if token_data is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    async with get_db_context() as db:
        with store_errors("load feed user"):
            user = await db.get(User, token_data.user_id)
    if user is None or user.status == UserStatus.BLOCKED:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    pubsub = redis.pubsub()
    await pubsub.subscribe(notification_channel(str(user.id)))
    tasks: list[asyncio.Task] = []
    try:
        await _send_snapshot(websocket, user)
        tasks = [
            asyncio.create_task(_push_on_tick(websocket, redis, pubsub, token, user)),
            asyncio.create_task(_wait_for_disconnect(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    except WebSocketDisconnect:
        logger.info(f"Notification feed closed for user {user.id}")
    except (RedisError, StoreUnavailable) as exc:
        logger.warning(f"Notification feed for user {user.id} lost a backend: {exc}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await pubsub.unsubscribe()
        await pubsub.aclose()
