"""
services/notification/notifier.py
Notification side-channel: creation contract plus recipient operations.

notify() is best-effort. The insert runs in a SAVEPOINT inside the caller's
transaction, so it commits or rolls back together with the workflow write,
while a failed insert is logged and dropped without failing the transition.
"""

import logging
import uuid
from typing import Iterable, Optional

from redis.exceptions import RedisError
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from services.admin.audit import record_admin_action
from services.user.roles import is_admin
from shared.exceptions import NotFound, PermissionDenied, ValidationError
from shared.models.models import Notification, NotificationType, User, UserStatus, utcnow
from shared.store.errors import store_errors
from shared.store.query import by_timestamp

logger = logging.getLogger(__name__)

# Session.info key collecting recipients to wake after commit
PENDING_FEEDS = "pending_notification_feeds"


# ── Templates ─────────────────────────────────────────────────

TEMPLATES = {
    NotificationType.QUESTION_ANSWERED: {
        "title": "Your question has been answered",
        "message": 'Your question "{question_title}" has been answered by {scholar_name}.',
    },
    NotificationType.QUESTION_APPROVED: {
        "title": "Your question has been approved",
        "message": 'Your question "{question_title}" has been approved and is awaiting a scholar\'s answer.',
    },
    NotificationType.QUESTION_REJECTED: {
        "title": "Your question has been rejected",
        "message": 'Your question "{question_title}" has been rejected. Please review our guidelines for asking questions.',
    },
    NotificationType.QUESTION_ASSIGNED: {
        "title": "A question has been assigned to you",
        "message": 'You have been assigned to answer the question: "{question_title}"',
    },
}


# ── Creation contract ─────────────────────────────────────────

async def notify(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    notification_type: NotificationType,
    title: str,
    message: str,
    related_id: Optional[str] = None,
) -> bool:
    """Create an unread notification. Returns False instead of raising on failure."""
    try:
        async with db.begin_nested():
            db.add(Notification(
                user_id=recipient_id,
                type=notification_type,
                title=title,
                message=message,
                related_id=related_id,
                is_read=False,
            ))
    except SQLAlchemyError as exc:
        logger.warning(
            f"Notification {notification_type.value} for user {recipient_id} was not created: {exc}"
        )
        return False

    db.info.setdefault(PENDING_FEEDS, set()).add(str(recipient_id))
    return True


async def notify_from_template(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    notification_type: NotificationType,
    related_id: Optional[str] = None,
    **template_vars,
) -> bool:
    template = TEMPLATES[notification_type]
    return await notify(
        db,
        recipient_id,
        notification_type,
        template["title"].format(**template_vars),
        template["message"].format(**template_vars),
        related_id=related_id,
    )


async def publish_pending_feeds(db: AsyncSession, redis) -> None:
    """Wake live feeds of everyone notified in this session. Call after commit."""
    recipients: Iterable[str] = db.info.pop(PENDING_FEEDS, set())
    cache = RedisCache(redis)
    for recipient_id in recipients:
        try:
            await cache.publish_feed_tick(recipient_id)
        except RedisError as exc:
            logger.warning(f"Feed tick for user {recipient_id} not published: {exc}")


# ── Recipient operations ──────────────────────────────────────

async def list_notifications(
    db: AsyncSession,
    actor: User,
    unread_only: bool = False,
    limit: Optional[int] = None,
) -> list[Notification]:
    """The recipient's notifications, newest first (sorted client-side)."""
    query = select(Notification).where(Notification.user_id == actor.id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))

    with store_errors("list notifications"):
        result = await db.execute(query)
    notifications = sorted(result.scalars().all(), key=by_timestamp("created_at"), reverse=True)
    return notifications[:limit] if limit else notifications


async def unread_count(db: AsyncSession, actor: User) -> int:
    with store_errors("count unread notifications"):
        count = await db.scalar(
            select(func.count(Notification.id)).where(
                Notification.user_id == actor.id,
                Notification.is_read.is_(False),
            )
        )
    return count or 0


async def mark_read(db: AsyncSession, actor: User, notification_id: uuid.UUID) -> Notification:
    with store_errors("load notification"):
        notification = await db.get(Notification, notification_id)
    if notification is None:
        raise NotFound("Notification not found", entity_id=str(notification_id))
    if notification.user_id != actor.id:
        raise PermissionDenied("Only the recipient can mark a notification as read")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        with store_errors("mark notification read"):
            await db.commit()
    return notification


async def mark_all_read(db: AsyncSession, actor: User) -> int:
    with store_errors("mark all notifications read"):
        result = await db.execute(
            update(Notification)
            .where(Notification.user_id == actor.id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
        )
        await db.commit()
    return result.rowcount or 0


# ── Announcements ─────────────────────────────────────────────

async def announce(db: AsyncSession, actor: User, title: str, message: str) -> int:
    """Broadcast a system announcement to every active user. Returns how many were created."""
    if not is_admin(actor):
        raise PermissionDenied("Only admins can send announcements")
    if not title.strip() or not message.strip():
        raise ValidationError("Announcement title and message are required")

    with store_errors("load announcement recipients"):
        result = await db.execute(select(User.id).where(User.status == UserStatus.ACTIVE))
    recipient_ids = list(result.scalars().all())

    created = 0
    for recipient_id in recipient_ids:
        if await notify(db, recipient_id, NotificationType.SYSTEM_ANNOUNCEMENT, title, message):
            created += 1

    record_admin_action(db, actor, "SEND_ANNOUNCEMENT", "Notification", None,
                        {"title": title, "recipients": created})
    with store_errors("send announcement"):
        await db.commit()
    logger.info(f"Announcement '{title}' sent to {created} users by {actor.id}")
    return created
