"""
services/admin/audit.py
Append-only admin audit trail. Entries join the caller's transaction.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AdminAuditLog, User


def record_admin_action(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    payload: Optional[dict] = None,
) -> AdminAuditLog:
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
    )
    db.add(log)
    return log
