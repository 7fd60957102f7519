"""
shared/store/query.py
Two-tier read strategy for filters the store may not be able to serve.

Tier 1 sends the full filter set to the store (needs a composite index).
Tier 2 sends only a broad filter and applies the rest in Python. Tier 2
reads more rows, so every degradation is logged with the query name.
Tier 1 runs inside a SAVEPOINT so its failure leaves the surrounding
transaction usable for tier 2.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import Select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.store.errors import store_errors

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def by_timestamp(attr: str) -> Callable[[Any], datetime]:
    """Sort key on a datetime attribute; missing values sort as oldest."""
    def key(row: Any) -> datetime:
        return getattr(row, attr, None) or _EPOCH
    return key


class TwoTierQuery:
    def __init__(
        self,
        name: str,
        indexed: Select,
        broad: Select,
        predicate: Callable[[Any], bool],
        sort_key: Optional[Callable[[Any], Any]] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ):
        self.name = name
        self.indexed = indexed
        self.broad = broad
        self.predicate = predicate
        self.sort_key = sort_key
        self.descending = descending
        self.limit = limit
        self.degraded = False

    def _finish(self, rows: Sequence[Any]) -> list:
        rows = list(rows)
        if self.sort_key is not None:
            rows.sort(key=self.sort_key, reverse=self.descending)
        if self.limit is not None:
            rows = rows[: self.limit]
        return rows

    async def _run_indexed(self, db: AsyncSession) -> Optional[list]:
        try:
            async with db.begin_nested():
                result = await db.execute(self.indexed)
        except DBAPIError as exc:
            logger.warning(f"Indexed query '{self.name}' failed, falling back to client-side filter: {exc}")
            return None
        return list(result.scalars().all())

    async def run(self, db: AsyncSession) -> list:
        if settings.QUERY_INDEXED_TIER_ENABLED:
            rows = await self._run_indexed(db)
            if rows is not None:
                return self._finish(rows)
        else:
            logger.info(f"Indexed tier disabled, running '{self.name}' in degraded mode")

        self.degraded = True
        with store_errors(f"query {self.name}"):
            result = await db.execute(self.broad)
        return self._finish(row for row in result.scalars().all() if self.predicate(row))
