"""
shared/store/errors.py
Translate driver-level store failures into StoreUnavailable.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from shared.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

STORE_FAILURES = (OperationalError, InterfaceError, PoolTimeoutError)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """
    Wrap awaited store calls:

        with store_errors("approve question"):
            await db.execute(...)
            await db.commit()
    """
    try:
        yield
    except STORE_FAILURES as exc:
        logger.error(f"Store call failed during {operation}: {exc}")
        raise StoreUnavailable(f"Store unavailable during {operation}") from exc
