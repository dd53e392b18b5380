"""Translate SQLAlchemy/driver errors into the enrollment error taxonomy."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from marketplace.core.errors import DuplicateKeyError, StorageUnavailableError

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"


def _is_unique_violation(exc: IntegrityError) -> bool:
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code is not None:
        return code == _UNIQUE_VIOLATION
    return "duplicate key" in str(exc.orig).lower()


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Wrap a repository operation.

    Unique violations become DuplicateKeyError; lost or refused connections
    become StorageUnavailableError.  Anything else propagates unchanged.
    """
    try:
        yield
    except IntegrityError as exc:
        if not _is_unique_violation(exc):
            raise
        raise DuplicateKeyError(
            "uniqueness constraint violated", {"operation": operation}
        ) from exc
    except DBAPIError as exc:
        if not (
            exc.connection_invalidated
            or isinstance(exc, (OperationalError, InterfaceError))
        ):
            raise
        logger.warning("Storage unavailable during %s", operation, exc_info=True)
        raise StorageUnavailableError(
            "storage unavailable", {"operation": operation}
        ) from exc
    except (ConnectionError, TimeoutError) as exc:
        logger.warning("Storage unreachable during %s", operation, exc_info=True)
        raise StorageUnavailableError(
            "storage unavailable", {"operation": operation}
        ) from exc
