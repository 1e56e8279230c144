"""
Optimistic Locking Infrastructure
Version-based concurrency control and compare-and-set status claims
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Type

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from database import managed_session
from models import Base
from utils.error_handler import StateConflictError, ErrorCodes

logger = logging.getLogger(__name__)


class OptimisticLockingError(StateConflictError):
    """Raised when optimistic locking fails due to version conflict"""

    default_code = ErrorCodes.CONCURRENT_MODIFICATION


@contextmanager
def versioned_session(session_factory: sessionmaker) -> Iterator[Session]:
    """
    managed_session that reports version conflicts as OptimisticLockingError.

    Projects, milestones and disputes carry a version_id_col, so a flush that
    races another writer raises StaleDataError; callers see a state conflict
    and should re-fetch.
    """
    try:
        with managed_session(session_factory) as session:
            yield session
    except StaleDataError as e:
        logger.warning(f"🔒 Optimistic lock conflict: {e}")
        raise OptimisticLockingError(
            "Record was modified by another request; re-fetch and retry",
            details={"reason": str(e)},
        ) from e


def claim(
    session: Session,
    model_class: Type[Base],
    entity_id: Any,
    expected: Dict[str, Any],
    updates: Dict[str, Any],
) -> bool:
    """
    Atomic conditional update: apply updates only if every expected column
    still holds its expected value. Bumps the row version.

    Returns:
        True if this caller won the row, False if another writer got there first
    """
    conditions = [model_class.id == entity_id]
    for column_name, value in expected.items():
        column = getattr(model_class, column_name)
        conditions.append(column.is_(None) if value is None else column == value)

    stmt = (
        update(model_class)
        .where(*conditions)
        .values(**updates, version=model_class.version + 1)
        .execution_options(synchronize_session="fetch")
    )
    result = session.execute(stmt)

    if result.rowcount == 0:
        logger.warning(
            f"🔒 Claim lost: {model_class.__name__} id={entity_id} expected={expected}"
        )
        return False

    logger.debug(f"✅ Claimed {model_class.__name__} id={entity_id} -> {updates}")
    return True
