"""
Optimistic locking for match and Time Attack writes.

The ``version`` column of each match table is a SQLAlchemy ``version_id_col``:
every UPDATE checks the version it read and bumps it, raising StaleDataError
when another writer got there first. Callers also pass the version their
client last saw; a mismatch there is reported straight away as an
OptimisticLockError since retrying cannot fix it.
"""
import logging
import random
import time
from typing import Callable, Dict, Optional, TypeVar
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from .models import TTEntry, db

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.1
DEFAULT_MAX_DELAY = 1.0


class OptimisticLockError(Exception):
    """Raised when a write is based on a stale version of a row."""

    def __init__(self, message: str, current_version: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.current_version = current_version


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY,
                  max_delay: float = DEFAULT_MAX_DELAY) -> float:
    """Exponential backoff with up to 10% jitter, capped at max_delay."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return min(delay + random.uniform(0, delay * 0.1), max_delay)


def update_with_retry(fn: Callable[[], T], max_retries: int = DEFAULT_MAX_RETRIES,
                      base_delay: float = DEFAULT_BASE_DELAY,
                      max_delay: float = DEFAULT_MAX_DELAY,
                      sleep: Callable[[float], None] = time.sleep) -> T:
    """Run ``fn`` and commit, retrying when a concurrent write wins the race.

    ``fn`` must re-read what it updates on every call. After ``max_retries``
    failed retries an OptimisticLockError is raised.
    """
    attempt = 0
    while True:
        try:
            result = fn()
            db.session.commit()
            return result
        except StaleDataError:
            db.session.rollback()
            if attempt >= max_retries:
                raise OptimisticLockError(
                    f'Update failed after {max_retries} retries due to concurrent modifications'
                )
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f'Concurrent update detected, retrying in {delay:.3f}s (attempt {attempt + 1})')
            sleep(delay)
            attempt += 1
        except OptimisticLockError:
            db.session.rollback()
            raise


def _load_for_update(model, row_id, expected_version: int):
    # Each retry must see the committed row, not the cached identity.
    stmt = select(model).where(model.id == row_id).execution_options(populate_existing=True)
    row = db.session.execute(stmt).scalar_one_or_none()
    if row is None:
        raise LookupError(f'{model.__name__} {row_id} not found')
    if row.version != expected_version:
        raise OptimisticLockError(
            f'{model.__name__} was modified by another request', row.version
        )
    return row


def update_match_score(model, match_id: str, expected_version: int, score1: int, score2: int,
                       completed: bool = False, detail=None, score_fields=('score1', 'score2'),
                       detail_field: str = 'rounds', **kwargs):
    """Write both scores of a match guarded by its version.

    Returns the updated match; ``match.version`` is the new version.
    """
    def _update():
        match = _load_for_update(model, match_id, expected_version)
        setattr(match, score_fields[0], score1)
        setattr(match, score_fields[1], score2)
        match.completed = completed
        if detail is not None:
            setattr(match, detail_field, detail)
        return match

    return update_with_retry(_update, **kwargs)


def update_tt_entry(entry_id: str, expected_version: int, changes: Dict, **kwargs):
    """Apply column ``changes`` to a Time Attack entry guarded by its version."""
    def _update():
        entry = _load_for_update(TTEntry, entry_id, expected_version)
        for key, value in changes.items():
            setattr(entry, key, value)
        return entry

    return update_with_retry(_update, **kwargs)
