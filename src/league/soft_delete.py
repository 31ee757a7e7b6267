"""
Soft delete support.

Rows of models that carry ``deleted_at`` are never removed by admin deletes;
the timestamp is set instead. A session-level ``do_orm_execute`` hook adds
``deleted_at IS NULL`` to every ORM SELECT touching those models, including
relationship and lazy loads. Execute a statement with
``include_deleted=True`` (see with_deleted) to see deleted rows.
"""
import logging
from typing import Optional, Type
from sqlalchemy import event, select
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from .models import SoftDeleteMixin, db, utcnow

logger = logging.getLogger(__name__)

INCLUDE_DELETED = 'include_deleted'


@event.listens_for(Session, 'do_orm_execute')
def _filter_soft_deleted(execute_state: ORMExecuteState):
    if (
        execute_state.is_select
        and not execute_state.is_column_load
        and not execute_state.is_relationship_load
        and not execute_state.execution_options.get(INCLUDE_DELETED, False)
    ):
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                SoftDeleteMixin,
                lambda cls: cls.deleted_at.is_(None),
                include_aliases=True,
            )
        )


def is_soft_deletable(model) -> bool:
    return isinstance(model, type) and issubclass(model, SoftDeleteMixin)


def is_deleted(obj) -> bool:
    return getattr(obj, 'deleted_at', None) is not None


def with_deleted(stmt):
    """Return ``stmt`` marked so the soft delete filter is skipped."""
    return stmt.execution_options(**{INCLUDE_DELETED: True})


def find_by_id(model: Type, obj_id, include_deleted: bool = False):
    """Load one row by primary key, honouring the soft delete filter.

    ``Session.get`` may answer from the identity map without a SELECT, so it
    can hand back a row deleted earlier in the same session; this never does.
    """
    if obj_id is None:
        return None
    stmt = select(model).where(model.id == obj_id)
    if include_deleted:
        stmt = with_deleted(stmt)
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is not None and not include_deleted and is_deleted(obj):
        return None
    return obj


def soft_delete(obj, commit: bool = True):
    """Mark ``obj`` deleted. Deleting twice keeps the first timestamp."""
    if not isinstance(obj, SoftDeleteMixin):
        raise TypeError(f'{type(obj).__name__} does not support soft delete')
    if obj.deleted_at is None:
        obj.deleted_at = utcnow()
        logger.info(f'Soft deleted {type(obj).__name__} {obj.id}')
    if commit:
        db.session.commit()
    return obj


def restore(obj, commit: bool = True):
    """Clear the deletion timestamp of ``obj``."""
    if not isinstance(obj, SoftDeleteMixin):
        raise TypeError(f'{type(obj).__name__} does not support soft delete')
    if obj.deleted_at is not None:
        obj.deleted_at = None
        logger.info(f'Restored {type(obj).__name__} {obj.id}')
    if commit:
        db.session.commit()
    return obj


def find_deleted(model: Type, *where, order_by=None, limit: Optional[int] = None):
    """List only the soft-deleted rows of ``model``."""
    stmt = with_deleted(select(model).where(model.deleted_at.is_not(None), *where))
    if order_by is not None:
        stmt = stmt.order_by(order_by)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.session.execute(stmt).scalars())
