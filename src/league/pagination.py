"""
Offset pagination for list endpoints.
"""
import math
from typing import Dict, Iterable, Optional, Tuple
from sqlalchemy import func, select

from .models import db
from .soft_delete import is_soft_deletable, with_deleted

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def _to_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_pagination_params(page=None, limit=None) -> Tuple[int, int, int]:
    """Clamp raw page/limit values. Returns (page, limit, offset)."""
    page = max(1, _to_int(page, DEFAULT_PAGE))
    limit = _to_int(limit, DEFAULT_LIMIT)
    if limit < 1:
        limit = DEFAULT_LIMIT if limit == 0 else 1
    limit = min(limit, MAX_LIMIT)
    return page, limit, (page - 1) * limit


def build_meta(total: int, page: int, limit: int) -> Dict:
    return {
        'total': total,
        'page': page,
        'limit': limit,
        'totalPages': max(1, math.ceil(total / limit)) if limit else 1,
    }


def paginate(model, where: Iterable = (), order_by: Iterable = (), page=None, limit=None,
             serialize=None, options: Optional[Iterable] = None, include_deleted: bool = False) -> Dict:
    """
    One page of ``model`` rows.

    Returns {'data': [...], 'meta': {'total', 'page', 'limit', 'totalPages'}}.
    Rows are passed through ``serialize`` (default: ``row.to_dict()``).
    """
    page, limit, offset = get_pagination_params(page, limit)
    where = list(where)
    if is_soft_deletable(model) and not include_deleted:
        where.append(model.deleted_at.is_(None))

    count_stmt = select(func.count()).select_from(model).where(*where)
    stmt = select(model).where(*where).order_by(*order_by).offset(offset).limit(limit)
    if options:
        stmt = stmt.options(*options)
    if include_deleted:
        count_stmt, stmt = with_deleted(count_stmt), with_deleted(stmt)

    total = db.session.execute(count_stmt).scalar_one()
    rows = db.session.execute(stmt).scalars().all()
    serialize = serialize or (lambda row: row.to_dict())
    return {'data': [serialize(row) for row in rows], 'meta': build_meta(total, page, limit)}
