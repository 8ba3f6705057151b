from typing import Any, List, Optional, Tuple

from sqlalchemy.orm import Query

from core.config import settings


def normalize_page(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    page = max(1, page or 1)
    limit = limit or settings.default_page_size
    limit = max(1, min(limit, settings.max_page_size))
    return page, limit


def paginate(query: Query, page: Optional[int], limit: Optional[int]) -> Tuple[List[Any], int, int, int]:
    """Returns (items, total, page, limit) for a query already carrying its ordering."""
    page, limit = normalize_page(page, limit)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, total, page, limit
