import math

from marketplace.models import Pagination
from marketplace.services.errors import MarketplaceValidationError

MAX_PAGE_SIZE = 100


def check_paging(page: int, limit: int) -> int:
    """Validate paging input and return the row offset."""
    if page < 1:
        raise MarketplaceValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise MarketplaceValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit


def build_pagination(total: int, page: int, limit: int) -> Pagination:
    total_pages = math.ceil(total / limit) if total else 0
    return Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next_page=page < total_pages,
        has_prev_page=page > 1,
    )
