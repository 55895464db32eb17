"""Pagination helpers."""


def paginate(limit: int, offset: int, max_limit: int = 200) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    return limit, offset


def page_to_offset(page: int, limit: int, max_limit: int = 200) -> tuple[int, int]:
    """1-based page number -> clamped (limit, offset)."""
    limit, _ = paginate(limit, 0, max_limit)
    return paginate(limit, (max(page, 1) - 1) * limit, max_limit)
