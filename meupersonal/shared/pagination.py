"""Shared pagination helpers for list endpoints"""

import math
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import Query

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


@dataclass
class PageParams:
    page: int = 1
    limit: int = DEFAULT_LIMIT
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    sortOrder: Literal["asc", "desc"] = Query("desc"),
) -> PageParams:
    return PageParams(page=page, limit=limit, sort_order=sortOrder)


def build_paginated_response(data: list[Any], total: int, params: PageParams) -> dict:
    total_pages = math.ceil(total / params.limit) if params.limit else 0
    return {
        "data": data,
        "pagination": {
            "page": params.page,
            "limit": params.limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": params.page < total_pages,
            "hasPrev": params.page > 1,
        },
    }
