from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    detail: Any
    code: str | None = None


class PaginationMeta(BaseModel):
    total_items: int
    total_pages: int
    page: int
    limit: int

    @classmethod
    def build(cls, total_items: int, page: int, limit: int) -> "PaginationMeta":
        total_pages = max(1, (total_items + limit - 1) // limit)
        return cls(total_items=total_items, total_pages=total_pages, page=page, limit=limit)
