from typing import Any, Dict, Generic, List, Optional, TypeVar
from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T] = Field(default_factory=list)  # type: ignore[assignment]
    pagination: PaginationMeta


class ErrorBody(BaseModel):
    code: str
    message: str
    retryable: Optional[bool] = None
    details: Optional[List[Dict[str, Any]]] = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    error: ErrorBody


def build_pagination(page: int, limit: int, total: int) -> PaginationMeta:
    total_pages = max(1, (total + limit - 1) // limit)
    return PaginationMeta(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


def iso(value) -> Optional[str]:
    return value.isoformat() if value else None
