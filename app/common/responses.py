"""
Uniform response envelope: {success, data, meta} / {success, error}.
"""
import math
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from app.core.config import settings

T = TypeVar("T")


class PaginationMeta(BaseModel):
    page: int
    page_size: int = Field(..., alias="pageSize")
    total_items: int = Field(..., alias="totalItems")
    total_pages: int = Field(..., alias="totalPages")

    class Config:
        populate_by_name = True


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: T
    meta: Optional[dict] = None


class PaginatedResponse(BaseModel, Generic[T]):
    success: bool = True
    data: List[T]
    meta: PaginationMeta


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail


def normalize_pagination(page: Optional[int], page_size: Optional[int]) -> tuple[int, int]:
    """Clamp page to >= 1 and page_size into 1..MAX_PAGE_SIZE."""
    page = max(page or 1, 1)
    if page_size is None:
        page_size = settings.DEFAULT_PAGE_SIZE
    page_size = min(max(page_size, 1), settings.MAX_PAGE_SIZE)
    return page, page_size


def build_pagination_meta(page: int, page_size: int, total_items: int) -> PaginationMeta:
    return PaginationMeta(
        page=page,
        page_size=page_size,
        total_items=total_items,
        total_pages=math.ceil(total_items / page_size) if total_items else 0,
    )


def success_response(data: Any, meta: Optional[dict] = None) -> ApiResponse:
    return ApiResponse(data=data, meta=meta)


def paginated_response(items: List[Any], page: int, page_size: int, total_items: int) -> PaginatedResponse:
    return PaginatedResponse(data=items, meta=build_pagination_meta(page, page_size, total_items))


def error_body(code: str, message: str, details: Optional[Any] = None) -> dict:
    return ErrorResponse(error=ErrorDetail(code=code, message=message, details=details)).model_dump(exclude_none=True)
