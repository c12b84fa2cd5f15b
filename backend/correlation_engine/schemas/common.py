"""Common API response schemas."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """Offset-paginated list envelope consumed by the admin tables."""

    items: list[T]
    total: int
    limit: int
    offset: int
