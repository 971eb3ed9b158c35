"""
Page window arithmetic for session listing
"""
import math
from dataclasses import dataclass
from typing import Generic, List, TypeVar

from orgchat.core.config import settings
from orgchat.core.errors import ValidationFailed

T = TypeVar("T")


def validate_window(page: int, page_size: int, max_page_size: int = None) -> None:
    max_page_size = max_page_size or settings.MAX_PAGE_SIZE
    errors = []
    if not isinstance(page, int) or page < 1:
        errors.append({"loc": ["page"], "msg": "page must be an integer >= 1"})
    if not isinstance(page_size, int) or not 1 <= page_size <= max_page_size:
        errors.append({"loc": ["pageSize"], "msg": f"pageSize must be between 1 and {max_page_size}"})
    if errors:
        raise ValidationFailed("Invalid pagination parameters", errors)


def offset_for(page: int, page_size: int) -> int:
    return (page - 1) * page_size


def total_pages(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if total else 0


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def build(cls, items: List[T], total: int, page: int, page_size: int) -> "Page[T]":
        return cls(
            items=list(items),
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages(total, page_size),
        )
