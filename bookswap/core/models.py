"""Data structures shared across the application."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, resolved once per HTTP request."""
    user_id: int
    email: str
    full_name: Optional[str] = None
    role: Optional[str] = None


@dataclass
class BookFilters:
    """Catalog listing filters. Text filters match case-insensitive substrings."""
    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None          # exact match
    owner_id: Optional[int] = None
    borrower_id: Optional[int] = None
