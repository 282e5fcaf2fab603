"""Catalog helpers: listing validation, owner-only edits and returns."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, TYPE_CHECKING
from urllib.parse import urlparse

from bookswap.core.config import get_marketplace_settings
from bookswap.core.errors import (
    FailedPreconditionError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from bookswap.core.models import BookFilters
from bookswap.core.return_policy import ReturnPolicy, can_mark_returned, resolve_return_policy

VALID_BOOK_STATUSES = frozenset({"available", "rented", "exchanged"})
LENT_BOOK_STATUSES = frozenset({"rented", "exchanged"})
REQUIRED_BOOK_TEXT_FIELDS = ("title", "author", "location", "description")
EDITABLE_BOOK_FIELDS = ("title", "author", "genres", "location", "description", "image_url")
DEFAULT_BOOK_IMAGE_URL = "/bookcover.png"
MAX_BOOK_TEXT_LENGTH = 200
MAX_BOOK_DESCRIPTION_LENGTH = 5000
MAX_BOOK_GENRES = 10

if TYPE_CHECKING:
    from bookswap.core.market_db import MarketDB


def normalize_book_status(status: Any) -> str:
    """Validate and normalize book status values."""
    if not isinstance(status, str):
        raise ValueError(f"Invalid book status: {status}")
    normalized = status.strip().lower()
    if normalized not in VALID_BOOK_STATUSES:
        raise ValueError(f"Invalid book status: {status}")
    return normalized


def normalize_genres(genres: Any) -> list[str]:
    """Accept a list or comma-separated string and return distinct non-empty tags."""
    if isinstance(genres, str):
        candidates = genres.split(",")
    elif isinstance(genres, (list, tuple)):
        candidates = genres
    else:
        raise ValueError("At least one genre is required.")

    normalized: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        if not isinstance(candidate, str):
            raise ValueError("Genres must be strings")
        tag = candidate.strip()
        if not tag or tag.lower() in seen:
            continue
        if len(tag) > MAX_BOOK_TEXT_LENGTH:
            raise ValueError(f"Genre must be <= {MAX_BOOK_TEXT_LENGTH} characters")
        seen.add(tag.lower())
        normalized.append(tag)

    if not normalized:
        raise ValueError("At least one genre is required.")
    if len(normalized) > MAX_BOOK_GENRES:
        raise ValueError(f"A book can have at most {MAX_BOOK_GENRES} genres")
    return normalized


def normalize_image_url(image_url: Any) -> str | None:
    """Validate an optional image URL (absolute http(s) or site-relative path)."""
    if image_url is None:
        return None
    if not isinstance(image_url, str):
        raise ValueError("Invalid image URL")
    normalized = image_url.strip()
    if not normalized:
        return None
    if normalized.startswith("/") and not normalized.startswith("//"):
        return normalized
    parsed = urlparse(normalized)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Invalid image URL")
    return normalized


def _normalize_text_field(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"{field} is required")
    normalized = value.strip()
    max_length = MAX_BOOK_DESCRIPTION_LENGTH if field == "description" else MAX_BOOK_TEXT_LENGTH
    if len(normalized) > max_length:
        raise InvalidArgumentError(f"{field} must be <= {max_length} characters")
    return normalized


def _validate_genres(value: Any) -> list[str]:
    try:
        return normalize_genres(value)
    except ValueError as exc:
        raise InvalidArgumentError(str(exc)) from exc


def _validate_image_url(value: Any) -> str | None:
    try:
        return normalize_image_url(value)
    except ValueError as exc:
        raise InvalidArgumentError(str(exc)) from exc


def _genres_from_payload(payload: dict[str, Any]) -> Any:
    # Older clients send a single "genre" field.
    if "genres" in payload:
        return payload["genres"]
    return payload.get("genre")


def create_book(
    market_db: "MarketDB",
    *,
    owner_id: int,
    payload: Any,
) -> dict[str, Any]:
    """Create an available book listing owned by the actor."""
    if not isinstance(payload, dict):
        raise InvalidArgumentError("No data provided")

    missing = [
        field
        for field in REQUIRED_BOOK_TEXT_FIELDS
        if not isinstance(payload.get(field), str) or not payload[field].strip()
    ]
    if _genres_from_payload(payload) in (None, "", []):
        missing.insert(2, "genres")
    if missing:
        raise InvalidArgumentError(f"All fields are required. Missing: {', '.join(missing)}")

    values = {field: _normalize_text_field(field, payload[field]) for field in REQUIRED_BOOK_TEXT_FIELDS}
    genres = _validate_genres(_genres_from_payload(payload))
    image_url = _validate_image_url(payload.get("image_url")) or DEFAULT_BOOK_IMAGE_URL

    return market_db.create_book(
        owner_id=owner_id,
        genres=genres,
        image_url=image_url,
        **values,
    )


def get_book_or_404(market_db: "MarketDB", book_id: int) -> dict[str, Any]:
    book = market_db.get_book(book_id)
    if book is None:
        raise NotFoundError("Book not found")
    return book


def _project_user(user: dict[str, Any] | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {
        "id": user["id"],
        "full_name": user.get("full_name"),
        "email": user.get("email"),
        "photo_url": user.get("photo_url"),
    }


def build_book_views(
    market_db: "MarketDB",
    books: list[dict[str, Any]],
    *,
    include_requests: bool = False,
) -> list[dict[str, Any]]:
    """Attach owner, borrower and (optionally) pending request summaries."""
    user_ids = {book["owner_id"] for book in books}
    user_ids |= {book["borrower_id"] for book in books if book.get("borrower_id") is not None}

    pending_by_book: dict[int, list[dict[str, Any]]] = {}
    if include_requests:
        request_ids = [request_id for book in books for request_id in book.get("requests", [])]
        request_rows = market_db.get_requests_by_ids(request_ids)
        user_ids |= {row["requester_id"] for row in request_rows.values()}
        for book in books:
            pending_by_book[book["id"]] = [
                request_rows[request_id]
                for request_id in book.get("requests", [])
                if request_id in request_rows
            ]

    users = market_db.get_users_by_ids(user_ids)

    views = []
    for book in books:
        view = dict(book)
        view["owner"] = _project_user(users.get(book["owner_id"]))
        borrower_id = book.get("borrower_id")
        view["borrower"] = _project_user(users.get(borrower_id)) if borrower_id is not None else None
        if include_requests:
            view["pending_requests"] = [
                {
                    "id": row["id"],
                    "type": row["type"],
                    "status": row["status"],
                    "created_at": row["created_at"],
                    "requester": _project_user(users.get(row["requester_id"])),
                }
                for row in pending_by_book.get(book["id"], [])
            ]
        views.append(view)
    return views


def get_book_view(market_db: "MarketDB", book_id: int) -> dict[str, Any]:
    """Return one book with owner, borrower and outstanding requests."""
    book = get_book_or_404(market_db, book_id)
    return build_book_views(market_db, [book], include_requests=True)[0]


def _ensure_book_owner(book: dict[str, Any], actor_user_id: int, action: str) -> None:
    if book["owner_id"] != actor_user_id:
        raise ForbiddenError(f"Only the owner can {action} this book")


def update_book(
    market_db: "MarketDB",
    *,
    book_id: int,
    actor_user_id: int,
    payload: Any,
) -> dict[str, Any]:
    """Apply owner edits to listing fields. Status and borrower are not editable here."""
    if not isinstance(payload, dict):
        raise InvalidArgumentError("No data provided")

    book = get_book_or_404(market_db, book_id)
    _ensure_book_owner(book, actor_user_id, "update")

    updates: dict[str, Any] = {}
    for field in REQUIRED_BOOK_TEXT_FIELDS:
        if payload.get(field) is not None:
            updates[field] = _normalize_text_field(field, payload[field])
    genres = _genres_from_payload(payload)
    if genres is not None:
        updates["genres"] = _validate_genres(genres)
    if "image_url" in payload:
        updates["image_url"] = _validate_image_url(payload["image_url"]) or DEFAULT_BOOK_IMAGE_URL

    if not updates:
        return book
    return market_db.update_book(book_id, **updates)


def delete_book(
    market_db: "MarketDB",
    *,
    book_id: int,
    actor_user_id: int,
) -> None:
    """Delete a listing that is neither lent out nor awaiting a decision."""
    book = get_book_or_404(market_db, book_id)
    _ensure_book_owner(book, actor_user_id, "delete")
    if book["status"] in LENT_BOOK_STATUSES:
        raise FailedPreconditionError(
            f"Cannot delete a book that is currently {book['status']}",
            code="book_lent_out",
        )
    if market_db.count_pending_requests(book_id=book_id):
        raise FailedPreconditionError(
            "Cannot delete a book with pending requests",
            code="book_has_pending_requests",
        )
    try:
        market_db.delete_book(book_id)
    except ValueError as exc:
        raise FailedPreconditionError(str(exc)) from exc


def _parse_positive_int(value: Any, field: str, default: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"{field} must be a positive integer") from exc
    if parsed < 1:
        raise InvalidArgumentError(f"{field} must be a positive integer")
    return parsed


def resolve_pagination(page: Any, limit: Any, settings: dict[str, Any] | None = None) -> tuple[int, int]:
    """Validate page/limit and clamp limit to the configured maximum."""
    if settings is None:
        settings = get_marketplace_settings()
    page_number = _parse_positive_int(page, "page", 1)
    limit_number = _parse_positive_int(limit, "limit", settings["BOOK_LIST_DEFAULT_LIMIT"])
    return page_number, min(limit_number, settings["BOOK_LIST_MAX_LIMIT"])


def list_books(
    market_db: "MarketDB",
    *,
    filters: BookFilters,
    page: Any = None,
    limit: Any = None,
) -> dict[str, Any]:
    """List books matching filters with pagination metadata."""
    if filters.status is not None:
        try:
            filters = replace(filters, status=normalize_book_status(filters.status))
        except ValueError as exc:
            raise InvalidArgumentError(str(exc)) from exc

    page_number, limit_number = resolve_pagination(page, limit)
    rows, total = market_db.list_books(
        filters,
        limit=limit_number,
        offset=(page_number - 1) * limit_number,
    )
    return {
        "total": total,
        "page": page_number,
        "limit": limit_number,
        "data": build_book_views(market_db, rows),
    }


def list_owned_books(market_db: "MarketDB", *, owner_id: int) -> list[dict[str, Any]]:
    """List every book the actor owns, with outstanding requests."""
    rows, _total = market_db.list_books(BookFilters(owner_id=owner_id))
    return build_book_views(market_db, rows, include_requests=True)


def list_borrowed_books(
    market_db: "MarketDB",
    *,
    borrower_id: int,
    status: str,
) -> list[dict[str, Any]]:
    """List books the actor currently holds as renter or exchanger."""
    normalized_status = normalize_book_status(status)
    if normalized_status not in LENT_BOOK_STATUSES:
        raise InvalidArgumentError("status must be rented or exchanged")
    rows, _total = market_db.list_books(
        BookFilters(borrower_id=borrower_id, status=normalized_status)
    )
    return build_book_views(market_db, rows)


def mark_returned(
    market_db: "MarketDB",
    *,
    book_id: int,
    actor_user_id: int,
    policy: ReturnPolicy | None = None,
) -> dict[str, Any]:
    """Close a rental: the book becomes available and loses its borrower."""
    if policy is None:
        policy = resolve_return_policy()

    book = get_book_or_404(market_db, book_id)
    # State first: a returned book has no borrower left to authorize against.
    if book["status"] != "rented":
        raise FailedPreconditionError(
            "Only rented books can be marked as returned",
            code="book_not_rented",
        )
    if not can_mark_returned(book, actor_user_id, policy):
        raise ForbiddenError("You are not authorized to return this book")

    try:
        return market_db.mark_book_returned(book_id)
    except ValueError as exc:
        raise FailedPreconditionError(
            "Only rented books can be marked as returned",
            code="book_not_rented",
        ) from exc
