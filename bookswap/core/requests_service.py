"""Book request lifecycle helpers and service-level validation."""

from __future__ import annotations

import sqlite3
import time
from typing import Any, TYPE_CHECKING

from bookswap.core.config import get_marketplace_settings
from bookswap.core.errors import (
    ConflictError,
    FailedPreconditionError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from bookswap.core.logger import setup_logger

VALID_REQUEST_STATUSES = frozenset({"pending", "accepted", "rejected", "cancelled"})
TERMINAL_REQUEST_STATUSES = frozenset({"accepted", "rejected", "cancelled"})
VALID_REQUEST_TYPES = frozenset({"rent", "exchange"})
BOOK_STATUS_BY_REQUEST_TYPE = {"rent": "rented", "exchange": "exchanged"}
_ACCEPT_RETRY_BACKOFF_SECONDS = 0.05

if TYPE_CHECKING:
    from bookswap.core.market_db import MarketDB

logger = setup_logger(__name__)


class DuplicatePendingRequest(ValueError):
    """Raised by storage when a (book, requester) pair already has a pending request."""


def normalize_request_status(status: Any) -> str:
    """Validate and normalize request status values."""
    if not isinstance(status, str):
        raise ValueError(f"Invalid request status: {status}")
    normalized = status.strip().lower()
    if normalized not in VALID_REQUEST_STATUSES:
        raise ValueError(f"Invalid request status: {status}")
    return normalized


def normalize_request_type(request_type: Any) -> str:
    """Validate and normalize request type values."""
    if not isinstance(request_type, str):
        raise ValueError(f"Invalid request type: {request_type}")
    normalized = request_type.strip().lower()
    if normalized not in VALID_REQUEST_TYPES:
        raise ValueError(f"Invalid request type: {request_type}")
    return normalized


def validate_status_transition(current_status: Any, new_status: Any) -> tuple[str, str]:
    """Validate request status transitions and terminal immutability."""
    current = normalize_request_status(current_status)
    new = normalize_request_status(new_status)
    if current in TERMINAL_REQUEST_STATUSES and new != current:
        raise ValueError("Terminal request statuses are immutable")
    return current, new


def book_status_for_request_type(request_type: Any) -> str:
    """Return the book status an accepted request of this type leads to."""
    return BOOK_STATUS_BY_REQUEST_TYPE[normalize_request_type(request_type)]


def parse_entity_id(value: Any, field: str) -> int:
    """Parse a positive integer id from a payload value."""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidArgumentError(f"{field} must be a positive integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"{field} must be a positive integer") from exc
    if parsed < 1:
        raise InvalidArgumentError(f"{field} must be a positive integer")
    return parsed


def _stale_transition(request_row: dict[str, Any]) -> FailedPreconditionError:
    return FailedPreconditionError(
        f"Request is already {request_row['status']}",
        code="stale_transition",
    )


def create_request(
    market_db: "MarketDB",
    *,
    requester_id: int,
    book_id: Any,
    request_type: Any,
) -> dict[str, Any]:
    """Create a pending request after service-level validation."""
    if request_type is None or (isinstance(request_type, str) and not request_type.strip()):
        raise InvalidArgumentError("type is required")
    try:
        normalized_type = normalize_request_type(request_type)
    except ValueError as exc:
        raise InvalidArgumentError(str(exc)) from exc

    if book_id is None:
        raise InvalidArgumentError("bookId is required")
    parsed_book_id = parse_entity_id(book_id, "bookId")

    book = market_db.get_book(parsed_book_id)
    if book is None:
        raise NotFoundError("Book not found")

    if book["owner_id"] == requester_id:
        raise InvalidArgumentError("You cannot request your own book", code="self_request")

    duplicate = market_db.find_pending_request(book_id=parsed_book_id, requester_id=requester_id)
    if duplicate is not None:
        raise ConflictError(
            "You already have a pending request for this book",
            code="duplicate_pending_request",
        )

    try:
        return market_db.create_request(
            book_id=parsed_book_id,
            requester_id=requester_id,
            owner_id=book["owner_id"],
            request_type=normalized_type,
        )
    except DuplicatePendingRequest as exc:
        raise ConflictError(
            "You already have a pending request for this book",
            code="duplicate_pending_request",
        ) from exc
    except ValueError as exc:
        # The book disappeared between the read and the insert.
        raise NotFoundError(str(exc)) from exc


def get_request_or_404(market_db: "MarketDB", request_id: int) -> dict[str, Any]:
    request_row = market_db.get_request(request_id)
    if request_row is None:
        raise NotFoundError("Request not found")
    return request_row


def ensure_request_participant(
    market_db: "MarketDB",
    *,
    request_id: int,
    actor_user_id: int,
) -> dict[str, Any]:
    """Get request by ID, allowing only its requester or owner to see it."""
    request_row = get_request_or_404(market_db, request_id)
    if actor_user_id not in (request_row["requester_id"], request_row["owner_id"]):
        raise ForbiddenError("You are not a participant in this request")
    return request_row


def _ensure_owner_action(
    market_db: "MarketDB",
    *,
    request_id: int,
    actor_user_id: int,
    action: str,
) -> dict[str, Any]:
    request_row = get_request_or_404(market_db, request_id)
    if request_row["owner_id"] != actor_user_id:
        raise ForbiddenError(f"Only the book owner can {action} this request")
    if request_row["status"] != "pending":
        raise _stale_transition(request_row)
    return request_row


def accept_request(
    market_db: "MarketDB",
    *,
    request_id: int,
    actor_user_id: int,
    max_attempts: int | None = None,
) -> dict[str, Any]:
    """Accept a pending request, lend the book and reject competing requests.

    The storage write is a single transaction. Lock contention is retried
    with every precondition re-checked, so a retry never applies twice.
    """
    if max_attempts is None:
        max_attempts = get_marketplace_settings()["ACCEPT_MAX_ATTEMPTS"]
    max_attempts = max(1, int(max_attempts))

    attempt = 0
    while True:
        attempt += 1
        _ensure_owner_action(
            market_db,
            request_id=request_id,
            actor_user_id=actor_user_id,
            action="accept",
        )
        try:
            result = market_db.accept_request(request_id)
        except sqlite3.OperationalError as exc:
            if attempt >= max_attempts:
                logger.error(
                    f"Accept of request #{request_id} failed after {attempt} attempt(s): {exc}"
                )
                raise
            logger.warning(
                f"Accept of request #{request_id} hit a storage conflict "
                f"(attempt {attempt}/{max_attempts}): {exc}"
            )
            time.sleep(_ACCEPT_RETRY_BACKOFF_SECONDS * attempt)
            continue
        except ValueError as exc:
            current = market_db.get_request(request_id)
            if current is not None and current["status"] != "pending":
                raise _stale_transition(current) from exc
            raise FailedPreconditionError(str(exc), code="book_unavailable") from exc

        if result["rejected_request_ids"]:
            logger.info(
                f"Accepting request #{request_id} rejected competing request(s) "
                f"{result['rejected_request_ids']} on book #{result['book']['id']}"
            )
        return result["request"]


def reject_request(
    market_db: "MarketDB",
    *,
    request_id: int,
    actor_user_id: int,
) -> dict[str, Any]:
    """Reject a pending request as the book owner."""
    _ensure_owner_action(
        market_db,
        request_id=request_id,
        actor_user_id=actor_user_id,
        action="reject",
    )
    try:
        return market_db.update_request_status(
            request_id,
            expected_current_status="pending",
            status="rejected",
        )
    except ValueError as exc:
        raise FailedPreconditionError(str(exc), code="stale_transition") from exc


def cancel_request(
    market_db: "MarketDB",
    *,
    request_id: int,
    actor_user_id: int,
) -> dict[str, Any]:
    """Cancel a pending request sent by the actor."""
    request_row = get_request_or_404(market_db, request_id)
    if request_row["requester_id"] != actor_user_id:
        raise ForbiddenError("Only the requester can cancel this request")
    if request_row["status"] != "pending":
        raise _stale_transition(request_row)

    try:
        return market_db.update_request_status(
            request_id,
            expected_current_status="pending",
            status="cancelled",
        )
    except ValueError as exc:
        raise FailedPreconditionError(str(exc), code="stale_transition") from exc


def _normalize_status_filter(status: Any) -> str | None:
    if status is None or (isinstance(status, str) and not status.strip()):
        return None
    try:
        return normalize_request_status(status)
    except ValueError as exc:
        raise InvalidArgumentError(str(exc)) from exc


def _project_user(user: dict[str, Any] | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {
        "id": user["id"],
        "full_name": user.get("full_name"),
        "photo_url": user.get("photo_url"),
    }


def _project_book(book: dict[str, Any] | None) -> dict[str, Any] | None:
    if book is None:
        return None
    return {
        "id": book["id"],
        "title": book["title"],
        "author": book["author"],
        "image_url": book.get("image_url"),
        "status": book["status"],
    }


def build_request_views(
    market_db: "MarketDB",
    rows: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Attach read-only book and participant summaries to request rows."""
    book_ids = {row["book_id"] for row in rows}
    user_ids = {row["requester_id"] for row in rows} | {row["owner_id"] for row in rows}
    books = market_db.get_books_by_ids(book_ids)
    users = market_db.get_users_by_ids(user_ids)

    views = []
    for row in rows:
        view = dict(row)
        view["book"] = _project_book(books.get(row["book_id"]))
        view["requester"] = _project_user(users.get(row["requester_id"]))
        view["owner"] = _project_user(users.get(row["owner_id"]))
        views.append(view)
    return views


def list_sent_requests(
    market_db: "MarketDB",
    *,
    actor_user_id: int,
    status: Any = None,
) -> list[dict[str, Any]]:
    """List requests the actor sent, newest first."""
    rows = market_db.list_requests(
        requester_id=actor_user_id,
        status=_normalize_status_filter(status),
    )
    return build_request_views(market_db, rows)


def list_received_requests(
    market_db: "MarketDB",
    *,
    actor_user_id: int,
    status: Any = None,
) -> list[dict[str, Any]]:
    """List requests for books the actor owns, newest first."""
    rows = market_db.list_requests(
        owner_id=actor_user_id,
        status=_normalize_status_filter(status),
    )
    return build_request_views(market_db, rows)


def get_request_for_viewer(
    market_db: "MarketDB",
    *,
    request_id: int,
    actor_user_id: int,
) -> dict[str, Any]:
    """Return one request with its display projection."""
    request_row = ensure_request_participant(
        market_db,
        request_id=request_id,
        actor_user_id=actor_user_id,
    )
    return build_request_views(market_db, [request_row])[0]
