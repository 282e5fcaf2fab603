"""Tests for the book request lifecycle."""

import os
import sqlite3
import tempfile
import threading
from unittest.mock import patch

import pytest

from bookswap.core.errors import (
    ConflictError,
    FailedPreconditionError,
    ForbiddenError,
    InvalidArgumentError,
    NotFoundError,
)
from bookswap.core.market_db import MarketDB
from bookswap.core.requests_service import (
    accept_request,
    book_status_for_request_type,
    cancel_request,
    create_request,
    get_request_for_viewer,
    list_received_requests,
    list_sent_requests,
    normalize_request_status,
    normalize_request_type,
    parse_entity_id,
    reject_request,
    validate_status_transition,
)


@pytest.fixture
def market_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = MarketDB(os.path.join(tmpdir, "bookswap.db"))
        db.initialize()
        yield db


@pytest.fixture
def users(market_db):
    return {
        name: market_db.create_user(
            email=f"{name}@example.com",
            full_name=name.title(),
            password_hash="hash",
            photo_url=f"https://img.example.com/{name}.png",
        )
        for name in ("owner", "alice", "bob", "carol")
    }


@pytest.fixture
def book(market_db, users):
    return market_db.create_book(
        owner_id=users["owner"]["id"],
        title="Dune",
        author="Frank Herbert",
        genres=["Science Fiction"],
        location="Pune",
        description="Desert planet politics.",
        image_url="/bookcover.png",
    )


def _create(market_db, user, book, request_type="rent"):
    return create_request(
        market_db,
        requester_id=user["id"],
        book_id=book["id"],
        request_type=request_type,
    )


def test_normalize_request_status_accepts_known_values():
    assert normalize_request_status("pending") == "pending"
    assert normalize_request_status(" ACCEPTED ") == "accepted"
    assert normalize_request_status("cancelled") == "cancelled"


def test_normalize_request_status_rejects_unknown_values():
    with pytest.raises(ValueError, match="Invalid request status"):
        normalize_request_status("fulfilled")


def test_normalize_request_type_accepts_known_values():
    assert normalize_request_type(" Rent ") == "rent"
    assert normalize_request_type("EXCHANGE") == "exchange"
    with pytest.raises(ValueError, match="Invalid request type"):
        normalize_request_type("buy")


def test_validate_status_transition_keeps_terminal_states_immutable():
    assert validate_status_transition("pending", "accepted") == ("pending", "accepted")
    assert validate_status_transition("rejected", "rejected") == ("rejected", "rejected")
    for terminal in ("accepted", "rejected", "cancelled"):
        with pytest.raises(ValueError, match="Terminal request statuses are immutable"):
            validate_status_transition(terminal, "pending")


def test_book_status_for_request_type():
    assert book_status_for_request_type("rent") == "rented"
    assert book_status_for_request_type("exchange") == "exchanged"


@pytest.mark.parametrize("value", [None, "abc", 0, -3, True, 1.5, "1.5"])
def test_parse_entity_id_rejects_invalid_values(value):
    with pytest.raises(InvalidArgumentError):
        parse_entity_id(value, "bookId")


class TestCreateRequest:
    def test_creates_pending_request_with_copied_owner(self, market_db, users, book):
        created = _create(market_db, users["alice"], book, " RENT ")

        assert created["status"] == "pending"
        assert created["type"] == "rent"
        assert created["owner_id"] == users["owner"]["id"]
        assert market_db.get_book(book["id"])["requests"] == [created["id"]]

    def test_self_request_is_invalid(self, market_db, users, book):
        with pytest.raises(InvalidArgumentError, match="You cannot request your own book") as exc_info:
            _create(market_db, users["owner"], book)
        assert exc_info.value.code == "self_request"

    def test_missing_type_is_invalid(self, market_db, users, book):
        with pytest.raises(InvalidArgumentError, match="type is required"):
            _create(market_db, users["alice"], book, "  ")

    def test_unknown_type_is_invalid(self, market_db, users, book):
        with pytest.raises(InvalidArgumentError, match="Invalid request type"):
            _create(market_db, users["alice"], book, "borrow")

    def test_missing_book_id_is_invalid(self, market_db, users):
        with pytest.raises(InvalidArgumentError, match="bookId is required"):
            create_request(market_db, requester_id=users["alice"]["id"], book_id=None, request_type="rent")

    def test_unknown_book_is_not_found(self, market_db, users):
        with pytest.raises(NotFoundError, match="Book not found"):
            create_request(market_db, requester_id=users["alice"]["id"], book_id=999, request_type="rent")

    def test_duplicate_pending_is_conflict(self, market_db, users, book):
        _create(market_db, users["alice"], book)
        with pytest.raises(ConflictError) as exc_info:
            _create(market_db, users["alice"], book, "exchange")
        assert exc_info.value.code == "duplicate_pending_request"
        assert exc_info.value.status_code == 400

    def test_duplicate_detected_by_storage_is_conflict(self, market_db, users, book):
        _create(market_db, users["alice"], book)
        with patch.object(market_db, "find_pending_request", return_value=None):
            with pytest.raises(ConflictError, match="already have a pending request"):
                _create(market_db, users["alice"], book)

    def test_create_cancel_create_succeeds(self, market_db, users, book):
        first = _create(market_db, users["alice"], book)
        cancel_request(market_db, request_id=first["id"], actor_user_id=users["alice"]["id"])

        second = _create(market_db, users["alice"], book)

        assert second["status"] == "pending"
        assert second["id"] != first["id"]


class TestAcceptRequest:
    def test_rent_accept_lends_book_and_rejects_siblings(self, market_db, users, book):
        winner = _create(market_db, users["alice"], book)
        sibling = _create(market_db, users["bob"], book, "exchange")

        accepted = accept_request(market_db, request_id=winner["id"], actor_user_id=users["owner"]["id"])

        assert accepted["status"] == "accepted"
        assert market_db.get_request(sibling["id"])["status"] == "rejected"
        updated_book = market_db.get_book(book["id"])
        assert updated_book["status"] == "rented"
        assert updated_book["borrower_id"] == users["alice"]["id"]
        assert updated_book["requests"] == []

    def test_exchange_accept_marks_book_exchanged(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book, "exchange")

        accept_request(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])

        assert market_db.get_book(book["id"])["status"] == "exchanged"

    def test_non_owner_accept_is_forbidden(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)

        with pytest.raises(ForbiddenError, match="Only the book owner can accept"):
            accept_request(market_db, request_id=request_row["id"], actor_user_id=users["alice"]["id"])
        assert market_db.get_request(request_row["id"])["status"] == "pending"

    def test_unknown_request_is_not_found(self, market_db, users):
        with pytest.raises(NotFoundError):
            accept_request(market_db, request_id=404, actor_user_id=users["owner"]["id"])

    def test_double_accept_is_failed_precondition(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)
        accept_request(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])

        with pytest.raises(FailedPreconditionError, match="Request is already accepted") as exc_info:
            accept_request(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])
        assert exc_info.value.code == "stale_transition"

    def test_accept_fails_when_book_already_lent(self, market_db, users, book):
        first = _create(market_db, users["alice"], book)
        accept_request(market_db, request_id=first["id"], actor_user_id=users["owner"]["id"])
        late = _create(market_db, users["bob"], book)

        with pytest.raises(FailedPreconditionError, match="no longer available") as exc_info:
            accept_request(market_db, request_id=late["id"], actor_user_id=users["owner"]["id"])
        assert exc_info.value.code == "book_unavailable"
        assert market_db.get_request(late["id"])["status"] == "pending"
        assert market_db.get_book(book["id"])["borrower_id"] == users["alice"]["id"]

    def test_concurrent_accepts_on_same_book_have_one_winner(self, market_db, users, book):
        requests = [_create(market_db, users[name], book) for name in ("alice", "bob", "carol")]
        barrier = threading.Barrier(len(requests))
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker(request_id):
            barrier.wait()
            try:
                accept_request(market_db, request_id=request_id, actor_user_id=users["owner"]["id"])
                result = "accepted"
            except FailedPreconditionError:
                result = "failed"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(row["id"],)) for row in requests]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["accepted", "failed", "failed"]
        statuses = sorted(market_db.get_request(row["id"])["status"] for row in requests)
        assert statuses == ["accepted", "rejected", "rejected"]
        final_book = market_db.get_book(book["id"])
        assert final_book["status"] == "rented"
        assert final_book["borrower_id"] is not None

    def test_lock_contention_is_retried(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)
        real_accept = market_db.accept_request
        calls = []

        def flaky_accept(request_id):
            calls.append(request_id)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real_accept(request_id)

        with patch.object(market_db, "accept_request", side_effect=flaky_accept), \
                patch("bookswap.core.requests_service.time.sleep") as sleep_mock:
            accepted = accept_request(
                market_db,
                request_id=request_row["id"],
                actor_user_id=users["owner"]["id"],
                max_attempts=3,
            )

        assert accepted["status"] == "accepted"
        assert len(calls) == 2
        sleep_mock.assert_called_once()

    def test_lock_contention_gives_up_after_max_attempts(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)

        with patch.object(
            market_db,
            "accept_request",
            side_effect=sqlite3.OperationalError("database is locked"),
        ) as accept_mock, patch("bookswap.core.requests_service.time.sleep"):
            with pytest.raises(sqlite3.OperationalError):
                accept_request(
                    market_db,
                    request_id=request_row["id"],
                    actor_user_id=users["owner"]["id"],
                    max_attempts=2,
                )

        assert accept_mock.call_count == 2
        assert market_db.get_request(request_row["id"])["status"] == "pending"


class TestRejectAndCancel:
    def test_owner_rejects_pending_request(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)

        rejected = reject_request(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])

        assert rejected["status"] == "rejected"
        refreshed_book = market_db.get_book(book["id"])
        assert refreshed_book["requests"] == []
        assert refreshed_book["status"] == "available"

    def test_requester_cannot_reject(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)
        with pytest.raises(ForbiddenError):
            reject_request(market_db, request_id=request_row["id"], actor_user_id=users["alice"]["id"])

    def test_only_requester_can_cancel(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)
        with pytest.raises(ForbiddenError, match="Only the requester can cancel"):
            cancel_request(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])

    def test_cancelled_request_is_a_sink(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)
        cancel_request(market_db, request_id=request_row["id"], actor_user_id=users["alice"]["id"])

        with pytest.raises(FailedPreconditionError, match="Request is already cancelled"):
            cancel_request(market_db, request_id=request_row["id"], actor_user_id=users["alice"]["id"])
        with pytest.raises(FailedPreconditionError):
            accept_request(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])
        with pytest.raises(FailedPreconditionError):
            reject_request(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])
        assert market_db.get_request(request_row["id"])["status"] == "cancelled"


class TestListing:
    def test_sent_and_received_are_projected_newest_first(self, market_db, users, book):
        second_book = market_db.create_book(
            owner_id=users["owner"]["id"],
            title="Emma",
            author="Jane Austen",
            genres=["Classic"],
            location="Delhi",
            description="Matchmaking.",
        )
        first = _create(market_db, users["alice"], book)
        second = _create(market_db, users["alice"], second_book, "exchange")

        sent = list_sent_requests(market_db, actor_user_id=users["alice"]["id"])
        assert [row["id"] for row in sent] == [second["id"], first["id"]]
        assert sent[0]["book"] == {
            "id": second_book["id"],
            "title": "Emma",
            "author": "Jane Austen",
            "image_url": None,
            "status": "available",
        }
        assert sent[0]["owner"] == {
            "id": users["owner"]["id"],
            "full_name": "Owner",
            "photo_url": "https://img.example.com/owner.png",
        }

        received = list_received_requests(market_db, actor_user_id=users["owner"]["id"])
        assert [row["id"] for row in received] == [second["id"], first["id"]]
        assert received[0]["requester"]["full_name"] == "Alice"
        assert list_received_requests(market_db, actor_user_id=users["alice"]["id"]) == []

    def test_status_filter_is_validated(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)
        cancel_request(market_db, request_id=request_row["id"], actor_user_id=users["alice"]["id"])

        assert list_sent_requests(market_db, actor_user_id=users["alice"]["id"], status="pending") == []
        cancelled = list_sent_requests(market_db, actor_user_id=users["alice"]["id"], status="Cancelled")
        assert [row["id"] for row in cancelled] == [request_row["id"]]
        with pytest.raises(InvalidArgumentError):
            list_sent_requests(market_db, actor_user_id=users["alice"]["id"], status="archived")

    def test_get_request_for_viewer_checks_participation(self, market_db, users, book):
        request_row = _create(market_db, users["alice"], book)

        view = get_request_for_viewer(market_db, request_id=request_row["id"], actor_user_id=users["owner"]["id"])
        assert view["book"]["title"] == "Dune"

        with pytest.raises(ForbiddenError):
            get_request_for_viewer(market_db, request_id=request_row["id"], actor_user_id=users["bob"]["id"])
        with pytest.raises(NotFoundError):
            get_request_for_viewer(market_db, request_id=999, actor_user_id=users["owner"]["id"])
