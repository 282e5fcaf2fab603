"""Tests for MarketDB storage: schema, invariants and the accept transaction."""

import os
import sqlite3
import tempfile

import pytest

from bookswap.core.market_db import MarketDB
from bookswap.core.models import BookFilters
from bookswap.core.requests_service import DuplicatePendingRequest


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "bookswap.db")


@pytest.fixture
def market_db(db_path):
    db = MarketDB(db_path)
    db.initialize()
    return db


def _user(market_db, name: str) -> dict:
    return market_db.create_user(
        email=f"{name}@example.com",
        full_name=name.title(),
        password_hash="hash",
    )


def _book(market_db, owner_id: int, **overrides) -> dict:
    fields = {
        "title": "Dune",
        "author": "Frank Herbert",
        "genres": ["Science Fiction"],
        "location": "Pune",
        "description": "Desert planet politics.",
    }
    fields.update(overrides)
    return market_db.create_book(owner_id=owner_id, **fields)


def _request(market_db, book: dict, requester_id: int, request_type: str = "rent") -> dict:
    return market_db.create_request(
        book_id=book["id"],
        requester_id=requester_id,
        owner_id=book["owner_id"],
        request_type=request_type,
    )


class TestSchema:
    def test_initialize_is_idempotent(self, market_db):
        market_db.initialize()
        market_db.initialize()
        assert market_db.list_books()[1] == 0

    def test_initialize_adds_role_column_to_legacy_users_table(self, db_path):
        conn = sqlite3.connect(db_path)
        conn.execute(
            """
            CREATE TABLE users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                full_name TEXT NOT NULL,
                phone_number TEXT,
                password_hash TEXT NOT NULL,
                photo_url TEXT,
                about TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "INSERT INTO users (email, full_name, password_hash, created_at, updated_at) "
            "VALUES ('old@example.com', 'Old', 'hash', '2024-01-01', '2024-01-01')"
        )
        conn.commit()
        conn.close()

        db = MarketDB(db_path)
        db.initialize()

        legacy = db.get_user(email="old@example.com")
        assert "role" in legacy
        assert legacy["role"] is None

    def test_book_check_constraint_rejects_borrower_without_lent_status(self, market_db):
        owner = _user(market_db, "owner")
        book = _book(market_db, owner["id"])

        conn = market_db._connect()
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE books SET status = 'rented' WHERE id = ?", (book["id"],))
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE books SET borrower_id = ? WHERE id = ?", (owner["id"], book["id"]))
        finally:
            conn.close()


class TestUsers:
    def test_create_user_normalizes_email(self, market_db):
        user = market_db.create_user(email="  Reader@Example.COM ", full_name="Reader", password_hash="h")
        assert user["email"] == "reader@example.com"
        assert market_db.get_user(email="READER@example.com")["id"] == user["id"]

    def test_create_user_rejects_duplicate_email(self, market_db):
        _user(market_db, "reader")
        with pytest.raises(ValueError, match="already exists"):
            _user(market_db, "reader")

    def test_create_user_rejects_unknown_role(self, market_db):
        with pytest.raises(ValueError, match="Invalid role"):
            market_db.create_user(email="a@example.com", full_name="A", password_hash="h", role="admin")

    def test_update_user_rejects_unknown_columns(self, market_db):
        user = _user(market_db, "reader")
        with pytest.raises(ValueError, match="Invalid column"):
            market_db.update_user(user["id"], email="new@example.com")

    def test_get_users_by_ids_skips_missing(self, market_db):
        alice = _user(market_db, "alice")
        users = market_db.get_users_by_ids([alice["id"], 999, None])
        assert list(users) == [alice["id"]]


class TestBooks:
    def test_create_book_starts_available_with_no_requests(self, market_db):
        owner = _user(market_db, "owner")
        book = _book(market_db, owner["id"], genres=["Fantasy", "fantasy", " Classic "])

        assert book["status"] == "available"
        assert book["borrower_id"] is None
        assert book["requests"] == []
        assert book["genres"] == ["Fantasy", "Classic"]

    def test_list_books_filters_are_case_insensitive_substrings(self, market_db):
        owner = _user(market_db, "owner")
        _book(market_db, owner["id"], title="The Hobbit", author="J.R.R. Tolkien", genres=["Fantasy"])
        _book(market_db, owner["id"], title="Dune", genres=["Science Fiction", "Classic"], location="Mumbai")

        rows, total = market_db.list_books(BookFilters(title="hob"))
        assert total == 1
        assert rows[0]["title"] == "The Hobbit"

        rows, total = market_db.list_books(BookFilters(genre="FICTION"))
        assert [row["title"] for row in rows] == ["Dune"]

        rows, total = market_db.list_books(BookFilters(location="mum", author="herbert"))
        assert total == 1

    def test_list_books_folds_non_ascii_case(self, market_db):
        owner = _user(market_db, "owner")
        _book(market_db, owner["id"], title="Émile", author="Jean-Jacques Rousseau", genres=["Éducation"])
        _book(market_db, owner["id"], title="Emil und die Detektive")

        rows, total = market_db.list_books(BookFilters(title="émile"))
        assert total == 1
        assert rows[0]["title"] == "Émile"

        rows, total = market_db.list_books(BookFilters(genre="ÉDUC"))
        assert [row["title"] for row in rows] == ["Émile"]

    def test_list_books_escapes_like_wildcards(self, market_db):
        owner = _user(market_db, "owner")
        _book(market_db, owner["id"], title="100% Pure")
        _book(market_db, owner["id"], title="Plain")

        rows, total = market_db.list_books(BookFilters(title="%"))
        assert total == 1
        assert rows[0]["title"] == "100% Pure"

    def test_list_books_paginates_newest_first(self, market_db):
        owner = _user(market_db, "owner")
        created = [_book(market_db, owner["id"], title=f"Book {i}") for i in range(5)]

        rows, total = market_db.list_books(limit=2, offset=2)
        assert total == 5
        assert [row["id"] for row in rows] == [created[2]["id"], created[1]["id"]]

    def test_delete_book_refuses_when_pending_requests_exist(self, market_db):
        owner = _user(market_db, "owner")
        reader = _user(market_db, "reader")
        book = _book(market_db, owner["id"])
        _request(market_db, book, reader["id"])

        with pytest.raises(ValueError, match="changed before delete"):
            market_db.delete_book(book["id"])
        assert market_db.get_book(book["id"]) is not None

    def test_delete_book_keeps_request_history(self, market_db):
        owner = _user(market_db, "owner")
        reader = _user(market_db, "reader")
        book = _book(market_db, owner["id"])
        request_row = _request(market_db, book, reader["id"])
        market_db.update_request_status(request_row["id"], status="cancelled")

        market_db.delete_book(book["id"])

        assert market_db.get_book(book["id"]) is None
        assert market_db.get_request(request_row["id"])["status"] == "cancelled"

    def test_mark_book_returned_requires_rented_status(self, market_db):
        owner = _user(market_db, "owner")
        book = _book(market_db, owner["id"])
        with pytest.raises(ValueError, match="changed before update"):
            market_db.mark_book_returned(book["id"])


class TestRequests:
    def test_create_request_appends_to_book_request_list(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        bob = _user(market_db, "bob")
        book = _book(market_db, owner["id"])

        first = _request(market_db, book, alice["id"])
        second = _request(market_db, book, bob["id"], "exchange")

        assert first["status"] == "pending"
        assert first["owner_id"] == owner["id"]
        assert second["type"] == "exchange"
        assert market_db.get_book(book["id"])["requests"] == [first["id"], second["id"]]

    def test_create_request_rejects_second_pending_for_same_pair(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        book = _book(market_db, owner["id"])
        _request(market_db, book, alice["id"])

        with pytest.raises(DuplicatePendingRequest):
            _request(market_db, book, alice["id"], "exchange")
        assert len(market_db.get_book(book["id"])["requests"]) == 1

    def test_create_request_allowed_again_after_cancel(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        book = _book(market_db, owner["id"])
        first = _request(market_db, book, alice["id"])

        market_db.update_request_status(first["id"], expected_current_status="pending", status="cancelled")
        second = _request(market_db, book, alice["id"])

        assert second["id"] != first["id"]
        assert market_db.get_book(book["id"])["requests"] == [second["id"]]

    def test_create_request_for_missing_book_raises(self, market_db):
        alice = _user(market_db, "alice")
        with pytest.raises(ValueError, match="not found"):
            market_db.create_request(book_id=999, requester_id=alice["id"], owner_id=1, request_type="rent")

    def test_terminal_status_is_immutable(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        book = _book(market_db, owner["id"])
        request_row = _request(market_db, book, alice["id"])
        market_db.update_request_status(request_row["id"], status="rejected")

        with pytest.raises(ValueError, match="Terminal request statuses are immutable"):
            market_db.update_request_status(request_row["id"], status="cancelled")
        with pytest.raises(ValueError, match="state changed"):
            market_db.update_request_status(
                request_row["id"], expected_current_status="pending", status="cancelled"
            )

    def test_update_request_status_refuses_accept(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        book = _book(market_db, owner["id"])
        request_row = _request(market_db, book, alice["id"])

        with pytest.raises(ValueError, match="accept_request"):
            market_db.update_request_status(request_row["id"], status="accepted")

    def test_accept_request_lends_book_and_rejects_siblings(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        bob = _user(market_db, "bob")
        book = _book(market_db, owner["id"])
        winner = _request(market_db, book, alice["id"], "exchange")
        loser = _request(market_db, book, bob["id"])

        result = market_db.accept_request(winner["id"])

        assert result["request"]["status"] == "accepted"
        assert result["rejected_request_ids"] == [loser["id"]]
        assert result["book"]["status"] == "exchanged"
        assert result["book"]["borrower_id"] == alice["id"]
        assert result["book"]["requests"] == []
        assert market_db.get_request(loser["id"])["status"] == "rejected"

    def test_accept_request_rolls_back_when_book_unavailable(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        bob = _user(market_db, "bob")
        book = _book(market_db, owner["id"])
        request_row = _request(market_db, book, bob["id"])

        # Lend the book out through a write that bypasses the request list.
        conn = market_db._connect()
        try:
            conn.execute(
                "UPDATE books SET status = 'rented', borrower_id = ? WHERE id = ?",
                (alice["id"], book["id"]),
            )
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(ValueError, match="no longer available"):
            market_db.accept_request(request_row["id"])

        assert market_db.get_request(request_row["id"])["status"] == "pending"
        assert market_db.get_book(book["id"])["borrower_id"] == alice["id"]

    def test_list_requests_filters_by_side_and_status(self, market_db):
        owner = _user(market_db, "owner")
        alice = _user(market_db, "alice")
        first_book = _book(market_db, owner["id"], title="One")
        second_book = _book(market_db, owner["id"], title="Two")
        first = _request(market_db, first_book, alice["id"])
        second = _request(market_db, second_book, alice["id"])
        market_db.update_request_status(first["id"], status="cancelled")

        sent = market_db.list_requests(requester_id=alice["id"])
        assert [row["id"] for row in sent] == [second["id"], first["id"]]
        assert [row["id"] for row in market_db.list_requests(owner_id=owner["id"], status="pending")] == [
            second["id"]
        ]
        assert market_db.list_requests(requester_id=owner["id"]) == []
        assert market_db.count_pending_requests(book_id=second_book["id"]) == 1
