"""SQLite storage for users, book listings and book requests."""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from bookswap.core.books_service import normalize_book_status, normalize_genres
from bookswap.core.logger import setup_logger
from bookswap.core.models import BookFilters
from bookswap.core.requests_service import (
    DuplicatePendingRequest,
    book_status_for_request_type,
    normalize_request_status,
    normalize_request_type,
    validate_status_transition,
)

logger = setup_logger(__name__)

_BUSY_TIMEOUT_SECONDS = 5.0

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    email         TEXT UNIQUE NOT NULL,
    full_name     TEXT NOT NULL,
    phone_number  TEXT,
    role          TEXT,
    password_hash TEXT NOT NULL,
    photo_url     TEXT,
    about         TEXT,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS books (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    author      TEXT NOT NULL,
    genres      TEXT NOT NULL,
    location    TEXT NOT NULL,
    description TEXT NOT NULL,
    image_url   TEXT,
    owner_id    INTEGER NOT NULL REFERENCES users(id),
    status      TEXT NOT NULL DEFAULT 'available',
    borrower_id INTEGER REFERENCES users(id),
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    CHECK (
        (status = 'available' AND borrower_id IS NULL)
        OR (status IN ('rented', 'exchanged') AND borrower_id IS NOT NULL)
    )
);

CREATE INDEX IF NOT EXISTS idx_books_owner_created_at
ON books (owner_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_books_borrower_status
ON books (borrower_id, status);

-- book_id is not a foreign key: requests outlive deleted listings as history.
CREATE TABLE IF NOT EXISTS book_requests (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id      INTEGER NOT NULL,
    requester_id INTEGER NOT NULL REFERENCES users(id),
    owner_id     INTEGER NOT NULL REFERENCES users(id),
    type         TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'pending',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_book_requests_one_pending
ON book_requests (book_id, requester_id) WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS idx_book_requests_requester_created_at
ON book_requests (requester_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_book_requests_owner_created_at
ON book_requests (owner_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_book_requests_book_status
ON book_requests (book_id, status);

CREATE TABLE IF NOT EXISTS book_request_refs (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id    INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    request_id INTEGER NOT NULL UNIQUE REFERENCES book_requests(id)
);

CREATE INDEX IF NOT EXISTS idx_book_request_refs_book
ON book_request_refs (book_id, id);
"""


def _now_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _like_pattern(value: str) -> str:
    escaped = value.casefold().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _casefold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


class MarketDB:
    """Thread-safe SQLite marketplace database."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        # LIKE only folds ASCII case
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        return conn

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one BEGIN IMMEDIATE transaction, rolling back on error."""
        with self._lock:
            conn = self._connect()
            conn.isolation_level = None
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(_CREATE_TABLES_SQL)
                self._migrate_user_role_column(conn)
                conn.commit()
                # WAL mode must be changed outside an open transaction.
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()

    def _migrate_user_role_column(self, conn: sqlite3.Connection) -> None:
        """Ensure users.role exists; accounts from before roles keep NULL."""
        columns = conn.execute("PRAGMA table_info(users)").fetchall()
        column_names = {str(col["name"]) for col in columns}
        if "role" not in column_names:
            conn.execute("ALTER TABLE users ADD COLUMN role TEXT")
        conn.execute("UPDATE users SET role = NULL WHERE TRIM(role) = ''")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    _VALID_ROLES = {"owner", "seeker"}

    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        phone_number: Optional[str] = None,
        role: Optional[str] = None,
        photo_url: Optional[str] = None,
        about: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a new user. Raises ValueError if the email already exists."""
        if role is not None and role not in self._VALID_ROLES:
            raise ValueError(f"Invalid role: {role}")
        normalized_email = (email or "").strip().lower()
        if not normalized_email:
            raise ValueError("email is required")
        now = _now_timestamp()
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """INSERT INTO users (
                           email, full_name, phone_number, role, password_hash,
                           photo_url, about, created_at, updated_at
                       )
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        normalized_email,
                        full_name,
                        phone_number,
                        role,
                        password_hash,
                        photo_url,
                        about,
                        now,
                        now,
                    ),
                )
                conn.commit()
                return self._get_user_by_id(conn, cursor.lastrowid)
            except sqlite3.IntegrityError as e:
                raise ValueError(f"User already exists: {e}")
            finally:
                conn.close()

    def get_user(
        self,
        user_id: Optional[int] = None,
        email: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get a user by id or email. Returns None if not found."""
        conn = self._connect()
        try:
            if user_id is not None:
                return self._get_user_by_id(conn, user_id)
            if email is not None:
                row = conn.execute(
                    "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
                ).fetchone()
                return dict(row) if row else None
            return None
        finally:
            conn.close()

    def _get_user_by_id(self, conn: sqlite3.Connection, user_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    def get_users_by_ids(self, user_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        ids = sorted({int(user_id) for user_id in user_ids if user_id is not None})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM users WHERE id IN ({placeholders})", ids
            ).fetchall()
            return {row["id"]: dict(row) for row in rows}
        finally:
            conn.close()

    _ALLOWED_USER_UPDATE_COLUMNS = {
        "full_name",
        "phone_number",
        "role",
        "password_hash",
        "photo_url",
        "about",
    }

    def update_user(self, user_id: int, **kwargs) -> Dict[str, Any]:
        """Update user fields and return the updated row."""
        for k in kwargs:
            if k not in self._ALLOWED_USER_UPDATE_COLUMNS:
                raise ValueError(f"Invalid column: {k}")
        if "role" in kwargs and kwargs["role"] is not None and kwargs["role"] not in self._VALID_ROLES:
            raise ValueError(f"Invalid role: {kwargs['role']}")
        with self._lock:
            conn = self._connect()
            try:
                if not self._get_user_by_id(conn, user_id):
                    raise ValueError(f"User {user_id} not found")
                if kwargs:
                    updates = dict(kwargs)
                    updates["updated_at"] = _now_timestamp()
                    sets = ", ".join(f"{k} = ?" for k in updates)
                    values = list(updates.values()) + [user_id]
                    conn.execute(f"UPDATE users SET {sets} WHERE id = ?", values)
                    conn.commit()
                return self._get_user_by_id(conn, user_id)
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_book_row(
        row: Optional[sqlite3.Row],
        request_ids: Optional[List[int]] = None,
    ) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        payload = dict(row)
        try:
            payload["genres"] = json.loads(payload.get("genres") or "[]")
        except (ValueError, TypeError):
            payload["genres"] = []
        payload["requests"] = list(request_ids or [])
        return payload

    @staticmethod
    def _load_request_refs(
        conn: sqlite3.Connection,
        book_ids: List[int],
    ) -> Dict[int, List[int]]:
        if not book_ids:
            return {}
        placeholders = ", ".join("?" for _ in book_ids)
        rows = conn.execute(
            f"""
            SELECT book_id, request_id FROM book_request_refs
            WHERE book_id IN ({placeholders})
            ORDER BY id
            """,
            book_ids,
        ).fetchall()
        refs: Dict[int, List[int]] = {book_id: [] for book_id in book_ids}
        for row in rows:
            refs[row["book_id"]].append(row["request_id"])
        return refs

    def _get_book(self, conn: sqlite3.Connection, book_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            return None
        refs = self._load_request_refs(conn, [book_id])
        return self._parse_book_row(row, refs.get(book_id))

    def create_book(
        self,
        *,
        owner_id: int,
        title: str,
        author: str,
        genres: List[str],
        location: str,
        description: str,
        image_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an available book owned by owner_id and return it."""
        normalized_genres = normalize_genres(genres)
        now = _now_timestamp()
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO books (
                        title, author, genres, location, description, image_url,
                        owner_id, status, borrower_id, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'available', NULL, ?, ?)
                    """,
                    (
                        title,
                        author,
                        json.dumps(normalized_genres),
                        location,
                        description,
                        image_url,
                        owner_id,
                        now,
                        now,
                    ),
                )
                conn.commit()
                book = self._get_book(conn, cursor.lastrowid)
                if book is None:
                    raise ValueError(f"Book {cursor.lastrowid} not found after creation")
                return book
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Invalid book: {exc}") from exc
            finally:
                conn.close()

    def get_book(self, book_id: int) -> Optional[Dict[str, Any]]:
        """Get a book by ID, including its outstanding request ids."""
        conn = self._connect()
        try:
            return self._get_book(conn, book_id)
        finally:
            conn.close()

    def get_books_by_ids(self, book_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        ids = sorted({int(book_id) for book_id in book_ids if book_id is not None})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM books WHERE id IN ({placeholders})", ids
            ).fetchall()
            refs = self._load_request_refs(conn, [row["id"] for row in rows])
            return {row["id"]: self._parse_book_row(row, refs.get(row["id"])) for row in rows}
        finally:
            conn.close()

    def list_books(
        self,
        filters: Optional[BookFilters] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List books newest first. Returns (page rows, total matching rows)."""
        filters = filters or BookFilters()
        where_clauses: List[str] = []
        params: List[Any] = []

        for column in ("title", "author", "location"):
            value = getattr(filters, column)
            if value:
                where_clauses.append(f"casefold({column}) LIKE ? ESCAPE '\\'")
                params.append(_like_pattern(value.strip()))

        if filters.genre:
            where_clauses.append(
                "EXISTS (SELECT 1 FROM json_each(books.genres) AS g "
                "WHERE casefold(g.value) LIKE ? ESCAPE '\\')"
            )
            params.append(_like_pattern(filters.genre.strip()))

        if filters.status is not None:
            where_clauses.append("status = ?")
            params.append(normalize_book_status(filters.status))

        if filters.owner_id is not None:
            where_clauses.append("owner_id = ?")
            params.append(filters.owner_id)

        if filters.borrower_id is not None:
            where_clauses.append("borrower_id = ?")
            params.append(filters.borrower_id)

        where_sql = ""
        if where_clauses:
            where_sql = " WHERE " + " AND ".join(where_clauses)

        query = "SELECT * FROM books" + where_sql + " ORDER BY created_at DESC, id DESC"
        page_params = list(params)
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            page_params.extend([int(limit), int(offset)])
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            page_params.append(int(offset))

        conn = self._connect()
        try:
            total_row = conn.execute(
                "SELECT COUNT(*) AS count FROM books" + where_sql, params
            ).fetchone()
            rows = conn.execute(query, page_params).fetchall()
            refs = self._load_request_refs(conn, [row["id"] for row in rows])
            books = [self._parse_book_row(row, refs.get(row["id"])) for row in rows]
            return books, int(total_row["count"]) if total_row else 0
        finally:
            conn.close()

    _ALLOWED_BOOK_UPDATE_COLUMNS = {
        "title",
        "author",
        "genres",
        "location",
        "description",
        "image_url",
    }

    def update_book(self, book_id: int, **kwargs) -> Dict[str, Any]:
        """Update listing fields and return the updated book."""
        for key in kwargs:
            if key not in self._ALLOWED_BOOK_UPDATE_COLUMNS:
                raise ValueError(f"Invalid book column: {key}")

        updates = dict(kwargs)
        if "genres" in updates:
            updates["genres"] = json.dumps(normalize_genres(updates["genres"]))
        updates["updated_at"] = _now_timestamp()

        with self._lock:
            conn = self._connect()
            try:
                set_clause = ", ".join(f"{column} = ?" for column in updates)
                values = list(updates.values()) + [book_id]
                cursor = conn.execute(f"UPDATE books SET {set_clause} WHERE id = ?", values)
                if cursor.rowcount == 0:
                    raise ValueError(f"Book {book_id} not found")
                conn.commit()
                book = self._get_book(conn, book_id)
                if book is None:
                    raise ValueError(f"Book {book_id} not found after update")
                return book
            finally:
                conn.close()

    def delete_book(self, book_id: int) -> None:
        """Delete an available book with no pending requests."""
        with self._write_transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM books
                WHERE id = ?
                  AND status = 'available'
                  AND NOT EXISTS (
                      SELECT 1 FROM book_requests
                      WHERE book_id = books.id AND status = 'pending'
                  )
                """,
                (book_id,),
            )
            if cursor.rowcount != 1:
                raise ValueError("Book state changed before delete")

    def mark_book_returned(self, book_id: int) -> Dict[str, Any]:
        """Move a rented book back to available. Raises ValueError if it is not rented."""
        with self._write_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE books
                SET status = 'available', borrower_id = NULL, updated_at = ?
                WHERE id = ? AND status = 'rented'
                """,
                (_now_timestamp(), book_id),
            )
            if cursor.rowcount != 1:
                raise ValueError("Book state changed before update")
            book = self._get_book(conn, book_id)
        if book is None:
            raise ValueError(f"Book {book_id} not found after update")
        return book

    # ------------------------------------------------------------------
    # Book requests
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_request_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        return dict(row) if row is not None else None

    def _get_request(self, conn: sqlite3.Connection, request_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            "SELECT * FROM book_requests WHERE id = ?",
            (request_id,),
        ).fetchone()
        return self._parse_request_row(row)

    def create_request(
        self,
        *,
        book_id: int,
        requester_id: int,
        owner_id: int,
        request_type: str,
    ) -> Dict[str, Any]:
        """Insert a pending request and append it to the book's request list."""
        normalized_type = normalize_request_type(request_type)
        now = _now_timestamp()
        try:
            with self._write_transaction() as conn:
                book_row = conn.execute(
                    "SELECT owner_id FROM books WHERE id = ?",
                    (book_id,),
                ).fetchone()
                if book_row is None:
                    raise ValueError(f"Book {book_id} not found")
                if book_row["owner_id"] != owner_id:
                    raise ValueError("Book owner changed before request creation")

                cursor = conn.execute(
                    """
                    INSERT INTO book_requests (
                        book_id, requester_id, owner_id, type, status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (book_id, requester_id, owner_id, normalized_type, now, now),
                )
                request_id = cursor.lastrowid
                conn.execute(
                    "INSERT INTO book_request_refs (book_id, request_id) VALUES (?, ?)",
                    (book_id, request_id),
                )
                created = self._get_request(conn, request_id)
        except sqlite3.IntegrityError as exc:
            if "book_requests" in str(exc):
                raise DuplicatePendingRequest(
                    "A pending request already exists for this book and requester"
                ) from exc
            raise ValueError(f"Invalid request: {exc}") from exc

        if created is None:
            raise ValueError(f"Request {request_id} not found after creation")
        return created

    def get_request(self, request_id: int) -> Optional[Dict[str, Any]]:
        """Get a request row by ID."""
        conn = self._connect()
        try:
            return self._get_request(conn, request_id)
        finally:
            conn.close()

    def get_requests_by_ids(self, request_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        ids = sorted({int(request_id) for request_id in request_ids if request_id is not None})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM book_requests WHERE id IN ({placeholders})", ids
            ).fetchall()
            return {row["id"]: dict(row) for row in rows}
        finally:
            conn.close()

    def find_pending_request(self, *, book_id: int, requester_id: int) -> Optional[Dict[str, Any]]:
        """Return the pending request for a (book, requester) pair, if any."""
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT * FROM book_requests
                WHERE book_id = ? AND requester_id = ? AND status = 'pending'
                """,
                (book_id, requester_id),
            ).fetchone()
            return self._parse_request_row(row)
        finally:
            conn.close()

    def list_requests(
        self,
        *,
        requester_id: Optional[int] = None,
        owner_id: Optional[int] = None,
        book_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List requests with optional filters, newest first."""
        where_clauses: List[str] = []
        params: List[Any] = []

        if requester_id is not None:
            where_clauses.append("requester_id = ?")
            params.append(requester_id)

        if owner_id is not None:
            where_clauses.append("owner_id = ?")
            params.append(owner_id)

        if book_id is not None:
            where_clauses.append("book_id = ?")
            params.append(book_id)

        if status is not None:
            where_clauses.append("status = ?")
            params.append(normalize_request_status(status))

        query = "SELECT * FROM book_requests"
        if where_clauses:
            query += " WHERE " + " AND ".join(where_clauses)
        query += " ORDER BY created_at DESC, id DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
            if offset:
                query += " OFFSET ?"
                params.append(offset)
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def update_request_status(
        self,
        request_id: int,
        *,
        status: str,
        expected_current_status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Move a request to a new status and drop it from its book's list once terminal."""
        normalized_expected_status = None
        if expected_current_status is not None:
            normalized_expected_status = normalize_request_status(expected_current_status)

        with self._write_transaction() as conn:
            current = self._get_request(conn, request_id)
            if current is None:
                raise ValueError(f"Request {request_id} not found")
            if (
                normalized_expected_status is not None
                and current["status"] != normalized_expected_status
            ):
                raise ValueError("Request state changed before update")

            _, normalized_status = validate_status_transition(current["status"], status)
            if normalized_status == "accepted":
                raise ValueError("Use accept_request to accept a request")
            if normalized_status != current["status"]:
                conn.execute(
                    "UPDATE book_requests SET status = ?, updated_at = ? WHERE id = ?",
                    (normalized_status, _now_timestamp(), request_id),
                )
                if normalized_status != "pending":
                    conn.execute(
                        "DELETE FROM book_request_refs WHERE request_id = ?",
                        (request_id,),
                    )
            updated = self._get_request(conn, request_id)

        if updated is None:
            raise ValueError(f"Request {request_id} not found after update")
        return updated

    def accept_request(self, request_id: int) -> Dict[str, Any]:
        """Accept a pending request and lend its book in one transaction.

        Order inside the transaction: accept the request, reject every other
        pending request on the book, then reassign the book only if it is
        still available. Any failed condition rolls everything back.

        Returns {"request", "book", "rejected_request_ids"}.
        Raises ValueError when the request is no longer pending or the book
        is no longer available.
        """
        now = _now_timestamp()
        with self._write_transaction() as conn:
            request_row = self._get_request(conn, request_id)
            if request_row is None:
                raise ValueError(f"Request {request_id} not found")
            if request_row["status"] != "pending":
                raise ValueError("Request state changed before update")

            book_id = request_row["book_id"]
            book_row = conn.execute(
                "SELECT status FROM books WHERE id = ?",
                (book_id,),
            ).fetchone()
            if book_row is None:
                raise ValueError("Book no longer exists")
            if book_row["status"] != "available":
                raise ValueError(f"Book is no longer available (status: {book_row['status']})")

            cursor = conn.execute(
                """
                UPDATE book_requests SET status = 'accepted', updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (now, request_id),
            )
            if cursor.rowcount != 1:
                raise ValueError("Request state changed before update")

            sibling_rows = conn.execute(
                """
                SELECT id FROM book_requests
                WHERE book_id = ? AND status = 'pending' AND id != ?
                ORDER BY id
                """,
                (book_id, request_id),
            ).fetchall()
            rejected_ids = [row["id"] for row in sibling_rows]
            conn.execute(
                """
                UPDATE book_requests SET status = 'rejected', updated_at = ?
                WHERE book_id = ? AND status = 'pending' AND id != ?
                """,
                (now, book_id, request_id),
            )

            cursor = conn.execute(
                """
                UPDATE books SET status = ?, borrower_id = ?, updated_at = ?
                WHERE id = ? AND status = 'available'
                """,
                (
                    book_status_for_request_type(request_row["type"]),
                    request_row["requester_id"],
                    now,
                    book_id,
                ),
            )
            if cursor.rowcount != 1:
                raise ValueError("Book state changed before update")
            conn.execute("DELETE FROM book_request_refs WHERE book_id = ?", (book_id,))

            accepted = self._get_request(conn, request_id)
            book = self._get_book(conn, book_id)

        return {
            "request": accepted,
            "book": book,
            "rejected_request_ids": rejected_ids,
        }

    def count_pending_requests(self, *, book_id: int) -> int:
        """Count pending requests for a book."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM book_requests WHERE book_id = ? AND status = 'pending'",
                (book_id,),
            ).fetchone()
            return int(row["count"]) if row else 0
        finally:
            conn.close()
