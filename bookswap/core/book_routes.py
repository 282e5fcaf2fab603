"""Catalog API routes."""

from __future__ import annotations

from typing import Any

from flask import Flask, jsonify, request

from bookswap.core.auth_gate import require_identity
from bookswap.core.books_service import (
    create_book,
    delete_book,
    get_book_view,
    list_books,
    list_borrowed_books,
    list_owned_books,
    mark_returned,
    update_book,
)
from bookswap.core.errors import ServiceError
from bookswap.core.logger import setup_logger
from bookswap.core.market_db import MarketDB
from bookswap.core.models import BookFilters, Identity

logger = setup_logger(__name__)


def _error_response(message: str, status_code: int, *, code: str | None = None):
    payload: dict[str, Any] = {"error": message}
    if code is not None:
        payload["code"] = code
    return jsonify(payload), status_code


def _optional_arg(name: str) -> str | None:
    value = request.args.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def register_book_routes(app: Flask, market_db: MarketDB) -> None:
    """Register catalog endpoints on the Flask app."""
    identity_required = require_identity(market_db)

    @app.route("/book/new", methods=["POST"])
    @identity_required
    def api_create_book(identity: Identity):
        try:
            book = create_book(
                market_db,
                owner_id=identity.user_id,
                payload=request.get_json(silent=True),
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Book created #%s '%s' by user #%s", book["id"], book["title"], identity.user_id)
        return jsonify({"message": "Book added successfully", "data": book}), 201

    @app.route("/book", methods=["GET"])
    def api_list_books():
        filters = BookFilters(
            title=_optional_arg("title"),
            author=_optional_arg("author"),
            genre=_optional_arg("genre"),
            location=_optional_arg("location"),
            status=_optional_arg("status"),
        )
        try:
            result = list_books(
                market_db,
                filters=filters,
                page=request.args.get("page"),
                limit=request.args.get("limit"),
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)
        return jsonify({"message": "Books fetched successfully", **result})

    @app.route("/book/<int:book_id>", methods=["GET"])
    def api_get_book(book_id: int):
        try:
            book = get_book_view(market_db, book_id)
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)
        return jsonify({"message": "Book retrieved successfully", "data": book})

    @app.route("/book/<int:book_id>", methods=["PUT"])
    @identity_required
    def api_update_book(identity: Identity, book_id: int):
        try:
            book = update_book(
                market_db,
                book_id=book_id,
                actor_user_id=identity.user_id,
                payload=request.get_json(silent=True),
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Book updated #%s by user #%s", book_id, identity.user_id)
        return jsonify({"message": "Book updated successfully", "data": book})

    @app.route("/book/<int:book_id>", methods=["DELETE"])
    @identity_required
    def api_delete_book(identity: Identity, book_id: int):
        try:
            delete_book(market_db, book_id=book_id, actor_user_id=identity.user_id)
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Book deleted #%s by user #%s", book_id, identity.user_id)
        return jsonify({"message": "Book deleted successfully"})

    @app.route("/book/<int:book_id>/mark-returned", methods=["PUT", "POST"])
    @identity_required
    def api_mark_returned(identity: Identity, book_id: int):
        try:
            book = mark_returned(market_db, book_id=book_id, actor_user_id=identity.user_id)
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info("Book returned #%s, marked by user #%s", book_id, identity.user_id)
        return jsonify({"message": "Book marked as returned", "data": book})

    @app.route("/my-books", methods=["GET"])
    @identity_required
    def api_my_books(identity: Identity):
        books = list_owned_books(market_db, owner_id=identity.user_id)
        return jsonify({"message": "Books fetched successfully", "data": books})

    @app.route("/my-rented-books", methods=["GET"])
    @identity_required
    def api_my_rented_books(identity: Identity):
        books = list_borrowed_books(market_db, borrower_id=identity.user_id, status="rented")
        return jsonify({"message": "Rented books fetched", "data": books})

    @app.route("/my-exchanged-books", methods=["GET"])
    @identity_required
    def api_my_exchanged_books(identity: Identity):
        books = list_borrowed_books(market_db, borrower_id=identity.user_id, status="exchanged")
        return jsonify({"message": "Exchanged books fetched", "data": books})
