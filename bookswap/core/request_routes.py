"""Book request API routes."""

from __future__ import annotations

from typing import Any

from flask import Flask, jsonify, request

from bookswap.core.auth_gate import require_identity
from bookswap.core.errors import ServiceError
from bookswap.core.logger import setup_logger
from bookswap.core.market_db import MarketDB
from bookswap.core.models import Identity
from bookswap.core.requests_service import (
    accept_request,
    cancel_request,
    create_request,
    get_request_for_viewer,
    list_received_requests,
    list_sent_requests,
    reject_request,
)

logger = setup_logger(__name__)


def _error_response(message: str, status_code: int, *, code: str | None = None):
    payload: dict[str, Any] = {"error": message}
    if code is not None:
        payload["code"] = code
    return jsonify(payload), status_code


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def register_request_routes(app: Flask, market_db: MarketDB) -> None:
    """Register book request endpoints on the Flask app."""
    identity_required = require_identity(market_db)

    @app.route("/request", methods=["POST"])
    @identity_required
    def api_create_request(identity: Identity):
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return _error_response("No data provided", 400, code="invalid_argument")

        try:
            created = create_request(
                market_db,
                requester_id=identity.user_id,
                book_id=_first_present(data, "bookId", "book_id"),
                request_type=data.get("type"),
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info(
            "Request created #%s (%s) on book #%s by user #%s",
            created["id"],
            created["type"],
            created["book_id"],
            identity.user_id,
        )
        return jsonify(created), 201

    @app.route("/request/sent", methods=["GET"])
    @identity_required
    def api_list_sent_requests(identity: Identity):
        try:
            rows = list_sent_requests(
                market_db,
                actor_user_id=identity.user_id,
                status=request.args.get("status"),
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)
        return jsonify(rows)

    @app.route("/request/received", methods=["GET"])
    @identity_required
    def api_list_received_requests(identity: Identity):
        try:
            rows = list_received_requests(
                market_db,
                actor_user_id=identity.user_id,
                status=request.args.get("status"),
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)
        return jsonify(rows)

    @app.route("/request/<int:request_id>", methods=["GET"])
    @identity_required
    def api_get_request(identity: Identity, request_id: int):
        try:
            view = get_request_for_viewer(
                market_db,
                request_id=request_id,
                actor_user_id=identity.user_id,
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)
        return jsonify(view)

    @app.route("/request/<int:request_id>/accept", methods=["PUT"])
    @identity_required
    def api_accept_request(identity: Identity, request_id: int):
        try:
            updated = accept_request(
                market_db,
                request_id=request_id,
                actor_user_id=identity.user_id,
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info(
            "Request accepted #%s on book #%s by user #%s",
            updated["id"],
            updated["book_id"],
            identity.user_id,
        )
        return jsonify(updated)

    @app.route("/request/<int:request_id>/reject", methods=["PUT"])
    @identity_required
    def api_reject_request(identity: Identity, request_id: int):
        try:
            updated = reject_request(
                market_db,
                request_id=request_id,
                actor_user_id=identity.user_id,
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info(
            "Request rejected #%s on book #%s by user #%s",
            updated["id"],
            updated["book_id"],
            identity.user_id,
        )
        return jsonify(updated)

    @app.route("/request/<int:request_id>/cancel", methods=["PUT"])
    @identity_required
    def api_cancel_request(identity: Identity, request_id: int):
        try:
            updated = cancel_request(
                market_db,
                request_id=request_id,
                actor_user_id=identity.user_id,
            )
        except ServiceError as exc:
            return _error_response(str(exc), exc.status_code, code=exc.code)

        logger.info(
            "Request cancelled #%s on book #%s by user #%s",
            updated["id"],
            updated["book_id"],
            identity.user_id,
        )
        return jsonify(updated)
