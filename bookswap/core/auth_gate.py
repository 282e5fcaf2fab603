"""Resolve the acting identity from the Flask session."""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, TYPE_CHECKING

from flask import jsonify, session

from bookswap.core.errors import ServiceError
from bookswap.core.logger import setup_logger
from bookswap.core.models import Identity

if TYPE_CHECKING:
    from bookswap.core.market_db import MarketDB

logger = setup_logger(__name__)

SESSION_USER_KEY = "db_user_id"


class AuthError(ServiceError):
    """Caller is not authenticated."""

    default_status_code = 401
    default_code = "unauthorized"


def authenticate(market_db: "MarketDB", raw_user_id: Any) -> Identity:
    """Turn a session user id into an Identity, or raise AuthError."""
    if raw_user_id is None or isinstance(raw_user_id, bool):
        raise AuthError("Authentication required")
    try:
        user_id = int(raw_user_id)
    except (TypeError, ValueError) as exc:
        raise AuthError("Invalid session") from exc

    user = market_db.get_user(user_id=user_id)
    if user is None:
        raise AuthError("User no longer exists")
    return Identity(
        user_id=user["id"],
        email=user["email"],
        full_name=user.get("full_name"),
        role=user.get("role"),
    )


def require_identity(market_db: "MarketDB") -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator passing the authenticated Identity as the view's first argument."""

    def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(f)
        def decorated(*args, **kwargs):
            try:
                identity = authenticate(market_db, session.get(SESSION_USER_KEY))
            except AuthError as exc:
                if session.get(SESSION_USER_KEY) is not None:
                    logger.warning(f"Rejected stale session for user id {session.get(SESSION_USER_KEY)}: {exc}")
                    session.clear()
                return jsonify({"error": str(exc), "code": exc.code}), exc.status_code
            return f(identity, *args, **kwargs)

        return decorated

    return decorator
