"""Signup, login and profile routes."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping

from flask import Flask, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from bookswap.core.auth_gate import SESSION_USER_KEY, require_identity
from bookswap.core.books_service import normalize_image_url
from bookswap.core.logger import setup_logger
from bookswap.core.market_db import MarketDB
from bookswap.core.models import Identity

logger = setup_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PROFILE_TEXT_LENGTH = 200
MAX_ABOUT_LENGTH = 2000
VALID_ROLES = ("owner", "seeker")
EDITABLE_PROFILE_FIELDS = ("full_name", "phone_number", "photo_url", "about")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PASSWORD_STRENGTH_MESSAGE = (
    "Password should contain at least one uppercase, one lowercase, "
    "one number and one special character"
)

# Accepted alternate spellings of payload keys.
_FIELD_ALIASES = {
    "full_name": ("full_name", "fullName"),
    "email": ("email", "emailId"),
    "phone_number": ("phone_number", "phoneNumber"),
    "photo_url": ("photo_url", "photoUrl"),
    "about": ("about",),
    "current_password": ("current_password", "currentPassword"),
    "new_password": ("new_password", "newPassword"),
}

# Rate limiting for login attempts
# Structure: {email: {'count': int, 'lockout_until': datetime}}
failed_login_attempts: Dict[str, Dict[str, Any]] = {}
MAX_LOGIN_ATTEMPTS = 10
LOCKOUT_DURATION_MINUTES = 30


def cleanup_old_lockouts() -> None:
    """Remove expired lockout entries to prevent memory buildup."""
    current_time = datetime.now()
    expired = [
        email for email, data in failed_login_attempts.items()
        if 'lockout_until' in data and data['lockout_until'] < current_time
    ]
    for email in expired:
        logger.info(f"Lockout expired for account: {email}")
        del failed_login_attempts[email]


def is_account_locked(email: str) -> bool:
    """Check if an account is currently locked due to failed login attempts."""
    cleanup_old_lockouts()

    if email not in failed_login_attempts:
        return False

    lockout_until = failed_login_attempts[email].get('lockout_until')
    return lockout_until is not None and datetime.now() < lockout_until


def record_failed_login(email: str, ip_address: str) -> bool:
    """Record a failed login attempt and lock the account if the threshold is reached.

    Returns True if the account is now locked, False otherwise.
    """
    if email not in failed_login_attempts:
        failed_login_attempts[email] = {'count': 0}

    failed_login_attempts[email]['count'] += 1
    count = failed_login_attempts[email]['count']

    logger.warning(f"Failed login attempt {count}/{MAX_LOGIN_ATTEMPTS} for '{email}' from IP {ip_address}")

    if count >= MAX_LOGIN_ATTEMPTS:
        lockout_until = datetime.now() + timedelta(minutes=LOCKOUT_DURATION_MINUTES)
        failed_login_attempts[email]['lockout_until'] = lockout_until
        logger.warning(f"Account '{email}' locked until {lockout_until.strftime('%Y-%m-%d %H:%M:%S')} after {count} failed login attempts")
        return True

    return False


def clear_failed_logins(email: str) -> None:
    """Clear failed login attempts after a successful login."""
    if email in failed_login_attempts:
        del failed_login_attempts[email]
        logger.debug(f"Cleared failed login attempts for: {email}")


def get_client_ip() -> str:
    """Extract client IP address from request, handling reverse proxy forwarding."""
    ip_address = request.headers.get('X-Forwarded-For', request.remote_addr) or 'unknown'
    if ',' in ip_address:
        ip_address = ip_address.split(',')[0].strip()
    return ip_address


def _field(data: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES.get(name, (name,)):
        if key in data:
            return data[key]
    return None


def _has_field(data: Mapping[str, Any], name: str) -> bool:
    return any(key in data for key in _FIELD_ALIASES.get(name, (name,)))


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(_EMAIL_RE.match(email.strip()))


def validate_password_strength(password: Any) -> str | None:
    """Return an error message when the password is too weak, else None."""
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password should be at least {MIN_PASSWORD_LENGTH} characters long"
    if not (
        re.search(r"[a-z]", password)
        and re.search(r"[A-Z]", password)
        and re.search(r"\d", password)
        and re.search(r"[^A-Za-z0-9]", password)
    ):
        return _PASSWORD_STRENGTH_MESSAGE
    return None


def serialize_user(user: Mapping[str, Any]) -> dict[str, Any]:
    payload = dict(user)
    payload.pop("password_hash", None)
    return payload


def _optional_text(value: Any, field: str, max_length: int) -> tuple[str | None, str | None]:
    """Normalize an optional text field. Returns (value, error)."""
    if value is None:
        return None, None
    if not isinstance(value, str):
        return None, f"{field} must be a string"
    normalized = value.strip()
    if len(normalized) > max_length:
        return None, f"{field} must be <= {max_length} characters"
    return normalized or None, None


def _failed_login_response(email: str, ip_address: str):
    """Record a failed login attempt and return the matching response."""
    is_now_locked = record_failed_login(email, ip_address)

    if is_now_locked:
        return jsonify({
            "error": f"Account locked due to {MAX_LOGIN_ATTEMPTS} failed login attempts. Try again in {LOCKOUT_DURATION_MINUTES} minutes."
        }), 429

    attempts_remaining = MAX_LOGIN_ATTEMPTS - failed_login_attempts[email]['count']
    if attempts_remaining <= 5:
        return jsonify({
            "error": f"Invalid email or password. {attempts_remaining} attempts remaining."
        }), 401

    return jsonify({"error": "Invalid email or password."}), 401


def register_auth_routes(app: Flask, market_db: MarketDB) -> None:
    """Register signup, login, logout and profile endpoints."""
    identity_required = require_identity(market_db)

    @app.route("/signup", methods=["POST"])
    def api_signup():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "No data provided"}), 400

        full_name, error = _optional_text(_field(data, "full_name"), "full_name", MAX_PROFILE_TEXT_LENGTH)
        if error:
            return jsonify({"error": error}), 400
        if not full_name:
            return jsonify({"error": "Full name is required"}), 400

        email = _field(data, "email")
        if not is_valid_email(email):
            return jsonify({"error": "Email is not valid"}), 400
        email = email.strip().lower()

        password = data.get("password")
        password_error = validate_password_strength(password)
        if password_error:
            return jsonify({"error": password_error}), 400

        phone_number, error = _optional_text(_field(data, "phone_number"), "phone_number", MAX_PROFILE_TEXT_LENGTH)
        if error:
            return jsonify({"error": error}), 400

        role = data.get("role")
        if role is not None:
            role = str(role).strip().lower() or None
        if role is not None and role not in VALID_ROLES:
            return jsonify({"error": f"Role must be one of: {', '.join(VALID_ROLES)}"}), 400

        if market_db.get_user(email=email):
            return jsonify({"error": "User with this email already exists"}), 400

        try:
            user = market_db.create_user(
                email=email,
                full_name=full_name,
                password_hash=generate_password_hash(password),
                phone_number=phone_number,
                role=role,
            )
        except ValueError:
            return jsonify({"error": "User with this email already exists"}), 400

        session[SESSION_USER_KEY] = user["id"]
        session.permanent = True
        logger.info(f"User signed up: '{email}' (id={user['id']}, role={role})")
        return jsonify({"message": "User created successfully", "data": serialize_user(user)}), 201

    @app.route("/login", methods=["POST"])
    def api_login():
        """Validate credentials and create a session.

        Includes rate limiting: 10 failed attempts = 30 minute lockout.
        """
        ip_address = get_client_ip()
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "No data provided"}), 400

        email = _field(data, "email")
        password = data.get("password")
        if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
            return jsonify({"error": "Email and password are required"}), 400
        if not is_valid_email(email):
            return jsonify({"error": "Email is not valid"}), 400
        email = email.strip().lower()

        if is_account_locked(email):
            lockout_until = failed_login_attempts[email].get('lockout_until')
            remaining_time = (lockout_until - datetime.now()).total_seconds() / 60
            logger.warning(f"Login attempt blocked for locked account '{email}' from IP {ip_address}")
            return jsonify({
                "error": f"Account temporarily locked due to multiple failed login attempts. Try again in {int(remaining_time)} minutes."
            }), 429

        user = market_db.get_user(email=email)
        if not user or not check_password_hash(user["password_hash"], password):
            return _failed_login_response(email, ip_address)

        session[SESSION_USER_KEY] = user["id"]
        session.permanent = True
        clear_failed_logins(email)
        logger.info(f"Login successful for '{email}' from IP {ip_address}")
        return jsonify({"message": "User logged in successfully", "data": serialize_user(user)})

    @app.route("/logout", methods=["POST"])
    def api_logout():
        user_id = session.get(SESSION_USER_KEY)
        session.clear()
        logger.info(f"Logout for user id {user_id} from IP {get_client_ip()}")
        return jsonify({"message": "User logged out successfully"})

    @app.route("/profile/view", methods=["GET"])
    @identity_required
    def api_profile_view(identity: Identity):
        user = market_db.get_user(user_id=identity.user_id)
        if user is None:
            return jsonify({"error": "User not found"}), 404
        return jsonify(serialize_user(user))

    @app.route("/profile/edit", methods=["PATCH"])
    @identity_required
    def api_profile_edit(identity: Identity):
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return jsonify({"error": "No data provided"}), 400

        allowed_keys = {key for name in EDITABLE_PROFILE_FIELDS for key in _FIELD_ALIASES[name]}
        disallowed = sorted(key for key in data if key not in allowed_keys)
        if disallowed:
            return jsonify({
                "error": "Invalid edit request",
                "details": [f"Field not editable: {key}" for key in disallowed],
            }), 400

        updates: dict[str, Any] = {}
        for name in EDITABLE_PROFILE_FIELDS:
            if not _has_field(data, name):
                continue
            raw = _field(data, name)
            if name == "photo_url":
                try:
                    updates[name] = normalize_image_url(raw)
                except ValueError as exc:
                    return jsonify({"error": str(exc)}), 400
                continue
            max_length = MAX_ABOUT_LENGTH if name == "about" else MAX_PROFILE_TEXT_LENGTH
            value, error = _optional_text(raw, name, max_length)
            if error:
                return jsonify({"error": error}), 400
            if name == "full_name" and not value:
                return jsonify({"error": "Full name cannot be empty"}), 400
            updates[name] = value

        user = market_db.update_user(identity.user_id, **updates)
        logger.info(f"Profile updated for user id {identity.user_id}: {sorted(updates)}")
        return jsonify({
            "message": f"{user['full_name']}, your profile was updated successfully",
            "data": serialize_user(user),
        })

    @app.route("/profile/password", methods=["PATCH"])
    @identity_required
    def api_profile_password(identity: Identity):
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "No data provided"}), 400

        current_password = _field(data, "current_password")
        new_password = _field(data, "new_password")
        if not (isinstance(current_password, str) and isinstance(new_password, str)) or not current_password or not new_password:
            return jsonify({"error": "Current and new password are required"}), 400

        user = market_db.get_user(user_id=identity.user_id)
        if user is None:
            return jsonify({"error": "User not found"}), 404
        if not check_password_hash(user["password_hash"], current_password):
            return jsonify({"error": "Current password is incorrect"}), 400
        if current_password == new_password:
            return jsonify({"error": "New password must be different from the current password"}), 400

        password_error = validate_password_strength(new_password)
        if password_error:
            return jsonify({"error": password_error}), 400

        market_db.update_user(identity.user_id, password_hash=generate_password_hash(new_password))
        logger.info(f"Password changed for user id {identity.user_id}")
        return jsonify({"message": "Password updated successfully"})
