"""Who may mark a rented book as returned.

Earlier releases let the owner close a rental, later ones only the borrower.
The rule stays configurable until product settles it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from bookswap.core.config import get_marketplace_settings
from bookswap.core.logger import setup_logger

logger = setup_logger(__name__)


class ReturnPolicy(str, Enum):
    BORROWER = "borrower"
    OWNER = "owner"


DEFAULT_RETURN_POLICY = ReturnPolicy.BORROWER


def parse_return_policy(value: Any) -> ReturnPolicy | None:
    """Parse a policy value. Returns None for unknown values."""
    if isinstance(value, ReturnPolicy):
        return value
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    for policy in ReturnPolicy:
        if policy.value == normalized:
            return policy
    return None


def resolve_return_policy(settings: dict[str, Any] | None = None) -> ReturnPolicy:
    """Resolve the effective return policy, falling back to the default."""
    if settings is None:
        settings = get_marketplace_settings()
    raw_value = settings.get("RETURN_POLICY")
    parsed = parse_return_policy(raw_value)
    if parsed is None:
        logger.warning(
            f"Invalid RETURN_POLICY={raw_value!r}, using {DEFAULT_RETURN_POLICY.value}"
        )
        return DEFAULT_RETURN_POLICY
    return parsed


def can_mark_returned(book: dict[str, Any], actor_user_id: int, policy: ReturnPolicy) -> bool:
    """Return whether the actor may close the rental under the given policy."""
    if policy == ReturnPolicy.OWNER:
        return book.get("owner_id") == actor_user_id
    borrower_id = book.get("borrower_id")
    return borrower_id is not None and borrower_id == actor_user_id
