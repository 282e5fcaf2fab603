"""JSON config files under CONFIG_DIR/plugins with environment overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from bookswap.core.logger import setup_logger

logger = setup_logger(__name__)

MARKETPLACE_CONFIG = "marketplace"

MARKETPLACE_DEFAULTS: dict[str, Any] = {
    "RETURN_POLICY": "borrower",
    "BOOK_LIST_DEFAULT_LIMIT": 10,
    "BOOK_LIST_MAX_LIMIT": 50,
    "ACCEPT_MAX_ATTEMPTS": 3,
}


def _get_config_file_path(name: str) -> Path:
    config_dir = Path(os.getenv("CONFIG_DIR", "/config"))
    return config_dir / "plugins" / f"{name}.json"


def load_config_file(name: str) -> dict[str, Any]:
    """Load a named JSON config file. Missing or unreadable files load as empty."""
    path = _get_config_file_path(name)
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            payload = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning(f"Failed to read config file {path}: {exc}")
        return {}
    if not isinstance(payload, dict):
        logger.warning(f"Ignoring config file {path}: top-level value must be an object")
        return {}
    return payload


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def get_marketplace_settings() -> dict[str, Any]:
    """Return marketplace settings: defaults, then config file, then env vars."""
    settings = dict(MARKETPLACE_DEFAULTS)
    settings.update(
        {k: v for k, v in load_config_file(MARKETPLACE_CONFIG).items() if k in MARKETPLACE_DEFAULTS}
    )
    for key in MARKETPLACE_DEFAULTS:
        env_value = os.environ.get(key)
        if env_value is not None and env_value.strip():
            settings[key] = env_value.strip()

    for key in ("BOOK_LIST_DEFAULT_LIMIT", "BOOK_LIST_MAX_LIMIT", "ACCEPT_MAX_ATTEMPTS"):
        parsed = _as_int(settings[key])
        if parsed is None or parsed < 1:
            logger.warning(f"Invalid {key}={settings[key]!r}, using {MARKETPLACE_DEFAULTS[key]}")
            parsed = MARKETPLACE_DEFAULTS[key]
        settings[key] = parsed

    if settings["BOOK_LIST_DEFAULT_LIMIT"] > settings["BOOK_LIST_MAX_LIMIT"]:
        settings["BOOK_LIST_DEFAULT_LIMIT"] = settings["BOOK_LIST_MAX_LIMIT"]

    return settings
