from __future__ import annotations

from typing import Any


# credential keys found in portals.config["credentials"] and adapter responses
SENSITIVE_KEYS = frozenset({
    "client_secret", "client_token",
    "access_token", "refresh_token",
    "feed_token", "import_token", "token",
    "password", "api_key", "authorization",
})

REDACTED = "**********"


def _is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and key.lower() in SENSITIVE_KEYS


def redact_payload(value: Any) -> Any:
    if isinstance(value, dict):
        # empty secrets stay visible so the admin sees what is not configured
        return {k: (REDACTED if v else v) if _is_sensitive(k) else redact_payload(v) for k, v in value.items()}
    if isinstance(value, list):
        return [redact_payload(v) for v in value]
    return value


def redact_portal_config(config: dict[str, Any] | None) -> dict[str, Any]:
    return redact_payload(dict(config or {}))


def merge_secrets(stored: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """
    Apply an admin patch to a credential bundle. Values omitted (None) or
    echoed back as REDACTED keep what is stored.
    """
    merged = dict(stored)
    merged.update({k: v for k, v in incoming.items() if v is not None and v != REDACTED})
    return merged
