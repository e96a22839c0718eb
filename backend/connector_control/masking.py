"""Redaction of secret-bearing connector configuration keys."""

from __future__ import annotations

from typing import Any, Dict, Optional

MASK_PLACEHOLDER = "********"

# Only these exact names (or a dotted key ending in one of them) are secrets.
# "passwordless" or "token.refresh.interval" must stay visible.
SENSITIVE_KEYS = (
    "password",
    "connection.password",
    "database.password",
    "secret",
    "token",
    "apikey",
    "api.key",
    "auth.token",
    "jaas.config",
)


def is_sensitive_key(key: str) -> bool:
    """Check whether a config key holds a secret (exact or dot-suffix match)."""
    lower_key = key.lower()
    return any(
        lower_key == sensitive or lower_key.endswith(f".{sensitive}")
        for sensitive in SENSITIVE_KEYS
    )


def mask_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of ``config`` with secret values replaced by a placeholder.

    Non-empty string values of sensitive keys are masked; nested maps (such as
    the ``snapshot_config`` of a registry reference) are masked the same way.
    The input is never modified and masking twice gives the same result.

    Args:
        config: Connector configuration

    Returns:
        Masked copy of the configuration
    """
    if not isinstance(config, dict):
        return config

    masked: Dict[str, Any] = {}
    for key, value in config.items():
        if is_sensitive_key(key) and isinstance(value, str) and value:
            masked[key] = MASK_PLACEHOLDER
        elif isinstance(value, dict):
            masked[key] = mask_config(value)
        else:
            masked[key] = value
    return masked


def restore_masked_fields(pending: Dict[str, Any], current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Put real secret values back into a config edited from a masked view.

    A pending draft is usually built from what the operator saw, so its
    secrets are the placeholder. Those are swapped for the values in the
    currently active config before anything is deployed.

    Args:
        pending: Pending configuration, possibly containing placeholders
        current: Active configuration holding the real secrets

    Returns:
        Copy of ``pending`` with placeholders restored where possible
    """
    restored = dict(pending)
    current = current or {}
    for key, value in pending.items():
        if value == MASK_PLACEHOLDER and is_sensitive_key(key) and current.get(key):
            restored[key] = current[key]
    return restored
