"""Input validation helpers for RPC and tool handlers.

Validators raise RpcError(INVALID_PARAMS) so the dispatcher can report a
precise -32602 instead of a generic internal error.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Any

from askloop.rpc.types import INVALID_PARAMS, RpcError

MAX_TEXT_LEN = 50_000


# =============================================================================
# Envelope Validation
# =============================================================================


def validate_params_object(value: Any, name: str = "params") -> dict[str, Any]:
    """Validate that params (or tool arguments) is an object.

    A missing value is treated as an empty object.
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise RpcError(INVALID_PARAMS, f"{name} must be an object")
    return value


# =============================================================================
# String Validation
# =============================================================================


def validate_string(
    value: Any,
    name: str,
    *,
    max_length: int = MAX_TEXT_LEN,
    allow_empty: bool = False,
) -> str:
    """Validate a string parameter.

    Args:
        value: The value to validate
        name: Parameter name for error messages
        max_length: Maximum length
        allow_empty: Whether empty (or whitespace-only) strings are allowed

    Returns:
        The validated string

    Raises:
        RpcError: If validation fails
    """
    if not isinstance(value, str):
        raise RpcError(INVALID_PARAMS, f"{name} must be a string")

    if not value.strip() and not allow_empty:
        raise RpcError(INVALID_PARAMS, f"{name} cannot be empty")

    if len(value) > max_length:
        raise RpcError(INVALID_PARAMS, f"{name} must be at most {max_length} characters")

    return value


def optional_string(value: Any, name: str, *, default: str) -> str:
    """Validate an optional string, falling back to default when absent or blank."""
    if value is None:
        return default
    value = validate_string(value, name, allow_empty=True)
    return value if value.strip() else default


def validate_choice(value: Any, name: str, choices: Collection[str], *, default: str) -> str:
    """Validate an enum-like string parameter."""
    if value is None:
        return default
    if not isinstance(value, str) or value not in choices:
        allowed = ", ".join(sorted(choices))
        raise RpcError(INVALID_PARAMS, f"{name} must be one of: {allowed}")
    return value


# =============================================================================
# Boolean Validation
# =============================================================================


def validate_bool(value: Any, name: str, *, default: bool = False) -> bool:
    """Validate an optional boolean parameter.

    Returns:
        The validated boolean, or default when absent

    Raises:
        RpcError: If validation fails
    """
    if value is None:
        return default
    if not isinstance(value, bool):
        raise RpcError(INVALID_PARAMS, f"{name} must be a boolean")
    return value
