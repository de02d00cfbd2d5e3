"""askloop Error Hierarchy.

Provides a structured error hierarchy for the broker, dialogs and tools:
- AskloopError: Base exception for all application errors
- UnknownToolError: call-tool named a tool that is not registered
- WaiterError: A pending waiter settled without an answer (timeout, cancel)
- CollaboratorUnavailableError: No UI host could be asked
- DialogUnavailableError: The OS-native dialog could not be shown
- FallbackExhaustedError: Both the UI host and the dialog failed

Each error type includes:
- Descriptive message
- Recoverable flag (timeouts and unreachable collaborators are recovered
  through the fallback dialog)
- Structured representation for RPC responses

Usage:
    from askloop.errors import WaiterTimeoutError

    try:
        value = await broker.request("input-dialog", title, message)
    except WaiterTimeoutError:
        ...
"""

from __future__ import annotations

from typing import Any

from askloop.rpc.types import (
    COLLABORATOR_ERROR,
    DIALOG_ERROR,
    INTERNAL_ERROR,
    UNKNOWN_TOOL_ERROR,
    WAITER_ERROR,
)


# =============================================================================
# Error Base Class
# =============================================================================


class AskloopError(Exception):
    """Base exception for all askloop application errors.

    Attributes:
        message: Human-readable error description
        recoverable: Whether the caller can recover (retry or fall back)
        context: Additional context for debugging
    """

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to structured dictionary for RPC responses."""
        return {
            "type": type(self).__name__.lower().replace("error", ""),
            "message": self.message,
            "recoverable": self.recoverable,
            **{k: v for k, v in self.context.items() if v is not None},
        }


# =============================================================================
# Request Errors
# =============================================================================


class UnknownToolError(AskloopError):
    """call-tool referenced a name missing from the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}", recoverable=False, context={"tool": name})
        self.tool = name


# =============================================================================
# Waiter Errors
# =============================================================================


class WaiterError(AskloopError):
    """A pending waiter settled without a value."""

    def __init__(
        self,
        message: str,
        *,
        request_id: str | None = None,
        recoverable: bool = False,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {})
        context["request_id"] = request_id
        super().__init__(message, recoverable=recoverable, context=context)
        self.request_id = request_id


class WaiterTimeoutError(WaiterError):
    """No answer arrived before the waiter's deadline."""

    def __init__(self, request_id: str, *, timeout_seconds: float | None = None) -> None:
        super().__init__(
            f"No answer for {request_id} within {timeout_seconds:g}s"
            if timeout_seconds is not None
            else f"No answer for {request_id}",
            request_id=request_id,
            recoverable=True,  # Recovered through the fallback dialog
            context={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class WaiterCancelledError(WaiterError):
    """The waiter was cancelled explicitly or flushed at shutdown."""

    def __init__(self, request_id: str, *, reason: str = "cancelled") -> None:
        super().__init__(
            f"Request {request_id} {reason}",
            request_id=request_id,
            recoverable=False,
            context={"reason": reason},
        )
        self.reason = reason


# =============================================================================
# Collaborator Errors
# =============================================================================


class CollaboratorUnavailableError(AskloopError):
    """The UI host cannot be reached over the out-of-band channel."""

    def __init__(self, message: str = "No UI collaborator attached", *, command: str | None = None) -> None:
        super().__init__(message, recoverable=True, context={"command": command})
        self.command = command


class DialogUnavailableError(AskloopError):
    """The OS-native dialog could not be shown or crashed."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        returncode: int | None = None,
    ) -> None:
        super().__init__(
            message,
            recoverable=False,
            context={"backend": backend, "returncode": returncode},
        )
        self.backend = backend
        self.returncode = returncode


class FallbackExhaustedError(AskloopError):
    """Primary collaborator and fallback dialog both failed."""

    def __init__(self, primary: BaseException, fallback: BaseException) -> None:
        super().__init__(
            f"Collaborator failed ({primary}); dialog failed ({fallback})",
            recoverable=False,
            context={
                "primary_error": type(primary).__name__,
                "fallback_error": type(fallback).__name__,
            },
        )
        self.primary = primary
        self.fallback = fallback


# =============================================================================
# RPC Error Code Mapping
# =============================================================================


# Map domain errors to JSON-RPC error codes
ERROR_CODES: dict[type[AskloopError], int] = {
    UnknownToolError: UNKNOWN_TOOL_ERROR,
    WaiterError: WAITER_ERROR,
    WaiterTimeoutError: WAITER_ERROR,
    WaiterCancelledError: WAITER_ERROR,
    CollaboratorUnavailableError: COLLABORATOR_ERROR,
    DialogUnavailableError: DIALOG_ERROR,
    FallbackExhaustedError: DIALOG_ERROR,
}


def get_error_code(exc: AskloopError) -> int:
    """Get the JSON-RPC error code for a domain error."""
    # Check exact type first
    if type(exc) in ERROR_CODES:
        return ERROR_CODES[type(exc)]
    # Check parent types
    for error_type, code in ERROR_CODES.items():
        if isinstance(exc, error_type):
            return code
    # Default internal error
    return INTERNAL_ERROR
