"""Primary-then-dialog resolution for human answers.

State machine per request::

    PRIMARY_ATTEMPT --ok--> DONE
          |
         fail
          v
    FALLBACK_ATTEMPT --ok--> DONE
          |
         fail
          v
    DONE_WITH_DEFAULT

Cancellation of the primary waiter is an answer in its own right (DONE with
the default value); no dialog is shown for a request the caller abandoned.
``asyncio.CancelledError`` always propagates.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any

from .dialogs import DEFAULT_DIALOG_TIMEOUT, DialogRequest, default_answer, show_dialog
from .errors import AskloopError, FallbackExhaustedError, WaiterCancelledError

logger = logging.getLogger(__name__)

DialogRunner = Callable[[DialogRequest], Awaitable[Any]]
Attempt = Callable[[], Awaitable[Any]]


class ResolutionState(str, Enum):
    PRIMARY_ATTEMPT = "primary_attempt"
    FALLBACK_ATTEMPT = "fallback_attempt"
    DONE = "done"
    DONE_WITH_DEFAULT = "done_with_default"


class AnswerSource(str, Enum):
    COLLABORATOR = "collaborator"
    DIALOG = "dialog"
    CANCELLED = "cancelled"
    DEFAULT = "default"


@dataclass(frozen=True)
class Resolution:
    """Outcome of one resolve() walk."""

    value: Any
    state: ResolutionState
    source: AnswerSource
    path: tuple[ResolutionState, ...]
    error: AskloopError | None = None

    @property
    def answered(self) -> bool:
        """True when a human actually supplied the value."""
        return self.source in (AnswerSource.COLLABORATOR, AnswerSource.DIALOG)


def _as_domain_error(exc: Exception) -> AskloopError:
    if isinstance(exc, AskloopError):
        return exc
    return AskloopError(str(exc) or type(exc).__name__, context={"error_type": type(exc).__name__})


class FallbackDialogResolver:
    """Runs the primary attempt and degrades to a native dialog on failure."""

    def __init__(
        self,
        dialog: DialogRunner | None = None,
        *,
        platform_id: str | None = None,
        dialog_timeout: float = DEFAULT_DIALOG_TIMEOUT,
    ) -> None:
        self._dialog = dialog or partial(show_dialog, platform_id=platform_id, timeout=dialog_timeout)

    async def dialog(self, request: DialogRequest) -> Any:
        """Show one native dialog directly (used to compose multi-step fallbacks)."""
        return await self._dialog(request)

    async def ask(self, primary: Attempt, request: DialogRequest) -> Resolution:
        """Resolve through primary, falling back to a single dialog for request."""
        return await self.resolve(
            primary,
            partial(self._dialog, request),
            default=default_answer(request.kind),
        )

    async def resolve(self, primary: Attempt, fallback: Attempt, *, default: Any) -> Resolution:
        path = [ResolutionState.PRIMARY_ATTEMPT]
        try:
            value = await primary()
        except WaiterCancelledError as exc:
            path.append(ResolutionState.DONE)
            logger.info("Primary attempt cancelled (%s); using default", exc.reason)
            return Resolution(default, ResolutionState.DONE, AnswerSource.CANCELLED, tuple(path), exc)
        except Exception as exc:  # noqa: BLE001
            primary_error = _as_domain_error(exc)
            logger.warning("Primary attempt failed (%s); falling back to dialog", primary_error.message)
        else:
            path.append(ResolutionState.DONE)
            return Resolution(value, ResolutionState.DONE, AnswerSource.COLLABORATOR, tuple(path))

        path.append(ResolutionState.FALLBACK_ATTEMPT)
        try:
            value = await fallback()
        except Exception as exc:  # noqa: BLE001
            exhausted = FallbackExhaustedError(primary_error, exc)
            path.append(ResolutionState.DONE_WITH_DEFAULT)
            logger.error("Fallback dialog failed: %s; answering with default %r", exc, default)
            return Resolution(
                default,
                ResolutionState.DONE_WITH_DEFAULT,
                AnswerSource.DEFAULT,
                tuple(path),
                exhausted,
            )

        path.append(ResolutionState.DONE)
        return Resolution(value, ResolutionState.DONE, AnswerSource.DIALOG, tuple(path), primary_error)
