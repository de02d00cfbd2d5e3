"""Tool handlers exposed by the server.

Every human-facing tool asks the UI host first (through the correlation
broker) and degrades to an OS-native dialog when the host is missing,
silent or broken. The calling agent always gets a text result in the
tool's normal shape, never a raw timeout.

Collaborator commands emitted on the out-of-band channel:

- ``input-dialog``: ``[requestId, title, message, allowAttachment, type]``
- ``continue-dialog``: ``[requestId, reason]``
- ``notify`` (plain notification, no request id): ``{message, level}``
"""

from __future__ import annotations

import json
import logging
from functools import partial
from typing import Any

from .continuation import ContinueDecision, decide, render_decision
from .dialogs import DialogKind, DialogRequest
from .errors import CollaboratorUnavailableError, DialogUnavailableError
from .fallback import AnswerSource, FallbackDialogResolver
from .rpc.types import JSON
from .rpc.validation import (
    optional_string,
    validate_bool,
    validate_choice,
    validate_params_object,
    validate_string,
)
from .tools import Tool, ToolContext, ToolRegistry, text_result, tool_boundary

logger = logging.getLogger(__name__)

INPUT_DIALOG = "input-dialog"
CONTINUE_DIALOG = "continue-dialog"
NOTIFY_METHOD = "notify"

DEFAULT_TITLE = "Input required"
CONFIRM_TITLE = "Please confirm"
DEFAULT_REASON = "Task completed"

CONFIRMED = "confirmed"
DECLINED = "declined"
ACKNOWLEDGED = "acknowledged"
NOTIFICATION_SENT = "notification_sent"

NOTIFY_LEVELS = ("info", "warning", "error")
_LEVEL_TITLES = {"info": "Information", "warning": "Warning", "error": "Error"}
_LEVEL_LOGGING = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

_YES = {"true", "yes", "y", "ok", "confirm", "confirmed"}


def _is_affirmative(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _YES
    if isinstance(value, dict):
        return _is_affirmative(value.get("confirmed", value.get("value")))
    return False


def _answer_parts(value: Any) -> tuple[str, list[JSON]]:
    """Split a free-text answer into its text and any attachment content items."""
    if value is None:
        return "", []
    if isinstance(value, str):
        return value, []
    if isinstance(value, dict):
        text = value.get("text", value.get("answer", ""))
        if not isinstance(text, str):
            text = json.dumps(text, ensure_ascii=False)
        attachments = value.get("attachments") or value.get("images") or []
        if not isinstance(attachments, list):
            attachments = []
        return text, [a for a in attachments if isinstance(a, dict) and "type" in a]
    return json.dumps(value, ensure_ascii=False), []


async def _ask(ctx: ToolContext, request: DialogRequest) -> Any:
    primary = partial(
        ctx.broker.request,
        INPUT_DIALOG,
        request.title,
        request.body_text,
        request.allow_attachment,
        request.kind.value,
        owner=ctx.owner,
        prefix=request.kind.value,
    )
    resolution = await ctx.resolver.ask(primary, request)
    logger.debug("%s answered via %s (%s)", request.kind.value, resolution.source.value, resolution.state.value)
    return resolution.value


# =============================================================================
# collect-input / collect-confirm
# =============================================================================


@tool_boundary("collect-input")
async def collect_input(ctx: ToolContext, arguments: JSON) -> JSON:
    arguments = validate_params_object(arguments, "arguments")
    message = validate_string(arguments.get("message"), "message")
    title = optional_string(arguments.get("title"), "title", default=DEFAULT_TITLE)
    kind = DialogKind(
        validate_choice(arguments.get("type"), "type", [k.value for k in DialogKind], default="input")
    )
    allow_attachment = validate_bool(arguments.get("allowAttachment"), "allowAttachment")

    value = await _ask(ctx, DialogRequest(title, message, kind, allow_attachment))
    if kind is DialogKind.CONFIRM:
        return text_result(CONFIRMED if _is_affirmative(value) else DECLINED)
    if kind is DialogKind.INFO:
        return text_result(ACKNOWLEDGED)
    text, attachments = _answer_parts(value)
    return text_result(text, extra=attachments if allow_attachment else None)


@tool_boundary("collect-confirm")
async def collect_confirm(ctx: ToolContext, arguments: JSON) -> JSON:
    arguments = validate_params_object(arguments, "arguments")
    message = validate_string(arguments.get("message"), "message")
    title = optional_string(arguments.get("title"), "title", default=CONFIRM_TITLE)

    value = await _ask(ctx, DialogRequest(title, message, DialogKind.CONFIRM))
    return text_result(CONFIRMED if _is_affirmative(value) else DECLINED)


# =============================================================================
# send-notification
# =============================================================================


@tool_boundary("send-notification")
async def send_notification(ctx: ToolContext, arguments: JSON) -> JSON:
    arguments = validate_params_object(arguments, "arguments")
    message = validate_string(arguments.get("message"), "message")
    level = validate_choice(arguments.get("level"), "level", NOTIFY_LEVELS, default="info")

    try:
        ctx.broker.notify(NOTIFY_METHOD, {"message": message, "level": level})
    except CollaboratorUnavailableError as exc:
        logger.info("Notification not delivered (%s); showing dialog", exc.message)
        try:
            await ctx.resolver.dialog(DialogRequest(_LEVEL_TITLES[level], message, DialogKind.INFO))
        except DialogUnavailableError as dialog_exc:
            logger.log(
                _LEVEL_LOGGING[level],
                "Notification could not be shown (%s): %s",
                dialog_exc.message,
                message,
            )
    return text_result(NOTIFICATION_SENT)


# =============================================================================
# continue-session
# =============================================================================


async def _continue_by_dialog(resolver: FallbackDialogResolver, reason: str) -> Any:
    """Two-step native fallback: yes/no, then an optional new instruction."""
    confirmed = await resolver.dialog(
        DialogRequest(
            "Continue the session?",
            f"The agent wants to end the session:\n{reason}\n\nContinue?",
            DialogKind.CONFIRM,
        )
    )
    if not confirmed:
        return False
    try:
        instruction = await resolver.dialog(
            DialogRequest("New instruction", "Enter a new instruction (optional):", DialogKind.INPUT)
        )
    except DialogUnavailableError as exc:
        logger.warning("Instruction dialog failed after confirm: %s", exc.message)
        instruction = None
    return {"continue": True, "instruction": instruction}


@tool_boundary("continue-session")
async def continue_session(ctx: ToolContext, arguments: JSON) -> JSON:
    arguments = validate_params_object(arguments, "arguments")
    reason = optional_string(arguments.get("reason"), "reason", default=DEFAULT_REASON)

    primary = partial(ctx.broker.request, CONTINUE_DIALOG, reason, owner=ctx.owner, prefix="continue")
    resolution = await ctx.resolver.resolve(
        primary,
        partial(_continue_by_dialog, ctx.resolver, reason),
        default=None,
    )

    decision: ContinueDecision = decide(resolution.value)
    note = None
    if resolution.source is AnswerSource.DEFAULT:
        note = "The continue dialog could not be shown; the session ends."
    elif resolution.source is AnswerSource.CANCELLED:
        note = "The request was cancelled; the session ends."
    logger.info("Continue decision: %s (via %s)", decision.state.value, resolution.source.value)
    return text_result(render_decision(decision, note=note))


# =============================================================================
# Registry
# =============================================================================


def build_default_registry() -> ToolRegistry:
    return ToolRegistry(
        [
            Tool(
                name="collect-input",
                description=(
                    "Ask the user a question and wait for the answer. type=input returns the "
                    "text verbatim, type=confirm returns confirmed/declined, type=info returns "
                    "acknowledged."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "message": {"type": "string", "description": "Question shown to the user"},
                        "title": {"type": "string"},
                        "type": {"type": "string", "enum": [k.value for k in DialogKind]},
                        "allowAttachment": {"type": "boolean"},
                    },
                    "required": ["message"],
                },
                handler=collect_input,
            ),
            Tool(
                name="collect-confirm",
                description="Ask the user a yes/no question. Returns confirmed or declined.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "message": {"type": "string"},
                        "title": {"type": "string"},
                    },
                    "required": ["message"],
                },
                handler=collect_confirm,
            ),
            Tool(
                name="send-notification",
                description="Show a notification to the user without waiting for an answer.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "message": {"type": "string"},
                        "level": {"type": "string", "enum": list(NOTIFY_LEVELS)},
                    },
                    "required": ["message"],
                },
                handler=send_notification,
            ),
            Tool(
                name="continue-session",
                description=(
                    "Call before ending the session. The user decides whether to continue and "
                    "may give a new instruction. The first line of the result is "
                    "'result: should_continue=true|false'."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "reason": {
                            "type": "string",
                            "description": "Why the agent wants to stop (default: Task completed)",
                        },
                    },
                },
                handler=continue_session,
            ),
        ]
    )
