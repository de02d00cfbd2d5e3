"""Continue-or-end decisions for automated agent sessions.

The calling agent re-parses the text of the ``continue-session`` result to
decide its next step, so the wire text is a fixed sub-protocol::

    result: should_continue=true

    <<<instruction
    <instruction text, verbatim, may span lines>
    instruction>>>

    <one line of guidance for the agent>

The first line and the instruction block are the contract; the guidance
line is free text. ``parse_decision_text`` is the reference reader.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

CONTINUE_MARKER = "should_continue"
INSTRUCTION_OPEN = "<<<instruction"
INSTRUCTION_CLOSE = "instruction>>>"

_RESULT_LINE = re.compile(rf"^result: {CONTINUE_MARKER}=(true|false)$", re.MULTILINE)

_AFFIRMATIVE = {"true", "yes", "y", "continue", "ok"}
_NEGATIVE = {"", "false", "no", "n", "end", "stop"}

GUIDANCE_WITH_INSTRUCTION = (
    "Carry out the new instruction now, then call continue-session again when it is done."
)
GUIDANCE_IDLE = (
    "The user chose to continue. Wait for the next instruction or ask what to do next, "
    "and call continue-session again when done."
)
GUIDANCE_END = "The user chose to end the session."


class SessionState(str, Enum):
    AWAITING_DECISION = "awaiting_decision"
    CONTINUE_WITH_INSTRUCTION = "continue_with_instruction"
    CONTINUE_IDLE = "continue_idle"
    END = "end"


@dataclass(frozen=True)
class ContinueDecision:
    should_continue: bool
    instruction: str | None = None
    attachments: tuple[Any, ...] = ()

    @property
    def state(self) -> SessionState:
        if not self.should_continue:
            return SessionState.END
        if self.instruction and self.instruction.strip():
            return SessionState.CONTINUE_WITH_INSTRUCTION
        return SessionState.CONTINUE_IDLE


END = ContinueDecision(should_continue=False)


def decide(answer: Any) -> ContinueDecision:
    """Turn a raw collaborator answer into a decision.

    Accepted shapes:
    - ``None``: nobody answered, END
    - ``bool``: continue or end, no instruction
    - ``str``: yes/no words, anything else is taken as the new instruction
    - ``dict``: ``{"continue": bool, "instruction" | "newInstruction": str,
      "attachments" | "images": [...]}``

    Anything else ends the session.
    """
    if answer is None:
        return END
    if isinstance(answer, bool):
        return ContinueDecision(should_continue=answer)
    if isinstance(answer, str):
        word = answer.strip().lower()
        if word in _NEGATIVE:
            return END
        if word in _AFFIRMATIVE:
            return ContinueDecision(should_continue=True)
        return ContinueDecision(should_continue=True, instruction=answer)
    if isinstance(answer, dict):
        if answer.get("continue", answer.get("shouldContinue")) is not True:
            return END
        instruction = answer.get("instruction") or answer.get("newInstruction")
        if not isinstance(instruction, str) or not instruction.strip():
            instruction = None
        attachments = answer.get("attachments") or answer.get("images") or ()
        if not isinstance(attachments, (list, tuple)):
            attachments = ()
        return ContinueDecision(
            should_continue=True,
            instruction=instruction,
            attachments=tuple(attachments),
        )
    return END


def render_decision(decision: ContinueDecision, *, note: str | None = None) -> str:
    """Encode a decision in the stable text format.

    ``note`` replaces the default guidance line (e.g. when nobody answered).
    """
    flag = "true" if decision.should_continue else "false"
    lines = [f"result: {CONTINUE_MARKER}={flag}", ""]
    state = decision.state
    if state is SessionState.CONTINUE_WITH_INSTRUCTION:
        lines += [INSTRUCTION_OPEN, decision.instruction or "", INSTRUCTION_CLOSE, ""]
        guidance = GUIDANCE_WITH_INSTRUCTION
    elif state is SessionState.CONTINUE_IDLE:
        guidance = GUIDANCE_IDLE
    else:
        guidance = GUIDANCE_END
    if decision.attachments:
        lines += [f"attachments: {len(decision.attachments)}", ""]
    lines.append(note or guidance)
    return "\n".join(lines)


def parse_decision_text(text: str) -> ContinueDecision:
    """Read a decision back from render_decision() output.

    Raises:
        ValueError: If the text carries no result marker.
    """
    match = _RESULT_LINE.search(text)
    if match is None:
        raise ValueError(f"no '{CONTINUE_MARKER}' marker in decision text")
    should_continue = match.group(1) == "true"
    instruction = None
    start = text.find(INSTRUCTION_OPEN + "\n", match.end())
    if should_continue and start != -1:
        body_start = start + len(INSTRUCTION_OPEN) + 1
        end = text.rfind("\n" + INSTRUCTION_CLOSE)
        if end >= body_start:
            instruction = text[body_start:end]
    return ContinueDecision(should_continue=should_continue, instruction=instruction)
