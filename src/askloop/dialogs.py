"""OS-native dialog back-ends used when the UI host cannot answer.

Each back-end spawns a short-lived process and reads the answer from its
standard output or from a temporary result file:

- Windows: PowerShell (WinForms MessageBox / VisualBasic InputBox), result file
- macOS: osascript ``display dialog``, stdout
- Linux and other Unix: zenity, stdout and exit code

Dialog text never gets spliced into script source. It travels as argv
(osascript ``on run argv``, zenity flags) or as environment variables
(PowerShell), so quotes and backticks in a message cannot break out.

Answer conventions shared by all back-ends:
- INPUT: the typed text (may be empty), or None when the user cancels
- CONFIRM: True / False
- INFO: True once acknowledged

A missing executable, a crash exit code, or the dialog outliving its
deadline raises DialogUnavailableError; a user pressing Cancel does not.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import DialogUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_DIALOG_TIMEOUT = 300.0


class DialogKind(str, Enum):
    INPUT = "input"
    CONFIRM = "confirm"
    INFO = "info"


@dataclass(frozen=True)
class DialogRequest:
    """One question for the human, alive only while its waiter is."""

    title: str
    body_text: str
    kind: DialogKind = DialogKind.INPUT
    allow_attachment: bool = False


def default_answer(kind: DialogKind) -> Any:
    """Conservative value used when no answer can be obtained at all."""
    if kind is DialogKind.CONFIRM:
        return False
    if kind is DialogKind.INFO:
        return True
    return None


# =============================================================================
# Back-ends
# =============================================================================


class DialogBackend:
    """Builds the command line for one platform and interprets its result."""

    name = "base"
    uses_result_file = False

    def command(self, request: DialogRequest) -> list[str]:
        raise NotImplementedError

    def environment(self, request: DialogRequest, result_path: Path) -> dict[str, str]:
        return dict(os.environ)

    def interpret(
        self,
        request: DialogRequest,
        returncode: int,
        stdout: str,
        stderr: str,
        file_text: str | None = None,
    ) -> Any:
        raise NotImplementedError

    def _crashed(self, returncode: int, stderr: str) -> DialogUnavailableError:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        return DialogUnavailableError(
            f"{self.name} exited with {returncode}: {detail}",
            backend=self.name,
            returncode=returncode,
        )


class ZenityDialog(DialogBackend):
    """GTK dialogs via zenity. Exit 0 = OK, 1 = Cancel, anything else = failure."""

    name = "zenity"

    def command(self, request: DialogRequest) -> list[str]:
        flag = {
            DialogKind.INPUT: "--entry",
            DialogKind.CONFIRM: "--question",
            DialogKind.INFO: "--info",
        }[request.kind]
        return ["zenity", flag, "--no-markup", "--title", request.title, "--text", request.body_text]

    def environment(self, request: DialogRequest, result_path: Path) -> dict[str, str]:
        env = dict(os.environ)
        # A server started outside the desktop session may lack a display.
        if "DISPLAY" not in env and "WAYLAND_DISPLAY" not in env:
            env["DISPLAY"] = ":0"
        return env

    def interpret(
        self,
        request: DialogRequest,
        returncode: int,
        stdout: str,
        stderr: str,
        file_text: str | None = None,
    ) -> Any:
        if returncode not in (0, 1):
            raise self._crashed(returncode, stderr)
        if request.kind is DialogKind.CONFIRM:
            return returncode == 0
        if request.kind is DialogKind.INFO:
            return True
        return stdout.rstrip("\r\n") if returncode == 0 else None


_APPLESCRIPT = {
    DialogKind.INPUT: """on run argv
display dialog (item 2 of argv) default answer "" buttons {"Cancel", "OK"} default button "OK" with title (item 1 of argv) with icon note
return text returned of result
end run""",
    DialogKind.CONFIRM: """on run argv
display dialog (item 2 of argv) buttons {"No", "Yes"} default button "Yes" with title (item 1 of argv) with icon caution
if button returned of result is "Yes" then
return "true"
end if
return "false"
end run""",
    DialogKind.INFO: """on run argv
display dialog (item 2 of argv) buttons {"OK"} default button "OK" with title (item 1 of argv) with icon note
return "ok"
end run""",
}

# "User canceled." from the Cancel button of display dialog
_APPLESCRIPT_USER_CANCELED = "-128"


class AppleScriptDialog(DialogBackend):
    """macOS dialogs via osascript; the answer is printed on stdout."""

    name = "osascript"

    def command(self, request: DialogRequest) -> list[str]:
        argv = ["osascript"]
        for line in _APPLESCRIPT[request.kind].splitlines():
            argv += ["-e", line]
        return argv + [request.title, request.body_text]

    def interpret(
        self,
        request: DialogRequest,
        returncode: int,
        stdout: str,
        stderr: str,
        file_text: str | None = None,
    ) -> Any:
        if returncode != 0:
            if _APPLESCRIPT_USER_CANCELED in stderr:
                return default_answer(request.kind)
            raise self._crashed(returncode, stderr)
        output = stdout.rstrip("\r\n")
        if request.kind is DialogKind.CONFIRM:
            return output.strip() == "true"
        if request.kind is DialogKind.INFO:
            return True
        return output


_POWERSHELL = {
    DialogKind.INPUT: """Add-Type -AssemblyName Microsoft.VisualBasic
$answer = [Microsoft.VisualBasic.Interaction]::InputBox($env:ASKLOOP_DIALOG_TEXT, $env:ASKLOOP_DIALOG_TITLE, '')
$answer | Out-File -FilePath $env:ASKLOOP_DIALOG_RESULT -Encoding UTF8""",
    DialogKind.CONFIRM: """Add-Type -AssemblyName System.Windows.Forms
$answer = [System.Windows.Forms.MessageBox]::Show($env:ASKLOOP_DIALOG_TEXT, $env:ASKLOOP_DIALOG_TITLE, [System.Windows.Forms.MessageBoxButtons]::YesNo, [System.Windows.Forms.MessageBoxIcon]::Question)
if ($answer -eq [System.Windows.Forms.DialogResult]::Yes) { 'true' | Out-File -FilePath $env:ASKLOOP_DIALOG_RESULT -Encoding UTF8 }
else { 'false' | Out-File -FilePath $env:ASKLOOP_DIALOG_RESULT -Encoding UTF8 }""",
    DialogKind.INFO: """Add-Type -AssemblyName System.Windows.Forms
[void][System.Windows.Forms.MessageBox]::Show($env:ASKLOOP_DIALOG_TEXT, $env:ASKLOOP_DIALOG_TITLE, [System.Windows.Forms.MessageBoxButtons]::OK, [System.Windows.Forms.MessageBoxIcon]::Information)
'ok' | Out-File -FilePath $env:ASKLOOP_DIALOG_RESULT -Encoding UTF8""",
}


class PowerShellDialog(DialogBackend):
    """Windows dialogs via PowerShell; the answer is written to a result file."""

    name = "powershell"
    uses_result_file = True

    def command(self, request: DialogRequest) -> list[str]:
        return [
            "powershell",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            _POWERSHELL[request.kind],
        ]

    def environment(self, request: DialogRequest, result_path: Path) -> dict[str, str]:
        env = dict(os.environ)
        env["ASKLOOP_DIALOG_TITLE"] = request.title
        env["ASKLOOP_DIALOG_TEXT"] = request.body_text
        env["ASKLOOP_DIALOG_RESULT"] = str(result_path)
        return env

    def interpret(
        self,
        request: DialogRequest,
        returncode: int,
        stdout: str,
        stderr: str,
        file_text: str | None = None,
    ) -> Any:
        if returncode != 0 or file_text is None:
            raise self._crashed(returncode, stderr or "no result file written")
        answer = file_text.strip()
        if request.kind is DialogKind.CONFIRM:
            return answer == "true"
        if request.kind is DialogKind.INFO:
            return True
        # InputBox returns an empty string for both Cancel and an empty answer.
        return answer or None


_BACKENDS: dict[str, DialogBackend] = {
    "windows": PowerShellDialog(),
    "macos": AppleScriptDialog(),
    "linux": ZenityDialog(),
}


def select_backend(platform_id: str) -> DialogBackend:
    """Pick the dialog back-end for a ``sys.platform`` value."""
    if platform_id.startswith(("win32", "cygwin")):
        return _BACKENDS["windows"]
    if platform_id.startswith("darwin"):
        return _BACKENDS["macos"]
    return _BACKENDS["linux"]


# =============================================================================
# Runner
# =============================================================================


async def show_dialog(
    request: DialogRequest,
    *,
    platform_id: str | None = None,
    timeout: float = DEFAULT_DIALOG_TIMEOUT,
) -> Any:
    """Show one native dialog and return the answer.

    Runs the dialog as a subprocess so the event loop keeps serving other
    requests while the human reads. The temporary directory holding any
    result file is removed on every exit path, including failures and
    task cancellation.

    Raises:
        DialogUnavailableError: The dialog could not be shown or crashed.
    """
    backend = select_backend(platform_id or sys.platform)
    if request.allow_attachment:
        logger.debug("%s cannot collect attachments; asking for text only", backend.name)

    with tempfile.TemporaryDirectory(prefix="askloop-dialog-") as tmp:
        result_path = Path(tmp) / "result.txt"
        argv = backend.command(request)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=backend.environment(request, result_path),
            )
        except OSError as exc:
            raise DialogUnavailableError(
                f"{backend.name} is not available: {exc}", backend=backend.name
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise DialogUnavailableError(
                f"{backend.name} dialog timed out after {timeout:g}s", backend=backend.name
            ) from exc
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        file_text = None
        if backend.uses_result_file and result_path.exists():
            file_text = result_path.read_text(encoding="utf-8-sig")

        returncode = proc.returncode if proc.returncode is not None else -1
        logger.debug("%s dialog exited with %d", backend.name, returncode)
        return backend.interpret(
            request,
            returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            file_text,
        )
