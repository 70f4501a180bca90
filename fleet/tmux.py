"""Terminal multiplexer integration.

The capture and rollback code talk to tmux through the narrow
``TerminalSession`` protocol so they can be exercised without a tmux
server. ``TmuxSession`` is the production adapter: every call runs the
tmux binary with an explicit timeout.

Failures (non-zero exit, timeout, tmux not installed) raise
``ExternalToolError``. ``session_exists`` is the exception: it answers
False instead of raising.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from fleet.config import DEFAULT_COMMAND_TIMEOUT
from fleet.errors import SESSION_NOT_FOUND, ExternalToolError, FleetError, FleetException
from fleet.panes import parse_pane_title

logger = logging.getLogger(__name__)

FIELD_SEP = "|===|"
PANE_FORMAT = FIELD_SEP.join(
    [
        "#{pane_id}",
        "#{pane_index}",
        "#{pane_title}",
        "#{pane_current_command}",
        "#{pane_width}",
        "#{pane_height}",
        "#{pane_active}",
        "#{window_active}",
    ]
)


@dataclass(frozen=True)
class PaneInfo:
    """A live pane as reported by the multiplexer."""

    index: int
    id: str  # multiplexer handle, e.g. "%3"
    title: str
    command: str = ""
    width: int = 0
    height: int = 0
    active: bool = False


class TerminalSession(Protocol):
    """What fleet needs from a terminal multiplexer."""

    def session_exists(self, session: str) -> bool: ...

    def list_panes(self, session: str) -> list[PaneInfo]: ...

    def read_scrollback(self, pane_id: str, max_lines: int) -> str: ...

    def working_dir(self, session: str) -> str: ...

    def layout(self, session: str) -> str: ...

    def interrupt_pane(self, pane_id: str) -> None: ...


class TmuxSession:
    """TerminalSession backed by the tmux CLI."""

    def __init__(self, socket: str | None = None, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.socket = socket
        self.timeout = timeout

    def _prefix(self) -> list[str]:
        if self.socket:
            return ["tmux", "-L", self.socket]
        return ["tmux"]

    def _run(self, args: list[str]) -> str:
        """Run a tmux command and return stdout.

        Raises:
            ExternalToolError: on non-zero exit, timeout, or missing binary
        """
        cmd = self._prefix() + args
        try:
            # shell=False; args are passed as a list
            result = subprocess.run(
                cmd,  # noqa: S603
                capture_output=True,
                encoding="utf-8",
                errors="surrogateescape",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError("tmux", args, f"tmux {args[0]} timed out after {self.timeout}s") from e
        except UnicodeError as e:
            raise ExternalToolError("tmux", args, f"tmux {args[0]}: undecodable data: {e}") from e
        except (FileNotFoundError, OSError) as e:
            raise ExternalToolError("tmux", args, f"Failed to run tmux: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            logger.debug(f"tmux {' '.join(args)} exited {result.returncode}: {stderr}")
            raise ExternalToolError(
                "tmux",
                args,
                f"tmux {args[0]} failed (exit {result.returncode}): {stderr}",
                stderr=stderr,
            )
        return result.stdout

    def session_exists(self, session: str) -> bool:
        try:
            self._run(["has-session", "-t", session])
        except ExternalToolError:
            return False
        return True

    def list_panes(self, session: str) -> list[PaneInfo]:
        output = self._run(["list-panes", "-s", "-t", session, "-F", PANE_FORMAT])
        return parse_pane_listing(output)

    def read_scrollback(self, pane_id: str, max_lines: int) -> str:
        return self._run(["capture-pane", "-p", "-t", pane_id, "-S", f"-{max_lines}"])

    def working_dir(self, session: str) -> str:
        return self._display(session, "#{pane_current_path}")

    def layout(self, session: str) -> str:
        return self._display(session, "#{window_layout}")

    def interrupt_pane(self, pane_id: str) -> None:
        self._run(["send-keys", "-t", pane_id, "C-c"])

    def _display(self, session: str, fmt: str) -> str:
        return self._run(["display-message", "-p", "-t", session, fmt]).strip()


def parse_pane_listing(output: str) -> list[PaneInfo]:
    """Parse ``list-panes -F PANE_FORMAT`` output.

    Panes keep the multiplexer's order (window, then pane index). Pane
    indices restart in each window, so they are not unique across a
    multi-window session. Every window reports its own active pane; only
    the one in the active window is marked active.
    """
    panes = []
    for line in output.splitlines():
        if not line:
            continue
        parts = line.split(FIELD_SEP)
        if len(parts) < 7:
            logger.debug(f"Skipping malformed pane line: {line!r}")
            continue
        panes.append(
            PaneInfo(
                id=parts[0],
                index=_to_int(parts[1]),
                title=parts[2],
                command=parts[3],
                width=_to_int(parts[4]),
                height=_to_int(parts[5]),
                active=parts[6] == "1" and (len(parts) < 8 or parts[7] == "1"),
            )
        )
    return panes


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def interrupt_all(terminal: TerminalSession, session: str, tags: Iterable[str] = ()) -> int:
    """Send Ctrl-C to every agent pane in a session.

    Only panes whose title decodes to an agent address are touched. When
    ``tags`` is given, only panes carrying at least one of them are.

    Returns:
        Number of panes interrupted

    Raises:
        FleetException: SESSION_NOT_FOUND if the session is gone
        ExternalToolError: if listing or signalling a pane fails
    """
    if not terminal.session_exists(session):
        raise FleetException(
            FleetError(
                code=SESSION_NOT_FOUND,
                message=f"Session '{session}' not found",
                context={"session": session},
            )
        )

    wanted = set(tags)
    count = 0
    for pane in terminal.list_panes(session):
        result = parse_pane_title(pane.title)
        if result.is_err():
            continue
        if wanted and not wanted.intersection(result.unwrap().tags):
            continue
        terminal.interrupt_pane(pane.id)
        count += 1

    logger.info(f"Sent Ctrl+C to {count} agent pane(s) in {session}")
    return count
