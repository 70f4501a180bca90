"""Shared fixtures: in-memory stand-ins for tmux and git."""

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from fleet.checkpoint import CheckpointStorage
from fleet.errors import ExternalToolError
from fleet.tmux import PaneInfo


@dataclass
class FakeTerminal:
    """TerminalSession backed by dictionaries.

    ``fail`` maps an operation name ("list_panes", "scrollback:%1",
    "working_dir", "layout", "interrupt") to the message of the error it
    should raise.
    """

    sessions: dict[str, list[PaneInfo]] = field(default_factory=dict)
    scrollback: dict[str, str] = field(default_factory=dict)
    cwd: str = "/work/demo"
    window_layout: str = "b25d,200x50,0,0"
    fail: dict[str, str] = field(default_factory=dict)
    interrupted: list[str] = field(default_factory=list)

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail:
            raise ExternalToolError("tmux", [op], self.fail[op])

    def session_exists(self, session: str) -> bool:
        return session in self.sessions

    def list_panes(self, session: str) -> list[PaneInfo]:
        self._maybe_fail("list_panes")
        return list(self.sessions[session])

    def read_scrollback(self, pane_id: str, max_lines: int) -> str:
        self._maybe_fail(f"scrollback:{pane_id}")
        lines = self.scrollback.get(pane_id, "").splitlines(keepends=True)
        return "".join(lines[-max_lines:])

    def working_dir(self, session: str) -> str:
        self._maybe_fail("working_dir")
        return self.cwd

    def layout(self, session: str) -> str:
        self._maybe_fail("layout")
        return self.window_layout

    def interrupt_pane(self, pane_id: str) -> None:
        self._maybe_fail("interrupt")
        self.interrupted.append(pane_id)


@dataclass
class FakeVCS:
    """VersionControl that records calls instead of running git.

    ``calls`` keeps the order of mutating operations so tests can assert
    stash happens before checkout.
    """

    repo: bool = True
    branch: str = "main"
    commit: str = "0123456789abcdef0123456789abcdef01234567"
    porcelain: str = ""
    patch: str = ""
    fail: dict[str, str] = field(default_factory=dict)
    calls: list[tuple] = field(default_factory=list)
    stashes: list[str] = field(default_factory=list)

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail:
            raise ExternalToolError("git", [op], self.fail[op])

    def is_repo(self, path) -> bool:
        return self.repo

    def current_branch(self, path) -> str:
        self._maybe_fail("branch")
        return self.branch

    def current_commit(self, path) -> str:
        self._maybe_fail("commit")
        return self.commit

    def status(self, path) -> str:
        self._maybe_fail("status")
        return self.porcelain

    def status_text(self, path) -> str:
        self._maybe_fail("status_text")
        return f"On branch {self.branch}\n"

    def diff(self, path) -> str:
        self._maybe_fail("diff")
        return self.patch

    def stash(self, path, name: str) -> None:
        self._maybe_fail("stash")
        self.calls.append(("stash", name))
        self.stashes.append(name)
        self.porcelain = ""

    def stash_pop(self, path, name: str | None = None) -> None:
        self._maybe_fail("stash_pop")
        self.calls.append(("stash_pop", name))
        if name in self.stashes:
            self.stashes.remove(name)

    def checkout(self, path, commit: str) -> None:
        self._maybe_fail("checkout")
        self.calls.append(("checkout", commit))

    def apply_patch(self, path, patch: str) -> None:
        self._maybe_fail("apply_patch")
        self.calls.append(("apply_patch", patch))


def demo_panes() -> list[PaneInfo]:
    return [
        PaneInfo(index=0, id="%0", title="demo", command="zsh", width=80, height=24, active=True),
        PaneInfo(index=1, id="%1", title="demo__cc_1", command="claude", width=120, height=40),
        PaneInfo(index=2, id="%2", title="demo__cod_1", command="codex", width=120, height=40),
    ]


@pytest.fixture
def storage(tmp_path: Path) -> CheckpointStorage:
    return CheckpointStorage(tmp_path / "checkpoints")


@pytest.fixture
def terminal() -> FakeTerminal:
    return FakeTerminal(
        sessions={"demo": demo_panes()},
        scrollback={
            "%0": "$ ls\nREADME.md\n",
            "%1": "claude> refactoring auth\nDone.\n",
            "%2": "codex> running tests\n12 passed",
        },
    )


@pytest.fixture
def vcs() -> FakeVCS:
    return FakeVCS()
