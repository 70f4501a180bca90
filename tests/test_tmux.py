"""Tests for fleet.tmux module."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from fleet.errors import SESSION_NOT_FOUND, ExternalToolError, FleetException
from fleet.tmux import FIELD_SEP, PaneInfo, TmuxSession, interrupt_all, parse_pane_listing

from conftest import FakeTerminal


def _line(*fields) -> str:
    return FIELD_SEP.join(str(f) for f in fields)


class TestParsePaneListing:
    def test_parses_fields_in_multiplexer_order(self):
        output = "\n".join(
            [
                _line("%4", 1, "demo__cc_1", "claude", 120, 40, 0),
                _line("%3", 0, "demo", "zsh", 80, 24, 1),
                "",
            ]
        )

        panes = parse_pane_listing(output)

        assert [p.id for p in panes] == ["%4", "%3"]
        assert panes[0] == PaneInfo(
            index=1, id="%4", title="demo__cc_1", command="claude", width=120, height=40
        )
        assert panes[1].active is True

    def test_title_may_contain_spaces(self):
        panes = parse_pane_listing(_line("%0", 0, "my shell | logs", "zsh", 80, 24, 1))
        assert panes[0].title == "my shell | logs"

    def test_skips_malformed_lines(self):
        assert parse_pane_listing("garbage\n") == []

    def test_only_current_window_pane_is_active(self):
        output = "\n".join(
            [
                _line("%0", 0, "demo", "zsh", 80, 24, 1, 0),
                _line("%1", 1, "demo__cc_1", "claude", 80, 24, 0, 0),
                _line("%2", 0, "demo__cod_1", "codex", 80, 24, 1, 1),
            ]
        )

        panes = parse_pane_listing(output)

        assert [p.id for p in panes if p.active] == ["%2"]


class TestTmuxSession:
    """TmuxSession shells out with a socket prefix and timeout."""

    def _completed(self, stdout="", returncode=0, stderr=""):
        return MagicMock(stdout=stdout, returncode=returncode, stderr=stderr)

    def test_uses_socket_prefix(self):
        with patch("fleet.tmux.subprocess.run", return_value=self._completed()) as run:
            TmuxSession(socket="fleet-test").interrupt_pane("%1")

        cmd = run.call_args[0][0]
        assert cmd == ["tmux", "-L", "fleet-test", "send-keys", "-t", "%1", "C-c"]
        assert run.call_args.kwargs["timeout"] == 10.0

    def test_read_scrollback_requests_history(self):
        with patch("fleet.tmux.subprocess.run", return_value=self._completed("a\nb\n")) as run:
            content = TmuxSession().read_scrollback("%2", 500)

        assert content == "a\nb\n"
        assert run.call_args[0][0] == ["tmux", "capture-pane", "-p", "-t", "%2", "-S", "-500"]

    def test_output_decoding_keeps_invalid_bytes(self):
        with patch("fleet.tmux.subprocess.run", return_value=self._completed()) as run:
            TmuxSession().read_scrollback("%2", 10)

        assert run.call_args.kwargs["encoding"] == "utf-8"
        assert run.call_args.kwargs["errors"] == "surrogateescape"

    def test_list_panes_asks_for_window_active(self):
        with patch("fleet.tmux.subprocess.run", return_value=self._completed()) as run:
            TmuxSession().list_panes("demo")

        assert "#{window_active}" in run.call_args[0][0][-1]

    def test_decode_error_raises_tool_error(self):
        with patch(
            "fleet.tmux.subprocess.run",
            side_effect=UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
        ):
            with pytest.raises(ExternalToolError, match="undecodable"):
                TmuxSession().read_scrollback("%2", 10)

    def test_session_exists_false_on_error(self):
        with patch(
            "fleet.tmux.subprocess.run",
            return_value=self._completed(returncode=1, stderr="can't find session"),
        ):
            assert TmuxSession().session_exists("nope") is False

    def test_non_zero_exit_raises(self):
        with patch(
            "fleet.tmux.subprocess.run",
            return_value=self._completed(returncode=1, stderr="no server running"),
        ):
            with pytest.raises(ExternalToolError) as exc_info:
                TmuxSession().list_panes("demo")

        assert exc_info.value.stderr == "no server running"

    def test_timeout_raises(self):
        with patch(
            "fleet.tmux.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="tmux", timeout=10),
        ):
            with pytest.raises(ExternalToolError, match="timed out"):
                TmuxSession().layout("demo")

    def test_missing_binary_raises(self):
        with patch("fleet.tmux.subprocess.run", side_effect=FileNotFoundError("tmux")):
            with pytest.raises(ExternalToolError):
                TmuxSession().working_dir("demo")

    def test_working_dir_is_stripped(self):
        with patch("fleet.tmux.subprocess.run", return_value=self._completed("/work/demo\n")):
            assert TmuxSession().working_dir("demo") == "/work/demo"


class TestInterruptAll:
    def test_interrupts_only_agent_panes(self, terminal: FakeTerminal):
        count = interrupt_all(terminal, "demo")

        assert count == 2
        assert terminal.interrupted == ["%1", "%2"]

    def test_filters_by_tag(self):
        terminal = FakeTerminal(
            sessions={
                "demo": [
                    PaneInfo(index=0, id="%0", title="demo__cc_1[api]"),
                    PaneInfo(index=1, id="%1", title="demo__cc_2[ui]"),
                ]
            }
        )

        assert interrupt_all(terminal, "demo", tags=["ui"]) == 1
        assert terminal.interrupted == ["%1"]

    def test_missing_session(self, terminal: FakeTerminal):
        with pytest.raises(FleetException) as exc_info:
            interrupt_all(terminal, "ghost")
        assert exc_info.value.error.code == SESSION_NOT_FOUND
