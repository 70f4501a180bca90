"""Tests for fleet.checkpoint module."""

import json
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from fleet.checkpoint import (
    GIT_PATCH_FILE,
    MAX_NAME_BYTES,
    METADATA_FILE,
    Checkpoint,
    CheckpointStorage,
    GitState,
    PaneState,
    SessionState,
    count_lines,
    generate_id,
    sanitize_name,
)
from fleet.errors import CHECKPOINT_NOT_FOUND, FORMAT_ERROR, STORAGE_FAILURE

ID_RE = re.compile(r"^\d{8}-\d{6}\.\d{3}-[0-9a-f]{4}(-.+)?$")


def make_checkpoint(
    checkpoint_id: str = "20260110-230000.000-ab12",
    session: str = "demo",
    created_at: datetime | None = None,
    **kwargs,
) -> Checkpoint:
    panes = (
        PaneState(index=0, id="%0", title="demo__cc_1", agent_type="cc", command="claude",
                  width=120, height=40, scrollback_file="panes/pane__0.txt", scrollback_lines=2),
        PaneState(index=1, id="%1", title="demo__cod_1", agent_type="cod"),
    )
    return Checkpoint(
        id=checkpoint_id,
        session_name=session,
        created_at=created_at or datetime(2026, 1, 10, 23, 0, tzinfo=UTC),
        name=kwargs.pop("name", "pre-refactor"),
        description=kwargs.pop("description", "before touching auth"),
        working_dir="/work/demo",
        session=SessionState(panes=panes, layout="b25d,200x50,0,0", active_pane_index=1),
        git=kwargs.pop(
            "git",
            GitState(branch="main", commit="a" * 40, is_dirty=True, patch_file=GIT_PATCH_FILE,
                     staged_count=1, unstaged_count=2, untracked_count=3),
        ),
        **kwargs,
    )


# ============================================================================
# Names and ids
# ============================================================================


class TestSanitizeName:
    """Tests for sanitize_name()."""

    @pytest.mark.parametrize(
        "name",
        ["pre refactor", "a/b\\c:d*e?f<g>h|i", "  padded  ", "tab\tand\nnewline", "", "ok-name"],
    )
    def test_output_is_path_safe(self, name):
        safe = sanitize_name(name)
        assert not re.search(r'[/\\:*?<>|\s]', safe)
        assert len(safe.encode("utf-8")) <= MAX_NAME_BYTES

    def test_whitespace_runs_collapse(self):
        assert sanitize_name("pre   big\trefactor") == "pre_big_refactor"

    def test_trims_before_replacing(self):
        assert sanitize_name("  release  ") == "release"

    def test_replaces_unsafe_characters(self):
        assert sanitize_name("feat/auth:v2") == "feat-auth-v2"

    def test_truncates_on_character_boundary(self):
        # 3-byte characters: 16 fit in 48 bytes, the 17th would split at 50
        name = "日" * 30
        safe = sanitize_name(name)
        assert safe == "日" * 16
        safe.encode("utf-8").decode("utf-8")

    def test_ascii_truncated_to_limit(self):
        assert len(sanitize_name("x" * 80)) == MAX_NAME_BYTES


class TestGenerateId:
    """Tests for generate_id()."""

    def test_format_without_name(self):
        assert ID_RE.match(generate_id())

    def test_format_with_name(self):
        checkpoint_id = generate_id("pre refactor")
        assert ID_RE.match(checkpoint_id)
        assert checkpoint_id.endswith("-pre_refactor")

    def test_unique_across_rapid_calls(self):
        ids = [generate_id() for _ in range(1000)] + [generate_id("same") for _ in range(1000)]
        assert len(set(ids)) == len(ids)


class TestCountLines:
    @pytest.mark.parametrize(
        "content,expected",
        [("", 0), ("one", 1), ("one\n", 1), ("one\ntwo", 2), ("one\ntwo\n", 2), ("\n\n", 2)],
    )
    def test_count_lines(self, content, expected):
        assert count_lines(content) == expected


# ============================================================================
# Data model
# ============================================================================


class TestCheckpointModel:
    def test_pane_count_is_derived(self):
        assert make_checkpoint().pane_count == 2

    def test_pane_count_mismatch_rejected(self):
        with pytest.raises(ValueError):
            make_checkpoint(pane_count=5)

    def test_active_pane_index_must_be_valid(self):
        with pytest.raises(ValueError):
            SessionState(panes=(PaneState(index=0, id="%0", title="x"),), active_pane_index=1)

    def test_duplicate_pane_indices_rejected(self):
        with pytest.raises(ValueError):
            SessionState(panes=(PaneState(0, "%0", "a"), PaneState(0, "%1", "b")))

    def test_dict_round_trip(self):
        cp = make_checkpoint()
        assert Checkpoint.from_dict(json.loads(json.dumps(cp.to_dict()))) == cp

    def test_helpers(self):
        cp = make_checkpoint()
        assert cp.summary == "pre-refactor (20260110-230000.000-ab12)"
        assert cp.has_git_patch
        assert cp.git.short_commit == "a" * 8
        assert cp.age > timedelta(0)


# ============================================================================
# Storage
# ============================================================================


class TestCheckpointStorage:
    """Tests for CheckpointStorage."""

    def test_save_load_round_trip(self, storage: CheckpointStorage):
        cp = make_checkpoint()

        result = storage.save(cp)

        assert result.is_ok()
        directory = result.unwrap()
        assert (directory / METADATA_FILE).exists()
        assert (directory / "session.json").exists()
        assert storage.load("demo", cp.id).unwrap() == cp

    def test_load_missing_is_not_found(self, storage: CheckpointStorage):
        result = storage.load("demo", "20260101-000000.000-0000")
        assert result.is_err()
        assert result.unwrap_err().code == CHECKPOINT_NOT_FOUND
        assert result.unwrap_err().is_not_found

    def test_load_corrupt_metadata(self, storage: CheckpointStorage):
        directory = storage.checkpoint_dir("demo", "broken")
        directory.mkdir(parents=True)
        (directory / METADATA_FILE).write_text("{not json")

        assert storage.load("demo", "broken").unwrap_err().code == STORAGE_FAILURE

    def test_load_non_utf8_metadata(self, storage: CheckpointStorage):
        directory = storage.checkpoint_dir("demo", "garbled")
        directory.mkdir(parents=True)
        (directory / METADATA_FILE).write_bytes(b'{"id": "\xff\xfe"}')

        assert storage.load("demo", "garbled").unwrap_err().code == STORAGE_FAILURE

    def test_directory_without_metadata_is_not_found(self, storage: CheckpointStorage):
        storage.checkpoint_dir("demo", "half-written").mkdir(parents=True)
        assert storage.load("demo", "half-written").unwrap_err().code == CHECKPOINT_NOT_FOUND

    @pytest.mark.parametrize("session,checkpoint_id", [("..", "x"), ("demo", "../etc"), ("a/b", "x"), ("demo", "")])
    def test_rejects_path_traversal(self, storage: CheckpointStorage, session, checkpoint_id):
        assert storage.load(session, checkpoint_id).unwrap_err().code == FORMAT_ERROR
        assert storage.delete(session, checkpoint_id).unwrap_err().code == FORMAT_ERROR
        assert storage.exists(session, checkpoint_id) is False

    def test_list_sorted_newest_first(self, storage: CheckpointStorage):
        base = datetime(2026, 1, 1, tzinfo=UTC)
        for offset in (2, 0, 3, 1):
            storage.save(make_checkpoint(f"cp-{offset}", created_at=base + timedelta(hours=offset)))

        ids = [cp.id for cp in storage.list("demo")]

        assert ids == ["cp-3", "cp-2", "cp-1", "cp-0"]

    def test_list_skips_unreadable_entries(self, storage: CheckpointStorage):
        storage.save(make_checkpoint("good"))
        storage.checkpoint_dir("demo", "partial").mkdir(parents=True)
        (storage.base_dir / "demo" / "stray-file").write_text("x")
        garbled = storage.checkpoint_dir("demo", "garbled")
        garbled.mkdir(parents=True)
        (garbled / METADATA_FILE).write_bytes(b'{"id": "\xff\xfe"}')

        assert [cp.id for cp in storage.list("demo")] == ["good"]

    def test_list_missing_session_is_empty(self, storage: CheckpointStorage):
        assert storage.list("nobody") == []
        assert storage.list_all() == []
        assert storage.list_sessions() == []

    def test_list_all_spans_sessions(self, storage: CheckpointStorage):
        base = datetime(2026, 1, 1, tzinfo=UTC)
        storage.save(make_checkpoint("a1", session="alpha", created_at=base))
        storage.save(make_checkpoint("b1", session="beta", created_at=base + timedelta(minutes=5)))

        assert [cp.id for cp in storage.list_all()] == ["b1", "a1"]
        assert storage.list_sessions() == ["alpha", "beta"]

    def test_get_latest(self, storage: CheckpointStorage):
        base = datetime(2026, 1, 1, tzinfo=UTC)
        storage.save(make_checkpoint("older", created_at=base))
        storage.save(make_checkpoint("newer", created_at=base + timedelta(seconds=1)))

        assert storage.get_latest("demo").unwrap().id == "newer"

    def test_get_latest_none(self, storage: CheckpointStorage):
        result = storage.get_latest("demo")
        assert result.is_err()
        assert result.unwrap_err().is_not_found

    def test_delete(self, storage: CheckpointStorage):
        cp = make_checkpoint()
        storage.save(cp)
        assert storage.exists("demo", cp.id)

        assert storage.delete("demo", cp.id).is_ok()

        assert not storage.exists("demo", cp.id)
        assert storage.load("demo", cp.id).unwrap_err().code == CHECKPOINT_NOT_FOUND

    def test_delete_missing(self, storage: CheckpointStorage):
        assert storage.delete("demo", "nope").unwrap_err().code == CHECKPOINT_NOT_FOUND

    def test_scrollback_round_trip_exact(self, storage: CheckpointStorage):
        content = "line one\r\n\n  indented\ttab\n✓ done\nno trailing newline"

        saved = storage.save_scrollback("demo", "cp", 3, content)

        assert saved.unwrap() == "panes/pane__3.txt"
        assert storage.load_scrollback("demo", "cp", 3).unwrap() == content

    def test_missing_scrollback_is_not_found(self, storage: CheckpointStorage):
        assert storage.load_scrollback("demo", "cp", 0).unwrap_err().is_not_found

    def test_empty_patch_writes_nothing(self, storage: CheckpointStorage):
        result = storage.save_git_patch("demo", "cp", "")

        assert result.unwrap() is None
        assert not (storage.checkpoint_dir("demo", "cp") / GIT_PATCH_FILE).exists()
        assert storage.load_git_patch("demo", "cp").unwrap() == ""

    def test_git_patch_and_status_round_trip(self, storage: CheckpointStorage):
        patch_text = "diff --git a/x b/x\n+added\n"
        storage.save_git_patch("demo", "cp", patch_text)
        storage.save_git_status("demo", "cp", "On branch main\n")

        assert storage.load_git_patch("demo", "cp").unwrap() == patch_text
        assert storage.load_git_status("demo", "cp").unwrap() == "On branch main\n"

    def test_non_utf8_patch_keeps_original_bytes(self, storage: CheckpointStorage):
        raw = b"diff --git a/legacy.txt b/legacy.txt\n+caf\xe9 au lait\n"
        patch_text = raw.decode("utf-8", "surrogateescape")

        assert storage.save_git_patch("demo", "cp", patch_text).unwrap() == GIT_PATCH_FILE
        path = storage.checkpoint_dir("demo", "cp") / GIT_PATCH_FILE
        assert path.read_bytes() == raw
        assert storage.load_git_patch("demo", "cp").unwrap() == patch_text

    def test_non_utf8_scrollback_keeps_original_bytes(self, storage: CheckpointStorage):
        raw = b"\x1b[31mred\x1b[0m \xff\xfe\n"
        storage.panes_dir("demo", "cp").mkdir(parents=True)
        (storage.panes_dir("demo", "cp") / "pane__0.txt").write_bytes(raw)

        content = storage.load_scrollback("demo", "cp", 0).unwrap()

        assert content.encode("utf-8", "surrogateescape") == raw

    def test_undecodable_title_survives_metadata(self, storage: CheckpointStorage):
        pane = PaneState(index=0, id="%0", title="caf\udce9")
        cp = Checkpoint(id="odd", session_name="demo", created_at=datetime(2026, 1, 1, tzinfo=UTC),
                        session=SessionState(panes=(pane,)))
        directory = storage.save(cp).unwrap()

        json.loads((directory / METADATA_FILE).read_text(encoding="utf-8"))
        assert storage.load("demo", "odd").unwrap().session.panes[0].title == "caf\udce9"

    def test_saved_files_are_owner_only(self, storage: CheckpointStorage):
        cp = make_checkpoint()
        directory = storage.save(cp).unwrap()
        assert (directory / METADATA_FILE).stat().st_mode & 0o077 == 0

    def test_base_dir_accepts_string(self, tmp_path: Path):
        storage = CheckpointStorage(str(tmp_path))
        assert storage.checkpoint_dir("demo", "x") == tmp_path / "demo" / "x"
