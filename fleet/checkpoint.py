"""Checkpoint data model and on-disk storage.

A checkpoint is an immutable snapshot of a tmux session: its panes, their
scrollback, and the git state of the working directory. Each checkpoint
lives in its own directory:

    <checkpoint-root>/<session>/<checkpoint-id>/
        metadata.json           # the serialized Checkpoint
        session.json            # session state only, for quick inspection
        panes/pane__<index>.txt # scrollback per pane
        git.patch               # only when the tree was dirty
        git-status.txt          # `git status` output, when git was captured

Checkpoint ids combine a millisecond timestamp with a random suffix, so
independent invocations never write into the same directory and no locking
is needed. Storage is write-once: there is save, load, list, and delete but
no update.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import shutil
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from fleet.atomic import atomic_write_json, atomic_write_text
from fleet.config import FleetConfig
from fleet.errors import (
    CHECKPOINT_NOT_FOUND,
    FORMAT_ERROR,
    STORAGE_FAILURE,
    Err,
    FleetError,
    Ok,
    Result,
    not_found,
)
from fleet.panes import AGENT_USER
from fleet.types import CheckpointId, SessionName

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
SESSION_FILE = "session.json"
GIT_PATCH_FILE = "git.patch"
GIT_STATUS_FILE = "git-status.txt"
PANES_DIR = "panes"

MAX_NAME_BYTES = 50


# ============================================================================
# Data Model
# ============================================================================


@dataclass(frozen=True)
class PaneState:
    """One captured pane."""

    index: int
    id: str  # tmux pane handle, e.g. "%0"
    title: str
    agent_type: str = AGENT_USER  # "cc", "cod", "gmi", plugin token, or "user"
    command: str = ""
    width: int = 0
    height: int = 0
    scrollback_file: str = ""  # relative to the checkpoint directory
    scrollback_lines: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "id": self.id,
            "title": self.title,
            "agent_type": self.agent_type,
            "command": self.command,
            "width": self.width,
            "height": self.height,
            "scrollback_file": self.scrollback_file,
            "scrollback_lines": self.scrollback_lines,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaneState:
        return cls(
            index=data.get("index", 0),
            id=data.get("id", ""),
            title=data.get("title", ""),
            agent_type=data.get("agent_type") or AGENT_USER,
            command=data.get("command", ""),
            width=data.get("width", 0),
            height=data.get("height", 0),
            scrollback_file=data.get("scrollback_file", ""),
            scrollback_lines=data.get("scrollback_lines", 0),
        )


@dataclass(frozen=True)
class SessionState:
    """Panes in multiplexer order, plus layout and the active pane.

    ``active_pane_index`` is a position in ``panes`` (or None).
    """

    panes: tuple[PaneState, ...] = ()
    layout: str = ""
    active_pane_index: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "panes", tuple(self.panes))
        if self.active_pane_index is not None and not (
            0 <= self.active_pane_index < len(self.panes)
        ):
            raise ValueError(
                f"active_pane_index {self.active_pane_index} out of range for {len(self.panes)} panes"
            )
        indices = [p.index for p in self.panes]
        if len(indices) != len(set(indices)):
            raise ValueError(f"duplicate pane indices: {indices}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "panes": [p.to_dict() for p in self.panes],
            "layout": self.layout,
            "active_pane_index": self.active_pane_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionState:
        return cls(
            panes=tuple(PaneState.from_dict(p) for p in data.get("panes") or []),
            layout=data.get("layout", ""),
            active_pane_index=data.get("active_pane_index"),
        )


@dataclass(frozen=True)
class GitState:
    """Git state at capture time. All-empty when git was not captured."""

    branch: str = ""
    commit: str = ""  # full SHA
    is_dirty: bool = False
    patch_file: str = ""  # set only when dirty and a non-empty patch was saved
    staged_count: int = 0
    unstaged_count: int = 0
    untracked_count: int = 0

    @property
    def captured(self) -> bool:
        return bool(self.commit)

    @property
    def short_commit(self) -> str:
        return self.commit[:8]

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "commit": self.commit,
            "is_dirty": self.is_dirty,
            "patch_file": self.patch_file,
            "staged_count": self.staged_count,
            "unstaged_count": self.unstaged_count,
            "untracked_count": self.untracked_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GitState:
        data = data or {}
        return cls(
            branch=data.get("branch", ""),
            commit=data.get("commit", ""),
            is_dirty=data.get("is_dirty", False),
            patch_file=data.get("patch_file", ""),
            staged_count=data.get("staged_count", 0),
            unstaged_count=data.get("unstaged_count", 0),
            untracked_count=data.get("untracked_count", 0),
        )


@dataclass(frozen=True)
class Checkpoint:
    """A named, timestamped snapshot of one session."""

    id: CheckpointId
    session_name: SessionName
    created_at: datetime
    name: str = ""
    description: str = ""
    working_dir: str = ""
    session: SessionState = field(default_factory=SessionState)
    git: GitState = field(default_factory=GitState)
    pane_count: int | None = None  # derived from session.panes

    def __post_init__(self) -> None:
        actual = len(self.session.panes)
        if self.pane_count is None:
            object.__setattr__(self, "pane_count", actual)
        elif self.pane_count != actual:
            raise ValueError(f"pane_count {self.pane_count} does not match {actual} panes")

    @property
    def summary(self) -> str:
        return f"{self.name} ({self.id})" if self.name else self.id

    @property
    def age(self) -> timedelta:
        return datetime.now(UTC) - self.created_at

    @property
    def has_git_patch(self) -> bool:
        return bool(self.git.patch_file)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "session_name": self.session_name,
            "working_dir": self.working_dir,
            "created_at": self.created_at.isoformat(),
            "session": self.session.to_dict(),
            "git": self.git.to_dict(),
            "pane_count": self.pane_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        """Deserialize metadata. Raises KeyError/ValueError on bad data."""
        created_at = datetime.fromisoformat(data["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        session = SessionState.from_dict(data.get("session") or {})
        return cls(
            id=CheckpointId(data["id"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            session_name=SessionName(data["session_name"]),
            working_dir=data.get("working_dir", ""),
            created_at=created_at,
            session=session,
            git=GitState.from_dict(data.get("git")),
            # Recomputed rather than trusted
            pane_count=len(session.panes),
        )


# ============================================================================
# Identifiers
# ============================================================================

_WHITESPACE_RE = re.compile(r"\s+")
_UNSAFE_CHARS_RE = re.compile(r'[/\\:*?"<>|]')

_id_lock = threading.Lock()
_last_stamp = ""
_suffixes_in_stamp: set[str] = set()


def sanitize_name(name: str) -> str:
    """Make a user-supplied name safe for use in a directory name.

    Whitespace runs become "_", path and glob characters become "-", and
    the result is cut to at most 50 UTF-8 bytes without splitting a
    character.
    """
    safe = _WHITESPACE_RE.sub("_", name.strip())
    safe = _UNSAFE_CHARS_RE.sub("-", safe)

    encoded = safe.encode("utf-8")
    if len(encoded) <= MAX_NAME_BYTES:
        return safe
    # A cut inside a multi-byte character leaves an invalid tail; drop it
    return encoded[:MAX_NAME_BYTES].decode("utf-8", errors="ignore")


def generate_id(name: str = "") -> CheckpointId:
    """Generate a checkpoint id: ``YYYYMMDD-HHMMSS.mmm-xxxx[-name]``.

    The 4-hex-digit random suffix is never repeated within one millisecond
    in this process; across processes it is the only guard against two
    captures started in the same millisecond.
    """
    now = datetime.now()
    stamp = f"{now:%Y%m%d-%H%M%S}.{now.microsecond // 1000:03d}"
    checkpoint_id = f"{stamp}-{_unique_suffix(stamp)}"

    safe_name = sanitize_name(name)
    if safe_name:
        checkpoint_id = f"{checkpoint_id}-{safe_name}"
    return CheckpointId(checkpoint_id)


def _unique_suffix(stamp: str) -> str:
    global _last_stamp
    with _id_lock:
        if stamp != _last_stamp:
            _last_stamp = stamp
            _suffixes_in_stamp.clear()
        while True:
            suffix = secrets.token_hex(2)
            if suffix not in _suffixes_in_stamp:
                _suffixes_in_stamp.add(suffix)
                return suffix


def count_lines(content: str) -> int:
    """Newline count, plus one for an unterminated trailing fragment."""
    if not content:
        return 0
    lines = content.count("\n")
    if not content.endswith("\n"):
        lines += 1
    return lines


def scrollback_filename(pane_index: int) -> str:
    return f"pane__{pane_index}.txt"


def _check_component(value: str, what: str) -> FleetError | None:
    """Reject values that would escape the storage root."""
    if not value or value in (".", "..") or "/" in value or "\\" in value or "\0" in value:
        return FleetError(
            code=FORMAT_ERROR,
            message=f"Invalid {what}: {value!r}",
            context={what: value},
        )
    return None


def _not_found(session_name: str, checkpoint_id: str) -> Err[FleetError]:
    return not_found(
        f"Checkpoint '{checkpoint_id}' not found for session '{session_name}'",
        code=CHECKPOINT_NOT_FOUND,
        session=session_name,
        checkpoint_id=checkpoint_id,
    )


# ============================================================================
# Storage
# ============================================================================


class CheckpointStorage:
    """Checkpoints on disk under ``base_dir/<session>/<id>/``."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    @classmethod
    def from_config(cls, config: FleetConfig) -> CheckpointStorage:
        return cls(config.checkpoint_dir)

    def checkpoint_dir(self, session_name: str, checkpoint_id: str) -> Path:
        return self.base_dir / session_name / checkpoint_id

    def panes_dir(self, session_name: str, checkpoint_id: str) -> Path:
        return self.checkpoint_dir(session_name, checkpoint_id) / PANES_DIR

    def _validate(self, session_name: str, checkpoint_id: str) -> FleetError | None:
        return _check_component(session_name, "session") or _check_component(
            checkpoint_id, "checkpoint_id"
        )

    # ------------------------------------------------------------------ save

    def save(self, checkpoint: Checkpoint) -> Result[Path, FleetError]:
        """Write checkpoint metadata, creating its directory if needed."""
        error = self._validate(checkpoint.session_name, checkpoint.id)
        if error:
            return Err(error)

        directory = self.checkpoint_dir(checkpoint.session_name, checkpoint.id)
        try:
            (directory / PANES_DIR).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return Err(
                FleetError(
                    code=STORAGE_FAILURE,
                    message=f"Failed to create checkpoint directory {directory}: {e}",
                    context={"path": str(directory)},
                )
            )

        result = atomic_write_json(directory / METADATA_FILE, checkpoint.to_dict())
        if result.is_err():
            return result

        session_result = atomic_write_json(directory / SESSION_FILE, checkpoint.session.to_dict())
        if session_result.is_err():
            # metadata.json is authoritative; session.json is a convenience copy
            logger.warning(f"Failed to write session state: {session_result.unwrap_err().message}")

        logger.debug(f"Saved checkpoint {checkpoint.session_name}/{checkpoint.id}")
        return Ok(directory)

    # ------------------------------------------------------------------ read

    def load(self, session_name: str, checkpoint_id: str) -> Result[Checkpoint, FleetError]:
        """Load one checkpoint.

        A missing or vanished checkpoint is CHECKPOINT_NOT_FOUND; metadata
        that is not UTF-8 JSON is STORAGE_FAILURE.
        """
        error = self._validate(session_name, checkpoint_id)
        if error:
            return Err(error)

        path = self.checkpoint_dir(session_name, checkpoint_id) / METADATA_FILE
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return _not_found(session_name, checkpoint_id)
        except (OSError, ValueError) as e:
            return Err(
                FleetError(
                    code=STORAGE_FAILURE,
                    message=f"Failed to read checkpoint metadata {path}: {e}",
                    context={"path": str(path)},
                )
            )

        try:
            return Ok(Checkpoint.from_dict(data))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return Err(
                FleetError(
                    code=STORAGE_FAILURE,
                    message=f"Invalid checkpoint metadata {path}: {e}",
                    context={"path": str(path)},
                )
            )

    def exists(self, session_name: str, checkpoint_id: str) -> bool:
        if self._validate(session_name, checkpoint_id):
            return False
        return self.checkpoint_dir(session_name, checkpoint_id).is_dir()

    def list(self, session_name: str) -> list[Checkpoint]:
        """Checkpoints for a session, newest first. Unreadable entries are skipped."""
        if _check_component(session_name, "session"):
            return []

        session_dir = self.base_dir / session_name
        try:
            entries = list(session_dir.iterdir())
        except FileNotFoundError:
            return []
        except NotADirectoryError:
            return []

        checkpoints = []
        for entry in entries:
            if not entry.is_dir():
                continue
            result = self.load(session_name, entry.name)
            if result.is_err():
                error = result.unwrap_err()
                if error.is_not_found:
                    logger.debug(f"Skipping {entry}: {error.message}")
                else:
                    logger.warning(f"Skipping unreadable checkpoint {entry}: {error.message}")
                continue
            checkpoints.append(result.unwrap())

        checkpoints.sort(key=lambda cp: cp.created_at, reverse=True)
        return checkpoints

    def list_sessions(self) -> list[str]:
        """Names of sessions that have a checkpoint directory."""
        try:
            return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir())
        except FileNotFoundError:
            return []

    def list_all(self) -> list[Checkpoint]:
        """Checkpoints across all sessions, newest first."""
        checkpoints = []
        for session_name in self.list_sessions():
            checkpoints.extend(self.list(session_name))
        checkpoints.sort(key=lambda cp: cp.created_at, reverse=True)
        return checkpoints

    def get_latest(self, session_name: str) -> Result[Checkpoint, FleetError]:
        checkpoints = self.list(session_name)
        if not checkpoints:
            return not_found(
                f"No checkpoints found for session '{session_name}'",
                code=CHECKPOINT_NOT_FOUND,
                session=session_name,
            )
        return Ok(checkpoints[0])

    # ---------------------------------------------------------------- delete

    def delete(self, session_name: str, checkpoint_id: str) -> Result[None, FleetError]:
        error = self._validate(session_name, checkpoint_id)
        if error:
            return Err(error)

        directory = self.checkpoint_dir(session_name, checkpoint_id)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return _not_found(session_name, checkpoint_id)
        except OSError as e:
            return Err(
                FleetError(
                    code=STORAGE_FAILURE,
                    message=f"Failed to delete checkpoint {directory}: {e}",
                    context={"path": str(directory)},
                )
            )

        logger.info(f"Deleted checkpoint {session_name}/{checkpoint_id}")
        return Ok(None)

    # ----------------------------------------------------------------- blobs

    def save_scrollback(
        self, session_name: str, checkpoint_id: str, pane_index: int, content: str
    ) -> Result[str, FleetError]:
        """Write a pane's scrollback. Returns the path relative to the checkpoint dir."""
        error = self._validate(session_name, checkpoint_id)
        if error:
            return Err(error)

        relative = f"{PANES_DIR}/{scrollback_filename(pane_index)}"
        path = self.checkpoint_dir(session_name, checkpoint_id) / relative
        result = atomic_write_text(path, content, errors="surrogateescape")
        if result.is_err():
            return result
        return Ok(relative)

    def load_scrollback(
        self, session_name: str, checkpoint_id: str, pane_index: int
    ) -> Result[str, FleetError]:
        path = self.panes_dir(session_name, checkpoint_id) / scrollback_filename(pane_index)
        return self._read_blob(session_name, checkpoint_id, path, missing_ok=False)

    def save_git_patch(
        self, session_name: str, checkpoint_id: str, patch: str
    ) -> Result[str | None, FleetError]:
        """Write git.patch. An empty patch writes nothing and returns Ok(None)."""
        if not patch:
            return Ok(None)
        return self._write_blob(session_name, checkpoint_id, GIT_PATCH_FILE, patch)

    def load_git_patch(self, session_name: str, checkpoint_id: str) -> Result[str, FleetError]:
        """Read git.patch; "" when the checkpoint has no patch."""
        path = self.checkpoint_dir(session_name, checkpoint_id) / GIT_PATCH_FILE
        return self._read_blob(session_name, checkpoint_id, path, missing_ok=True)

    def save_git_status(
        self, session_name: str, checkpoint_id: str, status: str
    ) -> Result[str | None, FleetError]:
        return self._write_blob(session_name, checkpoint_id, GIT_STATUS_FILE, status)

    def load_git_status(self, session_name: str, checkpoint_id: str) -> Result[str, FleetError]:
        path = self.checkpoint_dir(session_name, checkpoint_id) / GIT_STATUS_FILE
        return self._read_blob(session_name, checkpoint_id, path, missing_ok=True)

    def _write_blob(
        self, session_name: str, checkpoint_id: str, filename: str, content: str
    ) -> Result[str | None, FleetError]:
        error = self._validate(session_name, checkpoint_id)
        if error:
            return Err(error)
        path = self.checkpoint_dir(session_name, checkpoint_id) / filename
        result = atomic_write_text(path, content, errors="surrogateescape")
        if result.is_err():
            return result
        return Ok(filename)

    def _read_blob(
        self, session_name: str, checkpoint_id: str, path: Path, missing_ok: bool
    ) -> Result[str, FleetError]:
        error = self._validate(session_name, checkpoint_id)
        if error:
            return Err(error)
        try:
            with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
                return Ok(f.read())
        except FileNotFoundError:
            if missing_ok:
                return Ok("")
            return not_found(
                f"{path.name} not found in checkpoint '{checkpoint_id}'",
                code=CHECKPOINT_NOT_FOUND,
                session=session_name,
                checkpoint_id=checkpoint_id,
            )
        except OSError as e:
            return Err(
                FleetError(
                    code=STORAGE_FAILURE,
                    message=f"Failed to read {path}: {e}",
                    context={"path": str(path)},
                )
            )
