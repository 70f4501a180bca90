"""Checkpoint capture.

The capturer snapshots a live session in one synchronous pass: pane
listing, per-pane scrollback, layout, working directory, and git state.
Only a missing session, an unlistable session, or a storage failure stops
the capture. Everything else is best-effort: a pane whose scrollback
cannot be read or a git probe that fails is recorded as a warning and the
checkpoint is still written.

    capturer = Capturer(storage, TmuxSession(), GitRepo(), config)
    result = capturer.create("demo", "before-refactor")
    if result.is_ok():
        for warning in result.unwrap().warnings:
            ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from fleet.checkpoint import (
    GIT_PATCH_FILE,
    Checkpoint,
    CheckpointStorage,
    GitState,
    PaneState,
    SessionState,
    count_lines,
    generate_id,
)
from fleet.config import FleetConfig
from fleet.errors import (
    EXTERNAL_TOOL_FAILURE,
    PARTIAL_CAPTURE,
    SESSION_NOT_FOUND,
    Err,
    ExternalToolError,
    FleetError,
    Ok,
    Result,
    not_found,
)
from fleet.git import VersionControl, parse_status
from fleet.panes import agent_type_for_title
from fleet.tmux import PaneInfo, TerminalSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureOptions:
    """Options for a single capture.

    ``scrollback_lines`` of None uses the configured default; 0 skips
    scrollback entirely.
    """

    description: str = ""
    capture_git: bool = True
    scrollback_lines: int | None = None


@dataclass(frozen=True)
class CaptureResult:
    """A written checkpoint plus the non-fatal problems hit along the way."""

    checkpoint: Checkpoint
    warnings: tuple[FleetError, ...] = ()

    @property
    def partial(self) -> bool:
        return bool(self.warnings)


def _warning(step: str, message: str, **context) -> FleetError:
    return FleetError(code=PARTIAL_CAPTURE, message=message, context={"step": step, **context})


class Capturer:
    """Creates checkpoints from live sessions."""

    def __init__(
        self,
        storage: CheckpointStorage,
        terminal: TerminalSession,
        vcs: VersionControl | None = None,
        config: FleetConfig | None = None,
    ):
        self.storage = storage
        self.terminal = terminal
        self.vcs = vcs
        self.config = config or FleetConfig()

    def create(
        self,
        session: str,
        name: str = "",
        options: CaptureOptions | None = None,
    ) -> Result[CaptureResult, FleetError]:
        """Capture the current state of a session.

        Args:
            session: Session name
            name: Optional user label, also embedded in the checkpoint id
            options: Description, git and scrollback settings

        Returns:
            Ok(CaptureResult) once metadata is on disk, or Err with
            SESSION_NOT_FOUND, EXTERNAL_TOOL_FAILURE (pane listing), or a
            storage error code
        """
        options = options or CaptureOptions()
        scrollback_lines = options.scrollback_lines
        if scrollback_lines is None:
            scrollback_lines = self.config.scrollback_lines

        if not self.terminal.session_exists(session):
            return not_found(
                f"Session '{session}' not found",
                code=SESSION_NOT_FOUND,
                session=session,
                hint="Check `tmux ls` for running sessions",
            )

        try:
            panes = self.terminal.list_panes(session)
        except ExternalToolError as e:
            return Err(
                FleetError(
                    code=EXTERNAL_TOOL_FAILURE,
                    message=f"Failed to list panes for session '{session}': {e}",
                    context={"session": session, **e.error.context},
                )
            )

        checkpoint_id = generate_id(name)
        warnings: list[FleetError] = []

        working_dir = ""
        try:
            working_dir = self.terminal.working_dir(session)
        except ExternalToolError as e:
            warnings.append(_warning("working_dir", f"Could not read working directory: {e}"))

        layout = ""
        try:
            layout = self.terminal.layout(session)
        except ExternalToolError as e:
            warnings.append(_warning("layout", f"Could not read window layout: {e}"))

        pane_states = self._capture_panes(
            session, checkpoint_id, panes, scrollback_lines, warnings
        )
        active = next((i for i, p in enumerate(panes) if p.active), None)

        git_state = GitState()
        if options.capture_git and working_dir and self.vcs is not None:
            git_state = self._capture_git(session, checkpoint_id, working_dir, warnings)

        checkpoint = Checkpoint(
            id=checkpoint_id,
            name=name,
            description=options.description,
            session_name=session,
            working_dir=working_dir,
            created_at=datetime.now(UTC),
            session=SessionState(panes=pane_states, layout=layout, active_pane_index=active),
            git=git_state,
        )

        saved = self.storage.save(checkpoint)
        if saved.is_err():
            return saved

        if warnings:
            logger.warning(
                f"Checkpoint {checkpoint_id} created with {len(warnings)} warning(s)"
            )
        else:
            logger.info(f"Checkpoint {checkpoint_id} created ({checkpoint.pane_count} panes)")
        return Ok(CaptureResult(checkpoint=checkpoint, warnings=tuple(warnings)))

    def _capture_panes(
        self,
        session: str,
        checkpoint_id: str,
        panes: list[PaneInfo],
        scrollback_lines: int,
        warnings: list[FleetError],
    ) -> tuple[PaneState, ...]:
        indices = [p.index for p in panes]
        if len(set(indices)) != len(indices):
            # Multi-window session: tmux restarts pane_index per window
            logger.debug(f"Duplicate pane indices in {session}, numbering by position")
            indices = list(range(len(panes)))

        states = []
        for index, pane in zip(indices, panes, strict=True):
            scrollback_file = ""
            lines = 0
            if scrollback_lines > 0:
                scrollback_file, lines = self._capture_scrollback(
                    session, checkpoint_id, index, pane, scrollback_lines, warnings
                )
            states.append(
                PaneState(
                    index=index,
                    id=pane.id,
                    title=pane.title,
                    agent_type=agent_type_for_title(pane.title),
                    command=pane.command,
                    width=pane.width,
                    height=pane.height,
                    scrollback_file=scrollback_file,
                    scrollback_lines=lines,
                )
            )
        return tuple(states)

    def _capture_scrollback(
        self,
        session: str,
        checkpoint_id: str,
        index: int,
        pane: PaneInfo,
        scrollback_lines: int,
        warnings: list[FleetError],
    ) -> tuple[str, int]:
        try:
            content = self.terminal.read_scrollback(pane.id, scrollback_lines)
        except ExternalToolError as e:
            warnings.append(
                _warning("scrollback", f"Could not capture pane {pane.id}: {e}", pane_id=pane.id)
            )
            return "", 0

        saved = self.storage.save_scrollback(session, checkpoint_id, index, content)
        if saved.is_err():
            warnings.append(
                _warning(
                    "scrollback",
                    f"Could not save scrollback for pane {pane.id}: {saved.unwrap_err().message}",
                    pane_id=pane.id,
                )
            )
            return "", 0
        return saved.unwrap(), count_lines(content)

    def _capture_git(
        self,
        session: str,
        checkpoint_id: str,
        working_dir: str,
        warnings: list[FleetError],
    ) -> GitState:
        vcs = self.vcs
        if not vcs.is_repo(working_dir):
            logger.debug(f"{working_dir} is not a git repository, skipping git capture")
            return GitState()

        try:
            branch = vcs.current_branch(working_dir)
            commit = vcs.current_commit(working_dir)
            counts = parse_status(vcs.status(working_dir))
        except ExternalToolError as e:
            warnings.append(_warning("git", f"Could not read git state: {e}"))
            return GitState()

        try:
            saved = self.storage.save_git_status(
                session, checkpoint_id, vcs.status_text(working_dir)
            )
            if saved.is_err():
                warnings.append(_warning("git_status", saved.unwrap_err().message))
        except ExternalToolError as e:
            warnings.append(_warning("git_status", f"Could not read git status: {e}"))

        patch_file = ""
        if counts.is_dirty:
            if counts.untracked:
                warnings.append(
                    _warning(
                        "git_untracked",
                        f"{counts.untracked} untracked file(s) are not included in the patch",
                        untracked=counts.untracked,
                    )
                )
            try:
                saved = self.storage.save_git_patch(session, checkpoint_id, vcs.diff(working_dir))
            except ExternalToolError as e:
                warnings.append(_warning("git_patch", f"Could not create git patch: {e}"))
            else:
                if saved.is_err():
                    warnings.append(_warning("git_patch", saved.unwrap_err().message))
                elif saved.unwrap():
                    patch_file = GIT_PATCH_FILE

        return GitState(
            branch=branch,
            commit=commit,
            is_dirty=counts.is_dirty,
            patch_file=patch_file,
            staged_count=counts.staged,
            unstaged_count=counts.unstaged,
            untracked_count=counts.untracked,
        )


# ============================================================================
# Auto-checkpoints
# ============================================================================

AUTO_PREFIX = "auto-"
AUTO_DESCRIPTION_MARKER = "Auto-checkpoint:"

REASON_BROADCAST = "broadcast"
REASON_ADD_AGENTS = "add_agents"
REASON_SPAWN = "spawn"
REASON_RISKY_OP = "risky_op"


def is_auto_checkpoint(checkpoint: Checkpoint) -> bool:
    return checkpoint.name.startswith(AUTO_PREFIX) or (
        AUTO_DESCRIPTION_MARKER in checkpoint.description
    )


class AutoCheckpointer:
    """Checkpoints taken automatically before risky fleet operations.

    Keeps at most ``max_checkpoints`` auto checkpoints per session, deleting
    the oldest. Checkpoints created by hand are never rotated.
    """

    def __init__(self, capturer: Capturer):
        self.capturer = capturer
        self.storage = capturer.storage

    def create(
        self,
        session: str,
        reason: str,
        description: str = "",
        max_checkpoints: int = 0,
        options: CaptureOptions | None = None,
    ) -> Result[CaptureResult, FleetError]:
        text = f"{AUTO_DESCRIPTION_MARKER} {reason}"
        if description:
            text += f" ({description})"

        base = options or CaptureOptions()
        capture_options = CaptureOptions(
            description=text,
            capture_git=base.capture_git,
            scrollback_lines=base.scrollback_lines,
        )
        result = self.capturer.create(session, f"{AUTO_PREFIX}{reason}", capture_options)
        if result.is_err():
            return result

        if max_checkpoints > 0:
            self.rotate(session, max_checkpoints)
        return result

    def rotate(self, session: str, max_checkpoints: int) -> int:
        """Delete auto checkpoints beyond the newest ``max_checkpoints``.

        Returns:
            Number of checkpoints deleted
        """
        deleted = 0
        for checkpoint in self.list_auto(session)[max_checkpoints:]:
            result = self.storage.delete(session, checkpoint.id)
            if result.is_err():
                logger.warning(
                    f"Failed to rotate auto checkpoint {checkpoint.id}: {result.unwrap_err().message}"
                )
                continue
            deleted += 1
        if deleted:
            logger.info(f"Rotated {deleted} old auto checkpoint(s) for {session}")
        return deleted

    def list_auto(self, session: str) -> list[Checkpoint]:
        """Auto checkpoints for a session, newest first."""
        return [cp for cp in self.storage.list(session) if is_auto_checkpoint(cp)]

    def last_auto(self, session: str) -> Checkpoint | None:
        autos = self.list_auto(session)
        return autos[0] if autos else None
