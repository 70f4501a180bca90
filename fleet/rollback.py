"""Rollback engine.

Restores a session's working tree to a checkpoint in four ordered steps:

1. interrupt    send Ctrl-C to every agent pane (failure is a warning)
2. stash        stash uncommitted changes under a timestamped name
3. checkout     check out the checkpoint's commit
4. apply_patch  re-apply the checkpoint's saved patch (failure is a warning)

``preview`` and ``execute`` share ``plan``, so a dry run always lists the
steps an execute would run, in the order it would run them. Execute
re-plans at execution time: if the tree became dirty after the preview was
shown, it is still stashed.

If checkout fails after a stash was made, the stash is popped before the
error is returned. A failed rollback must never leave a failed checkout and
a stranded stash.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fleet.checkpoint import Checkpoint, CheckpointStorage
from fleet.errors import (
    EXTERNAL_TOOL_FAILURE,
    INTERRUPT_FAILED,
    PATCH_APPLY_FAILED,
    SESSION_NOT_FOUND,
    UNSAFE_ROLLBACK,
    Err,
    ExternalToolError,
    FleetError,
    FleetException,
    Ok,
    Result,
    not_found,
)
from fleet.git import VersionControl, has_uncommitted_changes
from fleet.tmux import TerminalSession, interrupt_all

logger = logging.getLogger(__name__)

STASH_PREFIX = "fleet-rollback-"

STEP_INTERRUPT = "interrupt"
STEP_STASH = "stash"
STEP_CHECKOUT = "checkout"
STEP_APPLY_PATCH = "apply_patch"

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass(frozen=True)
class RollbackOptions:
    no_stash: bool = False
    no_git: bool = False


@dataclass(frozen=True)
class RollbackStep:
    """A planned step. ``reason`` says why a step will not run."""

    name: str
    will_run: bool
    description: str = ""
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "will_run": self.will_run,
            "description": self.description,
            "reason": self.reason,
        }


_ACTION_LABELS = {
    STEP_INTERRUPT: "interrupt_agents",
    STEP_STASH: "stash_current_changes",
    STEP_CHECKOUT: "checkout_commit",
    STEP_APPLY_PATCH: "apply_git_patch",
}


@dataclass(frozen=True)
class RollbackPlan:
    """The ordered steps a rollback would take right now."""

    checkpoint: Checkpoint
    working_dir: str
    steps: tuple[RollbackStep, ...]
    stash_name: str = ""
    tree_dirty: bool = False
    warnings: tuple[str, ...] = ()

    def step(self, name: str) -> RollbackStep:
        return next(s for s in self.steps if s.name == name)

    @property
    def actions(self) -> list[str]:
        """Labels of the steps that will run, in execution order."""
        labels = []
        for step in self.steps:
            if not step.will_run:
                continue
            label = _ACTION_LABELS[step.name]
            if step.name == STEP_CHECKOUT:
                label = f"{label}_{self.checkpoint.git.short_commit}"
            labels.append(label)
        return labels

    def to_dict(self) -> dict[str, Any]:
        cp = self.checkpoint
        return {
            "dry_run": True,
            "checkpoint": cp.id,
            "session": cp.session_name,
            "created_at": cp.created_at.isoformat(),
            "description": cp.description,
            "pane_count": cp.pane_count,
            "working_dir": self.working_dir,
            "tree_dirty": self.tree_dirty,
            "stash_name": self.stash_name,
            "actions": self.actions,
            "steps": [s.to_dict() for s in self.steps],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: str  # ok | failed | skipped
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status, "message": self.message}


@dataclass(frozen=True)
class RollbackReport:
    """What execute actually did, step by step."""

    checkpoint: Checkpoint
    steps: tuple[StepOutcome, ...] = ()
    stash_name: str = ""
    warnings: tuple[FleetError, ...] = ()

    def outcome(self, name: str) -> StepOutcome | None:
        return next((s for s in self.steps if s.name == name), None)

    @property
    def rolled_back(self) -> bool:
        checkout = self.outcome(STEP_CHECKOUT)
        return checkout is not None and checkout.status != STATUS_FAILED

    def to_dict(self) -> dict[str, Any]:
        cp = self.checkpoint
        data: dict[str, Any] = {
            "success": self.rolled_back,
            "checkpoint": cp.id,
            "session": cp.session_name,
            "stash_name": self.stash_name,
            "rolled_back": self.rolled_back,
            "steps": [s.to_dict() for s in self.steps],
            "warnings": [w.to_dict() for w in self.warnings],
        }
        if cp.git.commit:
            data["git_commit"] = cp.git.commit
        return data


def stash_name_for(moment: datetime) -> str:
    return f"{STASH_PREFIX}{moment:%Y%m%d-%H%M%S}"


def session_working_dir(terminal: TerminalSession, session: str) -> Result[str, FleetError]:
    """Working directory of a live session's active pane."""
    if not terminal.session_exists(session):
        return not_found(
            f"Session '{session}' not found",
            code=SESSION_NOT_FOUND,
            session=session,
            hint="Use --no-git to roll back without a live session",
        )
    try:
        return Ok(terminal.working_dir(session))
    except ExternalToolError as e:
        return Err(e.error.with_context(session=session))


class RollbackEngine:
    """Plans and executes rollbacks to a checkpoint."""

    def __init__(
        self,
        storage: CheckpointStorage,
        terminal: TerminalSession,
        vcs: VersionControl,
        clock: Callable[[], datetime] | None = None,
    ):
        self.storage = storage
        self.terminal = terminal
        self.vcs = vcs
        self.clock = clock or datetime.now

    def plan(
        self,
        checkpoint: Checkpoint,
        working_dir: str,
        options: RollbackOptions | None = None,
    ) -> RollbackPlan:
        """Decide which steps would run against the current tree.

        Reads git status but changes nothing.
        """
        options = options or RollbackOptions()
        git = checkpoint.git
        warnings: list[str] = []

        git_skip_reason = ""
        if options.no_git:
            git_skip_reason = "git operations disabled (--no-git)"
        elif not working_dir:
            git_skip_reason = "working directory unknown"
        elif not git.commit:
            git_skip_reason = "checkpoint has no git commit"
        git_enabled = not git_skip_reason

        dirty = git_enabled and has_uncommitted_changes(self.vcs, working_dir)

        steps = [
            RollbackStep(
                STEP_INTERRUPT,
                will_run=True,
                description=f"Interrupt agents in session {checkpoint.session_name}",
            )
        ]

        stash_name = ""
        if not git_enabled:
            steps.append(RollbackStep(STEP_STASH, False, "Stash current changes", git_skip_reason))
        elif not dirty:
            steps.append(RollbackStep(STEP_STASH, False, "Stash current changes", "working tree is clean"))
        elif options.no_stash:
            steps.append(RollbackStep(STEP_STASH, False, "Stash current changes", "--no-stash given"))
            warnings.append("Uncommitted changes will be lost")
        else:
            stash_name = stash_name_for(self.clock())
            steps.append(RollbackStep(STEP_STASH, True, f"Stash current changes as {stash_name}"))

        steps.append(
            RollbackStep(
                STEP_CHECKOUT,
                will_run=git_enabled,
                description=f"Checkout commit {git.short_commit}" if git.commit else "Checkout commit",
                reason=git_skip_reason,
            )
        )

        patch_reason = git_skip_reason
        if git_enabled and not (git.is_dirty and git.patch_file):
            patch_reason = "checkpoint has no saved patch"
        steps.append(
            RollbackStep(
                STEP_APPLY_PATCH,
                will_run=not patch_reason,
                description=(
                    f"Apply saved patch ({git.staged_count} staged, "
                    f"{git.unstaged_count} unstaged changes)"
                ),
                reason=patch_reason,
            )
        )

        return RollbackPlan(
            checkpoint=checkpoint,
            working_dir=working_dir,
            steps=tuple(steps),
            stash_name=stash_name,
            tree_dirty=dirty,
            warnings=tuple(warnings),
        )

    def preview(
        self,
        checkpoint: Checkpoint,
        working_dir: str,
        options: RollbackOptions | None = None,
    ) -> RollbackPlan:
        return self.plan(checkpoint, working_dir, options)

    def execute(
        self,
        checkpoint: Checkpoint,
        working_dir: str,
        options: RollbackOptions | None = None,
    ) -> Result[RollbackReport, FleetError]:
        """Run the rollback.

        Returns:
            Ok(RollbackReport) once checkout has succeeded or was skipped,
            possibly with INTERRUPT_FAILED or PATCH_APPLY_FAILED warnings.
            Err(EXTERNAL_TOOL_FAILURE) if stashing failed, or
            Err(UNSAFE_ROLLBACK) if checkout failed; the latter carries
            ``stash_name``, ``stash_restored`` and the partial ``report``
            in its context.
        """
        plan = self.plan(checkpoint, working_dir, options)
        outcomes: list[StepOutcome] = []
        warnings: list[FleetError] = []

        def report(stash_name: str = "") -> RollbackReport:
            return RollbackReport(
                checkpoint=checkpoint,
                steps=tuple(outcomes),
                stash_name=stash_name,
                warnings=tuple(warnings),
            )

        # 1. Interrupt
        outcomes.append(self._interrupt(checkpoint.session_name, warnings))

        # 2. Stash
        stash = plan.step(STEP_STASH)
        stash_name = ""
        if stash.will_run:
            try:
                self.vcs.stash(working_dir, plan.stash_name)
            except ExternalToolError as e:
                outcomes.append(StepOutcome(STEP_STASH, STATUS_FAILED, str(e)))
                return Err(
                    FleetError(
                        code=EXTERNAL_TOOL_FAILURE,
                        message=f"Failed to stash changes: {e}",
                        context={**e.error.context, "report": report().to_dict()},
                    )
                )
            stash_name = plan.stash_name
            logger.info(f"Stashed current changes as {stash_name}")
            outcomes.append(StepOutcome(STEP_STASH, STATUS_OK, f"Stashed as {stash_name}"))
        else:
            outcomes.append(StepOutcome(STEP_STASH, STATUS_SKIPPED, stash.reason))

        # 3. Checkout
        checkout = plan.step(STEP_CHECKOUT)
        if checkout.will_run:
            commit = checkpoint.git.commit
            try:
                self.vcs.checkout(working_dir, commit)
            except ExternalToolError as e:
                outcomes.append(StepOutcome(STEP_CHECKOUT, STATUS_FAILED, str(e)))
                restored = self._restore_stash(working_dir, stash_name)
                return Err(self._checkout_error(e, stash_name, restored, report(stash_name)))
            logger.info(f"Checked out {checkpoint.git.short_commit}")
            outcomes.append(StepOutcome(STEP_CHECKOUT, STATUS_OK, f"Checked out {checkpoint.git.short_commit}"))
        else:
            outcomes.append(StepOutcome(STEP_CHECKOUT, STATUS_SKIPPED, checkout.reason))

        # 4. Apply patch
        apply = plan.step(STEP_APPLY_PATCH)
        if apply.will_run:
            outcomes.append(self._apply_patch(checkpoint, working_dir, warnings))
        else:
            outcomes.append(StepOutcome(STEP_APPLY_PATCH, STATUS_SKIPPED, apply.reason))

        return Ok(report(stash_name))

    def _interrupt(self, session: str, warnings: list[FleetError]) -> StepOutcome:
        try:
            count = interrupt_all(self.terminal, session)
        except FleetException as e:
            logger.warning(f"Failed to interrupt agents in {session}: {e}")
            warnings.append(
                FleetError(
                    code=INTERRUPT_FAILED,
                    message=f"Failed to interrupt agents: {e}",
                    context={
                        "session": session,
                        "hint": "Agents may still be writing files during rollback",
                    },
                )
            )
            return StepOutcome(STEP_INTERRUPT, STATUS_FAILED, str(e))
        return StepOutcome(STEP_INTERRUPT, STATUS_OK, f"Interrupted {count} agent pane(s)")

    def _restore_stash(self, working_dir: str, stash_name: str) -> bool:
        if not stash_name:
            return False
        try:
            self.vcs.stash_pop(working_dir, stash_name)
        except ExternalToolError as e:
            logger.error(f"Failed to restore stash {stash_name}: {e}")
            return False
        logger.info(f"Restored stash {stash_name} after failed checkout")
        return True

    def _checkout_error(
        self,
        error: ExternalToolError,
        stash_name: str,
        restored: bool,
        report: RollbackReport,
    ) -> FleetError:
        message = f"Checkout failed: {error}"
        if stash_name and restored:
            hint = f"Your changes were restored from stash {stash_name}"
        elif stash_name:
            hint = f"Your changes are still in stash {stash_name}; run `git stash list`"
        else:
            hint = "No changes were stashed"
        return FleetError(
            code=UNSAFE_ROLLBACK,
            message=message,
            context={
                "step": STEP_CHECKOUT,
                "stash_name": stash_name,
                "stash_restored": restored,
                "stderr": error.stderr,
                "report": report.to_dict(),
                "hint": hint,
            },
        )

    def _apply_patch(
        self, checkpoint: Checkpoint, working_dir: str, warnings: list[FleetError]
    ) -> StepOutcome:
        def failed(message: str) -> StepOutcome:
            logger.warning(message)
            warnings.append(
                FleetError(
                    code=PATCH_APPLY_FAILED,
                    message=message,
                    context={
                        "checkpoint_id": checkpoint.id,
                        "patch_path": str(
                            self.storage.checkpoint_dir(checkpoint.session_name, checkpoint.id)
                            / checkpoint.git.patch_file
                        ),
                    },
                )
            )
            return StepOutcome(STEP_APPLY_PATCH, STATUS_FAILED, message)

        loaded = self.storage.load_git_patch(checkpoint.session_name, checkpoint.id)
        if loaded.is_err():
            return failed(f"Could not load saved patch: {loaded.unwrap_err().message}")
        patch = loaded.unwrap()
        if not patch:
            return failed("Saved patch is missing or empty")

        try:
            self.vcs.apply_patch(working_dir, patch)
        except ExternalToolError as e:
            return failed(f"Could not apply patch: {e}")
        return StepOutcome(STEP_APPLY_PATCH, STATUS_OK, "Applied saved patch")
