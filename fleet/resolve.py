"""Checkpoint reference resolution.

Commands that take a checkpoint accept any of:

    last            the most recent checkpoint (case-insensitive)
    ~N              the Nth most recent, ~1 being the latest
    <id>            an exact checkpoint id
    <prefix>        a unique prefix of a checkpoint id
"""

from __future__ import annotations

import logging

from fleet.checkpoint import Checkpoint, CheckpointStorage
from fleet.errors import (
    AMBIGUOUS_REFERENCE,
    CHECKPOINT_NOT_FOUND,
    FORMAT_ERROR,
    Err,
    FleetError,
    Ok,
    Result,
    not_found,
)

logger = logging.getLogger(__name__)


def resolve_reference(
    storage: CheckpointStorage, session: str, ref: str
) -> Result[Checkpoint, FleetError]:
    """Resolve a reference to a checkpoint of ``session``.

    Returns:
        Ok(Checkpoint), or Err with FORMAT_ERROR (empty or malformed ref),
        CHECKPOINT_NOT_FOUND, or AMBIGUOUS_REFERENCE (context["matches"]
        lists the candidate ids)
    """
    ref = ref.strip()
    if not ref:
        return Err(
            FleetError(
                code=FORMAT_ERROR,
                message="Empty checkpoint reference",
                context={"session": session},
            )
        )

    if ref.lower() == "last":
        return storage.get_latest(session)

    if ref.startswith("~"):
        return _resolve_relative(storage, session, ref)

    if storage.exists(session, ref):
        return storage.load(session, ref)

    matches = sorted(cp.id for cp in storage.list(session) if cp.id.startswith(ref))
    if len(matches) == 1:
        logger.debug(f"Resolved prefix {ref!r} to {matches[0]}")
        return storage.load(session, matches[0])
    if len(matches) > 1:
        return Err(
            FleetError(
                code=AMBIGUOUS_REFERENCE,
                message=f"Checkpoint reference '{ref}' is ambiguous ({len(matches)} matches)",
                context={
                    "session": session,
                    "ref": ref,
                    "matches": matches,
                    "hint": "Use more characters of the checkpoint id",
                },
            )
        )

    return not_found(
        f"No checkpoint matching '{ref}' for session '{session}'",
        code=CHECKPOINT_NOT_FOUND,
        session=session,
        ref=ref,
    )


def _resolve_relative(
    storage: CheckpointStorage, session: str, ref: str
) -> Result[Checkpoint, FleetError]:
    digits = ref[1:]
    if not digits.isdecimal() or int(digits) < 1:
        return Err(
            FleetError(
                code=FORMAT_ERROR,
                message=f"Invalid relative reference '{ref}' (expected ~N with N >= 1)",
                context={"session": session, "ref": ref},
            )
        )

    n = int(digits)
    checkpoints = storage.list(session)
    if n > len(checkpoints):
        return not_found(
            f"Only {len(checkpoints)} checkpoint(s) exist for session '{session}'",
            code=CHECKPOINT_NOT_FOUND,
            session=session,
            ref=ref,
            available=len(checkpoints),
        )
    return Ok(checkpoints[n - 1])
