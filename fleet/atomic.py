"""Atomic file writes for checkpoint storage.

Another fleet invocation may list or load a checkpoint while it is being
written, so metadata must be either absent or complete. Every write goes
to a temp file in the target directory and is renamed into place, which is
atomic on POSIX.

Files are owner-only (0o600) by default since pane scrollback can contain
secrets echoed to a terminal. Directories are created 0o700.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from fleet.errors import Err, FleetError, Ok, Result

logger = logging.getLogger(__name__)

WRITE_FAILED = "ATOMIC_WRITE_FAILED"
PERMISSION_DENIED = "ATOMIC_PERMISSION_DENIED"


def atomic_write_text(
    path: Path, content: str, mode: int = 0o600, errors: str = "strict"
) -> Result[Path, FleetError]:
    """Write ``content`` to ``path`` via temp file and rename.

    Text is written byte-for-byte: no newline translation, so "\\r\\n" in a
    pane capture survives a save/load cycle. ``errors`` is the encode error
    handler; "surrogateescape" writes undecodable tool output back as the
    original bytes.

    Returns:
        Ok(path), or Err with ATOMIC_PERMISSION_DENIED / ATOMIC_WRITE_FAILED
    """
    path = Path(path)
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8", errors=errors, newline="") as f:
            f.write(content)
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except (OSError, UnicodeEncodeError) as e:
        if temp_path is not None:
            _discard(temp_path)
        code = PERMISSION_DENIED if isinstance(e, PermissionError) else WRITE_FAILED
        logger.error(f"Failed to write {path}: {e}")
        return Err(
            FleetError(code=code, message=f"Failed to write {path}: {e}", context={"path": str(path)})
        )

    logger.debug(f"Wrote {path} ({len(content)} chars)")
    return Ok(path)


def atomic_write_json(
    path: Path, data: Any, mode: int = 0o600, indent: int | None = 2
) -> Result[Path, FleetError]:
    """Serialize ``data`` as JSON and write it atomically."""
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        return _serialization_error("JSON", path, e)
    # Lone surrogates (undecodable bytes) become \udcXX escapes, which JSON
    # reads back as the same string.
    return atomic_write_text(path, content, mode, errors="backslashreplace")


def atomic_write_yaml(path: Path, data: Any, mode: int = 0o600) -> Result[Path, FleetError]:
    """Serialize ``data`` with yaml.safe_dump, keeping key order, and write atomically."""
    try:
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)
    except yaml.YAMLError as e:
        return _serialization_error("YAML", path, e)
    return atomic_write_text(path, content, mode)


def _serialization_error(kind: str, path: Path, error: Exception) -> Err[FleetError]:
    logger.error(f"{kind} serialization failed for {path}: {error}")
    return Err(
        FleetError(
            code=f"{kind}_SERIALIZATION_FAILED",
            message=f"Failed to serialize data to {kind}: {error}",
            context={"path": str(path)},
        )
    )


def _discard(temp_path: str) -> None:
    try:
        os.unlink(temp_path)
    except FileNotFoundError:
        pass
