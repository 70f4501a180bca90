"""Configuration management for fleet.

Storage Structure
-----------------
~/.fleet/                         # User-level
└── config.yaml                   # Defaults for every project

<project>/.fleet/                 # Project-level (shareable via git)
├── config.yaml                   # Overrides for this checkout
└── personas.yaml                 # Project personas (see fleet.personas)

~/.local/share/fleet/checkpoints/ # Default checkpoint root
└── <session>/<checkpoint-id>/

Configuration is loaded once by the caller and threaded explicitly into the
storage, capturer, and rollback constructors. Nothing in fleet reads a
process-wide singleton.

Cascade: project .fleet/config.yaml → user ~/.fleet/config.yaml → defaults,
then environment overrides (FLEET_CHECKPOINT_DIR, FLEET_TMUX_SOCKET).
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from fleet.atomic import atomic_write_yaml
from fleet.errors import FleetError, Result

logger = logging.getLogger(__name__)

# Standard paths
FLEET_DIR = Path.home() / ".fleet"
CONFIG_PATH = FLEET_DIR / "config.yaml"
DEFAULT_CHECKPOINT_DIR = Path.home() / ".local" / "share" / "fleet" / "checkpoints"

DEFAULT_SCROLLBACK_LINES = 1000
DEFAULT_COMMAND_TIMEOUT = 10.0

ENV_CHECKPOINT_DIR = "FLEET_CHECKPOINT_DIR"
ENV_TMUX_SOCKET = "FLEET_TMUX_SOCKET"


@dataclass
class FleetConfig:
    """Runtime settings for checkpoint capture and rollback."""

    checkpoint_dir: Path = DEFAULT_CHECKPOINT_DIR
    scrollback_lines: int = DEFAULT_SCROLLBACK_LINES
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    tmux_socket: str | None = None
    project_dir: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FleetConfig":
        """Create config from a dictionary, ignoring unknown keys."""
        # Only apply known fields - use dataclass fields, not hasattr (security)
        valid_fields = {f.name for f in fields(cls)}
        known = {k: v for k, v in data.items() if k in valid_fields}
        unknown = sorted(set(data) - valid_fields)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")

        config = cls(**known)
        config.checkpoint_dir = Path(config.checkpoint_dir).expanduser()
        if config.project_dir is not None:
            config.project_dir = Path(config.project_dir).expanduser()
        config.scrollback_lines = int(config.scrollback_lines)
        config.command_timeout = float(config.command_timeout)
        return config

    @classmethod
    def load(cls, project_path: Path | None = None) -> "FleetConfig":
        """Load config with project → user → default cascade.

        Args:
            project_path: Explicit project path. If None, auto-detects from cwd.

        Returns:
            FleetConfig with merged values and environment overrides applied
        """
        data: dict[str, Any] = {}

        user_data = _read_yaml(CONFIG_PATH)
        data.update(user_data)

        project_root = project_path or detect_project_root()
        if project_root is not None:
            data.update(_read_yaml(project_root / ".fleet" / "config.yaml"))
            data.setdefault("project_dir", project_root)

        config = cls.from_dict(data)

        # Environment variables override file config
        if env_dir := os.environ.get(ENV_CHECKPOINT_DIR):
            config.checkpoint_dir = Path(env_dir).expanduser()
        if env_socket := os.environ.get(ENV_TMUX_SOCKET):
            config.tmux_socket = env_socket

        return config

    def save(self, path: Path = CONFIG_PATH) -> Result[Path, FleetError]:
        """Save non-default values to a config file."""
        defaults = FleetConfig()
        data = {}
        for key, value in self.to_dict().items():
            if key == "project_dir":
                continue
            if value != defaults.to_dict()[key]:
                data[key] = value
        if not data:
            data = {"_version": 1}
        return atomic_write_yaml(path, data)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a YAML/JSON-safe dictionary."""
        return {
            "checkpoint_dir": str(self.checkpoint_dir),
            "scrollback_lines": self.scrollback_lines,
            "command_timeout": self.command_timeout,
            "tmux_socket": self.tmux_socket,
            "project_dir": str(self.project_dir) if self.project_dir else None,
        }


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping, returning {} when missing or malformed."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to read config {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config {path} is not a mapping, ignoring")
        return {}
    data.pop("_version", None)
    return data


def detect_project_root(start_path: Path | None = None) -> Path | None:
    """Detect project root by traversing up from start_path looking for markers.

    Looks for (in order of priority):
    1. A .fleet directory (explicit fleet project)
    2. A .git directory (git repository root)

    Args:
        start_path: Starting path for traversal. Defaults to cwd.

    Returns:
        Project root path, or None if no project markers found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    home = Path.home()

    while current != current.parent:
        if current == home:
            break

        if (current / ".fleet").is_dir():
            return current

        if (current / ".git").exists():
            return current

        current = current.parent

    return None
