"""Persona registry.

A pane title has a single variant slot that holds either a model alias or
a persona name. The registry is the only thing that can tell them apart:
a variant that names a known persona is a persona, anything else is a
model alias.

Sources (later sources add to earlier ones):
1. Built-in personas
2. User file   ~/.config/fleet/personas.yaml
3. Project file <project>/.fleet/personas.yaml

File format:

    personas:
      - security-auditor
      - name: perf-tuner
        description: Looks for hot paths
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

USER_PERSONAS_PATH = Path.home() / ".config" / "fleet" / "personas.yaml"
PROJECT_PERSONAS_FILE = Path(".fleet") / "personas.yaml"

BUILTIN_PERSONAS = ("architect", "implementer", "reviewer", "tester", "documenter")


@dataclass
class PersonaRegistry:
    """Case-insensitive set of known persona names."""

    names: set[str] = field(default_factory=set)

    @classmethod
    def builtin(cls) -> PersonaRegistry:
        return cls(names=set(BUILTIN_PERSONAS))

    @classmethod
    def from_names(cls, names: Iterable[str]) -> PersonaRegistry:
        return cls(names={n.lower() for n in names})

    @classmethod
    def load(cls, project_dir: Path | None = None) -> PersonaRegistry:
        """Load built-in, user, and project personas."""
        registry = cls.builtin()
        registry.add_file(USER_PERSONAS_PATH)
        if project_dir is not None:
            registry.add_file(project_dir / PROJECT_PERSONAS_FILE)
        return registry

    def add(self, name: str) -> None:
        name = name.strip()
        if name:
            self.names.add(name.lower())

    def add_file(self, path: Path) -> int:
        """Add personas from a YAML file. Returns how many were read."""
        if not path.exists():
            return 0
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to read personas file {path}: {e}")
            return 0

        entries = data.get("personas", []) if isinstance(data, dict) else []
        if not isinstance(entries, list):
            logger.warning(f"Personas file {path}: 'personas' must be a list")
            return 0

        count = 0
        for entry in entries:
            if isinstance(entry, str):
                self.add(entry)
                count += 1
            elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
                self.add(entry["name"])
                count += 1
            else:
                logger.debug(f"Skipping malformed persona entry in {path}: {entry!r}")
        return count

    def is_persona(self, name: str) -> bool:
        return name.lower() in self.names

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.is_persona(name)

    def __len__(self) -> int:
        return len(self.names)
