"""Pane address codec.

Agent identity lives only in the tmux pane title. There is no registry of
running agents, so everything fleet knows about a pane between process
restarts is recovered from a string of the form:

    <session>__<type>_<ordinal>
    <session>__<type>_<ordinal>_<variant>

optionally followed by a tag list such as ``[frontend,api]``. Tags are
maintained by other commands and do not participate in the address.

Examples:
    demo__cc_1              claude agent #1 in session "demo"
    demo__cod_2_gpt-5       codex agent #2 running model alias gpt-5
    demo__cc_3_reviewer     claude agent #3 with the reviewer persona
    demo__gmi_1[backend]    gemini agent #1 tagged "backend"
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from fleet.errors import FORMAT_ERROR, Err, FleetError, Ok, Result
from fleet.personas import PersonaRegistry

logger = logging.getLogger(__name__)

# Built-in agent type tokens; plugins may register others
AGENT_CLAUDE = "cc"
AGENT_CODEX = "cod"
AGENT_GEMINI = "gmi"
AGENT_USER = "user"

BUILTIN_AGENT_TYPES = frozenset({AGENT_CLAUDE, AGENT_CODEX, AGENT_GEMINI})

VARIANT_PATTERN = r"[A-Za-z0-9._/@:+-]+"

PANE_TITLE_RE = re.compile(
    rf"(?P<session>.+)__(?P<type>\w+?)_(?P<ordinal>\d+)"
    rf"(?:_(?P<variant>{VARIANT_PATTERN}))?"
    r"(?:\[(?P<tags>[^\]]*)\])?"
)

_VARIANT_RE = re.compile(VARIANT_PATTERN)


@dataclass(frozen=True)
class Variant:
    """Model alias or persona carried in a pane title.

    ``kind`` is one of "none", "model", "persona".
    """

    kind: str = "none"
    name: str = ""

    NONE = "none"
    MODEL = "model"
    PERSONA = "persona"

    @classmethod
    def none(cls) -> Variant:
        return cls()

    @classmethod
    def model(cls, alias: str) -> Variant:
        return cls(kind=cls.MODEL, name=alias)

    @classmethod
    def persona(cls, name: str) -> Variant:
        return cls(kind=cls.PERSONA, name=name)

    @classmethod
    def resolve(cls, token: str, registry: PersonaRegistry | None = None) -> Variant:
        """Classify a raw variant token. Personas win over model aliases."""
        if not token:
            return cls.none()
        if registry is not None and registry.is_persona(token):
            return cls.persona(token)
        return cls.model(token)

    @property
    def is_set(self) -> bool:
        return self.kind != self.NONE

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class PaneAddress:
    """Decoded agent identity of a pane."""

    session: str
    agent_type: str
    ordinal: int
    variant: Variant = Variant()
    tags: tuple[str, ...] = ()

    @property
    def title(self) -> str:
        return format_pane_title(
            self.session, self.agent_type, self.ordinal, self.variant.name, self.tags
        )

    @property
    def is_builtin_agent(self) -> bool:
        return self.agent_type in BUILTIN_AGENT_TYPES

    def matches_variant(self, name: str) -> bool:
        """Empty filter matches everything, otherwise exact match."""
        return not name or self.variant.name == name


def format_pane_title(
    session: str,
    agent_type: str,
    ordinal: int,
    variant: str = "",
    tags: Iterable[str] = (),
) -> str:
    """Build a pane title from its components.

    Raises:
        ValueError: if any component would produce an undecodable title
    """
    if not session:
        raise ValueError("session must not be empty")
    if not re.fullmatch(r"\w+", agent_type or ""):
        raise ValueError(f"invalid agent type: {agent_type!r}")
    if ordinal < 1:
        raise ValueError(f"ordinal must be positive, got {ordinal}")
    if variant and not _VARIANT_RE.fullmatch(variant):
        raise ValueError(f"invalid variant: {variant!r}")

    title = f"{session}__{agent_type}_{ordinal}"
    if variant:
        title += f"_{variant}"
    return title + format_tags(tags)


def parse_pane_title(
    title: str,
    registry: PersonaRegistry | None = None,
) -> Result[PaneAddress, FleetError]:
    """Decode a pane title.

    Args:
        title: Pane title as reported by the terminal multiplexer
        registry: Persona registry used to classify the variant; without one
            any variant is treated as a model alias

    Returns:
        Ok(PaneAddress), or Err with code FORMAT_ERROR when the title does
        not carry an agent address
    """
    match = PANE_TITLE_RE.fullmatch(title or "")
    if match is None:
        return Err(
            FleetError(
                code=FORMAT_ERROR,
                message=f"Invalid pane name format: {title!r}",
                context={"title": title},
            )
        )

    ordinal = int(match.group("ordinal"))
    if ordinal < 1:
        return Err(
            FleetError(
                code=FORMAT_ERROR,
                message=f"Pane ordinal must be positive in {title!r}",
                context={"title": title},
            )
        )

    return Ok(
        PaneAddress(
            session=match.group("session"),
            agent_type=match.group("type"),
            ordinal=ordinal,
            variant=Variant.resolve(match.group("variant") or "", registry),
            tags=parse_tags(match.group("tags") or ""),
        )
    )


def agent_type_for_title(title: str) -> str:
    """Agent type encoded in a title, or "user" for non-agent panes."""
    result = parse_pane_title(title)
    if result.is_err():
        return AGENT_USER
    return result.unwrap().agent_type


def parse_tags(text: str) -> tuple[str, ...]:
    """Parse "a, b,c" into ("a", "b", "c"), dropping empties."""
    return tuple(t.strip() for t in text.split(",") if t.strip())


def parse_pane_tags(title: str) -> tuple[str, ...]:
    """Tags from a pane title, or () for non-agent titles."""
    result = parse_pane_title(title)
    return result.unwrap().tags if result.is_ok() else ()


def format_tags(tags: Iterable[str]) -> str:
    tags = [t for t in tags if t]
    if not tags:
        return ""
    return "[" + ",".join(tags) + "]"


def max_ordinals(titles: Iterable[str]) -> dict[str, int]:
    """Highest ordinal seen per agent type.

    Titles that do not decode are user panes and are skipped. Ordinals need
    not be contiguous since individual panes may have been killed.
    """
    highest: dict[str, int] = {}
    for title in titles:
        result = parse_pane_title(title)
        if result.is_err():
            continue
        address = result.unwrap()
        if address.ordinal > highest.get(address.agent_type, 0):
            highest[address.agent_type] = address.ordinal
    return highest


def next_ordinals(titles: Iterable[str], agent_type: str, count: int = 1) -> list[int]:
    """Ordinals to assign to ``count`` new agents of ``agent_type``."""
    start = max_ordinals(titles).get(agent_type, 0)
    return list(range(start + 1, start + 1 + count))
