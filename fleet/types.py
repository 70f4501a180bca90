"""Branded string types for fleet identifiers."""

from typing import NewType

CheckpointId = NewType("CheckpointId", str)
SessionName = NewType("SessionName", str)
