"""Fleet: session checkpoint and rollback for tmux-hosted coding agents."""

__version__ = "0.3.0"

# Branded types for type-safe IDs
from fleet.types import CheckpointId, SessionName

__all__ = [
    "__version__",
    "CheckpointId",
    "SessionName",
]
