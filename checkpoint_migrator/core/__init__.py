"""Phase model, fact collection, state machine and orchestration."""

from checkpoint_migrator.core.phase import ActionKind, ErrorKind, Outcome, Phase, PoolHealth

__all__ = ["Phase", "Outcome", "ErrorKind", "PoolHealth", "ActionKind"]
