"""
Phase Detector
~~~~~~~~~~~~~~

Maps collected facts and the persisted state onto the current phase.
Facts are a lower bound on progress, never a reason to regress.
"""

from __future__ import annotations

import logging

from checkpoint_migrator.core.facts import (
    INIT_GENERATOR_A,
    INIT_GENERATOR_B,
    SystemFacts,
)
from checkpoint_migrator.core.phase import Phase
from checkpoint_migrator.core.state import MigrationState

__all__ = ["PhaseDetector"]

logger = logging.getLogger(__name__)

# Phases the persisted record keeps regardless of what facts say.
_STICKY = (Phase.COMPLETE, Phase.ROLLED_BACK)


class PhaseDetector:
    """
    Pure, deterministic phase detection.

    The persisted ``current_phase`` is the source of truth. It is only
    raised when facts prove that an earlier attempt got further than it
    recorded, e.g. the release identifier already changed.
    """

    def __init__(self, source: str, interim: str, target: str) -> None:
        self._source = source
        self._interim = interim
        self._target = target

    def lower_bound(self, facts: SystemFacts) -> Phase:
        """The furthest phase the facts alone can prove was reached."""
        if facts.release == self._target:
            # the target release may ship generator B alongside A; only
            # A's removal proves the migration ran
            if facts.has_tool(INIT_GENERATOR_B) and not facts.has_tool(INIT_GENERATOR_A):
                return Phase.INIT_SYSTEM_MIGRATED
            return Phase.REBOOTED_STEP2
        if facts.release == self._interim:
            return Phase.REBOOTED_STEP1
        return Phase.NOT_STARTED

    def detect(self, facts: SystemFacts, state: MigrationState | None) -> Phase:
        persisted = state.current_phase if state is not None else Phase.NOT_STARTED
        if persisted in _STICKY:
            return persisted
        bound = self.lower_bound(facts)
        if bound.rank > persisted.rank:
            return bound
        return persisted
