"""
Audit Log
~~~~~~~~~

Structured audit log of every migration history record: transitions,
checkpoints, reconciliations, interruptions and rollbacks.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from checkpoint_migrator.core.phase import Outcome, Phase
from checkpoint_migrator.core.state import TransitionRecord

__all__ = ["AuditLog", "AuditFilter"]

logger = logging.getLogger(__name__)


@dataclass
class AuditFilter:
    """Criteria for querying the audit log."""

    run_id: str | None = None
    kind: str | None = None
    outcome: Outcome | None = None
    phase: Phase | None = None
    from_time: datetime | None = None
    to_time: datetime | None = None
    limit: int = 100


class AuditLog:
    """
    In-memory audit log with filtering and export support.

    Every history record the orchestrator appends is written here and
    forwarded to the configured exporters. Exporter failures are logged,
    never raised.
    """

    def __init__(self, max_entries: int = 10000) -> None:
        self._entries: list[TransitionRecord] = []
        self._max_entries = max_entries
        self._lock = threading.RLock()
        self._exporters: list[Any] = []

    def add_exporter(self, exporter: Any) -> None:
        """Add an exporter to receive audit entries."""
        self._exporters.append(exporter)

    def write(self, entry: TransitionRecord) -> None:
        """Record ``entry`` and forward it to every exporter."""
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                self._entries = self._entries[-self._max_entries :]

        for exporter in self._exporters:
            try:
                exporter.export(entry)
            except Exception as exc:
                logger.error(
                    "Exporter %s failed: %s",
                    type(exporter).__name__,
                    exc,
                )

    def query(self, filters: AuditFilter | None = None) -> list[TransitionRecord]:
        """Return entries matching ``filters``, oldest first."""
        if filters is None:
            with self._lock:
                return list(self._entries)

        results: list[TransitionRecord] = []
        with self._lock:
            for entry in self._entries:
                if filters.run_id and entry.run_id != filters.run_id:
                    continue
                if filters.kind and entry.kind != filters.kind:
                    continue
                if filters.outcome and entry.outcome is not filters.outcome:
                    continue
                if filters.phase and filters.phase not in (entry.from_phase, entry.to_phase):
                    continue
                if filters.from_time and entry.timestamp < filters.from_time:
                    continue
                if filters.to_time and entry.timestamp > filters.to_time:
                    continue
                results.append(entry)

                if len(results) >= filters.limit:
                    break

        return results

    def outcome_counts(self) -> dict[str, int]:
        """Count entries per outcome."""
        with self._lock:
            return dict(Counter(entry.outcome.value for entry in self._entries))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
