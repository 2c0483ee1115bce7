"""
Stdout Exporter
~~~~~~~~~~~~~~~

Echoes migration history records to a terminal stream while ``step``
or ``rollback`` runs. Off by default: the CLI prints its own summary,
and this exporter is for operators who want the raw record stream.
"""

from __future__ import annotations

import json
import sys
from typing import TextIO

from checkpoint_migrator.core.state import TransitionRecord

__all__ = ["StdoutExporter"]


class StdoutExporter:
    """
    One JSON object per history record.

    The per-record facts snapshot is bulky and already kept in the
    state file, so it is left out unless ``include_facts`` is set.
    """

    def __init__(self, stream: TextIO | None = None, include_facts: bool = False) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._include_facts = include_facts

    def export(self, entry: TransitionRecord) -> None:
        record = entry.to_dict()
        if not self._include_facts:
            record.pop("facts", None)
        print(json.dumps(record, sort_keys=True, default=str), file=self._stream, flush=True)
