"""
JSONL File Exporter
~~~~~~~~~~~~~~~~~~~

Appends audit entries to a JSON-lines file that outlives the process.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from checkpoint_migrator.core.state import TransitionRecord

__all__ = ["JsonlFileExporter"]

logger = logging.getLogger(__name__)


class JsonlFileExporter:
    """Append-only exporter; each entry is flushed and fsynced on write."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def export(self, entry: TransitionRecord) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.to_dict(), default=str)
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        logger.debug("Appended %s record to %s", entry.kind, self._path)
