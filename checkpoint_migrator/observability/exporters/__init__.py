"""Observability exporters."""

from checkpoint_migrator.observability.exporters.jsonl_exporter import JsonlFileExporter
from checkpoint_migrator.observability.exporters.stdout_exporter import StdoutExporter

__all__ = ["StdoutExporter", "JsonlFileExporter"]
