"""Audit log and exporters."""

from checkpoint_migrator.observability.audit_log import AuditFilter, AuditLog

__all__ = ["AuditLog", "AuditFilter"]
