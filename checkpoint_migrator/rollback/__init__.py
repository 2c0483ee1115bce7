"""Rollback selection and guarded execution."""

from checkpoint_migrator.rollback.executor import RollbackExecutor
from checkpoint_migrator.rollback.selector import RollbackSelector, SelectionCriterion

__all__ = ["RollbackExecutor", "RollbackSelector", "SelectionCriterion"]
