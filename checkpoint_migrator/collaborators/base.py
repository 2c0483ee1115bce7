"""
Collaborator Interfaces
~~~~~~~~~~~~~~~~~~~~~~~

Abstract interfaces for the external systems the orchestrator drives.
The core never runs upgrade payloads itself; it asks a collaborator
and records the reported ActionOutcome.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from checkpoint_migrator.core.results import ActionOutcome

__all__ = ["PackageSystem", "InitImageSystem", "BootConfigurator"]


class PackageSystem(ABC):
    """
    Package management for the node.

    Implementations must never raise from ``upgrade``; failures are
    reported through a failed ActionOutcome.
    """

    @abstractmethod
    def available_target(self) -> str | None:
        """Return the next release the package system offers, if any."""
        ...

    @abstractmethod
    def upgrade(self, target: str | None) -> ActionOutcome:
        """
        Upgrade packages.

        Args:
            target: Release to upgrade to, or None for an in-release
                package upgrade.
        """
        ...


class InitImageSystem(ABC):
    """Init-image (initramfs) generation."""

    @abstractmethod
    def regenerate(self, kernel_version: str | None) -> ActionOutcome:
        """Switch to the configured generator and rebuild images for ``kernel_version``."""
        ...

    @abstractmethod
    def rebuild_current(self) -> ActionOutcome:
        """Rebuild every image with whichever generator is installed now."""
        ...

    @abstractmethod
    def list_installed_generators(self) -> set[str]:
        """Return the executable names of the generators that are installed."""
        ...


class BootConfigurator(ABC):
    """Boot configuration across every boot device."""

    @abstractmethod
    def sync(self) -> ActionOutcome:
        ...
