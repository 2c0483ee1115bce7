"""External collaborator interfaces and their command-running implementations."""

from checkpoint_migrator.collaborators.base import (
    BootConfigurator,
    InitImageSystem,
    PackageSystem,
)
from checkpoint_migrator.collaborators.commands import (
    CommandBootConfigurator,
    CommandInitImageSystem,
    CommandPackageSystem,
)

__all__ = [
    "PackageSystem",
    "InitImageSystem",
    "BootConfigurator",
    "CommandPackageSystem",
    "CommandInitImageSystem",
    "CommandBootConfigurator",
]
