"""
Configuration Schema
~~~~~~~~~~~~~~~~~~~~

Pydantic models for validating checkpoint-migrator configuration.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator, model_validator

__all__ = [
    "MigratorConfig",
    "ReleasesConfig",
    "KernelConfig",
    "PreflightConfig",
    "StorageConfig",
    "CheckpointsConfig",
    "ToolsConfig",
    "CommandsConfig",
    "StateConfig",
    "RollbackConfig",
    "ObservabilityConfig",
]

_KNOWN_EXPORTERS = {"stdout", "jsonl"}


class ReleasesConfig(BaseModel):
    """Release identifiers: where we start, the stop on the way, and where we end."""

    source: str = "24.04"
    interim: str = "25.04"
    target: str = "25.10"

    @model_validator(mode="after")
    def distinct_releases(self) -> ReleasesConfig:
        if len({self.source, self.interim, self.target}) != 3:
            raise ValueError("source, interim and target releases must differ")
        return self


class KernelConfig(BaseModel):
    """Minimum running kernel."""

    min_version: str = "6.14"

    @field_validator("min_version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not re.match(r"^\d+\.\d+", v):
            raise ValueError(f"Invalid kernel version: {v!r}")
        return v


class PreflightConfig(BaseModel):
    """Preflight thresholds and fact sources."""

    min_free_gb: float = Field(default=10.0, ge=0.0)
    disk_path: str = "/"
    os_release_path: str = "/etc/os-release"
    boot_id_path: str = "/proc/sys/kernel/random/boot_id"


class StorageConfig(BaseModel):
    """Storage backend settings."""

    backend: str = "zfs"
    pool: str = "rpool"
    namespace: str = "ckmig"
    include_root: bool = False

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v != "zfs":
            raise ValueError(f"Unsupported storage backend: {v!r}")
        return v

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        # ZFS user properties need a namespace without ':'
        if not v or ":" in v:
            raise ValueError(f"Invalid property namespace: {v!r}")
        return v


class CheckpointsConfig(BaseModel):
    """Checkpoint labelling."""

    recognized_prefixes: list[str] = Field(
        default_factory=lambda: [
            "pre-upgrade-",
            "before-upgrade-to-",
            "before-dracut-migration",
        ]
    )
    labels: dict[str, str] = Field(default_factory=dict)
    safety_label: str = "before-rollback"

    @model_validator(mode="after")
    def labels_are_recognized(self) -> CheckpointsConfig:
        for key, template in self.labels.items():
            if not any(template.startswith(p) for p in self.recognized_prefixes):
                raise ValueError(
                    f"checkpoint label {key}={template!r} matches no recognized prefix"
                )
        return self


class ToolsConfig(BaseModel):
    """Executable names (or absolute paths) per tool role."""

    init_generator_a: str = "update-initramfs"
    init_generator_b: str = "dracut"
    boot_sync_helper: str = "sync-mirror-boot"


class CommandsConfig(BaseModel):
    """Argv templates run by the command collaborators."""

    check_release: list[str] = Field(default_factory=list)
    upgrade_packages: list[str] = Field(default_factory=list)
    release_upgrade: list[str] = Field(default_factory=list)
    install_init_generator: list[str] = Field(default_factory=list)
    regenerate_init_image: list[str] = Field(default_factory=list)
    rebuild_init_images: list[str] = Field(default_factory=list)
    sync_boot_config: list[list[str]] = Field(default_factory=list)
    timeout: float | None = Field(default=None, gt=0)


class StateConfig(BaseModel):
    """Where the migration record lives."""

    path: str = "/var/lib/checkpoint-migrator/state.json"


class RollbackConfig(BaseModel):
    """Rollback behaviour."""

    sync_boot_config: bool = True
    rebuild_init_images: bool = True


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    exporters: list[str] = Field(default_factory=list)
    audit_log_max_entries: int = Field(default=10000, ge=100)
    jsonl_path: str = "/var/log/checkpoint-migrator/audit.jsonl"

    @field_validator("exporters")
    @classmethod
    def validate_exporters(cls, v: list[str]) -> list[str]:
        unknown = sorted(set(v) - _KNOWN_EXPORTERS)
        if unknown:
            raise ValueError(f"Unknown exporter(s): {', '.join(unknown)}")
        return v


class MigratorConfig(BaseModel):
    """
    Root configuration model for checkpoint-migrator.

    Validated on load with clear error messages for invalid values.
    """

    version: str = "1.0"
    releases: ReleasesConfig = Field(default_factory=ReleasesConfig)
    kernel: KernelConfig = Field(default_factory=KernelConfig)
    preflight: PreflightConfig = Field(default_factory=PreflightConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    checkpoints: CheckpointsConfig = Field(default_factory=CheckpointsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    dry_run: bool = False
