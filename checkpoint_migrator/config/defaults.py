"""
Default Configuration
~~~~~~~~~~~~~~~~~~~~~

Defaults for the reference deployment: an Ubuntu 24.04 -> 25.04 -> 25.10
upgrade on a ZFS root pool, followed by the initramfs-tools to dracut
migration.
"""

from __future__ import annotations

__all__ = ["DEFAULT_CONFIG"]

DEFAULT_CONFIG: dict = {
    "version": "1.0",
    "releases": {
        "source": "24.04",
        "interim": "25.04",
        "target": "25.10",
    },
    "kernel": {
        "min_version": "6.14",
    },
    "preflight": {
        "min_free_gb": 10.0,
        "disk_path": "/",
        "os_release_path": "/etc/os-release",
        "boot_id_path": "/proc/sys/kernel/random/boot_id",
    },
    "storage": {
        "backend": "zfs",
        "pool": "rpool",
        "namespace": "ckmig",
        "include_root": False,
    },
    "checkpoints": {
        "recognized_prefixes": [
            "pre-upgrade-",
            "before-upgrade-to-",
            "before-dracut-migration",
        ],
        "labels": {
            "preflight": "pre-upgrade-{target}",
            "release_upgrade": "before-upgrade-to-{release}",
            "init_migration": "before-dracut-migration",
        },
        "safety_label": "before-rollback",
    },
    "tools": {
        "init_generator_a": "update-initramfs",
        "init_generator_b": "dracut",
        "boot_sync_helper": "sync-mirror-boot",
    },
    "commands": {
        "check_release": ["do-release-upgrade", "--check-dist-upgrade-only"],
        "upgrade_packages": ["apt-get", "-y", "full-upgrade"],
        "release_upgrade": [
            "do-release-upgrade",
            "-f",
            "DistUpgradeViewNonInteractive",
        ],
        "install_init_generator": ["apt-get", "-y", "install", "dracut"],
        "regenerate_init_image": ["dracut", "--force", "--kver", "{kernel}"],
        "rebuild_init_images": ["update-initramfs", "-u", "-k", "all"],
        "sync_boot_config": [["update-grub"], ["sync-mirror-boot"]],
        "timeout": None,
    },
    "state": {
        "path": "/var/lib/checkpoint-migrator/state.json",
    },
    "rollback": {
        "sync_boot_config": True,
        "rebuild_init_images": True,
    },
    "observability": {
        "exporters": [],
        "audit_log_max_entries": 10000,
        "jsonl_path": "/var/log/checkpoint-migrator/audit.jsonl",
    },
    "dry_run": False,
}
