"""Backup Management: Configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class BackupKind(str, Enum):
    """Kind of backup; each kind lives in its own directory."""

    DATA = "data"
    CONFIG = "config"
    DATABASE = "database"
    IMAGES = "images"
    FULL = "full"

    @property
    def directory(self) -> str:
        return _DIRECTORIES[self]

    @property
    def prefix(self) -> str:
        return _PREFIXES[self]

    @property
    def extension(self) -> str:
        return ".sql.gz" if self is BackupKind.DATABASE else ".tar.gz"


_DIRECTORIES = {
    BackupKind.DATA: "data",
    BackupKind.CONFIG: "configs",
    BackupKind.DATABASE: "database",
    BackupKind.IMAGES: "images",
    BackupKind.FULL: "full",
}

_PREFIXES = {
    BackupKind.DATA: "app-data",
    BackupKind.CONFIG: "configs",
    BackupKind.DATABASE: "db",
    BackupKind.IMAGES: "images",
    BackupKind.FULL: "full-backup",
}

# Dump pipelines keyed by a substring of the database container's name.
DATABASE_DUMP_COMMANDS: dict[str, str] = {
    "postgres": "pg_dumpall -U postgres",
    "mysql": "mysqldump --all-databases -u root",
    "mongo": "mongodump --archive",
}


@dataclass
class RetentionPolicy:
    """Age and count limits applied by ``BackupManager.prune``."""

    max_age_days: int = 30
    max_per_kind: int = 50


@dataclass
class BackupConfig:
    """Configuration for the backup manager."""

    backup_dir: str = "/opt/backups/app"
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    timestamp_format: str = "%Y%m%d-%H%M%S"
    full_excludes: list[str] = field(
        default_factory=lambda: ["backups", "*.log", "tmp"]
    )
    data_members: list[str] = field(default_factory=lambda: ["data", "logs"])
