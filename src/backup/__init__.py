"""Backup Management: create, verify, prune and restore slot backups."""

from .config import (
    BackupKind,
    RetentionPolicy,
    BackupConfig,
)
from .manager import BackupRecord, BackupManager

__all__ = [
    # Config
    "BackupKind",
    "RetentionPolicy",
    "BackupConfig",
    # Manager
    "BackupRecord",
    "BackupManager",
]
