"""Backup Management: Manager.

Creates point-in-time archives of the service's data, configuration,
database, images and application root, verifies each one right after it
is written, and enforces retention. Archives are produced on the target
host through the container runtime and stored under a kind-partitioned
directory::

    <backup_dir>/{data,configs,database,images,full}/<prefix>-YYYYmmdd-HHMMSS.<ext>
"""

from __future__ import annotations

import gzip
import logging
import os
import posixpath
import re
import shutil
import tarfile
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from src.deployment.clock import SYSTEM_CLOCK, Clock
from src.deployment.config import DeploymentConfig, EnvironmentConfig, SlotColor
from src.deployment.exceptions import DeploymentError, IntegrityError
from src.deployment.runtime import ContainerRuntime
from src.logging_config.performance import log_performance

from .config import DATABASE_DUMP_COMMANDS, BackupConfig, BackupKind

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r"(\d{8}-\d{6})")
_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar", ".sql.gz", ".gz")


@dataclass
class BackupRecord:
    """One backup archive on disk."""

    kind: BackupKind
    path: str
    created_at: datetime
    size_bytes: int = 0
    verified: bool = False

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.filename)


class BackupManager:
    """Create, verify, list, restore and prune backups."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: EnvironmentConfig,
        backup_config: Optional[BackupConfig] = None,
        deploy_config: Optional[DeploymentConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.runtime = runtime
        self.env = config
        self.config = backup_config or BackupConfig(backup_dir=config.backup_dir)
        self.deploy_config = deploy_config or DeploymentConfig()
        self._clock = clock or SYSTEM_CLOCK

    @property
    def root(self) -> Path:
        return Path(self.config.backup_dir)

    def directory(self, kind: BackupKind) -> Path:
        return self.root / kind.directory

    def ensure_layout(self) -> None:
        """Create the per-kind directory structure."""
        for kind in BackupKind:
            self.directory(kind).mkdir(parents=True, exist_ok=True)

    # ── Creation ─────────────────────────────────────────────────────

    @log_performance(threshold_ms=60_000)
    def create(self, kind: BackupKind) -> Optional[BackupRecord]:
        """Create and verify one backup.

        Returns None when there is nothing of that kind to back up (no
        database container, no service images).
        """
        self.ensure_layout()
        created_at = self._clock.now()
        path = self.directory(kind) / (
            f"{kind.prefix}-{created_at.strftime(self.config.timestamp_format)}{kind.extension}"
        )
        logger.info("Creating %s backup: %s", kind.value, path)

        creators = {
            BackupKind.DATA: self._create_data,
            BackupKind.CONFIG: self._create_config,
            BackupKind.DATABASE: self._create_database,
            BackupKind.IMAGES: self._create_images,
            BackupKind.FULL: self._create_full,
        }
        try:
            produced = creators[kind](str(path))
        except (DeploymentError, OSError):
            path.unlink(missing_ok=True)
            raise
        if not produced:
            logger.info("Nothing to back up for kind %s", kind.value)
            return None

        record = BackupRecord(
            kind=kind,
            path=str(path),
            created_at=created_at,
            size_bytes=path.stat().st_size if path.exists() else 0,
        )
        record.verified = self.verify(record.path)
        if record.verified:
            logger.info(
                "Backup verified: %s (%d bytes)", record.filename, record.size_bytes
            )
        else:
            logger.error("Backup integrity check failed: %s", record.filename)
        return record

    def create_all(self) -> list[BackupRecord]:
        """Every kind in turn; the full-run behaviour of the backup command."""
        records = []
        for kind in BackupKind:
            record = self.create(kind)
            if record is not None:
                records.append(record)
        return records

    def _running_slot_container(self) -> Optional[str]:
        names = {self.env.container_name(color) for color in SlotColor}
        for info in self.runtime.list_containers():
            if info.name in names and info.running:
                return info.name
        return None

    def _create_data(self, destination: str) -> bool:
        container = self._running_slot_container()
        if container:
            logger.info("Backing up data from running container: %s", container)
            base = posixpath.dirname(self.deploy_config.container_data_path)
            self.runtime.archive_container_paths(
                container, base, self.config.data_members, destination
            )
        else:
            logger.info("No running container found, backing up from host volumes")
            self.runtime.archive_host_paths(
                self.env.app_root, self.config.data_members, destination
            )
        return True

    def _create_config(self, destination: str) -> bool:
        self.runtime.archive_host_paths(self.env.app_root, ["configs"], destination)
        return True

    def _create_database(self, destination: str) -> bool:
        for info in self.runtime.list_containers():
            for pattern, command in DATABASE_DUMP_COMMANDS.items():
                if pattern in info.name:
                    logger.info("Found database container: %s", info.name)
                    self.runtime.dump_from_container(info.name, command, destination)
                    return True
        return False

    def _create_images(self, destination: str) -> bool:
        images = [
            image for image in self.runtime.list_images()
            if self.env.owns_image(image)
        ]
        if not images:
            logger.warning("No container images found to back up")
            return False
        staging = destination[: -len(".gz")]
        self.runtime.save_images(images, staging)
        try:
            with open(staging, "rb") as src, gzip.open(destination, "wb") as dst:
                shutil.copyfileobj(src, dst)
        finally:
            Path(staging).unlink(missing_ok=True)
        return True

    def _create_full(self, destination: str) -> bool:
        parent = posixpath.dirname(self.env.app_root.rstrip("/")) or "/"
        name = posixpath.basename(self.env.app_root.rstrip("/"))
        self.runtime.archive_host_paths(
            parent, [name], destination, excludes=self.config.full_excludes
        )
        return True

    # ── Verification ─────────────────────────────────────────────────

    @staticmethod
    def verify(path: str) -> bool:
        """True only if the archive can be fully listed or decompressed."""
        p = Path(path)
        if not p.is_file() or p.stat().st_size == 0:
            return False
        name = p.name
        try:
            if name.endswith((".tar.gz", ".tgz")):
                # tarfile stops at the end-of-archive block; the gzip trailer
                # (CRC32 and length) is only checked by reading to EOF.
                _read_gzip(p)
                with tarfile.open(p, "r:gz") as archive:
                    for _ in archive:
                        pass
            elif name.endswith(".tar"):
                with tarfile.open(p, "r:") as archive:
                    for _ in archive:
                        pass
            elif name.endswith(".gz"):
                _read_gzip(p)
            else:
                return False
        except (tarfile.TarError, OSError, EOFError, zlib.error):
            return False
        return True

    # ── Listing ──────────────────────────────────────────────────────

    def list_records(self, kind: Optional[BackupKind] = None) -> list[BackupRecord]:
        """Records on disk, newest first."""
        kinds = [kind] if kind is not None else list(BackupKind)
        records = []
        for k in kinds:
            directory = self.directory(k)
            if not directory.is_dir():
                continue
            for entry in directory.iterdir():
                if not entry.is_file() or not entry.name.endswith(_ARCHIVE_SUFFIXES):
                    continue
                records.append(
                    BackupRecord(
                        kind=k,
                        path=str(entry),
                        created_at=self._created_at(entry),
                        size_bytes=entry.stat().st_size,
                    )
                )
        records.sort(key=lambda r: r.sort_key, reverse=True)
        return records

    def latest(self, kind: BackupKind) -> Optional[BackupRecord]:
        """Newest record of a kind; ties go to the greater filename."""
        records = self.list_records(kind)
        return records[0] if records else None

    def _created_at(self, entry: Path) -> datetime:
        match = _TIMESTAMP_RE.search(entry.name)
        if match:
            try:
                return datetime.strptime(
                    match.group(1), self.config.timestamp_format
                ).replace(tzinfo=timezone.utc)
            except ValueError:
                pass
        return datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)

    # ── Retention ────────────────────────────────────────────────────

    def prune(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Drop records past the age limit, then trim each kind to the count limit."""
        policy = self.config.retention
        now = now or self._clock.now()
        cutoff = now - timedelta(days=policy.max_age_days)
        removed = {kind.value: 0 for kind in BackupKind}

        for record in self.list_records():
            if record.created_at < cutoff:
                self._delete(record)
                removed[record.kind.value] += 1

        for kind in BackupKind:
            for record in self.list_records(kind)[policy.max_per_kind:]:
                self._delete(record)
                removed[kind.value] += 1

        total = sum(removed.values())
        logger.info(
            "Pruned %d backup(s) (retention: %d days, max: %d per kind)",
            total, policy.max_age_days, policy.max_per_kind,
        )
        return removed

    def _delete(self, record: BackupRecord) -> None:
        logger.info("Removing old backup: %s", record.path)
        Path(record.path).unlink(missing_ok=True)

    # ── Restore ──────────────────────────────────────────────────────

    def restore_data(self, record: Optional[BackupRecord] = None) -> BackupRecord:
        """Replace the host data directory with a data backup.

        Raises:
            IntegrityError: no data backup exists or it fails verification.
        """
        record = record or self.latest(BackupKind.DATA)
        if record is None:
            raise IntegrityError("No data backups found")
        if not self.verify(record.path):
            raise IntegrityError(f"Backup {record.filename} failed verification")
        record.verified = True
        logger.info("Restoring data from backup: %s", record.filename)
        self.runtime.extract_to_host(record.path, self.env.data_path, "data")
        return record

    # ── Reporting ────────────────────────────────────────────────────

    def summary(self) -> dict[str, Any]:
        """Per-kind counts, sizes and newest filename."""
        kinds = {}
        total_bytes = 0
        for kind in BackupKind:
            records = self.list_records(kind)
            size = sum(r.size_bytes for r in records)
            total_bytes += size
            kinds[kind.value] = {
                "count": len(records),
                "size_bytes": size,
                "latest": records[0].filename if records else None,
            }
        return {
            "backup_dir": str(self.root),
            "kinds": kinds,
            "total_size_bytes": total_bytes,
        }


def _read_gzip(path: Path) -> None:
    """Decompress to EOF so a truncated or corrupt stream raises."""
    with gzip.open(path, "rb") as stream:
        while stream.read(1024 * 1024):
            pass
