"""Blue/Green Slot Deployment: Rollback Coordinator.

Two tiers, tried in order under ``RollbackMode.AUTO``:

1. container: re-activate the backup slot from a known-good image.
2. backup: stop both slots, restore the newest data backup, start the
   known-good image.

Each tier counts as done only after the restored slot passes the same
runtime and HTTP checks a deployment uses. A rollback that already landed
and is still serving healthy is recognised and not repeated.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from src.backup.config import BackupKind

from .clock import SYSTEM_CLOCK, Clock
from .config import (
    DeploymentConfig,
    EnvironmentConfig,
    RollbackMode,
    RollbackTier,
    SlotColor,
)
from .exceptions import (
    DeploymentError,
    HealthTimeoutError,
    IntegrityError,
    LocalStateError,
    RollbackExhaustedError,
    StateError,
)
from .health import HealthProbe
from .incident import IncidentReporter
from .lease import DeploymentLease, default_owner
from .orchestrator import slot_container_spec
from .runtime import ContainerInfo, ContainerRuntime
from .slots import SlotResolver
from .state import LastKnownGood, LastKnownGoodStore

if TYPE_CHECKING:
    from src.backup.manager import BackupManager, BackupRecord

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Record of one rollback invocation."""

    environment: str
    mode: RollbackMode
    rollback_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    success: bool = False
    tier: RollbackTier = RollbackTier.NONE
    color: Optional[SlotColor] = None
    image: Optional[str] = None
    image_source: str = ""
    restored_backup: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)
    steps_completed: List[str] = field(default_factory=list)
    incident_report: Optional[str] = None


@dataclass
class RollbackOptions:
    """What a rollback could use right now."""

    active: Optional[SlotColor]
    slots: Dict[str, Optional[ContainerInfo]]
    last_known_good: Optional[LastKnownGood]
    previous: Optional[LastKnownGood]
    data_backups: List["BackupRecord"] = field(default_factory=list)


class RollbackCoordinator:
    """Restores a previously known-good slot."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: EnvironmentConfig,
        probe: HealthProbe,
        backups: Optional["BackupManager"] = None,
        lkg_store: Optional[LastKnownGoodStore] = None,
        lease: Optional[DeploymentLease] = None,
        incidents: Optional[IncidentReporter] = None,
        deploy_config: Optional[DeploymentConfig] = None,
        clock: Optional[Clock] = None,
        owner: Optional[str] = None,
    ):
        self._runtime = runtime
        self._config = config
        self._probe = probe
        self._backups = backups
        self._deploy_config = deploy_config or DeploymentConfig()
        self._clock = clock or SYSTEM_CLOCK
        self._owner = owner or default_owner()
        self._lkg = lkg_store or LastKnownGoodStore(
            config.state_dir, config.environment, self._clock
        )
        self._lease = lease or DeploymentLease(
            config.state_dir,
            config.environment,
            self._deploy_config.lease_ttl_seconds,
            self._clock,
        )
        self._incidents = incidents or IncidentReporter(runtime, config, self._clock)
        self.resolver = SlotResolver(runtime, config)

    def rollback(self, mode: RollbackMode = RollbackMode.AUTO) -> RollbackResult:
        """Run the rollback chain for ``mode``.

        Raises:
            RollbackExhaustedError: AUTO mode and both tiers failed.
            DeploymentError: the single requested tier failed, the lease is
                held elsewhere, or slot state is ambiguous.
        """
        result = RollbackResult(
            environment=self._config.environment,
            mode=mode,
            started_at=self._clock.now(),
        )
        logger.warning(
            "Initiating %s rollback %s for %s", mode.value, result.rollback_id,
            self._config.environment,
        )
        before = self._incidents.capture_containers()
        try:
            self._execute_locked(mode, result)
        except DeploymentError as exc:
            result.completed_at = self._clock.now()
            snapshot = self._incidents.report("failed-rollback", before, exc)
            result.incident_report = snapshot.report_path
            exc.details["incident_report"] = snapshot.report_path
            logger.critical("Rollback %s failed: %s", result.rollback_id, exc)
            raise

        result.completed_at = self._clock.now()
        snapshot = self._incidents.report(f"{result.tier.value}-rollback", before)
        result.incident_report = snapshot.report_path
        return result

    def _execute_locked(self, mode: RollbackMode, result: RollbackResult) -> None:
        try:
            with self._lease.hold(self._owner):
                self._execute(mode, result)
        except OSError as exc:
            raise LocalStateError(
                f"Local state I/O failed: {exc}", path=str(exc.filename or "")
            ) from exc

    def _execute(self, mode: RollbackMode, result: RollbackResult) -> None:
        active, active_info = self._active_slot()
        failing_image = active_info.image if active_info else None

        if self._already_rolled_back(active, active_info):
            marker = self._lkg.rollback_marker()
            result.success = True
            result.color = marker.color
            result.image = marker.image
            result.steps_completed.append("already_rolled_back")
            logger.info(
                "Production already serves rollback target %s (%s); nothing to do",
                marker.image, marker.color.value,
            )
            return

        if mode in (RollbackMode.AUTO, RollbackMode.CONTAINER):
            try:
                self.rollback_to_previous(active, failing_image, result)
            except DeploymentError as exc:
                result.errors[RollbackTier.CONTAINER.value] = str(exc)
                if mode == RollbackMode.CONTAINER:
                    raise
                logger.warning("Container rollback failed, trying backup restore: %s", exc)

        if not result.success and mode in (RollbackMode.AUTO, RollbackMode.BACKUP):
            try:
                self.rollback_from_backup(failing_image, result)
            except DeploymentError as exc:
                result.errors[RollbackTier.BACKUP.value] = str(exc)
                if mode == RollbackMode.BACKUP:
                    raise
                raise RollbackExhaustedError(
                    "All rollback attempts failed; manual intervention required",
                    errors=dict(result.errors),
                ) from exc

        logger.info(
            "Rollback completed via %s tier: %s now serves %s",
            result.tier.value,
            self._config.container_name(result.color),
            result.image,
        )

    # ── Tiers ────────────────────────────────────────────────────────

    def rollback_to_previous(
        self,
        active: Optional[SlotColor],
        failing_image: Optional[str],
        result: RollbackResult,
    ) -> None:
        """Container tier: run the known-good image in the backup slot.

        When ``active`` already runs the image an earlier rollback landed on,
        that slot is re-validated in place instead of moving elsewhere.
        """
        marker = self._lkg.rollback_marker()
        if (
            marker is not None
            and active == marker.color
            and failing_image == marker.image
        ):
            logger.info(
                "%s already serves rollback target %s; re-validating",
                self._config.container_name(active), marker.image,
            )
            self._validate(active)
            result.steps_completed.append(f"revalidated_{active.value}")
            result.success = True
            result.tier = RollbackTier.CONTAINER
            result.color = marker.color
            result.image = marker.image
            result.image_source = "rollback_marker"
            return

        image, source = self._known_good_image(failing_image)
        if image is None:
            image, source = self._slot_label_image(active, failing_image)
        if image is None:
            raise StateError(
                "No previous image available for container rollback",
                StateError.NO_ROLLBACK_TARGET,
            )
        if not self._runtime.image_exists(image):
            raise StateError(
                f"Rollback image {image} is not present on the host",
                StateError.NO_ROLLBACK_TARGET,
            )
        target = self._target_color(active)
        logger.info(
            "Rolling back from %s to %s with %s (%s)",
            active.value if active else "none", target.value, image, source,
        )

        if active is not None:
            self._retire(active)
            result.steps_completed.append(f"stopped_{active.value}")
        self._retire(target)
        self._start_and_validate(target, image)
        result.steps_completed.append(f"started_{target.value}")
        self._lkg.record_rollback(target, image)

        result.success = True
        result.tier = RollbackTier.CONTAINER
        result.color = target
        result.image = image
        result.image_source = source

    def rollback_from_backup(
        self, failing_image: Optional[str], result: RollbackResult
    ) -> None:
        """Backup tier: restore data, then start the known-good image."""
        if self._backups is None:
            raise IntegrityError("Backup restore unavailable: no backup manager configured")
        record = self._backups.latest(BackupKind.DATA)
        if record is None:
            raise IntegrityError("No data backups found")

        image, source = self._known_good_image(failing_image)
        if image is None:
            image, source = self._newest_host_image(failing_image)
        if image is None:
            raise StateError(
                f"No suitable image found for {self._config.image_repository}",
                StateError.NO_ROLLBACK_TARGET,
            )

        logger.info("Restoring from backup %s with image %s (%s)", record.filename, image, source)
        for color in SlotColor:
            self._retire(color)
        result.steps_completed.append("stopped_all_slots")

        self._backups.restore_data(record)
        result.restored_backup = record.path
        result.steps_completed.append("restored_data")

        lkg = self._lkg.get()
        target = lkg.color if lkg else SlotColor.BLUE
        self._start_and_validate(target, image)
        result.steps_completed.append(f"started_{target.value}")
        self._lkg.record_rollback(target, image)

        result.success = True
        result.tier = RollbackTier.BACKUP
        result.color = target
        result.image = image
        result.image_source = source

    # ── Helpers ──────────────────────────────────────────────────────

    def _active_slot(self) -> Tuple[Optional[SlotColor], Optional[ContainerInfo]]:
        try:
            active, _ = self.resolver.resolve_active()
        except StateError as exc:
            if exc.reason != StateError.NO_ACTIVE_SLOT:
                raise
            logger.warning("No active slot; production is not being served")
            return None, None
        return active, self.resolver.inspect(active)

    def _already_rolled_back(
        self, active: Optional[SlotColor], info: Optional[ContainerInfo]
    ) -> bool:
        marker = self._lkg.rollback_marker()
        if marker is None or active != marker.color or info is None:
            return False
        if info.image != marker.image or not info.bound_to(self._config.production_port):
            return False
        try:
            self._validate(marker.color)
        except HealthTimeoutError:
            return False
        return True

    def _known_good_image(self, failing_image: Optional[str]) -> Tuple[Optional[str], str]:
        lkg = self._lkg.get()
        if lkg is None:
            return None, ""
        if lkg.image != failing_image:
            return lkg.image, "last_known_good"
        previous = self._lkg.previous()
        if previous is not None and previous.image != failing_image:
            return previous.image, "previous_known_good"
        return None, ""

    def _slot_label_image(
        self, active: Optional[SlotColor], failing_image: Optional[str]
    ) -> Tuple[Optional[str], str]:
        colors = [active.complement] if active else list(SlotColor)
        for color in colors:
            info = self.resolver.inspect(color)
            if info is None:
                continue
            image = info.version or info.image
            if image and image != failing_image:
                return image, f"{color.value}_slot_label"
        return None, ""

    def _newest_host_image(self, failing_image: Optional[str]) -> Tuple[Optional[str], str]:
        for image in self._runtime.list_images():
            if self._config.owns_image(image) and image != failing_image:
                return image, "newest_host_image"
        return None, ""

    def _target_color(self, active: Optional[SlotColor]) -> SlotColor:
        if active is not None:
            return active.complement
        lkg = self._lkg.get()
        return lkg.color if lkg else SlotColor.BLUE

    def _retire(self, color: SlotColor) -> None:
        name = self._config.container_name(color)
        self._runtime.stop(name)
        self._runtime.remove(name)

    def _start_and_validate(self, color: SlotColor, image: str) -> None:
        self._runtime.run(
            slot_container_spec(
                self._config,
                self._deploy_config,
                color,
                image,
                self._config.production_port,
                self._clock.now(),
                rollback=True,
            )
        )
        self._validate(color)

    def _validate(self, color: SlotColor) -> None:
        self._probe.await_healthy(
            self._config.container_name(color), self._deploy_config.container_policy
        )
        self._probe.http_healthy(
            self._config.production_port, policy=self._deploy_config.http_policy
        )

    # ── Reporting ────────────────────────────────────────────────────

    def list_options(self) -> RollbackOptions:
        """Slot state, LastKnownGood and data backups available to a rollback."""
        try:
            active, _ = self.resolver.resolve_active()
        except StateError:
            active = None
        backups = self._backups.list_records(BackupKind.DATA) if self._backups else []
        return RollbackOptions(
            active=active,
            slots=self.resolver.describe(),
            last_known_good=self._lkg.get(),
            previous=self._lkg.previous(),
            data_backups=backups,
        )
