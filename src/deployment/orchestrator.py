"""Blue/Green Slot Deployment: Orchestrator.

Drives one rollout through::

    INIT -> BACKUP_TAKEN -> IMAGE_PULLED -> NEW_SLOT_STARTING -> NEW_SLOT_HEALTHY
         -> TRAFFIC_SWITCHED -> OLD_SLOT_CLEANED -> COMPLETE

with FAILED reachable from any non-terminal state. The new slot is started
on a temporary port and validated there before production is touched. The
switch itself is stop-then-rebind: between releasing the production port
and re-binding it no slot serves traffic. The orchestrator never rolls
back on its own.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional

from src.backup.config import BackupKind
from src.logging_config.performance import log_performance

from .clock import SYSTEM_CLOCK, Clock
from .config import DeploymentConfig, DeploymentState, EnvironmentConfig, SlotColor
from .exceptions import DeploymentError, LocalStateError, StateError
from .health import HealthProbe
from .incident import IncidentReporter
from .lease import DeploymentLease, default_owner
from .runtime import ContainerRuntime, ContainerSpec
from .slots import SlotResolver
from .state import LastKnownGoodStore

if TYPE_CHECKING:
    from src.backup.manager import BackupManager

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[DeploymentState, FrozenSet[DeploymentState]] = {
    DeploymentState.INIT: frozenset({DeploymentState.BACKUP_TAKEN}),
    DeploymentState.BACKUP_TAKEN: frozenset({DeploymentState.IMAGE_PULLED}),
    DeploymentState.IMAGE_PULLED: frozenset({DeploymentState.NEW_SLOT_STARTING}),
    DeploymentState.NEW_SLOT_STARTING: frozenset({DeploymentState.NEW_SLOT_HEALTHY}),
    DeploymentState.NEW_SLOT_HEALTHY: frozenset({DeploymentState.TRAFFIC_SWITCHED}),
    DeploymentState.TRAFFIC_SWITCHED: frozenset({DeploymentState.OLD_SLOT_CLEANED}),
    DeploymentState.OLD_SLOT_CLEANED: frozenset({DeploymentState.COMPLETE}),
}
TERMINAL_STATES = frozenset({DeploymentState.COMPLETE, DeploymentState.FAILED})


@dataclass
class Deployment:
    """One rollout attempt."""

    environment: str
    image: str
    deployment_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: DeploymentState = DeploymentState.INIT
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    active_color: Optional[SlotColor] = None
    target_color: Optional[SlotColor] = None
    backup_path: Optional[str] = None
    production_unbound: bool = False
    failed_from: Optional[DeploymentState] = None
    failure_reason: Optional[str] = None
    incident_report: Optional[str] = None
    history: List[DeploymentState] = field(
        default_factory=lambda: [DeploymentState.INIT]
    )

    @property
    def succeeded(self) -> bool:
        return self.state == DeploymentState.COMPLETE

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: DeploymentState) -> None:
        """Move to ``new_state``; FAILED is allowed from any non-terminal state."""
        if self.is_terminal:
            raise ValueError(f"Deployment already terminal ({self.state.value})")
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state != DeploymentState.FAILED and new_state not in allowed:
            raise ValueError(
                f"Illegal transition {self.state.value} -> {new_state.value}"
            )
        if new_state == DeploymentState.FAILED:
            self.failed_from = self.state
        self.state = new_state
        self.history.append(new_state)
        if new_state in TERMINAL_STATES:
            self.completed_at = datetime.now(timezone.utc)
        logger.info("Deployment %s -> %s", self.deployment_id, new_state.value)


def slot_container_spec(
    config: EnvironmentConfig,
    deploy_config: DeploymentConfig,
    color: SlotColor,
    image: str,
    host_port: int,
    deployed_at: datetime,
    rollback: bool = False,
) -> ContainerSpec:
    """Container definition shared by deployment and rollback."""
    labels = {
        "environment": config.environment,
        "version": image,
        "deployment-time": deployed_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    if rollback:
        labels["rollback"] = "true"
    return ContainerSpec(
        name=config.container_name(color),
        image=image,
        host_port=host_port,
        container_port=config.container_port,
        volumes=[
            f"{config.data_path}:{deploy_config.container_data_path}:Z",
            f"{config.logs_path}:{deploy_config.container_logs_path}:Z",
        ],
        env_file=config.remote_env_file if config.env_file else None,
        labels=labels,
        restart_policy=deploy_config.restart_policy,
    )


class DeploymentOrchestrator:
    """Runs blue/green rollouts for one environment."""

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

    @property
    def temp_port(self) -> int:
        return self._config.production_port + self._deploy_config.temp_port_offset

    def deploy(self, image: str) -> Deployment:
        """Roll ``image`` out; always returns the Deployment in a terminal state."""
        deployment = Deployment(environment=self._config.environment, image=image)
        logger.info(
            "Starting blue-green deployment %s of %s to %s (%s)",
            deployment.deployment_id,
            image,
            self._config.environment,
            self._config.target_server,
        )
        before = self._incidents.capture_containers()
        try:
            with self._lease.hold(self._owner):
                self._run(deployment)
        except DeploymentError as exc:
            self._fail(deployment, exc, before)
        except OSError as exc:
            error = LocalStateError(
                f"Local state I/O failed: {exc}", path=str(exc.filename or "")
            )
            self._fail(deployment, error, before)
        return deployment

    def _run(self, deployment: Deployment) -> None:
        self.prepare_host()
        self.resolve_slots(deployment)

        deployment.backup_path = self.backup_current(deployment.active_color)
        deployment.transition(DeploymentState.BACKUP_TAKEN)

        self.pull(deployment.image)
        deployment.transition(DeploymentState.IMAGE_PULLED)

        deployment.transition(DeploymentState.NEW_SLOT_STARTING)
        self.start_new(deployment.target_color, deployment.image)
        self.validate_new(deployment.target_color, self.temp_port)
        deployment.transition(DeploymentState.NEW_SLOT_HEALTHY)

        self.switch_traffic(deployment)
        deployment.transition(DeploymentState.TRAFFIC_SWITCHED)
        self._lkg.record(deployment.target_color, deployment.image)

        if deployment.active_color is not None:
            self.cleanup_old(deployment.active_color)
        deployment.transition(DeploymentState.OLD_SLOT_CLEANED)
        deployment.transition(DeploymentState.COMPLETE)
        logger.info(
            "Blue-green deployment completed: %s now serves %s on port %d",
            self._config.container_name(deployment.target_color),
            deployment.image,
            self._config.production_port,
        )

    # ── Steps ────────────────────────────────────────────────────────

    def prepare_host(self) -> None:
        """Create host directories and upload the environment file."""
        paths = [
            self._config.data_path,
            self._config.logs_path,
            self._config.configs_path,
        ]
        self._runtime.host_exec("mkdir -p " + " ".join(paths))
        if self._config.env_file and Path(self._config.env_file).is_file():
            self._runtime.put_file(self._config.env_file, self._config.remote_env_file)

    def resolve_slots(self, deployment: Deployment) -> None:
        """Fill in active/target colors; a host with no slot running is bootstrapped into blue."""
        try:
            active, target = self.resolver.resolve_active()
        except StateError as exc:
            if exc.reason != StateError.NO_ACTIVE_SLOT:
                raise
            logger.warning("No active slot found; first deployment goes to blue")
            active, target = None, SlotColor.BLUE
        deployment.active_color = active
        deployment.target_color = target
        logger.info(
            "Current deployment: %s, new deployment: %s",
            active.value if active else "none",
            target.value,
        )

    def backup_current(self, active: Optional[SlotColor]) -> Optional[str]:
        """Best-effort data snapshot of the active slot; never fails the deployment."""
        if active is None or self._backups is None:
            logger.info("Skipping pre-deployment backup")
            return None
        try:
            record = self._backups.create(BackupKind.DATA)
        except (DeploymentError, OSError) as exc:
            logger.warning("Pre-deployment backup failed, continuing: %s", exc)
            return None
        if record is None:
            return None
        if not record.verified:
            logger.warning("Pre-deployment backup %s did not verify", record.filename)
        return record.path

    @log_performance(threshold_ms=120_000)
    def pull(self, image: str) -> None:
        logger.info("Pulling new image: %s", image)
        self._runtime.pull(image)
        logger.info("Image pulled successfully")

    def start_new(self, target: SlotColor, image: str) -> None:
        """Replace whatever occupies ``target`` with ``image`` on the temporary port."""
        name = self._config.container_name(target)
        logger.info("Starting new container %s on temporary port %d", name, self.temp_port)
        self._runtime.stop(name)
        self._runtime.remove(name)
        self._runtime.run(
            slot_container_spec(
                self._config,
                self._deploy_config,
                target,
                image,
                self.temp_port,
                self._clock.now(),
            )
        )

    def validate_new(self, target: SlotColor, port: int) -> None:
        """Runtime health, then HTTP health on ``port``. Raises HealthTimeoutError."""
        self._probe.await_healthy(
            self._config.container_name(target), self._deploy_config.container_policy
        )
        self._probe.http_healthy(port, policy=self._deploy_config.http_policy)

    def switch_traffic(self, deployment: Deployment) -> None:
        """Hand the production port from the active slot to the target slot.

        ``production_unbound`` is set only once the old slot has stopped.
        """
        target, active = deployment.target_color, deployment.active_color
        logger.info(
            "Switching traffic from %s to %s",
            active.value if active else "none",
            target.value,
        )
        old = self._config.container_name(active) if active is not None else None
        if old:
            self._runtime.stop(old)
        # Production port is unbound from here until the run below succeeds.
        deployment.production_unbound = True
        if old:
            self._runtime.remove(old)

        name = self._config.container_name(target)
        self._runtime.stop(name)
        self._runtime.remove(name)
        self._runtime.run(
            slot_container_spec(
                self._config,
                self._deploy_config,
                target,
                deployment.image,
                self._config.production_port,
                self._clock.now(),
            )
        )
        self.validate_new(target, self._config.production_port)
        deployment.production_unbound = False
        logger.info("Traffic switched successfully to %s", target.value)

    def cleanup_old(self, old: SlotColor) -> None:
        """Grace period, then remove anything left in the old slot. Best-effort."""
        name = self._config.container_name(old)
        grace = self._deploy_config.grace_period_seconds
        logger.info("Cleaning up old deployment %s after %.0fs grace period", name, grace)
        self._clock.sleep(grace)
        try:
            self._runtime.stop(name)
            self._runtime.remove(name)
        except DeploymentError as exc:
            logger.warning("Cleanup of %s failed: %s", name, exc)

    # ── Failure handling ─────────────────────────────────────────────

    def _fail(self, deployment: Deployment, exc: DeploymentError, before) -> None:
        deployment.failure_reason = str(exc)
        failed_from = deployment.state
        if deployment.production_unbound:
            logger.critical(
                "Post-switch validation failed: production port %d has no confirmed-good slot",
                self._config.production_port,
            )
        else:
            logger.error("Deployment %s failed: %s", deployment.deployment_id, exc)

        kind = "switch-failed" if deployment.production_unbound else "deploy-failed"
        snapshot = self._incidents.report(kind, before, exc)
        deployment.incident_report = snapshot.report_path

        if failed_from == DeploymentState.NEW_SLOT_STARTING and deployment.target_color:
            self._discard(deployment.target_color)
        deployment.transition(DeploymentState.FAILED)

    def _discard(self, color: SlotColor) -> None:
        name = self._config.container_name(color)
        try:
            self._runtime.stop(name)
            self._runtime.remove(name)
            logger.info("Removed unvalidated container %s", name)
        except DeploymentError as exc:
            logger.warning("Could not remove unvalidated container %s: %s", name, exc)
