"""Incident Snapshots.

Every terminal failure, and every rollback regardless of outcome, leaves a
plain-text report an operator can act on without re-deriving state: the
container table before and after, resource usage and recent logs.
Gathering is best-effort so a broken control channel never hides the
failure being reported.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .clock import SYSTEM_CLOCK, Clock
from .config import EnvironmentConfig, SlotColor
from .exceptions import DeploymentError
from .runtime import ContainerInfo, ContainerRuntime, ContainerStats

logger = logging.getLogger(__name__)

UNAVAILABLE = "unavailable"


@dataclass
class IncidentSnapshot:
    """Diagnostic state captured around a failure or rollback."""

    kind: str
    environment: str
    target_server: str
    created_at: datetime
    incident_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    containers_before: List[ContainerInfo] = field(default_factory=list)
    containers_after: List[ContainerInfo] = field(default_factory=list)
    resources: List[ContainerStats] = field(default_factory=list)
    recent_logs: Dict[str, str] = field(default_factory=dict)
    host_resources: str = ""
    system_logs: str = ""
    error: Optional[str] = None
    report_path: Optional[str] = None

    def render(self) -> str:
        lines = [
            "INCIDENT REPORT",
            "===============",
            "",
            f"Incident: {self.incident_id}",
            f"Date: {self.created_at.isoformat()}",
            f"Environment: {self.environment}",
            f"Type: {self.kind}",
            f"Target Server: {self.target_server}",
        ]
        if self.error:
            lines.append(f"Error: {self.error}")
        lines += ["", "Container Status Before:"]
        lines += _container_table(self.containers_before)
        lines += ["", "Container Status After:"]
        lines += _container_table(self.containers_after)
        lines += ["", "Container Resource Usage:"]
        if self.resources:
            lines.append(f"{'NAME':<32} {'CPU %':>8} {'MEM %':>8}  MEM USAGE")
            for s in self.resources:
                lines.append(
                    f"{s.name:<32} {s.cpu_percent:>8.2f} {s.mem_percent:>8.2f}  {s.mem_usage}"
                )
        else:
            lines.append("  none")
        lines += ["", "System Resources:", self.host_resources or UNAVAILABLE]
        for name, text in self.recent_logs.items():
            lines += ["", f"Recent Logs ({name}):", text.rstrip() or "  empty"]
        lines += ["", "Recent System Logs:", self.system_logs or UNAVAILABLE, ""]
        return "\n".join(lines)


def _container_table(containers: List[ContainerInfo]) -> List[str]:
    if not containers:
        return ["  none"]
    rows = [f"{'NAMES':<32} {'STATUS':<12} {'HEALTH':<10} {'PORTS':<14} IMAGE"]
    for c in containers:
        ports = ",".join(f"{h}->{p}" for h, p in sorted(c.ports.items())) or "-"
        rows.append(
            f"{c.name:<32} {c.status or '-':<12} {c.health or '-':<10} {ports:<14} {c.image}"
        )
    return rows


class IncidentReporter:
    """Captures snapshots and writes them under the reports directory."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: EnvironmentConfig,
        clock: Optional[Clock] = None,
        log_tail: int = 50,
    ):
        self._runtime = runtime
        self._config = config
        self._clock = clock or SYSTEM_CLOCK
        self._log_tail = log_tail

    def capture_containers(self) -> List[ContainerInfo]:
        """The full container table, or an empty list if unreachable."""
        try:
            return self._runtime.list_containers(include_stopped=True)
        except DeploymentError as exc:
            logger.warning("Could not capture container table: %s", exc)
            return []

    def report(
        self,
        kind: str,
        before: List[ContainerInfo],
        error: Optional[BaseException] = None,
    ) -> IncidentSnapshot:
        """Capture the after-state and write the report file."""
        snapshot = IncidentSnapshot(
            kind=kind,
            environment=self._config.environment,
            target_server=self._config.target_server,
            created_at=self._clock.now(),
            containers_before=before,
            containers_after=self.capture_containers(),
            error=str(error) if error else None,
        )
        try:
            snapshot.resources = self._runtime.stats()
        except DeploymentError as exc:
            logger.warning("Could not capture resource usage: %s", exc)

        names = {c.name for c in snapshot.containers_before + snapshot.containers_after}
        names.update(self._config.container_name(color) for color in SlotColor)
        for name in sorted(names):
            if not name.startswith(self._config.slot_name):
                continue
            try:
                snapshot.recent_logs[name] = self._runtime.logs(name, tail=self._log_tail)
            except DeploymentError as exc:
                logger.warning("Could not read logs of %s: %s", name, exc)

        snapshot.host_resources = self._host("free -h && df -h")
        snapshot.system_logs = self._host(
            f"journalctl -u {self._config.container_engine} --since '10 minutes ago' --no-pager"
        )
        snapshot.report_path = self._write(snapshot)
        return snapshot

    def _host(self, command: str) -> str:
        try:
            return self._runtime.host_exec(command, check=False).strip()
        except DeploymentError as exc:
            logger.warning("Could not run '%s' on host: %s", command, exc)
            return ""

    def _write(self, snapshot: IncidentSnapshot) -> Optional[str]:
        stamp = snapshot.created_at.strftime("%Y%m%d-%H%M%S")
        path = Path(self._config.reports_dir) / f"{snapshot.kind}-incident-{stamp}-{snapshot.incident_id}.txt"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(snapshot.render())
        except OSError as exc:
            logger.error("Could not write incident report %s: %s", path, exc)
            return None
        logger.warning("Incident report created: %s", path)
        return str(path)
