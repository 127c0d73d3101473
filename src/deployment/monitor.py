"""Operational Health Checks.

Read-only checks an operator or cron job runs against a live environment,
selected by ``HealthCheckMode``. Each check yields a ``CheckOutcome``;
warnings never fail a check, only ``passed=False`` does.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .clock import SYSTEM_CLOCK, Clock
from .config import DeploymentConfig, EnvironmentConfig, HealthCheckMode, RuntimeHealth, SlotColor
from .exceptions import DeploymentError
from .health import HealthProbe
from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)

_ERROR_RE = re.compile(r"error|exception|fatal|panic", re.IGNORECASE)
_WARNING_RE = re.compile(r"warn|warning", re.IGNORECASE)


@dataclass
class CheckOutcome:
    """Result of one named check."""

    name: str
    passed: bool
    warnings: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    environment: str
    mode: HealthCheckMode
    generated_at: datetime
    checks: List[CheckOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def warnings(self) -> List[str]:
        return [w for check in self.checks for w in check.warnings]

    def render(self) -> str:
        lines = [
            f"Health report for {self.environment} ({self.mode.value}) at "
            f"{self.generated_at.isoformat()}",
        ]
        for check in self.checks:
            lines.append(f"  [{'PASS' if check.passed else 'FAIL'}] {check.name}")
            for key, value in check.details.items():
                if isinstance(value, str) and "\n" in value:
                    continue
                lines.append(f"      {key}: {value}")
            for warning in check.warnings:
                lines.append(f"      warning: {warning}")
        lines.append(f"Overall: {'healthy' if self.ok else 'unhealthy'}")
        return "\n".join(lines)


class HealthMonitor:
    """Runs operational health checks for one environment."""

    MIN_SUCCESS_RATE = 95.0
    CPU_WARNING_PERCENT = 80.0
    MEMORY_WARNING_PERCENT = 85.0
    DISK_WARNING_PERCENT = 85.0
    LOG_WARNING_LIMIT = 10
    LOAD_REQUESTS = 100
    FULL_LOAD_REQUESTS = 50

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: EnvironmentConfig,
        probe: HealthProbe,
        deploy_config: Optional[DeploymentConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self._runtime = runtime
        self._config = config
        self._probe = probe
        self._deploy_config = deploy_config or DeploymentConfig()
        self._clock = clock or SYSTEM_CLOCK

    def run(self, mode: HealthCheckMode = HealthCheckMode.FULL) -> HealthReport:
        report = HealthReport(
            environment=self._config.environment,
            mode=mode,
            generated_at=self._clock.now(),
        )
        if mode == HealthCheckMode.CONTAINER:
            report.checks.append(self.check_container())
        elif mode == HealthCheckMode.HTTP:
            report.checks.append(self.check_http())
            report.checks.append(self.check_metrics())
        elif mode == HealthCheckMode.RESOURCES:
            report.checks.append(self.check_resources())
        elif mode == HealthCheckMode.LOGS:
            report.checks.append(self.check_logs())
        elif mode == HealthCheckMode.LOAD:
            report.checks.append(self.check_load(self.LOAD_REQUESTS))
        else:
            report.checks.extend([
                self.check_container(),
                self.check_http(),
                self.check_metrics(),
                self.check_resources(),
                self.check_logs(),
            ])
            if self._config.environment == "production":
                report.checks.append(self.check_load(self.FULL_LOAD_REQUESTS))

        log = logger.info if report.ok else logger.error
        log(
            "Health check (%s) for %s: %s",
            mode.value, self._config.environment, "healthy" if report.ok else "unhealthy",
        )
        return report

    def _running_slot(self) -> Optional[str]:
        for color in SlotColor:
            info = self._runtime.inspect(self._config.container_name(color))
            if info is not None and info.running:
                return info.name
        return None

    # ── Checks ───────────────────────────────────────────────────────

    def check_container(self) -> CheckOutcome:
        outcome = CheckOutcome(name="container", passed=False)
        try:
            name = self._running_slot()
        except DeploymentError as exc:
            outcome.details["error"] = str(exc)
            return outcome
        if name is None:
            outcome.details["error"] = f"No running container for {self._config.slot_name}"
            return outcome

        health = self._probe.runtime_health(name)
        outcome.details.update({"container": name, "health": health.value})
        if health == RuntimeHealth.UNHEALTHY:
            return outcome
        if health == RuntimeHealth.STARTING:
            outcome.warnings.append(f"{name} is still starting")
        elif health != RuntimeHealth.HEALTHY:
            outcome.warnings.append(f"{name} has no health check configured")
        outcome.passed = True
        return outcome

    def check_http(self, port: Optional[int] = None) -> CheckOutcome:
        port = port or self._config.production_port
        result = self._probe.check_http(port)
        outcome = CheckOutcome(
            name="http",
            passed=result.status_code == 200,
            details={
                "url": self._probe.url_for(port),
                "status_code": result.status_code,
                "latency_ms": result.latency_ms,
            },
        )
        if result.error:
            outcome.details["error"] = result.error
        if outcome.passed and result.latency_ms > self._deploy_config.max_response_time_ms:
            outcome.warnings.append(
                f"Response time {result.latency_ms:.0f}ms exceeds "
                f"{self._deploy_config.max_response_time_ms:.0f}ms"
            )
        return outcome

    def check_metrics(self, port: Optional[int] = None) -> CheckOutcome:
        """Metrics are optional; absence is only a warning."""
        port = port or self._config.production_port
        outcome = CheckOutcome(name="metrics", passed=True)
        sample = self._probe.probe_metrics(port)
        if sample is None:
            outcome.warnings.append("Metrics endpoint not available")
        else:
            outcome.details["sample"] = sample
        return outcome

    def check_resources(self) -> CheckOutcome:
        outcome = CheckOutcome(name="resources", passed=True)
        try:
            stats = self._runtime.stats()
        except DeploymentError as exc:
            outcome.passed = False
            outcome.details["error"] = str(exc)
            return outcome
        for s in stats:
            if not s.name.startswith(self._config.slot_name):
                continue
            outcome.details[s.name] = f"cpu {s.cpu_percent:.1f}% mem {s.mem_percent:.1f}%"
            if s.cpu_percent > self.CPU_WARNING_PERCENT:
                outcome.warnings.append(f"High CPU usage on {s.name}: {s.cpu_percent:.1f}%")
            if s.mem_percent > self.MEMORY_WARNING_PERCENT:
                outcome.warnings.append(f"High memory usage on {s.name}: {s.mem_percent:.1f}%")
        try:
            disk = self._runtime.host_exec(
                "df -P / | awk 'NR==2 {print $5}'", check=False
            ).strip().rstrip("%")
        except DeploymentError as exc:
            outcome.passed = False
            outcome.details["error"] = str(exc)
            return outcome
        if disk.isdigit():
            outcome.details["disk_percent"] = int(disk)
            if int(disk) > self.DISK_WARNING_PERCENT:
                outcome.warnings.append(f"High disk usage: {disk}%")
        return outcome

    def check_logs(self, lines: int = 50) -> CheckOutcome:
        outcome = CheckOutcome(name="logs", passed=True)
        try:
            name = self._running_slot()
            if name is None:
                outcome.warnings.append("No running container to read logs from")
                return outcome
            text = self._runtime.logs(name, tail=lines)
        except DeploymentError as exc:
            outcome.passed = False
            outcome.details["error"] = str(exc)
            return outcome
        errors = sum(1 for line in text.splitlines() if _ERROR_RE.search(line))
        warnings = sum(1 for line in text.splitlines() if _WARNING_RE.search(line))
        outcome.details.update({"container": name, "errors": errors, "warnings": warnings})
        if errors:
            outcome.warnings.append(f"{errors} error line(s) in last {lines} log lines")
        if warnings > self.LOG_WARNING_LIMIT:
            outcome.warnings.append(f"{warnings} warning line(s) in last {lines} log lines")
        return outcome

    def check_load(self, requests: int = LOAD_REQUESTS, port: Optional[int] = None) -> CheckOutcome:
        """Sequential GETs against the root path; passes at >= 95% success."""
        port = port or self._config.production_port
        successes = 0
        latencies = []
        for _ in range(requests):
            result = self._probe.check_http(port, "/")
            if result.status_code == 200:
                successes += 1
                latencies.append(result.latency_ms)
        rate = (successes / requests * 100) if requests else 0.0
        outcome = CheckOutcome(
            name="load",
            passed=rate >= self.MIN_SUCCESS_RATE,
            details={
                "requests": requests,
                "successful": successes,
                "success_rate": round(rate, 2),
                "avg_latency_ms": round(sum(latencies) / len(latencies), 2) if latencies else 0.0,
            },
        )
        return outcome
