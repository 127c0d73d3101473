"""Bounded Health Verification.

Two probes gate every traffic decision: the container runtime's own health
check and an HTTP GET against the service's health endpoint. Both poll at a
fixed interval under a caller-supplied ``BackoffPolicy`` and raise
``HealthTimeoutError`` when the policy is exhausted. Neither probe mutates
anything.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx

from .clock import SYSTEM_CLOCK, Clock
from .config import BackoffPolicy, DeploymentConfig, EnvironmentConfig, RuntimeHealth
from .exceptions import HealthTimeoutError
from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """Outcome of a single probe."""

    timestamp: datetime
    runtime_health: RuntimeHealth = RuntimeHealth.UNKNOWN
    status_code: int = 0
    latency_ms: float = 0.0
    error: Optional[str] = None
    attempts: int = 1
    body: str = field(default="", repr=False)

    @property
    def ok(self) -> bool:
        if self.status_code:
            return self.status_code == 200
        return self.runtime_health == RuntimeHealth.HEALTHY


class HealthProbe:
    """Runtime-level and HTTP-level health checks for slot containers."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: EnvironmentConfig,
        deploy_config: Optional[DeploymentConfig] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Optional[Clock] = None,
    ):
        self._runtime = runtime
        self._config = config
        self._deploy_config = deploy_config or DeploymentConfig()
        self._clock = clock or SYSTEM_CLOCK
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            timeout=self._deploy_config.request_timeout_seconds
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HealthProbe":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ── Runtime health ───────────────────────────────────────────────

    def runtime_health(self, container: str) -> RuntimeHealth:
        """Single, non-blocking query of a container's health status."""
        info = self._runtime.inspect(container)
        if info is None:
            return RuntimeHealth.NOT_FOUND
        try:
            return RuntimeHealth(info.health.lower())
        except ValueError:
            return RuntimeHealth.UNKNOWN

    def await_healthy(
        self, container: str, policy: Optional[BackoffPolicy] = None
    ) -> HealthCheckResult:
        """Poll until the container reports healthy.

        Only ``healthy`` ends the loop early; every other status is polled
        again until the attempts run out.

        Raises:
            HealthTimeoutError: policy exhausted without a healthy report.
        """
        policy = policy or self._deploy_config.container_policy
        logger.info("Waiting for container %s to be healthy", container)
        started = self._clock.monotonic()
        status = RuntimeHealth.UNKNOWN

        for attempt in range(1, policy.max_attempts + 1):
            status = self.runtime_health(container)
            if status == RuntimeHealth.HEALTHY:
                logger.info("Container %s is healthy after %d attempt(s)", container, attempt)
                return HealthCheckResult(
                    timestamp=self._clock.now(),
                    runtime_health=status,
                    attempts=attempt,
                )
            logger.info(
                "Attempt %d/%d: container %s health is '%s'",
                attempt, policy.max_attempts, container, status.value,
            )
            if not self._may_sleep(policy, attempt, started):
                break
            self._clock.sleep(policy.interval)

        logger.error("Container %s failed to become healthy", container)
        raise HealthTimeoutError(
            f"Container {container} not healthy after {attempt} attempt(s)",
            target=container,
            attempts=attempt,
            last_status=status.value,
        )

    # ── HTTP health ──────────────────────────────────────────────────

    def url_for(self, port: int, path: Optional[str] = None) -> str:
        return f"http://{self._config.probe_host}:{port}{path or self._config.health_path}"

    def check_http(self, port: int, path: Optional[str] = None) -> HealthCheckResult:
        """One GET against the health endpoint, with latency."""
        url = self.url_for(port, path)
        start = time.perf_counter()
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            return HealthCheckResult(
                timestamp=self._clock.now(),
                latency_ms=round(latency_ms, 2),
                error=f"{type(exc).__name__}: {exc}",
            )
        latency_ms = (time.perf_counter() - start) * 1000
        return HealthCheckResult(
            timestamp=self._clock.now(),
            status_code=response.status_code,
            latency_ms=round(latency_ms, 2),
            error=None if response.status_code == 200 else f"HTTP {response.status_code}",
            body=response.text[:2000],
        )

    def http_healthy(
        self,
        port: int,
        path: Optional[str] = None,
        policy: Optional[BackoffPolicy] = None,
    ) -> HealthCheckResult:
        """Poll the health endpoint until one response has status 200.

        Raises:
            HealthTimeoutError: policy exhausted without a 200.
        """
        policy = policy or self._deploy_config.http_policy
        url = self.url_for(port, path)
        logger.info("Performing HTTP health check on %s", url)
        started = self._clock.monotonic()
        result = None

        for attempt in range(1, policy.max_attempts + 1):
            result = self.check_http(port, path)
            result.attempts = attempt
            if result.status_code == 200:
                logger.info(
                    "HTTP health check passed on %s (%.1fms)", url, result.latency_ms
                )
                return result
            logger.info(
                "Attempt %d/%d: HTTP health check failed (%s)",
                attempt, policy.max_attempts, result.error,
            )
            if not self._may_sleep(policy, attempt, started):
                break
            self._clock.sleep(policy.interval)

        logger.error("HTTP health check failed for %s", url)
        raise HealthTimeoutError(
            f"HTTP health check on {url} failed after {attempt} attempt(s)",
            target=url,
            attempts=attempt,
            last_status=(result.error or "") if result else "",
        )

    def probe_metrics(self, port: int, max_lines: int = 20) -> Optional[str]:
        """First lines of the metrics endpoint, or None if unavailable."""
        result = self.check_http(port, self._config.metrics_path)
        if result.status_code != 200:
            return None
        return "\n".join(result.body.splitlines()[:max_lines])

    def _may_sleep(self, policy: BackoffPolicy, attempt: int, started: float) -> bool:
        if attempt >= policy.max_attempts:
            return False
        if policy.deadline is not None:
            elapsed = self._clock.monotonic() - started
            if elapsed + policy.interval > policy.deadline:
                return False
        return True
