"""Blue/Green Slot Deployment: Configuration."""

import enum
from dataclasses import dataclass, field
from typing import Optional


class SlotColor(enum.Enum):
    """The two mutually exclusive deployment slots."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def complement(self) -> "SlotColor":
        return SlotColor.GREEN if self is SlotColor.BLUE else SlotColor.BLUE


class RuntimeHealth(enum.Enum):
    """Container health as reported by the runtime's health check."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"
    NOT_FOUND = "not_found"


class DeploymentState(enum.Enum):
    """Lifecycle state of a single rollout attempt."""

    INIT = "init"
    BACKUP_TAKEN = "backup_taken"
    IMAGE_PULLED = "image_pulled"
    NEW_SLOT_STARTING = "new_slot_starting"
    NEW_SLOT_HEALTHY = "new_slot_healthy"
    TRAFFIC_SWITCHED = "traffic_switched"
    OLD_SLOT_CLEANED = "old_slot_cleaned"
    COMPLETE = "complete"
    FAILED = "failed"


class RollbackMode(enum.Enum):
    """Which rollback tiers an invocation may use."""

    AUTO = "auto"
    CONTAINER = "container"
    BACKUP = "backup"


class RollbackTier(enum.Enum):
    """Tier that produced the outcome of a rollback."""

    NONE = "none"
    CONTAINER = "container"
    BACKUP = "backup"


class HealthCheckMode(enum.Enum):
    """Operational health check selections."""

    CONTAINER = "container"
    HTTP = "http"
    RESOURCES = "resources"
    LOGS = "logs"
    LOAD = "load"
    FULL = "full"


@dataclass(frozen=True)
class EnvironmentConfig:
    """Immutable per-environment settings, built once and passed everywhere."""

    environment: str
    target_server: str
    control_user: str
    slot_name: str
    production_port: int
    container_port: int
    image_repository: str = ""
    app_root: str = ""
    backup_dir: str = ""
    state_dir: str = ""
    reports_dir: str = "/tmp"
    env_file: str = ""
    container_engine: str = "podman"
    health_path: str = "/health"
    metrics_path: str = "/metrics"
    probe_host: str = ""

    def __post_init__(self):
        # Derived defaults; object.__setattr__ because the dataclass is frozen.
        if not self.image_repository:
            object.__setattr__(self, "image_repository", self.slot_name)
        if not self.app_root:
            object.__setattr__(self, "app_root", f"/opt/{self.slot_name}")
        if not self.backup_dir:
            object.__setattr__(self, "backup_dir", f"/opt/backups/{self.slot_name}")
        if not self.state_dir:
            object.__setattr__(self, "state_dir", f"{self.backup_dir}/state")
        if not self.probe_host:
            object.__setattr__(self, "probe_host", self.target_server)

    @property
    def data_path(self) -> str:
        return f"{self.app_root}/data"

    @property
    def logs_path(self) -> str:
        return f"{self.app_root}/logs"

    @property
    def configs_path(self) -> str:
        return f"{self.app_root}/configs"

    @property
    def remote_env_file(self) -> str:
        return f"{self.configs_path}/{self.environment}.env"

    def container_name(self, color: SlotColor) -> str:
        return f"{self.slot_name}-{color.value}"

    def owns_image(self, image: str) -> bool:
        """Whether ``image`` belongs to this service's repository.

        The tag and digest are ignored. A registry prefix is allowed only as
        whole path components, so ``app`` matches ``registry/app:v1`` but
        not ``registry/myapp:v1``.
        """
        name = image.split("@", 1)[0]
        if ":" in name.rsplit("/", 1)[-1]:
            name = name.rsplit(":", 1)[0]
        repository = self.image_repository.rstrip("/")
        return name == repository or name.endswith("/" + repository)


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded polling policy.

    ``deadline`` optionally caps total waiting in seconds; the hard upper
    bound is always ``max_attempts * interval``.
    """

    max_attempts: int = 10
    interval: float = 5.0
    deadline: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")

    @property
    def max_wait_seconds(self) -> float:
        bound = self.max_attempts * self.interval
        if self.deadline is not None:
            return min(bound, self.deadline)
        return bound


@dataclass
class DeploymentConfig:
    """Timing and port knobs for deployment and rollback."""

    temp_port_offset: int = 1000
    grace_period_seconds: float = 60.0
    container_policy: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(max_attempts=30, interval=10.0)
    )
    http_policy: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(max_attempts=10, interval=5.0)
    )
    request_timeout_seconds: float = 10.0
    max_response_time_ms: float = 5000.0
    lease_ttl_seconds: float = 1800.0
    container_data_path: str = "/app/data"
    container_logs_path: str = "/app/logs"
    restart_policy: str = "unless-stopped"
