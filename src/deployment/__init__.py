"""Blue/Green Slot Deployment & Rollback."""

from .config import (
    SlotColor,
    RuntimeHealth,
    DeploymentState,
    RollbackMode,
    RollbackTier,
    HealthCheckMode,
    EnvironmentConfig,
    BackoffPolicy,
    DeploymentConfig,
)
from .exceptions import (
    DeploymentError,
    ConfigError,
    ConnectivityError,
    RuntimeCommandError,
    StateError,
    HealthTimeoutError,
    IntegrityError,
    LeaseError,
    RollbackExhaustedError,
)
from .runtime import (
    ContainerSpec,
    ContainerInfo,
    ContainerStats,
    ContainerRuntime,
    RemoteContainerRuntime,
)
from .slots import SlotResolver
from .health import HealthCheckResult, HealthProbe
from .lease import Lease, DeploymentLease
from .state import LastKnownGood, LastKnownGoodStore
from .incident import IncidentSnapshot, IncidentReporter
from .orchestrator import Deployment, DeploymentOrchestrator
from .rollback import RollbackResult, RollbackOptions, RollbackCoordinator
from .monitor import CheckOutcome, HealthReport, HealthMonitor

__all__ = [
    # Config
    "SlotColor",
    "RuntimeHealth",
    "DeploymentState",
    "RollbackMode",
    "RollbackTier",
    "HealthCheckMode",
    "EnvironmentConfig",
    "BackoffPolicy",
    "DeploymentConfig",
    # Errors
    "DeploymentError",
    "ConfigError",
    "ConnectivityError",
    "RuntimeCommandError",
    "StateError",
    "HealthTimeoutError",
    "IntegrityError",
    "LeaseError",
    "RollbackExhaustedError",
    # Runtime
    "ContainerSpec",
    "ContainerInfo",
    "ContainerStats",
    "ContainerRuntime",
    "RemoteContainerRuntime",
    # Slots & health
    "SlotResolver",
    "HealthCheckResult",
    "HealthProbe",
    # Persistence
    "Lease",
    "DeploymentLease",
    "LastKnownGood",
    "LastKnownGoodStore",
    # Incidents
    "IncidentSnapshot",
    "IncidentReporter",
    # Orchestrator
    "Deployment",
    "DeploymentOrchestrator",
    # Rollback
    "RollbackResult",
    "RollbackOptions",
    "RollbackCoordinator",
    # Monitoring
    "CheckOutcome",
    "HealthReport",
    "HealthMonitor",
]
