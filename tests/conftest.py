"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import httpx
import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.backup.manager import BackupManager  # noqa: E402
from src.deployment.config import (  # noqa: E402
    BackoffPolicy,
    DeploymentConfig,
    EnvironmentConfig,
    SlotColor,
)
from src.deployment.health import HealthProbe  # noqa: E402
from src.deployment.incident import IncidentReporter  # noqa: E402
from src.deployment.lease import DeploymentLease  # noqa: E402
from src.deployment.state import LastKnownGoodStore  # noqa: E402
from src.testing.mocks import FakeClock, MockContainerRuntime  # noqa: E402

PRODUCTION_PORT = 8080
TEMP_PORT = 9080
V1 = "registry.example.com/app:v1"
V2 = "registry.example.com/app:v2"
V3 = "registry.example.com/app:v3"


@pytest.fixture
def env_config(tmp_path):
    return EnvironmentConfig(
        environment="production",
        target_server="prod.example.com",
        control_user="deploy",
        slot_name="app",
        production_port=PRODUCTION_PORT,
        container_port=8000,
        image_repository="registry.example.com/app",
        app_root="/opt/app",
        backup_dir=str(tmp_path / "backups"),
        state_dir=str(tmp_path / "state"),
        reports_dir=str(tmp_path / "reports"),
    )


@pytest.fixture
def deploy_config():
    return DeploymentConfig(
        container_policy=BackoffPolicy(max_attempts=5, interval=10.0),
        http_policy=BackoffPolicy(max_attempts=3, interval=5.0),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime(tmp_path):
    return MockContainerRuntime(host_root=str(tmp_path / "host"))


@pytest.fixture
def http_client(runtime):
    client = httpx.Client(transport=runtime.http_transport())
    yield client
    client.close()


@pytest.fixture
def probe(runtime, env_config, deploy_config, http_client, clock):
    return HealthProbe(runtime, env_config, deploy_config, http_client=http_client, clock=clock)


@pytest.fixture
def lkg_store(env_config, clock):
    return LastKnownGoodStore(env_config.state_dir, env_config.environment, clock)


@pytest.fixture
def lease(env_config, clock):
    return DeploymentLease(env_config.state_dir, env_config.environment, 1800.0, clock)


@pytest.fixture
def incidents(runtime, env_config, clock):
    return IncidentReporter(runtime, env_config, clock)


@pytest.fixture
def backups(runtime, env_config, deploy_config, clock):
    return BackupManager(runtime, env_config, deploy_config=deploy_config, clock=clock)


@pytest.fixture
def blue_serving_v1(runtime, env_config):
    """Blue runs v1 on the production port; v1 data lives on the host."""
    runtime.start_slot(env_config.container_name(SlotColor.BLUE), V1, PRODUCTION_PORT)
    data = runtime.host_path(env_config.data_path)
    data.mkdir(parents=True)
    (data / "app.db").write_text("v1-data")
    runtime.host_path(env_config.logs_path).mkdir(parents=True)
    return runtime
