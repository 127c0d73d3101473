"""Tests for the CLI-driven container runtime."""

import dataclasses
import json
import subprocess

import pytest

from src.deployment.exceptions import ConnectivityError, RuntimeCommandError
from src.deployment.runtime import (
    ContainerSpec,
    RemoteContainerRuntime,
    parse_inspect,
    parse_stats,
)

INSPECT = {
    "Name": "/app-blue",
    "Created": "2026-01-01T00:00:00Z",
    "Config": {
        "Image": "registry.example.com/app:v1",
        "Labels": {"version": "registry.example.com/app:v1", "environment": "production"},
    },
    "State": {"Status": "running", "Running": True, "Health": {"Status": "healthy"}},
    "HostConfig": {"PortBindings": {"8000/tcp": [{"HostIp": "", "HostPort": "8080"}]}},
}


class FakeRunner:
    """Stands in for ``subprocess.run``; answers by matching a command fragment."""

    def __init__(self):
        self.commands = []
        self.responses = []
        self.raises = None

    def respond(self, fragment, stdout="", returncode=0, stderr=""):
        self.responses.append((fragment, stdout, returncode, stderr))

    def __call__(self, args, **kwargs):
        self.commands.append(list(args))
        if self.raises is not None:
            raise self.raises
        joined = " ".join(args)
        for fragment, stdout, returncode, stderr in self.responses:
            if fragment in joined:
                return subprocess.CompletedProcess(args, returncode, stdout, stderr)
        return subprocess.CompletedProcess(args, 0, "", "")


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def remote(env_config, runner):
    return RemoteContainerRuntime(env_config, command_timeout=30, runner=runner)


@pytest.fixture
def local(env_config, runner):
    config = dataclasses.replace(env_config, target_server="localhost")
    return RemoteContainerRuntime(config, runner=runner)


# ── Command transport ────────────────────────────────────────────────


class TestCommandTransport:
    def test_remote_commands_wrapped_in_ssh(self, remote, runner):
        remote.pull("registry.example.com/app:v2")
        assert runner.commands[0] == [
            "ssh", "-o", "BatchMode=yes", "deploy@prod.example.com",
            "podman pull registry.example.com/app:v2",
        ]

    def test_local_commands_run_directly(self, local, runner):
        local.pull("registry.example.com/app:v2")
        assert runner.commands[0] == ["podman", "pull", "registry.example.com/app:v2"]

    def test_arguments_are_quoted(self, remote, runner):
        remote.exec("app-blue", ["sh", "-c", "echo hello world"])
        assert runner.commands[0][-1] == "podman exec app-blue sh -c 'echo hello world'"

    def test_unreachable_host(self, remote, runner):
        runner.respond("pull", returncode=255, stderr="Connection refused")
        with pytest.raises(ConnectivityError) as excinfo:
            remote.pull("registry.example.com/app:v2")
        assert excinfo.value.details["stderr"] == "Connection refused"

    def test_missing_binary(self, remote, runner):
        runner.raises = FileNotFoundError("ssh")
        with pytest.raises(ConnectivityError, match="not available"):
            remote.pull("registry.example.com/app:v2")

    def test_timeout(self, remote, runner):
        runner.raises = subprocess.TimeoutExpired(["ssh"], 30)
        with pytest.raises(ConnectivityError, match="timed out"):
            remote.image_exists("registry.example.com/app:v2")

    def test_non_zero_exit(self, remote, runner):
        runner.respond("pull", returncode=125, stderr="manifest unknown")
        with pytest.raises(RuntimeCommandError) as excinfo:
            remote.pull("registry.example.com/app:v9")
        assert excinfo.value.returncode == 125
        assert excinfo.value.stderr == "manifest unknown"

    def test_unchecked_failure_returns_output(self, remote, runner):
        runner.respond("df -P", stdout="", returncode=1)
        assert remote.host_exec("df -P /", check=False) == ""

    def test_host_exec_passes_command_verbatim(self, remote, runner):
        remote.host_exec("mkdir -p /opt/app/data /opt/app/logs")
        assert runner.commands[0][-1] == "mkdir -p /opt/app/data /opt/app/logs"


# ── Containers ───────────────────────────────────────────────────────


class TestContainerCommands:
    def test_run_arguments(self, local, runner):
        runner.respond(" run ", stdout="abc123\n")
        spec = ContainerSpec(
            name="app-green",
            image="registry.example.com/app:v2",
            host_port=9080,
            container_port=8000,
            volumes=["/opt/app/data:/app/data:Z"],
            env_file="/opt/app/configs/production.env",
            labels={"version": "registry.example.com/app:v2"},
        )
        assert local.run(spec) == "abc123"
        assert runner.commands[0] == [
            "podman", "run", "-d",
            "--name", "app-green",
            "--restart", "unless-stopped",
            "-p", "9080:8000",
            "-v", "/opt/app/data:/app/data:Z",
            "--env-file", "/opt/app/configs/production.env",
            "--label", "version=registry.example.com/app:v2",
            "registry.example.com/app:v2",
        ]

    def test_inspect(self, local, runner):
        runner.respond("inspect", stdout=json.dumps(INSPECT))
        info = local.inspect("app-blue")
        assert info.name == "app-blue"
        assert info.running
        assert info.health == "healthy"
        assert info.bound_to(8080)
        assert info.version == "registry.example.com/app:v1"

    def test_inspect_missing(self, local, runner):
        runner.respond("inspect", returncode=125, stderr="no such container")
        assert local.inspect("app-green") is None

    def test_stop_missing_is_noop(self, local, runner):
        runner.respond("inspect", returncode=125)
        assert local.stop("app-green") is False
        assert not any("stop" in cmd for cmd in runner.commands)

    def test_remove_forces(self, local, runner):
        runner.respond("inspect", stdout=json.dumps(INSPECT))
        assert local.remove("app-blue") is True
        assert runner.commands[-1] == ["podman", "rm", "-f", "app-blue"]

    def test_list_containers(self, local, runner):
        runner.respond("ps", stdout="app-blue\n\n")
        runner.respond("inspect", stdout=json.dumps(INSPECT))
        containers = local.list_containers(include_stopped=True)
        assert [c.name for c in containers] == ["app-blue"]
        assert runner.commands[0][:3] == ["podman", "ps", "-a"]

    def test_list_images_skips_dangling(self, local, runner):
        runner.respond("images", stdout="registry.example.com/app:v2\n<none>:<none>\napp:v1\n")
        assert local.list_images() == ["registry.example.com/app:v2", "app:v1"]

    def test_image_exists(self, local, runner):
        runner.respond("image inspect", returncode=1)
        assert local.image_exists("registry.example.com/app:v9") is False

    def test_docker_engine(self, env_config, runner):
        config = dataclasses.replace(env_config, target_server="127.0.0.1", container_engine="docker")
        RemoteContainerRuntime(config, runner=runner).pull("app:v1")
        assert runner.commands[0][0] == "docker"


# ── Parsing ──────────────────────────────────────────────────────────


class TestParsing:
    def test_parse_inspect_without_health(self):
        data = {"Name": "app-green", "Config": {"Image": "app:v2"}, "State": {"Running": False}}
        info = parse_inspect(data)
        assert info.health == ""
        assert info.ports == {}
        assert not info.running

    def test_parse_inspect_fallback_name(self):
        assert parse_inspect({}, fallback_name="app-blue").name == "app-blue"

    def test_parse_stats(self):
        stats = parse_stats({"Name": "app-blue", "CPUPerc": "12.5%", "MemPerc": "40.00%",
                             "MemUsage": "200MiB / 1GiB"})
        assert stats.cpu_percent == 12.5
        assert stats.mem_percent == 40.0
        assert stats.mem_usage == "200MiB / 1GiB"

    def test_parse_stats_placeholder_values(self):
        stats = parse_stats({"Name": "app-blue", "CPUPerc": "--", "CPU": "3.2"})
        assert stats.cpu_percent == 3.2
        assert stats.mem_percent == 0.0

    def test_stats_command(self, local, runner):
        runner.respond("stats", stdout='{"Name": "app-blue", "CPUPerc": "1%"}\nnot json\n')
        assert [s.name for s in local.stats()] == ["app-blue"]
