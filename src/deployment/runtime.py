"""Container Runtime Control Surface.

``ContainerRuntime`` is the client interface the orchestration layer talks
to. ``RemoteContainerRuntime`` drives the podman (or docker) CLI on the
target host over ssh, or directly when the target is the local machine.
Every call is a single blocking command; a mutation that has been issued
runs to completion on the host.
"""

import json
import logging
import shlex
import shutil
import subprocess
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .config import EnvironmentConfig
from .exceptions import ConnectivityError, RuntimeCommandError

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")
SSH_UNREACHABLE = 255


@dataclass
class ContainerSpec:
    """Everything needed to start one slot container."""

    name: str
    image: str
    host_port: int
    container_port: int
    volumes: List[str] = field(default_factory=list)
    env_file: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    restart_policy: str = "unless-stopped"


@dataclass
class ContainerInfo:
    """Inspected state of one container."""

    name: str
    image: str = ""
    status: str = ""
    running: bool = False
    health: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    ports: Dict[int, int] = field(default_factory=dict)
    created_at: str = ""

    @property
    def version(self) -> str:
        return self.labels.get("version", "")

    def bound_to(self, host_port: int) -> bool:
        return host_port in self.ports


@dataclass
class ContainerStats:
    """Point-in-time resource usage of one container."""

    name: str
    cpu_percent: float = 0.0
    mem_percent: float = 0.0
    mem_usage: str = ""


class ContainerRuntime(ABC):
    """Operations the deployment core needs from the container runtime."""

    @abstractmethod
    def list_containers(self, include_stopped: bool = False) -> List[ContainerInfo]:
        """List containers, running only unless ``include_stopped``."""

    @abstractmethod
    def inspect(self, name: str) -> Optional[ContainerInfo]:
        """Inspect a container by name; None when it does not exist."""

    @abstractmethod
    def run(self, spec: ContainerSpec) -> str:
        """Start a detached container and return its id."""

    @abstractmethod
    def stop(self, name: str) -> bool:
        """Stop a container; False when there was nothing to stop."""

    @abstractmethod
    def remove(self, name: str) -> bool:
        """Remove a container; False when there was nothing to remove."""

    @abstractmethod
    def exec(self, name: str, command: Sequence[str]) -> str:
        """Run a command inside a running container and return stdout."""

    @abstractmethod
    def copy_from(self, name: str, source: str, destination: str) -> None:
        """Copy a file out of a container to a local path."""

    @abstractmethod
    def put_file(self, source: str, destination: str) -> None:
        """Upload a local file to a path on the target host."""

    @abstractmethod
    def pull(self, image: str) -> None:
        """Fetch an image from its registry."""

    @abstractmethod
    def image_exists(self, image: str) -> bool:
        """Whether the image is present on the host."""

    @abstractmethod
    def list_images(self) -> List[str]:
        """``repository:tag`` references on the host, newest first."""

    @abstractmethod
    def save_images(self, images: Sequence[str], destination: str) -> None:
        """Write an uncompressed image archive to a local path."""

    @abstractmethod
    def stats(self) -> List[ContainerStats]:
        """Resource usage of running containers."""

    @abstractmethod
    def logs(self, name: str, tail: int = 50) -> str:
        """Recent combined stdout/stderr of a container."""

    @abstractmethod
    def host_exec(self, command: str, check: bool = True) -> str:
        """Run a shell command on the host and return stdout."""

    @abstractmethod
    def archive_container_paths(
        self, name: str, base: str, members: Sequence[str], destination: str
    ) -> None:
        """Create a tar.gz of ``members`` under ``base`` inside a container."""

    @abstractmethod
    def archive_host_paths(
        self,
        base: str,
        members: Sequence[str],
        destination: str,
        excludes: Sequence[str] = (),
    ) -> None:
        """Create a tar.gz of ``members`` under ``base`` on the host."""

    @abstractmethod
    def dump_from_container(self, name: str, shell_command: str, destination: str) -> None:
        """Run a dump pipeline in a container and gzip its output locally."""

    @abstractmethod
    def extract_to_host(self, archive: str, target_dir: str, member_prefix: str) -> None:
        """Replace ``target_dir`` with the ``member_prefix`` tree of an archive."""


class RemoteContainerRuntime(ContainerRuntime):
    """podman/docker CLI over ssh (or local when the target is this host)."""

    def __init__(
        self,
        config: EnvironmentConfig,
        command_timeout: float = 600.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.config = config
        self.engine = config.container_engine
        self.command_timeout = command_timeout
        self._runner = runner

    @property
    def is_local(self) -> bool:
        return self.config.target_server in LOCAL_HOSTS

    @property
    def remote(self) -> str:
        return f"{self.config.control_user}@{self.config.target_server}"

    # ── Containers ───────────────────────────────────────────────────

    def list_containers(self, include_stopped: bool = False) -> List[ContainerInfo]:
        args = [self.engine, "ps", "--format", "{{.Names}}"]
        if include_stopped:
            args.insert(2, "-a")
        output = self._run(args).stdout
        containers = []
        for name in output.splitlines():
            name = name.strip()
            if not name:
                continue
            info = self.inspect(name)
            if info is not None:
                containers.append(info)
        return containers

    def inspect(self, name: str) -> Optional[ContainerInfo]:
        result = self._run(
            [self.engine, "inspect", "--type", "container", "--format", "{{json .}}", name],
            check=False,
        )
        if result.returncode != 0 or not result.stdout.strip():
            return None
        data = json.loads(result.stdout.strip().splitlines()[0])
        if isinstance(data, list):
            data = data[0] if data else {}
        return parse_inspect(data, fallback_name=name)

    def run(self, spec: ContainerSpec) -> str:
        args = [
            self.engine, "run", "-d",
            "--name", spec.name,
            "--restart", spec.restart_policy,
            "-p", f"{spec.host_port}:{spec.container_port}",
        ]
        for volume in spec.volumes:
            args += ["-v", volume]
        if spec.env_file:
            args += ["--env-file", spec.env_file]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        args.append(spec.image)
        container_id = self._run(args).stdout.strip()
        logger.info(
            "Started container %s from %s on port %d", spec.name, spec.image, spec.host_port
        )
        return container_id

    def stop(self, name: str) -> bool:
        if self.inspect(name) is None:
            return False
        self._run([self.engine, "stop", name])
        return True

    def remove(self, name: str) -> bool:
        if self.inspect(name) is None:
            return False
        self._run([self.engine, "rm", "-f", name])
        return True

    def exec(self, name: str, command: Sequence[str]) -> str:
        return self._run([self.engine, "exec", name, *command]).stdout

    def copy_from(self, name: str, source: str, destination: str) -> None:
        if self.is_local:
            self._run([self.engine, "cp", f"{name}:{source}", destination])
            return
        staging = self._staging_path()
        self._run([self.engine, "cp", f"{name}:{source}", staging])
        try:
            self._fetch(staging, destination)
        finally:
            self._run(["rm", "-f", staging], check=False)

    def put_file(self, source: str, destination: str) -> None:
        if self.is_local:
            shutil.copyfile(source, destination)
            return
        self._local(["scp", "-q", source, f"{self.remote}:{destination}"])

    # ── Images ───────────────────────────────────────────────────────

    def pull(self, image: str) -> None:
        self._run([self.engine, "pull", image])

    def image_exists(self, image: str) -> bool:
        return self._run([self.engine, "image", "inspect", image], check=False).returncode == 0

    def list_images(self) -> List[str]:
        output = self._run(
            [self.engine, "images", "--format", "{{.Repository}}:{{.Tag}}"]
        ).stdout
        return [
            line.strip()
            for line in output.splitlines()
            if line.strip() and "<none>" not in line
        ]

    def save_images(self, images: Sequence[str], destination: str) -> None:
        if self.is_local:
            self._run([self.engine, "save", "-o", destination, *images])
            return
        staging = self._staging_path(".tar")
        self._run([self.engine, "save", "-o", staging, *images])
        try:
            self._fetch(staging, destination)
        finally:
            self._run(["rm", "-f", staging], check=False)

    # ── Observability ────────────────────────────────────────────────

    def stats(self) -> List[ContainerStats]:
        output = self._run(
            [self.engine, "stats", "--no-stream", "--format", "{{json .}}"], check=False
        ).stdout
        results = []
        for line in output.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            results.append(parse_stats(json.loads(line)))
        return results

    def logs(self, name: str, tail: int = 50) -> str:
        result = self._run([self.engine, "logs", "--tail", str(tail), name], check=False)
        return (result.stdout or "") + (result.stderr or "")

    def host_exec(self, command: str, check: bool = True) -> str:
        if self.is_local:
            args = ["sh", "-c", command]
        else:
            args = ["ssh", "-o", "BatchMode=yes", self.remote, command]
        return self._execute(args, check=check).stdout

    # ── Archives ─────────────────────────────────────────────────────

    def archive_container_paths(
        self, name: str, base: str, members: Sequence[str], destination: str
    ) -> None:
        staging = f"/tmp/slotswitch-archive-{uuid.uuid4().hex[:8]}.tar.gz"
        self.exec(name, ["tar", "-czf", staging, "-C", base, *members])
        try:
            self.copy_from(name, staging, destination)
        finally:
            self._run([self.engine, "exec", name, "rm", "-f", staging], check=False)

    def archive_host_paths(
        self,
        base: str,
        members: Sequence[str],
        destination: str,
        excludes: Sequence[str] = (),
    ) -> None:
        staging = destination if self.is_local else self._staging_path(".tar.gz")
        exclude_args = " ".join(f"--exclude={shlex.quote(e)}" for e in excludes)
        self.host_exec(
            f"cd {shlex.quote(base)} && tar -czf {shlex.quote(staging)} "
            f"{exclude_args} {' '.join(shlex.quote(m) for m in members)}"
        )
        if not self.is_local:
            try:
                self._fetch(staging, destination)
            finally:
                self.host_exec(f"rm -f {shlex.quote(staging)}", check=False)

    def dump_from_container(self, name: str, shell_command: str, destination: str) -> None:
        staging = f"/tmp/slotswitch-dump-{uuid.uuid4().hex[:8]}.gz"
        self.exec(name, ["sh", "-c", f"{shell_command} | gzip > {staging}"])
        try:
            self.copy_from(name, staging, destination)
        finally:
            self._run([self.engine, "exec", name, "rm", "-f", staging], check=False)

    def extract_to_host(self, archive: str, target_dir: str, member_prefix: str) -> None:
        staging = archive
        if not self.is_local:
            staging = self._staging_path(".tar.gz")
            self.put_file(archive, staging)
        target = shlex.quote(target_dir)
        self.host_exec(
            f"mkdir -p {target} && find {target} -mindepth 1 -delete && "
            f"tar -xzf {shlex.quote(staging)} -C {target} --strip-components=1 "
            f"{shlex.quote(member_prefix)}"
        )
        if not self.is_local:
            self.host_exec(f"rm -f {shlex.quote(staging)}", check=False)

    # ── Internal helpers ─────────────────────────────────────────────

    def _staging_path(self, suffix: str = "") -> str:
        return f"/tmp/slotswitch-{uuid.uuid4().hex[:12]}{suffix}"

    def _fetch(self, remote_path: str, destination: str) -> None:
        self._local(["scp", "-q", f"{self.remote}:{remote_path}", destination])

    def _run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        if self.is_local:
            return self._execute(args, check=check)
        wrapped = ["ssh", "-o", "BatchMode=yes", self.remote, shlex.join(args)]
        return self._execute(wrapped, check=check)

    def _local(self, args: List[str]) -> subprocess.CompletedProcess:
        return self._execute(args, check=True)

    def _execute(self, args: List[str], check: bool) -> subprocess.CompletedProcess:
        command = shlex.join(args)
        logger.debug("$ %s", command)
        try:
            result = self._runner(
                args, capture_output=True, text=True, timeout=self.command_timeout
            )
        except FileNotFoundError as exc:
            raise ConnectivityError(f"Command not available: {args[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ConnectivityError(
                f"Command timed out after {self.command_timeout:.0f}s: {command}"
            ) from exc

        if not self.is_local and args[0] in ("ssh", "scp") and result.returncode == SSH_UNREACHABLE:
            raise ConnectivityError(
                f"Control channel to {self.config.target_server} unreachable",
                {"stderr": (result.stderr or "").strip()},
            )
        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.error("Command failed (rc=%d): %s", result.returncode, stderr)
            raise RuntimeCommandError(
                f"Command failed: {command}",
                command=command,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result


def parse_inspect(data: dict, fallback_name: str = "") -> ContainerInfo:
    """Build a ContainerInfo from ``inspect --format '{{json .}}'`` output."""
    config = data.get("Config") or {}
    state = data.get("State") or {}
    health = state.get("Health") or state.get("Healthcheck") or {}
    bindings = (data.get("HostConfig") or {}).get("PortBindings") or {}

    ports: Dict[int, int] = {}
    for container_port, hosts in bindings.items():
        for host in hosts or []:
            host_port = host.get("HostPort")
            if host_port:
                ports[int(host_port)] = int(str(container_port).split("/")[0])

    return ContainerInfo(
        name=(data.get("Name") or fallback_name).lstrip("/"),
        image=config.get("Image", "") or data.get("ImageName", ""),
        status=state.get("Status", ""),
        running=bool(state.get("Running", False)),
        health=health.get("Status", "") if isinstance(health, dict) else "",
        labels=dict(config.get("Labels") or {}),
        ports=ports,
        created_at=data.get("Created", ""),
    )


def parse_stats(data: dict) -> ContainerStats:
    """Build ContainerStats from one ``stats --format '{{json .}}'`` line."""

    def _percent(*keys: str) -> float:
        for key in keys:
            value = data.get(key)
            if value in (None, "", "--"):
                continue
            try:
                return float(str(value).rstrip("%"))
            except ValueError:
                continue
        return 0.0

    return ContainerStats(
        name=data.get("Name") or data.get("name", ""),
        cpu_percent=_percent("CPUPerc", "CPU", "cpu_percent"),
        mem_percent=_percent("MemPerc", "mem_percent"),
        mem_usage=data.get("MemUsage") or data.get("mem_usage", ""),
    )
