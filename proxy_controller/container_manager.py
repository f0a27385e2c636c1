"""
Container manager for Docker-based runners.

This module provides an abstraction over Docker CLI operations for managing
the proxy fleet containers, their keystore volumes and the bridge network
they are attached to. Every call shells out to the `docker` binary without
blocking the event loop.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

_FRACTION_RE = re.compile(r"\.(\d{6})\d*")


class DockerCommandError(RuntimeError):
    """
    A docker CLI invocation exited with a non-zero status.

    Attributes:
        command: Arguments passed to docker
        returncode: Exit status of the process
        stderr: Decoded error output (Docker daemon messages end up here)
        stdout: Decoded standard output printed before the failure
    """

    def __init__(self, command: list[str], returncode: int, stderr: str, stdout: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        self.stdout = stdout
        super().__init__(f"docker {' '.join(command[:2])} failed: {self.stderr}")


@dataclass
class ContainerInfo:
    """
    Information about a Docker container.

    Represents the current state of a container from Docker's perspective.
    """

    container_id: str
    name: str
    status: str  # "created", "running", "exited", "paused", "restarting", "removing", "dead"
    labels: dict[str, str] = field(default_factory=dict)
    networks: dict[str, str] = field(default_factory=dict)  # network name -> IPv4
    network_mode: str | None = None
    mounts: list[tuple[str, str]] = field(default_factory=list)  # (source, destination)
    created_at: datetime | None = None
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class NetworkInfo:
    """Addressing information of a Docker network."""

    name: str
    subnet: str
    gateway: str | None
    container_addresses: list[str] = field(default_factory=list)


@dataclass
class ContainerSpec:
    """
    Everything needed to `docker create` one container.

    `network` is either a network name or "container:<id>" to share another
    container's network namespace.
    """

    image: str
    name: str
    command: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    network: str | None = None
    ipv4_address: str | None = None
    binds: list[str] = field(default_factory=list)
    published_ports: dict[int, int] = field(default_factory=dict)  # host -> container
    restart_policy: str | None = "always"
    cap_add: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)
    log_options: dict[str, str] = field(default_factory=dict)

    def to_args(self) -> list[str]:
        """Render the spec as `docker create` arguments."""
        args = ["create", "--name", self.name]
        for key, value in self.labels.items():
            args += ["--label", f"{key}={value}"]
        for key, value in self.env.items():
            args += ["--env", f"{key}={value}"]
        if self.network:
            args += ["--network", self.network]
        if self.ipv4_address:
            args += ["--ip", self.ipv4_address]
        for bind in self.binds:
            args += ["-v", bind]
        for host_port, container_port in self.published_ports.items():
            args += ["-p", f"{host_port}:{container_port}/tcp"]
        if self.restart_policy:
            args += ["--restart", self.restart_policy]
        for cap in self.cap_add:
            args += ["--cap-add", cap]
        for device in self.devices:
            args += ["--device", device]
        if self.log_options:
            args += ["--log-driver", "json-file"]
            for key, value in self.log_options.items():
                args += ["--log-opt", f"{key}={value}"]
        args.append(self.image)
        args += self.command
        return args


def _parse_timestamp(value: str | None) -> datetime | None:
    """Parse a Docker RFC3339 timestamp (nanosecond precision) to datetime."""
    if not value:
        return None
    try:
        text = _FRACTION_RE.sub(r".\1", value.replace("Z", "+00:00"))
        return datetime.fromisoformat(text)
    except (ValueError, AttributeError):
        return None


def _only_missing(stderr: str) -> bool:
    lines = [line for line in stderr.splitlines() if line.strip()]
    return bool(lines) and all(
        "No such object" in line or "No such container" in line for line in lines
    )


def _parse_container(data: dict[str, Any]) -> ContainerInfo:
    state = data.get("State") or {}
    config = data.get("Config") or {}
    host_config = data.get("HostConfig") or {}
    networks = (data.get("NetworkSettings") or {}).get("Networks") or {}

    return ContainerInfo(
        container_id=data["Id"],
        name=data["Name"].lstrip("/"),
        status=state.get("Status", "").lower(),
        labels=config.get("Labels") or {},
        networks={
            name: settings.get("IPAddress", "")
            for name, settings in networks.items()
        },
        network_mode=host_config.get("NetworkMode"),
        mounts=[(m.get("Source", ""), m.get("Destination", "")) for m in data.get("Mounts") or []],
        created_at=_parse_timestamp(data.get("Created")),
        exit_code=state.get("ExitCode"),
        started_at=_parse_timestamp(state.get("StartedAt")),
        finished_at=_parse_timestamp(state.get("FinishedAt")),
    )


class ContainerManager:
    """
    Manages Docker containers, volumes and networks for the proxy fleet.

    This class provides the high-level operations the runner creators and the
    runner repository need: listing by label, create/start/remove, keystore
    volume management and network inspection.
    """

    def __init__(self, docker_binary: str = "docker"):
        """
        Initialize the container manager.

        Args:
            docker_binary: Path or name of the docker CLI executable
        """
        self.docker_binary = docker_binary

    async def _run(self, *args: str) -> str:
        """
        Run a docker command and return its standard output.

        Raises:
            DockerCommandError: If the command exits with a non-zero status
        """
        process = await asyncio.create_subprocess_exec(
            self.docker_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise DockerCommandError(
                list(args), process.returncode, stderr.decode(), stdout.decode()
            )

        return stdout.decode()

    async def create_container(self, spec: ContainerSpec) -> str:
        """
        Create a Docker container (but don't start it).

        Args:
            spec: Container description

        Returns:
            The new container id

        Raises:
            DockerCommandError: If container creation fails
        """
        stdout = await self._run(*spec.to_args())
        return stdout.strip()

    async def start_container(self, container_id: str) -> None:
        """
        Start a created container.

        Args:
            container_id: Docker container ID or name

        Raises:
            DockerCommandError: If container start fails
        """
        await self._run("start", container_id)

    async def remove_container(
        self, container_id: str, force: bool = False, volumes: bool = False
    ) -> None:
        """
        Remove a container.

        Args:
            container_id: Docker container ID or name
            force: If True, force removal even if running
            volumes: If True, also remove anonymous volumes

        Raises:
            DockerCommandError: If removal fails
        """
        args = ["rm"]
        if force:
            args.append("--force")
        if volumes:
            args.append("--volumes")
        args.append(container_id)

        try:
            await self._run(*args)
        except DockerCommandError as e:
            # Ignore "already removed" errors
            if "No such container" not in e.stderr:
                raise

    async def inspect_containers(self, container_ids: list[str]) -> list[ContainerInfo]:
        """
        Inspect several containers in one docker call.

        Containers removed since their ids were obtained are left out of the
        result.

        Raises:
            DockerCommandError: If inspection fails for another reason
            RuntimeError: If the output cannot be parsed
        """
        if not container_ids:
            return []

        try:
            stdout = await self._run("inspect", "--type", "container", *container_ids)
        except DockerCommandError as e:
            # docker still prints the containers that exist
            if not _only_missing(e.stderr):
                raise
            logger.debug(f"Skipping vanished containers: {e.stderr}")
            stdout = e.stdout

        if not stdout.strip():
            return []
        try:
            return [_parse_container(item) for item in json.loads(stdout)]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise RuntimeError(f"Failed to parse container info: {e}") from e

    async def list_containers(
        self,
        labels: list[str] | None = None,
        status: list[str] | None = None,
        name: str | None = None,
        ids: list[str] | None = None,
        all: bool = True,
    ) -> list[ContainerInfo]:
        """
        List containers matching Docker filters.

        Filters of the same kind on labels are AND-ed by Docker.

        Args:
            labels: Label expressions ("key" or "key=value")
            status: Container states to keep ("created", "running", ...)
            name: Exact container name
            ids: Container ids
            all: Include stopped containers

        Returns:
            List of ContainerInfo objects
        """
        args = ["ps", "--quiet", "--no-trunc"]
        if all:
            args.append("--all")
        for label in labels or []:
            args += ["--filter", f"label={label}"]
        for state in status or []:
            args += ["--filter", f"status={state}"]
        if name:
            args += ["--filter", f"name=^/{re.escape(name)}$"]
        for container_id in ids or []:
            args += ["--filter", f"id={container_id}"]

        stdout = await self._run(*args)
        container_ids = [line for line in stdout.strip().split("\n") if line]
        logger.debug(f"docker ps {args[1:]} matched {len(container_ids)} containers")

        return await self.inspect_containers(container_ids)

    async def volume_exists(self, name: str) -> bool:
        """
        Check whether a named volume exists.

        Raises:
            DockerCommandError: If docker fails for another reason
        """
        try:
            await self._run("volume", "inspect", name)
            return True
        except DockerCommandError as e:
            if "no such volume" in e.stderr.lower():
                return False
            raise

    async def create_volume(
        self,
        name: str,
        driver_opts: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Create a local volume.

        Raises:
            DockerCommandError: If volume creation fails
        """
        args = ["volume", "create", "--driver", "local"]
        for key, value in (driver_opts or {}).items():
            args += ["--opt", f"{key}={value}"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        args.append(name)

        await self._run(*args)

    async def inspect_network(self, name: str) -> NetworkInfo:
        """
        Get the subnet, gateway and bound container addresses of a network.

        Raises:
            DockerCommandError: If the network cannot be inspected
            RuntimeError: If the network has no IPv4 IPAM configuration
        """
        stdout = await self._run("network", "inspect", name)
        try:
            data = json.loads(stdout)[0]
            ipam_config = data["IPAM"]["Config"][0]
            containers = data.get("Containers") or {}
            return NetworkInfo(
                name=name,
                subnet=ipam_config["Subnet"],
                gateway=ipam_config.get("Gateway"),
                container_addresses=[
                    c["IPv4Address"].split("/")[0]
                    for c in containers.values()
                    if c.get("IPv4Address")
                ],
            )
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise RuntimeError(f"Failed to parse network info for {name!r}: {e}") from e
