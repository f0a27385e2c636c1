"""
Container creators for the proxy fleet.

A creator turns a Runner template into exactly one started container. All
creators share one bounded state machine:

    ATTEMPTING -> SUCCEEDED | CLEANUP | FAILED
    CLEANUP -> BACKOFF_WAIT | FAILED
    BACKOFF_WAIT -> ATTEMPTING

Docker itself is the only source of truth for allocated names, addresses and
ports. Concurrent creators are tolerated by classifying the daemon's error as
a collision and retrying with a fresh allocation, at most `max_attempts`
times.
"""

import asyncio
import dataclasses
import ipaddress
import logging
import os
import random
import re
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from proxy_common.exceptions import (
    AddressExhaustedException,
    CombineException,
    IncompleteInputException,
    NotRunningServiceException,
    PortInUseException,
    ProxyCoreError,
    RepositoryException,
    UnknownException,
)
from proxy_common.labels import (
    IdentityLabel,
    LabelParser,
    ProviderLabel,
    ProxyUpstreamLabel,
)
from proxy_common.models import (
    Runner,
    RunnerService,
    RunnerSocketType,
    RunnerStatus,
    RunnerVolumeName,
)
from proxy_common.repository import CreateRunnerRepository

from .container_manager import (
    ContainerInfo,
    ContainerManager,
    ContainerSpec,
    DockerCommandError,
    NetworkInfo,
)
from .options import (
    ConnectorContainerOptions,
    DockerOptions,
    IdentityContainerOptions,
    RelayContainerOptions,
)

# Never written to container labels
SECRET_FIELDS = ("passphrase",)

_COLLISION_MARKERS = (
    "address already in use",
    "is already in use by container",
    "port is already allocated",
)
_PORT_COLLISION_MARKER = "port is already allocated"

_LOG_OPTIONS = {"max-file": "2", "max-size": "1g"}
_LOCALTIME_BIND = "/etc/localtime:/etc/localtime:ro"


class CreateState(Enum):
    ATTEMPTING = "attempting"
    BACKOFF_WAIT = "backoff_wait"
    CLEANUP = "cleanup"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def is_retryable_collision(error: BaseException | None) -> bool:
    """
    Check whether a Docker failure is a collision with a concurrent creator.

    Address, name and host port collisions are retryable; everything else is
    terminal.
    """
    if not isinstance(error, DockerCommandError):
        return False
    message = error.stderr.lower()
    return any(marker in message for marker in _COLLISION_MARKERS)


def is_port_collision(error: BaseException | None) -> bool:
    return (
        isinstance(error, DockerCommandError)
        and _PORT_COLLISION_MARKER in error.stderr.lower()
    )


def next_free_address(network: NetworkInfo) -> str:
    """
    Pick the first unbound IPv4 host address of a network, in subnet order.

    The subnet address, the gateway and every address already bound to a
    container are reserved.

    Raises:
        AddressExhaustedException: If every usable address is reserved
    """
    subnet = ipaddress.ip_network(network.subnet, strict=False)
    reserved = {subnet.network_address}
    if network.gateway:
        reserved.add(ipaddress.ip_address(network.gateway))
    reserved.update(ipaddress.ip_address(a) for a in network.container_addresses)

    for address in subnet.hosts():
        if address not in reserved:
            return str(address)

    raise AddressExhaustedException(network.name)


def next_name_suffix(names: Iterable[str], prefix: str) -> int:
    """
    Smallest positive integer n such that "<prefix>-<n>" is not taken.

    Given existing suffixes {1, 2, 4} this returns 3.
    """
    pattern = re.compile(rf"^/?{re.escape(prefix)}-(\d+)$")
    used = set()
    for name in names:
        match = pattern.match(name)
        if match:
            used.add(int(match.group(1)))

    suffix = 1
    while suffix in used:
        suffix += 1
    return suffix


def next_free_port(used: Iterable[int], start: int) -> int:
    """Smallest port >= start that is not in `used`."""
    taken = set(used)
    port = start
    while port in taken:
        port += 1
    return port


@dataclass
class CreateContext:
    """Decoded input shared by every attempt of one create() call."""

    parser: LabelParser
    identity: IdentityLabel | None = None
    provider: ProviderLabel | None = None
    upstream: ProxyUpstreamLabel | None = None
    volume_name: str | None = None
    identity_node: ContainerInfo | None = None
    identity_address: str | None = None
    fixed_port: int | None = None
    failed_ports: set[int] = field(default_factory=set)


@dataclass
class Attempt:
    """Resources allocated by one attempt."""

    number: int
    runner_id: str
    name: str | None = None
    address: str | None = None
    port: int | None = None
    container_id: str | None = None


class RunnerCreator(CreateRunnerRepository):
    """
    Shared create/retry/cleanup machinery.

    Subclasses implement:
        _validate(): decode and check the label (no Docker calls)
        _prepare(): one-time preparation (volumes, dependency lookup)
        _prepare_attempt(): allocate per-attempt resources, return a ContainerSpec
        _build_runner(): the resulting Runner
    """

    max_attempts: int = 3

    def __init__(
        self,
        container_manager: ContainerManager,
        docker_options: DockerOptions | None = None,
        id_factory: Callable[[], str] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the creator.

        Args:
            container_manager: Docker operations
            docker_options: Label namespace and network settings
            id_factory: Generates the runner id stored in "<ns>.id"
            sleep: Backoff sleep (asyncio.sleep by default)
            logger: Logger to use (module logger by default)
        """
        self.container_manager = container_manager
        self.docker_options = docker_options or DockerOptions()
        self.namespace = self.docker_options.label_namespace
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._sleep = sleep or asyncio.sleep
        self._logger = logger or logging.getLogger(__name__)

    async def create(self, runner: Runner) -> Runner:
        parser = LabelParser(runner.label).parse()
        context = self._validate(parser, runner)

        try:
            await self._prepare(runner, context)
        except ProxyCoreError:
            raise
        except Exception as e:
            raise RepositoryException(e) from e

        return await self._create_with_retry(runner, context)

    async def _create_with_retry(self, runner: Runner, context: CreateContext) -> Runner:
        state = CreateState.ATTEMPTING
        attempt: Attempt | None = None
        error: BaseException | None = None
        cleanup_error: BaseException | None = None
        result: Runner | None = None
        number = 0

        while state not in (CreateState.SUCCEEDED, CreateState.FAILED):
            if state is CreateState.ATTEMPTING:
                number += 1
                attempt = Attempt(number=number, runner_id=self._id_factory())
                try:
                    await self._remove_stale_containers(context)
                    spec = await self._prepare_attempt(runner, context, attempt)
                    attempt.container_id = await self.container_manager.create_container(spec)
                    await self.container_manager.start_container(attempt.container_id)
                    result = self._build_runner(runner, context, attempt)
                    state = CreateState.SUCCEEDED
                except Exception as e:
                    error = e
                    if attempt.container_id or self._is_retryable(e, context):
                        state = CreateState.CLEANUP
                    else:
                        state = CreateState.FAILED

            elif state is CreateState.CLEANUP:
                if attempt.container_id:
                    try:
                        await self.container_manager.remove_container(
                            attempt.container_id, force=True, volumes=True
                        )
                    except Exception as e:
                        self._logger.error(
                            f"Failed to remove container {attempt.container_id[:12]}: {e}"
                        )
                        cleanup_error = e
                        state = CreateState.FAILED
                        continue

                if self._is_retryable(error, context) and number < self.max_attempts:
                    state = CreateState.BACKOFF_WAIT
                else:
                    state = CreateState.FAILED

            elif state is CreateState.BACKOFF_WAIT:
                self._on_retry(context, attempt)
                delay = random.randint(1, 4)
                self._logger.warning(
                    f"{self.service_type.value} attempt {number}/{self.max_attempts} "
                    f"collided ({error}), retrying in {delay}s"
                )
                await self._sleep(delay)
                state = CreateState.ATTEMPTING

        if state is CreateState.SUCCEEDED:
            self._logger.info(
                f"Created {self.service_type.value} container {result.name} "
                f"({result.serial[:12]}) after {number} attempt(s)"
            )
            return result

        primary = self._final_error(error, attempt)
        if cleanup_error is not None:
            raise CombineException([primary, RepositoryException(cleanup_error)])
        raise primary

    def _is_retryable(self, error: BaseException | None, context: CreateContext) -> bool:
        return is_retryable_collision(error)

    def _on_retry(self, context: CreateContext, attempt: Attempt) -> None:
        pass

    def _final_error(self, error: BaseException | None, attempt: Attempt | None) -> BaseException:
        if error is None:
            return UnknownException()
        if isinstance(error, ProxyCoreError):
            return error
        container_id = attempt.container_id if attempt else None
        return RepositoryException(
            error, container_created=container_id is not None, container_id=container_id
        )

    def _validate(self, parser: LabelParser, runner: Runner) -> CreateContext:
        raise NotImplementedError

    async def _prepare(self, runner: Runner, context: CreateContext) -> None:
        pass

    async def _prepare_attempt(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> ContainerSpec:
        raise NotImplementedError

    def _build_runner(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> Runner:
        raise NotImplementedError

    def _project_label(self, service: RunnerService | None = None) -> str:
        service = service or self.service_type
        return f"{self.namespace}.project={service.value}"

    def _container_labels(self, context: CreateContext, attempt: Attempt) -> dict[str, str]:
        return {
            f"{self.namespace}.id": attempt.runner_id,
            f"{self.namespace}.project": self.service_type.value,
            f"{self.namespace}.create-by": "api",
            **context.parser.to_label_map(self.namespace, exclude=SECRET_FIELDS),
            "autoheal": "true",
        }

    async def _remove_stale_containers(self, context: CreateContext) -> None:
        """Remove never-started containers left over by earlier aborted attempts."""
        owner_labels = context.parser.to_label_map(self.namespace, exclude=SECRET_FIELDS)
        stale = await self.container_manager.list_containers(
            labels=[self._project_label()] + [f"{k}={v}" for k, v in owner_labels.items()],
            status=["created"],
        )
        for container in stale:
            self._logger.warning(
                f"Removing stale container {container.name} ({container.container_id[:12]})"
            )
            await self.container_manager.remove_container(
                container.container_id, force=True, volumes=True
            )

    async def _allocate_name(self, prefix: str) -> str:
        containers = await self.container_manager.list_containers(
            labels=[self._project_label()]
        )
        return f"{prefix}-{next_name_suffix((c.name for c in containers), prefix)}"

    async def _allocate_address(self) -> str:
        network = await self.container_manager.inspect_network(self.docker_options.network_name)
        return next_free_address(network)

    async def _find_identity_node(self, context: CreateContext) -> ContainerInfo:
        """
        Find the running identity node the runner depends on.

        Raises:
            NotRunningServiceException: If no such container is running
        """
        id_labels = context.parser.to_label_map_for(
            IdentityLabel, self.namespace, exclude=("identity",) + SECRET_FIELDS
        )
        containers = await self.container_manager.list_containers(
            labels=[self._project_label(RunnerService.IDENTITY)]
            + [f"{k}={v}" for k, v in id_labels.items()],
            status=["running"],
            all=False,
        )
        if not containers:
            raise NotRunningServiceException(RunnerService.IDENTITY.value)
        return containers[0]


def _require(label_model, names: list[str]) -> None:
    missing = label_model.missing(names)
    if missing:
        raise IncompleteInputException(missing)


class IdentityRunnerCreator(RunnerCreator):
    """Creates VPN identity nodes holding a keystore volume."""

    service_type = RunnerService.IDENTITY

    def __init__(
        self,
        container_manager: ContainerManager,
        options: IdentityContainerOptions | None = None,
        docker_options: DockerOptions | None = None,
        **kwargs,
    ):
        super().__init__(container_manager, docker_options, **kwargs)
        self.options = options or IdentityContainerOptions()

    def _validate(self, parser: LabelParser, runner: Runner) -> CreateContext:
        identity = parser.get_instance(IdentityLabel)
        _require(identity, ["id", "identity", "passphrase"])
        if runner.get_volume(RunnerVolumeName.KEYSTORE) is None:
            raise IncompleteInputException(["volumes"])

        return CreateContext(
            parser=parser,
            identity=identity.value,
            volume_name=f"{self.options.volume_prefix}-{identity.value.identity}",
        )

    async def _prepare(self, runner: Runner, context: CreateContext) -> None:
        if await self.container_manager.volume_exists(context.volume_name):
            return

        keystore = runner.get_volume(RunnerVolumeName.KEYSTORE)
        self._logger.info(f"Creating keystore volume {context.volume_name}")
        await self.container_manager.create_volume(
            context.volume_name,
            driver_opts={"type": "none", "o": "bind", "device": self._host_path(keystore.source)},
            labels={
                f"{self.namespace}.create-by": "api",
                **context.parser.to_label_map_for(
                    IdentityLabel, f"{self.namespace}.volume", exclude=SECRET_FIELDS
                ),
            },
        )

    def _host_path(self, source: str) -> str:
        # Keystore sources are local paths; the daemon may see them elsewhere
        host_root = self.docker_options.host_keystore_path
        cwd = os.getcwd()
        if host_root and source.startswith(cwd):
            return host_root.rstrip("/") + source[len(cwd):]
        return source

    async def _prepare_attempt(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> ContainerSpec:
        attempt.name = await self._allocate_name(self.options.name_prefix)
        attempt.address = await self._allocate_address()

        return ContainerSpec(
            image=self.options.image,
            name=attempt.name,
            command=[
                "--auto-reconnect",
                "--log-level",
                "fatal",
                "service",
                "--agreed-terms-and-conditions",
            ],
            labels=self._container_labels(context, attempt),
            env={
                "MYST_IDENTITY": context.identity.identity,
                "MYST_IDENTITY_PASS": context.identity.passphrase,
            },
            network=self.docker_options.network_name,
            ipv4_address=attempt.address,
            binds=[_LOCALTIME_BIND, f"{context.volume_name}:{self.options.keystore_path}"],
            cap_add=["NET_ADMIN"],
            devices=["/dev/net/tun"],
        )

    def _build_runner(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> Runner:
        volumes = [
            dataclasses.replace(v, dest=self.options.keystore_path)
            if v.name == RunnerVolumeName.KEYSTORE
            else v
            for v in runner.volumes
        ]
        return Runner(
            service=self.service_type,
            id=attempt.runner_id,
            serial=attempt.container_id,
            name=attempt.name,
            socket_type=RunnerSocketType.HTTP,
            socket_uri=attempt.address,
            socket_port=self.options.http_port,
            volumes=volumes,
            status=RunnerStatus.RUNNING,
            label=runner.label,
            insert_date=datetime.now(UTC),
        )


class ConnectorRunnerCreator(RunnerCreator):
    """Creates VPN connectors sharing an identity node's network namespace."""

    service_type = RunnerService.CONNECTOR

    def __init__(
        self,
        container_manager: ContainerManager,
        options: ConnectorContainerOptions | None = None,
        docker_options: DockerOptions | None = None,
        **kwargs,
    ):
        super().__init__(container_manager, docker_options, **kwargs)
        self.options = options or ConnectorContainerOptions()

    def _validate(self, parser: LabelParser, runner: Runner) -> CreateContext:
        identity = parser.get_instance(IdentityLabel)
        _require(identity, ["id", "identity"])

        provider = parser.get_instance(ProviderLabel)
        _require(provider, ["id", "provider_identity", "user_identity"])
        if not provider.value.user_identity:
            raise IncompleteInputException(["user_identity"])

        return CreateContext(parser=parser, identity=identity.value, provider=provider.value)

    async def _prepare(self, runner: Runner, context: CreateContext) -> None:
        context.identity_node = await self._find_identity_node(context)

    async def _prepare_attempt(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> ContainerSpec:
        attempt.name = await self._allocate_name(self.options.name_prefix)

        return ContainerSpec(
            image=self.options.image,
            name=attempt.name,
            labels=self._container_labels(context, attempt),
            env={
                "MYST_API_BASE_ADDRESS": self.options.api_base_address.rstrip("/"),
                "MYST_IDENTITY": context.identity.identity,
                "PROVIDER_IDENTITY": context.provider.provider_identity,
                "API_PROVIDER_ID": context.provider.id,
                "REDIS_HOST": self.options.redis_host,
                "REDIS_PORT": str(self.options.redis_port),
                "REDIS_DB": str(self.options.redis_db),
            },
            network=f"container:{context.identity_node.container_id}",
            binds=[_LOCALTIME_BIND],
            log_options=dict(_LOG_OPTIONS),
        )

    def _build_runner(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> Runner:
        return Runner(
            service=self.service_type,
            id=attempt.runner_id,
            serial=attempt.container_id,
            name=attempt.name,
            socket_type=RunnerSocketType.NONE,
            status=RunnerStatus.RUNNING,
            label=runner.label,
            insert_date=datetime.now(UTC),
        )


class RelayRunnerCreator(RunnerCreator):
    """
    Creates TCP relays publishing a host port and forwarding to an identity node.

    If the runner template carries a socket_port it is published as is and a
    collision on it is final (PortInUseException). Otherwise the next free
    port from `options.start_port` is chosen, and collided ports are skipped
    on retry.
    """

    service_type = RunnerService.RELAY

    def __init__(
        self,
        container_manager: ContainerManager,
        options: RelayContainerOptions | None = None,
        docker_options: DockerOptions | None = None,
        **kwargs,
    ):
        super().__init__(container_manager, docker_options, **kwargs)
        self.options = options or RelayContainerOptions()

    @property
    def _publish_port_label(self) -> str:
        return f"{self.namespace}.publish-port"

    def _validate(self, parser: LabelParser, runner: Runner) -> CreateContext:
        identity = parser.get_instance(IdentityLabel)
        _require(identity, ["id"])
        provider = parser.get_instance(ProviderLabel)
        _require(provider, ["id"])
        upstream = parser.get_instance(ProxyUpstreamLabel)
        _require(upstream, ["id"])

        return CreateContext(
            parser=parser,
            identity=identity.value,
            provider=provider.value,
            upstream=upstream.value,
            fixed_port=runner.socket_port,
        )

    async def _prepare(self, runner: Runner, context: CreateContext) -> None:
        node = await self._find_identity_node(context)
        address = node.networks.get(self.docker_options.network_name)
        if not address:
            raise NotRunningServiceException(RunnerService.IDENTITY.value)
        context.identity_node = node
        context.identity_address = address

    async def _allocate_port(self, context: CreateContext) -> int:
        containers = await self.container_manager.list_containers(
            labels=[self._project_label(), self._publish_port_label]
        )
        used = set(context.failed_ports)
        for container in containers:
            try:
                used.add(int(container.labels.get(self._publish_port_label, "")))
            except ValueError:
                continue
        return next_free_port(used, self.options.start_port)

    async def _prepare_attempt(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> ContainerSpec:
        attempt.name = await self._allocate_name(self.options.name_prefix)
        attempt.address = await self._allocate_address()
        attempt.port = context.fixed_port or await self._allocate_port(context)

        labels = self._container_labels(context, attempt)
        labels[self._publish_port_label] = str(attempt.port)

        return ContainerSpec(
            image=self.options.image,
            name=attempt.name,
            command=[
                f"TCP-LISTEN:{self.options.private_port},fork",
                f"TCP:{context.identity_address}:{self.options.target_port}",
            ],
            labels=labels,
            network=self.docker_options.network_name,
            ipv4_address=attempt.address,
            binds=[_LOCALTIME_BIND],
            published_ports={attempt.port: self.options.private_port},
            log_options=dict(_LOG_OPTIONS),
        )

    def _is_retryable(self, error: BaseException | None, context: CreateContext) -> bool:
        if context.fixed_port is not None and is_port_collision(error):
            return False
        return super()._is_retryable(error, context)

    def _on_retry(self, context: CreateContext, attempt: Attempt) -> None:
        if context.fixed_port is None and attempt.port is not None:
            context.failed_ports.add(attempt.port)

    def _final_error(self, error: BaseException | None, attempt: Attempt | None) -> BaseException:
        if is_port_collision(error):
            return PortInUseException(attempt.port if attempt else None)
        return super()._final_error(error, attempt)

    def _build_runner(
        self, runner: Runner, context: CreateContext, attempt: Attempt
    ) -> Runner:
        return Runner(
            service=self.service_type,
            id=attempt.runner_id,
            serial=attempt.container_id,
            name=attempt.name,
            socket_type=RunnerSocketType.TCP,
            socket_uri=attempt.address,
            socket_port=attempt.port,
            status=RunnerStatus.RUNNING,
            label=runner.label,
            insert_date=datetime.now(UTC),
        )
