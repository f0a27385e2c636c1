"""
Runner discovery backed by Docker.

Runners are never stored anywhere: every read lists the containers carrying
the project label, inspects them and maps them back into Runner models.
"""

import logging
import re

from proxy_common.exceptions import ProxyCoreError, RepositoryException
from proxy_common.filters import FilterModel, filter_and_sort
from proxy_common.labels import LabelParser
from proxy_common.models import (
    Runner,
    RunnerService,
    RunnerSocketType,
    RunnerStatus,
    RunnerVolume,
    RunnerVolumeName,
)
from proxy_common.repository import CreateRunnerRepository, RunnerRepository

from .container_manager import ContainerInfo, ContainerManager
from .creator import SECRET_FIELDS
from .options import DockerOptions, IdentityContainerOptions

_NETWORK_MODE_RE = re.compile(r"^container:(.+)$")

# Docker states matching each runner status, for pushing status filters down
_DOCKER_STATES = {
    RunnerStatus.CREATING: ["created"],
    RunnerStatus.RUNNING: ["running"],
    RunnerStatus.RESTARTING: ["restarting"],
    RunnerStatus.STOPPED: ["exited", "paused"],
    RunnerStatus.ERROR: ["dead", "removing"],
}

# Fields evaluated in memory after discovery; "label" is fully pushed down
_MEMORY_FIELDS = ["id", "serial", "name", "service", "status", "socket_type", "socket_port"]


class DockerRunnerRepository(RunnerRepository):
    """
    Discovers runners from Docker and creates them through a creation strategy.

    Filter conditions on service, status, name and label are translated into
    `docker ps` filters; everything else is evaluated by the filter engine.
    """

    def __init__(
        self,
        container_manager: ContainerManager,
        create_strategy: CreateRunnerRepository,
        docker_options: DockerOptions | None = None,
        identity_options: IdentityContainerOptions | None = None,
        logger: logging.Logger | None = None,
    ):
        self.container_manager = container_manager
        self.create_strategy = create_strategy
        self.docker_options = docker_options or DockerOptions()
        self.identity_options = identity_options or IdentityContainerOptions()
        self.namespace = self.docker_options.label_namespace
        self._logger = logger or logging.getLogger(__name__)

    async def get_all(
        self, filter_model: FilterModel[Runner] | None = None
    ) -> tuple[list[Runner], int]:
        filter_model = filter_model or FilterModel()
        try:
            labels, status, name = self._docker_filters(filter_model)
        except ValueError:
            # No runner has a service or status outside the known enums
            return [], 0

        try:
            containers = await self.container_manager.list_containers(
                labels=labels, status=status, name=name
            )
            runners = await self._to_runners(containers)
        except ProxyCoreError:
            raise
        except Exception as e:
            raise RepositoryException(e) from e

        return filter_and_sort(runners, filter_model, fields=_MEMORY_FIELDS)

    async def get_by_id(self, runner_id: str) -> Runner | None:
        try:
            containers = await self.container_manager.list_containers(
                labels=[f"{self.namespace}.id={runner_id}"]
            )
            runners = await self._to_runners(containers)
        except ProxyCoreError:
            raise
        except Exception as e:
            raise RepositoryException(e) from e

        return runners[0] if runners else None

    async def create(self, runner: Runner) -> Runner:
        return await self.create_strategy.create(runner)

    def _docker_filters(
        self, filter_model: FilterModel[Runner]
    ) -> tuple[list[str], list[str] | None, str | None]:
        """
        Translate filter conditions into docker ps label/status/name filters.

        Raises:
            UnrecognizedNamespaceException: If the label condition is malformed
            ValueError: If the service or status condition is not a known value
        """
        labels = [f"{self.namespace}.project"]

        service = filter_model.get_condition("service")
        if service is not None:
            labels = [f"{self.namespace}.project={RunnerService(service.value).value}"]

        label = filter_model.get_condition("label")
        if label is not None:
            label_map = LabelParser(label.value).parse().to_label_map(
                self.namespace, exclude=SECRET_FIELDS
            )
            labels += [f"{k}={v}" for k, v in label_map.items()]

        status_condition = filter_model.get_condition("status")
        status = (
            _DOCKER_STATES[RunnerStatus(status_condition.value)]
            if status_condition is not None
            else None
        )

        name = filter_model.get_condition("name")
        return labels, status, name.value if name is not None else None

    async def _to_runners(self, containers: list[ContainerInfo]) -> list[Runner]:
        dependency_addresses = await self._dependency_addresses(containers)

        runners = []
        for container in containers:
            runner = self._to_runner(container, dependency_addresses)
            if runner is not None:
                runners.append(runner)
        return runners

    async def _dependency_addresses(self, containers: list[ContainerInfo]) -> dict[str, str]:
        """Map "container:<id>" network modes to the address of that container."""
        dependency_ids = []
        for container in containers:
            match = _NETWORK_MODE_RE.match(container.network_mode or "")
            if match:
                dependency_ids.append(match.group(1))

        if not dependency_ids:
            return {}

        result = {}
        for dependency in await self.container_manager.inspect_containers(dependency_ids):
            address = dependency.networks.get(self.docker_options.network_name) or next(
                iter(dependency.networks.values()), None
            )
            if address:
                result[f"container:{dependency.container_id}"] = address
        return result

    def _to_runner(
        self, container: ContainerInfo, dependency_addresses: dict[str, str]
    ) -> Runner | None:
        project = container.labels.get(f"{self.namespace}.project")
        try:
            service = RunnerService(project)
        except ValueError:
            self._logger.warning(
                f"Skipping container {container.name}: unknown project {project!r}"
            )
            return None

        if service == RunnerService.IDENTITY:
            socket_type, socket_port = RunnerSocketType.HTTP, self.identity_options.http_port
        elif service == RunnerService.RELAY:
            socket_type = RunnerSocketType.TCP
            port = container.labels.get(f"{self.namespace}.publish-port")
            socket_port = int(port) if port and port.isdigit() else None
        else:
            socket_type, socket_port = RunnerSocketType.NONE, None

        if self.docker_options.network_name in container.networks:
            socket_uri = container.networks[self.docker_options.network_name]
        else:
            socket_uri = dependency_addresses.get(container.network_mode or "")

        keystore_path = self.identity_options.keystore_path.rstrip("/")
        volumes = [
            RunnerVolume(
                source=source,
                dest=dest,
                name=RunnerVolumeName.KEYSTORE if dest.rstrip("/") == keystore_path else None,
            )
            for source, dest in container.mounts
        ]

        return Runner(
            service=service,
            id=container.labels.get(f"{self.namespace}.id"),
            serial=container.container_id,
            name=container.name,
            socket_type=socket_type,
            socket_uri=socket_uri or None,
            socket_port=socket_port,
            volumes=volumes,
            status=RunnerStatus.from_docker_state(container.status),
            label=LabelParser.object_to_label(self.namespace, container.labels),
            insert_date=container.created_at,
        )
