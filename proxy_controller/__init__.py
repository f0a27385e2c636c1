"""
Proxy Controller module.

This module drives Docker for the proxy fleet: it creates identity nodes,
connectors and relays with bounded retry and cleanup, and discovers the
runners currently present on the daemon.
"""

from .container_manager import ContainerInfo, ContainerManager, ContainerSpec, DockerCommandError
from .creator import (
    ConnectorRunnerCreator,
    IdentityRunnerCreator,
    RelayRunnerCreator,
    RunnerCreator,
)
from .options import (
    ConnectorContainerOptions,
    DockerOptions,
    IdentityContainerOptions,
    RelayContainerOptions,
)
from .runner_repository import DockerRunnerRepository
from .strategy import CreateRunnerStrategy

__all__ = [
    "ConnectorContainerOptions",
    "ConnectorRunnerCreator",
    "ContainerInfo",
    "ContainerManager",
    "ContainerSpec",
    "CreateRunnerStrategy",
    "DockerCommandError",
    "DockerOptions",
    "DockerRunnerRepository",
    "IdentityContainerOptions",
    "IdentityRunnerCreator",
    "RelayContainerOptions",
    "RelayRunnerCreator",
    "RunnerCreator",
]
