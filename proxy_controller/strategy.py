"""
Creation strategy: dispatches a runner to the creator of its service kind.

This is the only place new container kinds are registered.
"""

import logging
from collections.abc import Iterable

from proxy_common.exceptions import RepositoryException, UnknownException
from proxy_common.models import Runner
from proxy_common.repository import CreateRunnerRepository

logger = logging.getLogger(__name__)


class CreateRunnerStrategy(CreateRunnerRepository):
    """
    Registry of creators keyed by their declared service_type.

    Usage:
        strategy = CreateRunnerStrategy([
            IdentityRunnerCreator(manager),
            ConnectorRunnerCreator(manager),
            RelayRunnerCreator(manager),
        ])
        runner = await strategy.create(Runner(service=RunnerService.RELAY, ...))
    """

    def __init__(self, creators: Iterable[CreateRunnerRepository]):
        self.creators = creators

    def get_creator(self, runner: Runner) -> CreateRunnerRepository:
        """
        Select the creator whose service_type equals runner.service.

        Raises:
            RepositoryException: If the registry cannot be iterated
            UnknownException: If no creator handles the service
        """
        try:
            creators = list(self.creators)
        except TypeError as e:
            raise RepositoryException(e) from e

        for creator in creators:
            if getattr(creator, "service_type", None) == runner.service:
                return creator

        logger.error(f"No creator registered for service {runner.service!r}")
        raise UnknownException()

    async def create(self, runner: Runner) -> Runner:
        return await self.get_creator(runner).create(runner)
