"""
Abstract repository interfaces for the proxy fleet.

This module defines the contracts between the reconciliation layer and its
sources (Docker runners, provider discovery, user/ACL/proxy stores), allowing
any of them to be swapped for another implementation or a test double.

Every list operation returns a tuple of (items, total) where total is the
number of matching items before pagination.
"""

from abc import ABC, abstractmethod

from .filters import FilterModel
from .models import (
    Provider,
    ProxyAcl,
    ProxyUpstream,
    Runner,
    RunnerService,
    User,
    UsersProxy,
)


class CreateRunnerRepository(ABC):
    """
    Creates one container for one service kind.

    Attributes:
        service_type: The RunnerService this creator handles
    """

    service_type: RunnerService | None = None

    @abstractmethod
    async def create(self, runner: Runner) -> Runner:
        """
        Create and start the container described by `runner`.

        Args:
            runner: Runner template; its label identifies the owning entities

        Returns:
            Fully populated runner with status RUNNING

        Raises:
            IncompleteInputException: If required label fields are missing
            AddressExhaustedException: If no network address is free
            RepositoryException: If the Docker runtime fails
            CombineException: If cleanup after a failure also fails
        """
        pass


class RunnerRepository(ABC):
    """Discovers and creates runners."""

    @abstractmethod
    async def get_all(
        self, filter_model: FilterModel[Runner] | None = None
    ) -> tuple[list[Runner], int]:
        """
        List runners matching a filter.

        Args:
            filter_model: Conditions on service, status, name, label, ...

        Returns:
            Tuple of (runners, total count)
        """
        pass

    @abstractmethod
    async def get_by_id(self, runner_id: str) -> Runner | None:
        """
        Retrieve a runner by its id.

        Returns:
            Runner if found, None otherwise
        """
        pass

    @abstractmethod
    async def create(self, runner: Runner) -> Runner:
        """Create a runner (see CreateRunnerRepository.create)."""
        pass


class ProviderRepository(ABC):
    """Source of VPN provider records."""

    @abstractmethod
    async def get_all(
        self, filter_model: FilterModel[Provider] | None = None
    ) -> tuple[list[Provider], int]:
        """
        List providers.

        Args:
            filter_model: Conditions on country, provider_identity,
                          provider_ip_type, is_register, ...

        Returns:
            Tuple of (providers, total count)
        """
        pass

    @abstractmethod
    async def get_by_id(self, provider_id: str) -> Provider | None:
        """
        Retrieve a provider by its id.

        Returns:
            Provider if found, None otherwise
        """
        pass


class UsersRepository(ABC):
    @abstractmethod
    async def get_by_id(self, user_id: str) -> User | None:
        """
        Retrieve a user by id.

        Returns:
            User if found, None otherwise
        """
        pass


class ProxyAclRepository(ABC):
    @abstractmethod
    async def get_all(
        self, filter_model: FilterModel[ProxyAcl] | None = None
    ) -> tuple[list[ProxyAcl], int]:
        """
        List ACL grants.

        Args:
            filter_model: Typically a "user_id" condition with
                          skip_pagination set

        Returns:
            Tuple of (grants, total count)
        """
        pass


class ProxyRepository(ABC):
    @abstractmethod
    async def get_all(
        self, filter_model: FilterModel[ProxyUpstream] | None = None
    ) -> tuple[list[ProxyUpstream], int]:
        """
        List the proxy inventory.

        Returns:
            Tuple of (proxies, total count)
        """
        pass


class UsersProxyRepository(ABC):
    @abstractmethod
    async def get_by_user_id(
        self, user_id: str, filter_model: FilterModel[UsersProxy] | None = None
    ) -> tuple[list[UsersProxy], int]:
        """
        List the proxies a user can effectively use.

        Returns:
            Tuple of (proxies tagged with the user, total count)
        """
        pass
