"""
User-effective-proxy reconciliation.

Which proxies a user may use is not stored anywhere: it follows from the
user's ACL grants applied to the current proxy inventory.
"""

import logging

from proxy_common.filters import FilterModel, filter_and_sort
from proxy_common.models import ProxyAcl, ProxyAclMode, ProxyUpstream, User, UsersProxy
from proxy_common.repository import (
    ProxyAclRepository,
    ProxyRepository,
    UsersProxyRepository,
    UsersRepository,
)

from .gather import gather_or_raise


class UsersProxyAggregateRepository(UsersProxyRepository):
    """Resolves a user's grants against the proxy inventory."""

    def __init__(
        self,
        users_repository: UsersRepository,
        acl_repository: ProxyAclRepository,
        proxy_repository: ProxyRepository,
        logger: logging.Logger | None = None,
    ):
        self.users_repository = users_repository
        self.acl_repository = acl_repository
        self.proxy_repository = proxy_repository
        self._logger = logger or logging.getLogger(__name__)

    async def get_by_user_id(
        self, user_id: str, filter_model: FilterModel[UsersProxy] | None = None
    ) -> tuple[list[UsersProxy], int]:
        acl_filter = FilterModel(skip_pagination=True).add_condition("user_id", user_id)

        user, (grants, _), (proxies, _) = await gather_or_raise(
            self.users_repository.get_by_id(user_id),
            self.acl_repository.get_all(acl_filter),
            self.proxy_repository.get_all(FilterModel(skip_pagination=True)),
        )

        if user is None or not grants:
            self._logger.debug(f"User {user_id} has no proxy grants")
            return [], 0

        return filter_and_sort(resolve_grants(user, grants, proxies), filter_model)


def resolve_grants(
    user: User, grants: list[ProxyAcl], proxies: list[ProxyUpstream]
) -> list[UsersProxy]:
    """
    Compute the proxies a user may use.

    Any ALL grant yields the whole inventory. Otherwise CUSTOM grants are
    matched against the inventory by listen port and merged, keeping the
    first occurrence of each proxy id.
    """
    if any(grant.mode == ProxyAclMode.ALL for grant in grants):
        return [UsersProxy.from_upstream(proxy, user) for proxy in proxies]

    by_port: dict[int, list[ProxyUpstream]] = {}
    for proxy in proxies:
        by_port.setdefault(proxy.listen_port, []).append(proxy)

    result: dict[str, UsersProxy] = {}
    for grant in grants:
        if grant.mode != ProxyAclMode.CUSTOM:
            continue
        for granted in grant.proxies:
            for proxy in by_port.get(granted.listen_port, []):
                if proxy.id not in result:
                    result[proxy.id] = UsersProxy.from_upstream(proxy, user)
    return list(result.values())
