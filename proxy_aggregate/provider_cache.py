"""
Redis cache of provider id -> provider identity.

Provider ids are derived from the provider identity, which the discovery API
can filter on, but the id alone cannot be queried. Every listing therefore
remembers `myst_provider:<id> -> provider_identity` for five minutes so a
later get_by_id can turn into a single filtered query.
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from proxy_common.filters import FilterModel
from proxy_common.models import Provider
from proxy_common.repository import ProviderRepository


class ProviderCacheRepository(ProviderRepository):
    """
    Wraps a provider source with a write-behind id cache.

    Cache writes never delay or fail a read: they run as background tasks and
    their errors are only logged.
    """

    PREFIX_KEY = "myst_provider"
    EXPIRE_SECONDS = 5 * 60

    def __init__(
        self,
        redis_client: aioredis.Redis,
        source: ProviderRepository,
        logger: logging.Logger | None = None,
    ):
        self.redis = redis_client
        self.source = source
        self._logger = logger or logging.getLogger(__name__)
        self._tasks: set[asyncio.Task] = set()

    def _key(self, provider_id: str) -> str:
        return f"{self.PREFIX_KEY}:{provider_id}"

    async def get_all(
        self, filter_model: FilterModel[Provider] | None = None
    ) -> tuple[list[Provider], int]:
        providers, total = await self.source.get_all(filter_model)

        if providers:
            mapping = {self._key(p.id): p.provider_identity for p in providers}
            task = asyncio.create_task(self._store(mapping))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return providers, total

    async def get_by_id(self, provider_id: str) -> Provider | None:
        provider_identity = await self._cached_identity(provider_id)
        if provider_identity is None:
            return await self.source.get_by_id(provider_id)

        filter_model = FilterModel(skip_pagination=True).add_condition(
            "provider_identity", provider_identity
        )
        providers, _ = await self.source.get_all(filter_model)
        return providers[0] if providers else None

    async def _store(self, mapping: dict[str, str]) -> None:
        try:
            await self.redis.mset(mapping)
        except RedisError as e:
            self._logger.error(f"Failed to cache {len(mapping)} keys for prefix {self.PREFIX_KEY!r}: {e}")
            return

        results = await asyncio.gather(
            *(self.redis.expire(key, self.EXPIRE_SECONDS) for key in mapping),
            return_exceptions=True,
        )
        failed = [r for r in results if isinstance(r, Exception)]
        if failed:
            self._logger.error(
                f"Failed to set expiry on {len(failed)} keys for prefix {self.PREFIX_KEY!r}: {failed[0]}"
            )

    async def _cached_identity(self, provider_id: str) -> str | None:
        try:
            value = await self.redis.get(self._key(provider_id))
        except RedisError as e:
            self._logger.error(f"Failed to read key for prefix {self.PREFIX_KEY!r}: {e}")
            return None

        if isinstance(value, bytes):
            return value.decode()
        return value
