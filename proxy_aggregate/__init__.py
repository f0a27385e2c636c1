"""
Proxy Aggregate module.

This module holds the authoritative provider source (discovery API and its
Redis id cache) and the reconciliation repositories that join external
records with live runner state at request time.
"""

from .gather import gather_or_raise
from .provider_aggregate import ProviderAggregateRepository
from .provider_api import ProviderApiRepository
from .provider_cache import ProviderCacheRepository
from .users_proxy_aggregate import UsersProxyAggregateRepository

__all__ = [
    "ProviderAggregateRepository",
    "ProviderApiRepository",
    "ProviderCacheRepository",
    "UsersProxyAggregateRepository",
    "gather_or_raise",
]
