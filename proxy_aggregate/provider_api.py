"""
Provider discovery API client.

Lists WireGuard proposals from the discovery service and maps them into
Provider models. `requests` is blocking, so every call runs in a worker
thread.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

import requests

from proxy_common.exceptions import (
    IncompleteInputException,
    ProxyCoreError,
    RepositoryException,
)
from proxy_common.filters import FilterModel, filter_and_sort
from proxy_common.models import (
    Provider,
    VpnProviderIpType,
    VpnProviderName,
    VpnServiceType,
)
from proxy_common.repository import ProviderRepository

# Conditions the discovery API evaluates itself, with their query parameter
PUSHED_DOWN_FIELDS = {
    "country": "location_country",
    "provider_identity": "provider_id",
    "provider_ip_type": "ip_type",
}


def provider_uuid(provider_identity: str) -> str:
    """Deterministic provider id derived from the provider identity."""
    return str(uuid.uuid5(uuid.NAMESPACE_OID, provider_identity))


class ProviderApiRepository(ProviderRepository):
    """
    Reads providers from `<base>/api/v3/proposals`.

    Usage:
        repository = ProviderApiRepository("https://discovery.mysterium.network")
        providers, total = await repository.get_all(
            FilterModel().add_condition("country", "DE")
        )
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        logger: logging.Logger | None = None,
    ):
        """
        Args:
            base_url: Discovery service address
            timeout: Request timeout in seconds
            logger: Logger to use (module logger by default)
        """
        self.proposals_url = f"{base_url.rstrip('/')}/api/v3/proposals"
        self.timeout = timeout
        self._logger = logger or logging.getLogger(__name__)

    async def get_all(
        self, filter_model: FilterModel[Provider] | None = None
    ) -> tuple[list[Provider], int]:
        filter_model = filter_model or FilterModel()
        params = {"service_type": VpnServiceType.WIREGUARD.value}
        for field_name, param in PUSHED_DOWN_FIELDS.items():
            condition = filter_model.get_condition(field_name)
            if condition is not None:
                params[param] = _param_value(condition.value)

        providers = await self._fetch(params)
        return filter_and_sort(providers, filter_model, fields=list(PUSHED_DOWN_FIELDS))

    async def get_by_id(self, provider_id: str) -> Provider | None:
        providers = await self._fetch({"service_type": VpnServiceType.WIREGUARD.value})
        for provider in providers:
            if provider.id == provider_id:
                return provider
        return None

    async def _fetch(self, params: dict[str, str]) -> list[Provider]:
        """
        Fetch and map proposals.

        Raises:
            IncompleteInputException: If a proposal carries an unknown ip type
            RepositoryException: If the request or the payload fails
        """
        try:
            rows = await asyncio.to_thread(self._get, params)
            return [self._to_provider(row) for row in rows or []]
        except ProxyCoreError:
            raise
        except (requests.exceptions.RequestException, KeyError, TypeError, ValueError) as e:
            self._logger.error(f"Failed to list proposals from {self.proposals_url}: {e}")
            raise RepositoryException(e) from e

    def _get(self, params: dict[str, str]) -> list[dict[str, Any]]:
        # No shared Session: reads run concurrently in worker threads
        response = requests.get(
            self.proposals_url,
            params=params,
            headers={"content-type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _to_provider(row: dict[str, Any]) -> Provider:
        location = row["location"]
        quality = row.get("quality") or {}
        try:
            ip_type = VpnProviderIpType(location.get("ip_type"))
        except ValueError as e:
            raise IncompleteInputException(["provider_ip_type"]) from e

        return Provider(
            id=provider_uuid(row["provider_id"]),
            provider_identity=row["provider_id"],
            provider_ip_type=ip_type,
            country=location.get("country"),
            service_type=VpnServiceType.WIREGUARD,
            provider_name=VpnProviderName.MYSTERIUM,
            quality=quality.get("quality"),
            bandwidth=quality.get("bandwidth"),
            latency=quality.get("latency"),
            is_register=False,
            insert_date=datetime.now(UTC),
        )


def _param_value(value: Any) -> str:
    return str(getattr(value, "value", value))
