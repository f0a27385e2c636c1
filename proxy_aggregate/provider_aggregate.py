"""
Provider reconciliation.

A provider is "registered" when a running identity node carries a provider
label cluster pointing at it. That fact lives only in Docker, so it is
computed per request by joining the discovery source with live runners.
"""

import dataclasses
import logging

from proxy_common.exceptions import ProxyCoreError
from proxy_common.filters import FilterModel, filter_and_sort
from proxy_common.labels import IdentityLabel, LabelEntry, LabelNamespace, LabelParser, ProviderLabel
from proxy_common.models import (
    Provider,
    Runner,
    RunnerService,
    RunnerStatus,
    VpnProviderStatus,
)
from proxy_common.repository import ProviderRepository, RunnerRepository

from .gather import gather_or_raise
from .provider_api import PUSHED_DOWN_FIELDS

# (provider id, provider identity) -> runner
RunnerIndex = dict[tuple[str, str], Runner]


class ProviderAggregateRepository(ProviderRepository):
    """
    Joins providers with running identity nodes.

    The caller's filter is applied after the join, so conditions on computed
    fields such as is_register narrow the result and the total alike.
    """

    def __init__(
        self,
        provider_repository: ProviderRepository,
        runner_repository: RunnerRepository,
        logger: logging.Logger | None = None,
    ):
        self.provider_repository = provider_repository
        self.runner_repository = runner_repository
        self._logger = logger or logging.getLogger(__name__)

    async def get_all(
        self, filter_model: FilterModel[Provider] | None = None
    ) -> tuple[list[Provider], int]:
        filter_model = filter_model or FilterModel()

        source_filter = FilterModel(skip_pagination=True)
        for field_name in PUSHED_DOWN_FIELDS:
            condition = filter_model.get_condition(field_name)
            if condition is not None:
                source_filter.add_condition(field_name, condition.value)

        (providers, _), (runners, _) = await gather_or_raise(
            self.provider_repository.get_all(source_filter),
            self.runner_repository.get_all(_running_identity_filter()),
        )

        index = build_runner_index(runners, self._logger)
        merged = [merge_provider(provider, index) for provider in providers]
        return filter_and_sort(merged, filter_model)

    async def get_by_id(self, provider_id: str) -> Provider | None:
        runner_filter = _running_identity_filter().add_condition(
            "label", LabelEntry(LabelNamespace.PROVIDER, {"id": provider_id})
        )
        provider, (runners, _) = await gather_or_raise(
            self.provider_repository.get_by_id(provider_id),
            self.runner_repository.get_all(runner_filter),
        )
        if provider is None:
            return None

        return merge_provider(provider, build_runner_index(runners, self._logger))


def _running_identity_filter() -> FilterModel[Runner]:
    return (
        FilterModel(skip_pagination=True)
        .add_condition("status", RunnerStatus.RUNNING)
        .add_condition("service", RunnerService.IDENTITY)
    )


def build_runner_index(
    runners: list[Runner], logger: logging.Logger | None = None
) -> RunnerIndex:
    """
    Index runners by the (id, provider_identity) of their provider labels.

    Runners without a complete provider label are not indexed.
    """
    index: RunnerIndex = {}
    for runner in runners:
        if not runner.label:
            continue
        try:
            parser = LabelParser(runner.label).parse()
        except ProxyCoreError as e:
            if logger:
                logger.warning(f"Ignoring runner {runner.name} with unreadable label: {e}")
            continue

        if not parser.has_instance(ProviderLabel):
            continue
        provider_label = parser.get_instance(ProviderLabel)
        if provider_label.missing(["id", "provider_identity"]):
            continue

        key = (provider_label.value.id, provider_label.value.provider_identity)
        index.setdefault(key, runner)
    return index


def merge_provider(provider: Provider, index: RunnerIndex) -> Provider:
    """Return a copy of the provider with its registration state computed."""
    runner = index.get((provider.id, provider.provider_identity))
    if runner is None:
        return dataclasses.replace(provider, is_register=False, runner=None)

    return dataclasses.replace(
        provider,
        is_register=True,
        runner=runner,
        provider_status=VpnProviderStatus.ONLINE,
        user_identity=_user_identity(runner) or provider.user_identity,
    )


def _user_identity(runner: Runner) -> str | None:
    parser = LabelParser(runner.label).parse()
    if parser.has_instance(IdentityLabel):
        identity = parser.get_instance(IdentityLabel)
        if not identity.is_default("identity"):
            return identity.value.identity
    provider_label = parser.get_instance(ProviderLabel)
    if not provider_label.is_default("user_identity"):
        return provider_label.value.user_identity
    return None
