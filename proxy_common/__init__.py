"""
Proxy Common module.

This module contains the domain models, the label codec, the filter engine,
the exception taxonomy and the repository interfaces shared across the proxy
fleet components (controller, aggregate).

The common module has no dependencies on other proxy_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .exceptions import (
    AddressExhaustedException,
    CombineException,
    IncompleteInputException,
    MissingModelException,
    NotRunningServiceException,
    PortInUseException,
    ProxyCoreError,
    RepositoryException,
    UnknownException,
    UnrecognizedNamespaceException,
)
from .filters import FilterModel, SortDirection, filter_and_sort
from .labels import (
    IdentityLabel,
    LabelEntry,
    LabelNamespace,
    LabelParser,
    ProviderLabel,
    ProxyDownstreamLabel,
    ProxyUpstreamLabel,
)
from .models import Provider, ProxyAcl, ProxyUpstream, Runner, User, UsersProxy

__all__ = [
    "AddressExhaustedException",
    "CombineException",
    "FilterModel",
    "IdentityLabel",
    "IncompleteInputException",
    "LabelEntry",
    "LabelNamespace",
    "LabelParser",
    "MissingModelException",
    "NotRunningServiceException",
    "PortInUseException",
    "Provider",
    "ProviderLabel",
    "ProxyAcl",
    "ProxyCoreError",
    "ProxyDownstreamLabel",
    "ProxyUpstream",
    "ProxyUpstreamLabel",
    "RepositoryException",
    "Runner",
    "SortDirection",
    "UnknownException",
    "UnrecognizedNamespaceException",
    "User",
    "UsersProxy",
    "filter_and_sort",
]
