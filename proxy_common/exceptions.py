"""
Exception taxonomy shared by every proxy fleet component.

Lower-layer failures (Docker CLI errors, HTTP errors, Redis errors) never leave
a component raw: they are wrapped in RepositoryException at the boundary so
callers only ever handle the classes defined here.
"""

from collections.abc import Sequence
from typing import Any


class ProxyCoreError(Exception):
    """
    Base class for all proxy fleet errors.

    Attributes:
        is_operation: True when the failure is caused by caller input or
                      runtime state the caller can correct, False for
                      internal failures.
    """

    is_operation: bool = False


class IncompleteInputException(ProxyCoreError):
    """A required field was still at its default before a side-effecting call."""

    def __init__(self, fields: Sequence[str]):
        self.fields = list(fields)
        super().__init__(f"Missing required fields: {', '.join(self.fields)}")


class UnrecognizedNamespaceException(ProxyCoreError):
    """A label entry carried a namespace outside the registered set."""

    def __init__(self, namespace: Any = None):
        self.namespace = namespace
        if namespace is None:
            super().__init__("Label does not contain any namespace")
        else:
            super().__init__(f"Unrecognized label namespace: {namespace!r}")


class MissingModelException(ProxyCoreError):
    """The requested label model was not among the parsed entries."""

    def __init__(self, model: type):
        self.model = model
        super().__init__(f"Label does not contain a {model.__name__} entry")


class AddressExhaustedException(ProxyCoreError):
    """Every usable address of the network is already bound."""

    def __init__(self, network: str):
        self.network = network
        super().__init__(f"No free IPv4 address left in network {network!r}")


class RepositoryException(ProxyCoreError):
    """
    Wraps a failure raised by a lower layer (Docker, HTTP API, cache).

    Attributes:
        error: The original exception
        container_created: True when a container object had already been
                           instantiated, so the caller has to clean it up
        container_id: Id of the instantiated container, if any
    """

    def __init__(
        self,
        error: BaseException,
        container_created: bool = False,
        container_id: str | None = None,
    ):
        self.error = error
        self.container_created = container_created
        self.container_id = container_id
        super().__init__(f"Repository error: {error}")


class CombineException(ProxyCoreError):
    """
    Bundles causally linked failures.

    The first error is the primary failure; the following ones happened while
    compensating for it (e.g. removing a half-created container).
    """

    def __init__(self, errors: Sequence[BaseException]):
        if not errors:
            raise ValueError("CombineException needs at least one error")
        self.errors = list(errors)
        self.is_operation = all(getattr(e, "is_operation", False) for e in self.errors)
        super().__init__(str(self.errors[0]))

    @property
    def primary(self) -> BaseException:
        return self.errors[0]


class UnknownException(ProxyCoreError):
    """Fallback when no other failure case applies."""

    def __init__(self) -> None:
        super().__init__("Unknown error happened")


class NotRunningServiceException(ProxyCoreError):
    """A container this operation depends on is not running."""

    is_operation = True

    def __init__(self, service: str | None = None):
        self.service = service
        super().__init__(
            f"Service {service!r} is not running or stopped"
            if service
            else "The service is not running or stopped"
        )


class PortInUseException(ProxyCoreError):
    """The requested host port is already allocated."""

    is_operation = True

    def __init__(self, port: int | None = None):
        self.port = port
        super().__init__(
            f"Port {port} is already in use" if port else "The port is already in use"
        )
