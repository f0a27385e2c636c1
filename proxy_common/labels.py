"""
Typed metadata codec over Docker container labels.

Docker only stores flat string key/value labels. Runners need to carry typed
references to the entities that own them (an identity, a provider, a proxy),
so every owner is written as one label cluster:

    <prefix>.<namespace>.<kebab-field> = <string value>

e.g. ``com.mysterium-proxy.identity.id = 7c5f...``. A container owned by
several entities carries one cluster per owner.

Labels are sparse, so decoding has to tell "field never supplied" apart from
"field supplied with its zero value". Every decoded instance is therefore
wrapped in a LabelModel that lists the fields still at their default, and
callers check that list instead of the raw field value.
"""

import dataclasses
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from .exceptions import (
    IncompleteInputException,
    MissingModelException,
    UnrecognizedNamespaceException,
)

T = TypeVar("T")


class LabelNamespace(str, Enum):
    """Closed set of entity kinds that may own a runner."""

    IDENTITY = "identity"
    PROVIDER = "provider"
    PROXY_DOWNSTREAM = "proxy-downstream"
    PROXY_UPSTREAM = "proxy-upstream"


@dataclass
class LabelEntry:
    """
    One raw label cluster: a namespace discriminator and its field values.

    Values are whatever the caller supplied (typed values when built in code,
    strings when read back from Docker).
    """

    namespace: LabelNamespace | str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class IdentityLabel:
    id: str = "default-id"
    identity: str = "default-identity"
    passphrase: str = "default-passphrase"


@dataclass
class ProviderLabel:
    id: str = "default-id"
    user_identity: str = "default-user-identity"
    provider_identity: str = "default-provider-identity"
    country: str = "default-country"
    is_register: bool = False


@dataclass
class ProxyDownstreamLabel:
    id: str = "default-id"
    ref_id: str = "default-ref-id"
    ip: str = "default-ip"
    mask: int = 0


@dataclass
class ProxyUpstreamLabel:
    id: str = "default-id"
    listen_addr: str = "default-listen-addr"
    listen_port: int = 0


@dataclass
class LabelModel(Generic[T]):
    """
    A decoded label entry together with the fields that were never supplied.

    Attributes:
        namespace: Namespace the entry was decoded from
        value: Typed label instance; unsupplied fields hold their sentinel
        default_fields: Names of the fields still at their sentinel
    """

    namespace: LabelNamespace
    value: T
    default_fields: list[str]

    def is_default(self, name: str) -> bool:
        return name in self.default_fields

    def missing(self, names: Iterable[str]) -> list[str]:
        """Return the subset of `names` that are still at their default."""
        return [name for name in names if self.is_default(name)]


def _to_str(value: Any) -> str:
    return str(value)


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    number = int(value)
    # Only the form the encoder writes is accepted ("32", not "032" or " 32")
    if isinstance(value, str) and str(number) != value:
        raise ValueError(f"not a canonical integer: {value!r}")
    return number


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value == "true":
        return True
    if value == "false":
        return False
    raise ValueError(f"not a boolean: {value!r}")


@dataclass(frozen=True)
class _LabelType:
    model: type
    converters: dict[str, Callable[[Any], Any]]


# One branch per registered domain type. Adding a namespace means adding it to
# LabelNamespace and here.
_LABEL_TYPES: dict[LabelNamespace, _LabelType] = {
    LabelNamespace.IDENTITY: _LabelType(
        IdentityLabel,
        {"id": _to_str, "identity": _to_str, "passphrase": _to_str},
    ),
    LabelNamespace.PROVIDER: _LabelType(
        ProviderLabel,
        {
            "id": _to_str,
            "user_identity": _to_str,
            "provider_identity": _to_str,
            "country": _to_str,
            "is_register": _to_bool,
        },
    ),
    LabelNamespace.PROXY_DOWNSTREAM: _LabelType(
        ProxyDownstreamLabel,
        {"id": _to_str, "ref_id": _to_str, "ip": _to_str, "mask": _to_int},
    ),
    LabelNamespace.PROXY_UPSTREAM: _LabelType(
        ProxyUpstreamLabel,
        {"id": _to_str, "listen_addr": _to_str, "listen_port": _to_int},
    ),
}


def _resolve_namespace(value: Any) -> LabelNamespace | None:
    if isinstance(value, LabelNamespace):
        return value
    try:
        return LabelNamespace(value)
    except ValueError:
        return None


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _field_to_key(name: str) -> str:
    return name.replace("_", "-")


def _key_to_field(key: str) -> str:
    return key.replace("-", "_")


def _normalize_prefix(prefix: str) -> str:
    return prefix.rstrip(".")


def _decode_entry(namespace: LabelNamespace, entry: LabelEntry) -> LabelModel:
    label_type = _LABEL_TYPES[namespace]
    values: dict[str, Any] = {}
    default_fields: list[str] = []

    for name, convert in label_type.converters.items():
        if name not in entry.fields:
            default_fields.append(name)
            continue
        try:
            values[name] = convert(entry.fields[name])
        except (TypeError, ValueError) as e:
            raise IncompleteInputException([name]) from e

    return LabelModel(
        namespace=namespace,
        value=label_type.model(**values),
        default_fields=default_fields,
    )


class LabelParser:
    """
    Decodes runner labels into typed models and encodes them back to labels.

    Usage:
        parser = LabelParser(runner.label).parse()
        identity = parser.get_instance(IdentityLabel)
        if identity.is_default("identity"):
            ...
        labels = parser.to_label_map("com.mysterium-proxy", exclude=["passphrase"])
    """

    def __init__(self, label: LabelEntry | list[LabelEntry] | None):
        """
        Args:
            label: One label entry, a list of entries, or None
        """
        self._label = label
        self._models: list[LabelModel] = []

    @property
    def models(self) -> list[LabelModel]:
        return list(self._models)

    def parse(self) -> "LabelParser":
        """
        Decode every label entry.

        Returns:
            self, to allow chaining

        Raises:
            UnrecognizedNamespaceException: If the label is empty or any entry
                                            has an unregistered namespace
            IncompleteInputException: If a supplied value cannot be converted
                                      to its field type
        """
        if self._label is None:
            entries: list[Any] = []
        elif isinstance(self._label, list):
            entries = self._label
        else:
            entries = [self._label]

        if not entries:
            raise UnrecognizedNamespaceException()

        models = []
        for entry in entries:
            raw_namespace = getattr(entry, "namespace", None)
            namespace = _resolve_namespace(raw_namespace)
            if namespace is None:
                raise UnrecognizedNamespaceException(raw_namespace)
            models.append(_decode_entry(namespace, entry))

        # Only publish the result once every entry resolved
        self._models = models
        return self

    def get_instance(self, model: type[T]) -> LabelModel[T]:
        """
        Get the decoded entry of a given label type.

        Args:
            model: Label class (IdentityLabel, ProviderLabel, ...)

        Returns:
            The LabelModel wrapping the instance

        Raises:
            MissingModelException: If no parsed entry has that type
        """
        for label_model in self._models:
            if isinstance(label_model.value, model):
                return label_model
        raise MissingModelException(model)

    def has_instance(self, model: type) -> bool:
        return any(isinstance(m.value, model) for m in self._models)

    def to_label_map(
        self, prefix: str, exclude: Iterable[str] = ()
    ) -> dict[str, str]:
        """
        Flatten every parsed entry into Docker labels.

        Fields still at their default, and fields named in `exclude`, are
        omitted.

        Args:
            prefix: Label namespace prefix (e.g. "com.mysterium-proxy")
            exclude: Field names never written (e.g. secrets)

        Returns:
            Mapping of "<prefix>.<namespace>.<kebab-field>" to string value
        """
        excluded = set(exclude)
        result: dict[str, str] = {}
        for label_model in self._models:
            result.update(_flatten(label_model, prefix, excluded))
        return result

    def to_label_map_for(
        self, model: type, prefix: str, exclude: Iterable[str] = ()
    ) -> dict[str, str]:
        """
        Flatten only the entry of one label type.

        Raises:
            MissingModelException: If no parsed entry has that type
        """
        return _flatten(self.get_instance(model), prefix, set(exclude))

    @staticmethod
    def object_to_label(
        prefix: str, labels: Mapping[str, str]
    ) -> LabelEntry | list[LabelEntry] | None:
        """
        Regroup flat Docker labels into label entries.

        Keys that do not follow "<prefix>.<namespace>.<field>" or whose
        namespace is not registered are ignored.

        Args:
            prefix: Label namespace prefix
            labels: Flat label mapping as returned by Docker

        Returns:
            None if nothing matched, a single LabelEntry if one namespace
            matched, otherwise a list of entries in first-seen order
        """
        pattern = re.compile(rf"^{re.escape(_normalize_prefix(prefix))}\.([^.]+)\.([^.]+)$")
        grouped: dict[LabelNamespace, LabelEntry] = {}

        for key, value in labels.items():
            match = pattern.match(key)
            if not match:
                continue
            namespace = _resolve_namespace(match.group(1))
            if namespace is None:
                continue
            entry = grouped.setdefault(namespace, LabelEntry(namespace=namespace))
            entry.fields[_key_to_field(match.group(2))] = value

        entries = list(grouped.values())
        if not entries:
            return None
        if len(entries) == 1:
            return entries[0]
        return entries


def _flatten(
    label_model: LabelModel, prefix: str, excluded: set[str]
) -> dict[str, str]:
    base = f"{_normalize_prefix(prefix)}.{label_model.namespace.value}"
    result = {}
    for f in dataclasses.fields(label_model.value):
        if f.name in excluded or label_model.is_default(f.name):
            continue
        result[f"{base}.{_field_to_key(f.name)}"] = _encode_value(
            getattr(label_model.value, f.name)
        )
    return result
