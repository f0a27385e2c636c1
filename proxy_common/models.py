"""
Domain models for the proxy fleet.

These models represent the runners (managed containers) and the read-models
assembled around them, independent of Docker or of any storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .labels import LabelEntry


class RunnerService(str, Enum):
    """Kind of service unit a runner implements."""

    IDENTITY = "identity"
    CONNECTOR = "connector"
    RELAY = "relay"


class RunnerExec(str, Enum):
    DOCKER = "docker"


class RunnerSocketType(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    NONE = "none"


class RunnerStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    ERROR = "error"

    @classmethod
    def from_docker_state(cls, state: str) -> "RunnerStatus":
        """
        Map a Docker container state to a runner status.

        Args:
            state: Docker state ("created", "running", "exited", ...)

        Returns:
            Matching RunnerStatus; unknown states map to ERROR
        """
        return _DOCKER_STATE_MAP.get(state.lower(), cls.ERROR)


_DOCKER_STATE_MAP = {
    "created": RunnerStatus.CREATING,
    "running": RunnerStatus.RUNNING,
    "restarting": RunnerStatus.RESTARTING,
    "exited": RunnerStatus.STOPPED,
    "paused": RunnerStatus.STOPPED,
    "dead": RunnerStatus.ERROR,
    "removing": RunnerStatus.ERROR,
}


class RunnerVolumeName(str, Enum):
    KEYSTORE = "keystore"


@dataclass
class RunnerVolume:
    """A volume attached to a runner (host source -> container destination)."""

    source: str
    dest: str | None = None
    name: RunnerVolumeName | None = None


@dataclass
class Runner:
    """
    A managed container instance representing one running service unit.

    Runners are created by the container creators and their status only ever
    changes through observation of the Docker runtime.
    """

    service: RunnerService
    id: str | None = None  # Stable id stored in the "<ns>.id" label
    serial: str | None = None  # Docker container id
    name: str | None = None
    exec: RunnerExec = RunnerExec.DOCKER
    socket_type: RunnerSocketType = RunnerSocketType.NONE
    socket_uri: str | None = None
    socket_port: int | None = None
    volumes: list[RunnerVolume] = field(default_factory=list)
    status: RunnerStatus = RunnerStatus.CREATING
    label: LabelEntry | list[LabelEntry] | None = None
    insert_date: datetime | None = None

    def get_volume(self, name: RunnerVolumeName) -> RunnerVolume | None:
        for volume in self.volumes:
            if volume.name == name:
                return volume
        return None


class VpnServiceType(str, Enum):
    WIREGUARD = "wireguard"


class VpnProviderName(str, Enum):
    MYSTERIUM = "mysterium"


class VpnProviderIpType(str, Enum):
    HOSTING = "hosting"
    RESIDENTIAL = "residential"
    BUSINESS = "business"
    MOBILE = "mobile"
    ORGANIZATION = "organization"
    EDUCATION = "education"


class VpnProviderStatus(str, Enum):
    OFFLINE = "offline"
    PENDING = "pending"
    ONLINE = "online"


@dataclass
class Provider:
    """
    A VPN provider as listed by the discovery API.

    `is_register`, `runner` and `provider_status` are never stored: they are
    computed per request by joining the provider with live runners.
    """

    id: str
    provider_identity: str
    provider_ip_type: VpnProviderIpType
    country: str
    service_type: VpnServiceType = VpnServiceType.WIREGUARD
    provider_name: VpnProviderName = VpnProviderName.MYSTERIUM
    user_identity: str | None = None
    provider_status: VpnProviderStatus | None = None
    ip: str | None = None
    quality: float | None = None
    bandwidth: float | None = None
    latency: float | None = None
    runner: Runner | None = None
    is_register: bool = False
    insert_date: datetime | None = None


@dataclass
class User:
    id: str
    username: str
    password: str | None = None
    is_enable: bool = True
    insert_date: datetime | None = None


class ProxyStatus(str, Enum):
    DISABLE = "disable"
    OFFLINE = "offline"
    ONLINE = "online"


@dataclass
class ProxyDownstream:
    """The outbound side of a proxy (which VPN connection traffic leaves by)."""

    id: str
    ref_id: str
    ip: str | None = None
    mask: int | None = None
    status: ProxyStatus = ProxyStatus.OFFLINE
    runner: Runner | None = None


@dataclass
class ProxyUpstream:
    """The listening side of a proxy, identified by its listen port."""

    id: str
    listen_addr: str
    listen_port: int
    proxy_downstream: list[ProxyDownstream] = field(default_factory=list)
    runner: Runner | None = None
    insert_date: datetime | None = None


class ProxyAclMode(str, Enum):
    ALL = "all"
    CUSTOM = "custom"


@dataclass
class ProxyAcl:
    """An access grant of one user to all proxies or to a custom list."""

    id: str
    mode: ProxyAclMode
    user: User
    proxies: list[ProxyUpstream] = field(default_factory=list)
    insert_date: datetime | None = None

    @property
    def user_id(self) -> str:
        return self.user.id


@dataclass
class UsersProxy(ProxyUpstream):
    """A proxy as seen by one user who has been granted access to it."""

    user: User | None = None

    @classmethod
    def from_upstream(cls, proxy: ProxyUpstream, user: User) -> "UsersProxy":
        """Reproject an inventory proxy with the user's identity attached."""
        return cls(
            id=proxy.id,
            listen_addr=proxy.listen_addr,
            listen_port=proxy.listen_port,
            proxy_downstream=proxy.proxy_downstream,
            runner=proxy.runner,
            insert_date=proxy.insert_date,
            user=User(id=user.id, username=user.username, password=user.password),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "listen_addr": self.listen_addr,
            "listen_port": self.listen_port,
            "user": {"id": self.user.id, "username": self.user.username}
            if self.user
            else None,
            "insert_date": _isoformat_utc(self.insert_date) if self.insert_date else None,
        }


def _isoformat_utc(value: datetime) -> str:
    # Naive datetimes are taken to be UTC already
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
