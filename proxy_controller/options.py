"""
Container options for the proxy fleet.

Each dataclass can be built from environment variables with `from_env()`;
every variable is optional and falls back to the default shown.

Environment Variables:
    DOCKER_LABEL_NAMESPACE: Label prefix (default: com.mysterium-proxy)
    DOCKER_PROJECT_NETWORK_NAME: Bridge network (default: network-mysterium-proxy-main)
    DOCKER_HOST_KEYSTORE_PATH: Host path that keystore sources resolve against
    DOCKER_MYST_IMAGE: Identity node image (default: myst-service:v1.0)
    DOCKER_MYST_HTTP_PORT: Identity node HTTP port (default: 4449)
    DOCKER_MYST_VOLUME_KEYSTORE_PATH: Keystore path inside the identity node
    DOCKER_MYST_CONNECT_IMAGE: Connector image (default: myst-connect-service:v1.0)
    DOCKER_MYST_API_BASE_ADDRESS: Control API handed to connectors
    DOCKER_SOCAT_IMAGE: Relay image (default: socat-service:v1.0)
    DOCKER_SOCAT_START_PORT: First host port published by relays (default: 3128)
    DOCKER_SOCAT_TARGET_PORT: Identity node port relays forward to (default: 10001)
    REDIS_HOST / REDIS_PORT / REDIS_DB: Cache handed to connectors
"""

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class DockerOptions:
    label_namespace: str = "com.mysterium-proxy"
    network_name: str = "network-mysterium-proxy-main"
    host_keystore_path: str | None = None

    def __post_init__(self) -> None:
        self.label_namespace = self.label_namespace.rstrip(".")

    @classmethod
    def from_env(cls) -> "DockerOptions":
        return cls(
            label_namespace=os.getenv("DOCKER_LABEL_NAMESPACE", cls.label_namespace),
            network_name=os.getenv("DOCKER_PROJECT_NETWORK_NAME", cls.network_name),
            host_keystore_path=os.getenv("DOCKER_HOST_KEYSTORE_PATH") or None,
        )


@dataclass
class IdentityContainerOptions:
    image: str = "myst-service:v1.0"
    http_port: int = 4449
    keystore_path: str = "/var/lib/mysterium-node/keystore/"
    name_prefix: str = "myst"
    volume_prefix: str = "myst-keystore"

    @classmethod
    def from_env(cls) -> "IdentityContainerOptions":
        return cls(
            image=os.getenv("DOCKER_MYST_IMAGE", cls.image),
            http_port=_env_int("DOCKER_MYST_HTTP_PORT", cls.http_port),
            keystore_path=os.getenv("DOCKER_MYST_VOLUME_KEYSTORE_PATH", cls.keystore_path),
        )


@dataclass
class ConnectorContainerOptions:
    image: str = "myst-connect-service:v1.0"
    name_prefix: str = "myst-connect"
    api_base_address: str = "http://127.0.0.1:4050"
    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_db: int = 0

    @classmethod
    def from_env(cls) -> "ConnectorContainerOptions":
        return cls(
            image=os.getenv("DOCKER_MYST_CONNECT_IMAGE", cls.image),
            api_base_address=os.getenv("DOCKER_MYST_API_BASE_ADDRESS", cls.api_base_address),
            redis_host=os.getenv("REDIS_HOST", cls.redis_host),
            redis_port=_env_int("REDIS_PORT", cls.redis_port),
            redis_db=_env_int("REDIS_DB", cls.redis_db),
        )


@dataclass
class RelayContainerOptions:
    image: str = "socat-service:v1.0"
    name_prefix: str = "socat"
    start_port: int = 3128
    private_port: int = 1234
    target_port: int = 10001

    @classmethod
    def from_env(cls) -> "RelayContainerOptions":
        return cls(
            image=os.getenv("DOCKER_SOCAT_IMAGE", cls.image),
            start_port=_env_int("DOCKER_SOCAT_START_PORT", cls.start_port),
            target_port=_env_int("DOCKER_SOCAT_TARGET_PORT", cls.target_port),
        )
