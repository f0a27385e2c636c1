"""
Unit tests for the runner creators.

These tests mock the container manager to exercise validation, allocation,
the retry state machine and cleanup without a Docker daemon.
"""

from unittest.mock import AsyncMock

import pytest

from proxy_common.exceptions import (
    AddressExhaustedException,
    CombineException,
    IncompleteInputException,
    MissingModelException,
    NotRunningServiceException,
    PortInUseException,
    RepositoryException,
)
from proxy_common.labels import LabelEntry, LabelNamespace
from proxy_common.models import (
    Runner,
    RunnerService,
    RunnerSocketType,
    RunnerStatus,
    RunnerVolume,
    RunnerVolumeName,
)
from proxy_controller.container_manager import ContainerInfo, DockerCommandError, NetworkInfo
from proxy_controller.creator import (
    ConnectorRunnerCreator,
    IdentityRunnerCreator,
    RelayRunnerCreator,
    is_retryable_collision,
    next_free_address,
    next_free_port,
    next_name_suffix,
)
from proxy_controller.options import DockerOptions

NS = "com.mysterium-proxy"
NETWORK = "network-mysterium-proxy-main"

ADDRESS_IN_USE = "Error response from daemon: Address already in use"
PORT_ALLOCATED = (
    "Error response from daemon: driver failed programming external connectivity: "
    "Bind for 0.0.0.0:3128 failed: port is already allocated"
)


def docker_error(stderr: str) -> DockerCommandError:
    return DockerCommandError(["start", "abc"], 125, stderr)


def container(container_id: str, name: str, **kwargs) -> ContainerInfo:
    return ContainerInfo(container_id=container_id, name=name, status="running", **kwargs)


def list_containers_by_query(stale=(), existing=(), identity_nodes=(), relays=()):
    """Answer list_containers() depending on which query the creator runs."""

    async def list_containers(labels=None, status=None, name=None, ids=None, all=True):
        if status == ["created"]:
            return list(stale)
        if status == ["running"]:
            return list(identity_nodes)
        if labels and any(label.endswith(".publish-port") for label in labels):
            return list(relays)
        return list(existing)

    return list_containers


def identity_entry(**fields) -> LabelEntry:
    return LabelEntry(LabelNamespace.IDENTITY, fields)


@pytest.fixture
def manager():
    """Create a mock container manager."""
    mgr = AsyncMock()
    mgr.list_containers = AsyncMock(side_effect=list_containers_by_query())
    mgr.inspect_network = AsyncMock(
        return_value=NetworkInfo(
            name=NETWORK,
            subnet="172.18.0.0/29",
            gateway="172.18.0.1",
            container_addresses=["172.18.0.2"],
        )
    )
    mgr.volume_exists = AsyncMock(return_value=True)
    mgr.create_volume = AsyncMock()
    mgr.create_container = AsyncMock(return_value="c0ffee0000000001")
    mgr.start_container = AsyncMock()
    mgr.remove_container = AsyncMock()
    return mgr


@pytest.fixture
def sleep():
    return AsyncMock()


class TestAllocation:
    """Test suite for address, name and port allocation."""

    def test_next_free_address_skips_reserved(self):
        """Test that subnet, gateway and bound addresses are never returned."""
        network = NetworkInfo(
            name=NETWORK,
            subnet="10.0.0.0/29",
            gateway="10.0.0.1",
            container_addresses=["10.0.0.2", "10.0.0.4"],
        )
        assert next_free_address(network) == "10.0.0.3"

    def test_next_free_address_never_returns_bound(self):
        """Test allocation against every partially filled /29."""
        hosts = [f"10.0.0.{i}" for i in range(2, 7)]
        for bound_count in range(len(hosts)):
            bound = hosts[:bound_count]
            network = NetworkInfo(
                name=NETWORK, subnet="10.0.0.0/29", gateway="10.0.0.1", container_addresses=bound
            )
            address = next_free_address(network)
            assert address not in bound
            assert address not in ("10.0.0.0", "10.0.0.1")

    def test_next_free_address_exhausted(self):
        """Test that a full network raises AddressExhaustedException."""
        network = NetworkInfo(
            name=NETWORK,
            subnet="10.0.0.0/29",
            gateway="10.0.0.1",
            container_addresses=[f"10.0.0.{i}" for i in range(2, 7)],
        )
        with pytest.raises(AddressExhaustedException):
            next_free_address(network)

    def test_next_name_suffix_fills_gaps(self):
        """Test that {1, 2, 4} gives 3, not 5."""
        assert next_name_suffix(["myst-1", "myst-2", "myst-4"], "myst") == 3

    def test_next_name_suffix_ignores_other_names(self):
        """Test that names of other prefixes do not count."""
        names = ["myst-connect-1", "myst-x", "/myst-1", "other-2"]
        assert next_name_suffix(names, "myst") == 2
        assert next_name_suffix([], "myst") == 1

    def test_next_free_port(self):
        """Test port allocation from the start port."""
        assert next_free_port([], 3128) == 3128
        assert next_free_port([3128, 3129, 3131], 3128) == 3130
        assert next_free_port([1000], 3128) == 3128

    @pytest.mark.parametrize(
        "stderr,expected",
        [
            (ADDRESS_IN_USE, True),
            ('Conflict. The container name "/myst-1" is already in use by container "abc"', True),
            (PORT_ALLOCATED, True),
            ("Error response from daemon: No such image: myst-service:v1.0", False),
        ],
    )
    def test_is_retryable_collision(self, stderr, expected):
        """Test classifying daemon errors."""
        assert is_retryable_collision(docker_error(stderr)) is expected

    def test_non_docker_errors_are_terminal(self):
        """Test that only daemon errors can be collisions."""
        assert not is_retryable_collision(RuntimeError(ADDRESS_IN_USE))
        assert not is_retryable_collision(None)


class TestIdentityRunnerCreator:
    """Test suite for IdentityRunnerCreator class."""

    @pytest.fixture
    def creator(self, manager, sleep):
        return IdentityRunnerCreator(
            manager,
            docker_options=DockerOptions(label_namespace=NS, network_name=NETWORK),
            id_factory=lambda: "runner-id",
            sleep=sleep,
        )

    @pytest.fixture
    def runner(self):
        return Runner(
            service=RunnerService.IDENTITY,
            label=identity_entry(id="identity-1", identity="0xidentity", passphrase="secret"),
            volumes=[RunnerVolume(source="/data/keystore/0xidentity", name=RunnerVolumeName.KEYSTORE)],
        )

    @pytest.mark.asyncio
    async def test_missing_fields_fail_before_docker(self, creator, manager):
        """Test that required fields are checked before any runtime call."""
        runner = Runner(service=RunnerService.IDENTITY, label=identity_entry(id="identity-1"))

        with pytest.raises(IncompleteInputException) as exc_info:
            await creator.create(runner)

        assert exc_info.value.fields == ["identity", "passphrase"]
        manager.list_containers.assert_not_called()
        manager.create_container.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_keystore_volume(self, creator, runner, manager):
        """Test that the keystore source is required."""
        runner.volumes = []

        with pytest.raises(IncompleteInputException) as exc_info:
            await creator.create(runner)

        assert exc_info.value.fields == ["volumes"]
        manager.volume_exists.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_success(self, creator, runner, manager):
        """Test a first-attempt success."""
        manager.list_containers.side_effect = list_containers_by_query(
            existing=[container("a", "myst-1"), container("b", "myst-2"), container("d", "myst-4")]
        )

        result = await creator.create(runner)

        spec = manager.create_container.call_args.args[0]
        assert spec.name == "myst-3"
        assert spec.ipv4_address == "172.18.0.3"
        assert spec.network == NETWORK
        assert spec.labels == {
            f"{NS}.id": "runner-id",
            f"{NS}.project": "identity",
            f"{NS}.create-by": "api",
            f"{NS}.identity.id": "identity-1",
            f"{NS}.identity.identity": "0xidentity",
            "autoheal": "true",
        }
        assert spec.env == {"MYST_IDENTITY": "0xidentity", "MYST_IDENTITY_PASS": "secret"}
        assert "myst-keystore-0xidentity:/var/lib/mysterium-node/keystore/" in spec.binds
        assert spec.cap_add == ["NET_ADMIN"]
        assert spec.devices == ["/dev/net/tun"]
        manager.start_container.assert_awaited_once_with("c0ffee0000000001")
        manager.create_volume.assert_not_called()
        manager.remove_container.assert_not_called()

        assert result.id == "runner-id"
        assert result.serial == "c0ffee0000000001"
        assert result.name == "myst-3"
        assert result.status == RunnerStatus.RUNNING
        assert result.socket_type == RunnerSocketType.HTTP
        assert result.socket_uri == "172.18.0.3"
        assert result.socket_port == 4449
        assert result.get_volume(RunnerVolumeName.KEYSTORE).dest == "/var/lib/mysterium-node/keystore/"

    @pytest.mark.asyncio
    async def test_creates_missing_keystore_volume(self, creator, runner, manager):
        """Test that the keystore volume is bind-mounted from the caller's source."""
        manager.volume_exists.return_value = False

        await creator.create(runner)

        manager.create_volume.assert_awaited_once()
        call = manager.create_volume.call_args
        assert call.args[0] == "myst-keystore-0xidentity"
        assert call.kwargs["driver_opts"] == {
            "type": "none",
            "o": "bind",
            "device": "/data/keystore/0xidentity",
        }
        assert call.kwargs["labels"][f"{NS}.volume.identity.identity"] == "0xidentity"
        assert not any("passphrase" in key for key in call.kwargs["labels"])

    @pytest.mark.asyncio
    async def test_volume_error_is_wrapped(self, creator, runner, manager):
        """Test that volume failures surface as RepositoryException."""
        manager.volume_exists.side_effect = docker_error("Cannot connect to the Docker daemon")

        with pytest.raises(RepositoryException) as exc_info:
            await creator.create(runner)

        assert not exc_info.value.container_created
        manager.create_container.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_created_containers_removed_first(self, creator, runner, manager):
        """Test that never-started leftovers of this identity are removed."""
        manager.list_containers.side_effect = list_containers_by_query(
            stale=[ContainerInfo(container_id="stale000000001", name="myst-1", status="created")]
        )

        await creator.create(runner)

        stale_query = manager.list_containers.call_args_list[0]
        assert stale_query.kwargs["status"] == ["created"]
        assert stale_query.kwargs["labels"] == [
            f"{NS}.project=identity",
            f"{NS}.identity.id=identity-1",
            f"{NS}.identity.identity=0xidentity",
        ]
        manager.remove_container.assert_awaited_once_with(
            "stale000000001", force=True, volumes=True
        )

    @pytest.mark.asyncio
    async def test_retry_ceiling(self, creator, runner, manager, sleep):
        """Test that a permanent address collision fails after exactly 3 attempts."""
        manager.start_container.side_effect = docker_error(ADDRESS_IN_USE)

        with pytest.raises(RepositoryException) as exc_info:
            await creator.create(runner)

        assert manager.create_container.await_count == 3
        assert manager.remove_container.await_count == 3
        assert sleep.await_count == 2
        for call in sleep.call_args_list:
            assert 1 <= call.args[0] <= 4
        assert exc_info.value.container_created
        assert isinstance(exc_info.value.error, DockerCommandError)

    @pytest.mark.asyncio
    async def test_collision_then_success(self, creator, runner, manager, sleep):
        """Test that a collision is retried invisibly."""
        manager.create_container.side_effect = ["first0000000001", "second000000001"]
        manager.start_container.side_effect = [docker_error(ADDRESS_IN_USE), None]

        result = await creator.create(runner)

        assert result.serial == "second000000001"
        manager.remove_container.assert_awaited_once_with(
            "first0000000001", force=True, volumes=True
        )
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_terminal_start_failure_cleans_up(self, creator, runner, manager, sleep):
        """Test that a non-collision start failure removes the container once."""
        manager.start_container.side_effect = docker_error("OCI runtime create failed")

        with pytest.raises(RepositoryException) as exc_info:
            await creator.create(runner)

        assert exc_info.value.container_created
        assert exc_info.value.container_id == "c0ffee0000000001"
        manager.remove_container.assert_awaited_once_with(
            "c0ffee0000000001", force=True, volumes=True
        )
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_terminal_create_failure_needs_no_cleanup(self, creator, runner, manager):
        """Test that nothing is removed when no container was instantiated."""
        manager.create_container.side_effect = docker_error("No such image: myst-service:v1.0")

        with pytest.raises(RepositoryException) as exc_info:
            await creator.create(runner)

        assert not exc_info.value.container_created
        manager.remove_container.assert_not_called()

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_combined(self, creator, runner, manager):
        """Test that a failed cleanup is surfaced with the primary failure."""
        manager.start_container.side_effect = docker_error("OCI runtime create failed")
        manager.remove_container.side_effect = docker_error("removal already in progress")

        with pytest.raises(CombineException) as exc_info:
            await creator.create(runner)

        primary, cleanup = exc_info.value.errors
        assert isinstance(primary, RepositoryException)
        assert "OCI runtime" in str(primary.error)
        assert isinstance(cleanup, RepositoryException)
        assert "removal already in progress" in str(cleanup.error)

    @pytest.mark.asyncio
    async def test_address_exhausted(self, creator, runner, manager):
        """Test that a full network fails without creating anything."""
        manager.inspect_network.return_value = NetworkInfo(
            name=NETWORK,
            subnet="172.18.0.0/30",
            gateway="172.18.0.1",
            container_addresses=["172.18.0.2"],
        )

        with pytest.raises(AddressExhaustedException):
            await creator.create(runner)

        manager.create_container.assert_not_called()


class TestConnectorRunnerCreator:
    """Test suite for ConnectorRunnerCreator class."""

    @pytest.fixture
    def creator(self, manager, sleep):
        return ConnectorRunnerCreator(
            manager,
            docker_options=DockerOptions(label_namespace=NS, network_name=NETWORK),
            id_factory=lambda: "connector-id",
            sleep=sleep,
        )

    @pytest.fixture
    def runner(self):
        return Runner(
            service=RunnerService.CONNECTOR,
            label=[
                identity_entry(id="identity-1", identity="0xidentity"),
                LabelEntry(
                    LabelNamespace.PROVIDER,
                    {"id": "provider-1", "provider_identity": "0xprovider", "user_identity": "0xidentity"},
                ),
            ],
        )

    @pytest.mark.asyncio
    async def test_requires_running_identity_node(self, creator, runner, manager):
        """Test that a connector cannot start without its identity node."""
        with pytest.raises(NotRunningServiceException):
            await creator.create(runner)

        query = manager.list_containers.call_args
        assert query.kwargs["labels"] == [f"{NS}.project=identity", f"{NS}.identity.id=identity-1"]
        manager.create_container.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_user_identity(self, creator, runner):
        """Test that a blank user identity is rejected."""
        runner.label[1].fields["user_identity"] = ""

        with pytest.raises(IncompleteInputException) as exc_info:
            await creator.create(runner)

        assert exc_info.value.fields == ["user_identity"]

    @pytest.mark.asyncio
    async def test_create_success(self, creator, runner, manager):
        """Test joining the identity node's network namespace."""
        node = container("identityserial01", "myst-1", networks={NETWORK: "172.18.0.2"})
        manager.list_containers.side_effect = list_containers_by_query(
            identity_nodes=[node], existing=[container("x", "myst-connect-1")]
        )

        result = await creator.create(runner)

        spec = manager.create_container.call_args.args[0]
        assert spec.name == "myst-connect-2"
        assert spec.network == "container:identityserial01"
        assert spec.ipv4_address is None
        assert spec.env["PROVIDER_IDENTITY"] == "0xprovider"
        assert spec.env["API_PROVIDER_ID"] == "provider-1"
        assert spec.labels[f"{NS}.provider.provider-identity"] == "0xprovider"
        manager.inspect_network.assert_not_called()

        assert result.service == RunnerService.CONNECTOR
        assert result.socket_type == RunnerSocketType.NONE
        assert result.status == RunnerStatus.RUNNING


class TestRelayRunnerCreator:
    """Test suite for RelayRunnerCreator class."""

    @pytest.fixture
    def creator(self, manager, sleep):
        return RelayRunnerCreator(
            manager,
            docker_options=DockerOptions(label_namespace=NS, network_name=NETWORK),
            id_factory=lambda: "relay-id",
            sleep=sleep,
        )

    @pytest.fixture
    def identity_node(self):
        return container("identityserial01", "myst-1", networks={NETWORK: "172.18.0.2"})

    def make_runner(self, socket_port=None):
        return Runner(
            service=RunnerService.RELAY,
            socket_port=socket_port,
            label=[
                identity_entry(id="identity-1"),
                LabelEntry(LabelNamespace.PROVIDER, {"id": "provider-1"}),
                LabelEntry(LabelNamespace.PROXY_UPSTREAM, {"id": "upstream-1"}),
            ],
        )

    @pytest.mark.asyncio
    async def test_create_with_next_free_port(self, creator, manager, identity_node):
        """Test that the first unused host port is published."""
        relays = [
            container("r1", "socat-1", labels={f"{NS}.publish-port": "3128"}),
            container("r2", "socat-2", labels={f"{NS}.publish-port": "3129"}),
            container("r3", "socat-3", labels={f"{NS}.publish-port": "3131"}),
        ]
        manager.list_containers.side_effect = list_containers_by_query(
            identity_nodes=[identity_node], existing=relays, relays=relays
        )

        result = await creator.create(self.make_runner())

        spec = manager.create_container.call_args.args[0]
        assert spec.name == "socat-4"
        assert spec.published_ports == {3130: 1234}
        assert spec.labels[f"{NS}.publish-port"] == "3130"
        assert spec.command == ["TCP-LISTEN:1234,fork", "TCP:172.18.0.2:10001"]
        assert result.socket_type == RunnerSocketType.TCP
        assert result.socket_port == 3130

    @pytest.mark.asyncio
    async def test_port_collision_moves_to_next_port(self, creator, manager, identity_node, sleep):
        """Test that a port lost to a concurrent creator is skipped on retry."""
        manager.list_containers.side_effect = list_containers_by_query(identity_nodes=[identity_node])
        manager.start_container.side_effect = [docker_error(PORT_ALLOCATED), None]

        result = await creator.create(self.make_runner())

        first, second = [c.args[0] for c in manager.create_container.call_args_list]
        assert first.published_ports == {3128: 1234}
        assert second.published_ports == {3129: 1234}
        assert result.socket_port == 3129
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fixed_port_in_use(self, creator, manager, identity_node, sleep):
        """Test that a requested port already taken is reported, not retried."""
        manager.list_containers.side_effect = list_containers_by_query(identity_nodes=[identity_node])
        manager.start_container.side_effect = docker_error(PORT_ALLOCATED)

        with pytest.raises(PortInUseException) as exc_info:
            await creator.create(self.make_runner(socket_port=3128))

        assert exc_info.value.port == 3128
        assert manager.create_container.await_count == 1
        manager.remove_container.assert_awaited_once()
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_identity_node_off_network(self, creator, manager):
        """Test that the identity node must be reachable on the bridge network."""
        node = container("identityserial01", "myst-1", networks={"bridge": "172.17.0.2"})
        manager.list_containers.side_effect = list_containers_by_query(identity_nodes=[node])

        with pytest.raises(NotRunningServiceException):
            await creator.create(self.make_runner())

    @pytest.mark.asyncio
    async def test_requires_upstream_label(self, creator):
        """Test that the proxy upstream owner must be present."""
        runner = self.make_runner()
        runner.label = runner.label[:2]

        with pytest.raises(MissingModelException):
            await creator.create(runner)
