"""Tests for SyncBluetoothManager with fake bleak objects."""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakes import FakeClientFactory, FakeClock, FakeScannerFactory, wait_until

from projlink.api.protocol import encode
from projlink.api.sync import GeneralCommand, GeneralResponse
from projlink.core.ble import SYNC_SERVICE_UUID, SyncBluetoothManager
from projlink.models.link import ConnectionState, LinkPhase, Role
from projlink.models.settings import BleSettings

ADDRESS = "AA:BB:CC:DD:EE:FF"
OTHER = "11:22:33:44:55:66"


def make_manager(
    settings: BleSettings,
    client_factory: FakeClientFactory,
    scanner_factory: FakeScannerFactory | None = None,
    clock: FakeClock | None = None,
) -> SyncBluetoothManager:
    return SyncBluetoothManager(
        settings,
        scanner_factory=scanner_factory or FakeScannerFactory(),
        client_factory=client_factory,
        clock=clock or FakeClock(),
    )


@pytest.fixture
async def manager(
    ble_settings: BleSettings,
    client_factory: FakeClientFactory,
    scanner_factory: FakeScannerFactory,
    clock: FakeClock,
):
    """Fixture providing a manager released after the test."""
    manager = make_manager(ble_settings, client_factory, scanner_factory, clock)
    yield manager
    await manager.release()


class TestScanning:
    """Tests for scanning and scan record freshness."""

    @pytest.mark.asyncio
    async def test_scan_filters_by_service(
        self, manager: SyncBluetoothManager, scanner_factory: FakeScannerFactory
    ) -> None:
        """Test the scanner is filtered by the sync service."""
        await manager.start_scan()

        scanner = scanner_factory.scanners[-1]
        assert scanner.started
        assert scanner.service_uuids == [SYNC_SERVICE_UUID]
        assert manager.is_scanning

    @pytest.mark.asyncio
    async def test_advertisement_recorded(
        self, manager: SyncBluetoothManager, scanner_factory: FakeScannerFactory
    ) -> None:
        """Test advertisements become scan records and notify the handler."""
        snapshots: list[list[str]] = []
        manager.set_peer_handlers(
            on_scan_results_changed=lambda rs: snapshots.append([r.address for r in rs])
        )
        await manager.start_scan()

        scanner_factory.scanners[-1].advertise(ADDRESS, "Projector-L", rssi=-42)

        [record] = manager.scan_results
        assert record.address == ADDRESS
        assert record.name == "Projector-L"
        assert record.rssi == -42
        assert snapshots[-1] == [ADDRESS]

    @pytest.mark.asyncio
    async def test_restart_clears_results(
        self, manager: SyncBluetoothManager, scanner_factory: FakeScannerFactory
    ) -> None:
        """Test a new scan starts from an empty list and stops the old one."""
        await manager.start_scan()
        first = scanner_factory.scanners[-1]
        first.advertise(ADDRESS, "Projector-L")

        await manager.start_scan()

        assert first.stopped
        assert manager.scan_results == []

    @pytest.mark.asyncio
    async def test_stale_record_pruned(
        self, manager: SyncBluetoothManager, clock: FakeClock
    ) -> None:
        """Test a record unseen for longer than the window is pruned."""
        manager.record_observation(ADDRESS, "Projector-L")
        assert [r.address for r in manager.scan_results] == [ADDRESS]

        clock.now = 6.0
        assert manager.prune_stale() == [ADDRESS]
        assert manager.scan_results == []

    @pytest.mark.asyncio
    async def test_refreshed_record_kept(
        self, manager: SyncBluetoothManager, clock: FakeClock
    ) -> None:
        """Test a fresh observation keeps the record alive."""
        manager.record_observation(ADDRESS)
        clock.now = 4.0
        manager.record_observation(ADDRESS)
        clock.now = 6.0
        assert manager.prune_stale() == []

    @pytest.mark.asyncio
    async def test_connected_record_kept(
        self, manager: SyncBluetoothManager, clock: FakeClock
    ) -> None:
        """Test a linked peer survives pruning however old its record is."""
        manager.record_observation(ADDRESS)
        manager.connect(ADDRESS)
        await wait_until(lambda: manager.state is ConnectionState.CONNECTED)

        clock.now = 6.0
        manager.prune_stale()

        assert [r.address for r in manager.scan_results] == [ADDRESS]

    @pytest.mark.asyncio
    async def test_prune_task_runs_while_scanning(
        self, manager: SyncBluetoothManager, scanner_factory: FakeScannerFactory, clock: FakeClock
    ) -> None:
        """Test pruning happens periodically during a scan."""
        await manager.start_scan()
        scanner_factory.scanners[-1].advertise(ADDRESS)

        clock.advance(6.0)
        await wait_until(lambda: manager.scan_results == [])

    @pytest.mark.asyncio
    async def test_scan_refused_while_radio_off(
        self, manager: SyncBluetoothManager, scanner_factory: FakeScannerFactory
    ) -> None:
        """Test no scan starts with the radio off."""
        manager.on_radio_state_changed(False)
        await manager.start_scan()
        assert scanner_factory.scanners == []


class TestConnecting:
    """Tests for link establishment and retries."""

    @pytest.mark.asyncio
    async def test_connect_success(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test a healthy peer ends up subscribed."""
        devices: list[list[str]] = []
        manager.set_peer_handlers(on_connected_devices_changed=devices.append)

        manager.connect(ADDRESS)
        assert manager.state is ConnectionState.CONNECTING
        await wait_until(lambda: manager.state is ConnectionState.CONNECTED)

        assert manager.phase(ADDRESS) is LinkPhase.SUBSCRIBED
        assert manager.connected_devices == [ADDRESS]
        assert devices[-1] == [ADDRESS]
        [client] = client_factory.clients
        assert client.notify_callback is not None
        assert client.timeout == manager.settings.connect_timeout

    @pytest.mark.asyncio
    async def test_duplicate_connect_single_attempt(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test a second connect while in flight starts nothing."""
        manager.connect(ADDRESS)
        manager.connect(ADDRESS)
        await wait_until(lambda: manager.is_linked)
        manager.connect(ADDRESS)
        await asyncio.sleep(0.02)

        assert len(client_factory.clients) == 1

    @pytest.mark.asyncio
    async def test_empty_address_rejected(self, manager: SyncBluetoothManager) -> None:
        """Test connect requires an address."""
        with pytest.raises(ValueError):
            manager.connect("")

    @pytest.mark.asyncio
    async def test_retries_then_abandons(self, ble_settings: BleSettings) -> None:
        """Test an always-failing peer gets one attempt plus three retries."""
        factory = FakeClientFactory(fail_connect=True)
        manager = make_manager(ble_settings, factory)
        try:
            manager.connect(ADDRESS)
            await wait_until(lambda: manager.state is ConnectionState.ERROR)
            await asyncio.sleep(0.05)

            assert len(factory.clients) == 4
            assert all(c.disconnect_calls == 1 for c in factory.clients)
            assert manager.phase(ADDRESS) is LinkPhase.ERROR
            assert manager.retry_count(ADDRESS) == 0
            assert manager.is_connecting(ADDRESS) is False

            # A new top-level connect restores the budget
            manager.connect(ADDRESS)
            await wait_until(lambda: len(factory.clients) == 8)
            await wait_until(lambda: manager.state is ConnectionState.ERROR)
        finally:
            await manager.release()

    @pytest.mark.asyncio
    async def test_retry_spacing(self) -> None:
        """Test retries wait the retry delay."""
        settings = BleSettings(retry_delay=0.05, connect_settle_delay=0.0, max_retries=2)
        factory = FakeClientFactory(fail_connect=True)
        manager = make_manager(settings, factory)
        started = time.monotonic()
        try:
            manager.connect(ADDRESS)
            await wait_until(lambda: manager.state is ConnectionState.ERROR)
        finally:
            await manager.release()

        assert len(factory.clients) == 3
        assert time.monotonic() - started >= 0.1

    @pytest.mark.asyncio
    async def test_missing_service_fails(self, ble_settings: BleSettings) -> None:
        """Test a peer without the sync service is not linked."""
        factory = FakeClientFactory(missing_service=True)
        manager = make_manager(ble_settings, factory)
        try:
            manager.connect(ADDRESS)
            await wait_until(lambda: manager.state is ConnectionState.ERROR)
        finally:
            await manager.release()

        assert len(factory.clients) == 4
        assert manager.connected_devices == []

    @pytest.mark.asyncio
    async def test_missing_characteristic_fails(self, ble_settings: BleSettings) -> None:
        """Test a peer without the notify characteristic is not linked."""
        factory = FakeClientFactory(missing_characteristic=True)
        manager = make_manager(ble_settings, factory)
        try:
            manager.connect(ADDRESS)
            await wait_until(lambda: manager.state is ConnectionState.ERROR)
        finally:
            await manager.release()

        assert all(c.notify_callback is None for c in factory.clients)

    @pytest.mark.asyncio
    async def test_multiple_peers(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test several projectors can be linked at once."""
        manager.connect(ADDRESS)
        manager.connect(OTHER)
        await wait_until(lambda: len(manager.connected_devices) == 2)
        assert sorted(manager.connected_devices) == sorted([ADDRESS, OTHER])

    @pytest.mark.asyncio
    async def test_mtu_negotiated_through_backend(self, manager: SyncBluetoothManager) -> None:
        """Test a small MTU triggers an explicit acquire and is capped at the target."""
        client = MagicMock()
        client.mtu_size = 23

        async def acquire() -> None:
            client.mtu_size = 247

        client._backend._acquire_mtu = AsyncMock(side_effect=acquire)

        assert await manager._negotiate_mtu(client) == manager.settings.target_mtu
        client._backend._acquire_mtu.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_small_mtu_tolerated(self, ble_settings: BleSettings) -> None:
        """Test a peer stuck at a small MTU still links."""
        factory = FakeClientFactory(mtu=100)
        manager = make_manager(ble_settings, factory)
        try:
            manager.connect(ADDRESS)
            await wait_until(lambda: manager.is_linked)
        finally:
            await manager.release()


class TestMessaging:
    """Tests for notifications and writes."""

    @pytest.mark.asyncio
    async def test_notification_reaches_listeners(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test notified frames are decoded and tagged with the sender."""
        received: list[tuple[str, str]] = []
        manager.add_listener(lambda command, sender: received.append((command, sender)))
        manager.connect(ADDRESS)
        await wait_until(lambda: manager.is_linked)

        client = client_factory.clients[0]
        client.notify(b"garbage")
        client.notify(encode(GeneralResponse(command="WIFI_IP", value="192.168.1.20")))
        await wait_until(lambda: bool(received))

        assert received == [("WIFI_IP:192.168.1.20", ADDRESS)]

    @pytest.mark.asyncio
    async def test_dispatch_writes_to_peer(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test a dispatched command is written without response."""
        manager.configure(Role.INITIATOR, ADDRESS)
        await wait_until(lambda: manager.is_linked)

        assert manager.dispatch_command("play") is True
        client = client_factory.clients[0]
        await wait_until(lambda: bool(client.writes))

        assert client.writes == [encode(GeneralCommand(command="play"))]

    @pytest.mark.asyncio
    async def test_request_written_with_id(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test dispatch_request writes a request carrying its id."""
        manager.configure(Role.INITIATOR, ADDRESS)
        await wait_until(lambda: manager.is_linked)

        request_id = manager.dispatch_request("WIFI_IP")
        client = client_factory.clients[0]
        await wait_until(lambda: bool(client.writes))

        assert json.loads(client.writes[0]) == {
            "type": "GeneralRequest",
            "command": "WIFI_IP",
            "requestId": request_id,
        }

    @pytest.mark.asyncio
    async def test_responder_broadcasts_to_all(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test a RESPONDER writes to every linked peer."""
        manager.configure(Role.RESPONDER)
        manager.connect(ADDRESS)
        manager.connect(OTHER)
        await wait_until(lambda: len(manager.connected_devices) == 2)

        manager.dispatch_command("sync")
        await wait_until(lambda: all(c.writes for c in client_factory.clients))


class TestDisconnecting:
    """Tests for link teardown."""

    @pytest.mark.asyncio
    async def test_disconnect(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test disconnect closes the link and cleans up."""
        manager.connect(ADDRESS)
        await wait_until(lambda: manager.is_linked)

        await manager.disconnect(ADDRESS)

        assert client_factory.clients[0].disconnect_calls == 1
        assert manager.connected_devices == []
        assert manager.phase(ADDRESS) is LinkPhase.DISCONNECTED
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_times_out(self, ble_settings: BleSettings) -> None:
        """Test cleanup is forced when no disconnect callback arrives."""
        factory = FakeClientFactory(fire_disconnect=False)
        manager = make_manager(ble_settings, factory)
        try:
            manager.connect(ADDRESS)
            await wait_until(lambda: manager.is_linked)

            started = time.monotonic()
            await manager.disconnect(ADDRESS)
            elapsed = time.monotonic() - started

            assert elapsed >= ble_settings.disconnect_timeout * 0.9
            assert manager.connected_devices == []
            assert manager.state is ConnectionState.DISCONNECTED
        finally:
            await manager.release()

    @pytest.mark.asyncio
    async def test_link_loss(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test an unexpected drop cleans up without reconnecting."""
        manager.connect(ADDRESS)
        await wait_until(lambda: manager.is_linked)

        client_factory.clients[0].drop()

        assert manager.connected_devices == []
        assert manager.state is ConnectionState.DISCONNECTED
        await asyncio.sleep(0.02)
        assert len(client_factory.clients) == 1

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_retry(self) -> None:
        """Test disconnect stops a scheduled retry."""
        settings = BleSettings(retry_delay=0.1, connect_settle_delay=0.0)
        factory = FakeClientFactory(fail_connect=True)
        manager = make_manager(settings, factory)
        try:
            manager.connect(ADDRESS)
            await wait_until(
                lambda: len(factory.clients) == 1 and manager.retry_count(ADDRESS) == 1
            )
            await manager.disconnect(ADDRESS)
            await asyncio.sleep(0.2)

            assert len(factory.clients) == 1
            assert manager.state is ConnectionState.DISCONNECTED
        finally:
            await manager.release()

    @pytest.mark.asyncio
    async def test_teardown_closes_all(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test teardown disconnects every peer."""
        manager.connect(ADDRESS)
        manager.connect(OTHER)
        await wait_until(lambda: len(manager.connected_devices) == 2)

        await manager.teardown()

        assert all(c.disconnect_calls == 1 for c in client_factory.clients)
        assert manager.connected_devices == []
        assert manager.state is ConnectionState.DISCONNECTED


class TestRadioState:
    """Tests for radio power changes."""

    @pytest.mark.asyncio
    async def test_radio_off_drops_links(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test switching the radio off closes links and moves to OFF."""
        manager.connect(ADDRESS)
        await wait_until(lambda: manager.is_linked)

        manager.on_radio_state_changed(False)

        assert manager.state is ConnectionState.OFF
        assert manager.connected_devices == []
        await wait_until(lambda: client_factory.clients[0].disconnect_calls == 1)
        assert manager.state is ConnectionState.OFF

    @pytest.mark.asyncio
    async def test_connect_refused_while_off(
        self, manager: SyncBluetoothManager, client_factory: FakeClientFactory
    ) -> None:
        """Test no attempt starts while the radio is off."""
        manager.on_radio_state_changed(False)
        manager.connect(ADDRESS)
        await asyncio.sleep(0.02)

        assert client_factory.clients == []
        assert manager.state is ConnectionState.OFF

    @pytest.mark.asyncio
    async def test_radio_off_cancels_attempt(self, client_factory: FakeClientFactory) -> None:
        """Test an attempt waiting to start is abandoned when the radio goes off."""
        settings = BleSettings(connect_settle_delay=0.1)
        manager = make_manager(settings, client_factory)
        try:
            manager.connect(ADDRESS)
            manager.on_radio_state_changed(False)
            await asyncio.sleep(0.15)

            assert client_factory.clients == []
            assert manager.is_connecting(ADDRESS) is False
        finally:
            await manager.release()

    @pytest.mark.asyncio
    async def test_radio_back_on(self, manager: SyncBluetoothManager) -> None:
        """Test the radio coming back moves to DISCONNECTED without reconnecting."""
        manager.on_radio_state_changed(False)
        manager.on_radio_state_changed(True)

        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.is_radio_off is False
