"""Short-range link manager over BLE GATT.

The manager acts as GATT central towards one or more projectors. Each peer
goes through::

    IDLE -> CONNECTING -> SERVICE_DISCOVERY -> MTU_NEGOTIATION -> SUBSCRIBED

and drops to ERROR from any step. A failed attempt is torn down and retried
after a fixed delay until the retry budget is spent; a fresh top-level
:meth:`SyncBluetoothManager.connect` restores the budget.

Scanning is filtered by the sync service UUID. Scan records are refreshed on
every advertisement and pruned once they go stale, unless the peer is linked.

Peer maps are guarded by a plain lock because scanner, GATT and radio-state
callbacks may run outside the manager's own tasks. Nothing is awaited while
the lock is held.

Example:
    manager = SyncBluetoothManager()
    manager.add_listener(lambda command, sender: print(command, sender))
    await manager.start_scan()
    manager.configure(Role.INITIATOR, "AA:BB:CC:DD:EE:FF")
"""

import asyncio
import functools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from projlink.api.protocol import ProtocolMessage, RequestIdGenerator, encode
from projlink.core.manager import BaseCommunicationManager
from projlink.models.link import ConnectionState, LinkPhase
from projlink.models.scan_record import ScanRecord
from projlink.models.settings import BleSettings

logger = logging.getLogger(__name__)

# GATT layout of the projector's sync service
SYNC_SERVICE_UUID = "a9422624-7662-471d-bba5-706b53e78ac6"
WRITE_CHARACTERISTIC_UUID = "a9422625-7662-471d-bba5-706b53e78ac6"  # central -> projector
NOTIFY_CHARACTERISTIC_UUID = "a9422626-7662-471d-bba5-706b53e78ac6"  # projector -> central
CCCD_DESCRIPTOR_UUID = "00002902-0000-1000-8000-00805f9b34fb"

# ATT opcode + handle overhead per write
ATT_HEADER_SIZE = 3

ScanResultsHandler = Callable[[list[ScanRecord]], None]
ConnectedDevicesHandler = Callable[[list[str]], None]


class LinkNegotiationError(Exception):
    """The peer does not expose the expected service or characteristics."""


_LINK_ERRORS = (BleakError, LinkNegotiationError, OSError, TimeoutError)


@dataclass(eq=False)
class _PeerLink:
    """A subscribed peer and its write channel."""

    address: str
    client: BleakClient
    write_char: BleakGATTCharacteristic
    mtu: int
    closed: asyncio.Event = field(default_factory=asyncio.Event)


class SyncBluetoothManager(BaseCommunicationManager):
    """GATT central managing several concurrently linked projectors."""

    def __init__(
        self,
        settings: BleSettings | None = None,
        scanner_factory: Callable[..., Any] = BleakScanner,
        client_factory: Callable[..., Any] = BleakClient,
        clock: Callable[[], float] = time.monotonic,
        request_ids: RequestIdGenerator | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            settings: Retry, timing and MTU settings.
            scanner_factory: Builds the scanner (``BleakScanner`` signature).
            client_factory: Builds a GATT client (``BleakClient`` signature).
            clock: Monotonic time source used for scan freshness.
            request_ids: Request id source.
        """
        super().__init__("ble", request_ids)
        self._settings = settings or BleSettings()
        self._scanner_factory = scanner_factory
        self._client_factory = client_factory
        self._clock = clock

        self._lock = threading.Lock()
        self._links: dict[str, _PeerLink] = {}
        self._in_flight: set[str] = set()
        self._retries: dict[str, int] = {}
        self._phases: dict[str, LinkPhase] = {}
        self._attempt_tasks: dict[str, asyncio.Task[None]] = {}
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._scan_records: dict[str, ScanRecord] = {}

        self._scanner: Any = None
        self._prune_task: asyncio.Task[None] | None = None
        self._radio_off = False

        self._on_scan_results_changed: ScanResultsHandler | None = None
        self._on_connected_devices_changed: ConnectedDevicesHandler | None = None

    @property
    def settings(self) -> BleSettings:
        """Return the link settings."""
        return self._settings

    @property
    def is_linked(self) -> bool:
        """Return True if at least one peer is subscribed."""
        with self._lock:
            return bool(self._links)

    @property
    def is_scanning(self) -> bool:
        """Return True while a scan is running."""
        return self._scanner is not None

    @property
    def is_radio_off(self) -> bool:
        """Return True while the radio is reported disabled."""
        return self._radio_off

    @property
    def scan_results(self) -> list[ScanRecord]:
        """Return a snapshot of the current scan records."""
        with self._lock:
            return list(self._scan_records.values())

    @property
    def connected_devices(self) -> list[str]:
        """Return addresses of subscribed peers."""
        with self._lock:
            return list(self._links)

    def phase(self, address: str) -> LinkPhase:
        """Return the link phase of ``address``."""
        with self._lock:
            return self._phases.get(address, LinkPhase.IDLE)

    def retry_count(self, address: str) -> int:
        """Return the retries already used for ``address``."""
        with self._lock:
            return self._retries.get(address, 0)

    def is_connecting(self, address: str) -> bool:
        """Return True if an attempt or retry is pending for ``address``."""
        with self._lock:
            return address in self._in_flight or address in self._retry_tasks

    def set_peer_handlers(
        self,
        on_scan_results_changed: ScanResultsHandler | None = None,
        on_connected_devices_changed: ConnectedDevicesHandler | None = None,
    ) -> None:
        """Set callbacks for scan result and connected device changes."""
        self._on_scan_results_changed = on_scan_results_changed
        self._on_connected_devices_changed = on_connected_devices_changed

    # --- Scanning ---

    async def start_scan(self) -> None:
        """Start a filtered scan and the pruning task.

        Previous results are cleared so only fresh devices are listed.
        """
        if self._radio_off:
            logger.warning("Cannot scan: radio is off")
            return

        await self.stop_scan()
        with self._lock:
            self._scan_records.clear()
        self._emit_scan_results()

        # Let the stack settle after stopping the previous scan
        await asyncio.sleep(self._settings.scan_settle_delay)

        logger.debug("Starting BLE scan...")
        scanner = self._scanner_factory(
            detection_callback=self._on_device_detected,
            service_uuids=[SYNC_SERVICE_UUID],
        )
        try:
            await scanner.start()
        except _LINK_ERRORS as e:
            logger.error("Scan start failed: %s", e)
            return

        self._scanner = scanner
        self._prune_task = self._spawn(self._prune_loop(), "ble-prune")

    async def stop_scan(self) -> None:
        """Stop scanning and pruning together."""
        if self._prune_task is not None:
            self._prune_task.cancel()
            self._prune_task = None

        scanner = self._scanner
        self._scanner = None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except _LINK_ERRORS as e:
            logger.error("Scan stop failed: %s", e)
        logger.debug("BLE scan stopped")

    def _on_device_detected(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        """Scanner callback: upsert the observation."""
        self.record_observation(
            device.address,
            advertisement.local_name or device.name,
            advertisement.rssi,
        )

    def record_observation(
        self,
        address: str,
        name: str | None = None,
        rssi: int | None = None,
        seen_at: float | None = None,
    ) -> ScanRecord:
        """Insert or refresh the scan record for ``address``.

        Also used for addresses learned out of band (sound discovery).
        """
        now = self._clock() if seen_at is None else seen_at
        with self._lock:
            existing = self._scan_records.get(address)
            if existing is None:
                record = ScanRecord(address=address, name=name, rssi=rssi, last_seen=now)
            else:
                record = existing.refreshed(name, rssi, now)
            self._scan_records[address] = record
        self._emit_scan_results()
        return record

    def prune_stale(self, now: float | None = None) -> list[str]:
        """Drop records not seen within the freshness window.

        Linked peers are kept regardless of age.

        Returns:
            Addresses that were removed.
        """
        now = self._clock() if now is None else now
        window = self._settings.freshness_window
        with self._lock:
            stale = [
                address
                for address, record in self._scan_records.items()
                if record.is_stale(now, window) and address not in self._links
            ]
            for address in stale:
                del self._scan_records[address]

        if stale:
            logger.debug("Pruned stale scan records: %s", ", ".join(stale))
            self._emit_scan_results()
        return stale

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.prune_interval)
            self.prune_stale()

    # --- Connection ---

    def connect(self, address: str) -> None:
        """Connect to ``address`` with a fresh retry budget.

        A no-op if the peer is already linked or an attempt is in flight.

        Raises:
            ValueError: If address is empty.
        """
        if not address:
            raise ValueError("address must not be empty")
        self._cancel_retry(address)
        with self._lock:
            self._retries[address] = 0
        self._connect_with_retry(address)

    def _connect_with_retry(self, address: str) -> bool:
        """Start one attempt unless the peer is linked or already in flight."""
        if self._radio_off:
            logger.warning("Cannot connect to %s: radio is off", address)
            return False

        with self._lock:
            if address in self._links:
                logger.warning("Already connected to %s", address)
                return False
            if address in self._in_flight:
                logger.warning("Connection in progress for %s", address)
                return False
            self._in_flight.add(address)

        task = self._spawn(self._attempt(address), f"ble-connect-{address}")
        with self._lock:
            self._attempt_tasks[address] = task
        self._refresh_state()
        return True

    async def _attempt(self, address: str) -> None:
        """Run one pass through the link state machine."""
        client: Any = None
        try:
            # Delay for stack stability
            await asyncio.sleep(self._settings.connect_settle_delay)

            self._set_phase(address, LinkPhase.CONNECTING)
            logger.info("Connecting to %s...", address)
            client = self._client_factory(
                address,
                disconnected_callback=functools.partial(self._on_link_lost, address),
                timeout=self._settings.connect_timeout,
            )
            await client.connect()

            self._set_phase(address, LinkPhase.SERVICE_DISCOVERY)
            service = client.services.get_service(SYNC_SERVICE_UUID)
            if service is None:
                raise LinkNegotiationError(f"Sync service not found on {address}")

            self._set_phase(address, LinkPhase.MTU_NEGOTIATION)
            mtu = await self._negotiate_mtu(client)

            write_char = service.get_characteristic(WRITE_CHARACTERISTIC_UUID)
            notify_char = service.get_characteristic(NOTIFY_CHARACTERISTIC_UUID)
            if write_char is None or notify_char is None:
                raise LinkNegotiationError(f"Sync characteristics missing on {address}")

            # start_notify writes the CCCD descriptor
            await client.start_notify(
                notify_char, functools.partial(self._on_notification, address)
            )
        except asyncio.CancelledError:
            await self._close_client(client)
            with self._lock:
                self._in_flight.discard(address)
            self._set_phase(address, LinkPhase.IDLE)
            raise
        except _LINK_ERRORS as e:
            await self._handle_connection_failure(address, client, e)
            return
        except Exception as e:  # noqa: BLE001
            logger.exception("Unexpected error while connecting to %s", address)
            await self._handle_connection_failure(address, client, e)
            return
        finally:
            with self._lock:
                if self._attempt_tasks.get(address) is asyncio.current_task():
                    del self._attempt_tasks[address]

        link = _PeerLink(address=address, client=client, write_char=write_char, mtu=mtu)
        with self._lock:
            self._links[address] = link
            self._in_flight.discard(address)
            self._retries.pop(address, None)
        self._set_phase(address, LinkPhase.SUBSCRIBED)
        logger.info("Connected to %s (MTU %d)", address, mtu)
        self._emit_connected_devices()
        self._refresh_state()

    async def _negotiate_mtu(self, client: Any) -> int:
        """Enlarge the transfer unit where the backend allows it."""
        target = self._settings.target_mtu
        mtu = int(client.mtu_size)
        if mtu < target:
            # BlueZ only exposes the negotiated MTU after an explicit acquire
            acquire = getattr(getattr(client, "_backend", None), "_acquire_mtu", None)
            if acquire is not None:
                try:
                    await acquire()
                    mtu = int(client.mtu_size)
                except _LINK_ERRORS as e:
                    logger.debug("MTU acquire failed: %s", e)
        logger.debug("MTU is %d (target %d)", mtu, target)
        return min(mtu, target)

    async def _handle_connection_failure(self, address: str, client: Any, error: Exception) -> None:
        """Tear the attempt down and schedule a retry while budget remains."""
        logger.error("Connection failed on %s: %s", address, error)
        await self._close_client(client)

        with self._lock:
            self._in_flight.discard(address)
            retries = self._retries.get(address, 0)
            will_retry = retries < self._settings.max_retries
            if will_retry:
                self._retries[address] = retries + 1
            else:
                self._retries.pop(address, None)
        self._set_phase(address, LinkPhase.ERROR)

        if will_retry:
            logger.warning(
                "Retrying %s in %.1fs (%d/%d)",
                address,
                self._settings.retry_delay,
                retries + 1,
                self._settings.max_retries,
            )
            task = self._spawn(self._retry_later(address), f"ble-retry-{address}")
            with self._lock:
                self._retry_tasks[address] = task
            self._refresh_state()
        else:
            logger.error("Max retries reached for %s", address)
            self._refresh_state(failed=True)

    async def _retry_later(self, address: str) -> None:
        try:
            await asyncio.sleep(self._settings.retry_delay)
        finally:
            with self._lock:
                if self._retry_tasks.get(address) is asyncio.current_task():
                    del self._retry_tasks[address]
        self._connect_with_retry(address)

    def _cancel_retry(self, address: str) -> None:
        with self._lock:
            task = self._retry_tasks.pop(address, None)
        if task is not None:
            task.cancel()

    def _cancel_attempt(self, address: str) -> None:
        with self._lock:
            task = self._attempt_tasks.pop(address, None)
        if task is not None:
            task.cancel()

    # --- Disconnection ---

    async def disconnect(self, address: str) -> None:
        """Close the link to ``address``.

        Waits for the disconnect callback up to the disconnect timeout, then
        cleans up regardless.
        """
        self._cancel_retry(address)
        self._cancel_attempt(address)

        with self._lock:
            link = self._links.get(address)
            self._retries.pop(address, None)
        if link is None:
            self._cleanup(address)
            return

        logger.info("Disconnecting %s...", address)
        close_task = self._spawn(link.client.disconnect(), f"ble-close-{address}")
        try:
            await asyncio.wait_for(link.closed.wait(), timeout=self._settings.disconnect_timeout)
        except TimeoutError:
            logger.warning(
                "No disconnect callback from %s after %.1fs, forcing close",
                address,
                self._settings.disconnect_timeout,
            )
            close_task.cancel()
        finally:
            self._cleanup(address, link)

    async def disconnect_all(self) -> None:
        """Close every link."""
        addresses = self.connected_devices
        if addresses:
            await asyncio.gather(*(self.disconnect(a) for a in addresses))

    def _on_link_lost(self, address: str, client: Any) -> None:
        """GATT callback: the link to ``address`` went down."""
        with self._lock:
            link = self._links.get(address)
        if link is None or link.client is not client:
            return
        logger.info("Disconnected from %s", address)
        link.closed.set()
        self._cleanup(address, link)

    def _cleanup(self, address: str, link: _PeerLink | None = None) -> None:
        """Forget every trace of ``address`` (or of ``link`` if given)."""
        with self._lock:
            current = self._links.get(address)
            removed = current is not None and (link is None or current is link)
            if removed:
                del self._links[address]
            self._in_flight.discard(address)
            if removed or address in self._phases:
                self._phases[address] = LinkPhase.DISCONNECTED
        if removed:
            self._emit_connected_devices()
        self._refresh_state()

    async def _close_client(self, client: Any) -> None:
        """Close a GATT client, ignoring errors from a dead link."""
        if client is None:
            return
        try:
            await asyncio.wait_for(client.disconnect(), timeout=self._settings.disconnect_timeout)
        except _LINK_ERRORS as e:
            logger.debug("Expected error while closing client: %s", e)

    # --- Radio state ---

    def on_radio_state_changed(self, enabled: bool) -> None:
        """React to the radio being switched off or on.

        Off closes every link immediately and moves to OFF. On moves back to
        DISCONNECTED without reconnecting anything.
        """
        if not enabled:
            logger.warning("Radio turned off, dropping all links")
            self._radio_off = True
            self._force_disconnect_all()
            if self._scanner is not None:
                self._spawn(self.stop_scan(), "ble-stop-scan")
            self._set_state(ConnectionState.OFF)
        elif self._radio_off:
            logger.info("Radio turned on")
            self._radio_off = False
            self._set_state(ConnectionState.DISCONNECTED)

    def _force_disconnect_all(self) -> None:
        with self._lock:
            tasks = [*self._attempt_tasks.values(), *self._retry_tasks.values()]
            links = list(self._links.values())
            self._attempt_tasks.clear()
            self._retry_tasks.clear()
            self._links.clear()
            self._in_flight.clear()
            self._retries.clear()
            for address in self._phases:
                self._phases[address] = LinkPhase.DISCONNECTED

        for task in tasks:
            task.cancel()
        for link in links:
            link.closed.set()
            self._spawn(self._close_client(link.client), f"ble-force-close-{link.address}")
        if links:
            self._emit_connected_devices()

    # --- Role hooks ---

    def _connect_to_target(self, target: str) -> None:
        self.connect(target)

    def _start_responder(self) -> None:
        # Central-only transport: the responder collects peers from a scan
        self._spawn(self.start_scan(), "ble-responder-scan")

    async def _send_message(self, msg: ProtocolMessage) -> None:
        await self._write_all(msg)

    async def _broadcast_message(self, msg: ProtocolMessage) -> None:
        await self._write_all(msg)

    async def _write_all(self, msg: ProtocolMessage) -> None:
        """Write to every subscribed peer; failures are logged, not raised."""
        payload = encode(msg)
        with self._lock:
            links = list(self._links.values())
        if not links:
            logger.debug("No subscribed peers, dropping %s", msg.type_name)
            return

        for link in links:
            if len(payload) > link.mtu - ATT_HEADER_SIZE:
                logger.warning(
                    "%s is %d bytes, over the %d byte MTU of %s",
                    msg.type_name,
                    len(payload),
                    link.mtu,
                    link.address,
                )
            try:
                await link.client.write_gatt_char(link.write_char, payload, response=False)
            except _LINK_ERRORS as e:
                logger.warning("Write to %s failed: %s", link.address, e)

    async def _close_transport(self) -> None:
        await self.stop_scan()
        for address in list(self._retry_tasks):
            self._cancel_retry(address)
        for address in list(self._attempt_tasks):
            self._cancel_attempt(address)
        await self.disconnect_all()
        with self._lock:
            self._in_flight.clear()
            self._retries.clear()

    # --- Inbound ---

    def _on_notification(
        self, address: str, _sender: BleakGATTCharacteristic, data: bytearray
    ) -> None:
        """GATT callback: a notification arrived from ``address``."""
        self._spawn(self._handle_inbound(bytes(data), address), f"ble-rx-{address}")

    # --- Events ---

    def _set_phase(self, address: str, phase: LinkPhase) -> None:
        with self._lock:
            self._phases[address] = phase
        logger.debug("%s -> %s", address, phase.name)

    def _refresh_state(self, failed: bool = False) -> None:
        """Derive the aggregate state from the peer maps."""
        if self._radio_off:
            return
        with self._lock:
            linked = bool(self._links)
            busy = bool(self._in_flight) or bool(self._retry_tasks)
        if linked:
            self._set_state(ConnectionState.CONNECTED)
        elif busy:
            self._set_state(ConnectionState.CONNECTING)
        elif failed:
            self._set_state(ConnectionState.ERROR)
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    def _emit_scan_results(self) -> None:
        if self._on_scan_results_changed is None:
            return
        try:
            self._on_scan_results_changed(self.scan_results)
        except Exception:  # noqa: BLE001
            logger.exception("Scan results handler failed")

    def _emit_connected_devices(self) -> None:
        if self._on_connected_devices_changed is None:
            return
        try:
            self._on_connected_devices_changed(self.connected_devices)
        except Exception:  # noqa: BLE001
            logger.exception("Connected devices handler failed")
