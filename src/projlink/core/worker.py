"""QThread worker hosting the asyncio link stack in a Qt application.

Qt widgets must run in the main thread, but the link managers use asyncio.
This worker runs the event loop in a background thread, owns the short-range
manager, the projector pair and optional sound discovery, and bridges their
events to the main thread via Qt signals.
"""

import asyncio
import concurrent.futures
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from PySide6.QtCore import QThread, Signal

from projlink.api.client import RemoteControlClient
from projlink.api.remote import BlendingMode, RemoteRequest
from projlink.core.ble import SyncBluetoothManager
from projlink.core.discovery import AudioCodec, SoundDiscovery
from projlink.core.pair import ProjectorPair
from projlink.models.link import ConnectionState, Role
from projlink.models.settings import BleSettings, RemoteSettings

logger = logging.getLogger(__name__)


class LinkWorker(QThread):
    """Background thread running the link managers.

    Public methods are thread-safe and may be called from the UI thread
    once ``ready`` has been emitted; earlier calls are dropped with a warning.

    Example:
        worker = LinkWorker()
        worker.scan_results_changed.connect(store.update_scan_results)
        worker.ready.connect(worker.start_scan)
        worker.start()
    """

    # Lifecycle
    ready = Signal()  # Loop running, managers built

    # Short-range link
    ble_state_changed = Signal(object)  # ConnectionState
    scan_results_changed = Signal(object)  # list[ScanRecord]
    connected_devices_changed = Signal(object)  # list[str]
    command_received = Signal(str, str)  # command text, sender id

    # Socket links
    remote_state_changed = Signal(str, object)  # side, ConnectionState
    remote_message_received = Signal(str, object)  # side, RemoteMessage
    pair_ready_changed = Signal(bool)

    # Discovery
    peer_discovered = Signal(object)  # DiscoveredPeer

    # Error signal
    error_occurred = Signal(object)  # Exception

    def __init__(
        self,
        ble_settings: BleSettings | None = None,
        remote_settings: RemoteSettings | None = None,
        codec: AudioCodec | None = None,
        manager_factory: Callable[[BleSettings], SyncBluetoothManager] | None = None,
        pair_factory: Callable[[RemoteSettings], ProjectorPair] | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            ble_settings: Short-range link settings.
            remote_settings: Socket link settings.
            codec: Audio modem; sound discovery is disabled without one.
            manager_factory: Builds the short-range manager inside the loop.
            pair_factory: Builds the projector pair inside the loop.
        """
        super().__init__()
        self._ble_settings = ble_settings or BleSettings()
        self._remote_settings = remote_settings or RemoteSettings()
        self._codec = codec
        self._manager_factory = manager_factory or SyncBluetoothManager
        self._pair_factory = pair_factory or ProjectorPair
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._manager: SyncBluetoothManager | None = None
        self._pair: ProjectorPair | None = None
        self._discovery: SoundDiscovery | None = None

    @property
    def manager(self) -> SyncBluetoothManager | None:
        """Return the short-range manager while running."""
        return self._manager

    @property
    def pair(self) -> ProjectorPair | None:
        """Return the projector pair while running."""
        return self._pair

    @property
    def is_running_loop(self) -> bool:
        """Return True while the event loop accepts calls."""
        return self._loop is not None and self._loop.is_running() and self._stop_event is not None

    # --- Thread entry ---

    def run(self) -> None:
        """Run the worker thread (entry point)."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._main())
        except Exception as e:
            logger.exception("Link worker failed")
            self.error_occurred.emit(e)
        finally:
            self._loop.close()
            self._loop = None
            self._stop_event = None

    async def _main(self) -> None:
        manager = self._manager_factory(self._ble_settings)
        pair = self._pair_factory(self._remote_settings)
        self._manager = manager
        self._pair = pair

        manager.add_state_handler(self.ble_state_changed.emit)
        manager.add_listener(self.command_received.emit)
        manager.set_peer_handlers(
            on_scan_results_changed=self.scan_results_changed.emit,
            on_connected_devices_changed=self.connected_devices_changed.emit,
        )
        pair.set_ready_handler(self.pair_ready_changed.emit)
        pair.left.add_state_handler(self._side_state_handler("left"))
        pair.right.add_state_handler(self._side_state_handler("right"))
        pair.left.set_error_handler(self.error_occurred.emit)
        pair.right.set_error_handler(self.error_occurred.emit)

        if self._codec is not None:
            self._discovery = SoundDiscovery(self._codec, self.peer_discovered.emit, manager)

        forwarders = [
            asyncio.create_task(self._forward_messages("left", pair.left), name="forward-left"),
            asyncio.create_task(self._forward_messages("right", pair.right), name="forward-right"),
        ]

        self._stop_event = asyncio.Event()
        logger.info("Link worker ready")
        self.ready.emit()
        try:
            await self._stop_event.wait()
        finally:
            logger.info("Link worker stopping")
            for task in forwarders:
                task.cancel()
            await asyncio.gather(*forwarders, return_exceptions=True)
            results = await asyncio.gather(
                manager.release(), pair.release(), return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    logger.error("Release failed: %s", result, exc_info=result)
            self._manager = None
            self._pair = None
            self._discovery = None

    def _side_state_handler(self, side: str) -> Callable[[ConnectionState], None]:
        def handler(state: ConnectionState) -> None:
            self.remote_state_changed.emit(side, state)

        return handler

    async def _forward_messages(self, side: str, client: RemoteControlClient) -> None:
        async with client.events() as events:
            while True:
                msg = await events.get()
                self.remote_message_received.emit(side, msg)

    def stop(self) -> None:
        """Signal the worker to stop (called from main thread)."""
        loop, stop_event = self._loop, self._stop_event
        if loop is not None and stop_event is not None and loop.is_running():
            loop.call_soon_threadsafe(stop_event.set)

    # --- Thread-safe calls ---

    def _submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future[Any] | None:
        """Schedule a coroutine on the worker loop."""
        if not self.is_running_loop:
            logger.warning("Link worker not running, dropping call")
            coro.close()
            return None
        assert self._loop is not None
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def _call(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run a plain callable on the worker loop."""
        if not self.is_running_loop:
            logger.warning("Link worker not running, dropping call")
            return
        assert self._loop is not None
        self._loop.call_soon_threadsafe(self._guarded, fn, *args)

    def _guarded(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:  # noqa: BLE001
            logger.warning("Link worker call failed: %s", e)
            self.error_occurred.emit(e)

    def start_scan(self) -> None:
        """Start a short-range scan."""
        if self._manager is not None:
            self._submit(self._manager.start_scan())

    def stop_scan(self) -> None:
        """Stop the short-range scan."""
        if self._manager is not None:
            self._submit(self._manager.stop_scan())

    def configure(self, role: Role, target: str | None = None) -> None:
        """Configure the short-range manager's role."""
        if self._manager is not None:
            self._call(self._manager.configure, role, target)

    def connect_device(self, address: str) -> None:
        """Connect to a projector over the short-range link."""
        if self._manager is not None:
            self._call(self._manager.connect, address)

    def disconnect_device(self, address: str) -> None:
        """Disconnect a projector from the short-range link."""
        if self._manager is not None:
            self._submit(self._manager.disconnect(address))

    def dispatch_command(self, command: str) -> None:
        """Send a generic command over the short-range link."""
        if self._manager is not None:
            self._call(self._manager.dispatch_command, command)

    def dispatch_request(self, command: str) -> None:
        """Send a generic request over the short-range link."""
        if self._manager is not None:
            self._call(self._manager.dispatch_request, command)

    def set_radio_enabled(self, enabled: bool) -> None:
        """Report a radio power change to the short-range manager."""
        if self._manager is not None:
            self._call(self._manager.on_radio_state_changed, enabled)

    def connect_pair(self, left_host: str, right_host: str, right_name: str | None = None) -> None:
        """Open both socket links."""
        if self._pair is not None:
            self._call(self._pair.connect, left_host, right_host, right_name)

    def disconnect_pair(self, delay: float = 0.0) -> None:
        """Close both socket links after ``delay`` seconds."""
        if self._pair is not None:
            self._submit(self._pair.disconnect(delay))

    def inform_blending_mode(self, mode: BlendingMode) -> None:
        """Switch both projectors to ``mode``."""
        if self._pair is not None:
            self._submit(self._pair.inform_blending_mode(mode))

    def send_remote(self, side: str, request: RemoteRequest) -> None:
        """Send a remote-control request to one projector.

        Args:
            side: "left" or "right".
            request: Request to send.
        """
        if self._pair is None:
            return
        client = self._pair.left if side == "left" else self._pair.right
        self._submit(client.send(request))

    def next_request_id(self) -> str | None:
        """Return a fresh request id for :meth:`send_remote`."""
        return self._pair.left.next_request_id() if self._pair is not None else None

    def feed_audio(self, samples: bytes) -> None:
        """Feed captured audio to sound discovery."""
        if self._discovery is not None:
            self._call(self._discovery.feed_samples, samples)

    def announce(self, text: str) -> bytes | None:
        """Return audio samples announcing ``text``, or None without a codec.

        Raises:
            ValueError: If text is empty or too long.
        """
        if self._codec is None:
            return None
        return SoundDiscovery(self._codec).encode_announcement(text)
