"""Central link state store with Qt signals for reactive UI updates.

The LinkStateStore holds the latest snapshot of both transports and emits a
signal only when a value actually changes. UI widgets connect to these
signals to update themselves.
"""

import logging

from PySide6.QtCore import QObject, Signal

from projlink.models.link import ConnectionState
from projlink.models.scan_record import ScanRecord

logger = logging.getLogger(__name__)

LEFT = "left"
RIGHT = "right"


class LinkStateStore(QObject):
    """Latest short-range and socket link state, emitting Qt signals on changes.

    Example:
        store = LinkStateStore()
        store.scan_results_changed.connect(lambda records: print(records))
        store.update_scan_results(records)
    """

    # Short-range link
    ble_state_changed = Signal(object)  # ConnectionState
    scan_results_changed = Signal(object)  # list[ScanRecord], sorted by address
    connected_devices_changed = Signal(object)  # list[str]

    # Socket links
    remote_state_changed = Signal(str, object)  # side, ConnectionState
    pair_ready_changed = Signal(bool)

    def __init__(self) -> None:
        """Initialize the store with everything disconnected."""
        super().__init__()
        self._ble_state = ConnectionState.DISCONNECTED
        self._scan_results: list[ScanRecord] = []
        self._connected_devices: list[str] = []
        self._remote_states = {
            LEFT: ConnectionState.DISCONNECTED,
            RIGHT: ConnectionState.DISCONNECTED,
        }
        self._pair_ready = False

    @property
    def ble_state(self) -> ConnectionState:
        """Return the short-range link state."""
        return self._ble_state

    @property
    def scan_results(self) -> list[ScanRecord]:
        """Return scan records sorted by address."""
        return self._scan_results

    @property
    def connected_devices(self) -> list[str]:
        """Return subscribed peer addresses."""
        return self._connected_devices

    @property
    def pair_ready(self) -> bool:
        """Return True if the projector pair is ready."""
        return self._pair_ready

    def remote_state(self, side: str) -> ConnectionState:
        """Return the socket link state for ``side`` ("left" or "right")."""
        return self._remote_states[side]

    def is_device_connected(self, address: str) -> bool:
        """Return True if ``address`` is subscribed."""
        return address in self._connected_devices

    def update_ble_state(self, state: ConnectionState) -> None:
        """Set the short-range link state."""
        if state is self._ble_state:
            return
        self._ble_state = state
        self.ble_state_changed.emit(state)

    def update_scan_results(self, records: list[ScanRecord]) -> None:
        """Replace the scan records."""
        ordered = sorted(records, key=lambda r: r.address)
        if ordered == self._scan_results:
            return
        self._scan_results = ordered
        self.scan_results_changed.emit(ordered)

    def update_connected_devices(self, addresses: list[str]) -> None:
        """Replace the subscribed peer list."""
        ordered = sorted(addresses)
        if ordered == self._connected_devices:
            return
        logger.debug("Connected devices: %s", ordered)
        self._connected_devices = ordered
        self.connected_devices_changed.emit(ordered)

    def update_remote_state(self, side: str, state: ConnectionState) -> None:
        """Set the socket link state for one side.

        Raises:
            ValueError: If side is not "left" or "right".
        """
        if side not in self._remote_states:
            raise ValueError(f"Unknown side: {side}")
        if self._remote_states[side] is state:
            return
        self._remote_states[side] = state
        self.remote_state_changed.emit(side, state)

    def set_pair_ready(self, ready: bool) -> None:
        """Set projector pair readiness."""
        if ready == self._pair_ready:
            return
        self._pair_ready = ready
        self.pair_ready_changed.emit(ready)

    def clear(self) -> None:
        """Reset to the disconnected state, emitting for every change."""
        self.update_ble_state(ConnectionState.DISCONNECTED)
        self.update_scan_results([])
        self.update_connected_devices([])
        self.update_remote_state(LEFT, ConnectionState.DISCONNECTED)
        self.update_remote_state(RIGHT, ConnectionState.DISCONNECTED)
        self.set_pair_ready(False)
