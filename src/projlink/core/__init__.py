"""Core link management layer.

This module contains the connection managers and the glue that bridges the
asyncio link stack with the Qt UI layer.

Classes:
    BaseCommunicationManager: Role, dispatch and inbound routing.
    SyncBluetoothManager: Short-range link over BLE GATT.
    ProjectorPair: Left/right projector coordination.
    SoundDiscovery: Address announcements over audio.
    LinkStateStore: Link state with Qt signals.
    LinkWorker: QThread worker hosting the asyncio loop.
    ConfigManager: QSettings wrapper for configuration.
"""

from projlink.core.ble import SyncBluetoothManager
from projlink.core.config import ConfigManager
from projlink.core.discovery import SoundDiscovery
from projlink.core.manager import BaseCommunicationManager
from projlink.core.pair import ProjectorPair
from projlink.core.state import LinkStateStore
from projlink.core.worker import LinkWorker

__all__ = [
    "BaseCommunicationManager",
    "ConfigManager",
    "LinkStateStore",
    "LinkWorker",
    "ProjectorPair",
    "SoundDiscovery",
    "SyncBluetoothManager",
]
