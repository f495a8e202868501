"""Data models for link state, scan results and settings."""

from projlink.models.link import ConnectionState, LinkPhase, Role
from projlink.models.scan_record import ScanRecord
from projlink.models.settings import BleSettings, RemoteSettings

__all__ = [
    "BleSettings",
    "ConnectionState",
    "LinkPhase",
    "RemoteSettings",
    "Role",
    "ScanRecord",
]
