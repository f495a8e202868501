"""Configuration manager using QSettings for persistent storage."""

import logging
from dataclasses import fields, replace
from typing import Any

from PySide6.QtCore import QSettings

from projlink.models.settings import BleSettings, RemoteSettings

logger = logging.getLogger(__name__)

# Settings groups
_GROUP_BLE = "ble"
_GROUP_REMOTE = "remote"

# Projector pair
_KEY_LEFT_HOST = "pair/left_host"
_KEY_RIGHT_HOST = "pair/right_host"
_KEY_RIGHT_NAME = "pair/right_name"

# Sound discovery
_KEY_ANNOUNCE_NAME = "discovery/announce_name"

# Valid ranges for numeric settings, inclusive
_RANGES: dict[str, tuple[float, float]] = {
    "max_retries": (0, 10),
    "retry_delay": (0.0, 60.0),
    "connect_settle_delay": (0.0, 10.0),
    "connect_timeout": (1.0, 120.0),
    "disconnect_timeout": (0.1, 30.0),
    "freshness_window": (1.0, 300.0),
    "prune_interval": (0.1, 60.0),
    "scan_settle_delay": (0.0, 5.0),
    "target_mtu": (23, 517),
    "port": (1, 65535),
    "reconnect_delay": (0.5, 300.0),
    "keepalive_interval": (1.0, 600.0),
    "open_timeout": (1.0, 120.0),
}


class ConfigManager:
    """Wrapper around QSettings for type-safe config access.

    Only overrides are stored; anything missing or invalid reads back as the
    dataclass default.

    Example:
        config = ConfigManager()
        ble = config.get_ble_settings()
        config.save_ble_settings(replace(ble, retry_delay=2.0))
    """

    def __init__(self, organization: str = "ProjLink", application: str = "ProjLink") -> None:
        """Initialize the config manager.

        Args:
            organization: Organization name for QSettings.
            application: Application name for QSettings.
        """
        self._settings = QSettings(organization, application)

    @property
    def settings(self) -> QSettings:
        """Return the underlying QSettings instance."""
        return self._settings

    # -- Transport settings ----------------------------------------------------

    def get_ble_settings(self) -> BleSettings:
        """Load short-range link settings.

        Returns:
            BleSettings with stored overrides applied.
        """
        return self._load(_GROUP_BLE, BleSettings())

    def save_ble_settings(self, settings: BleSettings) -> None:
        """Persist short-range link settings.

        Args:
            settings: Settings to save.
        """
        self._save(_GROUP_BLE, settings)

    def get_remote_settings(self) -> RemoteSettings:
        """Load socket link settings.

        Returns:
            RemoteSettings with stored overrides applied.
        """
        return self._load(_GROUP_REMOTE, RemoteSettings())

    def save_remote_settings(self, settings: RemoteSettings) -> None:
        """Persist socket link settings.

        Args:
            settings: Settings to save.
        """
        self._save(_GROUP_REMOTE, settings)

    def _load(self, group: str, defaults: Any) -> Any:
        overrides: dict[str, Any] = {}
        for f in fields(defaults):
            key = f"{group}/{f.name}"
            if not self._settings.contains(key):
                continue
            default = getattr(defaults, f.name)
            raw = self._settings.value(key, default)
            value = _convert(f.name, raw, default)
            if value is None:
                logger.warning("Ignoring invalid setting %s=%r", key, raw)
                continue
            overrides[f.name] = value
        return replace(defaults, **overrides)

    def _save(self, group: str, settings: Any) -> None:
        for f in fields(settings):
            self._settings.setValue(f"{group}/{f.name}", getattr(settings, f.name))

    # -- Projector pair --------------------------------------------------------

    def get_pair_hosts(self) -> tuple[str, str]:
        """Return the last used (left, right) projector hosts.

        Returns:
            Host strings, empty when unset.
        """
        left = self._settings.value(_KEY_LEFT_HOST, "", str)
        right = self._settings.value(_KEY_RIGHT_HOST, "", str)
        return (str(left) if left else "", str(right) if right else "")

    def set_pair_hosts(self, left: str, right: str) -> None:
        """Set the projector hosts.

        Args:
            left: Controller projector host.
            right: Second projector host.
        """
        self._settings.setValue(_KEY_LEFT_HOST, left)
        self._settings.setValue(_KEY_RIGHT_HOST, right)

    def get_right_name(self) -> str:
        """Return the right projector's advertised name."""
        value = self._settings.value(_KEY_RIGHT_NAME, "", str)
        return str(value) if value else ""

    def set_right_name(self, name: str) -> None:
        """Set the right projector's advertised name."""
        self._settings.setValue(_KEY_RIGHT_NAME, name)

    # -- Sound discovery -------------------------------------------------------

    def get_announce_name(self) -> str:
        """Return the text announced over sound, empty when unset."""
        value = self._settings.value(_KEY_ANNOUNCE_NAME, "", str)
        return str(value) if value else ""

    def set_announce_name(self, name: str) -> None:
        """Set the text announced over sound."""
        self._settings.setValue(_KEY_ANNOUNCE_NAME, name)

    # -- General settings ------------------------------------------------------

    def clear(self) -> None:
        """Clear all settings (useful for testing or reset)."""
        self._settings.clear()

    def sync(self) -> None:
        """Force settings to be written to disk."""
        self._settings.sync()


def _convert(name: str, raw: Any, default: Any) -> Any:
    """Coerce a stored value to the type of its default.

    Returns:
        The converted value, or None if it is invalid or out of range.
    """
    # QSettings INI backends hand everything back as strings
    try:
        if isinstance(default, bool):
            value: Any = raw if isinstance(raw, bool) else str(raw).lower() in ("true", "1")
        elif isinstance(default, int):
            value = int(raw)
        elif isinstance(default, float):
            value = float(raw)
        else:
            value = str(raw)
    except (TypeError, ValueError):
        return None

    bounds = _RANGES.get(name)
    if bounds is not None and not bounds[0] <= value <= bounds[1]:
        return None
    if isinstance(default, str) and name == "path" and not value.startswith("/"):
        return None
    return value
