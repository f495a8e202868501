"""Scan record model for short-range discovery results."""

from dataclasses import dataclass, replace


@dataclass(frozen=True, slots=True)
class ScanRecord:
    """A projector observed during a short-range scan.

    Attributes:
        address: Peer address (MAC-like).
        name: Advertised name, or None if the advertisement had none.
        rssi: Signal strength in dBm, or None when the observation did not
            come from the radio (e.g. sound discovery).
        last_seen: Monotonic timestamp of the latest observation.
    """

    address: str
    name: str | None = None
    rssi: int | None = None
    last_seen: float = 0.0

    @property
    def display_name(self) -> str:
        """Return name or address as fallback for display."""
        return self.name or self.address

    def is_stale(self, now: float, window: float) -> bool:
        """Return True if the record has not been refreshed within ``window``."""
        return now - self.last_seen > window

    def refreshed(self, name: str | None, rssi: int | None, seen_at: float) -> "ScanRecord":
        """Return a copy updated with a newer observation.

        A missing name in the newer advertisement keeps the previous one.
        """
        return replace(self, name=name or self.name, rssi=rssi, last_seen=seen_at)
