"""Thread-safe registry of inbound command listeners.

Listeners receive ``(command, sender_id)`` pairs. Registration and removal
may happen from any thread while a broadcast is in progress: broadcasts
iterate a snapshot taken under the lock, so a listener added mid-broadcast
only sees the next one.
"""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

# (command text, sender id); for the short-range link the sender is the peer address
CommandListener = Callable[[str, str], None]


class ListenerRegistry:
    """Copy-on-broadcast collection of :data:`CommandListener` callbacks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[CommandListener] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def add(self, listener: CommandListener) -> None:
        """Register a listener; registering the same one twice is a no-op."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove(self, listener: CommandListener) -> bool:
        """Unregister a listener.

        Returns:
            True if the listener was registered.
        """
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return False
            return True

    def clear(self) -> None:
        """Remove every listener."""
        with self._lock:
            self._listeners.clear()

    def snapshot(self) -> tuple[CommandListener, ...]:
        """Return the current listeners."""
        with self._lock:
            return tuple(self._listeners)

    def broadcast(self, command: str, sender_id: str) -> int:
        """Deliver a command to every listener in the current snapshot.

        A failing listener is logged and does not stop delivery to the rest.

        Returns:
            Number of listeners that handled the command without raising.
        """
        delivered = 0
        for listener in self.snapshot():
            try:
                listener(command, sender_id)
            except Exception:  # noqa: BLE001
                logger.exception("Listener %r failed on %r from %s", listener, command, sender_id)
                continue
            delivered += 1
        return delivered
