"""Tunable timing and retry settings for both transports."""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class BleSettings:
    """Short-range link settings.

    Attributes:
        max_retries: Automatic retries after the first failed attempt.
        retry_delay: Seconds between a failure and its retry.
        connect_settle_delay: Pause before each raw connect call.
        connect_timeout: Timeout handed to the GATT client for link-up.
        disconnect_timeout: Seconds to wait for a disconnect callback
            before force-closing the link.
        freshness_window: Scan records older than this are pruned.
        prune_interval: Cadence of the pruning task.
        scan_settle_delay: Pause between stopping and restarting a scan.
        target_mtu: Transfer unit requested after service discovery.
    """

    max_retries: int = 3
    retry_delay: float = 1.0
    connect_settle_delay: float = 0.6
    connect_timeout: float = 10.0
    disconnect_timeout: float = 2.5
    freshness_window: float = 5.0
    prune_interval: float = 1.0
    scan_settle_delay: float = 0.2
    target_mtu: int = 185


@dataclass(frozen=True, slots=True)
class RemoteSettings:
    """Socket link settings.

    Attributes:
        port: Remote-control server port on the projector.
        path: WebSocket path.
        reconnect_delay: Fixed wait between connection attempts.
        keepalive_interval: Ping interval while connected.
        open_timeout: Timeout for the opening handshake.
    """

    port: int = 9877
    path: str = "/remote"
    reconnect_delay: float = 5.0
    keepalive_interval: float = 20.0
    open_timeout: float = 10.0

    def uri(self, host: str) -> str:
        """Return the WebSocket URI for ``host``."""
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"ws://{host}:{self.port}{self.path}"
