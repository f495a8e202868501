"""Connection lifecycle enums shared by both transports."""

from enum import Enum


class ConnectionState(Enum):
    """Aggregate state of a manager or socket client.

    OFF is only used by the short-range link while the radio is disabled.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    OFF = "off"

    @property
    def is_active(self) -> bool:
        """Return True while a link is being established or is up."""
        return self in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)


class Role(Enum):
    """Role a manager plays on its transport."""

    NONE = "none"
    INITIATOR = "initiator"
    RESPONDER = "responder"


class LinkPhase(Enum):
    """Per-peer progress through short-range link establishment."""

    IDLE = "idle"
    CONNECTING = "connecting"
    SERVICE_DISCOVERY = "service_discovery"
    MTU_NEGOTIATION = "mtu_negotiation"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"
    ERROR = "error"
