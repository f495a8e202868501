"""Generic sync protocol carried over either transport.

These messages use the ``type`` discriminator. Commands are fire-and-forget;
a request may carry a ``requestId`` which the responder echoes on its
response.
"""

from dataclasses import dataclass

from projlink.api.protocol import ProtocolMessage, message


@message("GeneralCommand")
@dataclass(frozen=True)
class GeneralCommand(ProtocolMessage):
    """A command to execute immediately on the receiver."""

    command: str


@message("GeneralRequest")
@dataclass(frozen=True)
class GeneralRequest(ProtocolMessage):
    """A request for a named value."""

    command: str
    request_id: str | None = None


@message("GeneralResponse")
@dataclass(frozen=True)
class GeneralResponse(ProtocolMessage):
    """The answer to a :class:`GeneralRequest`."""

    command: str
    value: str
    request_id: str | None = None

    @property
    def text(self) -> str:
        """Return the ``command:value`` form delivered to listeners."""
        return f"{self.command}:{self.value}"


SyncMessage = GeneralCommand | GeneralRequest | GeneralResponse
