"""Remote-control protocol spoken over the socket link.

Outbound requests and inbound responses/notifications use the
``commandType`` discriminator. Every request carries a caller-supplied
``requestId``; the projector acknowledges with :class:`AckResponse`, answers
with a typed response, or rejects with :class:`ErrorResponse` carrying the
same id. Notifications are unsolicited and carry no id.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Self

from projlink.api.protocol import COMMAND_TYPE_FIELD, ProtocolMessage, message

logger = logging.getLogger(__name__)


class ErrorCode(StrEnum):
    """Result codes reported by the projector."""

    NO_ERROR = "NO_ERROR"
    COMMAND_PARSE_ERROR = "COMMAND_PARSE_ERROR"
    UNKNOWN_COMMAND = "UNKNOWN_COMMAND"
    RESPONSE_SERIALIZE_ERROR = "RESPONSE_SERIALIZE_ERROR"
    SERVER_INTERNAL_ERROR = "SERVER_INTERNAL_ERROR"


class BlendingMode(StrEnum):
    """Showcase mode the projector pair should switch to."""

    NONE = "NONE"
    STANDBY = "STANDBY"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


# --- Requests (client -> projector) ---


@dataclass(frozen=True)
class RemoteRequest(ProtocolMessage):
    """Base of every outbound remote-control request."""

    request_id: str


@message("GetVideoInfoRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class GetVideoInfoRequest(RemoteRequest):
    """Ask for duration, position and play state."""


@message("GetVideoDurationRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class GetVideoDurationRequest(RemoteRequest):
    """Ask for the current playback position."""


@message("VideoPlayRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class VideoPlayRequest(RemoteRequest):
    """Start video playback."""


@message("VideoPauseRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class VideoPauseRequest(RemoteRequest):
    """Pause video playback."""


@message("VideoSeekRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class VideoSeekRequest(RemoteRequest):
    """Seek video playback to ``position_ms``."""

    position_ms: int


@message("GetImageInfoRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class GetImageInfoRequest(RemoteRequest):
    """Ask for the slideshow index and play state."""


@message("ImagePlayRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class ImagePlayRequest(RemoteRequest):
    """Start the slideshow."""


@message("ImagePauseRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class ImagePauseRequest(RemoteRequest):
    """Pause the slideshow."""


@message("ConnectToMacRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class ConnectToMacRequest(RemoteRequest):
    """Ask the projector to link to a peer by address."""

    target_mac: str


@message("StartDiscoveryRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class StartDiscoveryRequest(RemoteRequest):
    """Ask the projector to discover and link to a peer by name."""

    target_name: str


@message("BlendingModeRequest", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class BlendingModeRequest(RemoteRequest):
    """Switch blending mode; the controller drives the pair."""

    mode: BlendingMode
    is_controller: bool


# --- Responses and notifications (projector -> client) ---


class RemoteMessage(ProtocolMessage):
    """Base of every inbound remote-control message."""


class RemoteResponse(RemoteMessage):
    """A message answering a request."""


class RemoteNotification(RemoteMessage):
    """An unsolicited state update."""


@message("GetVideoInfoResponse", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class GetVideoInfoResponse(RemoteResponse):
    """Answer to :class:`GetVideoInfoRequest`."""

    duration_ms: int
    position_ms: int
    is_playing: bool
    request_id: str | None = None


@message("GetVideoDurationResponse", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class GetVideoDurationResponse(RemoteResponse):
    """Answer to :class:`GetVideoDurationRequest`."""

    position_ms: int
    request_id: str | None = None


@message("GetImageInfoResponse", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class GetImageInfoResponse(RemoteResponse):
    """Answer to :class:`GetImageInfoRequest`."""

    current_index: int
    is_playing: bool
    request_id: str | None = None


@message("AckResponse", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class AckResponse(RemoteResponse):
    """Successful completion of the request named by ``command``."""

    request_id: str
    command: str

    @property
    def error_code(self) -> ErrorCode:
        """Acks always report success."""
        return ErrorCode.NO_ERROR


@message("ErrorResponse", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class ErrorResponse(RemoteResponse):
    """Rejection of a request.

    ``request_id`` is absent when the projector could not parse the request
    far enough to read it.
    """

    command: str
    error_code: ErrorCode
    request_id: str | None = None
    message: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        """Create an error response, mapping unrecognized codes to SERVER_INTERNAL_ERROR."""
        code = data.get("errorCode")
        if isinstance(code, str) and code not in ErrorCode.__members__:
            logger.warning("Unrecognized error code %r for %s", code, data.get("command"))
            data = {**data, "errorCode": ErrorCode.SERVER_INTERNAL_ERROR.value}
        return super().from_dict(data)

    def __str__(self) -> str:
        """Return error representation."""
        detail = f": {self.message}" if self.message else ""
        return f"[{self.error_code}] {self.command}{detail}"


@message("NotifyVideoPosition", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class NotifyVideoPosition(RemoteNotification):
    """Periodic playback position."""

    position_ms: int


@message("NotifyVideoPlayState", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class NotifyVideoPlayState(RemoteNotification):
    """Video play/pause changed."""

    is_playing: bool


@message("NotifyImageIndex", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class NotifyImageIndex(RemoteNotification):
    """Slideshow moved to another image."""

    current_index: int


@message("NotifyImagePlayState", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class NotifyImagePlayState(RemoteNotification):
    """Slideshow play/pause changed."""

    is_playing: bool


@message("NotifyPeerConnectionDone", COMMAND_TYPE_FIELD)
@dataclass(frozen=True)
class NotifyPeerConnectionDone(RemoteNotification):
    """The projector finished linking to its peer; ``status`` is success."""

    status: bool


def response_request_id(msg: RemoteMessage) -> str | None:
    """Return the request id a response answers, or None for notifications."""
    return getattr(msg, "request_id", None)
