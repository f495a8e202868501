"""Wire protocol and socket-link client.

Importing this package registers every message variant with the decoder.
"""

from projlink.api.protocol import (
    DecodeError,
    ProtocolMessage,
    RequestIdGenerator,
    decode,
    encode,
)
from projlink.api.remote import (
    AckResponse,
    BlendingMode,
    ErrorCode,
    ErrorResponse,
    RemoteMessage,
    RemoteRequest,
)
from projlink.api.sync import GeneralCommand, GeneralRequest, GeneralResponse
from projlink.api.client import RemoteControlClient

__all__ = [
    "AckResponse",
    "BlendingMode",
    "DecodeError",
    "ErrorCode",
    "ErrorResponse",
    "GeneralCommand",
    "GeneralRequest",
    "GeneralResponse",
    "ProtocolMessage",
    "RemoteControlClient",
    "RemoteMessage",
    "RemoteRequest",
    "RequestIdGenerator",
    "decode",
    "encode",
]
