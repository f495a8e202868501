"""Peer discovery over an audio side channel.

A projector announces its address as a short text payload modulated into
audio. The modem itself is an opaque :class:`AudioCodec`; this module limits
announcement size, debounces repeated decodes and turns decoded text into a
:class:`DiscoveredPeer`. A hardware address becomes a short-range scan
observation, an IP address or hostname becomes a socket-link host.
"""

import ipaddress
import logging
import re
import time
from collections.abc import AsyncIterable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from projlink.core.ble import SyncBluetoothManager

logger = logging.getLogger(__name__)

# Modem payload limit, in bytes of UTF-8 text
MAX_PAYLOAD_LENGTH = 20

# Identical decodes closer together than this are dropped
DEBOUNCE_SECONDS = 1.0

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}([:-])(?:[0-9A-Fa-f]{2}\1){4}[0-9A-Fa-f]{2}$")
_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$"
)


class AudioCodec(Protocol):
    """Data-over-sound modem."""

    def encode_message(self, text: str) -> bytes:
        """Modulate ``text`` into PCM samples."""
        ...

    def decode_samples(self, samples: bytes) -> str | None:
        """Feed PCM samples; return a payload once one is complete."""
        ...


class PeerKind(Enum):
    """Which link a discovered address belongs to."""

    BLE = "ble"
    HOST = "host"


@dataclass(frozen=True, slots=True)
class DiscoveredPeer:
    """A decoded announcement.

    Attributes:
        text: Payload as decoded.
        kind: Link the address is meant for.
        address: Normalized address or host.
    """

    text: str
    kind: PeerKind
    address: str


def classify(text: str) -> DiscoveredPeer | None:
    """Interpret a decoded payload.

    Returns:
        DiscoveredPeer, or None if the text is not an address.
    """
    text = text.strip()
    if not text:
        return None

    if _MAC_RE.match(text):
        return DiscoveredPeer(text=text, kind=PeerKind.BLE, address=text.replace("-", ":").upper())

    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        pass
    else:
        return DiscoveredPeer(text=text, kind=PeerKind.HOST, address=str(ip))

    if _HOSTNAME_RE.match(text) and not text.replace(".", "").isdigit():
        return DiscoveredPeer(text=text, kind=PeerKind.HOST, address=text.rstrip(".").lower())
    return None


class SoundDiscovery:
    """Announce and listen for peer addresses over audio.

    Example:
        discovery = SoundDiscovery(codec, on_peer=print, ble_manager=manager)
        samples = discovery.encode_announcement("192.168.1.20")
        await discovery.listen(microphone_chunks())
    """

    def __init__(
        self,
        codec: AudioCodec,
        on_peer: Callable[[DiscoveredPeer], None] | None = None,
        ble_manager: "SyncBluetoothManager | None" = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._codec = codec
        self._on_peer = on_peer
        self._ble_manager = ble_manager
        self._clock = clock
        self._last_text: str | None = None
        self._last_time = 0.0

    def set_peer_handler(self, handler: Callable[[DiscoveredPeer], None] | None) -> None:
        """Set the callback invoked for each accepted peer."""
        self._on_peer = handler

    def encode_announcement(self, text: str) -> bytes:
        """Modulate ``text`` for playback.

        Raises:
            ValueError: If text is empty or longer than the modem payload.
        """
        if not text:
            raise ValueError("announcement must not be empty")
        size = len(text.encode("utf-8"))
        if size > MAX_PAYLOAD_LENGTH:
            raise ValueError(f"announcement is {size} bytes, limit is {MAX_PAYLOAD_LENGTH}")
        samples = self._codec.encode_message(text)
        logger.debug("Encoded announcement %r into %d bytes of audio", text, len(samples))
        return samples

    def feed_samples(self, samples: bytes) -> DiscoveredPeer | None:
        """Decode an audio chunk and handle any completed payload."""
        text = self._codec.decode_samples(samples)
        if not text:
            return None
        return self.feed_text(text)

    def feed_text(self, text: str) -> DiscoveredPeer | None:
        """Handle a decoded payload.

        Returns:
            The accepted peer, or None if debounced or not an address.
        """
        now = self._clock()
        if text == self._last_text and now - self._last_time <= DEBOUNCE_SECONDS:
            logger.debug("Ignoring duplicate announcement: %s", text)
            return None
        self._last_text = text
        self._last_time = now

        peer = classify(text)
        if peer is None:
            logger.warning("Ignoring announcement that is not an address: %r", text)
            return None

        logger.info("Discovered %s peer %s", peer.kind.value, peer.address)
        if peer.kind is PeerKind.BLE and self._ble_manager is not None:
            self._ble_manager.record_observation(peer.address)
        if self._on_peer is not None:
            try:
                self._on_peer(peer)
            except Exception:  # noqa: BLE001
                logger.exception("Peer handler failed")
        return peer

    async def listen(self, chunks: AsyncIterable[bytes]) -> None:
        """Feed every chunk of an audio stream until it ends."""
        self.reset()
        logger.info("Audio discovery started")
        try:
            async for chunk in chunks:
                self.feed_samples(chunk)
        finally:
            logger.info("Audio discovery stopped")

    def reset(self) -> None:
        """Forget the last payload so it is accepted again."""
        self._last_text = None
        self._last_time = 0.0
