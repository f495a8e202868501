"""Remote-control client over a persistent WebSocket link.

The projector runs a WebSocket server on a fixed port and path. Once told to
connect, the client keeps a single background loop alive that opens a
session, reads frames until the session ends, and retries after a fixed delay
for as long as the caller wants the link up. Only :meth:`disconnect` stops
the loop.

Inbound frames are decoded and published to every subscriber queue. The
client never blocks callers waiting for a response: correlating a response
with its ``requestId`` is left to whoever reads the event stream.

Example:
    client = RemoteControlClient()
    client.connect("192.168.1.50")
    await client.wait_connected(timeout=10)
    async with client.events() as events:
        request_id = await client.seek_video(12_345)
        reply = await events.get()
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from projlink.api.protocol import DecodeError, RequestIdGenerator, decode
from projlink.api.remote import (
    BlendingMode,
    BlendingModeRequest,
    ConnectToMacRequest,
    GetImageInfoRequest,
    GetVideoDurationRequest,
    GetVideoInfoRequest,
    ImagePauseRequest,
    ImagePlayRequest,
    RemoteMessage,
    RemoteRequest,
    StartDiscoveryRequest,
    VideoPauseRequest,
    VideoPlayRequest,
    VideoSeekRequest,
)
from projlink.models.link import ConnectionState
from projlink.models.settings import RemoteSettings

logger = logging.getLogger(__name__)

# Type aliases for event handlers
StateHandler = Callable[[ConnectionState], None]
ErrorHandler = Callable[[Exception], None]

# Errors that end a session and feed the retry loop
_SESSION_ERRORS = (OSError, TimeoutError, WebSocketException)


class RemoteClientReleasedError(RuntimeError):
    """The client was released and cannot be reused."""


class RemoteControlClient:
    """Auto-reconnecting WebSocket client for one projector.

    Attributes:
        name: Label used in log messages (e.g. "left").
    """

    def __init__(
        self,
        settings: RemoteSettings | None = None,
        name: str = "remote",
        request_ids: RequestIdGenerator | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Port, path and timing settings.
            name: Label used in log messages.
            request_ids: Id source shared with other clients, if any.
        """
        self.name = name
        self._settings = settings or RemoteSettings()
        self._request_ids = request_ids or RequestIdGenerator()
        self._host: str | None = None
        self._state = ConnectionState.DISCONNECTED
        self._session: ClientConnection | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._manually_disconnected = False
        self._released = False
        self._send_lock = asyncio.Lock()
        self._connected = asyncio.Event()
        self._subscribers: list[asyncio.Queue[RemoteMessage]] = []
        self._state_handlers: list[StateHandler] = []
        self._on_error: ErrorHandler | None = None

    @property
    def host(self) -> str | None:
        """Return the host the client was last told to connect to."""
        return self._host

    @property
    def settings(self) -> RemoteSettings:
        """Return the link settings."""
        return self._settings

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Return True if a live session exists."""
        return self._state is ConnectionState.CONNECTED and self._session is not None

    @property
    def is_running(self) -> bool:
        """Return True while the connection loop is alive."""
        return self._loop_task is not None and not self._loop_task.done()

    def add_state_handler(self, handler: StateHandler) -> None:
        """Register a callback for connection state changes."""
        if handler not in self._state_handlers:
            self._state_handlers.append(handler)

    def remove_state_handler(self, handler: StateHandler) -> None:
        """Unregister a state callback (no-op if unknown)."""
        with suppress(ValueError):
            self._state_handlers.remove(handler)

    def set_error_handler(self, on_error: ErrorHandler | None) -> None:
        """Set the callback notified of session errors."""
        self._on_error = on_error

    # --- Event stream ---

    def subscribe(self, maxsize: int = 0) -> "asyncio.Queue[RemoteMessage]":
        """Return a new queue receiving every inbound message.

        Args:
            maxsize: Queue bound; 0 means unbounded. A full queue drops new
                messages for that subscriber only.
        """
        queue: asyncio.Queue[RemoteMessage] = asyncio.Queue(maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[RemoteMessage]") -> None:
        """Stop delivering messages to ``queue``."""
        with suppress(ValueError):
            self._subscribers.remove(queue)

    @asynccontextmanager
    async def events(self, maxsize: int = 0) -> AsyncIterator["asyncio.Queue[RemoteMessage]"]:
        """Subscribe for the duration of an ``async with`` block."""
        queue = self.subscribe(maxsize)
        try:
            yield queue
        finally:
            self.unsubscribe(queue)

    def _publish(self, msg: RemoteMessage) -> None:
        """Deliver a message to a snapshot of the subscribers."""
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("[%s] Subscriber queue full, dropping %s", self.name, msg.type_name)

    # --- Lifecycle ---

    def connect(self, host: str) -> None:
        """Start the auto-retry connection loop for ``host``.

        A no-op while a loop is already running, whatever its host.
        Must be called from the event loop thread.

        Raises:
            RemoteClientReleasedError: If the client was released.
            ValueError: If host is empty.
        """
        if self._released:
            raise RemoteClientReleasedError(f"Client {self.name} was released")
        if not host:
            raise ValueError("host must not be empty")
        if self.is_running:
            logger.debug("[%s] Already connecting or connected to %s", self.name, self._host)
            return

        self._host = host
        self._manually_disconnected = False
        self._loop_task = asyncio.create_task(
            self._connection_loop(host), name=f"remote-{self.name}-loop"
        )

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until a session is up.

        Returns:
            True if connected, False if the timeout elapsed first.
        """
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def disconnect(self) -> None:
        """Stop retrying, close any live session and go DISCONNECTED."""
        self._manually_disconnected = True

        task = self._loop_task
        self._loop_task = None
        if task is not None and not task.done():
            logger.debug("[%s] Cancelling connection loop", self.name)
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        session = self._session
        self._session = None
        if session is not None:
            await self._close_session(session)

        self._set_state(ConnectionState.DISCONNECTED)

    async def release(self) -> None:
        """Disconnect and drop all subscribers. The client cannot be reused."""
        await self.disconnect()
        self._released = True
        self._subscribers.clear()
        self._state_handlers.clear()
        self._on_error = None
        logger.debug("[%s] Remote client released", self.name)

    async def _connection_loop(self, host: str) -> None:
        """Connect, read until the session ends, wait, repeat."""
        uri = self._settings.uri(host)
        attempt = 0

        while not self._manually_disconnected:
            attempt += 1
            self._set_state(ConnectionState.CONNECTING)
            logger.info("[%s] Connecting to %s (attempt %d)", self.name, uri, attempt)
            try:
                async with connect(
                    uri,
                    open_timeout=self._settings.open_timeout,
                    ping_interval=self._settings.keepalive_interval,
                    ping_timeout=self._settings.keepalive_interval,
                ) as session:
                    self._session = session
                    attempt = 0
                    self._set_state(ConnectionState.CONNECTED)
                    logger.info("[%s] Connected to %s", self.name, uri)
                    await self._read_frames(session)
                logger.info("[%s] Session with %s ended", self.name, uri)
                self._set_state(ConnectionState.DISCONNECTED)
            except _SESSION_ERRORS as e:
                logger.warning("[%s] Connection to %s failed: %s", self.name, uri, e)
                self._set_state(ConnectionState.ERROR)
                self._emit_error(e)
            except Exception as e:  # noqa: BLE001
                logger.exception("[%s] Unexpected error on %s", self.name, uri)
                self._set_state(ConnectionState.ERROR)
                self._emit_error(e)
            finally:
                self._session = None

            if self._manually_disconnected:
                break
            logger.info(
                "[%s] Reconnecting to %s in %.1fs", self.name, uri, self._settings.reconnect_delay
            )
            await asyncio.sleep(self._settings.reconnect_delay)

    async def _read_frames(self, session: ClientConnection) -> None:
        """Read frames until the remote closes the session."""
        async for frame in session:
            self._handle_frame(frame)

    def _handle_frame(self, frame: str | bytes) -> None:
        """Decode one frame and publish it; malformed frames are dropped."""
        try:
            msg = decode(frame)
        except DecodeError as e:
            logger.warning("[%s] Dropping malformed frame: %s -- %r", self.name, e, e.payload)
            return

        if not isinstance(msg, RemoteMessage):
            logger.debug("[%s] Ignoring non-remote message %s", self.name, msg.type_name)
            return

        logger.debug("[%s] Received %s", self.name, msg)
        self._publish(msg)

    async def _close_session(self, session: ClientConnection) -> None:
        """Close a session, ignoring errors from an already-dead link."""
        try:
            await session.close()
        except _SESSION_ERRORS as e:
            logger.debug("[%s] Expected error while closing session: %s", self.name, e)

    # --- Sending ---

    async def send(self, request: RemoteRequest) -> bool:
        """Serialize and write a request.

        Dropped with a warning when no session is live; never queued.
        A write failure closes the session so the loop reconnects.

        Returns:
            True if the frame was handed to the session.
        """
        session = self._session
        if session is None or self._state is not ConnectionState.CONNECTED:
            logger.warning("[%s] Cannot send %s, not connected", self.name, request.type_name)
            return False

        async with self._send_lock:
            try:
                await session.send(request.to_json())
            except _SESSION_ERRORS as e:
                logger.error("[%s] Failed to send %s: %s", self.name, request.type_name, e)
                self._emit_error(e)
                await self._close_session(session)
                return False

        logger.debug("[%s] Sent %s", self.name, request)
        return True

    def next_request_id(self) -> str:
        """Return a fresh request id."""
        return self._request_ids.next_id()

    async def _send_request(self, request: RemoteRequest) -> str | None:
        """Send a request and return its id, or None if it was dropped."""
        return request.request_id if await self.send(request) else None

    async def get_video_info(self) -> str | None:
        """Request duration, position and play state."""
        return await self._send_request(GetVideoInfoRequest(self.next_request_id()))

    async def get_video_duration(self) -> str | None:
        """Request the current playback position."""
        return await self._send_request(GetVideoDurationRequest(self.next_request_id()))

    async def play_video(self) -> str | None:
        """Start video playback."""
        return await self._send_request(VideoPlayRequest(self.next_request_id()))

    async def pause_video(self) -> str | None:
        """Pause video playback."""
        return await self._send_request(VideoPauseRequest(self.next_request_id()))

    async def seek_video(self, position_ms: int) -> str | None:
        """Seek video playback.

        Args:
            position_ms: Target position in milliseconds.
        """
        return await self._send_request(VideoSeekRequest(self.next_request_id(), position_ms))

    async def get_image_info(self) -> str | None:
        """Request the slideshow index and play state."""
        return await self._send_request(GetImageInfoRequest(self.next_request_id()))

    async def play_images(self) -> str | None:
        """Start the slideshow."""
        return await self._send_request(ImagePlayRequest(self.next_request_id()))

    async def pause_images(self) -> str | None:
        """Pause the slideshow."""
        return await self._send_request(ImagePauseRequest(self.next_request_id()))

    async def connect_to_mac(self, target_mac: str) -> str | None:
        """Ask the projector to link to a peer by address."""
        return await self._send_request(ConnectToMacRequest(self.next_request_id(), target_mac))

    async def start_discovery(self, target_name: str) -> str | None:
        """Ask the projector to discover and link to a named peer."""
        return await self._send_request(StartDiscoveryRequest(self.next_request_id(), target_name))

    async def set_blending_mode(self, mode: BlendingMode, is_controller: bool) -> str | None:
        """Switch blending mode.

        Args:
            mode: Target mode.
            is_controller: True for the projector that drives the pair.
        """
        return await self._send_request(
            BlendingModeRequest(self.next_request_id(), mode, is_controller)
        )

    # --- Events ---

    def _set_state(self, state: ConnectionState) -> None:
        """Update state and notify handlers."""
        if state is self._state:
            return
        logger.debug("[%s] State %s -> %s", self.name, self._state.name, state.name)
        self._state = state
        if state is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        for handler in list(self._state_handlers):
            try:
                handler(state)
            except Exception:  # noqa: BLE001
                logger.exception("[%s] State handler failed", self.name)

    def _emit_error(self, error: Exception) -> None:
        """Notify the error handler."""
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:  # noqa: BLE001
            logger.exception("[%s] Error handler failed", self.name)
