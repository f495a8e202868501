"""Coordination of a left/right projector pair over two socket links.

The left projector is the controller. Once both links are up, the left one
is asked to discover its right-hand peer by advertised name; the pair is
ready when both links are connected and the left projector has reported a
successful peer connection.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from projlink.api.client import RemoteControlClient
from projlink.api.protocol import RequestIdGenerator
from projlink.api.remote import BlendingMode, NotifyPeerConnectionDone, RemoteMessage
from projlink.models.link import ConnectionState
from projlink.models.settings import RemoteSettings

logger = logging.getLogger(__name__)


class ProjectorPair:
    """Two remote-control clients driven as one blended display.

    Example:
        pair = ProjectorPair()
        pair.set_ready_handler(lambda ready: print("ready", ready))
        pair.connect("192.168.1.20", "192.168.1.21", "Projector-R")
        await pair.inform_blending_mode(BlendingMode.VIDEO)
    """

    def __init__(
        self,
        settings: RemoteSettings | None = None,
        left: RemoteControlClient | None = None,
        right: RemoteControlClient | None = None,
    ) -> None:
        """Initialize the pair.

        Args:
            settings: Socket settings for clients created here.
            left: Controller client; created if omitted.
            right: Second client; created if omitted.
        """
        request_ids = RequestIdGenerator()
        self.left = left or RemoteControlClient(settings, name="left", request_ids=request_ids)
        self.right = right or RemoteControlClient(settings, name="right", request_ids=request_ids)
        self._right_name: str | None = None
        self._discovery_sent = False
        self._paired = False
        self._ready = False
        self._on_ready_changed: Callable[[bool], None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self.left.add_state_handler(self._on_client_state)
        self.right.add_state_handler(self._on_client_state)

    @property
    def right_name(self) -> str | None:
        """Return the advertised name of the right projector."""
        return self._right_name

    @property
    def is_paired(self) -> bool:
        """Return True once the left projector reported a peer link."""
        return self._paired

    @property
    def is_ready(self) -> bool:
        """Return True if both links are up and the projectors are paired."""
        return self._ready

    @property
    def discovery_sent(self) -> bool:
        """Return True once the discovery request went out."""
        return self._discovery_sent

    def set_ready_handler(self, handler: Callable[[bool], None] | None) -> None:
        """Set the callback invoked when readiness changes."""
        self._on_ready_changed = handler

    def connect(
        self, left_host: str | None, right_host: str | None, right_name: str | None = None
    ) -> None:
        """Open both links; empty hosts are skipped.

        Must be called from the event loop.
        """
        self._right_name = right_name or None
        self._discovery_sent = False
        logger.debug("Connecting pair: left=%s right=%s", left_host, right_host)

        if self._watch_task is None or self._watch_task.done():
            loop = asyncio.get_running_loop()
            self._watch_task = loop.create_task(self._watch_left(), name="pair-watch-left")

        if left_host:
            self.left.connect(left_host)
        if right_host:
            self.right.connect(right_host)
        self._check_discovery()

    async def inform_blending_mode(self, mode: BlendingMode) -> tuple[str | None, str | None]:
        """Tell both projectors to switch mode; only the left one controls.

        Returns:
            Request ids sent to (left, right), None where the link was down.
        """
        logger.info("Informing pair of blending mode %s", mode.value)
        left_id = await self.left.set_blending_mode(mode, is_controller=True)
        right_id = await self.right.set_blending_mode(mode, is_controller=False)
        return left_id, right_id

    async def disconnect(self, delay: float = 0.0) -> None:
        """Close both links after ``delay`` seconds."""
        if delay > 0:
            await asyncio.sleep(delay)
        logger.info("Disconnecting projector pair")
        await asyncio.gather(self.left.disconnect(), self.right.disconnect())
        self._discovery_sent = False
        self._paired = False
        self._update_ready()

    async def release(self) -> None:
        """Stop watching and release both clients."""
        if self._watch_task is not None:
            self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
            self._watch_task = None
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await asyncio.gather(self.left.release(), self.right.release())
        self._on_ready_changed = None

    # --- Internals ---

    def _on_client_state(self, state: ConnectionState) -> None:
        self._check_discovery()
        self._update_ready()

    def _check_discovery(self) -> None:
        """Send the discovery request once both links are up."""
        if self._discovery_sent or not self._right_name:
            return
        if not (self.left.is_connected and self.right.is_connected):
            return
        logger.info("Both links up, asking left projector to discover %s", self._right_name)
        self._discovery_sent = True
        self._spawn(self.left.start_discovery(self._right_name), "pair-discovery")

    async def _watch_left(self) -> None:
        """Track peer-connection notifications from the left projector."""
        async with self.left.events() as events:
            while True:
                msg: RemoteMessage = await events.get()
                if isinstance(msg, NotifyPeerConnectionDone):
                    logger.info("Left projector peer connection done: %s", msg.status)
                    self._paired = msg.status
                    self._update_ready()

    def _update_ready(self) -> None:
        ready = self.left.is_connected and self.right.is_connected and self._paired
        if ready == self._ready:
            return
        self._ready = ready
        logger.info("Projector pair ready: %s", ready)
        if self._on_ready_changed is not None:
            try:
                self._on_ready_changed(ready)
            except Exception:  # noqa: BLE001
                logger.exception("Ready handler failed")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
