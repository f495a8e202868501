"""Abstract connection manager shared by concrete transports.

A manager is configured with a role. As INITIATOR it links to one target and
sends commands/requests to it; as RESPONDER it accepts peers and broadcasts
commands to all of them. Outbound messages go through a single send lock so
writes on the transport never interleave.

Inbound frames are decoded here: generic sync messages become
``(text, sender_id)`` pairs for the listener registry, anything else goes to
the subclass's :meth:`BaseCommunicationManager._handle_domain_message`.

All methods must be called from the event loop thread. Dispatch methods
schedule their send and return immediately.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from typing import Any

from projlink.api.protocol import DecodeError, ProtocolMessage, RequestIdGenerator, decode
from projlink.api.sync import GeneralCommand, GeneralRequest, GeneralResponse
from projlink.core.listeners import CommandListener, ListenerRegistry
from projlink.models.link import ConnectionState, Role

logger = logging.getLogger(__name__)

StateHandler = Callable[[ConnectionState], None]


class ManagerReleasedError(RuntimeError):
    """The manager was released and cannot be reused."""


class BaseCommunicationManager(ABC):
    """Role selection, dispatch, inbound routing and task ownership.

    Subclasses implement the transport hooks (connect, accept, send, close)
    and may override :meth:`_handle_domain_message`.
    """

    def __init__(self, name: str, request_ids: RequestIdGenerator | None = None) -> None:
        """Initialize the manager.

        Args:
            name: Label used in log messages.
            request_ids: Request id source; a private one by default.
        """
        self.name = name
        self._role = Role.NONE
        self._target: str | None = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners = ListenerRegistry()
        self._request_ids = request_ids or RequestIdGenerator()
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._state_handlers: list[StateHandler] = []
        self._released = False

    @property
    def role(self) -> Role:
        """Return the configured role."""
        return self._role

    @property
    def target(self) -> str | None:
        """Return the INITIATOR target, if any."""
        return self._target

    @property
    def state(self) -> ConnectionState:
        """Return the aggregate connection state."""
        return self._state

    @property
    @abstractmethod
    def is_linked(self) -> bool:
        """Return True if at least one peer can receive messages."""

    # --- Listeners and state handlers ---

    def add_listener(self, listener: CommandListener) -> None:
        """Register a listener for inbound commands."""
        self._listeners.add(listener)

    def remove_listener(self, listener: CommandListener) -> None:
        """Unregister a listener."""
        self._listeners.remove(listener)

    def add_state_handler(self, handler: StateHandler) -> None:
        """Register a callback for aggregate state changes."""
        if handler not in self._state_handlers:
            self._state_handlers.append(handler)

    def remove_state_handler(self, handler: StateHandler) -> None:
        """Unregister a state callback."""
        if handler in self._state_handlers:
            self._state_handlers.remove(handler)

    def _set_state(self, state: ConnectionState) -> None:
        """Update the aggregate state and notify handlers on change."""
        if state is self._state:
            return
        logger.info("[%s] State %s -> %s", self.name, self._state.name, state.name)
        self._state = state
        for handler in list(self._state_handlers):
            try:
                handler(state)
            except Exception:  # noqa: BLE001
                logger.exception("[%s] State handler failed", self.name)

    # --- Lifecycle ---

    def configure(self, role: Role, target: str | None = None) -> None:
        """Select a role and start linking.

        A no-op while CONNECTING or CONNECTED; tear down first to switch.

        Args:
            role: INITIATOR connects to ``target``; RESPONDER starts accepting.
            target: Peer address or host, required for INITIATOR.

        Raises:
            ManagerReleasedError: If the manager was released.
            ValueError: If INITIATOR is requested without a target.
        """
        self._check_not_released()
        if self._state.is_active:
            logger.warning(
                "[%s] Ignoring configure(%s) while %s", self.name, role.name, self._state.name
            )
            return
        if role is Role.INITIATOR and not target:
            raise ValueError("INITIATOR role requires a target")

        self._role = role
        if role is Role.INITIATOR:
            assert target is not None
            self._target = target
            logger.info("[%s] Configured as INITIATOR for %s", self.name, target)
            self._connect_to_target(target)
        elif role is Role.RESPONDER:
            logger.info("[%s] Configured as RESPONDER", self.name)
            self._start_responder()

    def retry_connection(self) -> None:
        """Reconnect to the last target unless already connecting or connected."""
        if self._state.is_active:
            return
        if self._role is not Role.INITIATOR or self._target is None:
            logger.error("[%s] Cannot retry: target is unknown", self.name)
            return
        logger.info("[%s] Retrying connection to %s", self.name, self._target)
        self._connect_to_target(self._target)

    async def teardown(self) -> None:
        """Cancel outstanding work, close the transport, keep listeners.

        The manager can be configured again afterwards.
        """
        logger.debug("[%s] Tearing down", self.name)
        await self._cancel_tasks()
        await self._close_transport()
        self._set_state(ConnectionState.DISCONNECTED)

    async def release(self) -> None:
        """Tear down, release transport resources and clear listeners.

        Terminal: the manager must not be reused.
        """
        if self._released:
            return
        logger.debug("[%s] Releasing all resources", self.name)
        await self.teardown()
        await self._release_resources()
        self._listeners.clear()
        self._state_handlers.clear()
        self._released = True

    async def shutdown(self) -> None:
        """Alias of :meth:`release`."""
        await self.release()

    def _check_not_released(self) -> None:
        if self._released:
            raise ManagerReleasedError(f"Manager {self.name} was released")

    # --- Dispatch ---

    def dispatch_command(self, command: str) -> bool:
        """Send a :class:`GeneralCommand` according to the role.

        Best effort: failures are logged, never raised.

        Returns:
            True if a send was scheduled.
        """
        if self._role is Role.NONE:
            logger.error("[%s] Cannot dispatch command %r: role not set up", self.name, command)
            return False
        if not self.is_linked:
            logger.warning("[%s] Cannot dispatch command %r: not linked", self.name, command)
            return False

        msg = GeneralCommand(command=command)
        if self._role is Role.INITIATOR:
            self._spawn(self._locked_send(self._send_message, msg), f"{self.name}-send")
        else:
            self._spawn(self._locked_send(self._broadcast_message, msg), f"{self.name}-broadcast")
        return True

    def dispatch_request(self, command: str) -> str | None:
        """Send a :class:`GeneralRequest` with a fresh request id.

        Only valid for INITIATOR.

        Returns:
            The request id, or None if nothing was sent.
        """
        if self._role is not Role.INITIATOR:
            logger.error("[%s] Cannot dispatch request %r: not INITIATOR", self.name, command)
            return None
        if not self.is_linked:
            logger.warning("[%s] Cannot dispatch request %r: not linked", self.name, command)
            return None

        request_id = self._request_ids.next_id()
        msg = GeneralRequest(command=command, request_id=request_id)
        self._spawn(self._locked_send(self._send_message, msg), f"{self.name}-request")
        return request_id

    async def _locked_send(
        self,
        send: Callable[[ProtocolMessage], Coroutine[Any, Any, None]],
        msg: ProtocolMessage,
    ) -> None:
        """Run a transport send under the single-writer lock."""
        async with self._send_lock:
            await send(msg)

    # --- Inbound routing ---

    async def _handle_inbound(self, payload: bytes | str, sender_id: str) -> None:
        """Decode a frame and route it to listeners or the subclass."""
        try:
            msg = decode(payload)
        except DecodeError as e:
            logger.warning("[%s] Dropping malformed frame from %s: %s", self.name, sender_id, e)
            return

        logger.debug("[%s] Received %s from %s", self.name, msg, sender_id)
        if isinstance(msg, GeneralResponse):
            text = msg.text
        elif isinstance(msg, (GeneralCommand, GeneralRequest)):
            text = msg.command
        else:
            await self._handle_domain_message(msg, sender_id)
            return

        logger.debug("[%s] Broadcasting %r from %s", self.name, text, sender_id)
        self._listeners.broadcast(text, sender_id)

    async def _handle_domain_message(self, msg: ProtocolMessage, sender_id: str) -> None:
        """Handle a non-generic message; ignored unless overridden."""
        logger.debug("[%s] Ignoring %s from %s", self.name, msg.type_name, sender_id)

    # --- Task ownership ---

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Start a task owned by this manager; teardown cancels it."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[%s] Task %s failed: %r", self.name, task.get_name(), exc)

    async def _cancel_tasks(self) -> None:
        """Cancel every owned task except the caller's and wait for them."""
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # --- Transport hooks ---

    @abstractmethod
    def _connect_to_target(self, target: str) -> None:
        """Begin linking to ``target`` (INITIATOR)."""

    @abstractmethod
    def _start_responder(self) -> None:
        """Begin accepting peers (RESPONDER)."""

    @abstractmethod
    async def _send_message(self, msg: ProtocolMessage) -> None:
        """Write a message to the linked peer(s). Called under the send lock."""

    @abstractmethod
    async def _broadcast_message(self, msg: ProtocolMessage) -> None:
        """Write a message to every connected peer. Called under the send lock."""

    @abstractmethod
    async def _close_transport(self) -> None:
        """Close every link owned by the transport."""

    async def _release_resources(self) -> None:
        """Release transport resources after teardown."""
