"""
WebSocket connection manager for Home Assistant.

One ``HomeAssistantConnection`` owns one authenticated WebSocket and keeps it
alive: it runs the auth handshake, correlates commands with their results,
forwards pushed events, and reconnects with exponential backoff when the
socket drops.

CONNECTION LIFECYCLE:
---------------------

    IDLE --connect()--> CONNECTING --auth_required--> AUTHENTICATING
    AUTHENTICATING --auth_ok--> CONNECTED
    AUTHENTICATING --auth_invalid--> FAILED        (terminal, no retry)
    any --socket lost--> CONNECTING (after backoff) | FAILED (reconnect disabled)
    CONNECTING, AUTHENTICATING --no auth_ok within request_timeout--> socket lost
    any --disconnect()--> CLOSED

Opening the socket is not enough to be connected. Home Assistant first sends
``auth_required``; we answer with the token and only ``auth_ok`` makes the
connection usable.

EPOCHS:
-------
Every transport gets an epoch number. Tearing a transport down bumps the
epoch and cancels its receive task *before* the socket is closed, so nothing
from an old socket (late frames, its close) can act on the new one.

All callbacks and timers run on the event loop that called ``connect``; no
locks are needed as long as that holds.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from .callback_registry import CallbackRegistry
from .circuit_breaker import CircuitBreaker
from .config import ConnectionConfig
from .entity_batcher import EntityBatcher
from .errors import AuthError, CommandError, HassLinkError, ProtocolError, RequestTimeoutError, TransportError
from .messages import (
    AuthInvalid,
    AuthOk,
    AuthRequired,
    Event,
    EventMessage,
    InboundFrame,
    PongMessage,
    ResultMessage,
    auth_frame,
    command_frame,
    decode_frame,
    encode_frame,
)


logger = logging.getLogger(__name__)

# Home Assistant's get_states answer easily exceeds the 1 MiB library default
MAX_MESSAGE_SIZE = 16 * 1024 * 1024


class ConnectionState(Enum):
    """
    Tracks the WebSocket connection lifecycle.

    IDLE: Never connected
    CONNECTING: Socket opening, waiting for auth_required, or waiting to reconnect
    AUTHENTICATING: Token sent, waiting for auth_ok / auth_invalid
    CONNECTED: Authenticated and ready for commands
    FAILED: Gave up; see ``failure_reason``
    CLOSED: disconnect() was called
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionStatus(str, Enum):
    """Values passed to the ``on_status`` observer."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTH_INVALID = "auth_invalid"
    FAILED = "failed"


ConnectFactory = Callable[[str], Awaitable[Any]]


async def open_websocket(url: str) -> ClientConnection:
    """Default transport: a websockets client connection."""
    return await connect(url, max_size=MAX_MESSAGE_SIZE)


class HomeAssistantConnection:
    """
    Resilient client for the Home Assistant WebSocket API.

    Construct it, call ``connect()``, then ``await send(...)``. The instance
    is owned by the caller; there is no global connection.

    Args:
        config: Connection settings; may also be passed to ``connect()``
        connect_factory: Coroutine function opening a transport for a URL.
            Defaults to ``websockets.connect``; tests pass a fake.
    """

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        *,
        connect_factory: Optional[ConnectFactory] = None,
    ):
        self.config: Optional[ConnectionConfig] = None
        self._connect_factory = connect_factory or open_websocket

        # CONNECTION STATE
        # ----------------
        self.state = ConnectionState.IDLE
        self.status = ConnectionStatus.IDLE
        self.failure_reason: Optional[str] = None
        self._failure: Optional[HassLinkError] = None
        self._websocket: Optional[ClientConnection] = None
        self._epoch = 0
        self._state_waiters: List[asyncio.Future] = []

        # RECONNECTION
        # ------------
        self._should_reconnect = False
        self._reconnect_attempt = 0
        self.reconnect_delays: List[float] = []

        # MESSAGE CORRELATION
        # -------------------
        self._message_id = 0
        self.callbacks = CallbackRegistry()

        # POLICIES
        # --------
        self.circuit_breaker: Optional[CircuitBreaker] = None
        self._batcher: Optional[EntityBatcher] = None

        # ASYNC TASKS
        # -----------
        self._connect_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._handshake_timer: Optional[asyncio.TimerHandle] = None

        self.subscriptions: Dict[str, int] = {}
        self.last_pong: Optional[float] = None

        if config is not None:
            self._apply_config(config)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def connect(self, config: Optional[ConnectionConfig] = None) -> None:
        """
        Start (or restart) the connection.

        Idempotent: any running transport, pending reconnect timer and
        in-flight request from a previous attempt is torn down first. Passing
        a new ``config`` replaces the old one wholesale.

        Returns once the attempt is underway; use ``wait_connected()`` or the
        status observer to learn the outcome.
        """
        if config is not None:
            self._apply_config(config)
        if self.config is None:
            raise ValueError("connect() needs a ConnectionConfig")

        self._should_reconnect = True
        self._failure = None
        self.failure_reason = None

        websocket = self._detach(TransportError("Connection restarted"))
        await self._close_transport(websocket)

        logger.info(f"Connecting to {self.config.url}")
        self._set_state(ConnectionState.CONNECTING)
        self._notify_status(ConnectionStatus.CONNECTING)
        self._start_attempt()

    async def disconnect(self) -> None:
        """
        Close the connection for good.

        Stops reconnection, cancels every timer, fails every pending request
        and closes the socket without triggering the reconnect path.
        """
        logger.info("Closing connection")
        self._should_reconnect = False

        websocket = self._detach(TransportError("Disconnected"))
        await self._close_transport(websocket)
        await self._cancel_background()

        self._set_state(ConnectionState.CLOSED)
        self._notify_status(ConnectionStatus.IDLE)
        logger.info("Connection closed")

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        """
        Wait until the connection is authenticated.

        Raises:
            AuthError: the token was rejected
            TransportError: the connection failed, was closed, or never started
            asyncio.TimeoutError: ``timeout`` elapsed first
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            if self.state == ConnectionState.CONNECTED:
                return
            if self.state == ConnectionState.IDLE:
                raise TransportError("connect() has not been called")
            if self.state == ConnectionState.CLOSED:
                raise TransportError("Connection closed")
            if self.state == ConnectionState.FAILED:
                raise self._failure or TransportError(self.failure_reason or "Connection failed")

            waiter = loop.create_future()
            self._state_waiters.append(waiter)
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                await asyncio.wait_for(waiter, remaining)
            finally:
                if waiter in self._state_waiters:
                    self._state_waiters.remove(waiter)

    async def send(self, command_type: str, **params: Any) -> Any:
        """
        Send a command and wait for its result.

        Args:
            command_type: Home Assistant command (e.g. "get_states", "call_service")
            **params: Additional command fields

        Returns:
            The ``result`` field of the matching result frame

        Raises:
            TransportError: not connected, or the connection dropped meanwhile
            CircuitOpenError: the circuit breaker is open; nothing was sent
            CommandError: Home Assistant reported a failure
            RequestTimeoutError: no result within the request timeout
        """
        return await self.send_message({"type": command_type, **params})

    async def send_message(self, message: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """Like ``send`` but takes the frame as a dict and an optional timeout."""
        if "type" not in message:
            raise ValueError("Message needs a 'type'")
        self._ensure_connected()
        return await self._guarded(lambda: self._transmit(message, timeout))

    async def subscribe_events(self, event_type: Optional[str] = None) -> int:
        """
        Subscribe to pushed events and return the subscription id.

        Events arrive with ``id`` set to the subscription id and are routed to
        ``on_event`` (or coalesced into ``on_batch``). ``None`` means all events.
        """
        return await self._subscribe(event_type, guarded=True)

    async def _subscribe(self, event_type: Optional[str], *, guarded: bool) -> int:
        self._ensure_connected()
        msg_id = self._next_id()
        message: Dict[str, Any] = {"type": "subscribe_events"}
        if event_type:
            message["event_type"] = event_type

        if guarded:
            await self._guarded(lambda: self._transmit(message, None, msg_id))
        else:
            await self._transmit(message, None, msg_id)
        self.subscriptions[event_type or "*"] = msg_id
        logger.info(f"Subscribed to events (type={event_type}), subscription_id={msg_id}")
        return msg_id

    def _ensure_connected(self) -> None:
        if self.state != ConnectionState.CONNECTED or self._websocket is None:
            raise TransportError("WebSocket not connected")

    async def _guarded(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if self.circuit_breaker is None:
            return await operation()
        return await self.circuit_breaker.execute(operation)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _apply_config(self, config: ConnectionConfig) -> None:
        self.config = config
        self.callbacks.default_timeout = config.request_timeout

        if config.circuit_breaker is not None:
            self.circuit_breaker = CircuitBreaker(
                config.circuit_breaker,
                name=config.url,
                excluded_exceptions=(CommandError,),
            )
        else:
            self.circuit_breaker = None

        if self._batcher is not None:
            self._batcher.clear()
        self._batcher = EntityBatcher(self._deliver_batch, config.batch_window) if config.coalescing else None

    # ------------------------------------------------------------------
    # Transport lifecycle
    # ------------------------------------------------------------------

    def _start_attempt(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self._connect_task = asyncio.create_task(self._open_transport(self._epoch))

    async def _open_transport(self, epoch: int) -> None:
        try:
            websocket = await self._connect_factory(self.config.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Could not open {self.config.url}: {e!r}")
            if epoch == self._epoch:
                self._connect_task = None
                self._handle_transport_lost(TransportError(str(e)))
            return

        if epoch != self._epoch:
            await self._close_transport(websocket)
            return

        logger.info("WebSocket connection established, waiting for auth challenge")
        self._connect_task = None
        self._websocket = websocket
        self._receive_task = asyncio.create_task(self._receive_loop(websocket, epoch))
        self._handshake_timer = asyncio.get_running_loop().call_later(
            self.config.request_timeout, self._handshake_expired, epoch
        )

    async def _receive_loop(self, websocket: ClientConnection, epoch: int) -> None:
        """
        Read frames until the socket closes.

        A clean end of iteration means the server closed the socket; an
        exception means the transport broke. Either way, if this socket is
        still the current one, it is handled as a lost connection.
        """
        error: Optional[Exception] = None
        try:
            async for raw in websocket:
                if epoch != self._epoch:
                    return
                await self._handle_raw(websocket, raw)
                if epoch != self._epoch:
                    return
        except asyncio.CancelledError:
            logger.debug("Receive loop cancelled")
            raise
        except ConnectionClosed as e:
            error = e
        except Exception as e:
            logger.error(f"Receive loop error: {e!r}")
            error = e

        if epoch == self._epoch:
            self._receive_task = None
            self._handle_transport_lost(TransportError(f"Connection closed: {error or 'by server'}"))

    def _detach(self, reason: HassLinkError) -> Optional[ClientConnection]:
        """
        Drop the current transport and everything tied to it.

        Bumps the epoch and cancels the transport's tasks before anyone closes
        the socket. Returns the socket so the caller can close it.
        """
        self._epoch += 1

        current = asyncio.current_task()
        for task in (self._connect_task, self._receive_task, self._reconnect_task, self._ping_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._connect_task = None
        self._receive_task = None
        self._reconnect_task = None
        self._ping_task = None
        self._cancel_handshake_timer()

        websocket, self._websocket = self._websocket, None

        self.callbacks.clear(reason)
        if self._batcher is not None:
            self._batcher.clear()
        self._message_id = 0
        self.subscriptions.clear()
        return websocket

    def _handshake_expired(self, epoch: int) -> None:
        """The socket opened but auth_ok never came within request_timeout."""
        self._handshake_timer = None
        if epoch != self._epoch or self.state == ConnectionState.CONNECTED:
            return
        self._handle_transport_lost(TransportError("Handshake timed out"))

    def _cancel_handshake_timer(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None

    async def _close_transport(self, websocket: Optional[ClientConnection]) -> None:
        if websocket is None:
            return
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error while closing WebSocket: {e!r}")

    def _handle_transport_lost(self, error: TransportError) -> None:
        logger.warning(f"Connection lost: {error}")
        websocket = self._detach(TransportError("Connection lost"))
        if websocket is not None:
            self._spawn(self._close_transport(websocket))

        if self._should_reconnect and self.config.reconnect.enabled:
            self._schedule_reconnect()
        else:
            self._fail(error, "Connection lost", ConnectionStatus.FAILED)

    def _schedule_reconnect(self) -> None:
        delay = self.config.reconnect.delay_for(self._reconnect_attempt)
        self.reconnect_delays.append(delay)

        self._set_state(ConnectionState.CONNECTING)
        self._notify_status(ConnectionStatus.CONNECTING)

        logger.info(f"Reconnecting in {delay:.2f}s (attempt {self._reconnect_attempt + 1})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay, self._epoch))

    async def _reconnect_after(self, delay: float, epoch: int) -> None:
        await asyncio.sleep(delay)
        if epoch != self._epoch or not self._should_reconnect:
            return
        self._reconnect_task = None
        self._reconnect_attempt += 1
        self._start_attempt()

    def _fail(self, error: HassLinkError, reason: str, status: ConnectionStatus) -> None:
        self._failure = error
        self.failure_reason = reason
        self._set_state(ConnectionState.FAILED)
        self._notify_status(status, reason)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def _handle_raw(self, websocket: ClientConnection, raw: Any) -> None:
        try:
            message = decode_frame(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return

        logger.debug(f"Received: {message.type}")

        # 1. Handshake frames never leave the manager
        if isinstance(message, AuthRequired):
            await self._on_auth_required(websocket)
        elif isinstance(message, AuthOk):
            self._on_auth_ok()
        elif isinstance(message, AuthInvalid):
            self._on_auth_invalid(message)
        # 2. Results go to whoever is waiting for them
        elif isinstance(message, ResultMessage):
            self.callbacks.handle_result(message)
        # 3. Keepalive answers
        elif isinstance(message, PongMessage):
            self.last_pong = asyncio.get_running_loop().time()
            self.callbacks.resolve(message.id, None)
        # 4. Everything else is an event for the consumer
        else:
            self._dispatch_event(message)

    async def _on_auth_required(self, websocket: ClientConnection) -> None:
        if self.state not in (ConnectionState.CONNECTING, ConnectionState.AUTHENTICATING):
            logger.warning(f"Unexpected auth_required in state {self.state.value}")
            return
        logger.info("Received auth challenge")
        self._set_state(ConnectionState.AUTHENTICATING)
        await websocket.send(encode_frame(auth_frame(self.config.token)))

    def _on_auth_ok(self) -> None:
        if self.state != ConnectionState.AUTHENTICATING:
            logger.warning(f"Ignoring auth_ok in state {self.state.value}")
            return

        logger.info("Authentication successful")
        self._cancel_handshake_timer()
        self._reconnect_attempt = 0
        self._set_state(ConnectionState.CONNECTED)
        self._notify_status(ConnectionStatus.CONNECTED)

        epoch = self._epoch
        self._spawn(self._setup_session(epoch))
        if self.config.ping_interval:
            self._ping_task = asyncio.create_task(self._keepalive(epoch, self.config.ping_interval))

    def _on_auth_invalid(self, message: AuthInvalid) -> None:
        reason = message.message
        logger.error(f"Authentication failed: {reason}")

        # Same token, same answer: never retry this config
        self._should_reconnect = False
        error = AuthError(reason)
        websocket = self._detach(error)
        if websocket is not None:
            self._spawn(self._close_transport(websocket))

        self._fail(error, reason, ConnectionStatus.AUTH_INVALID)

    async def _setup_session(self, epoch: int) -> None:
        """
        Subscribe to the configured event types on a fresh session.

        Bypasses the circuit breaker, which requests failed by the previous
        drop may have left open.
        """
        for event_type in self.config.subscribe_events:
            if epoch != self._epoch:
                return
            try:
                await self._subscribe(event_type, guarded=False)
            except HassLinkError as e:
                logger.error(f"Failed to subscribe to {event_type}: {e}")

    async def _keepalive(self, epoch: int, interval: float) -> None:
        while epoch == self._epoch:
            await asyncio.sleep(interval)
            if epoch != self._epoch:
                return
            try:
                await self.send_message({"type": "ping"}, timeout=interval)
            except RequestTimeoutError:
                if epoch == self._epoch:
                    self._ping_task = None
                    self._handle_transport_lost(TransportError("Ping timed out"))
                return
            except TransportError:
                return
            except HassLinkError as e:
                logger.debug(f"Ping failed: {e}")

    # ------------------------------------------------------------------
    # Outbound frames
    # ------------------------------------------------------------------

    def _next_id(self) -> int:
        self._message_id += 1
        return self._message_id

    async def _transmit(
        self, message: Dict[str, Any], timeout: Optional[float], msg_id: Optional[int] = None
    ) -> Any:
        websocket = self._websocket
        if websocket is None:
            raise TransportError("WebSocket not connected")

        if msg_id is None:
            msg_id = self._next_id()
        params = {k: v for k, v in message.items() if k != "type"}
        frame = command_frame(msg_id, message["type"], **params)

        # Register first: the result may arrive before send() returns
        future = self.callbacks.register(msg_id, timeout)

        logger.debug(f"Sending: {frame.get('type')} (id={msg_id})")
        try:
            await websocket.send(encode_frame(frame))
        except Exception as e:
            self.callbacks.reject(msg_id, TransportError(f"Send failed: {e}"))

        return await future

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def _dispatch_event(self, message: InboundFrame) -> None:
        if self._batcher is not None and isinstance(message, EventMessage):
            entity_id = message.event.entity_id
            if entity_id is not None:
                self._batcher.enqueue(entity_id, message.event)
                return
        self._invoke(self.config.on_event, message)

    def _deliver_batch(self, updates: Dict[str, Event]) -> None:
        logger.debug(f"Delivering {len(updates)} coalesced update(s)")
        self._invoke(self.config.on_batch, updates)

    def _notify_status(self, status: ConnectionStatus, reason: Optional[str] = None) -> None:
        self.status = status
        if self.config is not None:
            self._invoke(self.config.on_status, status, reason)

    def _set_state(self, state: ConnectionState) -> None:
        if self.state == state:
            return
        logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state
        waiters, self._state_waiters = self._state_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(state)

    def _invoke(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """
        Run an observer without letting it break the connection.

        Coroutine functions are scheduled as tasks; plain functions run inline.
        """
        if callback is None:
            return
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                self._spawn(result)
        except Exception:
            logger.exception("Callback error")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    async def _cancel_background(self) -> None:
        tasks = [t for t in self._background if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "HomeAssistantConnection":
        """Connect and wait for authentication."""
        await self.connect()
        try:
            await self.wait_connected(self.config.request_timeout)
        except BaseException:
            await self.disconnect()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Ensure cleanup on context manager exit."""
        await self.disconnect()
