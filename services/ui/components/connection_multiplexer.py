"""
Connection Multiplexer Component

Shares one WebSocket connection to the collaborative channel among every UI
component that needs real-time features. Components register while mounted;
when the last one unregisters the connection is torn down after a grace
period, unless someone registers or acquires again first.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.config import get_config
from shared.protocol import build_message


class TransportState(Enum):
    """Transport connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class TransportOptions:
    """How a handle connects and reconnects"""
    path: str = "/ws/collaborative"
    reconnection: bool = True
    reconnection_attempts: int = 10
    reconnection_delay: float = 1.0
    connect_timeout: float = 20.0
    auto_connect: bool = True

    @classmethod
    def from_config(cls, config=None) -> 'TransportOptions':
        config = config or get_config()
        return cls(
            path=config.websocket_path,
            reconnection_attempts=config.reconnection_attempts,
            reconnection_delay=config.reconnection_delay,
            connect_timeout=config.connect_timeout
        )


TransportFactory = Callable[[str, Dict[str, str], float], Awaitable[Any]]


async def websocket_transport_factory(url: str, headers: Dict[str, str], open_timeout: float):
    """Open a WebSocket with the credential in the handshake headers"""
    return await websockets.connect(url, additional_headers=headers, open_timeout=open_timeout)


def to_websocket_url(backend_url: str, path: str) -> str:
    """Map an http(s) backend URL to the ws(s) URL of a channel path"""
    base = backend_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + path


class ConnectionHandle:
    """
    One multiplexed connection to the collaborative channel

    Events from the server are dispatched to listeners by their ``type``.
    The handle also emits the local events ``connect``, ``disconnect`` and
    ``connect_error``. The transport is owned by the handle's runner task and
    is only opened and closed there.
    """

    def __init__(
        self,
        url: str,
        auth_token: str,
        options: TransportOptions,
        transport_factory: TransportFactory,
        multiplexer: Optional['ConnectionMultiplexer'] = None
    ):
        self.url = url
        self.auth_token = auth_token
        self.options = options
        self.state = TransportState.DISCONNECTED
        self.logger = logging.getLogger("ui.multiplexer.handle")

        self._transport_factory = transport_factory
        self._multiplexer = multiplexer
        self._transport = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._connected_event = asyncio.Event()
        self._listeners: Dict[str, List[Callable]] = {}

    @property
    def transport(self):
        return self._transport

    @property
    def connected(self) -> bool:
        return self.state == TransportState.CONNECTED

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def reference_count(self) -> int:
        return self._multiplexer.reference_count if self._multiplexer else 0

    # Listener management

    def on(self, event: str, listener: Callable):
        """Register a listener for an event; coroutine functions are awaited"""
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Optional[Callable] = None):
        """Remove one listener, or every listener of an event"""
        if listener is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def remove_all_listeners(self):
        self._listeners.clear()

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    async def _dispatch(self, event: str, data: Dict[str, Any]):
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Listener for {event} failed: {e}")

    # Connection lifecycle

    def connect(self):
        """Start connecting in the background"""
        if self._closed or (self._task is not None and not self._task.done()):
            return
        self.state = TransportState.CONNECTING
        self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until the transport is open"""
        if self.connected:
            return True
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.connected

    def close(self):
        """Stop the runner task; the transport is closed as the task unwinds"""
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.state = TransportState.DISCONNECTED
        self._connected_event.clear()

    async def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send a command to the server

        Returns:
            bool: True if the frame was written to an open transport
        """
        if not self.connected or self._transport is None:
            self.logger.warning(f"Cannot send {event}: not connected")
            return False

        try:
            await self._transport.send(json.dumps(build_message(event, payload)))
            return True
        except (ConnectionClosed, WebSocketException, OSError) as e:
            self.logger.error(f"Failed to send {event}: {e}")
            return False

    async def _run(self):
        """Connect, listen, and reconnect within the configured bounds"""
        headers = {"Authorization": f"Bearer {self.auth_token}"}
        failures = 0

        try:
            while not self._closed:
                self.state = TransportState.CONNECTING
                try:
                    self._transport = await self._transport_factory(
                        self.url, headers, self.options.connect_timeout
                    )
                except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                    self.logger.warning(f"connect_error: {e}")
                    await self._dispatch("connect_error", {"message": str(e)})
                else:
                    failures = 0
                    await self._listen()

                if not self.options.reconnection:
                    break
                failures += 1
                if failures > self.options.reconnection_attempts:
                    self.logger.warning(f"Giving up after {self.options.reconnection_attempts} reconnection attempts")
                    break
                self.state = TransportState.CONNECTING
                await asyncio.sleep(self.options.reconnection_delay)
        finally:
            self.state = TransportState.DISCONNECTED
            self._connected_event.clear()
            await self._close_transport()

    async def _listen(self):
        self.state = TransportState.CONNECTED
        self._connected_event.set()
        self.logger.info(f"Connected to {self.url}")
        await self._dispatch("connect", {})

        try:
            async for raw in self._transport:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError) as e:
                    self.logger.error(f"Invalid JSON received: {e}")
                    continue
                if isinstance(data, dict):
                    await self._dispatch(data.get("type", "unknown"), data)
        except ConnectionClosed as e:
            self.logger.info(f"Connection closed: {e}")
        finally:
            self.state = TransportState.DISCONNECTED
            self._connected_event.clear()
            await self._close_transport()

        await self._dispatch("disconnect", {})

    async def _close_transport(self):
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except (OSError, WebSocketException) as e:
            self.logger.debug(f"Error closing transport: {e}")


class ConnectionMultiplexer:
    """
    Owner of the single live connection handle

    Construct one per process in the application's composition root and pass
    it to the components that need it.

    Args:
        backend_url: HTTP(S) base URL of the API service
        options: Default transport options
        grace_period: Seconds to wait after the last user leaves before teardown
        transport_factory: Coroutine opening a transport (defaults to websockets)
    """

    def __init__(
        self,
        backend_url: Optional[str] = None,
        options: Optional[TransportOptions] = None,
        grace_period: Optional[float] = None,
        transport_factory: Optional[TransportFactory] = None,
        config=None
    ):
        config = config or get_config()
        self.backend_url = backend_url or config.backend_url
        self.options = options or TransportOptions.from_config(config)
        self.grace_period = config.grace_period if grace_period is None else grace_period
        self.transport_factory = transport_factory or websocket_transport_factory
        self.logger = logging.getLogger("ui.multiplexer")

        self.handle: Optional[ConnectionHandle] = None
        self._reference_count = 0
        self._teardown_timer: Optional[asyncio.TimerHandle] = None

    @property
    def reference_count(self) -> int:
        return self._reference_count

    @property
    def teardown_pending(self) -> bool:
        return self._teardown_timer is not None

    def acquire(self, auth_token: Optional[str], options: Optional[TransportOptions] = None) -> Optional[ConnectionHandle]:
        """
        Get the shared connection handle

        A handle that is connected, or still connecting, is returned as is.
        Anything else is torn down and replaced.

        Returns:
            Optional[ConnectionHandle]: None if no token was supplied
        """
        if not auth_token:
            self.logger.warning("No auth token; connection not available")
            return None

        self._cancel_teardown()

        handle = self.handle
        if handle is not None and (
            handle.state in (TransportState.CONNECTING, TransportState.CONNECTED)
            or (not handle.started and not handle.closed)
        ):
            return handle

        if handle is not None:
            self.logger.info("Replacing stale connection handle")
            self.teardown()

        options = options or self.options
        self.handle = ConnectionHandle(
            url=to_websocket_url(self.backend_url, options.path),
            auth_token=auth_token,
            options=options,
            transport_factory=self.transport_factory,
            multiplexer=self
        )
        if options.auto_connect:
            self.handle.connect()
        return self.handle

    def register_user(self, component_id: str):
        """Record that a component is using the connection"""
        self._reference_count += 1
        self._cancel_teardown()
        self.logger.debug(f"Registered {component_id} ({self._reference_count} users)")

    def unregister_user(self, component_id: str):
        """Record that a component stopped using the connection"""
        self._reference_count = max(0, self._reference_count - 1)
        self.logger.debug(f"Unregistered {component_id} ({self._reference_count} users)")

        if self._reference_count == 0 and self.handle is not None:
            self._schedule_teardown()

    def teardown(self):
        """Remove all listeners and close the transport; no-op without a handle"""
        self._cancel_teardown()
        handle, self.handle = self.handle, None
        if handle is None:
            return
        handle.remove_all_listeners()
        handle.close()
        self.logger.info("Connection torn down")

    def _schedule_teardown(self):
        self._cancel_teardown()
        loop = asyncio.get_running_loop()
        self._teardown_timer = loop.call_later(self.grace_period, self._grace_period_elapsed)

    def _cancel_teardown(self):
        if self._teardown_timer is not None:
            self._teardown_timer.cancel()
            self._teardown_timer = None

    def _grace_period_elapsed(self):
        self._teardown_timer = None
        if self._reference_count == 0:
            self.teardown()
