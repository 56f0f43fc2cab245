"""Channels behind the transport broker.

``LocalChannel`` runs commands in-process against a dispatcher and listens to
the event bus directly. ``RemoteChannel`` speaks the websocket wire protocol:
authenticate first, then Invoke/Subscribe, reconnecting with exponential
backoff whenever the socket drops.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, Optional, Set
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.exceptions import WebSocketException

from .errors import AuthError, ConnectionClosedError, ProtocolError
from .event_bus import EventBus
from .protocol import (
    Auth,
    AuthResult,
    Event,
    Invoke,
    InvokeResult,
    Subscribe,
    Unsubscribe,
    encode,
    parse_server_message,
)
from .transport import Channel, ConnectionStatus, OutboundRecord

logger = logging.getLogger(__name__)

AUTH_TIMEOUT = 10.0
BACKOFF_BASE = 1.0
BACKOFF_CAP = 30.0


def token_from_fragment(url: str) -> Optional[str]:
    """Read ``token`` from a URL fragment such as ``http://host/#token=abc``."""
    fragment = urlsplit(url).fragment
    if not fragment:
        return None
    values = parse_qs(fragment).get("token")
    return values[0] if values else None


class LocalChannel(Channel):
    """Always-connected channel that dispatches calls without serialization."""

    def __init__(self, dispatcher, bus: EventBus) -> None:
        super().__init__()
        self._dispatcher = dispatcher
        self._bus = bus
        self._open = False
        self._ready = asyncio.Event()
        self._listeners: Dict[str, Callable[[], None]] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._open

    async def start(self) -> None:
        if self._open:
            return
        self._open = True
        self._ready.set()
        self._sink._on_open()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def post(self, record: OutboundRecord) -> None:
        if not self._open:
            raise ConnectionClosedError("Local channel is not open")
        if isinstance(record, Invoke):
            task = asyncio.get_running_loop().create_task(self._invoke(record))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif isinstance(record, Subscribe):
            if record.event not in self._listeners:
                self._listeners[record.event] = self._bus.listen(
                    record.event, partial(self._sink._on_event, record.event)
                )
        elif isinstance(record, Unsubscribe):
            unlisten = self._listeners.pop(record.event, None)
            if unlisten is not None:
                unlisten()
        else:
            raise ProtocolError(f"Cannot post {type(record).__name__} on the local channel")

    async def _invoke(self, record: Invoke) -> None:
        try:
            value = await self._dispatcher.dispatch(record.command, record.args)
            result = InvokeResult(id=record.id, result=value)
        except Exception as e:
            logger.debug(f"Local command {record.command} failed: {e}")
            result = InvokeResult(id=record.id, error=str(e))
        self._sink._on_result(result)

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._ready.clear()
        for unlisten in self._listeners.values():
            unlisten()
        self._listeners.clear()
        for task in list(self._tasks):
            task.cancel()
        self._sink._on_close()


class RemoteChannel(Channel):
    """Websocket channel with token auth and automatic reconnection."""

    def __init__(
        self,
        url: str,
        token: Optional[str],
        *,
        auth_timeout: float = AUTH_TIMEOUT,
        backoff_base: float = BACKOFF_BASE,
        backoff_cap: float = BACKOFF_CAP,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.token = token
        self.auth_timeout = auth_timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.attempt = 0
        self._connect = connect or websockets.connect
        self._ws = None
        self._outgoing: Optional[asyncio.Queue] = None
        self._ready = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._ready.is_set()

    def next_delay(self) -> float:
        delay = min(self.backoff_base * (2 ** min(self.attempt, 16)), self.backoff_cap)
        self.attempt += 1
        return delay

    async def start(self) -> None:
        if self._runner is None:
            self._closed = False
            self._runner = asyncio.create_task(self._run())

    async def wait_ready(self) -> None:
        if self._closed:
            raise ConnectionClosedError("Channel closed")
        await self._ready.wait()

    def post(self, record: OutboundRecord) -> None:
        if not self.connected or self._outgoing is None:
            raise ConnectionClosedError("WebSocket not connected")
        self._outgoing.put_nowait(encode(record))

    async def close(self) -> None:
        self._closed = True
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while not self._closed:
            try:
                await self._session()
            except AuthError as e:
                logger.warning(f"Authentication failed: {e}")
            except (OSError, asyncio.TimeoutError, ProtocolError, WebSocketException) as e:
                logger.warning(f"Connection to {self.url} lost: {e}")
            finally:
                self._teardown()
            if self._closed:
                break
            delay = self.next_delay()
            logger.info(f"Reconnecting in {delay:g}s (attempt {self.attempt})")
            await asyncio.sleep(delay)

    async def _session(self) -> None:
        self._sink._on_status(ConnectionStatus.CONNECTING)
        async with self._connect(self.url) as ws:
            self._sink._on_status(ConnectionStatus.AUTHENTICATING)
            if not self.token:
                raise AuthError("No access token")
            await ws.send(encode(Auth(token=self.token)))
            reply = parse_server_message(await asyncio.wait_for(ws.recv(), self.auth_timeout))
            if not isinstance(reply, AuthResult):
                raise ProtocolError(f"Expected AuthResult, got {reply.type}")
            if not reply.success:
                raise AuthError(reply.error or "rejected")

            self.attempt = 0
            self._ws = ws
            self._outgoing = asyncio.Queue()
            self._ready.set()
            writer = asyncio.create_task(self._write_loop(ws, self._outgoing))
            try:
                logger.info(f"Connected to {self.url}")
                self._sink._on_open()
                async for raw in ws:
                    self._handle(raw)
            finally:
                writer.cancel()

    async def _write_loop(self, ws, queue: asyncio.Queue) -> None:
        while True:
            data = await queue.get()
            try:
                await ws.send(data)
            except Exception as e:
                logger.warning(f"Send failed, closing socket: {e}")
                await ws.close()
                return

    def _handle(self, raw) -> None:
        try:
            message = parse_server_message(raw)
        except ProtocolError as e:
            logger.error(f"Ignoring unparseable message: {e}")
            return
        if isinstance(message, InvokeResult):
            self._sink._on_result(message)
        elif isinstance(message, Event):
            self._sink._on_event(message.event, message.payload)
        else:
            logger.debug("Ignoring AuthResult after handshake")

    def _teardown(self) -> None:
        self._ws = None
        self._outgoing = None
        self._ready.clear()
        self._sink._on_close()
