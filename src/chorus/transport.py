"""Transport broker: one call/subscribe API over a local or a remote channel.

The broker owns the two pieces of state that must survive reconnects:

- pending calls, keyed by a strictly increasing id, each with its own timer,
- topic subscriptions, reference counted so that the peer only ever sees a
  Subscribe on the first local handler and an Unsubscribe on the last one.

Channels (see ``channels.py``) only move records; they report back through
``_on_open``, ``_on_close``, ``_on_result``, ``_on_event`` and ``_on_status``.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import CallTimeoutError, ConnectionClosedError, RemoteCallError
from .protocol import Invoke, InvokeResult, Subscribe, Unsubscribe

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 30.0

EventHandler = Callable[[Any], None]
UnsubscribeFn = Callable[[], None]
OutboundRecord = Union[Invoke, Subscribe, Unsubscribe]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"


class Channel:
    """Carries outbound records to the peer and reports inbound ones to a broker."""

    def __init__(self) -> None:
        self._sink: Optional["Broker"] = None

    def bind(self, sink: "Broker") -> None:
        self._sink = sink

    @property
    def connected(self) -> bool:
        raise NotImplementedError

    async def start(self) -> None:
        raise NotImplementedError

    async def wait_ready(self) -> None:
        raise NotImplementedError

    def post(self, record: OutboundRecord) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


@dataclass
class PendingCall:
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    timeout: float


class PendingCalls:
    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._calls: Dict[int, PendingCall] = {}

    def allocate(self) -> int:
        return next(self._ids)

    def add(self, call_id: int, call: PendingCall) -> None:
        self._calls[call_id] = call

    def pop(self, call_id: int) -> Optional[PendingCall]:
        call = self._calls.pop(call_id, None)
        if call is not None:
            call.timer.cancel()
        return call

    def resolve(self, result: InvokeResult) -> bool:
        call = self.pop(result.id)
        if call is None:
            return False
        if call.future.done():
            return True
        if result.error is not None:
            call.future.set_exception(RemoteCallError(result.error))
        else:
            call.future.set_result(result.result)
        return True

    def fail(self, call_id: int, exc: BaseException) -> None:
        call = self.pop(call_id)
        if call is not None and not call.future.done():
            call.future.set_exception(exc)

    def fail_all(self, exc_factory: Callable[[], BaseException]) -> int:
        ids = list(self._calls)
        for call_id in ids:
            self.fail(call_id, exc_factory())
        return len(ids)

    def __contains__(self, call_id: int) -> bool:
        return call_id in self._calls

    def __len__(self) -> int:
        return len(self._calls)


class Subscriptions:
    """Local handlers per topic; the handler count is the topic's refcount."""

    def __init__(self) -> None:
        self._tokens = itertools.count(1)
        self._handlers: Dict[str, Dict[int, EventHandler]] = {}

    def add(self, topic: str, handler: EventHandler) -> Tuple[int, bool]:
        entries = self._handlers.setdefault(topic, {})
        first = not entries
        token = next(self._tokens)
        entries[token] = handler
        return token, first

    def remove(self, topic: str, token: int) -> bool:
        """Drop one handler; True when it was the topic's last one."""
        entries = self._handlers.get(topic)
        if not entries or token not in entries:
            return False
        del entries[token]
        if entries:
            return False
        del self._handlers[topic]
        return True

    def refcount(self, topic: str) -> int:
        return len(self._handlers.get(topic, ()))

    def topics(self) -> List[str]:
        return list(self._handlers)

    def dispatch(self, topic: str, payload: Any) -> int:
        handlers = list(self._handlers.get(topic, {}).values())
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Event handler for {topic} failed: {e}")
        return len(handlers)


class Broker:
    """
    Presents ``call`` and ``subscribe`` independently of the channel in use.

    Usage:
        broker = Broker(RemoteChannel("ws://host:8800/ws", token))
        await broker.start()
        sessions = await broker.call("get_sessions")
        unsubscribe = broker.subscribe("session-status", on_status)
    """

    def __init__(self, channel: Channel, call_timeout: float = DEFAULT_CALL_TIMEOUT) -> None:
        self.call_timeout = call_timeout
        self._channel = channel
        self._pending = PendingCalls()
        self._subscriptions = Subscriptions()
        self._status = ConnectionStatus.DISCONNECTED
        self._status_listeners: List[Callable[[ConnectionStatus], None]] = []
        channel.bind(self)

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def refcount(self, topic: str) -> int:
        return self._subscriptions.refcount(topic)

    async def start(self) -> None:
        await self._channel.start()

    async def close(self) -> None:
        await self._channel.close()
        self._pending.fail_all(lambda: ConnectionClosedError("Broker closed"))

    async def __aenter__(self) -> "Broker":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def on_status_change(self, handler: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        self._status_listeners.append(handler)

        def remove() -> None:
            if handler in self._status_listeners:
                self._status_listeners.remove(handler)

        return remove

    # -- calls ---------------------------------------------------------------

    async def call(self, method: str, args: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Invoke ``method`` on the peer and wait for its result.

        Raises:
            CallTimeoutError: no result within ``timeout`` (default 30s).
            ConnectionClosedError: the channel dropped while the call was pending.
            RemoteCallError: the peer answered with an error string.
        """
        timeout = self.call_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        started = loop.time()
        if not self._channel.connected:
            try:
                await asyncio.wait_for(self._channel.wait_ready(), timeout)
            except asyncio.TimeoutError:
                raise CallTimeoutError(method, timeout) from None
        remaining = max(timeout - (loop.time() - started), 0.0)

        call_id = self._pending.allocate()
        future = loop.create_future()
        timer = loop.call_later(remaining, self._expire, call_id)
        self._pending.add(call_id, PendingCall(method=method, future=future, timer=timer, timeout=timeout))
        try:
            self._channel.post(Invoke(id=call_id, command=method, args=args or {}))
            return await future
        finally:
            self._pending.pop(call_id)

    def _expire(self, call_id: int) -> None:
        call = self._pending.pop(call_id)
        if call is not None and not call.future.done():
            logger.warning(f'Invoke "{call.method}" (id {call_id}) timed out')
            call.future.set_exception(CallTimeoutError(call.method, call.timeout))

    # -- subscriptions -------------------------------------------------------

    def subscribe(self, topic: str, handler: EventHandler) -> UnsubscribeFn:
        """Register ``handler`` for ``topic``; returns an idempotent unsubscribe."""
        token, first = self._subscriptions.add(topic, handler)
        if first and self._channel.connected:
            self._post_control(Subscribe(event=topic))
        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            if self._subscriptions.remove(topic, token) and self._channel.connected:
                self._post_control(Unsubscribe(event=topic))

        return unsubscribe

    def _post_control(self, record: OutboundRecord) -> None:
        try:
            self._channel.post(record)
        except ConnectionClosedError:
            # Topics still referenced are re-sent on the next handshake.
            logger.debug(f"Channel closed before {record.type} {record.event} was sent")

    # -- channel callbacks ---------------------------------------------------

    def _on_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        for handler in list(self._status_listeners):
            try:
                handler(status)
            except Exception as e:
                logger.error(f"Status listener failed: {e}")

    def _on_open(self) -> None:
        self._on_status(ConnectionStatus.CONNECTED)
        for topic in self._subscriptions.topics():
            self._post_control(Subscribe(event=topic))

    def _on_close(self) -> None:
        self._on_status(ConnectionStatus.DISCONNECTED)
        failed = self._pending.fail_all(lambda: ConnectionClosedError("WebSocket closed"))
        if failed:
            logger.info(f"Rejected {failed} pending call(s) after the channel closed")

    def _on_result(self, result: InvokeResult) -> None:
        if not self._pending.resolve(result):
            logger.debug(f"Dropping result for unknown or expired call {result.id}")

    def _on_event(self, topic: str, payload: Any) -> None:
        self._subscriptions.dispatch(topic, payload)
