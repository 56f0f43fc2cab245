import asyncio
import json

import pytest

from chorus.channels import RemoteChannel, token_from_fragment
from chorus.errors import ConnectionClosedError
from chorus.protocol import AuthResult, Event, InvokeResult, encode
from chorus.transport import Broker, ConnectionStatus

from conftest import wait_until


class FakeSocket:
    def __init__(self) -> None:
        self.sent = []
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def recv(self):
        item = await self.incoming.get()
        if item is None:
            raise ConnectionResetError("closed")
        return item

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.incoming.put_nowait(None)

    def feed(self, record) -> None:
        self.incoming.put_nowait(record if isinstance(record, str) else encode(record))

    def hang_up(self) -> None:
        self.incoming.put_nowait(None)

    def sent_of(self, kind: str):
        return [m for m in self.sent if m["type"] == kind]


class FakeServer:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.sockets = []

    def connect(self, url):
        ws = FakeSocket()
        if self.accept:
            ws.feed(AuthResult(success=True))
        else:
            ws.feed(AuthResult(success=False, error="Invalid or expired token"))
        self.sockets.append(ws)
        return ws


def _broker(server: FakeServer, **kwargs):
    channel = RemoteChannel("ws://127.0.0.1:8800/ws", "tok", connect=server.connect, backoff_base=0.01, **kwargs)
    return Broker(channel), channel


def test_token_from_fragment():
    assert token_from_fragment("http://host:8800/#token=abc-123") == "abc-123"
    assert token_from_fragment("http://host:8800/?token=abc#view=1") is None
    assert token_from_fragment("http://host:8800/") is None


def test_backoff_doubles_and_caps_at_thirty_seconds():
    channel = RemoteChannel("ws://host/ws", "tok")
    assert [channel.next_delay() for _ in range(7)] == [1, 2, 4, 8, 16, 30, 30]


def test_authenticates_first_then_invokes():
    async def scenario():
        server = FakeServer()
        broker, channel = _broker(server)
        await broker.start()
        await wait_until(lambda: broker.status == ConnectionStatus.CONNECTED)
        ws = server.sockets[0]
        assert ws.sent[0] == {"type": "Auth", "token": "tok"}

        task = asyncio.create_task(broker.call("get_sessions"))
        await wait_until(lambda: ws.sent_of("Invoke"))
        invoke = ws.sent_of("Invoke")[0]
        ws.feed(InvokeResult(id=invoke["id"], result=[{"id": 1}]))
        result = await task
        await broker.close()
        return result

    assert asyncio.run(scenario()) == [{"id": 1}]


def test_events_reach_subscribers_and_garbage_is_skipped():
    async def scenario():
        server = FakeServer()
        broker, channel = _broker(server)
        seen = []
        broker.subscribe("session-status", seen.append)
        await broker.start()
        await wait_until(lambda: broker.status == ConnectionStatus.CONNECTED)
        ws = server.sockets[0]
        ws.feed("{not json")
        ws.feed(Event(event="session-status", payload={"sessionId": 1, "status": "working"}))
        await wait_until(lambda: seen)
        await broker.close()
        return seen, len(server.sockets)

    seen, connections = asyncio.run(scenario())
    assert seen == [{"sessionId": 1, "status": "working"}]
    assert connections == 1


def test_reconnect_resubscribes_and_rejects_pending_calls():
    async def scenario():
        server = FakeServer()
        broker, channel = _broker(server)
        broker.subscribe("pty-output", lambda p: None)
        broker.subscribe("pty-output", lambda p: None)
        await broker.start()
        await wait_until(lambda: broker.status == ConnectionStatus.CONNECTED)
        first = server.sockets[0]
        await wait_until(lambda: first.sent_of("Subscribe"))

        pending = asyncio.create_task(broker.call("get_sessions"))
        await wait_until(lambda: first.sent_of("Invoke"))
        first.hang_up()
        with pytest.raises(ConnectionClosedError):
            await pending

        await wait_until(lambda: len(server.sockets) == 2 and broker.status == ConnectionStatus.CONNECTED)
        second = server.sockets[1]
        await wait_until(lambda: second.sent_of("Subscribe"))
        await asyncio.sleep(0.05)
        await broker.close()
        return first, second, channel.attempt

    first, second, attempt = asyncio.run(scenario())
    assert len(first.sent_of("Subscribe")) == 1
    assert second.sent[0]["type"] == "Auth"
    assert second.sent_of("Subscribe") == [{"type": "Subscribe", "event": "pty-output"}]
    assert attempt == 0


def test_rejected_auth_keeps_retrying_with_backoff():
    async def scenario():
        server = FakeServer(accept=False)
        broker, channel = _broker(server, backoff_cap=0.04)
        statuses = []
        broker.on_status_change(statuses.append)
        await broker.start()
        await wait_until(lambda: len(server.sockets) >= 3)
        assert broker.status != ConnectionStatus.CONNECTED
        assert channel.attempt >= 2

        server.accept = True
        await wait_until(lambda: broker.status == ConnectionStatus.CONNECTED)
        await broker.close()
        return statuses, channel.attempt

    statuses, attempt = asyncio.run(scenario())
    assert ConnectionStatus.AUTHENTICATING in statuses
    assert statuses[-1] == ConnectionStatus.DISCONNECTED
    assert attempt == 0
