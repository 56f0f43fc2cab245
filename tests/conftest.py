import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chorus.errors import ConnectionClosedError
from chorus.process import ProcessHandle, ProcessSpawner
from chorus.protocol import Invoke, InvokeResult, Subscribe, Unsubscribe
from chorus.remote.telegram import TelegramError
from chorus.transport import Channel


class FakeProcess(ProcessHandle):
    def __init__(self, pid: int, on_output, on_exit) -> None:
        self.pid = pid
        self.on_output = on_output
        self.on_exit = on_exit
        self.written: List[str] = []
        self.size = None
        self.terminate_calls = 0
        self.terminate_error: Optional[BaseException] = None
        self._returncode: Optional[int] = None

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    def write(self, data: str) -> None:
        self.written.append(data)

    def resize(self, rows: int, cols: int) -> None:
        self.size = (rows, cols)

    async def terminate(self, grace: float = 2.0) -> None:
        self.terminate_calls += 1
        if self.terminate_error is not None:
            raise self.terminate_error
        self._returncode = -15

    def emit(self, data: str) -> None:
        self.on_output(data)

    def exit(self, code: int) -> None:
        self._returncode = code
        self.on_exit(code)


class FakeSpawner(ProcessSpawner):
    def __init__(self, fail: Optional[BaseException] = None) -> None:
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []
        self.processes: List[FakeProcess] = []

    async def spawn(self, argv, cwd, env, rows, cols, on_output, on_exit):
        self.calls.append({"argv": list(argv), "cwd": cwd, "env": env, "rows": rows, "cols": cols})
        if self.fail is not None:
            raise self.fail
        process = FakeProcess(1000 + len(self.processes), on_output, on_exit)
        self.processes.append(process)
        return process


class FakeChannel(Channel):
    """In-memory channel: records what the broker posts, lets tests drive the peer side."""

    def __init__(self) -> None:
        super().__init__()
        self.posted: List[Any] = []
        self._connected = False
        self._ready = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        self.open()

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def post(self, record) -> None:
        if not self._connected:
            raise ConnectionClosedError("WebSocket not connected")
        self.posted.append(record)

    async def close(self) -> None:
        if self._connected:
            self.drop()

    def open(self) -> None:
        self._connected = True
        self._ready.set()
        self._sink._on_open()

    def drop(self) -> None:
        self._connected = False
        self._ready.clear()
        self._sink._on_close()

    def invokes(self) -> List[Invoke]:
        return [r for r in self.posted if isinstance(r, Invoke)]

    def subscribes(self, topic: str) -> int:
        return sum(1 for r in self.posted if isinstance(r, Subscribe) and r.event == topic)

    def unsubscribes(self, topic: str) -> int:
        return sum(1 for r in self.posted if isinstance(r, Unsubscribe) and r.event == topic)

    def respond(self, call_id: int, result: Any = None, error: Optional[str] = None) -> None:
        self._sink._on_result(InvokeResult(id=call_id, result=result, error=error))

    def push_event(self, topic: str, payload: Any) -> None:
        self._sink._on_event(topic, payload)


class FakeTelegram:
    def __init__(self, reject_html: bool = False) -> None:
        self.reject_html = reject_html
        self.sent: List[Dict[str, Any]] = []
        self.edits: List[Dict[str, Any]] = []
        self.deleted: List[int] = []
        self._next_id = 1

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> Dict[str, Any]:
        if self.reject_html and parse_mode == "HTML":
            raise TelegramError("Bad Request: can't parse entities", 400)
        message = {"message_id": self._next_id, "chat": {"id": chat_id}, "text": text, "parse_mode": parse_mode}
        self._next_id += 1
        self.sent.append(message)
        return message

    async def edit_message_text(self, chat_id: int, message_id: int, text: str, parse_mode: Optional[str] = None):
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text})
        return True

    async def delete_message(self, chat_id: int, message_id: int):
        self.deleted.append(message_id)
        return True

    def texts(self) -> List[str]:
        return [m["text"] for m in self.sent]


FAKE_AGENT = '''
import json
import sys
import time

args = sys.argv[1:]
prompt = args[args.index("-p") + 1]
resume = args[args.index("--resume") + 1] if "--resume" in args else None


def emit(record):
    print(json.dumps(record), flush=True)


emit({"type": "system", "subtype": "init", "session_id": "sess-1234567890abcdef"})
if prompt == "slow":
    time.sleep(30)
if prompt == "fail":
    sys.stderr.write("boom: agent crashed\\n")
    sys.exit(2)
print("not json at all", flush=True)
emit({"type": "assistant", "message": {"content": [
    {"type": "text", "text": "Looking at the code"},
    {"type": "tool_use", "name": "Read", "input": {"file_path": "/home/dev/project/src/app.py"}},
]}})
emit({"type": "user", "message": {"content": [{"type": "tool_result", "content": "file body"}]}})
text = "All done: " + prompt
if resume:
    text += " (resumed " + resume + ")"
emit({"type": "result", "result": text, "session_id": "sess-1234567890abcdef",
      "total_cost_usd": 0.0123, "duration_ms": 2500})
'''


@pytest.fixture
def fake_agent(tmp_path) -> List[str]:
    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT)
    return [sys.executable, str(script)]


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)
