import asyncio
import json
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

from ..errors import AlreadyRunningError, ProcessError, ProtocolError
from .format import short_path, truncate

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024

TOOL_ICONS = {
    "Read": "\U0001F4D6",
    "Edit": "✏️",
    "Write": "\U0001F4DD",
    "Bash": "\U0001F4BB",
    "Glob": "\U0001F50D",
    "Grep": "\U0001F50E",
    "Task": "\U0001F916",
    "WebSearch": "\U0001F310",
    "WebFetch": "\U0001F310",
}
DEFAULT_TOOL_ICON = "\U0001F527"


class EventKind(str, Enum):
    PROGRESS = "progress"
    TEXT = "text"
    TOOL = "tool"
    RESULT = "result"
    ERROR = "error"


@dataclass
class StreamEvent:
    kind: EventKind
    content: str
    session_id: Optional[str] = None
    cost: Optional[float] = None
    duration_ms: Optional[int] = None


@dataclass
class Exchange:
    chat_id: int
    process: Optional[asyncio.subprocess.Process] = None
    session_id: Optional[str] = None
    aborted: bool = False
    timed_out: bool = False
    tool_count: int = 0
    started_at: float = field(default_factory=time.monotonic)
    kill_timer: Optional[asyncio.TimerHandle] = None


def tool_summary(name: str, tool_input: Optional[Dict[str, Any]]) -> str:
    icon = TOOL_ICONS.get(name, DEFAULT_TOOL_ICON)
    if not tool_input:
        return f"{icon} {name}"
    path = tool_input.get("file_path") or ""
    if name == "Read":
        return f"{icon} Reading {short_path(path) if path else '...'}"
    if name == "Edit":
        return f"{icon} Editing {short_path(path) if path else '...'}"
    if name == "Write":
        return f"{icon} Writing {short_path(path) if path else '...'}"
    if name == "Bash":
        return f"{icon} Running: {truncate(str(tool_input.get('command') or ''), 60)}"
    if name == "Glob":
        return f"{icon} Searching: {tool_input.get('pattern', '')}"
    if name == "Grep":
        return f"{icon} Grep: {truncate(str(tool_input.get('pattern') or ''), 40)}"
    if name == "Task":
        return f"{icon} Spawning agent: {truncate(str(tool_input.get('description') or ''), 50)}"
    return f"{icon} {name}"


def parse_stream_line(line: str) -> Dict[str, Any]:
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Not JSON: {e}", raw=line) from e
    if not isinstance(record, dict):
        raise ProtocolError("Stream record is not an object", raw=line)
    return record


def translate_record(record: Dict[str, Any], exchange: Optional[Exchange] = None) -> List[StreamEvent]:
    """Map one stream-json record to zero or more events."""
    kind = record.get("type")
    session_id = exchange.session_id if exchange else None

    if kind == "system":
        if record.get("subtype") != "init":
            return []
        sid = record.get("session_id")
        if exchange and sid:
            exchange.session_id = sid
        return [StreamEvent(EventKind.PROGRESS, "Session started", session_id=sid)]

    if kind == "assistant":
        events = []
        blocks = (record.get("message") or {}).get("content")
        if not isinstance(blocks, list):
            return events
        for block in blocks:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                events.append(StreamEvent(EventKind.TEXT, block["text"], session_id=session_id))
            elif block.get("type") == "tool_use":
                if exchange:
                    exchange.tool_count += 1
                events.append(StreamEvent(EventKind.TOOL, tool_summary(str(block.get("name")), block.get("input"))))
        return events

    if kind == "result":
        sid = session_id or record.get("session_id")
        if exchange and sid:
            exchange.session_id = sid
        text = record.get("result") or ""
        cost = record.get("total_cost_usd", record.get("cost_usd"))
        if record.get("is_error") and not text:
            return [StreamEvent(EventKind.ERROR, f"Agent stopped: {record.get('subtype', 'error')}", session_id=sid)]
        return [StreamEvent(EventKind.RESULT, text, session_id=sid, cost=cost, duration_ms=record.get("duration_ms"))]

    # Tool results and anything newer than this mapping are not forwarded.
    return []


class AgentRunner:
    """
    Runs one headless agent exchange per chat and streams its events.

    Usage:
        async for event in runner.run(chat_id, "fix the tests", "/repo"):
            ...
    """

    def __init__(
        self,
        command: Sequence[str] = ("claude",),
        max_time: float = 300.0,
        kill_grace: float = 3.0,
    ) -> None:
        self.command = list(command)
        self.max_time = max_time
        self.kill_grace = kill_grace
        self._active: Dict[int, Exchange] = {}

    def get_active(self, chat_id: int) -> Optional[Exchange]:
        return self._active.get(chat_id)

    def is_running(self, chat_id: int) -> bool:
        return chat_id in self._active

    def build_args(self, prompt: str, resume_id: Optional[str] = None) -> List[str]:
        args = self.command + ["-p", prompt, "--output-format", "stream-json", "--verbose"]
        if resume_id:
            args += ["--resume", resume_id]
        return args

    def cancel(self, chat_id: int) -> bool:
        exchange = self._active.pop(chat_id, None)
        if exchange is None or exchange.aborted:
            return False
        exchange.aborted = True
        self._terminate(exchange)
        logger.info(f"Cancelled exchange for chat {chat_id}")
        return True

    def cancel_all(self) -> int:
        return sum(1 for chat_id in list(self._active) if self.cancel(chat_id))

    def _terminate(self, exchange: Exchange) -> None:
        process = exchange.process
        if process is None or process.returncode is not None:
            return
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        loop = asyncio.get_running_loop()
        exchange.kill_timer = loop.call_later(self.kill_grace, self._force_kill, exchange)

    def _force_kill(self, exchange: Exchange) -> None:
        exchange.kill_timer = None
        if exchange.process.returncode is None:
            logger.warning(f"Agent for chat {exchange.chat_id} ignored SIGTERM, killing")
            try:
                exchange.process.kill()
            except ProcessLookupError:
                pass

    async def run(
        self,
        chat_id: int,
        prompt: str,
        cwd: str,
        resume_id: Optional[str] = None,
        max_time: Optional[float] = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        if self.is_running(chat_id):
            raise AlreadyRunningError(f"A task is already running for chat {chat_id}")
        max_time = self.max_time if max_time is None else max_time
        argv = self.build_args(prompt, resume_id)
        env = dict(os.environ, FORCE_COLOR="0")
        # Claim the chat before the first await so concurrent calls see it taken.
        exchange = Exchange(chat_id=chat_id)
        self._active[chat_id] = exchange

        try:
            exchange.process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error(f"Failed to start {argv[0]}: {e}")
            raise ProcessError(f"Failed to start {argv[0]}: {e}") from e
        finally:
            if exchange.process is None and self._active.get(chat_id) is exchange:
                del self._active[chat_id]

        process = exchange.process
        if exchange.aborted:
            # Cancelled while the process was starting.
            self._terminate(exchange)
        stderr_task = asyncio.create_task(process.stderr.read())
        deadline = time.monotonic() + max_time
        logger.info(f"Started agent for chat {chat_id} (pid {process.pid}) in {cwd}")

        try:
            while True:
                remaining = deadline - time.monotonic()
                try:
                    if exchange.timed_out:
                        raw = await process.stdout.readline()
                    else:
                        raw = await asyncio.wait_for(process.stdout.readline(), max(remaining, 0))
                except asyncio.TimeoutError:
                    exchange.timed_out = True
                    if not exchange.aborted:
                        exchange.aborted = True
                        self._terminate(exchange)
                        yield StreamEvent(EventKind.ERROR, f"Timeout: execution exceeded {max_time:g}s")
                    continue
                if not raw:
                    break
                if exchange.aborted:
                    continue
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    record = parse_stream_line(line)
                except ProtocolError as e:
                    logger.debug(f"Skipping stream line: {e}")
                    continue
                for event in translate_record(record, exchange):
                    yield event
                    if exchange.aborted:
                        break

            code = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            logger.info(f"Agent for chat {chat_id} exited with code {code}")
            if not exchange.aborted and code != 0 and stderr:
                yield StreamEvent(EventKind.ERROR, stderr[-1000:])
        finally:
            if self._active.get(chat_id) is exchange:
                del self._active[chat_id]
            if process.returncode is None:
                exchange.aborted = True
                self._terminate(exchange)
            elif exchange.kill_timer is not None:
                exchange.kill_timer.cancel()
                exchange.kill_timer = None
            if not stderr_task.done():
                stderr_task.cancel()
