"""Supervises the chat bridge subprocess and relays its stdout events."""

import asyncio
import logging
import sys
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from .errors import ProcessError, ProtocolError
from .event_bus import EventBus
from .remote.ipc import Paired, Ready, Stopped, parse_event

logger = logging.getLogger(__name__)

REMOTE_BOT_EVENT = "remote-bot-event"


@dataclass
class RemoteStatus:
    running: bool = False
    bot_username: Optional[str] = None
    paired: bool = False
    user_id: Optional[int] = None
    username: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RemoteManager:
    """
    Starts ``python -m chorus.remote`` with the given credentials, keeps a
    ``RemoteStatus`` current from the bridge's IPC lines and re-emits every
    line on the event bus as ``remote-bot-event``.
    """

    def __init__(self, bus: EventBus, command: Optional[Sequence[str]] = None, stop_timeout: float = 3.0) -> None:
        self.bus = bus
        self.command = list(command or [sys.executable, "-m", "chorus.remote"])
        self.stop_timeout = stop_timeout
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []
        self._status = RemoteStatus()

    @property
    def status(self) -> RemoteStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(
        self,
        token: str,
        project_dir: str,
        pairing_code: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> None:
        await self.stop()
        argv = self.command + [f"--token={token}", f"--project={project_dir}"]
        if pairing_code:
            argv.append(f"--pairing-code={pairing_code}")
        if user_id is not None:
            argv.append(f"--user-id={user_id}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessError(f"Failed to start remote bot: {e}") from e

        self._process = process
        self._status = RemoteStatus(running=True, paired=user_id is not None, user_id=user_id)
        self._tasks = [
            asyncio.create_task(self._read_events(process)),
            asyncio.create_task(self._read_stderr(process)),
        ]
        logger.info(f"Remote bot started (pid {process.pid})")

    async def stop(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Remote bot ignored SIGTERM, killing")
                process.kill()
                await process.wait()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        self._status.running = False

    async def _read_events(self, process: asyncio.subprocess.Process) -> None:
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                event = parse_event(line)
            except ProtocolError as e:
                logger.warning(f"Unrecognized bridge output: {e}")
                continue
            self._apply(event)
            self.bus.emit(REMOTE_BOT_EVENT, event.model_dump(mode="json", by_alias=True, exclude_none=True))

        code = await process.wait()
        logger.info(f"Remote bot exited with code {code}")
        self._status.running = False
        self.bus.emit(REMOTE_BOT_EVENT, {"type": "stopped", "code": code})

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        async for raw in process.stderr:
            logger.debug(f"[bot] {raw.decode('utf-8', errors='replace').rstrip()}")

    def _apply(self, event) -> None:
        if isinstance(event, Ready):
            self._status.bot_username = event.bot_username
        elif isinstance(event, Paired):
            self._status.paired = True
            self._status.user_id = event.user_id
            self._status.username = event.username
        elif isinstance(event, Stopped):
            self._status.running = False
