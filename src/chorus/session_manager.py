import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from .errors import ProcessError, SessionNotFoundError
from .event_bus import EventBus
from .process import ProcessHandle, ProcessSpawner, WorkdirProvisioner, default_command
from .status_detector import SessionStatus, StatusDetector

# Bus topics emitted by the registry.
PTY_OUTPUT = "pty-output"
SESSION_STATUS = "session-status"
SESSION_EXIT = "session-exit"
SESSION_CREATED = "session-created"
SESSION_REMOVED = "session-removed"


@dataclass
class SessionManagerConfig:
    default_command: Optional[List[str]] = None
    workdir_root: Optional[str] = None
    startup_timeout: float = 30.0
    output_limit: int = 100_000
    status_buffer_size: int = 2000
    status_debounce: float = 0.1
    kill_grace: float = 2.0

    @classmethod
    def from_env(cls) -> "SessionManagerConfig":
        command = os.environ.get("CHORUS_SESSION_COMMAND")
        return cls(
            default_command=command.split() if command else None,
            workdir_root=os.environ.get("CHORUS_WORKDIR"),
            startup_timeout=float(os.environ.get("CHORUS_STARTUP_TIMEOUT", "30")),
        )


@dataclass
class Session:
    id: int
    name: str
    cwd: str
    command: List[str]
    detector: StatusDetector
    status: SessionStatus = SessionStatus.STARTING
    process: Optional[ProcessHandle] = None
    isolated_path: Optional[str] = None
    output: str = ""
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    closed: bool = False
    startup_timer: Optional[asyncio.TimerHandle] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cwd": self.cwd,
            "status": self.status.value,
            "pid": self.process.pid if self.process else None,
            "isolated": self.isolated_path is not None,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
        }


class SessionManager:
    """
    Registry of live agent sessions.

    Each session owns a pty process, a status classifier and a rolling output
    buffer. Output, status changes and exits are published on the event bus.
    Sessions leave the registry when their process exits or when killed.
    """

    def __init__(
        self,
        spawner: ProcessSpawner,
        bus: EventBus,
        provisioner: Optional[WorkdirProvisioner] = None,
        config: Optional[SessionManagerConfig] = None,
    ):
        self._spawner = spawner
        self._provisioner = provisioner
        self.bus = bus
        self.config = config or SessionManagerConfig()
        self._sessions: Dict[int, Session] = {}
        self._next_id = 1
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logging.getLogger("SessionManager")

    async def create_session(
        self,
        cwd: Optional[str] = None,
        isolate: bool = False,
        command: Optional[Sequence[str]] = None,
        env: Optional[Dict[str, str]] = None,
        rows: int = 24,
        cols: int = 80,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Spawn a new session and register it in STARTING.

        - isolate=False: run directly in ``cwd`` (or the configured workdir root).
        - isolate=True: ask the provisioner for a private working copy first.

        A failed spawn leaves nothing behind: no registry entry, no working copy.
        """
        work_dir = cwd or self.config.workdir_root or os.getcwd()
        if not os.path.isdir(work_dir):
            raise ValueError(f"Directory {work_dir} does not exist")
        argv = list(command or self.config.default_command or default_command())

        session_id = self._next_id
        self._next_id += 1

        isolated_path = None
        if isolate:
            if self._provisioner is None:
                raise ProcessError("Isolation requested but no workdir provisioner is configured")
            isolated_path = await self._provisioner.provision(session_id, work_dir)
            work_dir = isolated_path

        session = Session(
            id=session_id,
            name=name or f"{os.path.basename(os.path.normpath(work_dir))} #{session_id}",
            cwd=work_dir,
            command=argv,
            isolated_path=isolated_path,
            detector=StatusDetector(
                session_id,
                buffer_size=self.config.status_buffer_size,
                debounce=self.config.status_debounce,
                initial=SessionStatus.STARTING,
            ),
        )
        session.detector.on_status_change = lambda status: self._set_status(session, status)

        try:
            session.process = await self._spawner.spawn(
                argv,
                cwd=work_dir,
                env=env,
                rows=rows,
                cols=cols,
                on_output=lambda data: self._on_output(session, data),
                on_exit=lambda code: self._on_exit(session, code),
            )
        except Exception as e:
            self.logger.error(f"Failed to start session {session_id}: {e}")
            session.closed = True
            session.detector.dispose()
            if isolated_path:
                await self._release(session_id, isolated_path)
            if isinstance(e, ProcessError):
                raise
            raise ProcessError(f"Failed to start session: {e}") from e

        self._sessions[session_id] = session
        if self.config.startup_timeout > 0:
            loop = asyncio.get_running_loop()
            session.startup_timer = loop.call_later(self.config.startup_timeout, self._on_startup_timeout, session)
        self.logger.info(f"Created session '{session.name}' ({session_id}) in {work_dir}")
        self.bus.emit(SESSION_CREATED, session.to_dict())
        return session.to_dict()

    def get_session(self, session_id: int) -> Optional[Session]:
        """Retrieve an active session by ID."""
        return self._sessions.get(session_id)

    def _require(self, session_id: int) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> List[Dict[str, Any]]:
        """List all active sessions."""
        return [session.to_dict() for session in self._sessions.values()]

    def get_output(self, session_id: int) -> str:
        return self._require(session_id).output

    def write(self, session_id: int, data: str) -> None:
        session = self._require(session_id)
        session.process.write(data)

    def resize(self, session_id: int, rows: int, cols: int) -> None:
        if rows < 0 or cols < 0:
            raise ValueError(f"Invalid dimensions {rows}x{cols}")
        self._require(session_id).process.resize(rows, cols)

    def rename_session(self, session_id: int, new_name: str) -> bool:
        """Rename an active session."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.name = new_name
        self.logger.info(f"Renamed session {session_id} to '{new_name}'")
        return True

    def update_status(self, session_id: int, status: Any) -> SessionStatus:
        """Apply an explicit status signal (e.g. from an agent hook)."""
        session = self._require(session_id)
        try:
            status = SessionStatus(status)
        except ValueError:
            raise ValueError(f"Unknown status: {status}") from None
        self._set_status(session, status)
        session.detector.reset(session.status)
        return session.status

    async def kill_session(self, session_id: int) -> bool:
        """Remove a session immediately and terminate its process in the background.

        Killing an unknown or already-exited session is not an error.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            self.logger.debug(f"Kill for unknown session {session_id} ignored")
            return False
        self._close(session)
        self.bus.emit(SESSION_REMOVED, {"sessionId": session_id})
        self.logger.info(f"Killed session {session_id}")
        self._spawn_task(self._terminate(session))
        return True

    async def kill_all_sessions(self) -> int:
        ids = list(self._sessions)
        for session_id in ids:
            await self.kill_session(session_id)
        return len(ids)

    async def shutdown_all(self) -> None:
        """Terminate all sessions and wait for the terminations to finish."""
        await self.kill_all_sessions()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- internals -----------------------------------------------------------

    def _spawn_task(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _terminate(self, session: Session) -> None:
        if session.process is None:
            return
        try:
            await session.process.terminate(self.config.kill_grace)
        except Exception as e:
            self.logger.warning(f"Terminating session {session.id} failed (process may already be gone): {e}")
        if session.isolated_path:
            await self._release(session.id, session.isolated_path)

    async def _release(self, session_id: int, path: str) -> None:
        try:
            await self._provisioner.release(session_id, path)
        except Exception as e:
            self.logger.warning(f"Releasing working copy {path} for session {session_id} failed: {e}")

    def _close(self, session: Session) -> None:
        session.closed = True
        session.detector.dispose()
        if session.startup_timer is not None:
            session.startup_timer.cancel()
            session.startup_timer = None

    def _on_output(self, session: Session, data: str) -> None:
        if session.closed:
            return
        session.output = (session.output + data)[-self.config.output_limit:]
        session.last_activity = time.time()
        if session.startup_timer is not None:
            session.startup_timer.cancel()
            session.startup_timer = None
        self.bus.emit(PTY_OUTPUT, {"sessionId": session.id, "data": data})
        session.detector.process_output(data)

    def _on_startup_timeout(self, session: Session) -> None:
        session.startup_timer = None
        if session.status == SessionStatus.STARTING:
            self.logger.warning(f"Session {session.id} did not become ready within {self.config.startup_timeout:g}s")
            self._set_status(session, SessionStatus.TIMEOUT)

    def _set_status(self, session: Session, status: SessionStatus, exited: bool = False) -> None:
        if session.closed or status == session.status:
            return
        if status == SessionStatus.STARTING:
            return
        if session.status == SessionStatus.TIMEOUT and not exited:
            return
        if status == SessionStatus.TIMEOUT and session.status != SessionStatus.STARTING:
            return
        previous, session.status = session.status, status
        if previous == SessionStatus.STARTING and session.startup_timer is not None:
            session.startup_timer.cancel()
            session.startup_timer = None
        self.logger.debug(f"Session {session.id}: {previous.value} -> {status.value}")
        self.bus.emit(SESSION_STATUS, {"sessionId": session.id, "status": status.value})

    def _on_exit(self, session: Session, code: int) -> None:
        if session.closed:
            return
        final = SessionStatus.DONE if code == 0 else SessionStatus.ERROR
        self._set_status(session, final, exited=True)
        self._sessions.pop(session.id, None)
        self._close(session)
        self.logger.info(f"Session {session.id} exited with code {code}")
        self.bus.emit(SESSION_EXIT, {"sessionId": session.id, "code": code})
        self.bus.emit(SESSION_REMOVED, {"sessionId": session.id})
        if session.isolated_path:
            self._spawn_task(self._release(session.id, session.isolated_path))
