"""Named commands reachable through ``Broker.call``.

Both channels end up here: the local channel calls ``dispatch`` directly, the
websocket server calls it for every authenticated Invoke. Handlers return
JSON-friendly values and raise on failure; the caller turns the exception
text into the InvokeResult error string.
"""

import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import CommandError
from .remote.pairing import generate_pairing_code
from .remote_manager import RemoteManager
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]

MAX_DIMENSION = 500


def _session_id(args: Dict[str, Any]) -> int:
    value = args.get("sessionId", args.get("id"))
    if value is None:
        raise CommandError("Missing sessionId")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CommandError(f"Invalid sessionId: {value!r}") from None


def _require_str(args: Dict[str, Any], *names: str) -> str:
    for name in names:
        value = args.get(name)
        if isinstance(value, str):
            return value
    raise CommandError(f"Missing {names[0]}")


def _dimension(args: Dict[str, Any], name: str) -> int:
    value = args.get(name)
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= MAX_DIMENSION:
        raise CommandError(f"Invalid {name}: must be between 1 and {MAX_DIMENSION}")
    return value


class CommandDispatcher:
    def __init__(self, sessions: SessionManager, remote: Optional[RemoteManager] = None) -> None:
        self.sessions = sessions
        self.remote = remote
        self._handlers: Dict[str, Handler] = {
            "spawn_session": self.create_session,
            "create_session": self.create_session,
            "write_stdin": self.write_stdin,
            "resize_pty": self.resize_pty,
            "kill_session": self.kill_session,
            "kill_all_sessions": self.kill_all_sessions,
            "get_sessions": self.get_sessions,
            "rename_session": self.rename_session,
            "update_session_status": self.update_session_status,
            "get_session_output": self.get_session_output,
        }
        if remote is not None:
            self._handlers.update({
                "start_remote_bot": self.start_remote_bot,
                "stop_remote_bot": self.stop_remote_bot,
                "get_remote_status": self.get_remote_status,
            })

    @property
    def commands(self) -> List[str]:
        return sorted(self._handlers)

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    async def dispatch(self, command: str, args: Optional[Dict[str, Any]] = None) -> Any:
        handler = self._handlers.get(command)
        if handler is None:
            raise CommandError(f"Command '{command}' not yet supported via web access")
        return await handler(args or {})

    # -- sessions ------------------------------------------------------------

    async def create_session(self, args: Dict[str, Any]) -> Dict[str, Any]:
        command = args.get("command")
        if isinstance(command, str):
            command = command.split()
        return await self.sessions.create_session(
            cwd=args.get("cwd"),
            isolate=bool(args.get("isolate", False)),
            command=command,
            env=args.get("env"),
            rows=_dimension(args, "rows") if "rows" in args else 24,
            cols=_dimension(args, "cols") if "cols" in args else 80,
            name=args.get("name"),
        )

    async def write_stdin(self, args: Dict[str, Any]) -> None:
        self.sessions.write(_session_id(args), _require_str(args, "data"))

    async def resize_pty(self, args: Dict[str, Any]) -> None:
        self.sessions.resize(_session_id(args), _dimension(args, "rows"), _dimension(args, "cols"))

    async def kill_session(self, args: Dict[str, Any]) -> None:
        await self.sessions.kill_session(_session_id(args))

    async def kill_all_sessions(self, args: Dict[str, Any]) -> int:
        return await self.sessions.kill_all_sessions()

    async def get_sessions(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.sessions.list_sessions()

    async def rename_session(self, args: Dict[str, Any]) -> bool:
        return self.sessions.rename_session(_session_id(args), _require_str(args, "name"))

    async def update_session_status(self, args: Dict[str, Any]) -> str:
        return self.sessions.update_status(_session_id(args), _require_str(args, "status")).value

    async def get_session_output(self, args: Dict[str, Any]) -> str:
        return self.sessions.get_output(_session_id(args))

    # -- remote bridge -------------------------------------------------------

    async def start_remote_bot(self, args: Dict[str, Any]) -> Dict[str, Any]:
        token = _require_str(args, "token", "botToken")
        project_dir = args.get("projectDir") or args.get("project") or os.getcwd()
        user_id = args.get("userId")
        if user_id is not None:
            try:
                user_id = int(user_id)
            except (TypeError, ValueError):
                raise CommandError(f"Invalid userId: {user_id!r}") from None
        pairing_code = None if user_id is not None else generate_pairing_code()
        await self.remote.start(token, project_dir, pairing_code=pairing_code, user_id=user_id)
        return {"pairingCode": pairing_code, "alreadyPaired": user_id is not None}

    async def stop_remote_bot(self, args: Dict[str, Any]) -> None:
        await self.remote.stop()

    async def get_remote_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return self.remote.status.to_dict()
