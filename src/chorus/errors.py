"""Error taxonomy shared by the transport, the session registry and the bridge."""

from typing import Optional


class ChorusError(Exception):
    """Base class for every error raised by chorus."""


class ConnectionClosedError(ChorusError, ConnectionError):
    """The channel closed (or never opened) while an operation needed it."""

    def __init__(self, message: str = "Connection closed") -> None:
        super().__init__(message)


class CallTimeoutError(ChorusError, TimeoutError):
    """A call or an agent exchange exceeded its deadline."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f'Invoke "{method}" timed out after {timeout:g}s')
        self.method = method
        self.timeout = timeout


class AuthError(ChorusError):
    """Bad or missing token, or a rejected pairing code."""


class ProtocolError(ChorusError):
    """A wire record or agent stream line could not be understood."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class ProcessError(ChorusError):
    """Spawning failed, or a process exited abnormally."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteCallError(ChorusError):
    """The peer answered an Invoke with an error string."""


class SessionNotFoundError(ChorusError, KeyError):
    def __init__(self, session_id: int) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class CommandError(ChorusError):
    """An Invoke named an unknown command or carried unusable arguments."""


class AlreadyRunningError(ChorusError):
    """A chat already has an agent exchange in flight."""
