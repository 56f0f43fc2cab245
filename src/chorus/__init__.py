"""
Chorus - run several coding-agent sessions side by side and reach them remotely.

Components:
- SessionManager: registry of pty-backed agent sessions with inferred status
- StatusDetector: classifies terminal output into session statuses
- Broker: call/subscribe API over a LocalChannel or a RemoteChannel
- chorus.server: websocket access server (FastAPI)
- chorus.remote: chat bridge relaying prompts to a headless agent CLI
"""

__version__ = "0.1.0"

from .channels import LocalChannel, RemoteChannel, token_from_fragment
from .dispatch import CommandDispatcher
from .errors import (
    AlreadyRunningError,
    AuthError,
    CallTimeoutError,
    ChorusError,
    CommandError,
    ConnectionClosedError,
    ProcessError,
    ProtocolError,
    RemoteCallError,
    SessionNotFoundError,
)
from .event_bus import EventBus
from .session_manager import SessionManager, SessionManagerConfig
from .status_detector import SessionStatus, StatusDetector, detect_status
from .transport import Broker, ConnectionStatus

__all__ = [
    "Broker",
    "ConnectionStatus",
    "LocalChannel",
    "RemoteChannel",
    "token_from_fragment",
    "CommandDispatcher",
    "EventBus",
    "SessionManager",
    "SessionManagerConfig",
    "SessionStatus",
    "StatusDetector",
    "detect_status",
    "ChorusError",
    "AlreadyRunningError",
    "AuthError",
    "CallTimeoutError",
    "CommandError",
    "ConnectionClosedError",
    "ProcessError",
    "ProtocolError",
    "RemoteCallError",
    "SessionNotFoundError",
]
