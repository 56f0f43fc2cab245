"""
Remote agent bridge - drive a headless coding agent from a chat app.

- PairingGate: binds the bot to a single owner via a one-time code
- AgentRunner: one streaming agent exchange per chat
- RemoteBridge: chat commands, progress messages and result delivery
"""

from .agent_runner import AgentRunner, EventKind, StreamEvent
from .bot import RemoteBridge
from .config import BridgeConfig
from .pairing import ClaimResult, GateDecision, PairingGate, generate_pairing_code

__all__ = [
    "AgentRunner",
    "EventKind",
    "StreamEvent",
    "RemoteBridge",
    "BridgeConfig",
    "ClaimResult",
    "GateDecision",
    "PairingGate",
    "generate_pairing_code",
]
