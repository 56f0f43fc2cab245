"""Infer what an agent session is doing from its terminal output.

Output is appended to a bounded rolling buffer and classified against ordered
pattern families. The first family that matches wins, so error markers beat
completion markers, which beat activity, which beats prompts for input.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Pattern, Sequence, Tuple

logger = logging.getLogger(__name__)

# CSI sequences, OSC sequences (BEL or ST terminated), other two-byte escapes.
ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[()][A-Za-z0-9]|\x1b[@-Z\\-_]")


def strip_ansi(text: str) -> str:
    return ANSI_PATTERN.sub("", text).replace("\r", "")


class SessionStatus(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    WORKING = "working"
    NEEDS_INPUT = "needs-input"
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class StatusRule:
    status: SessionStatus
    patterns: Tuple[Pattern, ...]

    def matches(self, text: str) -> bool:
        for pattern in self.patterns:
            try:
                if pattern.search(text):
                    return True
            except (re.error, TypeError) as e:
                logger.debug(f"Pattern {pattern.pattern!r} failed: {e}")
        return False


SPINNER = re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]")
BULLET_WORD = re.compile(r"[●·•]\s*\w+", re.IGNORECASE)
GERUND_ELLIPSIS = re.compile(r"\w+ing\.\.\.", re.IGNORECASE)

ERROR_RULE = StatusRule(SessionStatus.ERROR, (
    re.compile(r"✗\s*Error", re.IGNORECASE),
    re.compile(r"Error:|Exception:|Failed:", re.IGNORECASE),
    re.compile(r"panic!|PANIC"),
))

DONE_RULE = StatusRule(SessionStatus.DONE, (
    re.compile(r"✓\s*(Done|Complete|Finished|Success)", re.IGNORECASE),
    re.compile(r"Task completed", re.IGNORECASE),
))

WORKING_RULE = StatusRule(SessionStatus.WORKING, (
    SPINNER,
    BULLET_WORD,
    re.compile(r"\[.*?(Read|Write|Edit|Bash|Glob|Grep|Task|WebFetch|WebSearch).*?\]", re.IGNORECASE),
    re.compile(r"Analyzing|Processing|Generating|Executing", re.IGNORECASE),
    re.compile(r"Claude is working", re.IGNORECASE),
    re.compile(r"Tool call:", re.IGNORECASE),
    re.compile(r"running\s+(stop\s+)?hooks", re.IGNORECASE),
    re.compile(r"Searched for \d+ pattern", re.IGNORECASE),
    GERUND_ELLIPSIS,
))

NEEDS_INPUT_RULE = StatusRule(SessionStatus.NEEDS_INPUT, (
    re.compile(r"\?\s*\(y/n\)", re.IGNORECASE),
    re.compile(r"Enter your choice", re.IGNORECASE),
    re.compile(r"Press Enter to continue", re.IGNORECASE),
    re.compile(r"Would you like to", re.IGNORECASE),
    re.compile(r"Do you want to", re.IGNORECASE),
    re.compile(r"Select an option", re.IGNORECASE),
    re.compile(r"\[1\].*\[2\]", re.DOTALL),
))

DEFAULT_RULES: Tuple[StatusRule, ...] = (ERROR_RULE, DONE_RULE, WORKING_RULE, NEEDS_INPUT_RULE)

# Activity markers trusted on a single chunk without waiting for the debounce.
FAST_WORKING_RULE = StatusRule(SessionStatus.WORKING, (SPINNER, BULLET_WORD, GERUND_ELLIPSIS))


def detect_status(output: str, rules: Sequence[StatusRule] = DEFAULT_RULES) -> SessionStatus:
    for rule in rules:
        if rule.matches(output):
            return rule.status
    return SessionStatus.IDLE


def is_working_chunk(chunk: str) -> bool:
    """Fast path: does this chunk alone show activity?"""
    return FAST_WORKING_RULE.matches(chunk)


class StatusDetector:
    """
    Per-session classifier.

    Chunks showing activity switch straight to WORKING; everything else is
    re-classified over the whole buffer once output has been quiet for
    ``debounce`` seconds. ``on_status_change`` only fires on actual changes.
    """

    def __init__(
        self,
        session_id: int,
        on_status_change: Optional[Callable[[SessionStatus], None]] = None,
        *,
        buffer_size: int = 2000,
        debounce: float = 0.1,
        rules: Sequence[StatusRule] = DEFAULT_RULES,
        initial: SessionStatus = SessionStatus.IDLE,
    ) -> None:
        self.session_id = session_id
        self.on_status_change = on_status_change
        self.buffer_size = buffer_size
        self.debounce = debounce
        self.rules = tuple(rules)
        self.last_status = initial
        self.last_activity = time.time()
        self._buffer = ""
        self._timer: Optional[asyncio.TimerHandle] = None
        self._disposed = False

    @property
    def buffer(self) -> str:
        return self._buffer

    def process_output(self, data: str) -> None:
        if self._disposed or not data:
            return
        chunk = strip_ansi(data)
        self.last_activity = time.time()
        self._buffer = (self._buffer + chunk)[-self.buffer_size:]

        if self.last_status != SessionStatus.WORKING and is_working_chunk(chunk):
            self._emit(SessionStatus.WORKING)
            return
        self._schedule()

    def check_status(self) -> SessionStatus:
        self._timer = None
        if self._disposed:
            return self.last_status
        status = detect_status(self._buffer, self.rules)
        if status != self.last_status:
            self._emit(status)
        return status

    def reset(self, status: SessionStatus) -> None:
        """Adopt a status reported by an explicit signal, without notifying."""
        self.last_status = status

    def dispose(self) -> None:
        self._disposed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.check_status()
            return
        self._timer = loop.call_later(self.debounce, self.check_status)

    def _emit(self, status: SessionStatus) -> None:
        logger.debug(f"Session {self.session_id}: {self.last_status.value} -> {status.value}")
        self.last_status = status
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(status)
        except Exception as e:
            logger.error(f"Status callback for session {self.session_id} failed: {e}")
