"""One-owner access gate for the chat bridge.

The gate runs in one of three modes:

- owner: a user id is bound; only that user gets through.
- pairing: no owner yet; only ``/start <code>`` gets through, and the first
  correct code binds its sender as owner.
- open: neither an owner nor a code was configured (development use).
"""

import logging
import secrets
import uuid
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

PAIRING_CODE_LENGTH = 6


def generate_pairing_code() -> str:
    return uuid.uuid4().hex[:PAIRING_CODE_LENGTH].upper()


def is_claim_message(text: Optional[str]) -> bool:
    parts = (text or "").split(maxsplit=1)
    if not parts:
        return False
    head = parts[0]
    return head == "/start" or head.startswith("/start@")


class GateDecision(str, Enum):
    ALLOW = "allow"
    PAIR_REQUIRED = "pair-required"
    UNAUTHORIZED = "unauthorized"


class ClaimResult(str, Enum):
    PAIRED = "paired"
    ALREADY_PAIRED = "already-paired"
    INVALID_CODE = "invalid-code"
    MISSING_CODE = "missing-code"
    NOT_PAIRING = "not-pairing"


class PairingGate:
    def __init__(self, owner_id: Optional[int] = None, pairing_code: Optional[str] = None) -> None:
        self.owner_id = owner_id
        # An explicit owner skips pairing entirely.
        self.pairing_code = None if owner_id is not None else pairing_code

    @property
    def mode(self) -> str:
        if self.owner_id is not None:
            return "owner"
        if self.pairing_code:
            return "pairing"
        return "open"

    def is_owner(self, sender_id: Optional[int]) -> bool:
        return self.owner_id is not None and sender_id == self.owner_id

    def authorize(self, sender_id: Optional[int], text: Optional[str] = None) -> GateDecision:
        mode = self.mode
        if mode == "open":
            return GateDecision.ALLOW
        if mode == "owner":
            return GateDecision.ALLOW if self.is_owner(sender_id) else GateDecision.UNAUTHORIZED
        return GateDecision.ALLOW if is_claim_message(text) else GateDecision.PAIR_REQUIRED

    def claim(self, sender_id: int, code: Optional[str]) -> ClaimResult:
        if self.owner_id is not None:
            return ClaimResult.ALREADY_PAIRED
        if not self.pairing_code:
            return ClaimResult.NOT_PAIRING
        code = (code or "").strip()
        if not code:
            return ClaimResult.MISSING_CODE
        if not secrets.compare_digest(code.encode(), self.pairing_code.encode()):
            logger.warning(f"Rejected pairing attempt from user {sender_id}")
            return ClaimResult.INVALID_CODE
        self.owner_id = sender_id
        self.pairing_code = None
        logger.info(f"Paired with user {sender_id}")
        return ClaimResult.PAIRED

    def clear(self, new_code: Optional[str] = None) -> str:
        """Forget the owner and go back to pairing with a fresh code."""
        self.owner_id = None
        self.pairing_code = new_code or generate_pairing_code()
        return self.pairing_code
