import re

from chorus.remote.pairing import ClaimResult, GateDecision, PairingGate, generate_pairing_code, is_claim_message


def test_pairing_code_shape():
    codes = {generate_pairing_code() for _ in range(20)}
    assert all(re.fullmatch(r"[0-9A-F]{6}", code) for code in codes)
    assert len(codes) > 1


def test_claim_message_detection():
    assert is_claim_message("/start")
    assert is_claim_message("/start ABC123")
    assert is_claim_message("/start@chorus_bot ABC123")
    assert not is_claim_message("/startle")
    assert not is_claim_message("start ABC123")
    assert not is_claim_message("")
    assert not is_claim_message(None)


def test_open_gate_allows_everyone():
    gate = PairingGate()
    assert gate.mode == "open"
    assert gate.authorize(1, "hello") == GateDecision.ALLOW
    assert gate.claim(1, "ABC123") == ClaimResult.NOT_PAIRING


def test_owner_gate():
    gate = PairingGate(owner_id=42, pairing_code="ABC123")
    assert gate.mode == "owner"
    assert gate.pairing_code is None
    assert gate.authorize(42, "hello") == GateDecision.ALLOW
    assert gate.authorize(7, "hello") == GateDecision.UNAUTHORIZED
    assert gate.authorize(7, "/start ABC123") == GateDecision.UNAUTHORIZED
    assert gate.claim(7, "ABC123") == ClaimResult.ALREADY_PAIRED


def test_pairing_flow_binds_first_correct_claimant():
    gate = PairingGate(pairing_code="ABC123")
    assert gate.mode == "pairing"
    assert gate.authorize(5, "hello") == GateDecision.PAIR_REQUIRED
    assert gate.authorize(5, "/start") == GateDecision.ALLOW

    assert gate.claim(5, "") == ClaimResult.MISSING_CODE
    assert gate.claim(5, "ZZZZZZ") == ClaimResult.INVALID_CODE
    assert gate.mode == "pairing"
    assert gate.claim(5, "abc123") == ClaimResult.INVALID_CODE
    assert gate.claim(5, " ABC123 ") == ClaimResult.PAIRED

    assert gate.owner_id == 5
    assert gate.mode == "owner"
    assert gate.claim(6, "ABC123") == ClaimResult.ALREADY_PAIRED
    assert gate.authorize(6, "/start ABC123") == GateDecision.UNAUTHORIZED


def test_claim_compares_the_exact_code():
    gate = PairingGate(pairing_code="AB12CD")
    assert gate.claim(7, "ab12cd") == ClaimResult.INVALID_CODE
    assert gate.claim(7, "кодé") == ClaimResult.INVALID_CODE
    assert gate.owner_id is None
    assert gate.claim(7, "AB12CD") == ClaimResult.PAIRED


def test_clear_returns_to_pairing():
    gate = PairingGate(owner_id=5)
    code = gate.clear()
    assert gate.owner_id is None
    assert gate.mode == "pairing"
    assert gate.pairing_code == code
    assert gate.clear("FEED01") == "FEED01"
