# tests/test_x402_audit.py
"""
Unit tests for x402 audit logging.
"""
import json

from unittest.mock import patch

from app.core.config import settings
from app.x402.audit import (
    AuditEventType,
    create_audit_event,
    generate_request_id,
    get_audit_log_path,
    get_audit_stats,
    log_audit_event,
    log_challenge_issued,
    log_error,
    log_fail_open_admitted,
    log_payment_attempt,
    log_payment_denied,
    log_payment_executed,
    log_payment_verified,
    log_verification_fault,
    read_audit_log,
)


def read_events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestGenerateRequestId:
    """Test request ID generation."""

    def test_correct_length(self):
        """Request ID has expected length."""
        assert len(generate_request_id()) == 8

    def test_unique_ids(self):
        """Generated IDs are unique."""
        ids = [generate_request_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestCreateAuditEvent:
    """Test audit event creation."""

    def test_creates_event_structure(self):
        """Creates event with all required fields."""
        event = create_audit_event(
            event_type=AuditEventType.PAYMENT_VERIFIED,
            data={"tx_hash": "0xabc"},
            client_ip="10.0.0.1",
            wallet_address="0x123",
            request_id="req12345",
        )

        assert event["event_type"] == "payment_verified"
        assert event["client_ip"] == "10.0.0.1"
        assert event["wallet_address"] == "0x123"
        assert event["request_id"] == "req12345"
        assert event["data"] == {"tx_hash": "0xabc"}
        assert "timestamp" in event

    def test_generates_request_id(self):
        """A request id is generated when not given."""
        event = create_audit_event(AuditEventType.ERROR, {})
        assert len(event["request_id"]) == 8


class TestLogAuditEvent:
    """Test writing events to the log file."""

    def test_writes_json_line(self, audit_log):
        """Each event is one JSON line."""
        request_id = log_audit_event(AuditEventType.ERROR, {"k": "v"})

        [event] = read_events(audit_log)
        assert event["request_id"] == request_id
        assert event["data"] == {"k": "v"}

    def test_appends(self, audit_log):
        """Events accumulate."""
        log_audit_event(AuditEventType.ERROR, {"n": 1})
        log_audit_event(AuditEventType.ERROR, {"n": 2})

        assert [e["data"]["n"] for e in read_events(audit_log)] == [1, 2]

    def test_disabled(self, audit_log, monkeypatch):
        """Nothing is written when auditing is off."""
        monkeypatch.setattr(settings, "X402_AUDIT_ENABLED", False)

        assert log_audit_event(AuditEventType.ERROR, {}) is None
        assert not audit_log.exists()

    def test_creates_parent_directory(self, tmp_path, monkeypatch):
        """Missing directories are created."""
        path = tmp_path / "nested" / "dir" / "audit.jsonl"
        monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))

        log_audit_event(AuditEventType.ERROR, {})

        assert path.exists()
        assert get_audit_log_path() == path

    def test_write_failure_is_swallowed_and_logged(self, audit_log):
        """A broken sink returns None instead of raising."""
        with patch("builtins.open", side_effect=OSError("disk full")):
            assert log_audit_event(AuditEventType.ERROR, {}) is None

    def test_decimal_values_serialized(self, audit_log):
        """Non-JSON types are stringified."""
        from decimal import Decimal
        log_audit_event(AuditEventType.ERROR, {"amount": Decimal("1.50")})

        assert read_events(audit_log)[0]["data"]["amount"] == "1.50"


class TestConvenienceFunctions:
    """Test per-event helpers."""

    def test_challenge_issued(self, audit_log):
        log_challenge_issued("10.0.0.1", "merchant-1", "GET /premium", "n1", "1.0", "USDC")

        event = read_events(audit_log)[0]
        assert event["event_type"] == "challenge_issued"
        assert event["client_ip"] == "10.0.0.1"
        assert event["data"]["nonce"] == "n1"

    def test_payment_verified_records_payer(self, audit_log):
        log_payment_verified("merchant-1", "GET /premium", "0xabc", "0xpayer", "1", "USDC", confirmations=4)

        event = read_events(audit_log)[0]
        assert event["wallet_address"] == "0xpayer"
        assert event["data"]["confirmations"] == 4

    def test_payment_denied(self, audit_log):
        log_payment_denied("merchant-1", "GET /premium", "TX_REUSED", "used", tx_hash="0xabc")

        event = read_events(audit_log)[0]
        assert event["event_type"] == "payment_denied"
        assert event["data"]["reason"] == "TX_REUSED"

    def test_fault_and_fail_open(self, audit_log):
        log_verification_fault("middleware", "timeout", "merchant-1", "GET /premium")
        log_fail_open_admitted("merchant-1", "GET /premium", "timeout")

        kinds = [e["event_type"] for e in read_events(audit_log)]
        assert kinds == ["verification_fault", "fail_open_admitted"]

    def test_payment_attempt_status(self, audit_log):
        """Agent decisions are APPROVED or BLOCKED."""
        log_payment_attempt("0xagent", "merchant-1", "GET /premium", "1.0", "USDC", approved=True)
        log_payment_attempt("0xagent", "merchant-1", "GET /premium", "9.0", "USDC", approved=False,
                            reason="daily_limit")

        first, second = read_events(audit_log)
        assert first["data"]["status"] == "APPROVED"
        assert second["data"]["status"] == "BLOCKED"
        assert second["data"]["reason"] == "daily_limit"

    def test_payment_executed(self, audit_log):
        log_payment_executed("0xagent", "merchant-1", "GET /premium", "n1", "0xabc", "1.0", "USDC")

        event = read_events(audit_log)[0]
        assert event["event_type"] == "payment_executed"
        assert event["data"]["tx_hash"] == "0xabc"

    def test_error(self, audit_log):
        log_error("rpc", "boom", context={"stage": "receipt"})

        assert read_events(audit_log)[0]["data"]["context"] == {"stage": "receipt"}


class TestReadAuditLog:
    """Test reading and summarizing the log."""

    def test_missing_log(self):
        """A missing file reads as empty."""
        assert read_audit_log() == []
        stats = get_audit_stats()
        assert stats["total_events"] == 0
        assert stats["log_exists"] is False

    def test_most_recent_first_with_filters(self):
        log_payment_attempt("0xa", "m", "GET /x", "1", "USDC", approved=True)
        log_payment_executed("0xa", "m", "GET /x", "n1", "0x1", "1", "USDC")
        log_payment_attempt("0xb", "m", "GET /x", "1", "USDC", approved=True)

        events = read_audit_log()
        assert [e["wallet_address"] for e in events] == ["0xb", "0xa", "0xa"]

        attempts = read_audit_log(event_type=AuditEventType.PAYMENT_ATTEMPT, wallet_address="0xa")
        assert len(attempts) == 1

        assert len(read_audit_log(max_entries=2)) == 2

    def test_skips_corrupt_lines(self, audit_log):
        """Garbage lines are ignored."""
        log_error("x", "y")
        with open(audit_log, "a") as f:
            f.write("not json\n\n")

        assert len(read_audit_log()) == 1

    def test_stats(self):
        log_error("x", "y")
        log_error("x", "z")
        log_challenge_issued(None, "m", "GET /x", "n", "1", "USDC")

        stats = get_audit_stats()
        assert stats["total_events"] == 3
        assert stats["events_by_type"] == {"error": 2, "challenge_issued": 1}
        assert stats["first_event"] <= stats["last_event"]
