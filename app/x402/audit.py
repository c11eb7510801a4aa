# app/x402/audit.py
"""
Audit logging for x402 payment events.

Every protocol decision is recorded for:
- Dispute resolution (which proof unlocked which route, and for whom)
- Financial reconciliation against the transaction ledger
- Debugging denials and infrastructure faults
- Reviewing agent spending decisions

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH
Disable with X402_AUDIT_ENABLED=false

Events logged:
- Challenge issued (merchant, route, nonce, amount, currency)
- Payment verified / denied (tx hash, payer, reason)
- Verification fault (gateway or facilitator unreachable)
- Fail-open admission (request let through without verification)
- Agent payment attempt (APPROVED/BLOCKED with reason)
- Agent payment executed (tx hash)
- Error (type, context)

Writing an event never raises: a broken audit sink is logged, and the
payment flow carries on.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    CHALLENGE_ISSUED = "challenge_issued"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_DENIED = "payment_denied"
    VERIFICATION_FAULT = "verification_fault"
    FAIL_OPEN_ADMITTED = "fail_open_admitted"
    PAYMENT_ATTEMPT = "payment_attempt"
    PAYMENT_EXECUTED = "payment_executed"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short id to correlate events of one request."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Payer or agent wallet address (if available)
        request_id: Correlation id (generated if not given)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the x402 audit log.

    Returns:
        The request_id used for this event, or None if disabled or on error
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_challenge_issued(
    client_ip: Optional[str],
    merchant_id: str,
    route: str,
    nonce: str,
    amount: str,
    currency: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 challenge sent to a client."""
    return log_audit_event(
        event_type=AuditEventType.CHALLENGE_ISSUED,
        data={
            "merchant_id": merchant_id,
            "route": route,
            "nonce": nonce,
            "amount": amount,
            "currency": currency,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    merchant_id: str,
    route: str,
    tx_hash: str,
    payer: str,
    amount: str,
    currency: str,
    confirmations: Optional[int] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "merchant_id": merchant_id,
            "route": route,
            "tx_hash": tx_hash,
            "amount": amount,
            "currency": currency,
            "confirmations": confirmations,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_denied(
    merchant_id: str,
    route: str,
    reason: str,
    message: str,
    tx_hash: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_DENIED,
        data={
            "merchant_id": merchant_id,
            "route": route,
            "reason": reason,
            "message": message,
            "tx_hash": tx_hash,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_verification_fault(
    stage: str,
    error_message: str,
    merchant_id: Optional[str] = None,
    route: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a failure of the pricing source, facilitator or chain."""
    return log_audit_event(
        event_type=AuditEventType.VERIFICATION_FAULT,
        data={
            "stage": stage,
            "error_message": error_message,
            "merchant_id": merchant_id,
            "route": route,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_fail_open_admitted(
    merchant_id: str,
    route: str,
    error_message: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a request admitted without verification because fail mode is open."""
    return log_audit_event(
        event_type=AuditEventType.FAIL_OPEN_ADMITTED,
        data={
            "merchant_id": merchant_id,
            "route": route,
            "error_message": error_message,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_attempt(
    wallet_address: str,
    merchant_id: str,
    route: str,
    amount: str,
    currency: str,
    approved: bool,
    reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an agent's decision on a challenge."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_ATTEMPT,
        data={
            "merchant_id": merchant_id,
            "route": route,
            "amount": amount,
            "currency": currency,
            "status": "APPROVED" if approved else "BLOCKED",
            "reason": reason,
        },
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_payment_executed(
    wallet_address: str,
    merchant_id: str,
    route: str,
    nonce: str,
    tx_hash: str,
    amount: str,
    currency: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_EXECUTED,
        data={
            "merchant_id": merchant_id,
            "route": route,
            "nonce": nonce,
            "tx_hash": tx_hash,
            "amount": amount,
            "currency": currency,
        },
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def _iter_events(log_path: Path):
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        wallet_address: Filter by wallet address (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    try:
        events = []
        for event in _iter_events(log_path):
            if event_type and event.get("event_type") != event_type.value:
                continue
            if wallet_address and event.get("wallet_address") != wallet_address:
                continue
            events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts per type and the date range covered
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    try:
        for event in _iter_events(log_path):
            total += 1
            kind = event.get("event_type", "unknown")
            events_by_type[kind] = events_by_type.get(kind, 0) + 1
            timestamp = event.get("timestamp")
            if timestamp:
                if first_timestamp is None:
                    first_timestamp = timestamp
                last_timestamp = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": True,
            "error": str(e),
        }

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
