# app/x402/audit.py
"""
Audit trail for x402 payments and the actions they pay for.

Every step of a paid request is appended to a JSON lines file so operators
can reconcile charges against minted tokens. The important case is a payment
that settled but whose mint failed: the `action_failed` event carries the
settlement transaction and the payer, which is what a manual refund or
re-mint needs.

Log format: JSON lines (one event per line)
Log location: X402_AUDIT_LOG_PATH (disabled with X402_AUDIT_ENABLED=false)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    REQUEST_RECEIVED = "request_received"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_REPLAYED = "payment_replayed"
    PAYMENT_FAILED = "payment_failed"
    ACTION_EXECUTED = "action_executed"
    ACTION_FAILED = "action_failed"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events."""
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build an audit event ready to be serialized."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Audit failures are logged and reported as None; they never fail the
    request that triggered them.

    Returns:
        The request_id used for this event, or None if not written
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")
    except OSError as e:
        logger.error(f"Failed to write audit event {event_type.value}: {e}")
        return None

    logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
    return event["request_id"]


def log_request_received(client_ip: str, method: str, path: str, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.REQUEST_RECEIVED,
        {"method": method, "path": path},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_payment_required_sent(
    client_ip: str,
    resource: str,
    reason: str,
    accepts: list,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 challenge, with the amount and network of every option."""
    return log_audit_event(
        AuditEventType.PAYMENT_REQUIRED_SENT,
        {
            "resource": resource,
            "reason": reason,
            "options": [
                {"network": r.network, "asset": r.asset, "amount": r.max_amount_required}
                for r in accepts
            ],
        },
        client_ip=client_ip,
        request_id=request_id,
    )


def log_payment_received(
    client_ip: str,
    payer: str,
    amount: str,
    network: str,
    nonce: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_RECEIVED,
        {"amount": amount, "network": network, "nonce": nonce},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_verified(client_ip: str, payer: str, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        {"is_valid": True},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_settled(
    client_ip: str,
    payer: str,
    transaction_hash: Optional[str],
    network: str,
    amount: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_SETTLED,
        {"transaction_hash": transaction_hash, "network": network, "amount": amount},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_replayed(
    client_ip: str,
    payer: str,
    nonce: str,
    transaction_hash: Optional[str],
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_REPLAYED,
        {"nonce": nonce, "transaction_hash": transaction_hash},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_failed(
    client_ip: str,
    kind: str,
    reason: str,
    charged: Optional[bool],
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        {"kind": kind, "reason": reason, "charged": charged},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_action_executed(
    client_ip: str,
    payer: str,
    transaction_hash: str,
    quantity: int,
    recipient: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.ACTION_EXECUTED,
        {"transaction_hash": transaction_hash, "quantity": quantity, "recipient": recipient},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_action_failed(
    client_ip: str,
    payer: str,
    error_message: str,
    settlement_transaction: Optional[str],
    action_transaction: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a gated action that failed after its payment settled (needs reconciliation)."""
    return log_audit_event(
        AuditEventType.ACTION_FAILED,
        {
            "error_message": error_message,
            "settlement_transaction": settlement_transaction,
            "action_transaction": action_transaction,
            "requires_reconciliation": True,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.ERROR,
        {"error_type": error_type, "error_message": error_message, "context": context or {}},
        client_ip=client_ip,
        request_id=request_id,
    )


def _iter_events(log_path: Path) -> Iterator[Dict[str, Any]]:
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
) -> list:
    """
    Read entries from the audit log, most recent first.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Only return events of this type
        wallet_address: Only return events for this wallet (case-insensitive)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        for event in _iter_events(log_path):
            if event_type and event.get("event_type") != event_type.value:
                continue
            if wallet_address and (event.get("wallet_address") or "").lower() != wallet_address.lower():
                continue
            events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts by type plus the time range covered by the log."""
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        for event in _iter_events(log_path):
            stats["total_events"] += 1
            event_type = event.get("event_type", "unknown")
            stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1
            timestamp = event.get("timestamp")
            if timestamp:
                stats["first_event"] = stats["first_event"] or timestamp
                stats["last_event"] = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        stats["error"] = str(e)

    return stats
