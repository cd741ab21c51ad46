"""
billing/audit.py

Audit logging for money-moving and security-relevant billing events.

Logs with:
- Timestamp (ISO 8601 UTC)
- Event type
- Account ID (if applicable)
- IP address
- User agent
- Whitelisted details (references, amounts, reasons)

Notes:
- Append-only log (never modify/delete entries)
- Structured JSON format for analysis
- Retains: who, what, when, where
- Webhook authentication failures are always recorded with the source IP

Usage:
    from billing.audit import audit, AuditEvent

    audit.log_request_event(
        event_type=AuditEvent.WEBHOOK_SIGNATURE_INVALID,
        details={'reason': 'signature mismatch'}
    )

Version History:
    2025-12-14: Initial implementation
    2026-01-09: Billing events (payments, settlements, usage charges)
"""

import os
import json
import uuid
import fcntl
import logging
import threading
from enum import Enum
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List


logger = logging.getLogger(__name__)


class AuditEvent(Enum):
    """
    Enumeration of auditable events.

    Categories:
    - PAYMENT_*: Payment request lifecycle
    - WEBHOOK_*: Gateway notifications
    - USAGE_*: Metered charges
    """

    # Payment events
    PAYMENT_CREATED = "payment.created"
    PAYMENT_SETTLED = "payment.settled"
    PAYMENT_EXPIRED = "payment.expired"
    PAYMENT_UNDERPAID = "payment.underpaid"

    # Webhook events
    WEBHOOK_UNMATCHED = "webhook.unmatched"
    WEBHOOK_SIGNATURE_INVALID = "webhook.signature_invalid"
    WEBHOOK_IP_REJECTED = "webhook.ip_rejected"
    WEBHOOK_PROCESSING_ERROR = "webhook.processing_error"

    # Usage events
    USAGE_CHARGED = "usage.charged"


class AuditLogger:
    """
    JSON-lines audit trail, one event per line, never rewritten.

        {"timestamp": "2026-01-09T15:30:00+00:00", "event": "payment.settled",
         "user_id": "8d3c...", "request_id": "1a2b3c4d",
         "ip_address": "203.0.113.7", "details": {"transaction_ref": "TX..."}}

    Only keys listed in SAFE_KEYS (or prefixed request_) are written as-is;
    anything else is replaced by `_skipped_<key>: <type name>` so narrations,
    signatures and payee details never reach the file.

    If the directory cannot be created the logger keeps running and the
    events only appear in the application log.
    """

    SAFE_KEYS = frozenset({
        'transaction_ref', 'payment_id', 'plan_id', 'amount', 'settled_amount',
        'expected_amount', 'credits', 'cost_cents', 'action', 'job_id',
        'gateway', 'notification_id', 'reason', 'status', 'signature_prefix',
        'count', 'error_type',
    })
    MAX_VALUE_LENGTH = 500

    def __init__(self, log_path: Optional[Path] = None):
        if log_path is None:
            log_path = Path(os.environ.get('AUDIT_LOG_DIR', '/data/audit')) / 'billing_audit.log'
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._enabled = self._prepare_file()

    @property
    def log_path(self) -> Path:
        return self._log_path

    def _prepare_file(self) -> bool:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_path.touch(exist_ok=True)
        except OSError as e:
            logger.warning(f"Audit file {self._log_path} unavailable ({e}), logging events to the app log only")
            return False
        return True

    # =========================================================================
    # WRITING
    # =========================================================================

    def _request_context(self) -> Dict[str, str]:
        from flask import request, has_request_context

        if not has_request_context():
            return {}

        return {
            'ip_address': client_ip() or 'unknown',
            'user_agent': request.headers.get('User-Agent', 'unknown')[:200],
            'request_path': request.path,
            'request_method': request.method,
        }

    def _sanitize_details(self, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        sanitized = {}
        for key, value in (details or {}).items():
            if key not in self.SAFE_KEYS and not key.startswith('request_'):
                sanitized[f'_skipped_{key}'] = type(value).__name__
                continue
            if isinstance(value, str) and len(value) > self.MAX_VALUE_LENGTH:
                value = value[:self.MAX_VALUE_LENGTH] + '...'
            sanitized[key] = value
        return sanitized

    def log_event(
        self,
        event_type: AuditEvent,
        user_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """
        Append one event.

        Args:
            event_type: AuditEvent member
            user_id: Account concerned, if any
            details: Event fields, filtered through SAFE_KEYS
            request_id: Correlation id (random 8 chars when omitted)
            ip_address: Caller address
            user_agent: Caller user agent
        """
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event': event_type.value,
            'user_id': None if user_id is None else str(user_id),
            'request_id': request_id or uuid.uuid4().hex[:8],
            'details': self._sanitize_details(details),
        }
        if ip_address:
            entry['ip_address'] = ip_address
        if user_agent:
            entry['user_agent'] = user_agent[:200]

        self._append(entry)

    def log_request_event(
        self,
        event_type: AuditEvent,
        user_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """log_event() with caller IP, user agent and path taken from the Flask request."""
        context = self._request_context()
        request_fields = {k: v for k, v in context.items() if k.startswith('request_')}

        self.log_event(
            event_type=event_type,
            user_id=user_id,
            details={**(details or {}), **request_fields},
            ip_address=context.get('ip_address'),
            user_agent=context.get('user_agent'),
        )

    def _append(self, entry: Dict[str, Any]) -> None:
        logger.info(f"AUDIT {entry['event']} user={entry['user_id'] or 'none'}")

        if not self._enabled:
            return

        line = json.dumps(entry, default=str) + '\n'
        with self._lock:
            try:
                with open(self._log_path, 'a', encoding='utf-8') as f:
                    # Other worker processes append to the same file
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(line)
                        f.flush()
                        os.fsync(f.fileno())
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            except OSError:
                logger.exception("Failed writing audit entry")

    # =========================================================================
    # READING
    # =========================================================================

    def get_recent_events(
        self,
        count: int = 100,
        event_type: Optional[AuditEvent] = None,
        user_id: Optional[Any] = None,
    ) -> List[Dict[str, Any]]:
        """
        Newest events first, optionally filtered by type and account.

        Unparseable lines are skipped.
        """
        if not self._enabled or not self._log_path.exists():
            return []

        with open(self._log_path, 'r', encoding='utf-8') as f:
            lines = f.read().splitlines()

        wanted_user = None if user_id is None else str(user_id)
        events = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if event_type is not None and entry.get('event') != event_type.value:
                continue
            if wanted_user is not None and entry.get('user_id') != wanted_user:
                continue
            events.append(entry)
            if len(events) >= count:
                break

        return events


def client_ip() -> Optional[str]:
    """
    Caller address for the current Flask request.

    Uses remote_addr only; app.py installs ProxyFix when running behind a
    proxy, so forwarded headers are never read directly. Strips the
    IPv4-mapped IPv6 prefix.
    """
    from flask import request, has_request_context

    if not has_request_context():
        return None

    ip = request.remote_addr
    if ip and ip.startswith('::ffff:'):
        ip = ip[len('::ffff:'):]
    return ip


# Module-level singleton
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the audit logger singleton."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(audit_logger: AuditLogger) -> None:
    """Replace the singleton (tests, custom log locations)."""
    global _audit_logger
    _audit_logger = audit_logger


class _AuditProxy:
    """Resolves the current singleton on every call."""

    def __getattr__(self, item):
        return getattr(get_audit_logger(), item)


# Convenience alias
audit = _AuditProxy()
