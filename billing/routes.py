"""
billing/routes.py

Flask Blueprint for billing routes.

Endpoints:
    Billing (login required):
        GET  /api/billing/plans - List the static plan catalog (public)
        POST /api/billing/create - Create a payment request (QR)
        GET  /api/billing/history - Payment history, newest first
        GET  /api/billing/detail/<payment_id> - One payment
        GET  /api/billing/check/<transaction_ref> - Poll payment status

    Gateway:
        POST /api/billing/webhook - SePay settlement webhook
        POST /api/sepay/webhook - Same handler (alias, registered in init_billing)

    Ops:
        GET  /api/billing/health - Health check

Version History:
    2025-12-17: Initial implementation
    2026-01-09: SePay payment requests, webhook IP allowlist
"""

import logging
import ipaddress
from typing import Optional, Iterable

from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from werkzeug.exceptions import HTTPException

from billing.service import billing_service
from billing.config import get_static_plans, SEPAY_ALLOWED_IPS, WEBHOOK_IP_CHECK_ENABLED
from billing.errors import BillingError, ValidationError, WebhookAuthError, WebhookForbiddenError
from billing.audit import audit, AuditEvent, client_ip


logger = logging.getLogger(__name__)

billing_bp = Blueprint('billing_bp', __name__, url_prefix='/api/billing')


# =============================================================================
# ERROR HANDLERS (registered app-wide by init_billing)
# =============================================================================

def handle_billing_error(error: BillingError):
    return jsonify(error.to_dict()), error.status_code


def handle_unexpected_error(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception(f"Unhandled error on {request.method} {request.path}")
    return jsonify({
        'success': False,
        'error': 'Internal server error',
        'code': 'INTERNAL_ERROR'
    }), 500


# =============================================================================
# PLAN CATALOG
# =============================================================================

@billing_bp.route('/plans', methods=['GET'])
def plans():
    """
    List the static plans.

    Response:
        {
            "plans": [
                {"id": "credits_100", "name": "100 Credits", "credits": 100, "is_pro": false, "pro_days": null},
                ...
            ]
        }
    """
    return jsonify({
        'plans': [
            {
                'id': p.code,
                'name': p.name,
                'credits': p.credits,
                'is_pro': p.is_pro,
                'pro_days': p.pro_days,
            }
            for p in get_static_plans()
        ]
    })


# =============================================================================
# PAYMENT REQUESTS
# =============================================================================

def get_json_object() -> dict:
    """Request body as a JSON object; an empty or non-JSON body counts as {}."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _parse_amount(value) -> int:
    """Positive integer from a JSON number or a digit string."""
    if isinstance(value, bool):
        raise ValidationError('Amount must be a positive integer')
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError('Amount must be a positive integer')
    return value


@billing_bp.route('/create', methods=['POST'])
@login_required
def create_payment():
    """
    Create a payment request.

    Request:
        {
            "planId": "credits_100",
            "amount": 50000
        }

    Response:
        {
            "success": true,
            "payment_id": "uuid",
            "qr_payload": "https://img.vietqr.io/image/...",
            "amount": 50000,
            "transaction_ref": "TXM5K2J9A1B2C3D4E5",
            "expires_at": "2026-01-09T10:15:00Z"
        }
    """
    data = get_json_object()

    plan_id = data.get('planId') or data.get('plan_id')
    if not plan_id:
        raise ValidationError('Plan ID is required')

    amount = _parse_amount(data.get('amount'))

    result = billing_service.create_payment(
        user_id=current_user.id,
        plan_id=plan_id,
        amount=amount
    )
    return jsonify({'success': True, **result})


@billing_bp.route('/history', methods=['GET'])
@login_required
def history():
    """
    Payment history, newest first.

    qr_payload and expires_at are present only on pending payments.
    """
    return jsonify({
        'success': True,
        'payments': billing_service.get_history(current_user.id)
    })


@billing_bp.route('/detail/<payment_id>', methods=['GET'])
@login_required
def detail(payment_id):
    return jsonify({
        'success': True,
        'payment': billing_service.get_detail(current_user.id, payment_id)
    })


@billing_bp.route('/check/<transaction_ref>', methods=['GET'])
@login_required
def check_status(transaction_ref):
    """
    Payment status by transaction reference.

    Response:
        {
            "success": true,
            "transaction_ref": "TX...",
            "status": "pending" | "completed" | "expired",
            "completed_at": "..." | null
        }
    """
    result = billing_service.check_status(current_user.id, transaction_ref)
    return jsonify({'success': True, **result})


# =============================================================================
# WEBHOOK
# =============================================================================

def is_allowed_webhook_ip(ip: Optional[str], allowed: Iterable[str]) -> bool:
    """
    True if `ip` matches one of the allowed addresses or CIDR blocks.

    IPv4-mapped IPv6 addresses (::ffff:1.2.3.4) are compared as IPv4.
    """
    if not ip:
        return False

    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    if address.version == 6 and address.ipv4_mapped:
        address = address.ipv4_mapped

    for entry in allowed:
        entry = entry.strip()
        if not entry:
            continue
        try:
            if '/' in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning(f"Ignoring malformed webhook allowlist entry: {entry}")

    return False


def _check_webhook_source():
    if not current_app.config.get('WEBHOOK_IP_CHECK', WEBHOOK_IP_CHECK_ENABLED):
        return

    allowed = current_app.config.get('SEPAY_ALLOWED_IPS', SEPAY_ALLOWED_IPS)
    ip = client_ip()
    if is_allowed_webhook_ip(ip, allowed):
        return

    logger.warning(f"Webhook rejected: IP {ip} not in allowlist")
    audit.log_request_event(
        event_type=AuditEvent.WEBHOOK_IP_REJECTED,
        details={'reason': 'ip_not_allowed'}
    )
    raise WebhookForbiddenError()


@billing_bp.route('/webhook', methods=['POST'])
def webhook():
    """
    SePay settlement webhook.

    Responses:
        403 - source IP not allow-listed
        401 - signature missing or wrong
        200 - {"success": true, "acknowledged": true} in every other case,
              including notifications that matched nothing or failed internally
    """
    try:
        _check_webhook_source()
    except WebhookForbiddenError as e:
        return jsonify(e.to_dict()), e.status_code

    provider = billing_service.provider
    payload = request.get_data()
    signature = request.headers.get(provider.signature_header)

    try:
        result = billing_service.handle_webhook(payload, signature)
    except WebhookAuthError as e:
        return jsonify(e.to_dict()), e.status_code

    logger.info(f"Webhook acknowledged: {result['result']}")
    return jsonify({'success': True, 'acknowledged': True}), 200


# =============================================================================
# HEALTH CHECK
# =============================================================================

@billing_bp.route('/health', methods=['GET'])
def health():
    """
    Health check endpoint for load balancers.

    Response:
        {
            "status": "healthy",
            "db": "connected"
        }
    """
    from billing.db import check_connection

    db_ok = check_connection()

    if db_ok:
        return jsonify({
            'status': 'healthy',
            'db': 'connected'
        })
    else:
        return jsonify({
            'status': 'unhealthy',
            'db': 'disconnected'
        }), 500
