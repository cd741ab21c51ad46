"""
billing/service.py

BillingService - the main interface for payment operations.

Your app calls BillingService, never the payment provider directly.
This enables provider switching without application code changes.

Usage:
    from billing.service import billing_service

    # Create a payment request (QR shown to the payer)
    result = billing_service.create_payment(
        user_id=current_user.id,
        plan_id='credits_100',
        amount=50000
    )
    render_qr(result['qr_payload'])

    # Handle webhook (in route)
    billing_service.handle_webhook(request.get_data(), request.headers.get('X-SePay-Signature'))

Version History:
    2025-12-17: Initial implementation
    2026-01-09: Bank-transfer payments, narration correlation, lazy expiry
"""

import logging
from typing import Optional, Dict, Any, Callable
from datetime import datetime

from billing.db import get_db
from billing.models import PaymentStatus, utcnow
from billing.config import resolve_plan, PAYMENT_TTL_MINUTES
from billing.errors import ValidationError, NotFoundError, WebhookAuthError
from billing.audit import audit, AuditEvent
from billing.balance import credit_tokens, grant_pro
from billing.providers import get_sepay_provider, PaymentProvider
from billing import ledger


logger = logging.getLogger(__name__)


class WebhookResult:
    """Outcome of one settlement notification (all are acknowledged)."""
    SETTLED = 'settled'
    UNPARSEABLE = 'unparseable'
    NO_REFERENCE = 'no_reference'
    NO_PENDING_PAYMENT = 'no_pending_payment'
    EXPIRED = 'expired'
    UNDERPAID = 'underpaid'
    ERROR = 'error'


class BillingService:
    """
    Main billing service - coordinates payment requests, settlement, and credits.

    Design:
        1. App calls BillingService methods
        2. BillingService creates internal records (Payment)
        3. BillingService delegates QR building and signature checks to the PaymentProvider
        4. Webhooks move a pending Payment to completed and credit the balance
    """

    def __init__(
        self,
        provider: Optional[PaymentProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
        ttl_minutes: int = PAYMENT_TTL_MINUTES,
    ):
        """
        Initialize with a payment provider.

        Args:
            provider: PaymentProvider instance (defaults to SePay)
            clock: Returns the current naive UTC time
            ttl_minutes: Payment request lifetime
        """
        self._provider = provider
        self.clock = clock or utcnow
        self.ttl_minutes = ttl_minutes

    @property
    def provider(self) -> PaymentProvider:
        """Get active payment provider."""
        if self._provider is None:
            self._provider = get_sepay_provider()
        return self._provider

    # =========================================================================
    # PAYMENT REQUESTS
    # =========================================================================

    def create_payment(self, user_id, plan_id: str, amount: int) -> Dict[str, Any]:
        """
        Issue a pending payment request.

        Flow:
            1. Resolve plan
            2. Generate transaction reference
            3. Build QR with amount, payee and narration
            4. Persist Payment (status=pending, expires_at=now+TTL)

        Args:
            user_id: Paying account
            plan_id: Plan to buy (e.g., 'credits_100', 'tokens_500')
            amount: Amount to transfer, positive integer

        Returns:
            {
                'payment_id': str,
                'qr_payload': str,         # Show this to the payer
                'amount': int,
                'transaction_ref': str,
                'expires_at': str          # ISO 8601 UTC
            }

        Raises:
            ValidationError: Unknown plan or malformed amount
        """
        plan = resolve_plan(plan_id)
        if not plan:
            raise ValidationError(f'Invalid plan: {plan_id}')

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError('Amount must be a positive integer')

        payment = ledger.create_payment_record(
            user_id=user_id,
            plan=plan,
            amount=amount,
            qr_builder=self.provider.build_payment_qr,
            payee=self.provider.payee_details(),
            now=self.clock(),
            ttl_minutes=self.ttl_minutes,
        )

        audit.log_request_event(
            event_type=AuditEvent.PAYMENT_CREATED,
            user_id=user_id,
            details={
                'transaction_ref': payment.transaction_ref,
                'plan_id': plan.code,
                'amount': amount,
                'credits': plan.credits,
            }
        )

        return {
            'payment_id': str(payment.id),
            'qr_payload': payment.qr_payload,
            'amount': int(payment.amount),
            'transaction_ref': payment.transaction_ref,
            'expires_at': ledger.iso_utc(payment.expires_at),
        }

    def get_history(self, user_id) -> list:
        """Payment history, newest first. Expires overdue requests first."""
        payments = ledger.get_user_payments(user_id, now=self.clock())
        return [ledger.history_item(p) for p in payments]

    def get_detail(self, user_id, payment_id) -> Dict[str, Any]:
        """One payment of this account. Raises NotFoundError."""
        payment = ledger.get_user_payment(user_id, payment_id, now=self.clock())
        if not payment:
            raise NotFoundError('Payment')
        return ledger.history_item(payment)

    def check_status(self, user_id, transaction_ref: str) -> Dict[str, Any]:
        """
        Poll a payment by reference (the QR screen does this).

        Returns:
            {'transaction_ref': str, 'status': str, 'completed_at': str | None}
        """
        payment = ledger.get_user_payment_by_ref(user_id, transaction_ref, now=self.clock())
        if not payment:
            raise NotFoundError('Payment')

        return {
            'transaction_ref': payment.transaction_ref,
            'status': payment.status,
            'completed_at': ledger.iso_utc(payment.completed_at),
        }

    def expire_stale_payments(self) -> int:
        """Sweep every overdue pending request to expired."""
        count = ledger.expire_stale_payments(now=self.clock())
        if count:
            audit.log_event(
                event_type=AuditEvent.PAYMENT_EXPIRED,
                details={'count': count, 'reason': 'sweep'}
            )
        return count

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def handle_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Dict[str, Any]:
        """
        Handle an incoming settlement notification.

        Flow:
            1. Verify signature (raise WebhookAuthError if it fails)
            2. Extract candidate transaction references from the narration
            3. Take the first candidate with a PENDING payment
            4. Check expiry and amount
            5. Compare-and-set pending -> completed, credit balance, grant Pro
            6. Acknowledge (always, once authenticated)

        Redelivery is safe: the second copy finds no pending row.

        Args:
            payload: Raw request body
            signature: Provider signature header

        Returns:
            {
                'acknowledged': True,
                'result': str      # WebhookResult value
            }
        """
        is_valid, event_data = self.provider.verify_webhook(payload, signature)

        if not is_valid:
            logger.warning("Webhook signature verification failed")
            audit.log_request_event(
                event_type=AuditEvent.WEBHOOK_SIGNATURE_INVALID,
                details={
                    'reason': 'missing' if not signature else 'mismatch',
                    'signature_prefix': (signature or '')[:8],
                }
            )
            raise WebhookAuthError()

        try:
            result = self._apply_settlement(event_data)
        except Exception as e:
            get_db().rollback()
            logger.exception(f"Webhook processing error for event {event_data.get('id')}")
            audit.log_request_event(
                event_type=AuditEvent.WEBHOOK_PROCESSING_ERROR,
                details={
                    'notification_id': str(event_data.get('id', '')),
                    'error_type': type(e).__name__,
                }
            )
            result = WebhookResult.ERROR

        return {
            'acknowledged': True,
            'result': result,
        }

    def _apply_settlement(self, event_data: dict) -> str:
        """Correlate, verify and settle one authenticated notification."""
        db = get_db()

        notification = self.provider.parse_settlement(event_data)
        if notification is None:
            return WebhookResult.UNPARSEABLE

        candidates = self.provider.reference_candidates(notification.narration)
        if not candidates:
            logger.warning(
                f"No transaction reference in narration of notification {notification.notification_id}"
            )
            audit.log_request_event(
                event_type=AuditEvent.WEBHOOK_UNMATCHED,
                details={
                    'notification_id': notification.notification_id,
                    'reason': 'no_reference',
                    'settled_amount': notification.settled_amount,
                }
            )
            return WebhookResult.NO_REFERENCE

        payment = None
        for transaction_ref in candidates:
            payment = ledger.find_payment_by_ref(transaction_ref, status=PaymentStatus.PENDING)
            if payment:
                break

        if not payment:
            logger.warning(f"No pending payment for {', '.join(candidates)} (settled, expired or unknown)")
            audit.log_request_event(
                event_type=AuditEvent.WEBHOOK_UNMATCHED,
                details={
                    'notification_id': notification.notification_id,
                    'transaction_ref': candidates[0],
                    'reason': 'no_pending_payment',
                }
            )
            return WebhookResult.NO_PENDING_PAYMENT

        now = self.clock()

        if payment.is_overdue(now):
            ledger.expire_payment(db, payment.id, now)
            logger.warning(f"Payment {transaction_ref} expired before settlement")
            audit.log_request_event(
                event_type=AuditEvent.PAYMENT_EXPIRED,
                user_id=payment.user_id,
                details={
                    'transaction_ref': transaction_ref,
                    'notification_id': notification.notification_id,
                    'settled_amount': notification.settled_amount,
                }
            )
            return WebhookResult.EXPIRED

        if notification.settled_amount < payment.amount:
            logger.warning(
                f"Underpayment for {transaction_ref}: "
                f"received {notification.settled_amount}, expected {payment.amount}"
            )
            audit.log_request_event(
                event_type=AuditEvent.PAYMENT_UNDERPAID,
                user_id=payment.user_id,
                details={
                    'transaction_ref': transaction_ref,
                    'settled_amount': notification.settled_amount,
                    'expected_amount': int(payment.amount),
                }
            )
            return WebhookResult.UNDERPAID

        metadata = dict(payment.settlement_metadata or {})
        metadata.update({
            'gateway': notification.gateway_name or self.provider.name,
            'gateway_reference': notification.notification_id,
            'settled_amount': notification.settled_amount,
        })

        if not ledger.mark_completed(db, payment.id, now, metadata):
            # A concurrent delivery (or expiry) got there first
            db.rollback()
            logger.warning(f"Payment {transaction_ref} no longer pending, notification ignored")
            return WebhookResult.NO_PENDING_PAYMENT

        credit_tokens(db, payment.user_id, payment.credits_granted)

        plan = resolve_plan(payment.plan_id)
        if plan and plan.grants_pro:
            grant_pro(db, payment.user_id, plan.pro_days, now)

        db.commit()
        db.expire(payment)

        logger.info(
            f"Payment {transaction_ref} settled: {payment.credits_granted} credits "
            f"to user {payment.user_id}"
        )
        audit.log_request_event(
            event_type=AuditEvent.PAYMENT_SETTLED,
            user_id=payment.user_id,
            details={
                'transaction_ref': transaction_ref,
                'notification_id': notification.notification_id,
                'gateway': notification.gateway_name,
                'settled_amount': notification.settled_amount,
                'credits': payment.credits_granted,
            }
        )

        return WebhookResult.SETTLED


# Global service instance
billing_service = BillingService()
