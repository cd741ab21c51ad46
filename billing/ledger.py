"""
billing/ledger.py

Payment ledger operations.

Every payment request is a row in `payments`. Its status is monotonic:

    pending --(settled by webhook)--> completed
    pending --(TTL elapsed)---------> expired

Both transitions are conditional UPDATEs guarded by `status = 'pending'`,
so concurrent writers can never reverse or re-enter a state: whoever gets
there second updates zero rows.

Expiry is lazy: every read path first expires the rows it is about to
return. expire_stale_payments() does the same for all accounts at once
(run it from cron via `flask billing expire-payments` if you want storage
to catch up with rows nobody reads).

Operations:
    - generate_transaction_ref() -> str
    - create_payment_record(...) -> Payment
    - get_user_payments(user_id, now) -> list[Payment]
    - get_user_payment(user_id, payment_id, now) -> Payment | None
    - get_user_payment_by_ref(user_id, ref, now) -> Payment | None
    - find_payment_by_ref(ref) -> Payment | None
    - mark_completed(db, payment_id, now, metadata) -> bool
    - expire_stale_payments(now) -> int

Version History:
    2025-12-17: Initial implementation (credit ledger)
    2026-01-09: Payment requests with lazy expiry
"""

import time
import uuid
import secrets
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.db import get_db
from billing.models import Payment, PaymentStatus, utcnow
from billing.config import (
    Plan,
    PAYMENT_TTL_MINUTES,
    PAYMENT_HISTORY_LIMIT,
    TRANSACTION_REF_PREFIX,
    TRANSACTION_REF_TIME_DIGITS,
)


logger = logging.getLogger(__name__)

_BASE36 = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'

# Reference collisions are astronomically unlikely; retry a couple of times anyway
MAX_REFERENCE_ATTEMPTS = 3


# =============================================================================
# TRANSACTION REFERENCES
# =============================================================================

def _base36(number: int) -> str:
    if number == 0:
        return '0'
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return ''.join(reversed(digits))


def generate_transaction_ref(epoch_ms: Optional[int] = None) -> str:
    """
    Build a transaction reference: TX + 8 base36 digits of epoch millis +
    8 hex chars, always TRANSACTION_REF_LENGTH characters long.

    Upper-case alphanumerics only, so it survives being typed into (and
    echoed back from) a bank transfer narration.

    Example: TXM5K2J9A1B2C3D4E5
    """
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    time_part = _base36(epoch_ms).rjust(TRANSACTION_REF_TIME_DIGITS, '0')[-TRANSACTION_REF_TIME_DIGITS:]
    return TRANSACTION_REF_PREFIX + time_part + secrets.token_hex(4).upper()


def build_narration(transaction_ref: str, plan: Plan) -> str:
    """Transfer description: the reference first, so truncation keeps it."""
    return f'{transaction_ref} {plan.name}'


# =============================================================================
# CREATE
# =============================================================================

def create_payment_record(
    user_id,
    plan: Plan,
    amount: int,
    qr_builder,
    payee: dict,
    now: Optional[datetime] = None,
    ttl_minutes: int = PAYMENT_TTL_MINUTES,
) -> Payment:
    """
    Insert a pending payment request.

    Args:
        user_id: Paying account
        plan: Resolved plan
        amount: Amount the payer must transfer
        qr_builder: callable(amount, narration) -> QR payload
        payee: Bank details kept on the record
        now: Creation time
        ttl_minutes: Lifetime before the request expires

    Returns:
        The persisted Payment
    """
    now = now or utcnow()
    db = get_db()

    for attempt in range(1, MAX_REFERENCE_ATTEMPTS + 1):
        transaction_ref = generate_transaction_ref()
        narration = build_narration(transaction_ref, plan)

        payment = Payment(
            id=uuid.uuid4(),
            user_id=user_id,
            transaction_ref=transaction_ref,
            plan_id=plan.code,
            description=plan.name,
            credits_granted=plan.credits,
            amount=amount,
            status=PaymentStatus.PENDING,
            qr_payload=qr_builder(amount, narration),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            settlement_metadata=dict(payee),
        )
        db.add(payment)

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if attempt == MAX_REFERENCE_ATTEMPTS:
                raise
            logger.warning(f"Transaction reference collision on {transaction_ref}, retrying")
            continue

        logger.info(
            f"Payment {transaction_ref} created for user {user_id}: "
            f"plan={plan.code} amount={amount} expires={payment.expires_at.isoformat()}"
        )
        return payment

    raise RuntimeError('unreachable')


# =============================================================================
# LAZY EXPIRY
# =============================================================================

def _expire_overdue(db: Session, now: datetime, *criteria) -> int:
    """
    Move overdue pending rows matching `criteria` to expired, and commit.

    A row that is no longer pending is left alone, so racing readers
    (or a racing settlement) are harmless.
    """
    count = db.query(Payment).filter(
        Payment.status == PaymentStatus.PENDING,
        Payment.expires_at < now,
        *criteria
    ).update({Payment.status: PaymentStatus.EXPIRED}, synchronize_session=False)

    db.commit()

    if count:
        # Rows already in the identity map still say 'pending'
        db.expire_all()
        logger.info(f"Expired {count} overdue payment(s)")

    return count


def expire_stale_payments(now: Optional[datetime] = None) -> int:
    """Expire every overdue pending payment, across all accounts."""
    return _expire_overdue(get_db(), now or utcnow())


# =============================================================================
# READS (each one expires first)
# =============================================================================

def get_user_payments(
    user_id,
    now: Optional[datetime] = None,
    limit: int = PAYMENT_HISTORY_LIMIT
) -> list:
    """Account's payments, newest first."""
    db = get_db()
    _expire_overdue(db, now or utcnow(), Payment.user_id == user_id)

    return db.query(Payment).filter(
        Payment.user_id == user_id
    ).order_by(
        Payment.created_at.desc()
    ).limit(limit).all()


def _coerce_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def get_user_payment(user_id, payment_id, now: Optional[datetime] = None) -> Optional[Payment]:
    """One payment of this account, or None."""
    payment_uuid = _coerce_uuid(payment_id)
    if payment_uuid is None:
        return None

    db = get_db()
    _expire_overdue(db, now or utcnow(), Payment.id == payment_uuid, Payment.user_id == user_id)

    return db.query(Payment).filter(
        Payment.id == payment_uuid,
        Payment.user_id == user_id
    ).first()


def get_user_payment_by_ref(user_id, transaction_ref: str, now: Optional[datetime] = None) -> Optional[Payment]:
    """Payment of this account by transaction reference, or None."""
    if not transaction_ref:
        return None
    transaction_ref = transaction_ref.strip().upper()

    db = get_db()
    _expire_overdue(
        db, now or utcnow(),
        Payment.transaction_ref == transaction_ref,
        Payment.user_id == user_id,
    )

    return db.query(Payment).filter(
        Payment.transaction_ref == transaction_ref,
        Payment.user_id == user_id
    ).first()


def find_payment_by_ref(transaction_ref: str, status: Optional[str] = None) -> Optional[Payment]:
    """Any account's payment by reference (webhook correlation)."""
    query = get_db().query(Payment).filter(Payment.transaction_ref == transaction_ref)
    if status:
        query = query.filter(Payment.status == status)
    return query.first()


# =============================================================================
# SETTLEMENT
# =============================================================================

def mark_completed(db: Session, payment_id, now: datetime, metadata: dict) -> bool:
    """
    pending -> completed, only if still pending AND not past expiry.

    Does not commit: the caller credits the balance in the same transaction.

    Returns:
        True if this call won the transition
    """
    count = db.query(Payment).filter(
        Payment.id == payment_id,
        Payment.status == PaymentStatus.PENDING,
        Payment.expires_at >= now,
    ).update(
        {
            Payment.status: PaymentStatus.COMPLETED,
            Payment.completed_at: now,
            Payment.settlement_metadata: metadata,
        },
        synchronize_session=False,
    )
    return count == 1


def expire_payment(db: Session, payment_id, now: datetime) -> bool:
    """pending -> expired for one overdue row (commits)."""
    return _expire_overdue(db, now, Payment.id == payment_id) == 1


# =============================================================================
# SERIALIZATION
# =============================================================================

def iso_utc(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + 'Z' if value else None


def history_item(payment: Payment) -> dict:
    """
    Client view of a payment.

    qr_payload and expires_at are only exposed while pending: after that
    they have no purpose and the QR carries our bank details.
    """
    item = {
        'id': str(payment.id),
        'amount': int(payment.amount),
        'status': payment.status,
        'description': payment.description,
        'plan_id': payment.plan_id,
        'credits': payment.credits_granted,
        'created_at': iso_utc(payment.created_at),
        'transaction_ref': payment.transaction_ref,
    }
    if payment.status == PaymentStatus.PENDING:
        item['qr_payload'] = payment.qr_payload
        item['expires_at'] = iso_utc(payment.expires_at)
    return item
