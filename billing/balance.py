"""
billing/balance.py

Account balance store.

The balance lives on the User row and is changed ONLY here, always with a
relative UPDATE issued by the database:

    UPDATE users SET token_balance = token_balance + :delta WHERE id = :id

Never read-modify-write in Python: a chat debit and a payment credit can
race on the same account and one of them would be lost.

These helpers do not commit. Callers (settlement, usage meter) run them
inside their own transaction so the balance change commits together with
the payment/usage row that justifies it.

Operations:
    - get_balance(db, user_id) -> int
    - credit_tokens(db, user_id, amount)
    - debit_usage(db, user_id, credits, cost_cents)
    - grant_pro(db, user_id, days, now)

Version History:
    2025-12-17: Initial implementation (ledger entries)
    2026-01-09: Balance column with atomic increments
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from billing.models import User


logger = logging.getLogger(__name__)


def get_balance(db: Session, user_id) -> int:
    """Current token balance (0 for an unknown user)."""
    balance = db.query(User.token_balance).filter(User.id == user_id).scalar()
    return int(balance or 0)


def has_credits(db: Session, user_id, required: int = 1) -> bool:
    """True if the balance covers `required` credits."""
    return get_balance(db, user_id) >= required


def credit_tokens(db: Session, user_id, amount: int) -> int:
    """
    Add `amount` tokens to the balance.

    Returns:
        Number of rows updated (0 if the user does not exist)
    """
    if amount <= 0:
        raise ValueError(f'credit amount must be positive, got {amount}')

    return db.query(User).filter(User.id == user_id).update(
        {User.token_balance: User.token_balance + amount},
        synchronize_session=False,
    )


def debit_usage(db: Session, user_id, credits, cost_cents: Decimal) -> int:
    """
    Record consumption: credits_used and total_spent_cents go up,
    token_balance goes down by the same credits.

    The debit is not guarded: it may take the balance below zero.
    Billable actions are gated BEFORE the work starts (see
    billing.decorators.requires_credits); by the time the cost is
    known the provider has already done the work.

    Returns:
        Number of rows updated
    """
    if credits < 0 or cost_cents < 0:
        raise ValueError('usage debit must not be negative')

    return db.query(User).filter(User.id == user_id).update(
        {
            User.credits_used: User.credits_used + credits,
            User.total_spent_cents: User.total_spent_cents + cost_cents,
            User.token_balance: User.token_balance - int(credits),
        },
        synchronize_session=False,
    )


def grant_pro(db: Session, user_id, days: int, now: datetime) -> Optional[datetime]:
    """
    Open or extend the Pro window by `days`.

    The new expiry counts from the later of now and the current expiry, so
    buying again while Pro stacks the time. A lifetime grant (is_pro with
    no expiry) is left alone.

    The row is locked (SELECT ... FOR UPDATE) for the rest of the caller's
    transaction.

    Returns:
        The new expiry, or None for a lifetime grant
    """
    user = db.query(User).filter(User.id == user_id).with_for_update().populate_existing().one_or_none()
    if user is None:
        return None

    if user.is_pro and user.pro_expires_at is None:
        logger.info(f"User {user_id} has lifetime Pro, window not changed")
        return None

    start = now
    if user.is_pro and user.pro_expires_at and user.pro_expires_at > now:
        start = user.pro_expires_at

    expires_at = start + timedelta(days=days)
    db.query(User).filter(User.id == user_id).update(
        {User.is_pro: True, User.pro_expires_at: expires_at},
        synchronize_session=False,
    )
    return expires_at
