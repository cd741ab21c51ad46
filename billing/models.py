"""
billing/models.py

SQLAlchemy models for the billing system.

Tables:
    - users: Accounts and their prepaid token balance
    - payments: Bank-transfer payment requests (pending -> completed | expired)
    - usage_logs: Append-only record of every billable outcome

Design principles:
    1. Balances change only through relative UPDATEs (see billing/balance.py)
    2. Idempotency: Unique constraints prevent double-processing
    3. Audit trail: usage_logs records every charge, success or not
    4. UUID ids: We control ids, not the gateway

Version History:
    2025-12-17: Initial implementation
    2026-01-09: Payment requests with QR payload and TTL, usage logs
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, Text,
    ForeignKey, Numeric, Index, JSON, Uuid, true
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), 'postgresql')


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# USER MODEL
# =============================================================================

class User(Base):
    """
    Account of one tenant, holding the prepaid token balance.

    token_balance, credits_used and total_spent_cents are only ever
    changed with relative UPDATEs, never by assigning on a loaded row.
    """
    __tablename__ = 'users'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Identity
    email = Column(String(500), unique=True, nullable=False, index=True)
    name = Column(String(200))

    # Status
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)

    # Balance store
    token_balance = Column(BigInteger, default=0, nullable=False)
    credits_used = Column(Numeric(14, 4), default=0, nullable=False)
    total_spent_cents = Column(Numeric(14, 4), default=0, nullable=False)

    # Pro subscription (no expiry = lifetime)
    is_pro = Column(Boolean, default=False, nullable=False)
    pro_expires_at = Column(DateTime)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, server_default=func.now())

    # Relationships
    payments = relationship('Payment', back_populates='user')
    usage_logs = relationship('UsageLog', back_populates='user')

    def has_active_pro(self, now: Optional[datetime] = None) -> bool:
        """True if Pro is granted and not yet expired."""
        if not self.is_pro:
            return False
        if self.pro_expires_at is None:
            return True
        return (now or utcnow()) < self.pro_expires_at

    # Flask-Login integration
    @property
    def is_authenticated(self):
        return True

    @property
    def is_anonymous(self):
        return False

    def get_id(self):
        return str(self.id)

    def __repr__(self):
        return f'<User {self.email}>'


# =============================================================================
# PAYMENT MODEL
# =============================================================================

class PaymentStatus:
    """Payment status constants. pending is the only non-terminal state."""
    PENDING = 'pending'        # Waiting for the bank transfer
    COMPLETED = 'completed'    # Settled by the gateway webhook
    EXPIRED = 'expired'        # TTL elapsed before settlement


class Payment(Base):
    """
    Bank-transfer payment request.

    Key design:
    - transaction_ref is OURS, embedded in the transfer narration
    - Lookup flow: webhook narration -> transaction_ref -> pending payment -> user
    - status only ever moves pending -> completed or pending -> expired
    """
    __tablename__ = 'payments'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)

    # Reference the payer types into the transfer narration
    transaction_ref = Column(String(40), unique=True, nullable=False)

    # What was bought
    plan_id = Column(String(50), nullable=False)
    description = Column(String(200), nullable=False)
    credits_granted = Column(Integer, nullable=False)

    # Money (VND, no minor unit)
    amount = Column(BigInteger, nullable=False)

    status = Column(String(20), default=PaymentStatus.PENDING, nullable=False, index=True)

    qr_payload = Column(Text)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    # Payee details at creation, gateway reference/name at settlement
    settlement_metadata = Column(JSONType, default=dict)

    user = relationship('User', back_populates='payments')

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """True if still pending but past its expiry."""
        return (
            self.status == PaymentStatus.PENDING
            and self.expires_at is not None
            and (now or utcnow()) > self.expires_at
        )

    def __repr__(self):
        return f'<Payment {self.transaction_ref} {self.status}>'


Index('idx_payments_user_created', Payment.user_id, Payment.created_at)


# =============================================================================
# USAGE LOG MODEL
# =============================================================================

class UsageAction:
    """Billable action kinds."""
    GENERATE_IMAGE = 'generate_image'
    CHAT = 'chat'
    CHAT_STREAM = 'chat_stream'
    API_CHAT = 'api_chat'
    API_CHAT_STREAM = 'api_chat_stream'
    API_IMAGE_GENERATION = 'api_image_generation'

    ALL = (GENERATE_IMAGE, CHAT, CHAT_STREAM, API_CHAT, API_CHAT_STREAM, API_IMAGE_GENERATION)
    IMAGE = (GENERATE_IMAGE, API_IMAGE_GENERATION)
    CHAT_FAMILY = (CHAT, CHAT_STREAM, API_CHAT, API_CHAT_STREAM)


class UsageLog(Base):
    """
    Append-only usage record.

    Rows are inserted when a billable outcome is first observed and never
    updated. For async jobs, external_job_id is copied out of metadata so
    the partial unique index below can hold at most one successful row per
    (user, action, job).
    """
    __tablename__ = 'usage_logs'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)

    action = Column(String(50), nullable=False)

    credits_charged = Column(Numeric(14, 4), default=Decimal('0'), nullable=False)
    cost_cents = Column(Numeric(14, 4), default=Decimal('0'), nullable=False)

    success = Column(Boolean, default=True, nullable=False)

    external_job_id = Column(String(100))

    # Prompt excerpt, client ip, token counts, error text...
    metadata_json = Column('metadata', JSONType, default=dict)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    user = relationship('User', back_populates='usage_logs')

    __table_args__ = (
        Index(
            'uq_usage_logs_job_success',
            'user_id', 'action', 'external_job_id',
            unique=True,
            postgresql_where=(success == true()),
            sqlite_where=(success == true()),
        ),
        Index('idx_usage_logs_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return f'<UsageLog {self.action} user={self.user_id} {self.credits_charged}>'
