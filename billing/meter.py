"""
billing/meter.py

Usage meter - records every billable outcome and debits the balance.

Two ways to charge:

    charge_synchronous()
        Chat calls. The token count is known when the call returns, so the
        charge is applied right away: credits = tokens x tier multiplier.

    charge_async_on_first_observed_outcome()
        Image jobs. Completion is only discovered when the client polls the
        job status, and clients poll as often as they like. The first poll
        that sees success charges CREDITS_PER_IMAGE; every later poll finds
        the existing successful row and does nothing.

        Two pollers can both miss the existing row. The partial unique index
        uq_usage_logs_job_success (user_id, action, external_job_id WHERE
        success) lets only one insert through; the loser's IntegrityError is
        reported as ALREADY_APPLIED.

Balance policy:
    Starting a billable action needs a positive balance (an image needs at
    least CREDITS_PER_IMAGE): ensure_can_start() raises PaymentRequiredError.
    The debit that follows completion is never refused and may take the
    balance below zero.

Reports:
    - get_usage_summary(user_id)
    - get_usage_logs(user_id, page, limit)
    - get_usage_stats(user_id, period)

Version History:
    2026-01-09: Initial implementation
    2026-01-20: Job-id uniqueness index, pre-flight guard
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, Callable, Dict, Any

from sqlalchemy.exc import IntegrityError

from billing.db import get_db
from billing.models import User, UsageLog, UsageAction, utcnow
from billing.config import (
    CREDITS_PER_IMAGE,
    CREDIT_PRICE_CENTS,
    TOKEN_PRICE_PER_1K_CENTS,
    PRO_TOKEN_MULTIPLIER,
)
from billing.errors import NotFoundError, PaymentRequiredError
from billing.audit import audit, AuditEvent
from billing.balance import debit_usage, get_balance
from billing.jobs import JobState


logger = logging.getLogger(__name__)

CENTS_QUANTUM = Decimal('0.0001')

MAX_LOG_PAGE_SIZE = 100
DEFAULT_LOG_PAGE_SIZE = 20
RECENT_ACTIVITY_LIMIT = 100

STATS_PERIOD_DAYS = {'day': 1, 'week': 7, 'month': 30}


class ChargeOutcome(str, Enum):
    APPLIED = 'applied'
    ALREADY_APPLIED = 'already_applied'
    FAILURE_RECORDED = 'failure_recorded'
    PENDING = 'pending'

    @property
    def charged(self) -> bool:
        return self in (ChargeOutcome.APPLIED, ChargeOutcome.ALREADY_APPLIED)


@dataclass
class ChargeResult:
    credits_charged: int
    cost_cents: Decimal
    usage_log_id: Optional[uuid.UUID] = None


def agent_multiplier(is_pro_agent: bool) -> int:
    """Token multiplier for a chat agent tier."""
    return PRO_TOKEN_MULTIPLIER if is_pro_agent else 1


def chat_cost_cents(tokens: int, multiplier: int = 1) -> Decimal:
    """Money value of `tokens` raw chat tokens at the tier multiplier."""
    cost = Decimal(tokens) / 1000 * TOKEN_PRICE_PER_1K_CENTS * multiplier
    return cost.quantize(CENTS_QUANTUM)


def image_cost_cents(credits: int = CREDITS_PER_IMAGE) -> Decimal:
    return (Decimal(credits) * CREDIT_PRICE_CENTS).quantize(CENTS_QUANTUM)


def _number(value) -> float:
    return float(value or 0)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + 'Z' if value else None


def usage_log_item(log: UsageLog) -> Dict[str, Any]:
    return {
        'id': str(log.id),
        'action': log.action,
        'credits_charged': _number(log.credits_charged),
        'cost_cents': _number(log.cost_cents),
        'success': log.success,
        'external_job_id': log.external_job_id,
        'metadata': log.metadata_json or {},
        'created_at': _iso(log.created_at),
    }


class UsageMeter:
    """Applies usage charges and answers usage reports."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow

    # =========================================================================
    # PRE-FLIGHT
    # =========================================================================

    def ensure_can_start(self, user_id, required: int = 1) -> int:
        """
        Refuse to start work the account cannot pay for.

        Args:
            user_id: Account
            required: Minimum balance needed (1 for chat, CREDITS_PER_IMAGE for images)

        Returns:
            Current balance

        Raises:
            PaymentRequiredError: Balance below `required`
        """
        balance = get_balance(get_db(), user_id)
        if balance < required:
            logger.info(f"User {user_id} blocked: balance {balance} < {required}")
            raise PaymentRequiredError(required=required)
        return balance

    # =========================================================================
    # SYNCHRONOUS CHARGES
    # =========================================================================

    def charge_synchronous(
        self,
        user_id,
        action: str,
        tokens: int,
        multiplier: int = 1,
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        """
        Charge a completed chat call.

        Args:
            user_id: Account to debit
            action: One of the chat UsageAction kinds
            tokens: Raw tokens consumed
            multiplier: Tier multiplier (see agent_multiplier)
            metadata: Extra fields for the usage record

        Returns:
            ChargeResult with billed credits and cost
        """
        if action not in UsageAction.ALL:
            raise ValueError(f'Unknown usage action: {action}')
        for name, value in (('tokens', tokens), ('multiplier', multiplier)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f'{name} must be an integer, got {value!r}')
        if tokens < 0 or multiplier < 1:
            raise ValueError('tokens must be >= 0 and multiplier >= 1')

        credits = tokens * multiplier
        cost_cents = chat_cost_cents(tokens, multiplier)

        db = get_db()
        log = UsageLog(
            id=uuid.uuid4(),
            user_id=user_id,
            action=action,
            credits_charged=credits,
            cost_cents=cost_cents,
            success=True,
            metadata_json={
                **(metadata or {}),
                'tokens': tokens,
                'billed_tokens': credits,
                'multiplier': multiplier,
            },
            created_at=self.clock(),
        )

        try:
            db.add(log)
            db.flush()
            debit_usage(db, user_id, credits, cost_cents)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Charged user {user_id} {credits} credits for {action} ({tokens} tokens x{multiplier})")
        audit.log_event(
            event_type=AuditEvent.USAGE_CHARGED,
            user_id=user_id,
            details={'action': action, 'credits': credits, 'cost_cents': str(cost_cents)},
        )

        return ChargeResult(credits_charged=credits, cost_cents=cost_cents, usage_log_id=log.id)

    # =========================================================================
    # ASYNC (POLLED) CHARGES
    # =========================================================================

    def _find_successful_charge(self, user_id, action: str, external_job_id: str) -> Optional[UsageLog]:
        return get_db().query(UsageLog).filter(
            UsageLog.user_id == user_id,
            UsageLog.action == action,
            UsageLog.external_job_id == external_job_id,
            UsageLog.success.is_(True),
        ).first()

    def record_failure(
        self,
        user_id,
        action: str,
        metadata: Optional[dict] = None,
        external_job_id: Optional[str] = None,
    ) -> UsageLog:
        """Append an unbilled success=false record (no idempotency guard)."""
        db = get_db()
        log = UsageLog(
            id=uuid.uuid4(),
            user_id=user_id,
            action=action,
            credits_charged=0,
            cost_cents=Decimal('0'),
            success=False,
            external_job_id=external_job_id,
            metadata_json=dict(metadata or {}),
            created_at=self.clock(),
        )
        db.add(log)
        db.commit()

        logger.warning(
            f"Recorded failed {action} for user {user_id}"
            + (f" (job {external_job_id})" if external_job_id else '')
        )
        return log

    def charge_async_on_first_observed_outcome(
        self,
        user_id,
        action: str,
        external_job_id: str,
        outcome: JobState,
        metadata: Optional[dict] = None,
    ) -> ChargeOutcome:
        """
        Bill an async job the first time its success is observed.

        Args:
            user_id: Account that started the job
            action: Image UsageAction kind
            external_job_id: Job/task id from the job API
            outcome: Current job state
            metadata: Extra fields for the usage record (prompt, image url...)

        Returns:
            PENDING           - job still running, nothing recorded
            APPLIED           - this call charged the account
            ALREADY_APPLIED   - a previous observation already charged it
            FAILURE_RECORDED  - job failed, unbilled record appended
        """
        if action not in UsageAction.ALL:
            raise ValueError(f'Unknown usage action: {action}')
        if not external_job_id:
            raise ValueError('external_job_id is required')

        metadata = {**(metadata or {}), 'task_id': external_job_id}

        if not outcome.is_terminal:
            return ChargeOutcome.PENDING

        if outcome is JobState.FAILED:
            self.record_failure(user_id, action, metadata, external_job_id=external_job_id)
            return ChargeOutcome.FAILURE_RECORDED

        if self._find_successful_charge(user_id, action, external_job_id):
            logger.debug(f"Job {external_job_id} already charged for user {user_id}")
            return ChargeOutcome.ALREADY_APPLIED

        credits = CREDITS_PER_IMAGE
        cost_cents = image_cost_cents(credits)

        db = get_db()
        log = UsageLog(
            id=uuid.uuid4(),
            user_id=user_id,
            action=action,
            credits_charged=credits,
            cost_cents=cost_cents,
            success=True,
            external_job_id=external_job_id,
            metadata_json=metadata,
            created_at=self.clock(),
        )

        try:
            db.add(log)
            db.flush()
        except IntegrityError:
            # Another poller inserted the successful row first
            db.rollback()
            logger.info(f"Job {external_job_id} charged concurrently, skipping")
            return ChargeOutcome.ALREADY_APPLIED

        try:
            debit_usage(db, user_id, credits, cost_cents)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Charged user {user_id} {credits} credits for job {external_job_id}")
        audit.log_event(
            event_type=AuditEvent.USAGE_CHARGED,
            user_id=user_id,
            details={
                'action': action,
                'job_id': external_job_id,
                'credits': credits,
                'cost_cents': str(cost_cents),
            },
        )
        return ChargeOutcome.APPLIED

    # =========================================================================
    # REPORTS
    # =========================================================================

    def get_usage_summary(self, user_id) -> Dict[str, Any]:
        """Totals, balance, Pro status and the latest records."""
        db = get_db()
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError('User')

        db.refresh(user)

        logs = db.query(UsageLog).filter(
            UsageLog.user_id == user_id
        ).order_by(UsageLog.created_at.desc()).limit(RECENT_ACTIVITY_LIMIT).all()

        image_count = db.query(UsageLog).filter(
            UsageLog.user_id == user_id,
            UsageLog.action.in_(UsageAction.IMAGE),
            UsageLog.success.is_(True),
        ).count()

        return {
            'credits_used': _number(user.credits_used),
            'total_spent_cents': _number(user.total_spent_cents),
            'token_balance': int(user.token_balance or 0),
            'is_pro': user.has_active_pro(self.clock()),
            'pro_expires_at': _iso(user.pro_expires_at),
            'image_count': image_count,
            'recent_activity': [usage_log_item(log) for log in logs],
        }

    def get_usage_logs(self, user_id, page=1, limit=DEFAULT_LOG_PAGE_SIZE) -> Dict[str, Any]:
        """Paginated records, newest first. page >= 1, 1 <= limit <= 100."""
        page = max(1, int(page or 1))
        limit = min(max(1, int(limit or DEFAULT_LOG_PAGE_SIZE)), MAX_LOG_PAGE_SIZE)

        query = get_db().query(UsageLog).filter(UsageLog.user_id == user_id)
        total = query.count()
        logs = query.order_by(
            UsageLog.created_at.desc()
        ).offset((page - 1) * limit).limit(limit).all()

        return {
            'logs': [usage_log_item(log) for log in logs],
            'total': total,
            'page': page,
            'limit': limit,
            'total_pages': (total + limit - 1) // limit,
        }

    def _period_start(self, period: str, now: datetime) -> datetime:
        if period == 'day':
            return now.replace(hour=0, minute=0, second=0, microsecond=0)
        if period == 'month':
            return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return now - timedelta(days=7)

    def get_usage_stats(self, user_id, period: str = 'week') -> Dict[str, Any]:
        """
        Usage totals for a period, split into image and chat families,
        plus one credit total per day.

        Args:
            period: 'day', 'week' or 'month' (anything else means 'week')
        """
        if period not in STATS_PERIOD_DAYS:
            period = 'week'

        now = self.clock()
        start = self._period_start(period, now)

        logs = get_db().query(UsageLog).filter(
            UsageLog.user_id == user_id,
            UsageLog.created_at >= start,
        ).order_by(UsageLog.created_at.asc()).all()

        stats = {
            'period': period,
            'total_credits': Decimal('0'),
            'total_tokens': 0,
            'image_count': 0,
            'image_credits': Decimal('0'),
            'image_cost_cents': Decimal('0'),
            'chat_count': 0,
            'chat_credits': Decimal('0'),
            'chat_cost_cents': Decimal('0'),
            'chat_tokens': 0,
        }
        daily = {}

        for log in logs:
            credits = Decimal(log.credits_charged or 0)
            cost = Decimal(log.cost_cents or 0)
            meta = log.metadata_json or {}
            tokens = int(meta.get('tokens') or meta.get('estimated_tokens') or 0)

            stats['total_credits'] += credits
            stats['total_tokens'] += tokens

            if log.action in UsageAction.IMAGE:
                stats['image_count'] += 1
                stats['image_credits'] += credits
                stats['image_cost_cents'] += cost
            elif log.action in UsageAction.CHAT_FAMILY:
                stats['chat_count'] += 1
                stats['chat_credits'] += credits
                stats['chat_cost_cents'] += cost
                stats['chat_tokens'] += tokens

            day = log.created_at.date().isoformat()
            daily[day] = daily.get(day, Decimal('0')) + credits

        daily_usage = []
        for offset in range(STATS_PERIOD_DAYS[period] - 1, -1, -1):
            day = (now - timedelta(days=offset)).date()
            daily_usage.append({
                'date': day.isoformat(),
                'label': f'{day:%b} {day.day}',
                'credits': _number(daily.get(day.isoformat())),
            })

        result = {
            key: _number(value) if isinstance(value, Decimal) else value
            for key, value in stats.items()
        }
        result['daily_usage'] = daily_usage
        return result


# Global meter instance
usage_meter = UsageMeter()
