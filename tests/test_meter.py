"""
Tests for the usage meter: synchronous charges, idempotent async charges,
pre-flight guard, reports.
"""

import uuid
from decimal import Decimal

import pytest

from billing.db import get_db
from billing.balance import get_balance
from billing.config import CREDITS_PER_IMAGE
from billing.errors import PaymentRequiredError, NotFoundError
from billing.jobs import JobState
from billing.meter import ChargeOutcome, agent_multiplier, chat_cost_cents, image_cost_cents
from billing.models import UsageLog, UsageAction

from conftest import fetch_user


def _successful_rows(user_id, job_id):
    return get_db().query(UsageLog).filter_by(
        user_id=user_id, external_job_id=job_id, success=True
    ).count()


class TestPricing:
    def test_chat_cost(self):
        assert chat_cost_cents(1500) == Decimal('0.1500')
        assert chat_cost_cents(1500, multiplier=2) == Decimal('0.3000')
        assert chat_cost_cents(0) == Decimal('0')

    def test_image_cost(self):
        assert image_cost_cents(18) == Decimal('9.0000')

    def test_agent_multiplier(self):
        assert agent_multiplier(False) == 1
        assert agent_multiplier(True) == 2


class TestSynchronousCharge:
    def test_debits_and_records(self, meter, make_user):
        user = make_user(balance=10000)

        result = meter.charge_synchronous(user.id, UsageAction.CHAT, tokens=1500)

        assert result.credits_charged == 1500
        assert result.cost_cents == Decimal('0.1500')

        fresh = fetch_user(user.id)
        assert fresh.token_balance == 8500
        assert fresh.credits_used == Decimal('1500')
        assert fresh.total_spent_cents == Decimal('0.15')

        log = get_db().query(UsageLog).one()
        assert log.success is True
        assert log.action == 'chat'
        assert log.metadata_json == {'tokens': 1500, 'billed_tokens': 1500, 'multiplier': 1}

    def test_pro_agent_multiplier(self, meter, make_user):
        user = make_user(balance=10000)

        result = meter.charge_synchronous(
            user.id, UsageAction.CHAT_STREAM, tokens=1000,
            multiplier=agent_multiplier(True), metadata={'agent_id': 'seo-pro'},
        )

        assert result.credits_charged == 2000
        assert result.cost_cents == Decimal('0.2000')
        assert get_balance(get_db(), user.id) == 8000

        log = get_db().query(UsageLog).one()
        assert log.metadata_json['agent_id'] == 'seo-pro'
        assert log.metadata_json['billed_tokens'] == 2000

    def test_concurrent_style_debits_accumulate(self, meter, make_user):
        user = make_user(balance=100)
        for _ in range(5):
            meter.charge_synchronous(user.id, UsageAction.API_CHAT, tokens=30)

        assert get_balance(get_db(), user.id) == -50
        assert fetch_user(user.id).credits_used == Decimal('150')

    def test_unknown_action(self, meter, user):
        with pytest.raises(ValueError):
            meter.charge_synchronous(user.id, 'teleport', tokens=10)

    def test_negative_tokens(self, meter, user):
        with pytest.raises(ValueError):
            meter.charge_synchronous(user.id, UsageAction.CHAT, tokens=-1)

    @pytest.mark.parametrize('tokens, multiplier', [(1.9, 1), ('100', 1), (True, 1), (10, 1.5), (10, True)])
    def test_non_integer_amounts_rejected(self, meter, make_user, tokens, multiplier):
        user = make_user(balance=100)

        with pytest.raises(ValueError):
            meter.charge_synchronous(user.id, UsageAction.CHAT, tokens=tokens, multiplier=multiplier)

        fresh = fetch_user(user.id)
        assert fresh.token_balance == 100
        assert fresh.credits_used == Decimal('0')
        assert get_db().query(UsageLog).count() == 0


class TestAsyncCharge:
    def test_processing_records_nothing(self, meter, make_user):
        user = make_user(balance=100)

        outcome = meter.charge_async_on_first_observed_outcome(
            user.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.PROCESSING
        )

        assert outcome == ChargeOutcome.PENDING
        assert outcome.charged is False
        assert get_db().query(UsageLog).count() == 0

    def test_first_success_charges(self, meter, make_user):
        user = make_user(balance=100)

        outcome = meter.charge_async_on_first_observed_outcome(
            user.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.SUCCESS,
            metadata={'image_url': 'https://cdn.example.com/a.png'},
        )

        assert outcome == ChargeOutcome.APPLIED
        assert get_balance(get_db(), user.id) == 100 - CREDITS_PER_IMAGE

        log = get_db().query(UsageLog).one()
        assert log.external_job_id == 'task-1'
        assert log.credits_charged == Decimal(CREDITS_PER_IMAGE)
        assert log.cost_cents == image_cost_cents()
        assert log.metadata_json['task_id'] == 'task-1'
        assert log.metadata_json['image_url'] == 'https://cdn.example.com/a.png'

    @pytest.mark.parametrize('polls', [1, 2, 5])
    def test_repeated_polls_charge_once(self, meter, make_user, polls):
        user = make_user(balance=100)

        outcomes = [
            meter.charge_async_on_first_observed_outcome(
                user.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.SUCCESS
            )
            for _ in range(polls)
        ]

        assert outcomes[0] == ChargeOutcome.APPLIED
        assert all(o == ChargeOutcome.ALREADY_APPLIED for o in outcomes[1:])
        assert _successful_rows(user.id, 'task-1') == 1
        assert get_balance(get_db(), user.id) == 100 - CREDITS_PER_IMAGE

    def test_processing_then_success(self, meter, make_user):
        user = make_user(balance=100)
        states = [JobState.PROCESSING, JobState.PROCESSING, JobState.SUCCESS, JobState.SUCCESS]

        outcomes = [
            meter.charge_async_on_first_observed_outcome(
                user.id, UsageAction.GENERATE_IMAGE, 'task-1', state
            )
            for state in states
        ]

        assert outcomes == [
            ChargeOutcome.PENDING, ChargeOutcome.PENDING,
            ChargeOutcome.APPLIED, ChargeOutcome.ALREADY_APPLIED,
        ]
        assert get_balance(get_db(), user.id) == 100 - CREDITS_PER_IMAGE

    def test_race_closed_by_unique_index(self, meter, make_user, monkeypatch):
        user = make_user(balance=100)
        meter.charge_async_on_first_observed_outcome(
            user.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.SUCCESS
        )

        # Second poller misses the existing row, as if both checked at once
        monkeypatch.setattr(meter, '_find_successful_charge', lambda *args: None)
        outcome = meter.charge_async_on_first_observed_outcome(
            user.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.SUCCESS
        )

        assert outcome == ChargeOutcome.ALREADY_APPLIED
        assert _successful_rows(user.id, 'task-1') == 1
        assert get_balance(get_db(), user.id) == 100 - CREDITS_PER_IMAGE

    def test_failure_is_recorded_not_billed(self, meter, make_user):
        user = make_user(balance=100)

        for _ in range(2):
            outcome = meter.charge_async_on_first_observed_outcome(
                user.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.FAILED,
                metadata={'error': 'nsfw'},
            )
            assert outcome == ChargeOutcome.FAILURE_RECORDED

        rows = get_db().query(UsageLog).filter_by(success=False).all()
        assert len(rows) == 2
        assert all(r.credits_charged == 0 for r in rows)
        assert get_balance(get_db(), user.id) == 100

    def test_same_job_id_for_different_accounts(self, meter, make_user):
        alice, bob = make_user(balance=100), make_user(balance=100)

        for account in (alice, bob):
            assert meter.charge_async_on_first_observed_outcome(
                account.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.SUCCESS
            ) == ChargeOutcome.APPLIED

    def test_debit_can_overdraw(self, meter, make_user):
        user = make_user(balance=10)

        meter.charge_async_on_first_observed_outcome(
            user.id, UsageAction.GENERATE_IMAGE, 'task-1', JobState.SUCCESS
        )

        assert get_balance(get_db(), user.id) == 10 - CREDITS_PER_IMAGE

    def test_job_id_required(self, meter, user):
        with pytest.raises(ValueError):
            meter.charge_async_on_first_observed_outcome(
                user.id, UsageAction.GENERATE_IMAGE, '', JobState.SUCCESS
            )


class TestPreflight:
    def test_empty_balance_blocked(self, meter, user):
        with pytest.raises(PaymentRequiredError) as exc:
            meter.ensure_can_start(user.id)
        assert exc.value.to_dict()['required'] == 1

    def test_image_needs_full_price(self, meter, make_user):
        user = make_user(balance=CREDITS_PER_IMAGE - 1)
        assert meter.ensure_can_start(user.id) == CREDITS_PER_IMAGE - 1
        with pytest.raises(PaymentRequiredError):
            meter.ensure_can_start(user.id, CREDITS_PER_IMAGE)

    def test_enough_balance(self, meter, make_user):
        user = make_user(balance=CREDITS_PER_IMAGE)
        assert meter.ensure_can_start(user.id, CREDITS_PER_IMAGE) == CREDITS_PER_IMAGE


class TestReports:
    def test_summary(self, meter, make_user):
        user = make_user(balance=1000)
        meter.charge_async_on_first_observed_outcome(user.id, UsageAction.GENERATE_IMAGE, 't1', JobState.SUCCESS)
        meter.charge_async_on_first_observed_outcome(user.id, UsageAction.GENERATE_IMAGE, 't2', JobState.FAILED)
        meter.charge_synchronous(user.id, UsageAction.CHAT, tokens=100)

        summary = meter.get_usage_summary(user.id)

        assert summary['token_balance'] == 1000 - CREDITS_PER_IMAGE - 100
        assert summary['credits_used'] == CREDITS_PER_IMAGE + 100
        assert summary['image_count'] == 1
        assert summary['is_pro'] is False
        assert len(summary['recent_activity']) == 3

    def test_summary_unknown_user(self, meter, database):
        with pytest.raises(NotFoundError):
            meter.get_usage_summary(uuid.uuid4())

    def test_logs_paginated_newest_first(self, meter, make_user, clock):
        user = make_user(balance=1000)
        for tokens in range(1, 6):
            meter.charge_synchronous(user.id, UsageAction.CHAT, tokens=tokens)
            clock.advance(minutes=1)

        page = meter.get_usage_logs(user.id, page=1, limit=2)

        assert page['total'] == 5
        assert page['total_pages'] == 3
        assert [log['metadata']['tokens'] for log in page['logs']] == [5, 4]

        last = meter.get_usage_logs(user.id, page=3, limit=2)
        assert [log['metadata']['tokens'] for log in last['logs']] == [1]

    @pytest.mark.parametrize('page, limit, expected', [
        (0, 20, (1, 20)),
        (-3, 500, (1, 100)),
        (2, 0, (2, 20)),
        (None, None, (1, 20)),
    ])
    def test_logs_clamped(self, meter, user, page, limit, expected):
        result = meter.get_usage_logs(user.id, page=page, limit=limit)
        assert (result['page'], result['limit']) == expected

    def test_stats_week(self, meter, make_user, clock):
        user = make_user(balance=1000)
        meter.charge_synchronous(user.id, UsageAction.CHAT, tokens=200)
        clock.advance(days=1)
        meter.charge_async_on_first_observed_outcome(user.id, UsageAction.GENERATE_IMAGE, 't1', JobState.SUCCESS)

        stats = meter.get_usage_stats(user.id, 'week')

        assert stats['period'] == 'week'
        assert stats['total_credits'] == 200 + CREDITS_PER_IMAGE
        assert stats['chat_count'] == 1
        assert stats['chat_tokens'] == 200
        assert stats['image_count'] == 1
        assert stats['image_credits'] == CREDITS_PER_IMAGE
        assert len(stats['daily_usage']) == 7
        assert stats['daily_usage'][-1] == {
            'date': clock.now.date().isoformat(),
            'label': 'Jan 10',
            'credits': float(CREDITS_PER_IMAGE),
        }
        assert stats['daily_usage'][-2]['credits'] == 200.0

    def test_stats_day_excludes_yesterday(self, meter, make_user, clock):
        user = make_user(balance=1000)
        meter.charge_synchronous(user.id, UsageAction.CHAT, tokens=200)
        clock.advance(days=1)

        stats = meter.get_usage_stats(user.id, 'day')

        assert stats['total_credits'] == 0
        assert len(stats['daily_usage']) == 1

    def test_stats_unknown_period_means_week(self, meter, user):
        stats = meter.get_usage_stats(user.id, 'fortnight')
        assert stats['period'] == 'week'

    def test_stats_month_window(self, meter, user):
        stats = meter.get_usage_stats(user.id, 'month')
        assert len(stats['daily_usage']) == 30
