"""
Tests for payment requests: creation, reads, lazy expiry, sweeps.
"""

import re
import uuid
from datetime import timedelta
from urllib.parse import urlparse, parse_qs

import pytest

from billing import ledger
from billing.config import TRANSACTION_REF_LENGTH
from billing.db import get_db
from billing.errors import ValidationError, NotFoundError
from billing.models import Payment, PaymentStatus


REF_PATTERN = re.compile(r'^TX[0-9A-Z]+$')


class TestTransactionReference:
    def test_format(self):
        ref = ledger.generate_transaction_ref()
        assert REF_PATTERN.match(ref)

    def test_time_component_is_zero_padded(self):
        ref = ledger.generate_transaction_ref(epoch_ms=36 ** 3)
        assert ref.startswith('TX00001000')
        assert len(ref) == TRANSACTION_REF_LENGTH

    def test_fixed_length(self):
        assert len(ledger.generate_transaction_ref()) == TRANSACTION_REF_LENGTH == 18

    def test_unique(self):
        refs = {ledger.generate_transaction_ref() for _ in range(500)}
        assert len(refs) == 500


class TestCreatePayment:
    def test_returns_qr_and_expiry(self, service, user, clock):
        result = service.create_payment(user.id, 'credits_100', 50000)

        assert REF_PATTERN.match(result['transaction_ref'])
        assert result['amount'] == 50000
        assert result['expires_at'] == (clock.now + timedelta(minutes=15)).isoformat() + 'Z'

        payment = get_db().query(Payment).filter_by(transaction_ref=result['transaction_ref']).one()
        assert payment.status == PaymentStatus.PENDING
        assert payment.credits_granted == 100
        assert payment.description == '100 Credits'
        assert payment.settlement_metadata == {'bank_code': 'MB', 'account_number': '0123456789'}

    def test_qr_embeds_amount_payee_and_reference(self, service, user):
        result = service.create_payment(user.id, 'credits_100', 50000)

        url = urlparse(result['qr_payload'])
        assert url.netloc == 'img.vietqr.io'
        assert url.path == '/image/MB-0123456789-compact2.png'

        query = parse_qs(url.query)
        assert query['amount'] == ['50000']
        assert query['addInfo'] == [f"{result['transaction_ref']} 100 Credits"]
        assert query['accountName'] == ['NGUYEN VAN A']

    def test_token_plan(self, service, user):
        result = service.create_payment(user.id, 'tokens_2500', 20000)
        payment = get_db().query(Payment).filter_by(transaction_ref=result['transaction_ref']).one()
        assert payment.credits_granted == 2500
        assert payment.description == '2,500 Tokens'

    def test_unknown_plan(self, service, user):
        with pytest.raises(ValidationError):
            service.create_payment(user.id, 'unknown_plan', 50000)
        assert get_db().query(Payment).count() == 0

    @pytest.mark.parametrize('amount', [0, -1, True, '50000', 1.5, None])
    def test_malformed_amount(self, service, user, amount):
        with pytest.raises(ValidationError):
            service.create_payment(user.id, 'credits_100', amount)

    def test_audited(self, service, user, audit_log):
        result = service.create_payment(user.id, 'credits_100', 50000)

        events = audit_log.get_recent_events(event_type=None)
        assert events[0]['event'] == 'payment.created'
        assert events[0]['details']['transaction_ref'] == result['transaction_ref']


class TestReads:
    def test_history_newest_first(self, service, user, clock):
        first = service.create_payment(user.id, 'credits_100', 50000)
        clock.advance(minutes=1)
        second = service.create_payment(user.id, 'credits_500', 200000)

        history = service.get_history(user.id)

        assert [h['transaction_ref'] for h in history] == [
            second['transaction_ref'], first['transaction_ref']
        ]
        assert history[0]['qr_payload'] == second['qr_payload']
        assert 'expires_at' in history[0]

    def test_history_scoped_to_account(self, service, make_user):
        alice, bob = make_user(), make_user()
        service.create_payment(alice.id, 'credits_100', 50000)

        assert service.get_history(bob.id) == []

    def test_history_limit(self, service, user, clock):
        for _ in range(ledger.PAYMENT_HISTORY_LIMIT + 3):
            service.create_payment(user.id, 'credits_100', 50000)
            clock.advance(seconds=1)

        assert len(service.get_history(user.id)) == ledger.PAYMENT_HISTORY_LIMIT

    def test_detail(self, service, user):
        result = service.create_payment(user.id, 'credits_100', 50000)

        detail = service.get_detail(user.id, result['payment_id'])

        assert detail['id'] == result['payment_id']
        assert detail['status'] == 'pending'

    @pytest.mark.parametrize('payment_id', ['not-a-uuid', str(uuid.uuid4())])
    def test_detail_not_found(self, service, user, payment_id):
        with pytest.raises(NotFoundError):
            service.get_detail(user.id, payment_id)

    def test_detail_of_other_account(self, service, make_user):
        alice, bob = make_user(), make_user()
        result = service.create_payment(alice.id, 'credits_100', 50000)

        with pytest.raises(NotFoundError):
            service.get_detail(bob.id, result['payment_id'])

    def test_check_status(self, service, user):
        result = service.create_payment(user.id, 'credits_100', 50000)

        status = service.check_status(user.id, result['transaction_ref'].lower())

        assert status == {
            'transaction_ref': result['transaction_ref'],
            'status': 'pending',
            'completed_at': None,
        }

    def test_check_status_unknown(self, service, user):
        with pytest.raises(NotFoundError):
            service.check_status(user.id, 'TXDOESNOTEXIST')


class TestLazyExpiry:
    def test_not_expired_at_exact_deadline(self, service, user, clock):
        result = service.create_payment(user.id, 'credits_100', 50000)
        clock.advance(minutes=15)

        assert service.check_status(user.id, result['transaction_ref'])['status'] == 'pending'

    def test_history_expires_overdue(self, service, user, clock):
        service.create_payment(user.id, 'credits_100', 50000)
        clock.advance(minutes=16)

        history = service.get_history(user.id)

        assert history[0]['status'] == 'expired'
        assert 'qr_payload' not in history[0]
        assert 'expires_at' not in history[0]

    def test_detail_and_status_expire(self, service, user, clock):
        first = service.create_payment(user.id, 'credits_100', 50000)
        second = service.create_payment(user.id, 'credits_100', 50000)
        clock.advance(minutes=16)

        assert service.get_detail(user.id, first['payment_id'])['status'] == 'expired'
        assert service.check_status(user.id, second['transaction_ref'])['status'] == 'expired'

    def test_expiry_persisted_and_monotonic(self, service, user, clock):
        result = service.create_payment(user.id, 'credits_100', 50000)
        clock.advance(minutes=16)
        service.check_status(user.id, result['transaction_ref'])

        # Moving the clock back does not resurrect the payment
        clock.advance(minutes=-16)
        assert service.check_status(user.id, result['transaction_ref'])['status'] == 'expired'

        status = get_db().query(Payment.status).filter_by(transaction_ref=result['transaction_ref']).scalar()
        assert status == PaymentStatus.EXPIRED

    def test_repeated_reads_are_harmless(self, service, user, clock):
        result = service.create_payment(user.id, 'credits_100', 50000)
        clock.advance(minutes=16)

        for _ in range(3):
            assert service.check_status(user.id, result['transaction_ref'])['status'] == 'expired'

    def test_sweep_expires_all_accounts(self, service, make_user, clock):
        alice, bob = make_user(), make_user()
        service.create_payment(alice.id, 'credits_100', 50000)
        service.create_payment(bob.id, 'credits_500', 200000)
        clock.advance(minutes=10)
        fresh = service.create_payment(bob.id, 'credits_100', 50000)
        clock.advance(minutes=6)

        assert service.expire_stale_payments() == 2
        assert service.expire_stale_payments() == 0
        assert service.check_status(bob.id, fresh['transaction_ref'])['status'] == 'pending'


class TestMarkCompleted:
    def test_only_first_transition_wins(self, service, user, clock):
        result = service.create_payment(user.id, 'credits_100', 50000)
        db = get_db()
        payment_id = uuid.UUID(result['payment_id'])

        assert ledger.mark_completed(db, payment_id, clock.now, {}) is True
        assert ledger.mark_completed(db, payment_id, clock.now, {}) is False
        db.commit()

    def test_refuses_overdue_row(self, service, user, clock):
        result = service.create_payment(user.id, 'credits_100', 50000)
        db = get_db()

        assert ledger.mark_completed(
            db, uuid.UUID(result['payment_id']), clock.now + timedelta(minutes=16), {}
        ) is False
        db.rollback()
