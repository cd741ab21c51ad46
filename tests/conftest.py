"""
Shared fixtures: in-memory database, controllable clock, Flask app with
logged-in test clients, fake generation client, webhook signing.
"""

from datetime import datetime, timedelta

import pytest
from flask_login import FlaskLoginClient

from billing.db import configure_engine, create_all_tables, get_db, get_scoped_session, get_engine
from billing.models import User
from billing.audit import AuditLogger, set_audit_logger
from billing.service import BillingService
from billing.meter import UsageMeter
from billing.jobs import GenerationClient, JobState, JobStatus, set_generation_client
from billing.errors import UpstreamError
from billing.providers.sepay_provider import SepayProvider, canonical_json, sign_payload


WEBHOOK_SECRET = 'test-webhook-secret'


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeGenerationClient(GenerationClient):
    """In-memory job API: tasks stay processing until finish()/fail()."""

    def __init__(self):
        self.tasks = {}
        self.requests = []
        self.create_error = None
        self.status_calls = 0

    def create_task(self, request):
        if self.create_error:
            raise UpstreamError(self.create_error)
        self.requests.append(request)
        task_id = f'task-{len(self.requests)}'
        self.tasks[task_id] = JobStatus(task_id=task_id, state=JobState.PROCESSING)
        return task_id

    def get_task_status(self, task_id):
        self.status_calls += 1
        return self.tasks.get(task_id) or JobStatus(task_id=task_id, state=JobState.PROCESSING)

    def finish(self, task_id, media_url='https://cdn.example.com/image.png'):
        self.tasks[task_id] = JobStatus(task_id=task_id, state=JobState.SUCCESS, media_url=media_url)

    def fail(self, task_id, error='Generation failed'):
        self.tasks[task_id] = JobStatus(task_id=task_id, state=JobState.FAILED, error=error)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 9, 10, 0, 0))


@pytest.fixture(autouse=True)
def audit_log(tmp_path):
    logger = AuditLogger(log_path=tmp_path / 'audit' / 'billing_audit.log')
    set_audit_logger(logger)
    yield logger
    set_audit_logger(None)


@pytest.fixture
def database():
    configure_engine('sqlite://')
    create_all_tables()
    yield get_db()
    get_scoped_session().remove()
    get_engine().dispose()


@pytest.fixture
def make_user(database):
    counter = {'n': 0}

    def _make(balance=0, is_pro=False, pro_expires_at=None):
        counter['n'] += 1
        user = User(
            email=f'user{counter["n"]}@example.com',
            name=f'User {counter["n"]}',
            token_balance=balance,
            is_pro=is_pro,
            pro_expires_at=pro_expires_at,
        )
        db = get_db()
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


def fetch_user(user_id) -> User:
    """Load the account with fresh column values."""
    db = get_db()
    user = db.get(User, user_id)
    db.refresh(user)
    return user


@pytest.fixture
def provider():
    return SepayProvider(
        webhook_secret=WEBHOOK_SECRET,
        bank_code='MB',
        bank_account='0123456789',
        account_name='NGUYEN VAN A',
    )


@pytest.fixture
def service(provider, clock, database):
    return BillingService(provider=provider, clock=clock)


@pytest.fixture
def meter(clock, database):
    return UsageMeter(clock=clock)


@pytest.fixture
def generation_client():
    client = FakeGenerationClient()
    set_generation_client(client)
    yield client
    set_generation_client(None)


@pytest.fixture
def app(database, service, meter, generation_client, monkeypatch):
    from app import create_app

    monkeypatch.setattr('billing.service.billing_service', service)
    monkeypatch.setattr('billing.routes.billing_service', service)
    monkeypatch.setattr('billing.meter.usage_meter', meter)
    monkeypatch.setattr('billing.usage_routes.usage_meter', meter)
    monkeypatch.setattr('billing.decorators.usage_meter', meter)

    flask_app = create_app({
        'TESTING': True,
        'DATABASE_URL': None,
        'SECRET_KEY': 'test',
        'WEBHOOK_IP_CHECK': False,
        'SEPAY_ALLOWED_IPS': [],
    })
    flask_app.test_client_class = FlaskLoginClient
    return flask_app


@pytest.fixture
def client(app, user):
    return app.test_client(user=user)


@pytest.fixture
def anon_client(app):
    return app.test_client()


def settlement_event(transaction_ref, amount, notification_id=92704, narration=None):
    """SePay webhook body for a transfer carrying `transaction_ref`."""
    return {
        'id': notification_id,
        'gateway': 'MBBank',
        'content': narration if narration is not None else f'{transaction_ref} 100 Credits',
        'transferAmount': amount,
    }


@pytest.fixture
def sign_webhook(provider):
    """Returns (body_bytes, headers) for a webhook payload."""
    def _sign(event: dict, secret: str = WEBHOOK_SECRET):
        body = canonical_json(event)
        headers = {
            provider.signature_header: sign_payload(event, secret),
            'Content-Type': 'application/json',
        }
        return body, headers
    return _sign
