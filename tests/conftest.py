# tests/conftest.py
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.pool import StaticPool

from zbory import create_app, db
from zbory.authentication.sms import MockSmsAdapter
from zbory.database.models import Osbb, Owner
from zbory.enums import ProtocolType
from zbory.signing.provider import MockDocumentSigningService

ORGANIZER_PHONE = '+380501112233'


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SQLALCHEMY_ENGINE_OPTIONS': {
            'poolclass': StaticPool,
            'connect_args': {'check_same_thread': False},
        },
        'AUDIT_LOG_DIR': str(tmp_path / 'audit'),
        'AUTH_SECRET': 'test-secret',
        'JWT_SECRET_KEY': 'test-jwt-secret-with-enough-length-for-hs256',
        'SMS_ADAPTER': MockSmsAdapter(),
        'SIGNING_SERVICE': MockDocumentSigningService(),
        'SIGNING_SYNC_ENABLED': False,
        'RATELIMIT_ENABLED': False,
        'PUBLIC_BASE_URL': 'https://zbory.test',
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def services(app):
    return app.extensions['zbory']


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def no_retry_sleep(services, monkeypatch):
    monkeypatch.setattr(services.synchronizer, 'sleep', lambda seconds: None)


def _questions():
    return [
        {'orderNumber': 1, 'text': 'Про обрання голови зборів',
         'proposal': 'Обрати головою зборів Шевченка Т.Г.', 'requiresTwoThirds': False},
        {'orderNumber': 2, 'text': 'Про капітальний ремонт даху',
         'proposal': 'Провести капітальний ремонт даху у 2025 році', 'requiresTwoThirds': True},
    ]


@pytest.fixture
def seeded(services, store):
    """One association with three owners and an open protocol (sheets not yet issued)."""
    user = store.upsert_user(ORGANIZER_PHONE)
    osbb = store.add(Osbb(
        user_id=user.id,
        name='ОСББ "Сонячний дім"',
        short_name='Сонячний дім',
        address='м. Київ, вул. Хрещатик, 1',
        edrpou='12345678',
        organizer_name='Коваленко Олена Петрівна',
        organizer_email='organizer@example.com',
        organizer_phone=ORGANIZER_PHONE,
    ))
    owners = store.add_all([
        Owner(osbb_id=osbb.id, last_name='Шевченко', first_name='Тарас', middle_name='Григорович',
              apartment_number='12', email='taras@example.com'),
        Owner(osbb_id=osbb.id, last_name='Українка', first_name='Леся', middle_name='',
              apartment_number='7', email='lesya@example.com'),
        Owner(osbb_id=osbb.id, last_name='Франко', first_name='Іван', middle_name='Якович',
              apartment_number='3', email=None),
    ])
    protocol = services.voting.create_protocol(
        osbb.id,
        {'number': '5', 'date': datetime.now(timezone.utc).date().isoformat(), 'type': 'GENERAL'},
        _questions(),
    )
    return SimpleNamespace(user=user, osbb=osbb, owners=owners, protocol=protocol,
                           questions=store.questions_for_protocol(protocol.id))


@pytest.fixture
def opened(services, seeded):
    """Sheets issued to the first two owners; `tokens[i]` is the raw link token."""
    issued = services.voting.open_voting(seeded.protocol.id, [o.id for o in seeded.owners[:2]])
    seeded.sheets = [sheet for sheet, _ in issued]
    seeded.sheet_ids = [sheet.id for sheet, _ in issued]
    seeded.tokens = [token for _, token in issued]
    return seeded


def voting_session(services, token):
    _, session = services.sessions.issue_voting_session(token)
    return session


def vote_all(services, token, questions, choice='FOR'):
    payload = {
        'consent': True,
        'answers': [{'questionId': q.id, 'vote': choice} for q in questions],
    }
    return services.voting.submit_votes(voting_session(services, token), payload)


def past_date(days: int) -> date:
    return datetime.now(timezone.utc).date() - timedelta(days=days)
