# tests/test_otp.py
from datetime import datetime, timedelta, timezone

import pytest

from zbory.authentication.otp import OtpService, RateLimit, get_retry_after_seconds
from zbory.authentication.sms import MockSmsAdapter
from zbory.database.models import SmsOtp
from zbory.errors import AuthError, PermanentExternalError, RateLimitedError, TransientExternalError, ValidationError
from zbory.security.credentials import hash_otp_code

PHONE = '+380671234567'


class FailingSms(MockSmsAdapter):
    def send_code(self, phone, code):
        raise PermanentExternalError("rejected", code="SMS_REJECTED")


@pytest.fixture
def sms():
    return MockSmsAdapter()


@pytest.fixture
def otp(services, sms):
    # generous limit so attempt accounting can be tested on its own
    return OtpService(services.store, sms, services.sessions, 'test-secret', services.audit,
                      rate_limit=RateLimit(limit=100, window=timedelta(minutes=15)))


def _last_code(sms):
    return sms.sent[-1][1]


def _wrong(code):
    return '0000' if code != '0000' else '1111'


def test_request_code_sends_and_stores_digest_only(otp, sms, store):
    issued = otp.request_code(' ' + PHONE + ' ', ip='127.0.0.1')
    assert issued.phone == PHONE
    assert sms.sent[0][0] == PHONE
    code = _last_code(sms)
    assert len(code) == 4 and code.isdigit()

    row = store.latest_unused_otp(PHONE)
    assert row.code_hash == hash_otp_code(PHONE, code, 'test-secret')
    assert code not in row.code_hash
    assert row.expires_at - issued.expires_at == timedelta(0)


def test_request_code_rejects_bad_phone(otp, sms):
    with pytest.raises(ValidationError) as exc:
        otp.request_code('0501234567')
    assert 'phone' in exc.value.errors
    assert sms.sent == []


def test_verify_code_issues_phone_session(otp, sms, store):
    otp.request_code(PHONE)
    token, session = otp.verify_code(PHONE, _last_code(sms))
    assert token
    assert session.phone == PHONE
    assert store.upsert_user(PHONE).id == session.user_id


def test_code_cannot_be_reused(otp, sms):
    otp.request_code(PHONE)
    code = _last_code(sms)
    otp.verify_code(PHONE, code)
    with pytest.raises(AuthError):
        otp.verify_code(PHONE, code)


def test_correct_code_rejected_after_three_failures(otp, sms, store):
    otp.request_code(PHONE)
    code = _last_code(sms)
    for _ in range(3):
        with pytest.raises(AuthError):
            otp.verify_code(PHONE, _wrong(code))
    with pytest.raises(AuthError) as exc:
        otp.verify_code(PHONE, code)
    assert exc.value.reason == 'attempts_exhausted'
    assert store.latest_unused_otp(PHONE).attempts == 3


def test_auth_errors_share_one_message(otp, sms, monkeypatch):
    with pytest.raises(AuthError) as no_code:
        otp.verify_code(PHONE, '1234')
    otp.request_code(PHONE)
    code = _last_code(sms)
    with pytest.raises(AuthError) as mismatch:
        otp.verify_code(PHONE, _wrong(code))
    monkeypatch.setattr(otp, '_now', lambda: datetime.now(timezone.utc) + timedelta(minutes=6))
    with pytest.raises(AuthError) as expired:
        otp.verify_code(PHONE, code)
    assert expired.value.reason == 'expired'
    assert no_code.value.message == mismatch.value.message == expired.value.message


def test_malformed_verify_input_is_auth_error(otp):
    with pytest.raises(AuthError) as exc:
        otp.verify_code(PHONE, '12a4')
    assert exc.value.reason == 'malformed_input'
    with pytest.raises(AuthError):
        otp.verify_code('not-a-phone', '1234')


def test_newer_code_supersedes_older(otp, sms):
    otp.request_code(PHONE)
    first = _last_code(sms)
    otp.request_code(PHONE)
    second = _last_code(sms)
    if first != second:
        with pytest.raises(AuthError):
            otp.verify_code(PHONE, first)
    otp.verify_code(PHONE, second)


def test_sms_failure_removes_code(services, store):
    otp = OtpService(store, FailingSms(), services.sessions, 'test-secret', services.audit)
    with pytest.raises(TransientExternalError) as exc:
        otp.request_code(PHONE)
    assert exc.value.code == 'SMS_SEND_FAILED'
    assert store.latest_unused_otp(PHONE) is None
    assert store.session.query(SmsOtp).count() == 0


def test_fourth_request_in_window_is_rate_limited(services, sms):
    otp = OtpService(services.store, sms, services.sessions, 'test-secret', services.audit)
    for _ in range(3):
        otp.request_code(PHONE, ip='10.0.0.1')
    with pytest.raises(RateLimitedError) as exc:
        otp.request_code(PHONE, ip='10.0.0.1')
    assert exc.value.http_status == 429
    assert 0 < exc.value.retry_after_seconds <= 15 * 60
    assert len(sms.sent) == 3

    # other numbers are unaffected
    otp.request_code('+380671234568')


def test_rate_limit_window_slides(services, sms, monkeypatch):
    otp = OtpService(services.store, sms, services.sessions, 'test-secret', services.audit)
    for _ in range(3):
        otp.request_code(PHONE)
    later = datetime.now(timezone.utc) + timedelta(minutes=16)
    monkeypatch.setattr(otp, '_now', lambda: later)
    otp.request_code(PHONE)


def test_verify_attempts_are_rate_limited(services, sms):
    otp = OtpService(services.store, sms, services.sessions, 'test-secret', services.audit)
    for _ in range(3):
        with pytest.raises(AuthError):
            otp.verify_code(PHONE, '1234')
    with pytest.raises(RateLimitedError):
        otp.verify_code(PHONE, '1234')


def test_retry_after_seconds():
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    window = timedelta(minutes=15)
    assert get_retry_after_seconds(now, now - timedelta(minutes=5), window) == 600
    assert get_retry_after_seconds(now, now - timedelta(minutes=20), window) == 0
    assert get_retry_after_seconds(now, now - timedelta(seconds=0.5), window) == 900
