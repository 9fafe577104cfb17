# zbory/authentication/otp.py

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from math import ceil
from typing import Optional, Tuple

from zbory.enums import RateLimitAction
from zbory.errors import AuthError, RateLimitedError, TransientExternalError, ZboryError
from zbory.security.credentials import (
    OTP_MAX_ATTEMPTS,
    constant_time_equals,
    generate_otp_code,
    get_otp_expiry,
    hash_otp_code,
)
from zbory.security.input_validator import InputValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    limit: int
    window: timedelta


OTP_RATE_LIMIT = RateLimit(limit=3, window=timedelta(minutes=15))


@dataclass(frozen=True)
class OtpIssued:
    phone: str
    expires_at: datetime


def get_retry_after_seconds(now: datetime, oldest_attempt: datetime, window: timedelta) -> int:
    remaining = window - (now - oldest_attempt)
    return max(0, ceil(remaining.total_seconds()))


class OtpService:
    """SMS one-time-code login. Only code digests are persisted."""

    def __init__(self, store, sms_adapter, sessions, secret: str, audit_logger,
                 validator: InputValidator = None, rate_limit: RateLimit = OTP_RATE_LIMIT):
        self.store = store
        self.sms = sms_adapter
        self.sessions = sessions
        self.secret = secret
        self.audit = audit_logger
        self.validator = validator or InputValidator()
        self.rate_limit = rate_limit

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _enforce_rate_limit(self, phone: str, action: RateLimitAction, ip: Optional[str], now: datetime):
        count, oldest = self.store.rate_limit_window(phone, action, now - self.rate_limit.window)
        if count >= self.rate_limit.limit:
            retry_after = (
                get_retry_after_seconds(now, oldest, self.rate_limit.window)
                if oldest else ceil(self.rate_limit.window.total_seconds())
            )
            self.audit.log_security_event('otp_rate_limited', {'phone': phone, 'action': action.value, 'ip': ip})
            raise RateLimitedError(retry_after)
        self.store.record_rate_limit_event(phone, action, ip, now)

    def request_code(self, phone, ip: Optional[str] = None) -> OtpIssued:
        phone = self.validator.validate_phone(phone).raise_for_errors()
        now = self._now()
        self._enforce_rate_limit(phone, RateLimitAction.REQUEST_CODE, ip, now)

        code = generate_otp_code()
        expires_at = get_otp_expiry(now)
        otp = self.store.create_otp(phone, hash_otp_code(phone, code, self.secret), expires_at, now)

        try:
            self.sms.send_code(phone, code)
        except ZboryError as e:
            self.store.delete_otp(otp.id)
            logger.warning("SMS delivery to %s failed: %s", phone, e.message)
            self.audit.log_security_event('otp_send_failed', {'phone': phone, 'error': e.code})
            raise TransientExternalError("Could not send the SMS code. Try again later.",
                                         code="SMS_SEND_FAILED") from e

        self.audit.log_security_event('otp_issued', {'phone': phone, 'ip': ip})
        return OtpIssued(phone=phone, expires_at=expires_at)

    def _fail(self, phone: str, reason: str, ip: Optional[str]):
        self.audit.log_security_event('otp_failed', {'phone': phone, 'reason': reason, 'ip': ip})
        return AuthError(reason)

    def verify_code(self, phone, code, ip: Optional[str] = None) -> Tuple[str, object]:
        """Returns (session token, PhoneSession); every failure is the same AuthError."""
        phone_result = self.validator.validate_phone(phone)
        code_result = self.validator.validate_code(code)
        if not phone_result.ok or not code_result.ok:
            raise AuthError("malformed_input")
        phone, code = phone_result.value, code_result.value

        now = self._now()
        self._enforce_rate_limit(phone, RateLimitAction.VERIFY_CODE, ip, now)

        otp = self.store.latest_unused_otp(phone)
        if otp is None:
            raise self._fail(phone, 'no_active_code', ip)
        if otp.expires_at <= now:
            raise self._fail(phone, 'expired', ip)

        # reserve the attempt before comparing
        attempts = self.store.reserve_otp_attempt(otp.id, OTP_MAX_ATTEMPTS)
        if attempts is None:
            raise self._fail(phone, 'attempts_exhausted', ip)

        if not constant_time_equals(hash_otp_code(phone, code, self.secret), otp.code_hash):
            raise self._fail(phone, f'mismatch:{attempts}/{OTP_MAX_ATTEMPTS}', ip)

        if not self.store.mark_otp_used(otp.id, now):
            raise self._fail(phone, 'already_used', ip)

        user = self.store.upsert_user(phone)
        token, session = self.sessions.issue_phone_session(user)
        self.audit.log_security_event('otp_verified', {'phone': phone, 'ip': ip}, user_id=user.id)
        return token, session
