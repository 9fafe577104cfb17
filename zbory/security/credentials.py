# zbory/security/credentials.py

import base64
import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta

# One-time SMS codes and public ballot tokens. Only digests are ever persisted.

OTP_LENGTH = 4
OTP_TTL = timedelta(minutes=5)
OTP_MAX_ATTEMPTS = 3

PUBLIC_TOKEN_BYTES = 48
PUBLIC_TOKEN_MIN_LENGTH = 64
PUBLIC_TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


def generate_otp_code() -> str:
    """Uniformly random zero-padded code, 0000-9999."""
    return str(secrets.randbelow(10 ** OTP_LENGTH)).zfill(OTP_LENGTH)


def get_otp_expiry(now: datetime) -> datetime:
    return now + OTP_TTL


def hash_otp_code(phone: str, code: str, secret: str) -> str:
    payload = f"{phone}:{code}:{secret}"
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def generate_public_token() -> str:
    raw = secrets.token_bytes(PUBLIC_TOKEN_BYTES)
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def is_valid_public_token(token) -> bool:
    # Shape only; whether the token exists is a storage lookup.
    return (
        isinstance(token, str)
        and len(token) >= PUBLIC_TOKEN_MIN_LENGTH
        and bool(PUBLIC_TOKEN_PATTERN.fullmatch(token))
    )


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode('utf-8'), right.encode('utf-8'))
