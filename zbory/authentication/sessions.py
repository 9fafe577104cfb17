# zbory/authentication/sessions.py

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union

from flask_jwt_extended import create_access_token, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from zbory.enums import SheetStatus
from zbory.errors import AuthError
from zbory.security.credentials import hash_token, is_valid_public_token
from zbory.sheets.expiry import get_effective_sheet_status

logger = logging.getLogger(__name__)

PHONE_SCOPE = "phone"
VOTE_SCOPE = "vote"
VOTE_SESSION_COOKIE = "zbory_vote"
VOTE_SESSION_HEADER = "X-Vote-Session"


@dataclass(frozen=True)
class PhoneSession:
    user_id: str
    phone: str


@dataclass(frozen=True)
class VotingSession:
    """Grants casting and viewing one ballot: one owner, one sheet."""
    sheet_id: str
    owner_id: str
    protocol_id: str
    expires_at: datetime


Session = Union[PhoneSession, VotingSession]


class SessionIssuer:
    """Turns verified credentials into signed session tokens and back.

    Must be used inside an application context (Flask-JWT-Extended reads
    its keys from the current app).
    """

    def __init__(self, store, session_ttl_seconds: int):
        self.store = store
        self.session_ttl = timedelta(seconds=session_ttl_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue_phone_session(self, user) -> Tuple[str, PhoneSession]:
        session = PhoneSession(user_id=user.id, phone=user.phone)
        token = create_access_token(
            identity=user.id,
            additional_claims={"scope": PHONE_SCOPE, "phone": user.phone},
            expires_delta=self.session_ttl,
        )
        return token, session

    def resolve_public_token(self, token):
        """Sheet minted for this token, or a uniform AuthError."""
        if not is_valid_public_token(token):
            raise AuthError("malformed_token")
        sheet = self.store.get_sheet_by_token_hash(hash_token(token))
        if sheet is None:
            raise AuthError("unknown_token")
        return sheet

    def issue_voting_session(self, token) -> Tuple[str, VotingSession]:
        sheet = self.resolve_public_token(token)
        now = self._now()
        if get_effective_sheet_status(sheet.status, sheet.expires_at, now) == SheetStatus.EXPIRED:
            raise AuthError("sheet_expired")

        session = VotingSession(
            sheet_id=sheet.id,
            owner_id=sheet.owner_id,
            protocol_id=sheet.protocol_id,
            expires_at=sheet.expires_at,
        )
        # never outlives the sheet it was minted for
        lifetime = min(self.session_ttl, sheet.expires_at - now)
        encoded = create_access_token(
            identity=sheet.owner_id,
            additional_claims={
                "scope": VOTE_SCOPE,
                "sheet_id": sheet.id,
                "protocol_id": sheet.protocol_id,
            },
            expires_delta=lifetime,
        )
        return encoded, session

    def read_voting_session(self, encoded: Optional[str], token) -> VotingSession:
        """Voting session presented back with the public token it was minted from."""
        sheet = self.resolve_public_token(token)
        if not encoded:
            raise AuthError("no_voting_session")
        session = self.read_session(encoded, required_scope=VOTE_SCOPE)
        if session.sheet_id != sheet.id or session.owner_id != sheet.owner_id:
            raise AuthError("voting_session_mismatch")
        return session

    def read_session(self, encoded: str, required_scope: Optional[str] = None) -> Session:
        try:
            claims = decode_token(encoded, allow_expired=False)
        except (PyJWTError, JWTExtendedException) as e:
            logger.info("Session token rejected: %s", e)
            raise AuthError("bad_session") from e
        return self.principal_from_claims(claims, required_scope)

    def principal_from_claims(self, claims: Dict, required_scope: Optional[str] = None) -> Session:
        scope = claims.get("scope")
        if required_scope and scope != required_scope:
            raise AuthError("wrong_scope")
        if scope == PHONE_SCOPE:
            return PhoneSession(user_id=claims["sub"], phone=claims.get("phone", ""))
        if scope == VOTE_SCOPE:
            return VotingSession(
                sheet_id=claims["sheet_id"],
                owner_id=claims["sub"],
                protocol_id=claims["protocol_id"],
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            )
        raise AuthError("unknown_scope")
