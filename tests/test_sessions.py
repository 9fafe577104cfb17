# tests/test_sessions.py
from datetime import datetime, timedelta, timezone

import pytest
from flask_jwt_extended import create_access_token

from zbory.authentication.sessions import PHONE_SCOPE, VOTE_SCOPE, PhoneSession, VotingSession
from zbory.errors import AuthError
from zbory.security.credentials import generate_public_token


def test_phone_session_round_trip(services, store):
    user = store.upsert_user('+380501234567')
    token, session = services.sessions.issue_phone_session(user)
    assert isinstance(token, str)
    assert services.sessions.read_session(token) == session
    assert services.sessions.read_session(token, required_scope=PHONE_SCOPE) == PhoneSession(user.id, user.phone)


def test_upsert_user_is_idempotent(store):
    first = store.upsert_user('+380501234567')
    second = store.upsert_user('+380501234567')
    assert first.id == second.id


def test_voting_session_is_bound_to_one_sheet(services, opened):
    encoded, session = services.sessions.issue_voting_session(opened.tokens[0])
    assert isinstance(session, VotingSession)
    assert session.sheet_id == opened.sheet_ids[0]
    assert session.owner_id == opened.owners[0].id
    assert session.protocol_id == opened.protocol.id

    decoded = services.sessions.read_session(encoded, required_scope=VOTE_SCOPE)
    assert decoded.sheet_id == session.sheet_id
    assert decoded.owner_id == session.owner_id


def test_read_voting_session_with_its_public_token(services, opened):
    encoded, session = services.sessions.issue_voting_session(opened.tokens[0])
    presented = services.sessions.read_voting_session(encoded, opened.tokens[0])
    assert (presented.sheet_id, presented.owner_id) == (session.sheet_id, session.owner_id)


@pytest.mark.parametrize('presented', [None, ''])
def test_read_voting_session_requires_a_session(services, opened, presented):
    with pytest.raises(AuthError) as exc:
        services.sessions.read_voting_session(presented, opened.tokens[0])
    assert exc.value.reason == 'no_voting_session'


def test_read_voting_session_rejects_another_ballot(services, opened):
    other, _ = services.sessions.issue_voting_session(opened.tokens[1])
    with pytest.raises(AuthError) as exc:
        services.sessions.read_voting_session(other, opened.tokens[0])
    assert exc.value.reason == 'voting_session_mismatch'


def test_read_voting_session_rejects_phone_sessions(services, opened):
    phone_token, _ = services.sessions.issue_phone_session(opened.user)
    with pytest.raises(AuthError) as exc:
        services.sessions.read_voting_session(phone_token, opened.tokens[0])
    assert exc.value.reason == 'wrong_scope'


def test_voting_session_never_outlives_sheet(services, opened):
    encoded, session = services.sessions.issue_voting_session(opened.tokens[0])
    decoded = services.sessions.read_session(encoded)
    assert decoded.expires_at < session.expires_at + timedelta(seconds=1)


def test_scopes_are_not_interchangeable(services, opened, store):
    vote_token, _ = services.sessions.issue_voting_session(opened.tokens[0])
    with pytest.raises(AuthError) as exc:
        services.sessions.read_session(vote_token, required_scope=PHONE_SCOPE)
    assert exc.value.reason == 'wrong_scope'

    phone_token, _ = services.sessions.issue_phone_session(store.upsert_user('+380501234567'))
    with pytest.raises(AuthError):
        services.sessions.read_session(phone_token, required_scope=VOTE_SCOPE)


@pytest.mark.parametrize('token', [None, '', 'short', 'x' * 63, 'a' * 70 + '!', 'a' * 80 + '\n'])
def test_malformed_public_tokens_rejected(services, token):
    with pytest.raises(AuthError) as exc:
        services.sessions.resolve_public_token(token)
    assert exc.value.reason == 'malformed_token'


def test_unknown_public_token_rejected(services, opened):
    with pytest.raises(AuthError) as exc:
        services.sessions.issue_voting_session(generate_public_token())
    assert exc.value.reason == 'unknown_token'


def test_expired_sheet_cannot_start_session(services, opened, monkeypatch):
    sheet = opened.sheets[0]
    monkeypatch.setattr(services.sessions, '_now', lambda: sheet.expires_at + timedelta(seconds=1))
    with pytest.raises(AuthError) as exc:
        services.sessions.issue_voting_session(opened.tokens[0])
    assert exc.value.reason == 'sheet_expired'
    # the link itself still resolves for downloads
    assert services.sessions.resolve_public_token(opened.tokens[0]).id == sheet.id


def test_expired_session_token_rejected(services, store):
    user = store.upsert_user('+380501234567')
    encoded = create_access_token(identity=user.id, additional_claims={'scope': PHONE_SCOPE},
                                  expires_delta=timedelta(seconds=-1))
    with pytest.raises(AuthError) as exc:
        services.sessions.read_session(encoded)
    assert exc.value.reason == 'bad_session'


def test_garbage_session_token_rejected(services):
    with pytest.raises(AuthError):
        services.sessions.read_session('not.a.jwt')


def test_unknown_scope_rejected(services):
    claims = {'sub': 'u1', 'scope': 'admin', 'exp': datetime.now(timezone.utc).timestamp()}
    with pytest.raises(AuthError) as exc:
        services.sessions.principal_from_claims(claims)
    assert exc.value.reason == 'unknown_scope'
