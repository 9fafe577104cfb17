# zbory/routes.py

# JSON API over the voting engine. Handlers translate HTTP to service calls;
# every domain failure is raised as a ZboryError and rendered by one handler.

import logging
from functools import wraps
from io import BytesIO

from flask import Blueprint, current_app, g, jsonify, request, send_file
from flask_jwt_extended import get_jwt, set_access_cookies, unset_jwt_cookies, verify_jwt_in_request
from flask_limiter.errors import RateLimitExceeded

from zbory import jwt, limiter
from zbory.authentication.sessions import PHONE_SCOPE, VOTE_SESSION_COOKIE, VOTE_SESSION_HEADER
from zbory.database.models import Osbb
from zbory.errors import AuthError, InvariantViolation, StateError, ValidationError, ZboryError
from zbory.services import get_services
from zbory.signing.webhook import WEBHOOK_SECRET_HEADER, parse_webhook_payload, verify_webhook_secret

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError({'body': "Must be a JSON object"})
    return data


def phone_session_required(view):
    """Only OTP-derived sessions; voting sessions are rejected."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        g.principal = get_services().sessions.principal_from_claims(get_jwt(), required_scope=PHONE_SCOPE)
        return view(*args, **kwargs)
    return wrapper


def _owned_osbb(osbb_id: str) -> Osbb:
    osbb = get_services().store.get(Osbb, osbb_id)
    if osbb is None or osbb.user_id != g.principal.user_id:
        raise AuthError("osbb_not_accessible")
    return osbb


def _owned_protocol(protocol_id: str):
    protocol = get_services().store.get_protocol_for_user(g.principal.user_id, protocol_id)
    if protocol is None:
        raise AuthError("protocol_not_accessible")
    return protocol


def _owned_sheet(sheet_id: str):
    sheet = get_services().store.get_sheet_for_user(g.principal.user_id, sheet_id)
    if sheet is None:
        raise AuthError("sheet_not_accessible")
    return sheet


def _download_response(prepared):
    return send_file(
        BytesIO(prepared.content),
        mimetype=prepared.content_type,
        as_attachment=True,
        download_name=prepared.filename,
        max_age=0,
    )


# --- authentication -------------------------------------------------------

@api.route('/auth/request-code', methods=['POST'])
@limiter.limit("10/minute")
def request_code():
    issued = get_services().otp.request_code(_json_body().get('phone'), ip=request.remote_addr)
    return jsonify({'ok': True, 'expiresAt': issued.expires_at.isoformat()})


@api.route('/auth/verify-code', methods=['POST'])
@limiter.limit("10/minute")
def verify_code():
    data = _json_body()
    token, session = get_services().otp.verify_code(data.get('phone'), data.get('code'), ip=request.remote_addr)
    resp = jsonify({'ok': True, 'userId': session.user_id})
    set_access_cookies(resp, token)
    return resp


@api.route('/auth/logout', methods=['POST'])
def logout():
    resp = jsonify({'ok': True})
    unset_jwt_cookies(resp)
    return resp


# --- organizer ------------------------------------------------------------

@api.route('/osbbs', methods=['POST'])
@phone_session_required
def create_osbb():
    osbb = get_services().voting.create_osbb(g.principal.user_id, _json_body())
    return jsonify({'ok': True, 'osbbId': osbb.id}), 201


@api.route('/osbbs/<osbb_id>/protocols', methods=['POST'])
@phone_session_required
def create_protocol(osbb_id):
    _owned_osbb(osbb_id)
    data = _json_body()
    protocol = get_services().voting.create_protocol(osbb_id, data, data.get('questions'))
    return jsonify({'ok': True, 'protocolId': protocol.id}), 201


@api.route('/protocols/<protocol_id>/questions', methods=['POST'])
@phone_session_required
def add_question(protocol_id):
    _owned_protocol(protocol_id)
    question = get_services().voting.add_question(protocol_id, _json_body())
    return jsonify({'ok': True, 'questionId': question.id}), 201


@api.route('/protocols/<protocol_id>/open', methods=['POST'])
@phone_session_required
def open_voting(protocol_id):
    _owned_protocol(protocol_id)
    services = get_services()
    owner_ids = _json_body().get('ownerIds')
    if not isinstance(owner_ids, list):
        raise ValidationError({'ownerIds': "Must be a list"})
    issued = services.voting.open_voting(protocol_id, owner_ids)
    return jsonify({'ok': True, 'sheets': [
        {'sheetId': sheet.id, 'ownerId': sheet.owner_id, 'publicUrl': services.renderer.public_url(token)}
        for sheet, token in issued
    ]}), 201


@api.route('/protocols/<protocol_id>/results', methods=['GET'])
@phone_session_required
def protocol_results(protocol_id):
    tally = get_services().voting.protocol_results(protocol_id, user_id=g.principal.user_id)
    return jsonify({'ok': True, **tally.to_dict()})


@api.route('/protocols/<protocol_id>/downloads/signed-zip', methods=['GET'])
@phone_session_required
def signed_sheets_archive(protocol_id):
    return _download_response(get_services().downloads.signed_archive(g.principal.user_id, protocol_id))


@api.route('/sheets/<sheet_id>/public-link', methods=['POST'])
@phone_session_required
def reissue_public_link(sheet_id):
    _owned_sheet(sheet_id)
    services = get_services()
    token = services.voting.reissue_public_token(sheet_id)
    return jsonify({'ok': True, 'publicUrl': services.renderer.public_url(token)})


@api.route('/sheets/<sheet_id>/downloads/<kind>', methods=['GET'])
@phone_session_required
def organizer_download(sheet_id, kind):
    return _download_response(get_services().downloads.for_organizer(g.principal.user_id, sheet_id, kind))


# --- public ballot links -----------------------------------------------------

def _presented_voting_session(token):
    """Session issued by GET /vote/<token>, from the cookie or the header."""
    encoded = request.cookies.get(VOTE_SESSION_COOKIE) or request.headers.get(VOTE_SESSION_HEADER)
    return get_services().sessions.read_voting_session(encoded, token)


@api.route('/vote/<token>', methods=['GET'])
@limiter.limit("60/minute")
def ballot(token):
    services = get_services()
    encoded, session = services.sessions.issue_voting_session(token)
    resp = jsonify({'ok': True, 'sheet': services.voting.get_ballot(session)})
    resp.set_cookie(
        VOTE_SESSION_COOKIE, encoded,
        path=f'/api/vote/{token}',
        httponly=True,
        secure=current_app.config['JWT_COOKIE_SECURE'],
        samesite='Lax',
    )
    return resp


@api.route('/vote/<token>', methods=['POST'])
@limiter.limit("20/minute")
def submit_ballot(token):
    session = _presented_voting_session(token)
    return jsonify({'ok': True, 'sheet': get_services().voting.submit_votes(session, _json_body())})


@api.route('/vote/<token>/close', methods=['POST'])
@limiter.limit("10/minute")
def close_ballot(token):
    services = get_services()
    session = _presented_voting_session(token)
    services.voting.close_sheet(session.sheet_id)
    return jsonify({'ok': True, 'sheet': services.voting.get_ballot(session)})


@api.route('/vote/<token>/status-refresh', methods=['POST'])
@limiter.limit("10/minute")
def refresh_signing_status(token):
    services = get_services()
    sheet = services.sessions.resolve_public_token(token)
    result = services.synchronizer.sync_sheet(sheet.id)
    return jsonify({'ok': True, **result.to_dict()})


@api.route('/vote/<token>/sign-link', methods=['GET'])
@limiter.limit("10/minute")
def sign_link(token):
    services = get_services()
    sheet = services.sessions.resolve_public_token(token)
    document = services.store.get_document_for_sheet(sheet.id)
    if document is None:
        raise StateError("The sheet has not been sent for signing yet.", code="DOCUMENT_NOT_READY")
    url = services.signing.signing_link(document.document_id)
    return jsonify({'ok': True, 'url': url})


@api.route('/vote/<token>/downloads/<kind>', methods=['GET'])
@limiter.limit("30/minute")
def public_download(token, kind):
    return _download_response(get_services().downloads.for_public_token(token, kind))


# --- provider callbacks ----------------------------------------------------

@api.route('/webhooks/dubidoc', methods=['POST'])
@limiter.exempt
def dubidoc_webhook():
    services = get_services()
    if not verify_webhook_secret(current_app.config.get('DUBIDOC_WEBHOOK_SECRET'),
                                 request.headers.get(WEBHOOK_SECRET_HEADER)):
        services.audit.log_security_event('webhook_rejected', {'ip': request.remote_addr})
        raise AuthError("bad_webhook_secret")
    event = parse_webhook_payload(request.get_json(silent=True))
    logger.info("Dubidoc webhook %s for document %s", event.source_type, event.document_id)
    result = services.synchronizer.process_webhook(event)
    return jsonify({'ok': True, **result.to_dict()})


# --- errors -----------------------------------------------------------------

def _error_response(error: ZboryError):
    return jsonify({'ok': False, 'error': error.to_dict()}), error.http_status


def register_error_handlers(app):
    @app.errorhandler(ZboryError)
    def handle_domain_error(error):
        if isinstance(error, InvariantViolation):
            logger.error("Invariant violation: %s", error.message)
            get_services().audit.log_security_event('invariant_violation', {'code': error.code,
                                                                            'error': error.message})
            return _error_response(InvariantViolation("Internal error.", code=error.code))
        if isinstance(error, AuthError):
            logger.info("Auth failure (%s) from %s", error.reason, request.remote_addr)
        return _error_response(error)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(error):
        return jsonify({'ok': False, 'error': {
            'code': 'RATE_LIMITED', 'message': "Too many requests.", 'details': {'limit': str(error.description)},
        }}), 429

    @jwt.unauthorized_loader
    @jwt.invalid_token_loader
    def handle_missing_session(reason):
        return _error_response(AuthError("no_session"))

    @jwt.expired_token_loader
    def handle_expired_session(jwt_header, jwt_payload):
        return _error_response(AuthError("session_expired"))
