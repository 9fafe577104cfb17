# tests/test_external_clients.py
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from zbory.authentication.sms import MockSmsAdapter, TurboSmsAdapter, get_sms_adapter
from zbory.enums import DocumentStatus
from zbory.errors import PermanentExternalError, TransientExternalError
from zbory.signing.provider import (
    ORGANIZER_ROLE,
    OWNER_ROLE,
    DubidocSigningService,
    MockDocumentSigningService,
    Participant,
    get_signing_service,
    is_dubidoc_configured,
    parse_dubidoc_status,
)


def _response(status=200, body=None, content=b'', headers=None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body if body is not None else {}
    response.content = content
    response.headers = headers or {}
    if status >= 400:
        error = requests.HTTPError(f"{status} error")
        error.response = response
        response.raise_for_status.side_effect = error
    return response


# --- TurboSMS ---------------------------------------------------------------------

def test_turbosms_sends_code():
    session = MagicMock()
    session.post.return_value = _response(body={'response_code': 800, 'response_status': 'SUCCESS_MESSAGE_ACCEPTED'})
    TurboSmsAdapter('key', 'Zbory', session=session).send_code('+380501234567', '0427')

    args, kwargs = session.post.call_args
    assert args[0] == 'https://api.turbosms.ua/message/send.json'
    assert kwargs['json']['recipients'] == ['380501234567']
    assert '0427' in kwargs['json']['sms']['text']
    assert kwargs['headers']['Authorization'] == 'Bearer key'
    assert kwargs['timeout'] == 10


def test_turbosms_rejection_is_permanent():
    session = MagicMock()
    session.post.return_value = _response(body={'response_code': 103, 'response_status': 'REQUIRED_TOKEN'})
    with pytest.raises(PermanentExternalError) as exc:
        TurboSmsAdapter('key', 'Zbory', session=session).send_code('+380501234567', '0427')
    assert exc.value.code == 'SMS_REJECTED'


def test_turbosms_timeout_is_transient():
    session = MagicMock()
    session.post.side_effect = requests.Timeout("slow")
    with pytest.raises(TransientExternalError):
        TurboSmsAdapter('key', 'Zbory', session=session).send_code('+380501234567', '0427')


def test_sms_adapter_selection():
    assert isinstance(get_sms_adapter({'TURBOSMS_API_KEY': 'k'}), TurboSmsAdapter)
    assert isinstance(get_sms_adapter({}), MockSmsAdapter)


# --- Dubidoc ------------------------------------------------------------------------

PARTICIPANTS = [
    Participant(OWNER_ROLE, 'Шевченко Тарас', 'taras@example.com'),
    Participant(ORGANIZER_ROLE, 'Коваленко Олена', 'organizer@example.com', edrpou='12345678'),
]


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def dubidoc(session):
    return DubidocSigningService('https://api.dubidoc.test/api/v1/', 'key', 'org', session=session)


def test_dubidoc_upload_document(dubidoc, session):
    session.request.return_value = _response(body={'id': 'doc-1'})
    assert dubidoc.upload_document(b'%PDF-1.4', 'Title', timeout=5) == 'doc-1'

    create = session.request.call_args
    assert create.args == ('POST', 'https://api.dubidoc.test/api/v1/documents')
    assert create.kwargs['headers']['X-Access-Token'] == 'key'
    assert create.kwargs['headers']['X-Organization'] == 'org'
    assert create.kwargs['timeout'] == 5
    assert create.kwargs['json']['file']['content'] == 'JVBERi0xLjQ='


def test_dubidoc_add_participants_replaces_signers(dubidoc, session):
    session.request.return_value = _response(body={})
    dubidoc.add_participants('doc-1', PARTICIPANTS, timeout=5)

    call = session.request.call_args
    assert call.args == ('PUT', 'https://api.dubidoc.test/api/v1/documents/doc-1/participants')
    assert [p['role'] for p in call.kwargs['json']['participants']] == [OWNER_ROLE, ORGANIZER_ROLE]
    assert call.kwargs['json']['participants'][1]['edrpou'] == '12345678'


def test_dubidoc_missing_id(dubidoc, session):
    session.request.return_value = _response(body={})
    with pytest.raises(PermanentExternalError):
        dubidoc.upload_document(b'x', 'Title')


@pytest.mark.parametrize('status,error', [(503, TransientExternalError), (404, PermanentExternalError)])
def test_dubidoc_http_errors(dubidoc, session, status, error):
    session.request.return_value = _response(status=status)
    with pytest.raises(error):
        dubidoc.get_status('doc-1')


def test_dubidoc_download(dubidoc, session):
    session.request.return_value = _response(
        content=b'signed-bytes',
        headers={'Content-Type': 'application/pkcs7-signature; charset=binary',
                 'Content-Disposition': 'attachment; filename="sheet-signed.p7s"'},
    )
    signed = dubidoc.download('doc-1', 'signed')
    assert session.request.call_args.kwargs['params'] == {'variant': 'signed'}
    assert (signed.content, signed.content_type, signed.filename) == \
        (b'signed-bytes', 'application/pkcs7-signature', 'sheet-signed.p7s')


def test_dubidoc_signing_link(dubidoc, session):
    session.request.return_value = _response(body={'url': 'https://dubidoc.test/s/abc'})
    assert dubidoc.signing_link('doc-1') == 'https://dubidoc.test/s/abc'


def test_parse_dubidoc_status():
    body = {'status': 'IN_PROGRESS', 'participants': [
        {'role': OWNER_ROLE, 'signedAt': '2024-03-04T08:30:00Z'},
        {'role': ORGANIZER_ROLE, 'signedAt': None},
    ]}
    status = parse_dubidoc_status('doc-1', body)
    assert status.status == DocumentStatus.OWNER_SIGNED
    assert status.owner_signed_at == datetime(2024, 3, 4, 8, 30, tzinfo=timezone.utc)
    assert parse_dubidoc_status('doc-1', {'status': 'completed'}).status == DocumentStatus.ORGANIZER_SIGNED
    assert parse_dubidoc_status('doc-1', {}).status == DocumentStatus.CREATED


def test_signing_service_selection():
    assert not is_dubidoc_configured({'DUBIDOC_API_KEY': 'replace-with-key', 'DUBIDOC_ORG_ID': 'org'})
    assert isinstance(get_signing_service({}), MockDocumentSigningService)
    service = get_signing_service({'DUBIDOC_API_URL': 'https://x', 'DUBIDOC_API_KEY': ' k ', 'DUBIDOC_ORG_ID': 'o'})
    assert isinstance(service, DubidocSigningService)
    assert service.api_key == 'k'


# --- mock provider ------------------------------------------------------------------

def test_mock_provider_lifecycle():
    provider = MockDocumentSigningService()
    document_id = provider.upload_document(b'%PDF', 'Sunny House apt 12')
    provider.add_participants(document_id, PARTICIPANTS)
    assert provider.get_status(document_id).status == DocumentStatus.CREATED
    with pytest.raises(TransientExternalError):
        provider.download(document_id, 'signed')
    assert provider.get_status(document_id).status == DocumentStatus.OWNER_SIGNED
    assert provider.get_status(document_id).status == DocumentStatus.ORGANIZER_SIGNED
    signed = provider.download(document_id, 'signed')
    assert signed.filename == 'sunny-house-apt-12-signed.p7s'
    assert provider.signing_link(document_id) == provider.signing_link(document_id)
    with pytest.raises(PermanentExternalError):
        provider.get_status('missing')
