# zbory/signing/provider.py
"""Electronic-signature provider boundary.

The local Document row mirrors what the provider reports; the provider is
authoritative. Every network call takes a timeout and failures are raised in
the error taxonomy (see zbory.errors.classify_error).
"""

import base64
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from zbory.enums import DocumentStatus
from zbory.errors import PermanentExternalError, TransientExternalError, classify_error

logger = logging.getLogger(__name__)

OWNER_ROLE = 'OWNER'
ORGANIZER_ROLE = 'ORGANIZER'
DOWNLOAD_VARIANTS = ('original', 'signed')
ENV_PLACEHOLDER_PREFIX = 'replace-with-'


@dataclass(frozen=True)
class Participant:
    role: str
    full_name: str
    email: str
    phone: Optional[str] = None
    edrpou: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {'role': self.role, 'fullName': self.full_name, 'email': self.email}
        if self.phone:
            data['phone'] = self.phone
        if self.edrpou:
            data['edrpou'] = self.edrpou
        return data


@dataclass(frozen=True)
class ProviderStatus:
    document_id: str
    status: DocumentStatus
    owner_signed_at: Optional[datetime] = None
    organizer_signed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ProviderFile:
    document_id: str
    variant: str
    content: bytes
    content_type: str
    filename: str


def parse_provider_datetime(value) -> Optional[datetime]:
    """ISO-8601 from the provider, or None when absent or unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class DocumentSigningService(ABC):
    @abstractmethod
    def upload_document(self, file_bytes: bytes, title: str, timeout: Optional[float] = None) -> str:
        """Upload the sheet. Returns the provider document id."""

    @abstractmethod
    def add_participants(self, document_id: str, participants: List[Participant],
                         timeout: Optional[float] = None):
        """Register the signers on an uploaded document. Safe to repeat for the same document."""

    @abstractmethod
    def get_status(self, document_id: str, timeout: Optional[float] = None) -> ProviderStatus:
        pass

    @abstractmethod
    def download(self, document_id: str, variant: str, timeout: Optional[float] = None) -> ProviderFile:
        pass

    @abstractmethod
    def signing_link(self, document_id: str, timeout: Optional[float] = None) -> str:
        pass


@dataclass
class _MockDocument:
    id: str
    title: str
    content: bytes
    participants: List[Participant]
    status_checks: int = 0
    owner_signed_at: Optional[datetime] = None
    organizer_signed_at: Optional[datetime] = None
    link_token: Optional[str] = None
    roles: set = field(default_factory=set)


class MockDocumentSigningService(DocumentSigningService):
    """In-memory provider for development and tests.

    The owner "signs" on the second status check and the organizer on the
    third, so polling alone walks a document through the whole lifecycle.
    """

    def __init__(self, clock=None):
        self._documents: Dict[str, _MockDocument] = {}
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _require(self, document_id: str) -> _MockDocument:
        document = self._documents.get(document_id)
        if document is None:
            raise PermanentExternalError(f"[Dubidoc mock] Document {document_id} not found.",
                                         code="DUBIDOC_MOCK_DOCUMENT_NOT_FOUND")
        return document

    @staticmethod
    def _status_of(document: _MockDocument) -> ProviderStatus:
        if document.organizer_signed_at:
            status = DocumentStatus.ORGANIZER_SIGNED
        elif document.owner_signed_at:
            status = DocumentStatus.OWNER_SIGNED
        else:
            status = DocumentStatus.CREATED
        return ProviderStatus(document.id, status, document.owner_signed_at, document.organizer_signed_at)

    def upload_document(self, file_bytes, title, timeout=None) -> str:
        document_id = f"mock-doc-{uuid.uuid4()}"
        with self._lock:
            self._documents[document_id] = _MockDocument(
                id=document_id,
                title=title,
                content=bytes(file_bytes),
                participants=[],
            )
        return document_id

    def add_participants(self, document_id, participants, timeout=None):
        with self._lock:
            document = self._require(document_id)
            document.participants = list(participants)
            document.roles = {p.role for p in participants}

    @property
    def document_count(self) -> int:
        with self._lock:
            return len(self._documents)

    def sign(self, document_id: str, role: str, at: Optional[datetime] = None):
        """Simulate a signer completing their signature."""
        with self._lock:
            document = self._require(document_id)
            at = at or self._clock()
            if role == OWNER_ROLE:
                document.owner_signed_at = document.owner_signed_at or at
            elif role == ORGANIZER_ROLE:
                document.owner_signed_at = document.owner_signed_at or at
                document.organizer_signed_at = document.organizer_signed_at or at

    def get_status(self, document_id, timeout=None) -> ProviderStatus:
        with self._lock:
            document = self._require(document_id)
            document.status_checks += 1
            now = self._clock()
            if OWNER_ROLE in document.roles and not document.owner_signed_at and document.status_checks >= 2:
                document.owner_signed_at = now
            if (ORGANIZER_ROLE in document.roles and document.owner_signed_at
                    and not document.organizer_signed_at and document.status_checks >= 3):
                document.organizer_signed_at = now
            return self._status_of(document)

    @staticmethod
    def _base_name(document: _MockDocument) -> str:
        base = re.sub(r'\s+', '-', document.title.strip().lower())
        base = re.sub(r'[^a-z0-9_-]', '', base)[:64]
        return base or f"sheet-{document.id}"

    def download(self, document_id, variant, timeout=None) -> ProviderFile:
        with self._lock:
            document = self._require(document_id)
            base_name = self._base_name(document)
            if variant == 'signed':
                if not document.organizer_signed_at:
                    raise TransientExternalError("[Dubidoc mock] Document is not fully signed yet.",
                                                 code="DUBIDOC_MOCK_NOT_SIGNED")
                body = "\n".join([
                    "-----BEGIN PKCS7-----",
                    f"mock-document-id:{document.id}",
                    f"title:{document.title}",
                    f"bytes:{len(document.content)}",
                    "-----END PKCS7-----",
                ]).encode('utf-8')
                return ProviderFile(document.id, variant, body, 'application/pkcs7-signature',
                                    f"{base_name}-signed.p7s")
            return ProviderFile(document.id, variant, document.content, 'application/pdf', f"{base_name}.pdf")

    def signing_link(self, document_id, timeout=None) -> str:
        with self._lock:
            document = self._require(document_id)
            if not document.link_token:
                document.link_token = uuid.uuid4().hex
            return f"https://mock.dubidoc.local/sign/{document.id}/{document.link_token}"


class DubidocSigningService(DocumentSigningService):
    """Dubidoc REST client."""

    def __init__(self, api_url: str, api_key: str, org_id: str, timeout: float = 30,
                 session: requests.Session = None):
        self.api_url = api_url.rstrip('/')
        self.api_key = api_key
        self.org_id = org_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> requests.Response:
        headers = {
            'X-Access-Token': self.api_key,
            'X-Organization': self.org_id,
            'Accept': 'application/json',
        }
        try:
            response = self.session.request(
                method, f"{self.api_url}{path}", headers=headers, timeout=timeout or self.timeout, **kwargs
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise classify_error(e) from e
        return response

    def _json(self, response: requests.Response) -> Dict:
        try:
            return response.json()
        except ValueError as e:
            raise PermanentExternalError("Dubidoc returned a non-JSON body", code="DUBIDOC_BAD_RESPONSE") from e

    def upload_document(self, file_bytes, title, timeout=None) -> str:
        body = self._json(self._request('POST', '/documents', timeout=timeout, json={
            'title': title,
            'file': {
                'name': 'sheet.pdf',
                'content': base64.b64encode(file_bytes).decode('ascii'),
            },
        }))
        document_id = body.get('id') or body.get('documentId')
        if not document_id:
            raise PermanentExternalError("Dubidoc did not return a document id", code="DUBIDOC_BAD_RESPONSE")
        return str(document_id)

    def add_participants(self, document_id, participants, timeout=None):
        # PUT replaces the signer list, so a retried call does not duplicate signers
        self._request('PUT', f'/documents/{document_id}/participants', timeout=timeout,
                      json={'participants': [p.to_dict() for p in participants]})

    def get_status(self, document_id, timeout=None) -> ProviderStatus:
        body = self._json(self._request('GET', f'/documents/{document_id}', timeout=timeout))
        return parse_dubidoc_status(document_id, body)

    def download(self, document_id, variant, timeout=None) -> ProviderFile:
        if variant not in DOWNLOAD_VARIANTS:
            raise ValueError(f"Unknown download variant: {variant}")
        response = self._request('GET', f'/documents/{document_id}/download',
                                 timeout=timeout, params={'variant': variant})
        content_type = response.headers.get('Content-Type', 'application/octet-stream').split(';')[0]
        filename = _filename_from_disposition(response.headers.get('Content-Disposition'))
        if not filename:
            filename = f"{document_id}-signed.p7s" if variant == 'signed' else f"{document_id}.pdf"
        return ProviderFile(document_id, variant, response.content, content_type, filename)

    def signing_link(self, document_id, timeout=None) -> str:
        body = self._json(self._request('POST', f'/documents/{document_id}/links', timeout=timeout))
        url = body.get('url')
        if not url:
            raise PermanentExternalError("Dubidoc did not return a signing link", code="DUBIDOC_BAD_RESPONSE")
        return url


def _filename_from_disposition(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = re.search(r'filename="?([^";]+)"?', value)
    return match.group(1).strip() if match else None


def parse_dubidoc_status(document_id: str, body: Dict) -> ProviderStatus:
    """Derive the three-state status from a document payload.

    Signer timestamps win over the document-level status label.
    """
    owner_at = None
    organizer_at = None
    for participant in body.get('participants') or []:
        signed_at = parse_provider_datetime(participant.get('signedAt'))
        if participant.get('role') == OWNER_ROLE:
            owner_at = signed_at
        elif participant.get('role') == ORGANIZER_ROLE:
            organizer_at = signed_at

    label = str(body.get('status') or '').strip().upper()
    if organizer_at or label in ('ORGANIZER_SIGNED', 'SIGNED', 'COMPLETED', 'FULLY_SIGNED'):
        status = DocumentStatus.ORGANIZER_SIGNED
    elif owner_at or label in ('OWNER_SIGNED', 'PARTIALLY_SIGNED'):
        status = DocumentStatus.OWNER_SIGNED
    else:
        status = DocumentStatus.CREATED
    return ProviderStatus(document_id, status, owner_at, organizer_at)


def _has_value(value) -> bool:
    return bool(value and value.strip() and not value.strip().startswith(ENV_PLACEHOLDER_PREFIX))


def is_dubidoc_configured(config) -> bool:
    return _has_value(config.get('DUBIDOC_API_KEY')) and _has_value(config.get('DUBIDOC_ORG_ID'))


def get_signing_service(config) -> DocumentSigningService:
    if is_dubidoc_configured(config):
        return DubidocSigningService(
            api_url=config['DUBIDOC_API_URL'],
            api_key=config['DUBIDOC_API_KEY'].strip(),
            org_id=config['DUBIDOC_ORG_ID'].strip(),
            timeout=config.get('DUBIDOC_TIMEOUT_SECONDS', 30),
        )
    logger.warning("Dubidoc is not configured; using the in-memory signing mock")
    return MockDocumentSigningService()
