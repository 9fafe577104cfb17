# zbory/signing/synchronizer.py
"""Mirrors the provider's signing progress onto the local Document.

Per sheet: NO_DOCUMENT -> CREATED -> OWNER_SIGNED -> ORGANIZER_SIGNED.
Transitions only move forward. Webhooks, manual refreshes and the scheduler
may all report the same event, so every write is a compare-and-set on the
stored status and repeated or stale reports are no-ops.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from zbory.enums import DocumentStatus, SheetStatus
from zbory.errors import InvariantViolation, StateError, ZboryError
from zbory.signing.provider import ORGANIZER_ROLE, OWNER_ROLE, Participant
from zbory.signing.retry import RETRY_PRESETS, RetryPolicy, with_retry
from zbory.voting.owners import format_owner_full_name

logger = logging.getLogger(__name__)

DEFAULT_OWNER_NAME = 'Співвласник'
DEFAULT_ORGANIZER_NAME = 'Уповноважена особа'


@dataclass(frozen=True)
class SyncResult:
    status: Optional[DocumentStatus]
    processed: bool = False
    duplicate: bool = False
    ignored: bool = False
    failed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value if self.status else None,
            'processed': self.processed,
            'duplicate': self.duplicate,
            'ignored': self.ignored,
            'failed': self.failed,
            'error': self.error,
        }


def _clean(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def build_participants(owner, osbb) -> List[Participant]:
    owner_email = _clean(owner.email)
    if not owner_email:
        raise StateError("The co-owner has no email for signing.", code="OWNER_EMAIL_REQUIRED")
    organizer_email = _clean(osbb.organizer_email)
    if not organizer_email:
        raise StateError("The association organizer has no email for signing.", code="ORGANIZER_EMAIL_REQUIRED")
    if owner_email.lower() == organizer_email.lower():
        raise StateError("Co-owner and organizer must sign from different emails.", code="SIGNERS_EMAIL_CONFLICT")

    owner_name = format_owner_full_name(owner)
    return [
        Participant(
            role=OWNER_ROLE,
            full_name=owner_name if owner_name != '—' else DEFAULT_OWNER_NAME,
            email=owner_email,
            phone=_clean(owner.phone),
        ),
        Participant(
            role=ORGANIZER_ROLE,
            full_name=_clean(osbb.organizer_name) or DEFAULT_ORGANIZER_NAME,
            email=organizer_email,
            phone=_clean(osbb.organizer_phone),
            edrpou=_clean(osbb.edrpou),
        ),
    ]


def build_document_title(protocol, osbb, owner) -> str:
    number = (protocol.number or '').strip()
    if number and not number.startswith('№'):
        number = f"№{number}"
    protocol_date = protocol.date.strftime('%d.%m.%Y')
    protocol_label = f"Протокол {number} від {protocol_date}" if number else f"Протокол від {protocol_date}"
    osbb_label = _clean(osbb.short_name) or _clean(osbb.name) or 'ОСББ'
    apartment = _clean(owner.apartment_number) or '—'
    owner_label = ' '.join(p for p in (_clean(owner.last_name), _clean(owner.first_name)) if p)
    return ' • '.join([osbb_label, f"кв. {apartment}", owner_label or DEFAULT_OWNER_NAME, protocol_label])


class DocumentSynchronizer:
    def __init__(self, store, provider, renderer, audit_logger,
                 retry_policy: RetryPolicy = RETRY_PRESETS['dubidoc'], sleep=time.sleep):
        self.store = store
        self.provider = provider
        self.renderer = renderer
        self.audit = audit_logger
        self.retry_policy = retry_policy
        self.sleep = sleep
        self._locks = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _lock_for(self, sheet_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[sheet_id]

    def _release_lock(self, sheet_id: str):
        # a fully signed sheet never changes again
        with self._locks_guard:
            self._locks.pop(sheet_id, None)

    def _retry(self, fn):
        return with_retry(fn, self.retry_policy, sleep=self.sleep)

    # --- NO_DOCUMENT -> CREATED ------------------------------------------

    def create_document(self, sheet_id: str):
        with self._lock_for(sheet_id):
            existing = self.store.get_document_for_sheet(sheet_id)
            if existing is not None:
                return existing
            sheet = self.store.get_sheet(sheet_id)
            if sheet is None:
                raise StateError("Sheet not found.", code="SHEET_NOT_FOUND")
            if sheet.status != SheetStatus.CLOSED or not sheet.decision:
                raise StateError("Sheet has no finalized decision yet.", code="SHEET_NOT_FINALIZED")

            protocol = sheet.protocol
            osbb = protocol.osbb
            participants = build_participants(sheet.owner, osbb)
            title = build_document_title(protocol, osbb, sheet.owner)
            content = self.renderer.render_decision(sheet.decision)

            # each step retries on its own so a participants failure does not re-upload the file
            document_id = self._retry(
                lambda attempt: self.provider.upload_document(content, title, timeout=attempt.timeout)
            )
            self._retry(
                lambda attempt: self.provider.add_participants(document_id, participants, timeout=attempt.timeout)
            )
            document = self.store.insert_document_if_absent(sheet_id, document_id, self._now())
            self.store.record_sync_check(sheet_id, self._now())
            self.audit.log_security_event('document_created', {'sheet_id': sheet_id, 'document_id': document_id})
            logger.info("Sheet %s sent for signing as %s", sheet_id, document.document_id)
            return document

    def create_pending_documents(self, limit: int = 50) -> List[str]:
        created = []
        for sheet in self.store.closed_sheets_without_document(limit):
            sheet_id = sheet.id
            try:
                self.create_document(sheet_id)
                created.append(sheet_id)
            except InvariantViolation:
                raise
            except ZboryError as e:
                logger.warning("Document creation for sheet %s failed: %s", sheet_id, e.message)
                self.store.record_sync_check(sheet_id, self._now(), error=f"{e.code}: {e.message}")
        return created

    # --- status transitions -----------------------------------------------

    def apply_status(self, document_id: str, status: DocumentStatus,
                     owner_signed_at: Optional[datetime] = None,
                     organizer_signed_at: Optional[datetime] = None) -> SyncResult:
        document = self.store.get_document(document_id)
        if document is None:
            logger.info("Status %s for unknown document %s ignored", status.value, document_id)
            return SyncResult(status=None, ignored=True)
        sheet_id = document.sheet_id
        with self._lock_for(sheet_id):
            result = self._apply_locked(document_id, sheet_id, status, owner_signed_at, organizer_signed_at)
        if result.status == DocumentStatus.ORGANIZER_SIGNED:
            self._release_lock(sheet_id)
        return result

    def _apply_locked(self, document_id, sheet_id, status, owner_signed_at, organizer_signed_at) -> SyncResult:
        current = self.store.get_document(document_id).status
        if not status.is_after(current):
            return SyncResult(status=current, duplicate=True)

        now = self._now()
        if current == DocumentStatus.CREATED:
            signed_at = owner_signed_at or organizer_signed_at or now
            if not self.store.compare_and_set_document_status(
                    document_id, DocumentStatus.CREATED, DocumentStatus.OWNER_SIGNED,
                    values={'owner_signed_at': signed_at}):
                return SyncResult(status=self.store.get_document(document_id).status, duplicate=True)
            self._audit_transition(sheet_id, document_id, DocumentStatus.OWNER_SIGNED)
            current = DocumentStatus.OWNER_SIGNED

        if status == DocumentStatus.ORGANIZER_SIGNED:
            signed = self._retry(
                lambda attempt: self.provider.download(document_id, 'signed', timeout=attempt.timeout)
            )
            if not self.store.compare_and_set_document_status(
                    document_id, DocumentStatus.OWNER_SIGNED, DocumentStatus.ORGANIZER_SIGNED,
                    values={'organizer_signed_at': organizer_signed_at or now},
                    signed={'bytes': signed.content, 'filename': signed.filename,
                            'content_type': signed.content_type}):
                return SyncResult(status=self.store.get_document(document_id).status, duplicate=True)
            self._audit_transition(sheet_id, document_id, DocumentStatus.ORGANIZER_SIGNED)
            current = DocumentStatus.ORGANIZER_SIGNED

        return SyncResult(status=current, processed=True)

    def _audit_transition(self, sheet_id: str, document_id: str, status: DocumentStatus):
        logger.info("Document %s of sheet %s is now %s", document_id, sheet_id, status.value)
        self.audit.log_security_event('document_status_changed', {
            'sheet_id': sheet_id, 'document_id': document_id, 'status': status.value,
        })

    def process_webhook(self, event) -> SyncResult:
        if event.status == DocumentStatus.OWNER_SIGNED:
            return self.apply_status(event.document_id, event.status, owner_signed_at=event.occurred_at)
        return self.apply_status(event.document_id, event.status,
                                 owner_signed_at=event.occurred_at, organizer_signed_at=event.occurred_at)

    # --- polling ----------------------------------------------------------

    def sync_sheet(self, sheet_id: str) -> SyncResult:
        document = self.store.get_document_for_sheet(sheet_id)
        if document is None:
            return SyncResult(status=None, ignored=True)
        document_id, known = document.document_id, document.status
        if known == DocumentStatus.ORGANIZER_SIGNED:
            return SyncResult(status=known, duplicate=True)

        try:
            remote = self._retry(
                lambda attempt: self.provider.get_status(document_id, timeout=attempt.timeout)
            )
            result = self.apply_status(document_id, remote.status,
                                       owner_signed_at=remote.owner_signed_at,
                                       organizer_signed_at=remote.organizer_signed_at)
        except InvariantViolation as e:
            logger.error("Invariant violated while syncing sheet %s: %s", sheet_id, e.message)
            self.audit.log_security_event('invariant_violation', {'sheet_id': sheet_id, 'error': e.message})
            raise
        except ZboryError as e:
            logger.warning("Sync of sheet %s failed (%s): %s", sheet_id, e.code, e.message)
            self.store.record_sync_check(sheet_id, self._now(), error=f"{e.code}: {e.message}")
            return SyncResult(status=known, failed=True, error=e.code)

        self.store.record_sync_check(sheet_id, self._now())
        return result

    def sync_pending(self, limit: int = 50) -> Dict[str, SyncResult]:
        results = {}
        for sheet in self.store.sheets_awaiting_signatures(limit):
            sheet_id = sheet.id
            try:
                results[sheet_id] = self.sync_sheet(sheet_id)
            except InvariantViolation as e:
                results[sheet_id] = SyncResult(status=None, failed=True, error=e.code)
        return results
