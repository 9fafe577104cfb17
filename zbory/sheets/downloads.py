# zbory/sheets/downloads.py

import logging
import re
import zipfile
from dataclasses import dataclass
from io import BytesIO

from zbory.enums import DocumentStatus, DownloadKind
from zbory.errors import AuthError, InvariantViolation, NotFoundError, StateError, ValidationError, ZboryError
from zbory.voting.service import build_ballot_snapshot
from zbory.voting.tally import tally_protocol

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = 'application/pdf'
ZIP_CONTENT_TYPE = 'application/zip'
ARCHIVE_ERRORS_NAME = 'errors.txt'


@dataclass(frozen=True)
class PreparedDownload:
    content: bytes
    filename: str
    content_type: str


def parse_download_kind(kind) -> DownloadKind:
    try:
        return kind if isinstance(kind, DownloadKind) else DownloadKind(kind)
    except ValueError:
        raise ValidationError({'kind': "Must be original, visualization or signed"}) from None


def _slug(value: str) -> str:
    return re.sub(r'[^A-Za-z0-9_-]+', '-', value or '').strip('-') or 'x'


class DownloadService:
    def __init__(self, store, renderer, sessions):
        self.store = store
        self.renderer = renderer
        self.sessions = sessions

    def _filename(self, sheet, kind: DownloadKind, extension: str = 'pdf') -> str:
        protocol = sheet.protocol
        apartment = sheet.owner.apartment_number or sheet.owner_id[:8]
        return f"protocol-{_slug(protocol.number)}-apt-{_slug(apartment)}-{kind.value}.{extension}"

    def _snapshot(self, sheet):
        if sheet.decision:
            return sheet.decision
        return build_ballot_snapshot(
            sheet, self.store.questions_for_protocol(sheet.protocol_id), self.store.votes_for_sheet(sheet.id)
        )

    def prepare(self, sheet, kind, public_url: str = None) -> PreparedDownload:
        kind = parse_download_kind(kind)

        if kind == DownloadKind.SIGNED:
            document = self.store.get_document_for_sheet(sheet.id)
            if document is None or document.status != DocumentStatus.ORGANIZER_SIGNED:
                raise StateError("The signed sheet is not available yet.", code="SIGNED_NOT_AVAILABLE")
            if not sheet.signed_bytes:
                raise InvariantViolation(f"Sheet {sheet.id} is ORGANIZER_SIGNED without a signed artifact",
                                         code="SIGNED_ARTIFACT_MISSING")
            return PreparedDownload(
                content=sheet.signed_bytes,
                filename=sheet.signed_filename or self._filename(sheet, kind, 'p7s'),
                content_type=sheet.signed_content_type or 'application/octet-stream',
            )

        snapshot = self._snapshot(sheet)
        if kind == DownloadKind.ORIGINAL:
            blank = dict(snapshot, questions=[dict(q, choice=None) for q in snapshot['questions']])
            content = self.renderer.render_original(blank, public_url=public_url)
        else:
            tally = tally_protocol(self.store.questions_for_protocol(sheet.protocol_id),
                                   self.store.votes_for_protocol(sheet.protocol_id))
            content = self.renderer.render_visualization(snapshot, tally.to_dict())
        return PreparedDownload(content=content, filename=self._filename(sheet, kind), content_type=PDF_CONTENT_TYPE)

    def for_organizer(self, user_id: str, sheet_id: str, kind) -> PreparedDownload:
        sheet = self.store.get_sheet_for_user(user_id, sheet_id)
        if sheet is None:
            raise AuthError("sheet_not_accessible")
        return self.prepare(sheet, kind)

    def for_public_token(self, token: str, kind) -> PreparedDownload:
        sheet = self.sessions.resolve_public_token(token)
        return self.prepare(sheet, kind, public_url=self.renderer.public_url(token))

    def signed_archive(self, user_id: str, protocol_id: str) -> PreparedDownload:
        """Every fully signed sheet of the protocol in one ZIP.

        Sheets whose artifact cannot be packed are listed in errors.txt
        inside the archive instead of failing the whole download.
        """
        if self.store.get_protocol_for_user(user_id, protocol_id) is None:
            raise AuthError("protocol_not_accessible")
        sheets = self.store.signed_sheets_for_protocol(protocol_id)
        if not sheets:
            raise NotFoundError("No signed sheets for this protocol yet.", code="NO_SIGNED_SHEETS")

        entries, failed = {}, []
        for sheet in sheets:
            try:
                prepared = self.prepare(sheet, DownloadKind.SIGNED)
            except ZboryError as e:
                logger.error("Signed sheet %s left out of the archive (%s): %s", sheet.id, e.code, e.message)
                failed.append(sheet.id)
                continue
            extension = prepared.filename.rsplit('.', 1)[-1] if '.' in prepared.filename else 'p7s'
            name = self._filename(sheet, DownloadKind.SIGNED, extension)
            if name in entries:
                name = f"{sheet.id}-{name}"
            entries[name] = prepared.content

        if not entries:
            raise StateError("None of the signed sheets could be packed.", code="SIGNED_ARCHIVE_EMPTY")
        if failed:
            listing = ''.join(f"- {sheet_id}\n" for sheet_id in failed)
            entries[ARCHIVE_ERRORS_NAME] = f"Не вдалося включити {len(failed)} листк(ів):\n{listing}".encode('utf-8')

        buffered = BytesIO()
        with zipfile.ZipFile(buffered, 'w', zipfile.ZIP_DEFLATED) as archive:
            for name, content in entries.items():
                archive.writestr(name, content)
        return PreparedDownload(content=buffered.getvalue(), filename=f"signed-sheets-{protocol_id}.zip",
                                content_type=ZIP_CONTENT_TYPE)
