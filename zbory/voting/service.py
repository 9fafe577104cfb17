# zbory/voting/service.py

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from zbory.database.models import Osbb, Question, Sheet
from zbory.enums import SheetStatus
from zbory.errors import AuthError, InvariantViolation, StateError, ValidationError, ZboryError
from zbory.security.credentials import generate_public_token, hash_token
from zbory.security.input_validator import InputValidator
from zbory.sheets.expiry import (
    calculate_sheet_expires_at,
    get_countdown_parts,
    get_effective_sheet_status,
    get_remaining,
    get_timer_level,
)
from zbory.voting.owners import format_owner_full_name, format_owner_short_name
from zbory.voting.tally import ProtocolTally, tally_protocol

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def build_ballot_snapshot(sheet, questions: Iterable, votes: Iterable) -> Dict:
    """Plain-data view of one owner's ballot; also the frozen decision at closure."""
    protocol = sheet.protocol
    osbb = protocol.osbb
    owner = sheet.owner
    choices = {vote.question_id: vote.choice.value for vote in votes}
    return {
        'sheetId': sheet.id,
        'status': sheet.status.value,
        'expiresAt': _iso(sheet.expires_at),
        'closedAt': _iso(sheet.closed_at),
        'protocol': {
            'id': protocol.id,
            'number': protocol.number,
            'date': protocol.date.isoformat(),
            'type': protocol.type.value,
        },
        'osbb': {
            'id': osbb.id,
            'name': osbb.name,
            'shortName': osbb.short_name,
            'address': osbb.address,
            'edrpou': osbb.edrpou,
            'organizerName': osbb.organizer_name,
        },
        'owner': {
            'id': owner.id,
            'fullName': format_owner_full_name(owner),
            'shortName': format_owner_short_name(owner),
            'apartmentNumber': owner.apartment_number,
        },
        'questions': [
            {
                'questionId': question.id,
                'orderNumber': question.order_number,
                'text': question.text,
                'proposal': question.proposal,
                'requiresTwoThirds': question.requires_two_thirds,
                'choice': choices.get(question.id),
            }
            for question in sorted(questions, key=lambda q: q.order_number)
        ],
    }


class VotingService:
    """Protocol setup, ballot casting and sheet closure."""

    def __init__(self, store, synchronizer, audit_logger, validator: InputValidator = None):
        self.store = store
        self.synchronizer = synchronizer
        self.audit = audit_logger
        self.validator = validator or InputValidator()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # --- setup ------------------------------------------------------------

    def create_osbb(self, user_id: str, data: Dict) -> Osbb:
        value = self.validator.validate_osbb(data).raise_for_errors()
        osbb = self.store.add(Osbb(user_id=user_id, **value))
        self.audit.log_security_event('osbb_created', {'osbb_id': osbb.id}, user_id=user_id)
        return osbb

    def create_protocol(self, osbb_id: str, protocol_data: Dict, questions_data: List[Dict]):
        protocol_result = self.validator.validate_protocol(protocol_data)
        questions_result = self.validator.validate_questions(questions_data)
        errors = {**protocol_result.errors, **questions_result.errors}
        if self.store.get(Osbb, osbb_id) is None:
            errors['osbbId'] = "Unknown association"
        if errors:
            raise ValidationError(errors)
        protocol = self.store.create_protocol(osbb_id, protocol_result.value, questions_result.value)
        logger.info("Protocol %s created with %d questions", protocol.id, len(questions_result.value))
        return protocol

    def add_question(self, protocol_id: str, data: Dict) -> Question:
        protocol = self.store.get_protocol(protocol_id)
        if protocol is None:
            raise StateError("Protocol not found.", code="PROTOCOL_NOT_FOUND")
        if protocol.voting_opened_at is not None:
            raise StateError("Questions cannot change once voting has opened.", code="PROTOCOL_LOCKED")
        value = self.validator.validate_question(data).raise_for_errors()
        if any(q.order_number == value['order_number'] for q in protocol.questions):
            raise ValidationError({'orderNumber': "Order number already used in this protocol"})
        return self.store.add(Question(protocol_id=protocol_id, **value))

    def open_voting(self, protocol_id: str, owner_ids: List[str]) -> List[Tuple[Sheet, str]]:
        """Mints one sheet per owner. Raw tokens are returned here and never stored."""
        protocol = self.store.get_protocol(protocol_id)
        if protocol is None:
            raise StateError("Protocol not found.", code="PROTOCOL_NOT_FOUND")
        if not protocol.questions:
            raise StateError("Protocol has no questions.", code="PROTOCOL_HAS_NO_QUESTIONS")
        if not owner_ids:
            raise ValidationError({'ownerIds': "At least one owner is required"})

        now = self._now()
        expires_at = calculate_sheet_expires_at(protocol.date, protocol.type)
        if expires_at <= now:
            raise StateError("The voting window for this protocol has already passed.",
                             code="PROTOCOL_WINDOW_PASSED")

        existing = {sheet.owner_id for sheet in self.store.sheets_for_protocol(protocol_id)}
        errors = {}
        for index, owner_id in enumerate(owner_ids):
            owner = self.store.get_owner(owner_id)
            if owner is None or owner.osbb_id != protocol.osbb_id:
                errors[f'ownerIds[{index}]'] = "Not an owner of this association"
            elif owner_id in existing:
                errors[f'ownerIds[{index}]'] = "Already has a sheet for this protocol"
        if len(set(owner_ids)) != len(owner_ids):
            errors['ownerIds'] = "Owners must not repeat"
        if errors:
            raise ValidationError(errors)

        issued = []
        for owner_id in owner_ids:
            token = generate_public_token()
            sheet = Sheet(protocol_id=protocol_id, owner_id=owner_id, public_token_hash=hash_token(token),
                          status=SheetStatus.OPEN, expires_at=expires_at, created_at=now)
            issued.append((sheet, token))
        self.store.create_sheets(protocol_id, [sheet for sheet, _ in issued], now)
        self.audit.log_security_event('voting_opened', {'protocol_id': protocol_id, 'sheets': len(issued)})
        return issued

    def reissue_public_token(self, sheet_id: str) -> str:
        sheet = self.store.get_sheet(sheet_id)
        if sheet is None:
            raise StateError("Sheet not found.", code="SHEET_NOT_FOUND")
        if get_effective_sheet_status(sheet.status, sheet.expires_at, self._now()) == SheetStatus.EXPIRED:
            raise StateError("Sheet has expired.", code="SHEET_EXPIRED")
        token = generate_public_token()
        self.store.set_sheet_token_hash(sheet_id, hash_token(token))
        self.audit.log_security_event('public_token_reissued', {'sheet_id': sheet_id})
        return token

    # --- ballot -----------------------------------------------------------

    def _require_sheet(self, session) -> Sheet:
        sheet = self.store.get_sheet(session.sheet_id)
        if sheet is None or sheet.owner_id != session.owner_id:
            raise AuthError("session_sheet_mismatch")
        return sheet

    def get_ballot(self, session) -> Dict:
        sheet = self._require_sheet(session)
        now = self._now()
        if sheet.decision:
            ballot = dict(sheet.decision)
        else:
            ballot = build_ballot_snapshot(
                sheet, self.store.questions_for_protocol(sheet.protocol_id), self.store.votes_for_sheet(sheet.id)
            )
        effective = get_effective_sheet_status(sheet.status, sheet.expires_at, now)
        remaining = get_remaining(sheet.expires_at, now)
        document = self.store.get_document_for_sheet(sheet.id)
        ballot.update({
            'status': effective.value,
            'canVote': effective == SheetStatus.OPEN,
            'countdown': get_countdown_parts(remaining),
            'timerLevel': get_timer_level(remaining),
            'documentStatus': document.status.value if document else None,
        })
        return ballot

    def submit_votes(self, session, payload: Dict) -> Dict:
        submission = self.validator.validate_vote_submission(payload).raise_for_errors()
        sheet = self._require_sheet(session)
        now = self._now()
        effective = get_effective_sheet_status(sheet.status, sheet.expires_at, now)
        if effective != SheetStatus.OPEN:
            raise StateError("Voting on this sheet is over.", code=f"SHEET_{effective.value}")

        question_ids = {q.id for q in self.store.questions_for_protocol(sheet.protocol_id)}
        errors = {
            f'answers[{index}].questionId': "Not a question of this protocol"
            for index, answer in enumerate(submission['answers'])
            if answer['question_id'] not in question_ids
        }
        if errors:
            raise ValidationError(errors)

        answers = [(a['question_id'], a['choice']) for a in submission['answers']]
        if not self.store.upsert_votes(sheet.id, answers, now):
            raise StateError("Voting on this sheet is over.", code="SHEET_NOT_OPEN")
        self.audit.log_security_event('votes_cast', {'sheet_id': sheet.id, 'answers': len(answers)})
        return self.get_ballot(session)

    # --- closure ----------------------------------------------------------

    def _freeze(self, sheet_id: str, now: datetime) -> bool:
        def decision(sheet):
            return build_ballot_snapshot(
                sheet, self.store.questions_for_protocol(sheet.protocol_id), self.store.votes_for_sheet(sheet.id)
            )
        closed = self.store.close_open_sheet(sheet_id, now, decision)
        if closed:
            self.audit.log_security_event('sheet_closed', {'sheet_id': sheet_id})
            self._start_signing(sheet_id)
        return closed

    def _start_signing(self, sheet_id: str):
        try:
            self.synchronizer.create_document(sheet_id)
        except InvariantViolation:
            raise
        except ZboryError as e:
            # closure stands; the scheduler retries document creation
            logger.warning("Document creation for sheet %s deferred: %s", sheet_id, e.message)
            self.store.record_sync_check(sheet_id, self._now(), error=f"{e.code}: {e.message}")

    def close_sheet(self, sheet_id: str) -> Sheet:
        sheet = self.store.get_sheet(sheet_id)
        if sheet is None:
            raise StateError("Sheet not found.", code="SHEET_NOT_FOUND")
        now = self._now()
        effective = get_effective_sheet_status(sheet.status, sheet.expires_at, now)
        if effective != SheetStatus.OPEN:
            raise StateError("Sheet is not open.", code=f"SHEET_{effective.value}")

        answered = {vote.question_id for vote in self.store.votes_for_sheet(sheet_id)}
        if not answered:
            raise StateError("Cast at least one vote before closing the sheet.", code="SHEET_HAS_NO_VOTES")
        missing = [q.order_number for q in self.store.questions_for_protocol(sheet.protocol_id)
                   if q.id not in answered]
        if missing:
            raise StateError("Every question must be answered before closing.", code="BALLOT_INCOMPLETE",
                             details={'unansweredOrderNumbers': missing})

        if not self._freeze(sheet_id, now):
            raise StateError("Sheet is not open.", code="SHEET_NOT_OPEN")
        return self.store.get_sheet(sheet_id)

    def close_expired_sheets(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._now()
        counts = {'closed': 0, 'expired': 0}
        for sheet in self.store.open_sheets_past_expiry(now):
            sheet_id = sheet.id
            if self.store.votes_for_sheet(sheet_id):
                if self._freeze(sheet_id, now):
                    counts['closed'] += 1
            elif self.store.expire_open_sheet(sheet_id, now):
                counts['expired'] += 1
                self.audit.log_security_event('sheet_expired', {'sheet_id': sheet_id})
        if counts['closed'] or counts['expired']:
            logger.info("Expiry sweep: %(closed)d closed, %(expired)d expired", counts)
        return counts

    # --- results ----------------------------------------------------------

    def protocol_results(self, protocol_id: str, user_id: Optional[str] = None) -> ProtocolTally:
        if user_id is not None:
            protocol = self.store.get_protocol_for_user(user_id, protocol_id)
        else:
            protocol = self.store.get_protocol(protocol_id)
        if protocol is None:
            raise AuthError("protocol_not_accessible")
        return tally_protocol(self.store.questions_for_protocol(protocol_id),
                              self.store.votes_for_protocol(protocol_id))
