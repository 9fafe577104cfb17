# zbory/database/store.py
"""Persistence handle passed into every engine component.

Constructed once per application around the SQLAlchemy session. Every
mutating method commits its own unit of work. Lifecycle-sensitive writes
(OTP attempts, sheet closure, document status) are conditional UPDATEs so
concurrent callers cannot both win.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from zbory.database.models import (
    Document,
    Osbb,
    Owner,
    Protocol,
    Question,
    Sheet,
    SmsOtp,
    SmsRateLimit,
    User,
    Vote,
)
from zbory.enums import DocumentStatus, RateLimitAction, SheetStatus, VoteChoice
from zbory.errors import InvariantViolation
from zbory.voting.tally import CastVote

logger = logging.getLogger(__name__)


class Store:
    def __init__(self, session):
        self.session = session

    # --- generic ----------------------------------------------------------

    def get(self, model, obj_id):
        if not obj_id:
            return None
        return self.session.get(model, obj_id)

    def add(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def add_all(self, objs: Iterable):
        objs = list(objs)
        self.session.add_all(objs)
        self.session.commit()
        return objs

    def rollback(self):
        self.session.rollback()

    # --- users & OTP ------------------------------------------------------

    def upsert_user(self, phone: str) -> User:
        user = self.session.execute(select(User).filter_by(phone=phone)).scalar_one_or_none()
        if user is not None:
            return user
        try:
            return self.add(User(phone=phone))
        except IntegrityError:
            # created concurrently by a parallel login
            self.session.rollback()
            return self.session.execute(select(User).filter_by(phone=phone)).scalar_one()

    def create_otp(self, phone: str, code_hash: str, expires_at: datetime, now: datetime) -> SmsOtp:
        return self.add(SmsOtp(phone=phone, code_hash=code_hash, expires_at=expires_at, created_at=now))

    def delete_otp(self, otp_id: str):
        otp = self.get(SmsOtp, otp_id)
        if otp is not None:
            self.session.delete(otp)
            self.session.commit()

    def latest_unused_otp(self, phone: str) -> Optional[SmsOtp]:
        stmt = (
            select(SmsOtp)
            .where(SmsOtp.phone == phone, SmsOtp.used_at.is_(None))
            .order_by(SmsOtp.created_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def reserve_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        """Atomically consume one attempt. Returns attempts used, or None when exhausted."""
        result = self.session.execute(
            update(SmsOtp)
            .where(SmsOtp.id == otp_id, SmsOtp.attempts < max_attempts, SmsOtp.used_at.is_(None))
            .values(attempts=SmsOtp.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            return None
        self.session.commit()
        return self.session.execute(select(SmsOtp.attempts).where(SmsOtp.id == otp_id)).scalar_one()

    def mark_otp_used(self, otp_id: str, now: datetime) -> bool:
        result = self.session.execute(
            update(SmsOtp)
            .where(SmsOtp.id == otp_id, SmsOtp.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def rate_limit_window(self, phone: str, action: RateLimitAction, since: datetime) -> Tuple[int, Optional[datetime]]:
        stmt = select(func.count(SmsRateLimit.id), func.min(SmsRateLimit.created_at)).where(
            SmsRateLimit.phone == phone,
            SmsRateLimit.action == action,
            SmsRateLimit.created_at >= since,
        )
        count, oldest = self.session.execute(stmt).one()
        if oldest is not None and oldest.tzinfo is None:
            # aggregate results bypass the column type
            oldest = SmsRateLimit.created_at.type.process_result_value(oldest, None)
        return count, oldest

    def record_rate_limit_event(self, phone: str, action: RateLimitAction, ip: Optional[str], now: datetime):
        self.add(SmsRateLimit(phone=phone, action=action, ip=ip, created_at=now))

    # --- protocols, questions, owners ----------------------------------

    def get_protocol(self, protocol_id: str) -> Optional[Protocol]:
        return self.get(Protocol, protocol_id)

    def get_protocol_for_user(self, user_id: str, protocol_id: str) -> Optional[Protocol]:
        stmt = (
            select(Protocol)
            .join(Osbb, Protocol.osbb_id == Osbb.id)
            .where(Protocol.id == protocol_id, Osbb.user_id == user_id)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def questions_for_protocol(self, protocol_id: str) -> List[Question]:
        stmt = select(Question).where(Question.protocol_id == protocol_id).order_by(Question.order_number)
        return list(self.session.execute(stmt).scalars())

    def create_protocol(self, osbb_id: str, data: Dict, questions: List[Dict]) -> Protocol:
        protocol = Protocol(osbb_id=osbb_id, number=data['number'], date=data['date'], type=data['type'])
        protocol.questions = [Question(**q) for q in questions]
        return self.add(protocol)

    def mark_voting_opened(self, protocol_id: str, now: datetime):
        self.session.execute(
            update(Protocol)
            .where(Protocol.id == protocol_id, Protocol.voting_opened_at.is_(None))
            .values(voting_opened_at=now)
            .execution_options(synchronize_session=False)
        )

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        return self.get(Owner, owner_id)

    # --- sheets -----------------------------------------------------------

    def get_sheet(self, sheet_id: str) -> Optional[Sheet]:
        return self.get(Sheet, sheet_id)

    def get_sheet_by_token_hash(self, token_hash: str) -> Optional[Sheet]:
        return self.session.execute(
            select(Sheet).where(Sheet.public_token_hash == token_hash)
        ).scalar_one_or_none()

    def get_sheet_for_user(self, user_id: str, sheet_id: str) -> Optional[Sheet]:
        stmt = (
            select(Sheet)
            .join(Protocol, Sheet.protocol_id == Protocol.id)
            .join(Osbb, Protocol.osbb_id == Osbb.id)
            .where(Sheet.id == sheet_id, Osbb.user_id == user_id)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_sheet_by_document_id(self, document_id: str) -> Optional[Sheet]:
        stmt = select(Sheet).join(Document, Document.sheet_id == Sheet.id).where(Document.document_id == document_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def sheets_for_protocol(self, protocol_id: str) -> List[Sheet]:
        return list(self.session.execute(select(Sheet).where(Sheet.protocol_id == protocol_id)).scalars())

    def signed_sheets_for_protocol(self, protocol_id: str) -> List[Sheet]:
        stmt = (
            select(Sheet)
            .join(Document, Document.sheet_id == Sheet.id)
            .where(Sheet.protocol_id == protocol_id, Document.status == DocumentStatus.ORGANIZER_SIGNED)
            .order_by(Sheet.closed_at, Sheet.id)
        )
        return list(self.session.execute(stmt).scalars())

    def create_sheets(self, protocol_id: str, sheets: List[Sheet], now: datetime) -> List[Sheet]:
        self.mark_voting_opened(protocol_id, now)
        return self.add_all(sheets)

    def set_sheet_token_hash(self, sheet_id: str, token_hash: str):
        self.session.execute(
            update(Sheet).where(Sheet.id == sheet_id).values(public_token_hash=token_hash)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def close_open_sheet(self, sheet_id: str, now: datetime, build_decision: Callable[[Sheet], Dict]) -> bool:
        """OPEN -> CLOSED exactly once; the ballot is frozen in the same transaction."""
        result = self.session.execute(
            update(Sheet)
            .where(Sheet.id == sheet_id, Sheet.status == SheetStatus.OPEN)
            .values(status=SheetStatus.CLOSED, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            return False
        try:
            sheet = self.session.get(Sheet, sheet_id, populate_existing=True)
            sheet.decision = build_decision(sheet)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return True

    def expire_open_sheet(self, sheet_id: str, now: datetime) -> bool:
        result = self.session.execute(
            update(Sheet)
            .where(Sheet.id == sheet_id, Sheet.status == SheetStatus.OPEN, Sheet.expires_at <= now)
            .values(status=SheetStatus.EXPIRED, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def open_sheets_past_expiry(self, now: datetime, limit: int = 100) -> List[Sheet]:
        stmt = (
            select(Sheet)
            .where(Sheet.status == SheetStatus.OPEN, Sheet.expires_at <= now)
            .order_by(Sheet.expires_at)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def closed_sheets_without_document(self, limit: int = 100) -> List[Sheet]:
        stmt = (
            select(Sheet)
            .outerjoin(Document, Document.sheet_id == Sheet.id)
            .where(Sheet.status == SheetStatus.CLOSED, Document.id.is_(None))
            .order_by(Sheet.closed_at)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def sheets_awaiting_signatures(self, limit: int = 50) -> List[Sheet]:
        stmt = (
            select(Sheet)
            .join(Document, Document.sheet_id == Sheet.id)
            .where(Document.status != DocumentStatus.ORGANIZER_SIGNED)
            .order_by(Sheet.sync_checked_at.asc().nulls_first())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def record_sync_check(self, sheet_id: str, now: datetime, error: Optional[str] = None):
        self.session.execute(
            update(Sheet)
            .where(Sheet.id == sheet_id)
            .values(sync_checked_at=now, sync_error=error[:1000] if error else None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    # --- votes ------------------------------------------------------------

    def _lock_open_sheet(self, sheet_id: str, now: datetime) -> Optional[Sheet]:
        stmt = (
            select(Sheet)
            .where(Sheet.id == sheet_id, Sheet.status == SheetStatus.OPEN, Sheet.expires_at > now)
            .with_for_update()
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert_votes(self, sheet_id: str, answers: List[Tuple[str, VoteChoice]], now: datetime) -> bool:
        """Apply one submission; False when the sheet is no longer open."""
        for attempt in range(2):
            try:
                if self._lock_open_sheet(sheet_id, now) is None:
                    self.session.rollback()
                    return False
                for question_id, choice in answers:
                    result = self.session.execute(
                        update(Vote)
                        .where(Vote.sheet_id == sheet_id, Vote.question_id == question_id)
                        .values(choice=choice, cast_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        self.session.add(Vote(sheet_id=sheet_id, question_id=question_id, choice=choice, cast_at=now))
                self.session.commit()
                return True
            except IntegrityError:
                # a parallel resubmission inserted the same pair first; retry as update
                self.session.rollback()
                if attempt:
                    raise
        return False

    def votes_for_sheet(self, sheet_id: str) -> List[Vote]:
        return list(self.session.execute(select(Vote).where(Vote.sheet_id == sheet_id)).scalars())

    def votes_for_protocol(self, protocol_id: str) -> List[CastVote]:
        stmt = (
            select(Vote, Sheet.owner_id)
            .join(Sheet, Vote.sheet_id == Sheet.id)
            .where(Sheet.protocol_id == protocol_id)
        )
        return [
            CastVote(owner_id=owner_id, question_id=vote.question_id, choice=vote.choice, cast_at=vote.cast_at)
            for vote, owner_id in self.session.execute(stmt)
        ]

    # --- documents --------------------------------------------------------

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.session.execute(
            select(Document).where(Document.document_id == document_id)
        ).scalar_one_or_none()

    def get_document_for_sheet(self, sheet_id: str) -> Optional[Document]:
        return self.session.execute(
            select(Document).where(Document.sheet_id == sheet_id)
        ).scalar_one_or_none()

    def insert_document_if_absent(self, sheet_id: str, document_id: str, now: datetime) -> Document:
        """Record the provider document; if another creator won, return theirs."""
        try:
            return self.add(Document(sheet_id=sheet_id, document_id=document_id,
                                     status=DocumentStatus.CREATED, created_at=now))
        except IntegrityError:
            self.session.rollback()
            existing = self.get_document_for_sheet(sheet_id)
            if existing is None:
                raise
            logger.info("Sheet %s already had document %s; discarding %s",
                        sheet_id, existing.document_id, document_id)
            return existing

    def compare_and_set_document_status(self, document_id: str, expected: DocumentStatus,
                                        new: DocumentStatus, values: Optional[Dict] = None,
                                        signed: Optional[Dict] = None) -> bool:
        if not new.is_after(expected):
            raise InvariantViolation(
                f"Document {document_id}: refusing transition {expected.value} -> {new.value}",
                code="DOCUMENT_STATUS_REGRESSION",
            )
        if (new == DocumentStatus.ORGANIZER_SIGNED) != (signed is not None):
            raise InvariantViolation(
                f"Document {document_id}: signed artifact must accompany ORGANIZER_SIGNED",
                code="SIGNED_ARTIFACT_MISMATCH",
            )
        document = self.get_document(document_id)
        if document is None:
            return False
        result = self.session.execute(
            update(Document)
            .where(Document.document_id == document_id, Document.status == expected)
            .values(status=new, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            return False
        if signed is not None:
            self.session.execute(
                update(Sheet)
                .where(Sheet.id == document.sheet_id)
                .values(signed_bytes=signed['bytes'], signed_filename=signed['filename'],
                        signed_content_type=signed['content_type'])
                .execution_options(synchronize_session=False)
            )
        self.session.commit()
        return True
