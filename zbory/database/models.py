# zbory/database/models.py

import uuid
from datetime import datetime, timezone

from sqlalchemy.types import DateTime, TypeDecorator

from zbory import db
from zbory.enums import (
    DocumentStatus,
    ProtocolType,
    RateLimitAction,
    SheetStatus,
    VoteChoice,
)

# Persistent shape of associations, protocols, sheets, votes and signing documents.


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """Stored as naive UTC, always returned timezone-aware."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    phone = db.Column(db.String(16), unique=True, nullable=False)
    created_at = db.Column(UTCDateTime, default=utcnow, nullable=False)

    associations = db.relationship('Osbb', backref='user', lazy=True)


class SmsOtp(db.Model):
    __tablename__ = 'sms_otps'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    phone = db.Column(db.String(16), nullable=False, index=True)
    code_hash = db.Column(db.String(64), nullable=False)  # sha256 of phone:code:secret
    expires_at = db.Column(UTCDateTime, nullable=False)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    used_at = db.Column(UTCDateTime, nullable=True)
    created_at = db.Column(UTCDateTime, default=utcnow, nullable=False)


class SmsRateLimit(db.Model):
    __tablename__ = 'sms_rate_limits'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    phone = db.Column(db.String(16), nullable=False)
    ip = db.Column(db.String(64), nullable=True)
    action = db.Column(db.Enum(RateLimitAction), nullable=False)
    created_at = db.Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (db.Index('ix_sms_rate_limits_phone_action', 'phone', 'action', 'created_at'),)


class Osbb(db.Model):
    __tablename__ = 'osbbs'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    user_id = db.Column(db.String(32), db.ForeignKey('users.id'), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    short_name = db.Column(db.String(80), nullable=False)
    address = db.Column(db.String(300), nullable=False)
    edrpou = db.Column(db.String(8), nullable=False)
    organizer_name = db.Column(db.String(200), nullable=True)
    organizer_email = db.Column(db.String(254), nullable=True)
    organizer_phone = db.Column(db.String(16), nullable=True)

    protocols = db.relationship('Protocol', backref='osbb', lazy=True)
    owners = db.relationship('Owner', backref='osbb', lazy=True)


class Protocol(db.Model):
    __tablename__ = 'protocols'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    osbb_id = db.Column(db.String(32), db.ForeignKey('osbbs.id'), nullable=False)
    number = db.Column(db.String(50), nullable=False)
    date = db.Column(db.Date, nullable=False)
    type = db.Column(db.Enum(ProtocolType), nullable=False)
    voting_opened_at = db.Column(UTCDateTime, nullable=True)  # questions are frozen from here on
    created_at = db.Column(UTCDateTime, default=utcnow, nullable=False)

    questions = db.relationship(
        'Question', backref='protocol', lazy=True, order_by='Question.order_number'
    )
    sheets = db.relationship('Sheet', backref='protocol', lazy=True)


class Question(db.Model):
    __tablename__ = 'questions'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    protocol_id = db.Column(db.String(32), db.ForeignKey('protocols.id'), nullable=False)
    order_number = db.Column(db.Integer, nullable=False)
    text = db.Column(db.Text, nullable=False)
    proposal = db.Column(db.Text, nullable=False)
    requires_two_thirds = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (db.UniqueConstraint('protocol_id', 'order_number', name='uq_question_order'),)


class Owner(db.Model):
    __tablename__ = 'owners'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    osbb_id = db.Column(db.String(32), db.ForeignKey('osbbs.id'), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, default='')
    first_name = db.Column(db.String(100), nullable=False, default='')
    middle_name = db.Column(db.String(100), nullable=False, default='')
    apartment_number = db.Column(db.String(20), nullable=True)
    email = db.Column(db.String(254), nullable=True)
    phone = db.Column(db.String(16), nullable=True)


class Sheet(db.Model):
    __tablename__ = 'sheets'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    protocol_id = db.Column(db.String(32), db.ForeignKey('protocols.id'), nullable=False)
    owner_id = db.Column(db.String(32), db.ForeignKey('owners.id'), nullable=False)
    public_token_hash = db.Column(db.String(64), unique=True, nullable=False)
    status = db.Column(db.Enum(SheetStatus), nullable=False, default=SheetStatus.OPEN)
    expires_at = db.Column(UTCDateTime, nullable=False)
    created_at = db.Column(UTCDateTime, default=utcnow, nullable=False)
    closed_at = db.Column(UTCDateTime, nullable=True)
    decision = db.Column(db.JSON, nullable=True)  # frozen ballot, written once at closure

    # present iff the document reached ORGANIZER_SIGNED
    signed_bytes = db.Column(db.LargeBinary, nullable=True)
    signed_filename = db.Column(db.String(255), nullable=True)
    signed_content_type = db.Column(db.String(100), nullable=True)

    sync_checked_at = db.Column(UTCDateTime, nullable=True)
    sync_error = db.Column(db.String(1000), nullable=True)

    owner = db.relationship('Owner', lazy='joined')
    votes = db.relationship('Vote', backref='sheet', lazy=True)
    document = db.relationship('Document', backref='sheet', uselist=False, lazy=True)

    __table_args__ = (db.UniqueConstraint('protocol_id', 'owner_id', name='uq_sheet_owner'),)

    def __repr__(self):
        return f'<Sheet {self.id} {self.status.value}>'


class Vote(db.Model):
    __tablename__ = 'votes'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    sheet_id = db.Column(db.String(32), db.ForeignKey('sheets.id'), nullable=False)
    question_id = db.Column(db.String(32), db.ForeignKey('questions.id'), nullable=False)
    choice = db.Column(db.Enum(VoteChoice), nullable=False)
    cast_at = db.Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (db.UniqueConstraint('sheet_id', 'question_id', name='uq_vote_sheet_question'),)

    def __repr__(self):
        return f'<Vote {self.choice.value} on {self.question_id} by sheet {self.sheet_id}>'


class Document(db.Model):
    __tablename__ = 'documents'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    sheet_id = db.Column(db.String(32), db.ForeignKey('sheets.id'), unique=True, nullable=False)
    document_id = db.Column(db.String(128), unique=True, nullable=False)  # provider id
    status = db.Column(db.Enum(DocumentStatus), nullable=False, default=DocumentStatus.CREATED)
    owner_signed_at = db.Column(UTCDateTime, nullable=True)
    organizer_signed_at = db.Column(UTCDateTime, nullable=True)
    created_at = db.Column(UTCDateTime, default=utcnow, nullable=False)
