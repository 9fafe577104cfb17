"""initial schema

Revision ID: 0001
Revises:
Create Date: 2024-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

protocol_type = sa.Enum('ESTABLISHMENT', 'GENERAL', name='protocoltype')
vote_choice = sa.Enum('FOR', 'AGAINST', name='votechoice')
sheet_status = sa.Enum('OPEN', 'CLOSED', 'EXPIRED', name='sheetstatus')
document_status = sa.Enum('CREATED', 'OWNER_SIGNED', 'ORGANIZER_SIGNED', name='documentstatus')
rate_limit_action = sa.Enum('REQUEST_CODE', 'VERIFY_CODE', name='ratelimitaction')


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('phone', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('phone'),
    )
    op.create_table(
        'sms_otps',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('phone', sa.String(length=16), nullable=False),
        sa.Column('code_hash', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sms_otps_phone', 'sms_otps', ['phone'])
    op.create_table(
        'sms_rate_limits',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('phone', sa.String(length=16), nullable=False),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('action', rate_limit_action, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sms_rate_limits_phone_action', 'sms_rate_limits', ['phone', 'action', 'created_at'])
    op.create_table(
        'osbbs',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.String(length=32), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('short_name', sa.String(length=80), nullable=False),
        sa.Column('address', sa.String(length=300), nullable=False),
        sa.Column('edrpou', sa.String(length=8), nullable=False),
        sa.Column('organizer_name', sa.String(length=200), nullable=True),
        sa.Column('organizer_email', sa.String(length=254), nullable=True),
        sa.Column('organizer_phone', sa.String(length=16), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'protocols',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('osbb_id', sa.String(length=32), nullable=False),
        sa.Column('number', sa.String(length=50), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('type', protocol_type, nullable=False),
        sa.Column('voting_opened_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['osbb_id'], ['osbbs.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'owners',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('osbb_id', sa.String(length=32), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('middle_name', sa.String(length=100), nullable=False),
        sa.Column('apartment_number', sa.String(length=20), nullable=True),
        sa.Column('email', sa.String(length=254), nullable=True),
        sa.Column('phone', sa.String(length=16), nullable=True),
        sa.ForeignKeyConstraint(['osbb_id'], ['osbbs.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'questions',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('protocol_id', sa.String(length=32), nullable=False),
        sa.Column('order_number', sa.Integer(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('proposal', sa.Text(), nullable=False),
        sa.Column('requires_two_thirds', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['protocol_id'], ['protocols.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('protocol_id', 'order_number', name='uq_question_order'),
    )
    op.create_table(
        'sheets',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('protocol_id', sa.String(length=32), nullable=False),
        sa.Column('owner_id', sa.String(length=32), nullable=False),
        sa.Column('public_token_hash', sa.String(length=64), nullable=False),
        sa.Column('status', sheet_status, nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        sa.Column('decision', sa.JSON(), nullable=True),
        sa.Column('signed_bytes', sa.LargeBinary(), nullable=True),
        sa.Column('signed_filename', sa.String(length=255), nullable=True),
        sa.Column('signed_content_type', sa.String(length=100), nullable=True),
        sa.Column('sync_checked_at', sa.DateTime(), nullable=True),
        sa.Column('sync_error', sa.String(length=1000), nullable=True),
        sa.ForeignKeyConstraint(['owner_id'], ['owners.id']),
        sa.ForeignKeyConstraint(['protocol_id'], ['protocols.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('public_token_hash'),
        sa.UniqueConstraint('protocol_id', 'owner_id', name='uq_sheet_owner'),
    )
    op.create_table(
        'votes',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('sheet_id', sa.String(length=32), nullable=False),
        sa.Column('question_id', sa.String(length=32), nullable=False),
        sa.Column('choice', vote_choice, nullable=False),
        sa.Column('cast_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['question_id'], ['questions.id']),
        sa.ForeignKeyConstraint(['sheet_id'], ['sheets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sheet_id', 'question_id', name='uq_vote_sheet_question'),
    )
    op.create_table(
        'documents',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('sheet_id', sa.String(length=32), nullable=False),
        sa.Column('document_id', sa.String(length=128), nullable=False),
        sa.Column('status', document_status, nullable=False),
        sa.Column('owner_signed_at', sa.DateTime(), nullable=True),
        sa.Column('organizer_signed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['sheet_id'], ['sheets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_id'),
        sa.UniqueConstraint('sheet_id'),
    )


def downgrade():
    op.drop_table('documents')
    op.drop_table('votes')
    op.drop_table('sheets')
    op.drop_table('questions')
    op.drop_table('owners')
    op.drop_table('protocols')
    op.drop_table('osbbs')
    op.drop_index('ix_sms_rate_limits_phone_action', table_name='sms_rate_limits')
    op.drop_table('sms_rate_limits')
    op.drop_index('ix_sms_otps_phone', table_name='sms_otps')
    op.drop_table('sms_otps')
    op.drop_table('users')
    bind = op.get_bind()
    for enum in (rate_limit_action, document_status, sheet_status, vote_choice, protocol_type):
        enum.drop(bind, checkfirst=True)
