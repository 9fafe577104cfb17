# zbory/signing/webhook.py

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from zbory.enums import DocumentStatus
from zbory.errors import ValidationError
from zbory.security.credentials import constant_time_equals
from zbory.signing.provider import ORGANIZER_ROLE, OWNER_ROLE, parse_provider_datetime

logger = logging.getLogger(__name__)

WEBHOOK_SECRET_HEADER = 'X-Dubidoc-Webhook-Secret'

OWNER_EVENTS = {'OWNER_SIGNED', 'OWNER_SIGNATURE_COMPLETED'}
ORGANIZER_EVENTS = {
    'ORGANIZER_SIGNED',
    'ORGANIZER_SIGNATURE_COMPLETED',
    'DOCUMENT_SIGNED',
    'FULLY_SIGNED',
    'SIGNING_COMPLETED',
    'COMPLETED',
}
PARTICIPANT_EVENTS = {'PARTICIPANT_SIGNED', 'SIGNER_SIGNED'}


@dataclass(frozen=True)
class WebhookEvent:
    event_id: Optional[str]
    source_type: str
    document_id: str
    status: DocumentStatus
    occurred_at: datetime


def normalize_event_name(value: str) -> str:
    return re.sub(r'[^A-Z0-9]+', '_', value.strip().upper())


def map_event_to_status(event_name: str, participant_role: Optional[str] = None) -> Optional[DocumentStatus]:
    if event_name in OWNER_EVENTS:
        return DocumentStatus.OWNER_SIGNED
    if event_name in ORGANIZER_EVENTS:
        return DocumentStatus.ORGANIZER_SIGNED
    if event_name in PARTICIPANT_EVENTS:
        if participant_role == OWNER_ROLE:
            return DocumentStatus.OWNER_SIGNED
        if participant_role == ORGANIZER_ROLE:
            return DocumentStatus.ORGANIZER_SIGNED
    return None


def _text(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first(payload: Dict, nested: Dict, *keys) -> Optional[str]:
    for source in (payload, nested):
        for key in keys:
            value = _text(source.get(key))
            if value:
                return value
    return None


def parse_webhook_payload(payload, now: Optional[datetime] = None) -> WebhookEvent:
    """Top-level fields win over the same fields nested under `data`."""
    if not isinstance(payload, dict):
        raise ValidationError({'payload': "Must be a JSON object"})
    nested = payload.get('data') if isinstance(payload.get('data'), dict) else {}

    source_type = _first(payload, nested, 'eventType', 'type')
    document_id = _first(payload, nested, 'documentId')
    errors = {}
    if not source_type:
        errors['eventType'] = "Required"
    if not document_id:
        errors['documentId'] = "Required"
    if errors:
        raise ValidationError(errors)

    participant_role = _first(payload, nested, 'participantRole')
    if participant_role and participant_role not in (OWNER_ROLE, ORGANIZER_ROLE):
        raise ValidationError({'participantRole': "Must be OWNER or ORGANIZER"})

    status = map_event_to_status(normalize_event_name(source_type), participant_role)
    if status is None:
        raise ValidationError({'eventType': f"Unsupported event type: {source_type}"})

    occurred_at = parse_provider_datetime(_first(payload, nested, 'occurredAt'))
    return WebhookEvent(
        event_id=_text(payload.get('eventId')),
        source_type=source_type,
        document_id=document_id,
        status=status,
        occurred_at=occurred_at or now or datetime.now(timezone.utc),
    )


def verify_webhook_secret(configured: Optional[str], provided: Optional[str]) -> bool:
    configured = (configured or '').strip()
    if not configured:
        logger.warning("DUBIDOC_WEBHOOK_SECRET is not set; accepting unauthenticated webhook")
        return True
    provided = (provided or '').strip()
    return bool(provided) and constant_time_equals(provided, configured)
