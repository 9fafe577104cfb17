# zbory/enums.py

from enum import Enum


class ProtocolType(Enum):
    ESTABLISHMENT = "ESTABLISHMENT"
    GENERAL = "GENERAL"


class VoteChoice(Enum):
    FOR = "FOR"
    AGAINST = "AGAINST"


class SheetStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    EXPIRED = "EXPIRED"


class DocumentStatus(Enum):
    CREATED = "CREATED"
    OWNER_SIGNED = "OWNER_SIGNED"
    ORGANIZER_SIGNED = "ORGANIZER_SIGNED"

    @property
    def rank(self) -> int:
        return _DOCUMENT_STATUS_ORDER.index(self)

    def is_after(self, other: "DocumentStatus") -> bool:
        return self.rank > other.rank


_DOCUMENT_STATUS_ORDER = [
    DocumentStatus.CREATED,
    DocumentStatus.OWNER_SIGNED,
    DocumentStatus.ORGANIZER_SIGNED,
]


class RateLimitAction(Enum):
    REQUEST_CODE = "REQUEST_CODE"
    VERIFY_CODE = "VERIFY_CODE"


class DownloadKind(Enum):
    ORIGINAL = "original"
    VISUALIZATION = "visualization"
    SIGNED = "signed"
