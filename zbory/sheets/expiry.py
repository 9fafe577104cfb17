# zbory/sheets/expiry.py

from datetime import date, datetime, time, timedelta, timezone
from typing import Dict

from zbory.enums import ProtocolType, SheetStatus

# The sheet validity window is derived from the protocol alone. Nothing else
# computes or overrides expires_at.

SHEET_VALIDITY_DAYS = {
    ProtocolType.ESTABLISHMENT: 15,
    ProtocolType.GENERAL: 45,
}

END_OF_DAY = time(23, 59, 59, 999000)

DAY = timedelta(days=1)


def get_sheet_validity_days(protocol_type: ProtocolType) -> int:
    return SHEET_VALIDITY_DAYS[ProtocolType(protocol_type)]


def calculate_sheet_expires_at(protocol_date, protocol_type: ProtocolType) -> datetime:
    """Last millisecond of the protocol's UTC calendar day, plus the validity days.

    Calendar-day arithmetic on the UTC date, so a reader's local DST shift never
    shortens the window.
    """
    if isinstance(protocol_date, datetime):
        if protocol_date.tzinfo is not None:
            protocol_date = protocol_date.astimezone(timezone.utc)
        protocol_date = protocol_date.date()
    if not isinstance(protocol_date, date):
        raise TypeError("protocol_date must be a date or datetime")

    expiry_day = protocol_date + timedelta(days=get_sheet_validity_days(protocol_type))
    return datetime.combine(expiry_day, END_OF_DAY, tzinfo=timezone.utc)


def is_sheet_expired(expires_at: datetime, now: datetime) -> bool:
    return expires_at <= now


def get_effective_sheet_status(status: SheetStatus, expires_at: datetime, now: datetime) -> SheetStatus:
    # An open sheet past its window reads as expired before the scheduler closes it.
    if status == SheetStatus.OPEN and is_sheet_expired(expires_at, now):
        return SheetStatus.EXPIRED
    return status


def get_remaining(expires_at: datetime, now: datetime) -> timedelta:
    return max(expires_at - now, timedelta(0))


def get_countdown_parts(remaining: timedelta) -> Dict[str, int]:
    total_seconds = max(int(remaining.total_seconds()), 0)
    days, rest = divmod(total_seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    return {'days': days, 'hours': hours, 'minutes': minutes, 'seconds': seconds}


def get_timer_level(remaining: timedelta) -> str:
    if remaining <= timedelta(0):
        return 'gray'
    if remaining < 3 * DAY:
        return 'red'
    if remaining <= 7 * DAY:
        return 'yellow'
    return 'green'
