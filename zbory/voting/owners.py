# zbory/voting/owners.py

PLACEHOLDER_NAME = "—"


def _part(value) -> str:
    return value.strip() if isinstance(value, str) else ''


def _initial(value) -> str:
    part = _part(value)
    return f"{part[0].upper()}." if part else ''


def format_owner_short_name(owner) -> str:
    """'Shevchenko T.H.', falling back to surname, then initials, then a dash."""
    last_name = _part(owner.last_name)
    initials = _initial(owner.first_name) + _initial(owner.middle_name)
    if last_name and initials:
        return f"{last_name} {initials}"
    return last_name or initials or PLACEHOLDER_NAME


def format_owner_full_name(owner) -> str:
    parts = [_part(owner.last_name), _part(owner.first_name), _part(owner.middle_name)]
    return ' '.join(p for p in parts if p) or PLACEHOLDER_NAME
