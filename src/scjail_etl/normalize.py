"""Normalization functions for jail roster ingestion.

All text helpers accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from zoneinfo import ZoneInfo

log = logging.getLogger(__name__)

# Roster timestamps are published in the sheriff's local time without an offset.
ROSTER_TZ = ZoneInfo("America/Chicago")

_DOB_FORMATS = ("%m/%d/%Y", "%Y-%m-%d", "%m-%d-%Y")
_BOOKING_FORMATS = (
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
)
_NON_DIGIT = re.compile(r"\D")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_label  (profile <dt> text)
# ---------------------------------------------------------------------------

def normalize_label(value: str | None) -> str | None:
    """Trim, lowercase and drop a trailing colon: ' Date of Birth: ' → 'date of birth'."""
    v = normalize_space(value)
    if v is None:
        return None
    v = v.lower().rstrip(":").rstrip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: currency minor units
# ---------------------------------------------------------------------------

def parse_minor_units(value: str | None) -> int:
    """Return the cent value of a currency string like '$2,200.75' → 220075.

    Every non-digit is discarded, so text without explicit cents ('$5')
    is read as minor units (5). Unparseable input logs a warning and
    returns 0.
    """
    digits = _NON_DIGIT.sub("", value or "")
    if not digits:
        log.warning("Could not parse minor units from %r; using 0.", value)
        return 0
    return int(digits)


def format_minor_units(amount: int) -> str:
    """Render minor units as dollars: 220075 → '$2200.75'."""
    return f"${amount // 100}.{amount % 100:02d}"


# ---------------------------------------------------------------------------
# Rule 5: parse_aliases
# ---------------------------------------------------------------------------

def parse_aliases(value: str | None) -> tuple[str, ...] | None:
    """Split a comma-separated alias list, dropping blank pieces.

    Returns None (not an empty tuple) when nothing survives.
    """
    if value is None:
        return None
    pieces = tuple(p.strip() for p in value.split(",") if p.strip())
    return pieces or None


# ---------------------------------------------------------------------------
# Rule 6: dates
# ---------------------------------------------------------------------------

def parse_dob(value: str | None) -> date | None:
    """Parse a date of birth ('01/31/1990' or ISO), or None."""
    v = trim(value)
    if v is None:
        return None
    for fmt in _DOB_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def parse_booking_ts(value: str | None) -> datetime | None:
    """Parse a roster booking date-time into an aware datetime in ROSTER_TZ."""
    v = normalize_space(value)
    if v is None:
        return None
    for fmt in _BOOKING_FORMATS:
        try:
            naive = datetime.strptime(v, fmt)
        except ValueError:
            continue
        return naive.replace(tzinfo=ROSTER_TZ)
    return None
