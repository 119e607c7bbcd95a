"""
Value normalization utility functions.

Provides normalization for the loosely formatted values that event pages
publish: race dates in ISO or Chinese notation, registration status
phrases and marathon names used as canonical keys.

Normalization Rules:
- Dates: ISO datetimes, "YYYY-M-D" and "YYYY年M月D日" become datetime.date
- Years are accepted between 2000 and 2100 only
- Canonical names: lowercase, punctuation and whitespace collapsed to "-"
"""

import re
from datetime import date, datetime
from typing import Optional

MIN_YEAR = 2000
MAX_YEAR = 2100

ISO_DATE_RE = re.compile(r"\b(20\d{2})-(\d{1,2})-(\d{1,2})\b")
CN_DATE_RE = re.compile(r"(20\d{2})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日")

# Common phrasings mapped onto the statuses operators filter by
REGISTRATION_STATUS_ALIASES = {
    "open": "open",
    "opened": "open",
    "registration open": "open",
    "报名中": "open",
    "closed": "closed",
    "registration closed": "closed",
    "报名截止": "closed",
    "已截止": "closed",
    "not open": "not-open",
    "not-open": "not-open",
    "coming soon": "not-open",
    "未开始": "not-open",
    "sold out": "sold-out",
    "sold-out": "sold-out",
    "full": "sold-out",
    "名额已满": "sold-out",
    "unknown": "unknown",
}


def is_valid_year(year) -> bool:
    """Check that a year is an int inside the supported edition range."""
    return isinstance(year, int) and not isinstance(year, bool) and MIN_YEAR <= year <= MAX_YEAR


def _build_date(year: int, month: int, day: int) -> Optional[date]:
    if not is_valid_year(year):
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_race_date(value) -> Optional[date]:
    """
    Parse a race date from the formats event pages commonly use.

    Args:
        value: date, datetime or string ("2025-03-15", "2025-03-15T07:30:00+08:00",
               "2025-3-5", "2025年3月15日")

    Returns:
        datetime.date or None if the value is not a valid date in range

    Example:
        >>> parse_race_date("2025年4月1日")
        datetime.date(2025, 4, 1)
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _build_date(value.year, value.month, value.day)
    if isinstance(value, date):
        return _build_date(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return _build_date(parsed.year, parsed.month, parsed.day)
    except ValueError:
        pass

    for pattern in (ISO_DATE_RE, CN_DATE_RE):
        match = pattern.search(text)
        if match:
            return _build_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    return None


def find_first_date(text: str) -> Optional[date]:
    """Return the first valid ISO or Chinese-notation date found in free text."""
    if not text:
        return None
    for pattern in (ISO_DATE_RE, CN_DATE_RE):
        for match in pattern.finditer(text):
            found = _build_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
            if found:
                return found
    return None


def normalize_registration_status(value) -> Optional[str]:
    """
    Normalize a registration status phrase.

    Known phrases map onto open / closed / not-open / sold-out / unknown.
    Anything else is kept trimmed so operators can still see it.
    """
    if value is None:
        return None
    text = " ".join(str(value).split())
    if not text:
        return None
    return REGISTRATION_STATUS_ALIASES.get(text.lower(), text)


def canonicalize_name(name: str) -> str:
    """
    Build the canonical key for a marathon name.

    Example:
        >>> canonicalize_name("  Shanghai  International Marathon ")
        'shanghai-international-marathon'
    """
    if not name:
        return ""
    result = name.strip().lower()
    result = re.sub(r"[\s._/,'\"()]+", "-", result)
    result = re.sub(r"-{2,}", "-", result)
    return result.strip("-")
