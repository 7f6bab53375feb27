"""Parsing of the ``date`` parameter carried by action directives."""

from __future__ import annotations

from datetime import datetime, timedelta

DATE_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%B %d, %Y %H:%M",
    "%B %d, %Y",
    "%b %d, %Y %H:%M",
    "%b %d, %Y",
)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_HOUR = 9

_UNITS = {"minute": "minutes", "min": "minutes", "hour": "hours", "hr": "hours", "day": "days", "week": "weeks"}


def _words(text: str) -> list[str]:
    """Lower-case tokens split on anything that is not a letter, digit or colon."""
    word: list[str] = []
    words: list[str] = []
    for char in text.lower():
        if char.isalnum() or char == ":":
            word.append(char)
        elif word:
            words.append("".join(word))
            word = []
    if word:
        words.append("".join(word))
    return words


def _meridiem(hour: int, marker: str) -> int:
    if marker == "pm" and hour < 12:
        return hour + 12
    if marker == "am" and hour == 12:
        return 0
    return hour


def _split_meridiem(token: str) -> tuple[str, str]:
    for marker in ("am", "pm"):
        if token.endswith(marker) and len(token) > 2:
            return token[: -len(marker)], marker
    return token, ""


def extract_time(text: str, default_hour: int = DEFAULT_HOUR) -> tuple[int, int]:
    """Find ``H:MM``, ``3pm`` or ``3 pm`` in free text; 09:00 otherwise."""
    words = _words(text)
    for index, token in enumerate(words):
        following = words[index + 1] if index + 1 < len(words) else ""
        body, marker = _split_meridiem(token)
        if not marker and following in ("am", "pm"):
            marker = following
        if ":" in body:
            hour_text, _, minute_text = body.partition(":")
            if hour_text.isdigit() and minute_text.isdigit() and len(hour_text) <= 2 and len(minute_text) == 2:
                hour, minute = int(hour_text), int(minute_text)
                if hour < 24 and minute < 60:
                    return _meridiem(hour, marker), minute
        elif marker and body.isdigit() and len(body) <= 2:
            hour = int(body)
            if 1 <= hour <= 12:
                return _meridiem(hour, marker), 0
    return default_hour, 0


def _relative_offset(words: list[str]) -> timedelta | None:
    """``in N minutes/hours/days`` (``a``/``an`` count as one)."""
    for index, token in enumerate(words[:-2]):
        if token != "in":
            continue
        amount_text, unit_text = words[index + 1], words[index + 2]
        if amount_text.isdigit():
            amount = int(amount_text)
        elif amount_text in ("a", "an"):
            amount = 1
        else:
            continue
        unit = _UNITS.get(unit_text.rstrip("s"))
        if unit:
            return timedelta(**{unit: amount})
    return None


def parse_date(value: str, now: datetime | None = None) -> datetime | None:
    """Parse absolute formats first, then relative phrases; None when nothing fits."""
    text = value.strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    now = now or datetime.now()
    words = _words(text)
    hour, minute = extract_time(text)

    def at_time(day: datetime) -> datetime:
        return day.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if "today" in words:
        return at_time(now)
    if "tomorrow" in words:
        return at_time(now + timedelta(days=1))
    for index, token in enumerate(words[:-1]):
        if token == "next" and words[index + 1] == "week":
            return at_time(now + timedelta(weeks=1))
    for weekday, name in enumerate(WEEKDAYS):
        if name in words:
            days_ahead = (weekday - now.weekday()) % 7 or 7
            return at_time(now + timedelta(days=days_ahead))
    offset = _relative_offset(words)
    if offset is not None:
        return now + offset
    return None
