# =============================================================================
# Timeframes — Natural-Language Date Windows
# =============================================================================
#
# Turns phrases like "last month", "past 3 weeks", "in july" or
# "2025-01-01 to 2025-03-31" into an inclusive DateWindow. Every data
# function takes its dates through here, so the same phrase always maps to
# the same window for a given `today`.
#
#   today / yesterday            single day
#   this week / month / year     start of the calendar unit → today
#   last week / month / year     the previous full calendar unit
#   past week / month / year     rolling 7 days / 1 month / 12 months
#   last|past N days/weeks/...   rolling window ending today
#   year to date / ytd           Jan 1 → today
#   <month> [yyyy]               most recent such month not in the future
#   all time                     1970-01-01 → today
#   yyyy-mm-dd to yyyy-mm-dd     explicit range (swapped if reversed)
#   anything else                last 30 days
# =============================================================================

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta

DEFAULT_TIMEFRAME = "last 30 days"
EPOCH = date(1970, 1, 1)

MONTH_NAMES = {
    name.lower(): index
    for index, name in enumerate(calendar.month_name)
    if name
}

_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12,
}

# "may" is only a month when it cannot be the modal verb
_TIMEFRAME_RE = re.compile(
    r"""
    (?P<range>
        (?P<range_start>\d{4}-\d{2}-\d{2})
        \s*(?:to|through|until|and|-)\s*
        (?P<range_end>\d{4}-\d{2}-\d{2})
    )
    | (?P<relative>
        \b(?:last|past|previous)\s+
        (?P<count>\d+|one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve)
        \s+(?P<unit>day|week|month|year)s?\b
    )
    | (?P<fixed>
        \b(?:today|yesterday|year\s+to\s+date|ytd|all\s+time
        |(?:this|last|past|previous)\s+(?:week|month|year))\b
    )
    | (?P<month>
        \b(?:january|february|march|april|june|july|august|september
        |october|november|december)\b
        | (?<=\bin\s)may\b | (?<=during\s)may\b | \bmay(?=\s+\d{4})
    )(?:\s+(?P<year>\d{4}))?
    """,
    re.VERBOSE | re.IGNORECASE,
)


@dataclass(frozen=True)
class DateWindow:
    """Inclusive [start, end] date range with the phrase it came from."""

    start: date
    end: date
    label: str

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def preceding_months(self, months: int) -> DateWindow:
        """The `months` calendar months immediately before this window."""
        end = self.start - timedelta(days=1)
        start = shift_months(self.start, -months)
        return DateWindow(start, end, f"{months} months before {self.label}")

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "label": self.label,
        }


def shift_months(day: date, months: int) -> date:
    """Move `day` by whole months, clamping to the target month's length."""
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def _month_window(year: int, month: int, label: str) -> DateWindow:
    last_day = calendar.monthrange(year, month)[1]
    return DateWindow(date(year, month, 1), date(year, month, last_day), label)


def extract_timeframes(text: str) -> list[str]:
    """All timeframe phrases in `text`, in order of appearance."""
    return [m.group(0).lower() for m in _TIMEFRAME_RE.finditer(text or "")]


def extract_timeframe(text: str) -> str | None:
    """The first timeframe phrase in `text`, or None."""
    found = extract_timeframes(text)
    return found[0] if found else None


def parse_timeframe(phrase: str | None, today: date) -> DateWindow:
    """
    Resolve a timeframe phrase against `today`.

    Unknown or empty phrases resolve to the last 30 days rather than
    raising, so a data function always has a window to query.
    """
    text = " ".join((phrase or "").lower().split())
    match = _TIMEFRAME_RE.search(text)
    if match is None:
        return DateWindow(today - timedelta(days=30), today, DEFAULT_TIMEFRAME)

    if match.group("range"):
        start = date.fromisoformat(match.group("range_start"))
        end = date.fromisoformat(match.group("range_end"))
        if start > end:
            start, end = end, start
        return DateWindow(start, end, f"{start.isoformat()} to {end.isoformat()}")

    if match.group("relative"):
        raw = match.group("count")
        count = int(raw) if raw.isdigit() else _NUMBER_WORDS[raw]
        unit = match.group("unit")
        label = f"last {count} {unit}{'s' if count != 1 else ''}"
        if unit == "day":
            start = today - timedelta(days=count)
        elif unit == "week":
            start = today - timedelta(weeks=count)
        elif unit == "month":
            start = shift_months(today, -count)
        else:
            start = shift_months(today, -12 * count)
        return DateWindow(start, today, label)

    if match.group("month"):
        month = MONTH_NAMES[match.group("month").lower()]
        if match.group("year"):
            year = int(match.group("year"))
        else:
            year = today.year if month <= today.month else today.year - 1
        return _month_window(year, month, f"{calendar.month_name[month]} {year}")

    return _fixed_window(" ".join(match.group("fixed").split()), today)


def _fixed_window(phrase: str, today: date) -> DateWindow:
    if phrase == "today":
        return DateWindow(today, today, phrase)
    if phrase == "yesterday":
        day = today - timedelta(days=1)
        return DateWindow(day, day, phrase)
    if phrase in ("year to date", "ytd", "this year"):
        return DateWindow(date(today.year, 1, 1), today, phrase)
    if phrase == "all time":
        return DateWindow(EPOCH, today, phrase)

    qualifier, unit = phrase.split(" ")
    if qualifier == "this":
        if unit == "week":
            return DateWindow(today - timedelta(days=today.weekday()), today, phrase)
        return DateWindow(today.replace(day=1), today, phrase)

    if qualifier == "past":
        if unit == "week":
            return DateWindow(today - timedelta(days=7), today, phrase)
        if unit == "month":
            return DateWindow(shift_months(today, -1), today, phrase)
        return DateWindow(shift_months(today, -12), today, phrase)

    # last / previous: the previous full calendar unit
    if unit == "week":
        this_monday = today - timedelta(days=today.weekday())
        start = this_monday - timedelta(days=7)
        return DateWindow(start, start + timedelta(days=6), phrase)
    if unit == "month":
        previous = shift_months(today.replace(day=1), -1)
        return _month_window(previous.year, previous.month, phrase)
    return DateWindow(
        date(today.year - 1, 1, 1), date(today.year - 1, 12, 31), phrase,
    )
