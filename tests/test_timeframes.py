# =============================================================================
# Unit Tests — Timeframe Parsing
# =============================================================================

from __future__ import annotations

from datetime import date

from finquery.services.timeframes import (
    DEFAULT_TIMEFRAME,
    extract_timeframes,
    parse_timeframe,
    shift_months,
)

TODAY = date(2025, 6, 15)


class TestParseTimeframe:
    """Phrase → inclusive DateWindow."""

    def test_last_month_is_previous_calendar_month(self):
        w = parse_timeframe("last month", TODAY)
        assert (w.start, w.end) == (date(2025, 5, 1), date(2025, 5, 31))

    def test_last_month_in_january_wraps_year(self):
        w = parse_timeframe("last month", date(2025, 1, 10))
        assert (w.start, w.end) == (date(2024, 12, 1), date(2024, 12, 31))

    def test_this_month_runs_to_today(self):
        w = parse_timeframe("this month", TODAY)
        assert (w.start, w.end) == (date(2025, 6, 1), TODAY)

    def test_last_week_is_monday_to_sunday(self):
        w = parse_timeframe("last week", TODAY)
        assert (w.start, w.end) == (date(2025, 6, 2), date(2025, 6, 8))
        assert w.start.weekday() == 0

    def test_this_week_starts_monday(self):
        w = parse_timeframe("this week", TODAY)
        assert w.start == date(2025, 6, 9)

    def test_last_year(self):
        w = parse_timeframe("last year", TODAY)
        assert (w.start, w.end) == (date(2024, 1, 1), date(2024, 12, 31))

    def test_rolling_days(self):
        w = parse_timeframe("last 7 days", TODAY)
        assert (w.start, w.end) == (date(2025, 6, 8), TODAY)
        assert w.label == "last 7 days"

    def test_number_words(self):
        w = parse_timeframe("past three months", TODAY)
        assert w.start == date(2025, 3, 15)
        assert w.label == "last 3 months"

    def test_named_month_not_in_future(self):
        w = parse_timeframe("in july", TODAY)
        assert (w.start, w.end) == (date(2024, 7, 1), date(2024, 7, 31))

    def test_named_month_with_year(self):
        w = parse_timeframe("february 2024", TODAY)
        assert (w.start, w.end) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_explicit_range_swapped_when_reversed(self):
        w = parse_timeframe("2025-03-31 to 2025-01-01", TODAY)
        assert (w.start, w.end) == (date(2025, 1, 1), date(2025, 3, 31))

    def test_unknown_phrase_defaults_to_last_30_days(self):
        w = parse_timeframe("whenever", TODAY)
        assert w.label == DEFAULT_TIMEFRAME
        assert w.days == 31

    def test_empty_phrase_defaults(self):
        assert parse_timeframe(None, TODAY).label == DEFAULT_TIMEFRAME


class TestExtractTimeframes:
    """Finding phrases inside a question."""

    def test_finds_in_order(self):
        text = "compare last month and this month"
        assert extract_timeframes(text) == ["last month", "this month"]

    def test_may_as_verb_is_ignored(self):
        assert extract_timeframes("may i see my spending") == []

    def test_may_as_month(self):
        assert extract_timeframes("what did i spend in may") == ["may"]

    def test_nothing_found(self):
        assert extract_timeframes("how much on coffee") == []


class TestShiftMonths:
    def test_clamps_to_month_end(self):
        assert shift_months(date(2025, 3, 31), -1) == date(2025, 2, 28)

    def test_crosses_year(self):
        assert shift_months(date(2025, 1, 15), -2) == date(2024, 11, 15)
