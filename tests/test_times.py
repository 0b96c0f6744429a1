"""
Unit tests for schedule.times: pure functions, no DB.
"""

from datetime import datetime

from schedule.times import (
    format_seconds,
    seconds_since_midnight,
    seconds_to_minutes,
    time_to_seconds,
)


class TestTimeToSeconds:
    def test_normal_time(self):
        assert time_to_seconds("08:30:00") == 8 * 3600 + 30 * 60

    def test_midnight(self):
        assert time_to_seconds("00:00:00") == 0

    def test_over_24h(self):
        # GTFS allows times past midnight for overnight trips
        assert time_to_seconds("25:30:00") == 91800

    def test_single_digit_hour(self):
        assert time_to_seconds("7:05:09") == 7 * 3600 + 5 * 60 + 9

    def test_invalid_string_is_none(self):
        assert time_to_seconds("bad") is None

    def test_non_numeric_parts_are_none(self):
        assert time_to_seconds("aa:bb:cc") is None

    def test_partial_string_is_none(self):
        assert time_to_seconds("08:30") is None

    def test_empty_and_none(self):
        assert time_to_seconds("") is None
        assert time_to_seconds(None) is None


class TestFormatSeconds:
    def test_round_trip_under_24h(self):
        for hms in ("00:00:00", "08:05:09", "23:59:59", "12:00:01"):
            assert format_seconds(time_to_seconds(hms)) == hms

    def test_over_24h_keeps_hours(self):
        assert format_seconds(91800) == "25:30:00"

    def test_negative_total(self):
        assert format_seconds(-65) == "-00:01:05"

    def test_negative_hours(self):
        assert format_seconds(-3661) == "-01:01:01"

    def test_none(self):
        assert format_seconds(None) is None


class TestSecondsToMinutes:
    def test_rounds_to_one_decimal(self):
        assert seconds_to_minutes(90) == 1.5
        assert seconds_to_minutes(100) == 1.7

    def test_negative(self):
        assert seconds_to_minutes(-30) == -0.5

    def test_none(self):
        assert seconds_to_minutes(None) is None


def test_seconds_since_midnight():
    assert seconds_since_midnight(datetime(2026, 2, 9, 23, 58, 0)) == 86280
