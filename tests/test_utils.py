"""
Tests for time helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mtbrace.utils import elapsed_seconds, format_gap, format_time, minutes_until, round_half_up, to_naive_utc


class TestFormatTime:
    """Tests for format_time."""

    @pytest.mark.parametrize(
        "seconds, expected",
        [
            (3661, "1:01:01"),
            (125, "2:05"),
            (59, "0:59"),
            (3600, "1:00:00"),
            (36000, "10:00:00"),
        ],
    )
    def test_renders_display_format(self, seconds, expected):
        assert format_time(seconds) == expected

    def test_zero_and_none_are_null(self):
        assert format_time(0) is None
        assert format_time(None) is None


class TestFormatGap:
    def test_signed_gap(self):
        assert format_gap(500) == "+8:20"
        assert format_gap(1000) == "+16:40"

    def test_dead_heat(self):
        assert format_gap(0) == "+0:00"


class TestElapsedSeconds:
    def test_rounds_down(self):
        start = datetime(2025, 6, 1, 9, 0, 0)
        assert elapsed_seconds(start, start + timedelta(seconds=125, milliseconds=999)) == 125

    def test_whole_seconds(self):
        start = datetime(2025, 6, 1, 9, 0, 0)
        assert elapsed_seconds(start, start + timedelta(hours=2, seconds=13)) == 7213


class TestMinutesUntil:
    def test_rounds_half_up(self):
        now = datetime(2025, 6, 1, 8, 0, 0)
        assert minutes_until(now + timedelta(minutes=2, seconds=30), now) == 3
        assert minutes_until(now + timedelta(minutes=2, seconds=29), now) == 2

    def test_round_half_up(self):
        assert round_half_up(0.5) == 1
        assert round_half_up(2.5) == 3


def test_to_naive_utc_converts_aware_values():
    aware = datetime(2025, 6, 1, 11, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_naive_utc(aware) == datetime(2025, 6, 1, 9, 0, 0)
    naive = datetime(2025, 6, 1, 9, 0, 0)
    assert to_naive_utc(naive) is naive
