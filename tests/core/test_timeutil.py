"""Tests for time and identifier helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from storesync.core.timeutil import format_ts, is_uuid, parse_ts


class TestTimestamps:
    """Tests for format_ts and parse_ts."""

    def test_format_fixed_width(self) -> None:
        value = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

        assert format_ts(value) == "2026-03-02T09:00:00.000000+00:00"

    def test_format_converts_to_utc(self) -> None:
        value = datetime(2026, 3, 2, 11, 0, tzinfo=timezone(timedelta(hours=2)))

        assert format_ts(value) == "2026-03-02T09:00:00.000000+00:00"

    def test_naive_is_utc(self) -> None:
        assert format_ts(datetime(2026, 3, 2, 9, 0)) == "2026-03-02T09:00:00.000000+00:00"
        assert parse_ts("2026-03-02T09:00:00") == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    @pytest.mark.parametrize(
        "text",
        [
            "2026-03-02T09:00:00Z",
            "2026-03-02T09:00:00.000000+00:00",
            "2026-03-02 09:00:00",
            "2026-03-02T10:00:00+01:00",
        ],
    )
    def test_parse_forms(self, text: str) -> None:
        assert parse_ts(text) == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_parse_empty_or_invalid(self, value: str | None) -> None:
        assert parse_ts(value) is None

    def test_text_order_matches_time_order(self) -> None:
        earlier = format_ts(datetime(2026, 3, 2, 9, 0, 0, 5, tzinfo=UTC))
        later = format_ts(datetime(2026, 3, 2, 9, 0, 1, tzinfo=UTC))

        assert earlier < later


class TestIsUuid:
    """Tests for is_uuid."""

    def test_uuid(self) -> None:
        assert is_uuid("11111111-1111-1111-1111-111111111111")
        assert is_uuid("ABCDEF01-2345-6789-ABCD-EF0123456789")

    @pytest.mark.parametrize("value", ["C1", "0123456789abcdef0123456789abcdef", "", None, 42])
    def test_not_uuid(self, value: object) -> None:
        assert not is_uuid(value)
