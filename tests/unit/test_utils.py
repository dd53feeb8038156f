"""
Unit tests for parley.utils module.

Created by orpheus497

Tests timestamp parsing, temporary ids and text helpers.
"""

from datetime import datetime, timezone

from parley.utils import (
    format_key_preview,
    generate_temp_id,
    parse_timestamp,
    printable_ascii_ratio,
    truncate_string,
    utc_now_iso,
)


class TestTimestamps:
    """Test ISO 8601 handling."""

    def test_now_is_aware(self):
        assert parse_timestamp(utc_now_iso()).tzinfo is not None

    def test_zulu_suffix(self):
        parsed = parse_timestamp("2025-01-01T10:00:00Z")
        assert parsed == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        parsed = parse_timestamp("2025-01-01T10:00:00")
        assert parsed.tzinfo == timezone.utc

    def test_offsets_compare_correctly(self):
        assert parse_timestamp("2025-01-01T10:00:00+02:00") < parse_timestamp(
            "2025-01-01T09:00:00Z"
        )

    def test_invalid_is_epoch(self):
        assert parse_timestamp("yesterday").year == 1970
        assert parse_timestamp(None).year == 1970


class TestTempIds:
    """Test temporary id generation."""

    def test_prefix(self):
        assert generate_temp_id().startswith("temp-")

    def test_unique(self):
        assert len({generate_temp_id() for _ in range(100)}) == 100


class TestPrintableRatio:
    """Test printable ASCII ratio."""

    def test_all_printable(self):
        assert printable_ascii_ratio("Hello, World!\n\t") == 1.0

    def test_none_printable(self):
        assert printable_ascii_ratio("你好世界") == 0.0

    def test_mixed(self):
        assert printable_ascii_ratio("ab\x00\x01") == 0.5

    def test_empty(self):
        assert printable_ascii_ratio("") == 0.0


class TestStringHelpers:
    """Test display helpers."""

    def test_truncate_short(self):
        assert truncate_string("short", 10) == "short"

    def test_truncate_long(self):
        assert truncate_string("a" * 20, 10) == "aaaaaaa..."
        assert len(truncate_string("a" * 20, 10)) == 10

    def test_key_preview_hides_key(self):
        preview = format_key_preview(b"3f9a0c1e5d7b2a46")
        assert preview.startswith("3f9a0c1e")
        assert "5d7b2a46" not in preview
        assert "(16 bytes)" in preview
