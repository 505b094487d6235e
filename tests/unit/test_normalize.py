"""Unit tests for clinic_etl.normalize."""

from datetime import datetime, timedelta, timezone

import pytest

from clinic_etl.normalize import (
    as_text,
    ensure_utc,
    isoformat_z,
    normalize_email,
    normalize_phone,
    normalize_space,
    organization_email,
    organization_key,
    parse_iso_ts,
    trim,
)


# ---------------------------------------------------------------------------
# as_text / trim / normalize_space
# ---------------------------------------------------------------------------

class TestAsText:
    def test_none(self):
        assert as_text(None) is None

    def test_bool(self):
        assert as_text(True) == "True"

    def test_list_joins(self):
        assert as_text(["a", None, "b"]) == "a, b"


class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_number(self):
        assert trim(42) == "42"


class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("Jane    Doe") == "Jane Doe"

    def test_collapses_newlines(self):
        assert normalize_space("Jane\n\tDoe") == "Jane Doe"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# normalize_email / normalize_phone
# ---------------------------------------------------------------------------

class TestNormalizeEmail:
    def test_lowercases(self):
        assert normalize_email("  Jane@Example.COM ") == "jane@example.com"

    def test_blank(self):
        assert normalize_email(" ") is None


class TestNormalizePhone:
    def test_ten_digits(self):
        assert normalize_phone("(207) 555-1234") == "+12075551234"

    def test_eleven_digits_leading_one(self):
        assert normalize_phone("1-207-555-1234") == "+12075551234"

    def test_international(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_too_short(self):
        assert normalize_phone("555") is None

    def test_none(self):
        assert normalize_phone(None) is None


# ---------------------------------------------------------------------------
# organization_key
# ---------------------------------------------------------------------------

class TestOrganizationKey:
    def test_strips_punctuation_and_spaces(self):
        assert organization_key("Joint Chiro - Capitol Hill") == "jointchirocapitolhill"

    def test_case_insensitive(self):
        assert organization_key("ABC Clinic") == organization_key("abc clinic")

    def test_accents_folded(self):
        assert organization_key("Clínica Señor") == "clinicasenor"

    def test_non_latin_name_kept(self):
        assert organization_key("日本 クリニック") == "日本クリニック"
        assert organization_key("Клиника Здоровье") == "клиниказдоровье"

    def test_distinct_non_latin_names_stay_distinct(self):
        assert organization_key("日本クリニック") != organization_key("東京クリニック")

    def test_voiced_kana_not_folded(self):
        assert organization_key("グリーン") != organization_key("クリーン")

    def test_only_symbols_is_none(self):
        assert organization_key("---") is None

    def test_email(self):
        assert organization_email("abcclinic") == "abcclinic@clinic.com"


# ---------------------------------------------------------------------------
# timestamps
# ---------------------------------------------------------------------------

class TestParseIsoTs:
    def test_trailing_z(self):
        assert parse_iso_ts("2025-09-15T10:00:00.000Z") == datetime(
            2025, 9, 15, 10, 0, tzinfo=timezone.utc
        )

    def test_offset_converted_to_utc(self):
        assert parse_iso_ts("2025-09-15T10:00:00-04:00") == datetime(
            2025, 9, 15, 14, 0, tzinfo=timezone.utc
        )

    def test_naive_assumed_utc(self):
        assert parse_iso_ts("2025-09-15 10:00").tzinfo == timezone.utc

    def test_garbage(self):
        assert parse_iso_ts("yesterday") is None

    def test_none(self):
        assert parse_iso_ts(None) is None


class TestEnsureUtc:
    def test_aware_converted(self):
        dt = datetime(2025, 1, 1, 12, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(dt) == datetime(2025, 1, 1, 10, tzinfo=timezone.utc)


@pytest.mark.parametrize("dt,expected", [
    (datetime(2025, 9, 15, 10, 0, 5, 123, tzinfo=timezone.utc), "2025-09-15T10:00:05Z"),
    (datetime(2025, 9, 15, 6, 0), "2025-09-15T06:00:00Z"),
])
def test_isoformat_z(dt, expected):
    assert isoformat_z(dt) == expected
