"""Tests for TAT snapshot derivation, TAT parsing and business-hour arithmetic."""
from datetime import datetime, timedelta, timezone

import pytest

from core import ValidationException
from escalation.domain import TATCalculator, normalize_tat_metadata

from conftest import NOW


class TestComputeSnapshot:
    def test_no_deadline(self, make_ticket):
        snapshot = TATCalculator.compute_snapshot(make_ticket(resolution_due_at=None), NOW)

        assert snapshot.deadline is None
        assert snapshot.is_overdue is False
        assert snapshot.formatted_deadline == "No deadline"
        assert snapshot.remaining_seconds is None

    def test_past_deadline_is_overdue(self, make_ticket):
        snapshot = TATCalculator.compute_snapshot(make_ticket(), NOW)

        assert snapshot.is_overdue is True
        assert snapshot.remaining_seconds == -3600

    def test_deadline_equal_to_now_is_not_overdue(self, make_ticket):
        snapshot = TATCalculator.compute_snapshot(make_ticket(resolution_due_at=NOW), NOW)

        assert snapshot.is_overdue is False

    def test_future_deadline(self, make_ticket):
        due = NOW + timedelta(days=2)
        snapshot = TATCalculator.compute_snapshot(make_ticket(resolution_due_at=due), NOW)

        assert snapshot.is_overdue is False
        assert snapshot.expected_resolution == due
        assert snapshot.formatted_deadline == "Mar 06, 2026"

    def test_mapping_with_camel_case_deadline_string(self):
        ticket = {"resolutionDueAt": "2026-03-04T11:00:00Z", "metadata": None}

        snapshot = TATCalculator.compute_snapshot(ticket, NOW)

        assert snapshot.deadline == datetime(2026, 3, 4, 11, 0, tzinfo=timezone.utc)
        assert snapshot.is_overdue is True

    def test_naive_deadline_is_taken_as_utc(self):
        ticket = {"resolution_due_at": datetime(2026, 3, 4, 13, 0)}

        snapshot = TATCalculator.compute_snapshot(ticket, NOW)

        assert snapshot.deadline.tzinfo is not None
        assert snapshot.is_overdue is False

    @pytest.mark.parametrize("raw", ["not-a-date", "", 12345, {"nested": True}])
    def test_malformed_deadline_degrades_to_no_deadline(self, raw):
        snapshot = TATCalculator.compute_snapshot({"resolution_due_at": raw}, NOW)

        assert snapshot.deadline is None
        assert snapshot.is_overdue is False
        assert snapshot.formatted_deadline == "No deadline"

    def test_none_ticket(self):
        snapshot = TATCalculator.compute_snapshot(None, NOW)

        assert snapshot.deadline is None
        assert snapshot.is_overdue is False

    def test_metadata_is_carried_through(self, make_ticket):
        ticket = make_ticket(metadata={
            "tatSetAt": "2026-03-02T09:00:00Z",
            "tatSetBy": "committee_1",
            "tat": "2 days",
            "tatExtensions": [{"hours": 24, "reason": "Vendor", "extendedBy": "committee_1"}],
        })

        snapshot = TATCalculator.compute_snapshot(ticket, NOW)

        assert snapshot.tat == "2 days"
        assert snapshot.tat_set_by == "committee_1"
        assert snapshot.tat_set_at == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert len(snapshot.tat_extensions) == 1
        assert snapshot.tat_extensions[0].hours == 24


class TestMetadataSpellings:
    def test_camel_and_snake_case_normalize_identically(self):
        camel = {
            "tatSetAt": "2026-03-02T09:00:00Z",
            "tatSetBy": "committee_1",
            "tat": "48",
            "tatExtensions": [{"extendedAt": "2026-03-03T09:00:00Z", "hours": 8, "newDueAt": "2026-03-05T09:00:00Z"}],
        }
        snake = {
            "tat_set_at": "2026-03-02T09:00:00Z",
            "tat_set_by": "committee_1",
            "tat": "48",
            "tat_extensions": [{"extended_at": "2026-03-03T09:00:00Z", "hours": 8, "new_due_at": "2026-03-05T09:00:00Z"}],
        }

        assert normalize_tat_metadata(camel) == normalize_tat_metadata(snake)

    def test_camel_case_wins_when_both_present(self):
        raw = {"tatSetBy": "camel", "tat_set_by": "snake"}

        assert normalize_tat_metadata(raw).tat_set_by == "camel"

    def test_non_mapping_metadata(self):
        meta = normalize_tat_metadata("garbage")

        assert meta.tat is None
        assert meta.tat_extensions == ()

    def test_malformed_extension_entries_are_dropped(self):
        meta = normalize_tat_metadata({"tatExtensions": ["bad", None, {"hours": "4"}]})

        assert len(meta.tat_extensions) == 1
        assert meta.tat_extensions[0].hours == 4


class TestParseTAT:
    @pytest.mark.parametrize("text,hours", [
        ("48", 48),
        ("5 hours", 5),
        ("1 hour", 1),
        ("2 days", 48),
        ("1 week", 168),
        ("  3 Days ", 72),
        (12, 12),
    ])
    def test_valid(self, text, hours):
        assert TATCalculator.parse_tat(text) == hours

    @pytest.mark.parametrize("text", ["soon", "2 months", "", None, "0 hours", "-4"])
    def test_invalid(self, text):
        with pytest.raises(ValidationException):
            TATCalculator.parse_tat(text)


class TestAddBusinessHours:
    def test_within_the_week(self):
        start = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)  # Wednesday

        assert TATCalculator.add_business_hours(start, 48) == datetime(2026, 3, 6, 12, 0, tzinfo=timezone.utc)

    def test_skips_weekend(self):
        start = datetime(2026, 3, 6, 20, 0, tzinfo=timezone.utc)  # Friday

        result = TATCalculator.add_business_hours(start, 8)

        assert result == datetime(2026, 3, 9, 4, 0, tzinfo=timezone.utc)

    def test_weekend_start_counts_from_monday(self):
        start = datetime(2026, 3, 7, 10, 0, tzinfo=timezone.utc)  # Saturday

        result = TATCalculator.add_business_hours(start, 2)

        assert result == datetime(2026, 3, 9, 2, 0, tzinfo=timezone.utc)

    def test_zero_hours(self):
        assert TATCalculator.add_business_hours(NOW, 0) == NOW
