"""Unit tests for the pure task/routine <-> event mapping."""

from __future__ import annotations

from datetime import date

import pytest

from calendar_sync.errors import MappingError
from calendar_sync.schemas import ExternalEvent
from calendar_sync.services import event_mapper

pytestmark = pytest.mark.unit


def _task(**overrides):
    task = {
        "id": "42",
        "title": "Submit report",
        "description": None,
        "scheduled_date": "2025-06-01",
        "scheduled_start": None,
        "scheduled_end": None,
        "is_all_day": 0,
        "is_private": 0,
    }
    task.update(overrides)
    return task


class TestTaskToEvent:
    def test_unscheduled_time_defaults_to_nine_to_ten(self):
        body = event_mapper.task_to_event(_task(), "UTC")

        assert body["summary"] == "Submit report"
        assert body["start"]["dateTime"] == "2025-06-01T09:00:00+00:00"
        assert body["end"]["dateTime"] == "2025-06-01T10:00:00+00:00"
        assert body["start"]["timeZone"] == "UTC"
        assert body["extendedProperties"]["private"][event_mapper.TASK_ID_PROPERTY] == "42"

    def test_start_without_end_lasts_one_hour(self):
        body = event_mapper.task_to_event(_task(scheduled_start="14:30"), "UTC")

        assert body["start"]["dateTime"] == "2025-06-01T14:30:00+00:00"
        assert body["end"]["dateTime"] == "2025-06-01T15:30:00+00:00"

    def test_end_before_start_rolls_to_next_day(self):
        body = event_mapper.task_to_event(_task(scheduled_start="23:00", scheduled_end="01:00"), "UTC")

        assert body["end"]["dateTime"] == "2025-06-02T01:00:00+00:00"

    def test_times_are_expressed_in_link_timezone(self):
        body = event_mapper.task_to_event(_task(scheduled_start="09:00", scheduled_end="09:45"), "Europe/Berlin")

        assert body["start"]["dateTime"] == "2025-06-01T09:00:00+02:00"
        assert body["end"]["dateTime"] == "2025-06-01T09:45:00+02:00"
        assert body["start"]["timeZone"] == "Europe/Berlin"

    def test_all_day_uses_exclusive_end_date(self):
        body = event_mapper.task_to_event(_task(is_all_day=1), "UTC")

        assert body["start"]["date"] == "2025-06-01"
        assert body["end"]["date"] == "2025-06-02"
        assert body["start"]["dateTime"] is None

    def test_private_task_is_never_mapped(self):
        assert event_mapper.task_to_event(_task(is_private=1), "UTC") is None

    @pytest.mark.parametrize("title", ["", "   ", None])
    def test_empty_title_raises(self, title):
        with pytest.raises(MappingError):
            event_mapper.task_to_event(_task(title=title), "UTC")

    def test_unscheduled_task_raises(self):
        with pytest.raises(MappingError):
            event_mapper.task_to_event(_task(scheduled_date=None), "UTC")


class TestRoutineMapping:
    def test_occurrence_is_marked_and_tagged(self):
        routine = {"id": "7", "title": "Morning run", "scheduled_time": "06:30", "duration_minutes": 45}

        body = event_mapper.routine_to_event(routine, date(2025, 6, 1), "UTC")

        assert body["summary"] == "[Routine] Morning run"
        assert body["start"]["dateTime"] == "2025-06-01T06:30:00+00:00"
        assert body["end"]["dateTime"] == "2025-06-01T07:15:00+00:00"
        private = body["extendedProperties"]["private"]
        assert private[event_mapper.ROUTINE_ID_PROPERTY] == "7"
        assert private[event_mapper.OCCURRENCE_PROPERTY] == "2025-06-01"

    def test_defaults_to_nine_for_an_hour(self):
        body = event_mapper.routine_to_event({"id": "7", "title": "Stretch"}, date(2025, 6, 1), "UTC")

        assert body["start"]["dateTime"] == "2025-06-01T09:00:00+00:00"
        assert body["end"]["dateTime"] == "2025-06-01T10:00:00+00:00"

    def test_private_routine_is_never_mapped(self):
        assert event_mapper.routine_to_event({"id": "7", "title": "x", "is_private": 1}, date(2025, 6, 1), "UTC") is None

    def test_daily_schedule_covers_every_day(self):
        dates = event_mapper.routine_occurrence_dates({"frequency": "daily"}, date(2025, 6, 1), 7)

        assert dates == [date(2025, 6, day) for day in range(1, 8)]

    def test_weekdays_skip_the_weekend(self):
        # 2025-06-01 is a Sunday.
        dates = event_mapper.routine_occurrence_dates({"frequency": "weekdays"}, date(2025, 6, 1), 7)

        assert dates == [date(2025, 6, day) for day in range(2, 7)]

    def test_explicit_days_win_over_frequency(self):
        routine = {"frequency": "daily", "days_of_week": [0, 3]}

        dates = event_mapper.routine_occurrence_dates(routine, date(2025, 6, 1), 7)

        assert dates == [date(2025, 6, 2), date(2025, 6, 5)]

    def test_marker_helpers(self):
        assert event_mapper.has_routine_marker("[Routine] Morning run")
        assert not event_mapper.has_routine_marker("Morning run")
        assert event_mapper.strip_routine_marker("[Routine] Morning run") == "Morning run"
        assert event_mapper.strip_routine_marker("Lunch") == "Lunch"


class TestEventToTaskFields:
    def test_timed_event_converts_into_link_timezone(self):
        event = ExternalEvent.from_google(
            {
                "id": "e1",
                "summary": "Dentist",
                "start": {"dateTime": "2025-06-02T14:00:00Z"},
                "end": {"dateTime": "2025-06-02T15:30:00Z"},
            }
        )

        fields = event_mapper.event_to_task_fields(event, "Europe/Berlin")

        assert fields["scheduled_date"] == "2025-06-02"
        assert fields["scheduled_start"] == "16:00"
        assert fields["scheduled_end"] == "17:30"
        assert fields["is_all_day"] == 0

    def test_naive_datetime_uses_declared_timezone(self):
        event = ExternalEvent.from_google(
            {
                "id": "e1",
                "summary": "Call",
                "start": {"dateTime": "2025-06-02T09:00:00", "timeZone": "America/New_York"},
            }
        )

        fields = event_mapper.event_to_task_fields(event, "UTC")

        assert fields["scheduled_start"] == "13:00"
        assert fields["scheduled_end"] is None

    def test_end_past_midnight_is_clamped(self):
        event = ExternalEvent.from_google(
            {
                "id": "e1",
                "summary": "Night shift",
                "start": {"dateTime": "2025-06-02T22:00:00+00:00"},
                "end": {"dateTime": "2025-06-03T02:00:00+00:00"},
            }
        )

        fields = event_mapper.event_to_task_fields(event, "UTC")

        assert fields["scheduled_date"] == "2025-06-02"
        assert fields["scheduled_end"] == "23:59"

    def test_all_day_event_maps_to_date_only(self):
        event = ExternalEvent.from_google(
            {"id": "e1", "summary": "Holiday", "start": {"date": "2025-06-09"}, "end": {"date": "2025-06-10"}}
        )

        fields = event_mapper.event_to_task_fields(event, "UTC")

        assert fields == {
            "title": "Holiday",
            "description": None,
            "scheduled_date": "2025-06-09",
            "scheduled_start": None,
            "scheduled_end": None,
            "is_all_day": 1,
        }

    def test_blank_title_cannot_be_mapped(self):
        event = ExternalEvent.from_google({"id": "e1", "summary": "  ", "start": {"date": "2025-06-09"}})

        with pytest.raises(MappingError):
            event_mapper.event_to_task_fields(event, "UTC")

    def test_round_trip_preserves_schedule(self):
        body = event_mapper.task_to_event(_task(scheduled_start="10:15", scheduled_end="11:00"), "Europe/Berlin")
        event = ExternalEvent.from_google({"id": "e1", **body})

        fields = event_mapper.event_to_task_fields(event, "Europe/Berlin")

        assert (fields["scheduled_date"], fields["scheduled_start"], fields["scheduled_end"]) == (
            "2025-06-01",
            "10:15",
            "11:00",
        )
        assert event_mapper.linked_task_id(event) == "42"
