import unittest
from datetime import datetime, timezone

from coursetally.models import ORIGIN_REMOTE, UNTITLED_EVENT
from coursetally.normalizer import normalize_event, normalize_events, normalize_ical_event


def _ical(body: str) -> str:
    return "\r\n".join(
        ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//coursetally//tests//EN", "BEGIN:VEVENT"]
        + body.strip().splitlines()
        + ["END:VEVENT", "END:VCALENDAR", ""]
    )


class GoogleNormalizerTests(unittest.TestCase):
    def test_timed_event(self) -> None:
        event = normalize_event(
            {
                "id": "g1",
                "summary": "Standup",
                "location": "Room 1",
                "start": {"dateTime": "2024-03-04T09:00:00Z"},
                "end": {"dateTime": "2024-03-04T10:00:00Z"},
            }
        )
        assert event is not None
        self.assertEqual(event.id, "g1")
        self.assertEqual(event.source_event_id, "g1")
        self.assertEqual(event.title, "Standup")
        self.assertEqual(event.location, "Room 1")
        self.assertEqual(event.start_time, datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(event.duration_minutes, 60)
        self.assertFalse(event.is_all_day)
        self.assertEqual(event.origin, ORIGIN_REMOTE)
        self.assertEqual(event.status, "confirmed")

    def test_all_day_event_is_flagged(self) -> None:
        event = normalize_event({"id": "g2", "summary": "Holiday", "start": {"date": "2024-03-04"}, "end": {"date": "2024-03-05"}})
        assert event is not None
        self.assertTrue(event.is_all_day)
        self.assertEqual(event.duration_minutes, 24 * 60)

    def test_all_day_flag_follows_end_when_start_date_is_unparsable(self) -> None:
        event = normalize_event({"id": "g7", "summary": "Holiday", "start": {"date": "bogus"}, "end": {"date": "2024-03-12"}})
        assert event is not None
        self.assertTrue(event.is_all_day)
        self.assertEqual(event.duration_minutes, 0)

    def test_missing_summary_uses_placeholder(self) -> None:
        event = normalize_event(
            {"id": "g3", "start": {"dateTime": "2024-03-04T09:00:00Z"}, "end": {"dateTime": "2024-03-04T09:15:00Z"}}
        )
        assert event is not None
        self.assertEqual(event.title, UNTITLED_EVENT)

    def test_missing_end_copies_start(self) -> None:
        event = normalize_event({"id": "g4", "summary": "Ping", "start": {"dateTime": "2024-03-04T09:00:00Z"}})
        assert event is not None
        self.assertEqual(event.end_time, event.start_time)
        self.assertEqual(event.duration_minutes, 0)

    def test_unparsable_times_are_rejected(self) -> None:
        with self.assertLogs("coursetally.normalizer", level="WARNING"):
            event = normalize_event({"id": "g5", "start": {"dateTime": "soon"}, "end": {}})
        self.assertIsNone(event)

    def test_duration_is_floored(self) -> None:
        event = normalize_event(
            {
                "id": "g6",
                "start": {"dateTime": "2024-03-04T09:00:00+00:00"},
                "end": {"dateTime": "2024-03-04T09:10:59+00:00"},
            }
        )
        assert event is not None
        self.assertEqual(event.duration_minutes, 10)

    def test_normalize_events_skips_rejected(self) -> None:
        with self.assertLogs("coursetally.normalizer", level="WARNING"):
            events = normalize_events(
                [
                    {"id": "ok", "start": {"dateTime": "2024-03-04T09:00:00Z"}, "end": {"dateTime": "2024-03-04T10:00:00Z"}},
                    {"id": "bad"},
                ]
            )
        self.assertEqual([event.id for event in events], ["ok"])


class ICalNormalizerTests(unittest.TestCase):
    def test_timed_vevent(self) -> None:
        event = normalize_ical_event(
            _ical(
                """
UID:ical-1
SUMMARY:Review
STATUS:CONFIRMED
DTSTART:20240306T140000Z
DTEND:20240306T153000Z
"""
            )
        )
        assert event is not None
        self.assertEqual(event.id, "ical-1")
        self.assertEqual(event.title, "Review")
        self.assertEqual(event.duration_minutes, 90)
        self.assertEqual(event.status, "confirmed")

    def test_duration_property_sets_end(self) -> None:
        event = normalize_ical_event(
            _ical(
                """
UID:ical-2
SUMMARY:Short
DTSTART:20240306T140000Z
DURATION:PT45M
"""
            ).encode("utf-8")
        )
        assert event is not None
        self.assertEqual(event.end_time, datetime(2024, 3, 6, 14, 45, tzinfo=timezone.utc))
        self.assertEqual(event.duration_minutes, 45)

    def test_date_valued_event_is_all_day(self) -> None:
        event = normalize_ical_event(
            _ical(
                """
UID:ical-3
SUMMARY:Offsite
DTSTART;VALUE=DATE:20240304
DTEND;VALUE=DATE:20240305
"""
            )
        )
        assert event is not None
        self.assertTrue(event.is_all_day)

    def test_date_valued_end_alone_marks_all_day(self) -> None:
        event = normalize_ical_event(
            _ical(
                """
UID:ical-4
SUMMARY:Offsite
DTEND;VALUE=DATE:20240305
"""
            )
        )
        assert event is not None
        self.assertTrue(event.is_all_day)

    def test_calendar_without_vevent_is_rejected(self) -> None:
        raw = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//x//EN\r\nEND:VCALENDAR\r\n"
        with self.assertLogs("coursetally.normalizer", level="WARNING"):
            self.assertIsNone(normalize_ical_event(raw))


if __name__ == "__main__":
    unittest.main()
