import unittest
from datetime import datetime, timedelta, timezone

from coursetally.categorization import CategorizationStore
from coursetally.export import build_submission_batch, record_duration
from coursetally.local_events import LocalEventStore
from coursetally.models import (
    RECORD_CALENDAR,
    RECORD_MANUAL,
    Categorization,
    EventRef,
    MasterEntity,
    NormalizedEvent,
)
from coursetally.session import SessionStore


ALGEBRA = MasterEntity(id="C1", title="Algebra", source_row_id=2)


def _remote(event_id: str, title: str, start: datetime, minutes: int) -> NormalizedEvent:
    return NormalizedEvent(
        id=event_id,
        source_event_id=event_id,
        title=title,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        duration_minutes=minutes,
    )


class RecordDurationTests(unittest.TestCase):
    def _categorization(self, kind: str, manual: int | None, start: datetime | None, end: datetime | None) -> Categorization:
        return Categorization(
            id="cat_1",
            personal_event_ref=EventRef(kind, "e1"),
            master_entity_id="C1",
            personal_event_start=start,
            personal_event_end=end,
            manual_duration_minutes=manual,
        )

    def test_manual_duration_wins_when_positive(self) -> None:
        start = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
        item = self._categorization("local", 25, start, start + timedelta(minutes=60))
        self.assertEqual(record_duration(item), 25)

    def test_falls_back_to_derived_then_zero(self) -> None:
        start = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
        self.assertEqual(record_duration(self._categorization("local", 0, start, start + timedelta(minutes=50))), 50)
        self.assertEqual(record_duration(self._categorization("local", None, None, None)), 0)

    def test_remote_ignores_manual_duration(self) -> None:
        start = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)
        item = self._categorization("remote", 5, start, start + timedelta(minutes=90))
        self.assertEqual(record_duration(item), 90)


class BuildSubmissionBatchTests(unittest.TestCase):
    def setUp(self) -> None:
        session = SessionStore()
        self.store = CategorizationStore(session)
        self.local_events = LocalEventStore(session)
        self.standup = _remote("r-standup", "Standup", datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc), 60)
        self.review = _remote("r-review", "Review", datetime(2024, 3, 6, 14, 0, tzinfo=timezone.utc), 90)

    def test_no_categorizations_yields_empty_batch(self) -> None:
        self.assertEqual(build_submission_batch(self.store, [self.standup, self.review]), [])

    def test_record_shapes(self) -> None:
        homework = self.local_events.create({"title": "Homework", "duration_minutes": 40})
        self.store.categorize(self.review, ALGEBRA)
        self.store.categorize(homework, ALGEBRA)

        records = build_submission_batch(self.store, [self.review, homework])

        self.assertEqual(
            records[0].to_payload(),
            {
                "eventName": "Review",
                "eventType": RECORD_CALENDAR,
                "duration": 90,
                "courseId": "C1",
                "startTime": "2024-03-06T14:00:00+00:00",
                "endTime": "2024-03-06T15:30:00+00:00",
            },
        )
        self.assertEqual(
            records[1].to_payload(),
            {"eventName": "Homework", "eventType": RECORD_MANUAL, "duration": 40, "courseId": "C1"},
        )

    def test_orphan_categorization_is_pruned(self) -> None:
        self.store.categorize(self.standup, ALGEBRA)
        self.store.categorize(self.review, ALGEBRA)

        with self.assertLogs("coursetally.export", level="WARNING"):
            records = build_submission_batch(self.store, [self.review])

        self.assertEqual([record.event_name for record in records], ["Review"])
        self.assertIsNone(self.store.get(self.standup.ref))
        self.assertEqual(self.store.count(), 1)

    def test_local_and_remote_with_same_id_are_not_confused(self) -> None:
        remote = _remote("shared", "Remote", datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc), 30)
        local = NormalizedEvent(id="shared", source_event_id="shared", title="Local", duration_minutes=20, origin="local")
        self.store.categorize(local, ALGEBRA)

        with self.assertLogs("coursetally.export", level="WARNING"):
            records = build_submission_batch(self.store, [remote])

        self.assertEqual(records, [])


if __name__ == "__main__":
    unittest.main()
