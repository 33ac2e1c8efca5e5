import tempfile
import unittest
from pathlib import Path

from coursetally.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "data" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_meta_round_trip(self) -> None:
        self.store.set_meta("panel_left_width", "320")
        self.store.set_meta("panel_left_width", "330")
        self.assertEqual(self.store.get_meta("panel_left_width"), "330")
        self.assertTrue(self.store.delete_meta("panel_left_width"))
        self.assertFalse(self.store.delete_meta("panel_left_width"))
        self.assertIsNone(self.store.get_meta("panel_left_width"))

    def test_json_meta_falls_back_on_corrupt_value(self) -> None:
        self.store.set_json_meta("ids", ["C1", "C2"])
        self.assertEqual(self.store.get_json_meta("ids"), ["C1", "C2"])
        self.store.set_meta("ids", "{broken")
        self.assertEqual(self.store.get_json_meta("ids", []), [])

    def test_meta_keys_prefix_is_literal(self) -> None:
        self.store.set_meta("calendar_events_week_-1", "{}")
        self.store.set_meta("calendar_events_week_0", "{}")
        self.store.set_meta("calendarXevents", "{}")
        self.assertEqual(
            self.store.meta_keys("calendar_events_week_"),
            ["calendar_events_week_-1", "calendar_events_week_0"],
        )

    def test_submission_runs_newest_first(self) -> None:
        self.store.record_submission_run(week_id="2024-10", status="error", message="x", duration_ms=5, record_count=2)
        run_id = self.store.record_submission_run(
            week_id="2024-11",
            status="success",
            message="Saved",
            duration_ms=12,
            record_count=3,
            new_records=3,
            batch_id="b-9",
        )
        runs = self.store.recent_submission_runs(limit=5)
        self.assertEqual(runs[0]["id"], run_id)
        self.assertEqual(runs[0]["batch_id"], "b-9")
        self.assertEqual(runs[1]["status"], "error")

    def test_audit_filter_by_action(self) -> None:
        self.store.record_audit_event(subject="event", ref="remote:r1", action="categorize", details={"master_entity_id": "C1"})
        self.store.record_audit_event(subject="event", ref="remote:r1", action="uncategorize", details={})
        events = self.store.recent_audit_events(action="categorize")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["details"], {"master_entity_id": "C1"})


if __name__ == "__main__":
    unittest.main()
