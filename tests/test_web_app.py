import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from coursetally.errors import AuthRequired, SubmissionError
from coursetally.models import MasterEntity, SubmissionResult
from coursetally.web_app import create_app


NOW = datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc)

REMOTE_EVENTS = [
    {
        "id": "r-standup",
        "summary": "Standup",
        "start": {"dateTime": "2024-03-04T09:00:00Z"},
        "end": {"dateTime": "2024-03-04T10:00:00Z"},
    },
    {
        "id": "r-review",
        "summary": "Review",
        "start": {"dateTime": "2024-03-06T14:00:00Z"},
        "end": {"dateTime": "2024-03-06T15:30:00Z"},
    },
]


class WebAppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        os.environ["COURSETALLY_CONFIG_PATH"] = str(Path(self.temp_dir.name) / "config.yaml")
        os.environ["COURSETALLY_STATE_PATH"] = str(Path(self.temp_dir.name) / "state.db")
        self.app = create_app()
        self.client = TestClient(self.app)

        seed_payload = {
            "identity": {"access_token": "secret-token", "user_email": "me@example.com"},
            "calendar": {"caldav_password": "secret-pass"},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

        context = self.app.state.context
        self.calendar = mock.Mock()
        self.calendar.fetch_remote_events.return_value = REMOTE_EVENTS
        self.reference = mock.Mock()
        self.reference.fetch_master_entities.return_value = [
            MasterEntity(id="C1", title="Algebra", source_row_id=2),
            MasterEntity(id="C2", title="Biology", source_row_id=3),
        ]
        self.ledger = mock.Mock()
        context.orchestrator.calendar = self.calendar
        context.orchestrator.clock = lambda: NOW
        context.orchestrator.ledger = None
        context.master_entities.provider = self.reference
        context.submissions.ledger = self.ledger

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _load_week(self) -> dict:
        resp = self.client.get("/api/week", params={"offset": -1})
        self.assertEqual(resp.status_code, 200)
        return resp.json()

    def _drop(self, kind: str, event_id: str, target: dict) -> dict:
        resp = self.client.post("/api/drop", json={"event": {"kind": kind, "id": event_id}, "target": target})
        self.assertEqual(resp.status_code, 200)
        return resp.json()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_is_masked(self) -> None:
        data = self.client.get("/api/config").json()
        self.assertEqual(data["identity"]["access_token"], "***")
        self.assertEqual(data["calendar"]["caldav_password"], "***")

    def test_put_config_masked_secret_does_not_override(self) -> None:
        resp = self.client.put(
            "/api/config",
            json={"payload": {"identity": {"access_token": "***"}, "calendar": {"caldav_password": ""}}},
        )
        self.assertEqual(resp.status_code, 200)
        stored = self.app.state.context.config_manager.load()
        self.assertEqual(stored.identity.access_token, "secret-token")
        self.assertEqual(stored.calendar.caldav_password, "secret-pass")

    def test_week_view_merges_local_events(self) -> None:
        self._load_week()
        resp = self.client.post(
            "/api/local-events",
            json={"title": "Gym", "start_time": "2024-03-05T08:00:00Z", "end_time": "2024-03-05T08:30:00Z"},
        )
        self.assertEqual(resp.status_code, 200)

        data = self._load_week()

        self.assertEqual(data["label"], "Last Week")
        self.assertEqual(data["week_id"], "2024-10")
        self.assertEqual([event["title"] for event in data["view"]["events"]], ["Standup", "Gym", "Review"])
        self.assertEqual(self.client.get("/api/export").json()["records"], [])

    def test_invalid_local_event_is_rejected(self) -> None:
        resp = self.client.post("/api/local-events", json={"title": "Gym"})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.patch("/api/local-events/local_missing", json={"title": "x"})
        self.assertEqual(resp.status_code, 404)

    def test_auth_failure_maps_to_401(self) -> None:
        self.calendar.fetch_remote_events.side_effect = AuthRequired("calendar: credential rejected")
        resp = self.client.get("/api/week", params={"offset": -1})
        self.assertEqual(resp.status_code, 401)

    def test_categorize_export_and_submit(self) -> None:
        self._load_week()
        self.assertEqual(len(self.client.get("/api/master-entities").json()["master_entities"]), 2)

        outcome = self._drop("remote", "r-review", {"type": "master_entity", "master_entity_id": "C1"})
        self.assertTrue(outcome["applied"])
        self.assertEqual(outcome["categorization"]["master_entity_id"], "C1")

        records = self.client.get("/api/export").json()["records"]
        self.assertEqual(records[0]["eventName"], "Review")
        self.assertEqual(records[0]["duration"], 90)

        self.ledger.submit.return_value = SubmissionResult(
            message="Saved", new_records=1, marked_as_invalid=0, batch_id="b-1", week_id="2024-10"
        )
        resp = self.client.post("/api/submit")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["batch_id"], "b-1")
        runs = self.client.get("/api/submissions").json()["runs"]
        self.assertEqual(runs[0]["status"], "success")

    def test_submit_errors(self) -> None:
        self._load_week()
        self.assertEqual(self.client.post("/api/submit").status_code, 400)

        self._drop("remote", "r-review", {"type": "master_entity", "master_entity_id": "C1"})
        self.ledger.submit.side_effect = SubmissionError("ledger: HTTP 500")
        self.assertEqual(self.client.post("/api/submit").status_code, 502)

    def test_time_slot_drop_and_stale_drop(self) -> None:
        self._load_week()
        outcome = self._drop("remote", "r-standup", {"type": "time_slot", "day": 4, "hour": 7})
        self.assertEqual(outcome["reason"], "time_shifted")
        self.assertEqual(outcome["event"]["start_time"], "2024-03-07T07:00:00+00:00")

        outcome = self._drop("remote", "r-gone", {"type": "personal_panel"})
        self.assertFalse(outcome["applied"])
        self.assertEqual(outcome["reason"], "stale_drag")

    def test_submission_history_with_ledger_records(self) -> None:
        self.ledger.get_submitted_records.return_value = [{"eventName": "Review", "courseId": "C1"}]
        data = self.client.get("/api/submissions", params={"week": "2024-10"}).json()
        self.assertEqual(data["runs"], [])
        self.assertEqual(data["ledger_records"][0]["courseId"], "C1")
        self.ledger.get_submitted_records.assert_called_once_with("2024-10")

    def test_uncategorize_endpoint(self) -> None:
        self._load_week()
        self._drop("remote", "r-review", {"type": "master_entity", "master_entity_id": "C2"})
        self.assertEqual(self.client.delete("/api/categorizations/remote/r-review").status_code, 200)
        self.assertEqual(self.client.delete("/api/categorizations/remote/r-review").status_code, 404)
        self.assertEqual(self.client.delete("/api/categorizations/bogus/r-review").status_code, 400)

    def test_remove_selected_master_entity_needs_matching_confirmation(self) -> None:
        self._load_week()
        self.client.post("/api/selection/C1/toggle")
        self._drop("remote", "r-review", {"type": "master_entity", "master_entity_id": "C1"})

        self.assertEqual(self.client.post("/api/selection/C1/toggle").status_code, 409)
        preview = self.client.get("/api/selection/C1/removal").json()
        self.assertEqual(preview["pending_count"], 1)

        resp = self.client.delete("/api/selection/C1", params={"confirmed_count": 0})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.delete("/api/selection/C1", params={"confirmed_count": 1})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["categorizations_removed"], 1)
        self.assertEqual(self.client.get("/api/selection").json()["selected"], [])

    def test_clear_session(self) -> None:
        self._load_week()
        self.client.post("/api/local-events", json={"title": "Homework", "duration_minutes": 30})
        self.assertEqual(self.client.get("/api/session/clear").json(), {"local_events": 1, "categorizations": 0})
        resp = self.client.post("/api/session/clear")
        self.assertEqual(resp.json()["cleared"]["local_events"], 1)
        self.assertEqual(self.client.get("/api/week", params={"offset": -1}).json()["view"]["unscheduled"], [])

    def test_layout(self) -> None:
        self.assertEqual(self.client.get("/api/layout").json(), {"panel_left_width": 400})
        self.assertEqual(self.client.put("/api/layout", json={"panel_left_width": 100}).json(), {"panel_left_width": 250})

    def test_audit_lists_actions(self) -> None:
        self._load_week()
        self._drop("remote", "r-review", {"type": "master_entity", "master_entity_id": "C1"})
        events = self.client.get("/api/audit", params={"action": "categorize"}).json()["events"]
        self.assertEqual(events[0]["ref"], "remote:r-review")


if __name__ == "__main__":
    unittest.main()
