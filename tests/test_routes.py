import os
import tempfile
import time
import unittest
from unittest import mock

from fastapi.testclient import TestClient

from app import dependencies
from app.config import settings
from app.errors import HardwareUnavailable
from app.main import app
from app.recording.live import LiveSessionRegistry
from app.services.session_guard import ActiveSessionGuard
from app.services.storage import SessionStore
from tests.fakes import (
    GOOD_RESULT,
    FakeGateway,
    FakeStreamFactory,
    FakeTranscriber,
    unavailable,
)


class RouteTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        db_path = os.path.join(self._tmp.name, "test.db")
        patcher = mock.patch.object(settings, "database_path", db_path)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.gateway = FakeGateway([GOOD_RESULT])
        self.factory = FakeStreamFactory()
        for name, value in (
            ("guard", ActiveSessionGuard()),
            (
                "live_sessions",
                LiveSessionRegistry(
                    gateway=self.gateway,
                    transcriber=FakeTranscriber([None]),
                    stream_factory=self.factory,
                ),
            ),
        ):
            swap = mock.patch.object(dependencies, name, value)
            swap.start()
            self.addCleanup(swap.stop)

        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def start(self, teacher: str = "teacher-1", student: str = "student-1", **extra) -> dict:
        response = self.client.post(
            "/api/sessions",
            json={"teacher_id": teacher, "student_id": student, "language": "Spanish", **extra},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def wait_for_status(self, session_id: int, status: str, timeout: float = 2.0) -> list[dict]:
        deadline = time.monotonic() + timeout
        while True:
            entries = self.client.get(f"/api/sessions/{session_id}/mistakes").json()
            if entries and all(e["status"] == status for e in entries):
                return entries
            if time.monotonic() > deadline:
                self.fail(f"entries never reached {status}: {entries}")
            time.sleep(0.02)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def test_start_and_conflict_flow(self) -> None:
        first = self.start()
        self.assertTrue(first["created"])
        session_id = first["session"]["id"]

        conflict = self.client.post(
            "/api/sessions", json={"teacher_id": "teacher-1", "student_id": "student-2"}
        )
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()["kind"], "session_conflict")
        self.assertEqual(conflict.json()["existing"]["id"], session_id)

        resumed = self.start(student="student-2", resolution="resume")
        self.assertFalse(resumed["created"])
        self.assertEqual(resumed["session"]["id"], session_id)

        replaced = self.start(student="student-2", resolution="abandon")
        self.assertTrue(replaced["created"])
        self.assertEqual(replaced["abandoned"]["status"], "abandoned")

        active = self.client.get("/api/teachers/teacher-1/active-session").json()
        self.assertEqual(active["session"]["id"], replaced["session"]["id"])
        history = self.client.get("/api/teachers/teacher-1/sessions").json()
        self.assertEqual(len(history), 2)

    def test_end_and_complete(self) -> None:
        session_id = self.start()["session"]["id"]

        ended = self.client.post(f"/api/sessions/{session_id}/end")
        self.assertEqual(ended.json()["status"], "pending_review")
        again = self.client.post(f"/api/sessions/{session_id}/end")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["kind"], "invalid_transition")

        completed = self.client.post(f"/api/sessions/{session_id}/complete")
        self.assertEqual(completed.json()["status"], "completed")
        active = self.client.get("/api/teachers/teacher-1/active-session").json()
        self.assertIsNone(active["session"])

    def test_database_errors_map_to_storage_kind(self) -> None:
        empty_db = os.path.join(self._tmp.name, "empty.db")
        with mock.patch.object(dependencies, "guard", ActiveSessionGuard(SessionStore(empty_db))):
            response = self.client.get("/api/teachers/teacher-1/active-session")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["kind"], "storage")

    def test_unknown_session(self) -> None:
        response = self.client.get("/api/sessions/404")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["kind"], "session_not_found")

    # ------------------------------------------------------------------
    # Mistakes
    # ------------------------------------------------------------------

    def test_submit_then_list_then_delete(self) -> None:
        session_id = self.start()["session"]["id"]

        submitted = self.client.post(
            f"/api/sessions/{session_id}/mistakes", json={"text": "He go to school"}
        )
        self.assertEqual(submitted.status_code, 202)
        self.assertEqual(submitted.json()["status"], "thinking")
        self.assertTrue(submitted.json()["id"].startswith("tmp-"))

        entries = self.wait_for_status(session_id, "done")
        entry = entries[0]
        self.assertIsInstance(entry["id"], int)
        self.assertEqual(entry["corrected_text"], "He goes to school")
        self.assertEqual(entry["source"], "manual")

        deleted = self.client.delete(f"/api/sessions/{session_id}/mistakes/{entry['id']}")
        self.assertTrue(deleted.json()["deleted"])
        self.assertEqual(self.client.get(f"/api/sessions/{session_id}/mistakes").json(), [])
        missing = self.client.delete(f"/api/sessions/{session_id}/mistakes/{entry['id']}")
        self.assertEqual(missing.status_code, 404)

    def test_saved_entries_survive_session_end(self) -> None:
        session_id = self.start()["session"]["id"]
        self.client.post(f"/api/sessions/{session_id}/mistakes", json={"text": "Yo tener hambre"})
        self.wait_for_status(session_id, "done")

        self.client.post(f"/api/sessions/{session_id}/end")
        entries = self.client.get(f"/api/sessions/{session_id}/mistakes").json()
        self.assertEqual([e["original_text"] for e in entries], ["Yo tener hambre"])

    def test_blank_submission_is_rejected(self) -> None:
        session_id = self.start()["session"]["id"]
        response = self.client.post(f"/api/sessions/{session_id}/mistakes", json={"text": "  "})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["kind"], "invalid_input")
        self.assertEqual(self.gateway.calls, [])

    def test_failed_entry_can_be_retried(self) -> None:
        self.gateway.script = [unavailable(), unavailable(), GOOD_RESULT]
        session_id = self.start()["session"]["id"]
        with mock.patch.object(settings, "auto_retry_delay_seconds", 0.01):
            self.client.post(f"/api/sessions/{session_id}/mistakes", json={"text": "He go"})
            failed = self.wait_for_status(session_id, "error")[0]
        self.assertEqual(failed["error_kind"], "transport")

        retried = self.client.post(f"/api/sessions/{session_id}/mistakes/{failed['id']}/retry")
        self.assertEqual(retried.status_code, 202)
        entry = self.wait_for_status(session_id, "done")[0]
        self.assertEqual(entry["manual_retries"], 1)

        rejected = self.client.post(f"/api/sessions/{session_id}/mistakes/{entry['id']}/retry")
        self.assertEqual(rejected.status_code, 409)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def test_recording_start_and_stop(self) -> None:
        session_id = self.start()["session"]["id"]

        started = self.client.post(f"/api/sessions/{session_id}/recording/start")
        self.assertEqual(started.json()["status"], "recording")
        self.assertTrue(self.client.get(f"/api/sessions/{session_id}").json()["recording"])
        self.client.post(f"/api/sessions/{session_id}/recording/start")
        self.assertEqual(len(self.factory.streams), 1)

        stopped = self.client.post(f"/api/sessions/{session_id}/recording/stop")
        self.assertEqual(stopped.json()["status"], "idle")
        self.assertTrue(self.factory.last.closed)
        self.client.post(f"/api/sessions/{session_id}/recording/stop")

    def test_recording_without_microphone(self) -> None:
        self.factory.error = HardwareUnavailable("no input device")
        session_id = self.start()["session"]["id"]
        response = self.client.post(f"/api/sessions/{session_id}/recording/start")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["kind"], "hardware_unavailable")
        self.assertIn("no input device", response.json()["detail"])

    def test_ending_session_releases_microphone(self) -> None:
        session_id = self.start()["session"]["id"]
        self.client.post(f"/api/sessions/{session_id}/recording/start")
        self.client.post(f"/api/sessions/{session_id}/end")
        self.assertTrue(self.factory.last.closed)
        refused = self.client.post(f"/api/sessions/{session_id}/recording/start")
        self.assertEqual(refused.status_code, 409)

    # ------------------------------------------------------------------
    # WebSockets
    # ------------------------------------------------------------------

    def test_session_socket_snapshot_and_updates(self) -> None:
        session_id = self.start()["session"]["id"]
        with self.client.websocket_connect(f"/ws/session/{session_id}") as ws:
            self.assertEqual(ws.receive_json()["status"], "idle")
            snapshot = ws.receive_json()
            self.assertEqual(snapshot["type"], "ledger_snapshot")
            self.assertEqual(snapshot["entries"], [])

            self.client.post(f"/api/sessions/{session_id}/mistakes", json={"text": "He go"})
            added = ws.receive_json()
            self.assertEqual(added["type"], "entry_added")
            updated = ws.receive_json()
            self.assertEqual(updated["type"], "entry_updated")
            self.assertEqual(updated["previous_id"], added["entry"]["id"])
            self.assertEqual(updated["entry"]["status"], "done")

    def test_last_viewer_leaving_stops_capture(self) -> None:
        session_id = self.start()["session"]["id"]
        with self.client.websocket_connect(f"/ws/session/{session_id}") as ws:
            ws.receive_json()
            ws.receive_json()
            self.client.post(f"/api/sessions/{session_id}/recording/start")
            self.assertEqual(ws.receive_json()["status"], "recording")

        deadline = time.monotonic() + 2.0
        while not self.factory.last.closed and time.monotonic() < deadline:
            time.sleep(0.02)
        self.assertTrue(self.factory.last.closed)

    def test_session_socket_for_unknown_session(self) -> None:
        with self.client.websocket_connect("/ws/session/999") as ws:
            message = ws.receive_json()
        self.assertEqual(message["type"], "error")
        self.assertEqual(message["kind"], "session_not_found")

    def test_active_session_socket(self) -> None:
        with self.client.websocket_connect("/ws/teachers/teacher-1/active-session") as ws:
            self.assertIsNone(ws.receive_json()["session"])
            session_id = self.start()["session"]["id"]
            self.assertEqual(ws.receive_json()["session"]["id"], session_id)
            self.client.post(f"/api/sessions/{session_id}/end")
            self.assertIsNone(ws.receive_json()["session"])

    # ------------------------------------------------------------------
    # One-off check
    # ------------------------------------------------------------------

    def test_check_sentence(self) -> None:
        response = self.client.post(
            "/api/check-sentence", json={"sentence": "He go to school", "language": "English"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), GOOD_RESULT.model_dump())

    def test_check_sentence_errors(self) -> None:
        self.assertEqual(
            self.client.post("/api/check-sentence", json={"sentence": 42}).status_code, 422
        )
        self.gateway.script = [unavailable("timed out")]
        response = self.client.post("/api/check-sentence", json={"sentence": "Hola"})
        self.assertEqual(response.status_code, 502)
        self.assertIn("timed out", response.json()["error"])
        self.assertEqual(response.json()["kind"], "transport")


if __name__ == "__main__":
    unittest.main()
