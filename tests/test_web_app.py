import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from campus_booking.web_app import create_app

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

STUDENT_HEADERS = {"X-User-Id": "student-1", "X-User-Role": "student"}
OTHER_HEADERS = {"X-User-Id": "student-2", "X-User-Role": "student"}
STAFF_HEADERS = {"X-User-Id": "staff-1", "X-User-Role": "staff"}
ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "ADMIN"}


def _booking_body(start: str, end: str, resource_name: str = "Room 101") -> dict[str, str]:
    return {
        "resource_type": "room",
        "resource_name": resource_name,
        "start_time": start,
        "end_time": end,
    }


class TestWebApp(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        app = create_app(Path(self._temp_dir.name) / "data", now_provider=lambda: NOW)
        self.client = app.test_client()

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _create(self, headers: dict[str, str], start: str, end: str, resource_name: str = "Room 101") -> dict:
        response = self.client.post("/api/bookings", json=_booking_body(start, end, resource_name), headers=headers)
        self.assertEqual(response.status_code, 201)
        return response.get_json()["booking"]

    def test_health(self) -> None:
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ok")

    def test_create_then_conflict_returns_409_with_busy_details(self) -> None:
        first = self._create(STUDENT_HEADERS, "2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00")
        self.assertEqual(first["status"], "pending")
        self.assertEqual(first["owner_id"], "student-1")

        response = self.client.post(
            "/api/bookings",
            json=_booking_body("2026-03-02T09:30:00Z", "2026-03-02T10:30:00Z"),
            headers=OTHER_HEADERS,
        )
        self.assertEqual(response.status_code, 409)
        payload = response.get_json()
        self.assertFalse(payload["ok"])
        self.assertEqual(payload["error"], "Conflict")
        self.assertEqual(payload["conflicts"][0]["booking_id"], first["booking_id"])
        self.assertEqual(payload["conflicts"][0]["status"], "pending")

    def test_invalid_window_returns_400(self) -> None:
        inverted = self.client.post(
            "/api/bookings",
            json=_booking_body("2026-03-02T10:00:00+00:00", "2026-03-02T09:00:00+00:00"),
            headers=STUDENT_HEADERS,
        )
        self.assertEqual(inverted.status_code, 400)
        self.assertEqual(inverted.get_json()["error"], "InvalidWindow")

        naive = self.client.post(
            "/api/bookings",
            json=_booking_body("2026-03-02T09:00:00", "2026-03-02T10:00:00"),
            headers=STUDENT_HEADERS,
        )
        self.assertEqual(naive.status_code, 400)

        garbage = self.client.post(
            "/api/bookings",
            json=_booking_body("tomorrow", "2026-03-02T10:00:00+00:00"),
            headers=STUDENT_HEADERS,
        )
        self.assertEqual(garbage.status_code, 400)

    def test_mutations_require_identity(self) -> None:
        response = self.client.post(
            "/api/bookings",
            json=_booking_body("2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00"),
        )
        self.assertEqual(response.status_code, 401)

        bad_role = self.client.get("/api/bookings", headers={"X-User-Id": "x", "X-User-Role": "wizard"})
        self.assertEqual(bad_role.status_code, 401)

    def test_availability_preflight(self) -> None:
        booking = self._create(STUDENT_HEADERS, "2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00")

        busy = self.client.get(
            "/api/bookings/availability",
            query_string={
                "resource_name": "Room 101",
                "start_time": "2026-03-02T09:30:00+00:00",
                "end_time": "2026-03-02T11:00:00+00:00",
            },
        )
        self.assertEqual(busy.status_code, 200)
        payload = busy.get_json()
        self.assertFalse(payload["available"])
        self.assertEqual([item["booking_id"] for item in payload["busy"]], [booking["booking_id"]])

        free = self.client.get(
            "/api/bookings/availability",
            query_string={
                "resource_name": "Room 101",
                "start_time": "2026-03-02T10:00:00+00:00",
                "end_time": "2026-03-02T11:00:00+00:00",
            },
        )
        self.assertEqual(free.get_json(), {"ok": True, "available": True, "busy": []})

        missing = self.client.get("/api/bookings/availability", query_string={"resource_name": "Room 101"})
        self.assertEqual(missing.status_code, 400)

    def test_edit_approve_and_delete_flow(self) -> None:
        booking = self._create(STUDENT_HEADERS, "2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00")
        booking_id = booking["booking_id"]

        moved = self.client.put(
            f"/api/bookings/{booking_id}",
            json={"start_time": "2026-03-02T13:00:00+00:00", "end_time": "2026-03-02T14:00:00+00:00"},
            headers=STUDENT_HEADERS,
        )
        self.assertEqual(moved.status_code, 200)
        self.assertEqual(moved.get_json()["booking"]["start"], "2026-03-02T13:00:00+00:00")

        empty = self.client.put(f"/api/bookings/{booking_id}", json={}, headers=STUDENT_HEADERS)
        self.assertEqual(empty.status_code, 400)

        forbidden_status = self.client.patch(
            f"/api/bookings/{booking_id}/status", json={"status": "approved"}, headers=STUDENT_HEADERS
        )
        self.assertEqual(forbidden_status.status_code, 403)

        approved = self.client.patch(
            f"/api/bookings/{booking_id}/status", json={"status": "approved"}, headers=STAFF_HEADERS
        )
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.get_json()["booking"]["status"], "approved")

        locked_edit = self.client.put(
            f"/api/bookings/{booking_id}", json={"reason": "moved"}, headers=STUDENT_HEADERS
        )
        self.assertEqual(locked_edit.status_code, 403)

        locked_delete = self.client.delete(f"/api/bookings/{booking_id}", headers=STUDENT_HEADERS)
        self.assertEqual(locked_delete.status_code, 403)

        deleted = self.client.delete(f"/api/bookings/{booking_id}", headers=ADMIN_HEADERS)
        self.assertEqual(deleted.status_code, 200)
        self.assertTrue(deleted.get_json()["ok"])

        gone = self.client.get(f"/api/bookings/{booking_id}", headers=ADMIN_HEADERS)
        self.assertEqual(gone.status_code, 404)

    def test_invalid_transition_and_unknown_status(self) -> None:
        booking = self._create(STUDENT_HEADERS, "2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00")
        booking_id = booking["booking_id"]
        self.client.patch(f"/api/bookings/{booking_id}/status", json={"status": "rejected"}, headers=STAFF_HEADERS)

        revive = self.client.patch(
            f"/api/bookings/{booking_id}/status", json={"status": "approved"}, headers=STAFF_HEADERS
        )
        self.assertEqual(revive.status_code, 409)
        self.assertEqual(revive.get_json()["error"], "InvalidTransition")

        unknown = self.client.patch(
            f"/api/bookings/{booking_id}/status", json={"status": "archived"}, headers=STAFF_HEADERS
        )
        self.assertEqual(unknown.status_code, 400)

        override = self.client.patch(
            f"/api/bookings/{booking_id}/status",
            json={"status": "pending", "override": True},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(override.status_code, 200)
        self.assertEqual(override.get_json()["booking"]["status"], "pending")

    def test_list_projection_by_caller(self) -> None:
        mine = self._create(STUDENT_HEADERS, "2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00")
        theirs = self._create(OTHER_HEADERS, "2026-03-02T11:00:00+00:00", "2026-03-02T12:00:00+00:00")
        self.client.patch(
            f"/api/bookings/{theirs['booking_id']}/status", json={"status": "approved"}, headers=STAFF_HEADERS
        )

        own = self.client.get("/api/bookings", headers=STUDENT_HEADERS).get_json()["bookings"]
        self.assertEqual([row["booking_id"] for row in own], [mine["booking_id"]])

        everything = self.client.get("/api/bookings", headers=STAFF_HEADERS).get_json()["bookings"]
        self.assertEqual(len(everything), 2)

        anonymous = self.client.get("/api/bookings").get_json()["bookings"]
        self.assertEqual([row["booking_id"] for row in anonymous], [theirs["booking_id"]])
        self.assertNotIn("owner_id", anonymous[0])

        peek = self.client.get(f"/api/bookings/{mine['booking_id']}", headers=OTHER_HEADERS)
        self.assertEqual(peek.status_code, 403)

    def test_null_reason_clears_it(self) -> None:
        response = self.client.post(
            "/api/bookings",
            json={**_booking_body("2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00"), "reason": "seminar"},
            headers=STUDENT_HEADERS,
        )
        booking = response.get_json()["booking"]
        self.assertEqual(booking["reason"], "seminar")

        cleared = self.client.put(
            f"/api/bookings/{booking['booking_id']}", json={"reason": None}, headers=STUDENT_HEADERS
        )
        self.assertEqual(cleared.status_code, 200)
        self.assertNotIn("reason", cleared.get_json()["booking"])

    def test_staff_books_on_behalf_of_student(self) -> None:
        response = self.client.post(
            "/api/bookings",
            json={**_booking_body("2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00"), "user_id": "student-7"},
            headers=STAFF_HEADERS,
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["booking"]["owner_id"], "student-7")


if __name__ == "__main__":
    unittest.main()
