"""
End-to-end tests for the HTTP API using FastAPI's TestClient.
"""

import unittest
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy import select

from parkhub.auth import authenticate_staff, generate_jwt, staff_token
from parkhub.config import settings
from parkhub.errors import UnauthorizedError
from parkhub.models import ParkingSession, utcnow
from parkhub.seed import seed
from parkhub.server import create_app
from tests.support import add_slot, add_staff, memory_engine


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self.app = create_app(memory_engine(), start_monitor=False)
        self.client = TestClient(self.app)
        self.client.__enter__()
        with self.app.state.session_factory() as db:
            add_staff(db, password="secret123")
            add_slot(db, "G-01")
            add_slot(db, "G-02")
        self.headers = {"Authorization": f"Bearer {staff_token('EMP001')}"}

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def enter(self, plate="ABC123", vehicle_class="CAR", **extra):
        body = {"number_plate": plate, "vehicle_class": vehicle_class, **extra}
        return self.client.post("/api/vehicles/entry", json=body, headers=self.headers)

    def backdate(self, session_id, **delta):
        with self.app.state.session_factory() as db:
            session = db.get(ParkingSession, session_id)
            session.entry_time = utcnow() - timedelta(**delta)
            db.commit()


class TestAuth(ApiTestCase):

    def test_mutations_require_token(self):
        res = self.client.post("/api/vehicles/entry", json={"number_plate": "ABC123", "vehicle_class": "CAR"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["kind"], "unauthorized")

    def test_garbage_token_is_rejected(self):
        res = self.client.patch("/api/sessions/1/end", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(res.status_code, 401)

    def test_expired_token_is_rejected(self):
        token = generate_jwt({"sub": "EMP001"}, expires_in_seconds=-10)
        res = self.client.post("/api/notifications/check", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(res.status_code, 401)

    def test_login_issues_token_that_unlocks_writes(self):
        res = self.client.post("/auth/login", data={"username": "EMP001", "password": "secret123"})
        self.assertEqual(res.status_code, 200)
        token = res.json()["token"]
        res = self.client.post(
            "/api/vehicles/entry",
            json={"number_plate": "ABC123", "vehicle_class": "CAR"},
            params={"token": token},
        )
        self.assertEqual(res.status_code, 201)

    def test_login_rejects_bad_credentials(self):
        for username, password in (("EMP001", "wrong-pass"), ("EMP999", "secret123")):
            with self.subTest(username=username):
                res = self.client.post("/auth/login", data={"username": username, "password": password})
                self.assertEqual(res.status_code, 401)
                self.assertEqual(res.json()["kind"], "unauthorized")

    def test_staff_without_password_cannot_log_in(self):
        with self.app.state.session_factory() as db:
            add_staff(db, "EMP002", "Sarah Johnson")
        res = self.client.post("/auth/login", data={"username": "EMP002", "password": "anything"})
        self.assertEqual(res.status_code, 401)

    def test_tokens_cannot_be_minted_anonymously(self):
        res = self.client.post("/auth/token", params={"employee_id": "EMP001"})
        self.assertIn(res.status_code, (404, 405))

    def test_new_staff_can_log_in_with_their_password(self):
        body = {"employee_id": "EMP005", "name": "Ana Lopez", "password": "hunter22"}
        res = self.client.post("/api/staff", json=body, headers=self.headers)
        self.assertEqual(res.status_code, 201)
        self.assertNotIn("password_hash", res.json())
        res = self.client.post("/auth/login", data={"username": "EMP005", "password": "hunter22"})
        self.assertEqual(res.status_code, 200)


class TestEntryAndExit(ApiTestCase):

    def test_entry_assigns_nearest_slot(self):
        res = self.enter(" abc123 ")
        self.assertEqual(res.status_code, 201)
        data = res.json()
        self.assertEqual(data["vehicle"]["number_plate"], "ABC123")
        self.assertEqual(data["slot"]["location"], "G-01")
        self.assertEqual(data["slot"]["status"], "OCCUPIED")
        self.assertEqual(data["staff"]["employee_id"], "EMP001")
        self.assertEqual(data["status"], "ACTIVE")
        self.assertIsNone(data["billing"])

    def test_invalid_vehicle_class_is_a_validation_error(self):
        res = self.enter(vehicle_class="TRUCK")
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertEqual(body["status"], "error")
        self.assertEqual(body["kind"], "validation")
        self.assertTrue(body["details"])

    def test_full_garage_is_a_conflict(self):
        self.assertEqual(self.enter("AAA111").status_code, 201)
        self.assertEqual(self.enter("BBB222").status_code, 201)
        res = self.enter("CCC333")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(self.client.get("/api/vehicles", params={"number_plate": "CCC"}).json(), [])

    def test_end_session_bills_and_frees_slot(self):
        session_id = self.enter().json()["id"]
        self.backdate(session_id, minutes=20)

        res = self.client.patch(f"/api/sessions/{session_id}/end", headers=self.headers)

        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertEqual(data["calculation"]["amount"], 50.0)
        self.assertEqual(data["session"]["status"], "COMPLETED")
        self.assertIsNotNone(data["session"]["exit_time"])
        self.assertEqual(data["session"]["billing"]["amount"], 50.0)
        self.assertEqual(data["session"]["slot"]["status"], "AVAILABLE")

        again = self.client.patch(f"/api/sessions/{session_id}/end", headers=self.headers)
        self.assertEqual(again.status_code, 409)

    def test_end_with_slab_pricing(self):
        session_id = self.enter().json()["id"]
        self.backdate(session_id, hours=2, minutes=30)
        res = self.client.patch(
            f"/api/sessions/{session_id}/end", params={"use_slab_pricing": "true"}, headers=self.headers
        )
        self.assertEqual(res.json()["calculation"]["amount"], 120.0)

    def test_override_moves_current_occupant(self):
        first = self.enter("AAA111", slot_id=1).json()
        res = self.enter("BBB222", slot_id=1, override_slot_id=2)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json()["slot"]["location"], "G-01")

        moved = self.client.get(f"/api/sessions/{first['id']}").json()
        self.assertEqual(moved["slot"]["location"], "G-02")
        self.assertEqual(moved["status"], "ACTIVE")

    def test_unknown_session(self):
        res = self.client.get("/api/sessions/404")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["kind"], "not_found")

    def test_session_lookups(self):
        self.enter("AAA111")
        self.enter("BBB222")
        self.assertEqual(len(self.client.get("/api/sessions/active").json()), 2)
        by_plate = self.client.get("/api/sessions/vehicle/aaa111").json()
        self.assertEqual([s["vehicle"]["number_plate"] for s in by_plate], ["AAA111"])
        self.assertEqual(len(self.client.get("/api/sessions", params={"status": "COMPLETED"}).json()), 0)


class TestSlots(ApiTestCase):

    def test_maintenance_blocked_while_occupied(self):
        self.enter()
        res = self.client.patch("/api/slots/1/status", json={"status": "MAINTENANCE"}, headers=self.headers)
        self.assertEqual(res.status_code, 409)

        res = self.client.patch("/api/slots/2/status", json={"status": "MAINTENANCE"}, headers=self.headers)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["status"], "MAINTENANCE")
        self.assertEqual(self.client.get("/api/slots/nearest/CAR").status_code, 404)

    def test_slot_listing_shows_occupant(self):
        self.enter()
        slots = {s["location"]: s for s in self.client.get("/api/slots").json()}
        self.assertEqual(slots["G-01"]["active_session"]["vehicle"]["number_plate"], "ABC123")
        self.assertIsNone(slots["G-02"]["active_session"])

    def test_statistics_and_availability(self):
        self.enter()
        stats = self.client.get("/api/slots/statistics").json()
        self.assertEqual(stats, {"total": 2, "available": 1, "occupied": 1, "maintenance": 0, "occupancy_rate": 50.0})
        available = self.client.get("/api/slots/available/CAR").json()
        self.assertEqual([s["location"] for s in available], ["G-02"])
        self.assertEqual(self.client.get("/api/slots/available/EV").json(), [])

    def test_create_slot_rejects_duplicates(self):
        body = {"location": "ev-01", "vehicle_class": "EV"}
        res = self.client.post("/api/slots", json=body, headers=self.headers)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json()["location"], "EV-01")
        self.assertEqual(self.client.post("/api/slots", json=body, headers=self.headers).status_code, 409)


class TestBilling(ApiTestCase):

    def closed_bill(self, plate="ABC123", **elapsed):
        session_id = self.enter(plate).json()["id"]
        self.backdate(session_id, **elapsed)
        return self.client.patch(f"/api/sessions/{session_id}/end", headers=self.headers).json()

    def test_payment_moves_bill_out_of_unpaid(self):
        bill = self.closed_bill(hours=1, minutes=30)["session"]["billing"]
        self.assertEqual(bill["amount"], 100.0)

        unpaid = self.client.get("/api/billing/unpaid").json()
        self.assertEqual(unpaid["count"], 1)
        self.assertEqual(unpaid["total_unpaid_amount"], 100.0)

        res = self.client.patch(f"/api/billing/{bill['id']}/payment", json={"is_paid": True}, headers=self.headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json()["billing"]["is_paid"])
        self.assertEqual(self.client.get("/api/billing/unpaid").json()["count"], 0)

    def test_payment_flag_must_be_boolean(self):
        bill = self.closed_bill(minutes=10)["session"]["billing"]
        res = self.client.patch(f"/api/billing/{bill['id']}/payment", json={"is_paid": "yes"}, headers=self.headers)
        self.assertEqual(res.status_code, 400)

    def test_statistics(self):
        self.closed_bill("AAA111", minutes=10)
        bill = self.closed_bill("BBB222", hours=2, minutes=10)["session"]["billing"]
        self.client.patch(f"/api/billing/{bill['id']}/payment", json={"is_paid": True}, headers=self.headers)

        stats = self.client.get("/api/billing/statistics").json()
        self.assertEqual(stats["total_revenue"], 200.0)
        self.assertEqual(stats["total_bills"], 2)
        self.assertEqual(stats["paid_bills"], 1)
        self.assertEqual(stats["unpaid_bills"], 1)
        by_class = stats["revenue_by_vehicle_class"]
        self.assertEqual(by_class[0]["vehicle_class"], "CAR")
        self.assertEqual(by_class[0]["paid_revenue"], 150.0)

    def test_preview_records_bill_for_active_session(self):
        session_id = self.enter().json()["id"]
        res = self.client.get(f"/api/billing/preview/{session_id}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["preview"]["amount"], 50.0)
        bills = self.client.get("/api/billing").json()
        self.assertEqual([b["session"]["id"] for b in bills], [session_id])

    def test_billing_filters_and_lookup(self):
        bill = self.closed_bill(minutes=10)["session"]["billing"]
        self.assertEqual(len(self.client.get("/api/billing", params={"is_paid": "false"}).json()), 1)
        self.assertEqual(self.client.get("/api/billing", params={"vehicle_class": "EV"}).json(), [])
        self.assertEqual(self.client.get(f"/api/billing/{bill['id']}").json()["amount"], 50.0)
        self.assertEqual(self.client.get("/api/billing/999").status_code, 404)

    def test_pricing_config(self):
        config = self.client.get("/api/billing/pricing-config").json()
        self.assertEqual(config["HOURLY"]["CAR"], 50.0)
        self.assertEqual(config["DAY_PASS"]["BIKE"], 150.0)
        self.assertEqual(len(config["SLAB_PRICING"]["CAR"]), 4)

    def test_revenue_trends_and_peak_hours_shape(self):
        self.closed_bill(minutes=10)
        trends = self.client.get("/api/billing/revenue-trends", params={"period": "month"}).json()
        self.assertEqual(len(trends), 1)
        self.assertEqual(trends[0]["revenue"], 50.0)
        self.assertEqual(trends[0]["transactions"], 1)

        peak = self.client.get("/api/billing/peak-hours").json()
        self.assertEqual([row["hour"] for row in peak], list(range(24)))
        self.assertEqual(sum(row["exits_count"] for row in peak), 1)

        old_day = self.client.get("/api/billing/peak-hours", params={"date": "2001-01-01"}).json()
        self.assertEqual(sum(row["entries_count"] for row in old_day), 0)


class TestNotifications(ApiTestCase):

    def test_long_stay_alert_lifecycle(self):
        long_id = self.enter("LONG01").json()["id"]
        self.enter("SHORT1")
        self.backdate(long_id, hours=6, minutes=10)

        res = self.client.post("/api/notifications/check", headers=self.headers)
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["data"][0]["vehicle_number_plate"], "LONG01")
        self.assertTrue(body["data"][0]["is_notified"])

        self.assertEqual(self.client.get("/api/notifications/count").json(), {"success": True, "count": 1})
        self.assertEqual(self.client.get("/api/notifications/vehicle/long").json()["count"], 1)

        res = self.client.patch(f"/api/notifications/{long_id}/read", headers=self.headers)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(self.client.get("/api/notifications", params={"type": "new"}).json()["count"], 0)
        self.assertEqual(self.client.get("/api/notifications").json()["count"], 1)

        self.client.patch(f"/api/sessions/{long_id}/end", headers=self.headers)
        self.assertEqual(self.client.get("/api/notifications").json()["count"], 0)

    def test_mark_read_for_unknown_alert(self):
        res = self.client.patch("/api/notifications/77/read", headers=self.headers)
        self.assertEqual(res.status_code, 404)


class TestSeed(unittest.TestCase):

    def test_seed_is_idempotent(self):
        app = create_app(memory_engine(), start_monitor=False)
        with app.state.session_factory() as db:
            counts = seed(db)
            self.assertEqual(counts, {"staff": 4, "vehicles": 13, "slots": 55})
            self.assertEqual(seed(db)["slots"], 0)
            with_reset = seed(db, reset=True)
            self.assertEqual(with_reset["vehicles"], 13)
            self.assertEqual(len(db.scalars(select(ParkingSession)).all()), 0)

    def test_seeded_staff_log_in_with_demo_password(self):
        app = create_app(memory_engine(), start_monitor=False)
        with app.state.session_factory() as db:
            seed(db)
            staff = authenticate_staff(db, "EMP002", settings.SEED_STAFF_PASSWORD)
            self.assertEqual(staff.name, "Sarah Johnson")
            with self.assertRaises(UnauthorizedError):
                authenticate_staff(db, "EMP002", "not-the-password")


if __name__ == "__main__":
    unittest.main()
