"""
Interleaved writers on one SQLite file: each contested transition has one winner.

Every test opens two ORM sessions on separate connections. One of them is
paused right after its read-side check while the other runs to commit.
"""

import unittest
from unittest import mock

from sqlalchemy import select

from parkhub import allocator, sessions
from parkhub.database import atomic
from parkhub.errors import ConflictError, SessionNotActive
from parkhub.models import Billing, ParkingSession, SessionStatus, Slot, SlotStatus
from tests.support import FileStore, add_slot, add_staff, add_vehicle


def run_between(module, name, action):
    """Patch ``module.name`` so its first call runs ``action`` right after returning."""
    original = getattr(module, name)
    fired = []

    def wrapper(*args, **kwargs):
        result = original(*args, **kwargs)
        if not fired:
            fired.append(True)
            action()
        return result

    return mock.patch.object(module, name, side_effect=wrapper)


class InterleavingTestCase(unittest.TestCase):

    def setUp(self):
        self.store = FileStore()
        self.factory = self.store.session_factory
        with self.factory() as db:
            add_staff(db)
            self.g01_id = add_slot(db, "G-01").id
            self.g02_id = add_slot(db, "G-02").id

    def tearDown(self):
        self.store.close()

    def slot_status(self, slot_id):
        with self.factory() as db:
            return db.get(Slot, slot_id).status

    def active_sessions(self, **criteria):
        with self.factory() as db:
            stmt = select(ParkingSession).where(ParkingSession.status == SessionStatus.ACTIVE)
            for column, value in criteria.items():
                stmt = stmt.where(getattr(ParkingSession, column) == value)
            return db.scalars(stmt).all()


class TestSlotClaims(InterleavingTestCase):

    def test_two_sessions_claiming_one_slot_leave_one_winner(self):
        with self.factory() as first, self.factory() as second:
            slot_a = first.get(Slot, self.g01_id)
            slot_b = second.get(Slot, self.g01_id)
            self.assertEqual(slot_b.status, SlotStatus.AVAILABLE)

            with atomic(first):
                allocator.claim_slot(first, slot_a)
            with self.assertRaises(ConflictError):
                with atomic(second):
                    allocator.claim_slot(second, slot_b)

        self.assertEqual(self.slot_status(self.g01_id), SlotStatus.OCCUPIED)

    def test_entry_racing_for_the_same_slot_is_refused(self):
        with self.factory() as db:
            add_vehicle(db, "AAA111")
            add_vehicle(db, "BBB222")

        def other_entry():
            with self.factory() as other:
                sessions.register_entry(other, "AAA111", "CAR", "EMP001", slot_id=self.g01_id)

        with self.factory() as db:
            with run_between(allocator, "active_session_for_vehicle", other_entry):
                with self.assertRaises(ConflictError):
                    sessions.register_entry(db, "BBB222", "CAR", "EMP001", slot_id=self.g01_id)

        occupants = self.active_sessions(slot_id=self.g01_id)
        self.assertEqual(len(occupants), 1)
        self.assertEqual(self.slot_status(self.g01_id), SlotStatus.OCCUPIED)

    def test_same_vehicle_entering_twice_at_once_keeps_one_session(self):
        with self.factory() as db:
            vehicle_id = add_vehicle(db, "ABC123").id

        def other_entry():
            with self.factory() as other:
                sessions.register_entry(other, "ABC123", "CAR", "EMP001", slot_id=self.g01_id)

        with self.factory() as db:
            with run_between(allocator, "active_session_for_vehicle", other_entry):
                with self.assertRaises(ConflictError):
                    sessions.register_entry(db, "ABC123", "CAR", "EMP001", slot_id=self.g02_id)

        self.assertEqual(len(self.active_sessions(vehicle_id=vehicle_id)), 1)
        self.assertEqual(self.slot_status(self.g01_id), SlotStatus.OCCUPIED)
        self.assertEqual(self.slot_status(self.g02_id), SlotStatus.AVAILABLE)


class TestSlotStatusRace(InterleavingTestCase):

    def test_entry_between_check_and_write_blocks_maintenance(self):
        def other_entry():
            with self.factory() as other:
                sessions.register_entry(other, "ABC123", "CAR", "EMP001", slot_id=self.g01_id)

        with self.factory() as db:
            slot = allocator.get_slot(db, self.g01_id)
            with run_between(allocator, "active_session_for_slot", other_entry):
                with self.assertRaises(ConflictError):
                    with atomic(db):
                        allocator.set_slot_status(db, slot, SlotStatus.MAINTENANCE)

        self.assertEqual(self.slot_status(self.g01_id), SlotStatus.OCCUPIED)
        self.assertEqual(len(self.active_sessions(slot_id=self.g01_id)), 1)

    def test_closing_after_refused_maintenance_frees_the_slot(self):
        def other_entry():
            with self.factory() as other:
                sessions.register_entry(other, "ABC123", "CAR", "EMP001", slot_id=self.g01_id)

        with self.factory() as db:
            slot = allocator.get_slot(db, self.g01_id)
            with run_between(allocator, "active_session_for_slot", other_entry):
                with self.assertRaises(ConflictError):
                    with atomic(db):
                        allocator.set_slot_status(db, slot, "MAINTENANCE")

        session_id = self.active_sessions(slot_id=self.g01_id)[0].id
        with self.factory() as db:
            sessions.close_session(db, session_id)
        self.assertEqual(self.slot_status(self.g01_id), SlotStatus.AVAILABLE)


class TestCloseRace(InterleavingTestCase):

    def test_two_closes_of_one_session_bill_once(self):
        with self.factory() as db:
            session_id = sessions.register_entry(db, "ABC123", "CAR", "EMP001").id

        def other_close():
            with self.factory() as other:
                sessions.close_session(other, session_id)

        with self.factory() as db:
            with run_between(sessions, "get_session", other_close):
                with self.assertRaises(SessionNotActive):
                    sessions.close_session(db, session_id)

        with self.factory() as db:
            self.assertEqual(db.get(ParkingSession, session_id).status, SessionStatus.COMPLETED)
            self.assertEqual(len(db.scalars(select(Billing)).all()), 1)
        self.assertEqual(self.slot_status(self.g01_id), SlotStatus.AVAILABLE)


if __name__ == "__main__":
    unittest.main()
