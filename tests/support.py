import tempfile
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from parkhub.auth import hash_password
from parkhub.database import init_db, make_engine, make_session_factory
from parkhub.models import ParkingSession, SessionStatus, Slot, SlotStatus, Staff, Vehicle, VehicleClass


def memory_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def memory_session_factory():
    return make_session_factory(memory_engine())


def add_slot(db, location, vehicle_class=VehicleClass.CAR, status=SlotStatus.AVAILABLE):
    slot = Slot(location=location, vehicle_class=vehicle_class, status=status)
    db.add(slot)
    db.commit()
    return slot


def add_staff(db, employee_id="EMP001", name="John Smith", phone="+1-555-0101", password=None):
    staff = Staff(employee_id=employee_id, name=name, phone=phone)
    if password:
        staff.password_hash = hash_password(password)
    db.add(staff)
    db.commit()
    return staff


def add_vehicle(db, plate, vehicle_class=VehicleClass.CAR):
    vehicle = Vehicle(number_plate=plate, vehicle_class=vehicle_class)
    db.add(vehicle)
    db.commit()
    return vehicle


def park(db, vehicle, slot, staff, entry_time: datetime):
    """Insert an ACTIVE session directly, bypassing the allocator."""
    session = ParkingSession(
        vehicle=vehicle,
        slot=slot,
        staff=staff,
        entry_time=entry_time,
        status=SessionStatus.ACTIVE,
    )
    slot.status = SlotStatus.OCCUPIED
    db.add(session)
    db.commit()
    return session


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FileStore:
    """SQLite file opened through separate connections, so two sessions can interleave."""

    def __init__(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = make_engine(f"sqlite:///{Path(self._tmp.name) / 'parking.db'}")
        init_db(self.engine)
        self.session_factory = make_session_factory(self.engine)

    def close(self) -> None:
        self.engine.dispose()
        self._tmp.cleanup()
