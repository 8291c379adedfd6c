"""Populate an empty database with demo staff, vehicles and slots.

    python -m parkhub.seed [--reset]
"""

import argparse
import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .auth import hash_password
from .config import settings
from .database import atomic, init_db, make_engine, make_session_factory
from .models import Billing, ParkingSession, Slot, SlotStatus, Staff, Vehicle, VehicleClass

logger = logging.getLogger(__name__)

STAFF = [
    ("EMP001", "John Smith", "+1-555-0101"),
    ("EMP002", "Sarah Johnson", "+1-555-0102"),
    ("EMP003", "Mike Davis", "+1-555-0103"),
    ("EMP004", "Lisa Wilson", "+1-555-0104"),
]

VEHICLES = [
    ("ABC123", VehicleClass.CAR),
    ("XYZ789", VehicleClass.CAR),
    ("DEF456", VehicleClass.CAR),
    ("GHI321", VehicleClass.CAR),
    ("JKL654", VehicleClass.CAR),
    ("BIKE001", VehicleClass.BIKE),
    ("BIKE002", VehicleClass.BIKE),
    ("BIKE003", VehicleClass.BIKE),
    ("EV001", VehicleClass.EV),
    ("EV002", VehicleClass.EV),
    ("TESLA01", VehicleClass.EV),
    ("HAC001", VehicleClass.HANDICAP_ACCESSIBLE),
    ("HAC002", VehicleClass.HANDICAP_ACCESSIBLE),
]

# location prefix, slot class, count
SLOT_BLOCKS = [
    ("G", VehicleClass.CAR, 15),
    ("B1", VehicleClass.CAR, 20),
    ("BK", VehicleClass.BIKE, 10),
    ("EV", VehicleClass.EV, 6),
    ("H", VehicleClass.HANDICAP_ACCESSIBLE, 4),
]


def slot_locations(prefix: str, count: int):
    return [f"{prefix}-{i:02d}" for i in range(1, count + 1)]


def seed(db: Session, reset: bool = False) -> dict:
    with atomic(db):
        if reset:
            for model in (Billing, ParkingSession, Vehicle, Slot, Staff):
                db.execute(delete(model))
        elif db.scalar(select(Staff.id).limit(1)) is not None:
            logger.info("Database already seeded; pass --reset to start over")
            return {"staff": 0, "vehicles": 0, "slots": 0}

        password_hash = hash_password(settings.SEED_STAFF_PASSWORD)
        db.add_all(Staff(employee_id=e, name=n, phone=p, password_hash=password_hash) for e, n, p in STAFF)
        db.add_all(Vehicle(number_plate=plate, vehicle_class=vc) for plate, vc in VEHICLES)
        slots = [
            Slot(location=location, vehicle_class=vc, status=SlotStatus.AVAILABLE)
            for prefix, vc, count in SLOT_BLOCKS
            for location in slot_locations(prefix, count)
        ]
        db.add_all(slots)

    counts = {"staff": len(STAFF), "vehicles": len(VEHICLES), "slots": len(slots)}
    logger.info("Seeded %(staff)d staff, %(vehicles)d vehicles, %(slots)d slots", counts)
    return counts


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Seed the parking database with demo data")
    parser.add_argument("--database-url", default=None)
    parser.add_argument("--reset", action="store_true", help="delete existing rows first")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    engine = make_engine(args.database_url)
    init_db(engine)
    with make_session_factory(engine)() as db:
        seed(db, reset=args.reset)


if __name__ == "__main__":
    main()
