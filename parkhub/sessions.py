import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from . import allocator
from .database import atomic
from .errors import ConflictError, NotFoundError, SessionNotActive, ValidationError
from .models import (
    Billing,
    BillingMode,
    ParkingSession,
    SessionStatus,
    Staff,
    Vehicle,
    utcnow,
)
from .pricing import BillingCalculation, as_billing_mode, as_vehicle_class, calculate_billing, to_naive_utc

logger = logging.getLogger(__name__)


def normalize_plate(number_plate: str) -> str:
    plate = (number_plate or "").strip().upper()
    if not plate:
        raise ValidationError("Vehicle number plate is required", ["number_plate"])
    return plate


def get_session(db: Session, session_id: int) -> ParkingSession:
    session = db.scalar(
        select(ParkingSession)
        .where(ParkingSession.id == session_id)
        .options(
            selectinload(ParkingSession.vehicle),
            selectinload(ParkingSession.slot),
            selectinload(ParkingSession.staff),
            selectinload(ParkingSession.billing),
        )
    )
    if session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return session


def get_staff(db: Session, employee_id: str) -> Staff:
    staff = db.scalar(select(Staff).where(Staff.employee_id == employee_id))
    if staff is None:
        raise NotFoundError(f"Staff member {employee_id} not found")
    return staff


def find_vehicle(db: Session, number_plate: str) -> Optional[Vehicle]:
    plate = normalize_plate(number_plate)
    return db.scalar(select(Vehicle).where(func.upper(Vehicle.number_plate) == plate))


def get_or_create_vehicle(db: Session, number_plate: str, vehicle_class) -> Vehicle:
    vehicle_class = as_vehicle_class(vehicle_class)
    vehicle = find_vehicle(db, number_plate)
    if vehicle is None:
        vehicle = Vehicle(number_plate=normalize_plate(number_plate), vehicle_class=vehicle_class)
        db.add(vehicle)
        db.flush()
        logger.info("Registered vehicle %s (%s)", vehicle.number_plate, vehicle_class.value)
    elif vehicle.vehicle_class != vehicle_class:
        raise ValidationError(
            f"Vehicle {vehicle.number_plate} is registered as {vehicle.vehicle_class.value}",
            ["vehicle_class"],
        )
    return vehicle


def open_session(db: Session, slot, vehicle: Vehicle, staff: Staff, billing_mode=BillingMode.HOURLY) -> ParkingSession:
    with atomic(db):
        session = allocator.assign(db, slot, vehicle, staff, billing_mode)
    return session


def register_entry(
    db: Session,
    number_plate: str,
    vehicle_class,
    staff_employee_id: str,
    billing_mode=BillingMode.HOURLY,
    slot_id: Optional[int] = None,
    override_slot_id: Optional[int] = None,
) -> ParkingSession:
    """Admit a vehicle: register it if new, pick or take a slot, open the session.

    With ``slot_id`` the named slot is used (manual assignment). If that slot
    is occupied and ``override_slot_id`` is given, its current session is
    moved to the override slot first. Everything happens in one transaction.
    """
    vehicle_class = as_vehicle_class(vehicle_class)
    billing_mode = as_billing_mode(billing_mode)

    with atomic(db):
        staff = get_staff(db, staff_employee_id)
        vehicle = get_or_create_vehicle(db, number_plate, vehicle_class)

        if slot_id is None:
            slot = allocator.find_nearest_available(db, vehicle_class)
            if slot is None:
                raise ConflictError(f"No available slot for {vehicle_class.value}")
        else:
            slot = allocator.get_slot(db, slot_id)
            if override_slot_id is not None and allocator.active_session_for_slot(db, slot.id) is not None:
                if allocator.active_session_for_vehicle(db, vehicle.id) is not None:
                    raise ConflictError(f"Vehicle {vehicle.number_plate} already has an active session")
                allocator.override(db, slot, allocator.get_slot(db, override_slot_id))

        session = allocator.assign(db, slot, vehicle, staff, billing_mode)
    return session


def upsert_billing(db: Session, session: ParkingSession, calculation: BillingCalculation) -> Billing:
    """Create the session's bill, or refresh its amount while it is unpaid."""
    billing = db.scalar(select(Billing).where(Billing.session_id == session.id))
    if billing is None:
        billing = Billing(
            session=session,
            billing_mode=calculation.billing_mode,
            amount=calculation.amount,
            is_paid=False,
            created_at=utcnow(),
        )
        db.add(billing)
    elif not billing.is_paid:
        billing.amount = calculation.amount
        billing.billing_mode = calculation.billing_mode
    db.flush()
    return billing


def close_session(
    db: Session,
    session_id: int,
    exit_time: Optional[datetime] = None,
    use_slab_pricing: bool = False,
) -> Tuple[ParkingSession, BillingCalculation]:
    """Complete an ACTIVE session: stamp exit, finalize the bill, free the slot."""
    exit_time = to_naive_utc(exit_time) if exit_time else utcnow()
    with atomic(db):
        session = get_session(db, session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActive(session_id)

        result = db.execute(
            update(ParkingSession)
            .where(ParkingSession.id == session.id)
            .where(ParkingSession.status == SessionStatus.ACTIVE)
            .values(status=SessionStatus.COMPLETED, exit_time=exit_time)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            raise SessionNotActive(session_id)

        calculation = calculate_billing(session, exit_time, use_slab_pricing)
        upsert_billing(db, session, calculation)
        allocator.release_slot(db, session.slot)
    logger.info(
        "Session %s closed: %s paid %s over %.2fh",
        session.id,
        session.vehicle.number_plate,
        calculation.amount,
        calculation.duration_hours,
    )
    return session, calculation


def preview_billing(db: Session, session_id: int, use_slab_pricing: bool = False) -> Tuple[ParkingSession, BillingCalculation]:
    """Price an ACTIVE session as if it ended now, recording the bill lazily."""
    with atomic(db):
        session = get_session(db, session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActive(session_id)
        calculation = calculate_billing(session, utcnow(), use_slab_pricing)
        upsert_billing(db, session, calculation)
    return session, calculation


def set_payment_status(db: Session, billing_id: int, is_paid: bool) -> Billing:
    with atomic(db):
        billing = db.get(Billing, billing_id)
        if billing is None:
            raise NotFoundError(f"Billing record {billing_id} not found")
        billing.is_paid = is_paid
    return billing
