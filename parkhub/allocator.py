import logging
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    BillingMode,
    ParkingSession,
    SessionStatus,
    Slot,
    SlotStatus,
    Staff,
    Vehicle,
    VehicleClass,
    utcnow,
)
from .pricing import as_billing_mode, as_vehicle_class

logger = logging.getLogger(__name__)

COMPATIBLE_SLOT_CLASSES: Dict[VehicleClass, FrozenSet[VehicleClass]] = {
    VehicleClass.CAR: frozenset({VehicleClass.CAR}),
    VehicleClass.BIKE: frozenset({VehicleClass.BIKE}),
    VehicleClass.EV: frozenset({VehicleClass.EV}),
    VehicleClass.HANDICAP_ACCESSIBLE: frozenset({VehicleClass.HANDICAP_ACCESSIBLE}),
}


def compatible_slot_classes(vehicle_class) -> FrozenSet[VehicleClass]:
    return COMPATIBLE_SLOT_CLASSES[as_vehicle_class(vehicle_class)]


def is_compatible(slot: Slot, vehicle_class) -> bool:
    return slot.vehicle_class in compatible_slot_classes(vehicle_class)


def available_slots(db: Session, vehicle_class) -> List[Slot]:
    stmt = (
        select(Slot)
        .where(Slot.vehicle_class.in_(compatible_slot_classes(vehicle_class)))
        .where(Slot.status == SlotStatus.AVAILABLE)
        .order_by(Slot.location)
    )
    return list(db.scalars(stmt))


def find_nearest_available(db: Session, vehicle_class) -> Optional[Slot]:
    """Lowest location label among AVAILABLE slots compatible with the class.

    Labels are zero-padded (``G-01``, ``G-02`` ...) so string order is
    distance order.
    """
    stmt = (
        select(Slot)
        .where(Slot.vehicle_class.in_(compatible_slot_classes(vehicle_class)))
        .where(Slot.status == SlotStatus.AVAILABLE)
        .order_by(Slot.location)
        .limit(1)
    )
    return db.scalar(stmt)


def active_session_for_vehicle(db: Session, vehicle_id: int) -> Optional[ParkingSession]:
    return db.scalar(
        select(ParkingSession)
        .where(ParkingSession.vehicle_id == vehicle_id)
        .where(ParkingSession.status == SessionStatus.ACTIVE)
    )


def active_session_for_slot(db: Session, slot_id: int) -> Optional[ParkingSession]:
    return db.scalar(
        select(ParkingSession)
        .where(ParkingSession.slot_id == slot_id)
        .where(ParkingSession.status == SessionStatus.ACTIVE)
    )


def _transition_slot(db: Session, slot: Slot, target: SlotStatus, *criteria) -> bool:
    # Conditional update: only one concurrent caller can win the transition.
    result = db.execute(
        update(Slot)
        .where(Slot.id == slot.id, *criteria)
        .values(status=target)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 1:
        # the in-memory status was evaluated against stale state; reload it
        db.expire(slot, ["status"])
        return False
    return True


def claim_slot(db: Session, slot: Slot) -> None:
    if not _transition_slot(db, slot, SlotStatus.OCCUPIED, Slot.status == SlotStatus.AVAILABLE):
        raise ConflictError(f"Slot {slot.location} is not available")


def release_slot(db: Session, slot: Slot) -> None:
    _transition_slot(db, slot, SlotStatus.AVAILABLE, Slot.status == SlotStatus.OCCUPIED)


def assign(
    db: Session,
    slot: Slot,
    vehicle: Vehicle,
    staff: Staff,
    billing_mode=BillingMode.HOURLY,
) -> ParkingSession:
    """Open an ACTIVE session for ``vehicle`` in ``slot``.

    Runs inside the caller's transaction; nothing is committed here so that
    a failure leaves neither the session nor the slot change behind.
    """
    billing_mode = as_billing_mode(billing_mode)
    if not is_compatible(slot, vehicle.vehicle_class):
        raise ConflictError(
            f"Slot {slot.location} accepts {slot.vehicle_class.value}, not {vehicle.vehicle_class.value}"
        )
    if vehicle.id is not None and active_session_for_vehicle(db, vehicle.id) is not None:
        raise ConflictError(f"Vehicle {vehicle.number_plate} already has an active session")

    claim_slot(db, slot)
    session = ParkingSession(
        vehicle=vehicle,
        slot=slot,
        staff=staff,
        entry_time=utcnow(),
        status=SessionStatus.ACTIVE,
        billing_mode=billing_mode,
    )
    db.add(session)
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError(f"Vehicle {vehicle.number_plate} already has an active session") from exc
    logger.info("Session %s opened: %s -> %s", session.id, vehicle.number_plate, slot.location)
    return session


def override(db: Session, target_slot: Slot, override_slot: Slot) -> ParkingSession:
    """Move the session occupying ``target_slot`` to ``override_slot``.

    Afterwards ``override_slot`` is OCCUPIED by the moved session and
    ``target_slot`` is AVAILABLE for a new assignment.
    """
    if override_slot.id == target_slot.id:
        raise ConflictError("Override slot must differ from the target slot")

    displaced = active_session_for_slot(db, target_slot.id)
    if displaced is None:
        raise ConflictError(f"Slot {target_slot.location} has no active session to move")
    if override_slot.status != SlotStatus.AVAILABLE:
        raise ConflictError(f"Override slot {override_slot.location} is not available")
    if not is_compatible(override_slot, displaced.vehicle.vehicle_class):
        raise ConflictError(
            f"Override slot {override_slot.location} cannot take a {displaced.vehicle.vehicle_class.value}"
        )

    claim_slot(db, override_slot)
    displaced.slot = override_slot
    release_slot(db, target_slot)
    db.flush()
    logger.info(
        "Session %s moved from %s to %s",
        displaced.id,
        target_slot.location,
        override_slot.location,
    )
    return displaced


def get_slot(db: Session, slot_id: int) -> Slot:
    slot = db.get(Slot, slot_id)
    if slot is None:
        raise NotFoundError(f"Slot {slot_id} not found")
    return slot


def set_slot_status(db: Session, slot: Slot, status) -> Slot:
    """Manual status change; only AVAILABLE <-> MAINTENANCE is allowed by hand."""
    try:
        status = SlotStatus(status)
    except ValueError as exc:
        raise ValidationError(f"Invalid slot status: {status}") from exc
    if status == SlotStatus.OCCUPIED:
        raise ConflictError("Slots become OCCUPIED only through a parking session")
    if active_session_for_slot(db, slot.id) is not None:
        raise ConflictError(f"Slot {slot.location} has an active session")
    # an entry may claim the slot after the check above; only a non-OCCUPIED row may change
    if not _transition_slot(db, slot, status, Slot.status != SlotStatus.OCCUPIED):
        raise ConflictError(f"Slot {slot.location} is occupied")
    return slot
