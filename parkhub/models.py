import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    # Naive UTC so values survive a round-trip through SQLite unchanged.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class VehicleClass(str, enum.Enum):
    CAR = "CAR"
    BIKE = "BIKE"
    EV = "EV"
    HANDICAP_ACCESSIBLE = "HANDICAP_ACCESSIBLE"


class SlotStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    MAINTENANCE = "MAINTENANCE"


class SessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class BillingMode(str, enum.Enum):
    HOURLY = "HOURLY"
    DAY_PASS = "DAY_PASS"


class Base(DeclarativeBase):
    pass


class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True)
    number_plate = Column(String(32), unique=True, nullable=False, index=True)
    vehicle_class = Column(Enum(VehicleClass, name="vehicle_class"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    sessions = relationship("ParkingSession", back_populates="vehicle", order_by="ParkingSession.entry_time")

    def __repr__(self):
        return f"<Vehicle(id={self.id}, plate={self.number_plate})>"


class Slot(Base):
    __tablename__ = "slots"
    id = Column(Integer, primary_key=True)
    location = Column(String(32), unique=True, nullable=False, index=True)
    vehicle_class = Column(Enum(VehicleClass, name="vehicle_class"), nullable=False, index=True)
    status = Column(Enum(SlotStatus, name="slot_status"), default=SlotStatus.AVAILABLE, nullable=False, index=True)

    sessions = relationship("ParkingSession", back_populates="slot")

    def __repr__(self):
        return f"<Slot(id={self.id}, location={self.location}, status={self.status})>"


class Staff(Base):
    __tablename__ = "staff"
    id = Column(Integer, primary_key=True)
    employee_id = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(128), nullable=False)
    phone = Column(String(32), nullable=True)
    # staff without a password cannot log in
    password_hash = Column(String(256), nullable=True)

    sessions = relationship("ParkingSession", back_populates="staff")


class ParkingSession(Base):
    __tablename__ = "sessions"
    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    slot_id = Column(Integer, ForeignKey("slots.id"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False, index=True)
    entry_time = Column(DateTime, default=utcnow, nullable=False, index=True)
    exit_time = Column(DateTime, nullable=True)
    status = Column(Enum(SessionStatus, name="session_status"), default=SessionStatus.ACTIVE, nullable=False, index=True)
    billing_mode = Column(Enum(BillingMode, name="billing_mode"), default=BillingMode.HOURLY, nullable=False)

    vehicle = relationship("Vehicle", back_populates="sessions")
    slot = relationship("Slot", back_populates="sessions")
    staff = relationship("Staff", back_populates="sessions")
    billing = relationship("Billing", back_populates="session", uselist=False)

    # The store refuses a second ACTIVE session for the same vehicle.
    __table_args__ = (
        Index(
            "uq_sessions_active_vehicle",
            "vehicle_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self):
        return f"<ParkingSession(id={self.id}, vehicle_id={self.vehicle_id}, status={self.status})>"


class Billing(Base):
    __tablename__ = "billings"
    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), unique=True, nullable=False)
    billing_mode = Column(Enum(BillingMode, name="billing_mode"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    is_paid = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    session = relationship("ParkingSession", back_populates="billing")
