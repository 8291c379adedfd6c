from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import BillingMode, SessionStatus, SlotStatus, VehicleClass


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class VehicleOut(ORMModel):
    id: int
    number_plate: str
    vehicle_class: VehicleClass
    created_at: datetime


class SlotOut(ORMModel):
    id: int
    location: str
    vehicle_class: VehicleClass
    status: SlotStatus


class StaffOut(ORMModel):
    id: int
    employee_id: str
    name: str
    phone: Optional[str] = None


class BillingOut(ORMModel):
    id: int
    session_id: int
    billing_mode: BillingMode
    amount: float
    is_paid: bool
    created_at: datetime


class SessionOut(ORMModel):
    id: int
    entry_time: datetime
    exit_time: Optional[datetime] = None
    status: SessionStatus
    billing_mode: BillingMode
    vehicle: VehicleOut
    slot: SlotOut
    staff: StaffOut
    billing: Optional[BillingOut] = None


class SessionBrief(ORMModel):
    id: int
    entry_time: datetime
    status: SessionStatus
    billing_mode: BillingMode
    vehicle: VehicleOut


class SlotWithSession(SlotOut):
    active_session: Optional[SessionBrief] = None


class VehicleWithSessions(VehicleOut):
    sessions: List["SessionSummary"] = []


class SessionSummary(ORMModel):
    id: int
    slot_id: int
    staff_id: int
    entry_time: datetime
    exit_time: Optional[datetime] = None
    status: SessionStatus
    billing_mode: BillingMode


VehicleWithSessions.model_rebuild()


class BillingWithSession(BillingOut):
    session: SessionOut


class EntryRequest(BaseModel):
    number_plate: str = Field(..., min_length=1, max_length=32)
    vehicle_class: VehicleClass
    billing_mode: BillingMode = BillingMode.HOURLY
    staff_id: Optional[str] = Field(None, description="Employee id; defaults to the token subject")
    slot_id: Optional[int] = None
    override_slot_id: Optional[int] = None


class SlotCreate(BaseModel):
    location: str = Field(..., min_length=1, max_length=32)
    vehicle_class: VehicleClass


class SlotStatusUpdate(BaseModel):
    status: SlotStatus


class StaffCreate(BaseModel):
    employee_id: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., min_length=1, max_length=128)
    phone: Optional[str] = Field(None, max_length=32)
    password: str = Field(..., min_length=6, max_length=128)


class PaymentUpdate(BaseModel):
    is_paid: bool = Field(..., strict=True)


class BillingCalculationOut(BaseModel):
    amount: float
    duration_hours: float
    vehicle_class: VehicleClass
    billing_mode: BillingMode


class SessionEndResponse(BaseModel):
    message: str
    session: SessionOut
    calculation: BillingCalculationOut


class BillingPreview(BaseModel):
    session_id: int
    preview: BillingCalculationOut
    current_time: datetime
    entry_time: datetime


class PaymentResponse(BaseModel):
    message: str
    billing: BillingOut


class UnpaidSummary(BaseModel):
    unpaid_bills: List[BillingWithSession]
    total_unpaid_amount: float
    count: int


class SlotStatistics(BaseModel):
    total: int
    available: int
    occupied: int
    maintenance: int
    occupancy_rate: float


class AlertOut(BaseModel):
    session_id: int
    vehicle_number_plate: str
    slot_location: str
    entry_time: datetime
    current_duration_hours: float
    staff_name: str
    vehicle_class: VehicleClass
    is_notified: bool
    notified_at: Optional[datetime] = None


class AlertList(BaseModel):
    success: bool = True
    count: int
    data: List[AlertOut]


class TokenResponse(BaseModel):
    token: str
