from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncGenerator, List, Optional
import asyncio
import logging

from fastapi import Depends, FastAPI, Form, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import allocator, reports, sessions
from .auth import authenticate_staff, get_current_payload, hash_password, staff_token
from .config import settings
from .database import atomic, init_db, make_engine, make_session_factory
from .errors import ConflictError, NotFoundError, ParkingError, ValidationError
from .models import (
    Billing,
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
from .monitor import DurationAlert, DurationMonitor, EventBus
from .pricing import pricing_config
from .schemas import (
    AlertList,
    AlertOut,
    BillingCalculationOut,
    BillingOut,
    BillingPreview,
    BillingWithSession,
    EntryRequest,
    PaymentResponse,
    PaymentUpdate,
    SessionBrief,
    SessionEndResponse,
    SessionOut,
    SlotCreate,
    SlotOut,
    SlotStatistics,
    SlotStatusUpdate,
    SlotWithSession,
    StaffCreate,
    StaffOut,
    TokenResponse,
    UnpaidSummary,
    VehicleWithSessions,
)

logger = logging.getLogger(__name__)

_SESSION_LOADS = (
    selectinload(ParkingSession.vehicle),
    selectinload(ParkingSession.slot),
    selectinload(ParkingSession.staff),
    selectinload(ParkingSession.billing),
)


def get_db(request: Request):
    with request.app.state.session_factory() as session:
        yield session


def get_monitor(request: Request) -> DurationMonitor:
    return request.app.state.monitor


def _alert_list(alerts: List[DurationAlert]) -> AlertList:
    return AlertList(
        count=len(alerts),
        data=[AlertOut.model_validate(a, from_attributes=True) for a in alerts],
    )


def create_app(engine: Optional[Engine] = None, start_monitor: bool = True) -> FastAPI:
    engine = engine or make_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(app.state.engine)
        if start_monitor:
            app.state.monitor.start(settings.MONITOR_INTERVAL_SECONDS)
        try:
            yield
        finally:
            await app.state.monitor.stop()

    app = FastAPI(title="Parking Facility Backend", lifespan=lifespan)
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.event_bus = EventBus()
    app.state.monitor = DurationMonitor(app.state.session_factory, event_bus=app.state.event_bus)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ParkingError)
    async def parking_error_handler(request: Request, exc: ParkingError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content=ValidationError("Invalid request", details).to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Store failure on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "kind": "internal", "message": "Internal Server Error", "details": []},
        )

    # --- Auth ---
    @app.post("/auth/login", response_model=TokenResponse)
    def login(username: str = Form(...), password: str = Form(...), db: Session = Depends(get_db)):
        staff = authenticate_staff(db, username, password)
        logger.info("Staff %s logged in", staff.employee_id)
        return TokenResponse(token=staff_token(staff.employee_id))

    @app.options("/auth/login")
    def login_options():
        return Response(status_code=204)

    # --- Vehicles ---
    @app.get("/api/vehicles", response_model=List[VehicleWithSessions])
    def list_vehicles(
        vehicle_class: Optional[VehicleClass] = None,
        number_plate: Optional[str] = None,
        session_status: Optional[SessionStatus] = None,
        billing_mode: Optional[BillingMode] = None,
        db: Session = Depends(get_db),
    ):
        stmt = select(Vehicle).options(selectinload(Vehicle.sessions)).order_by(Vehicle.number_plate)
        if vehicle_class:
            stmt = stmt.where(Vehicle.vehicle_class == vehicle_class)
        if number_plate:
            stmt = stmt.where(func.upper(Vehicle.number_plate).contains(number_plate.strip().upper()))
        if session_status or billing_mode:
            criteria = []
            if session_status:
                criteria.append(ParkingSession.status == session_status)
            if billing_mode:
                criteria.append(ParkingSession.billing_mode == billing_mode)
            stmt = stmt.where(Vehicle.sessions.any(*criteria))
        return list(db.scalars(stmt))

    @app.post("/api/vehicles/entry", response_model=SessionOut, status_code=201)
    def vehicle_entry(req: EntryRequest, payload: dict = Depends(get_current_payload), db: Session = Depends(get_db)):
        session = sessions.register_entry(
            db,
            number_plate=req.number_plate,
            vehicle_class=req.vehicle_class,
            staff_employee_id=req.staff_id or payload["sub"],
            billing_mode=req.billing_mode,
            slot_id=req.slot_id,
            override_slot_id=req.override_slot_id,
        )
        return sessions.get_session(db, session.id)

    # --- Slots ---
    @app.get("/api/slots", response_model=List[SlotWithSession])
    def list_slots(db: Session = Depends(get_db)):
        slots = db.scalars(select(Slot).order_by(Slot.location)).all()
        active = db.scalars(
            select(ParkingSession)
            .where(ParkingSession.status == SessionStatus.ACTIVE)
            .options(selectinload(ParkingSession.vehicle))
        ).all()
        by_slot = {s.slot_id: s for s in active}
        result = []
        for slot in slots:
            item = SlotWithSession.model_validate(slot)
            current = by_slot.get(slot.id)
            if current is not None:
                item.active_session = SessionBrief.model_validate(current)
            result.append(item)
        return result

    @app.get("/api/slots/statistics", response_model=SlotStatistics)
    def get_slot_statistics(db: Session = Depends(get_db)):
        return reports.slot_statistics(db)

    @app.get("/api/slots/available/{vehicle_class}", response_model=List[SlotOut])
    def get_available_slots(vehicle_class: VehicleClass, db: Session = Depends(get_db)):
        return allocator.available_slots(db, vehicle_class)

    @app.get("/api/slots/nearest/{vehicle_class}", response_model=SlotOut)
    def get_nearest_slot(vehicle_class: VehicleClass, db: Session = Depends(get_db)):
        slot = allocator.find_nearest_available(db, vehicle_class)
        if slot is None:
            raise NotFoundError(f"No available slot for {vehicle_class.value}")
        return slot

    @app.post("/api/slots", response_model=SlotOut, status_code=201)
    def create_slot(req: SlotCreate, payload: dict = Depends(get_current_payload), db: Session = Depends(get_db)):
        location = req.location.strip().upper()
        try:
            with atomic(db):
                slot = Slot(location=location, vehicle_class=req.vehicle_class, status=SlotStatus.AVAILABLE)
                db.add(slot)
        except IntegrityError as exc:
            raise ConflictError(f"Slot {location} already exists") from exc
        return slot

    @app.patch("/api/slots/{slot_id}/status", response_model=SlotOut)
    def update_slot_status(
        slot_id: int,
        req: SlotStatusUpdate,
        payload: dict = Depends(get_current_payload),
        db: Session = Depends(get_db),
    ):
        with atomic(db):
            slot = allocator.set_slot_status(db, allocator.get_slot(db, slot_id), req.status)
        return slot

    # --- Staff ---
    @app.get("/api/staff", response_model=List[StaffOut])
    def list_staff(db: Session = Depends(get_db)):
        return list(db.scalars(select(Staff).order_by(Staff.name)))

    @app.post("/api/staff", response_model=StaffOut, status_code=201)
    def create_staff(req: StaffCreate, payload: dict = Depends(get_current_payload), db: Session = Depends(get_db)):
        try:
            with atomic(db):
                staff = Staff(
                    employee_id=req.employee_id.strip(),
                    name=req.name.strip(),
                    phone=req.phone,
                    password_hash=hash_password(req.password),
                )
                db.add(staff)
        except IntegrityError as exc:
            raise ConflictError(f"Staff member {req.employee_id} already exists") from exc
        return staff

    # --- Sessions ---
    @app.get("/api/sessions", response_model=List[SessionOut])
    def list_sessions(
        status: Optional[SessionStatus] = None,
        vehicle_id: Optional[int] = None,
        slot_id: Optional[int] = None,
        staff_id: Optional[int] = None,
        db: Session = Depends(get_db),
    ):
        stmt = select(ParkingSession).options(*_SESSION_LOADS).order_by(ParkingSession.entry_time.desc())
        if status:
            stmt = stmt.where(ParkingSession.status == status)
        if vehicle_id is not None:
            stmt = stmt.where(ParkingSession.vehicle_id == vehicle_id)
        if slot_id is not None:
            stmt = stmt.where(ParkingSession.slot_id == slot_id)
        if staff_id is not None:
            stmt = stmt.where(ParkingSession.staff_id == staff_id)
        return list(db.scalars(stmt))

    @app.get("/api/sessions/active", response_model=List[SessionOut])
    def list_active_sessions(db: Session = Depends(get_db)):
        stmt = (
            select(ParkingSession)
            .where(ParkingSession.status == SessionStatus.ACTIVE)
            .options(*_SESSION_LOADS)
            .order_by(ParkingSession.entry_time.desc())
        )
        return list(db.scalars(stmt))

    @app.get("/api/sessions/vehicle/{number_plate}", response_model=List[SessionOut])
    def list_sessions_by_vehicle(number_plate: str, db: Session = Depends(get_db)):
        stmt = (
            select(ParkingSession)
            .join(Vehicle, ParkingSession.vehicle_id == Vehicle.id)
            .where(func.upper(Vehicle.number_plate) == number_plate.strip().upper())
            .options(*_SESSION_LOADS)
            .order_by(ParkingSession.entry_time.desc())
        )
        return list(db.scalars(stmt))

    @app.get("/api/sessions/{session_id}", response_model=SessionOut)
    def get_session(session_id: int, db: Session = Depends(get_db)):
        return sessions.get_session(db, session_id)

    @app.patch("/api/sessions/{session_id}/end", response_model=SessionEndResponse)
    def end_session(
        session_id: int,
        use_slab_pricing: bool = False,
        payload: dict = Depends(get_current_payload),
        db: Session = Depends(get_db),
    ):
        session, calculation = sessions.close_session(db, session_id, use_slab_pricing=use_slab_pricing)
        return SessionEndResponse(
            message="Parking session ended successfully",
            session=SessionOut.model_validate(sessions.get_session(db, session.id)),
            calculation=BillingCalculationOut(**calculation.to_dict()),
        )

    # --- Billing ---
    @app.get("/api/billing", response_model=List[BillingWithSession])
    def list_billing(
        is_paid: Optional[bool] = None,
        vehicle_class: Optional[VehicleClass] = None,
        billing_mode: Optional[BillingMode] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        db: Session = Depends(get_db),
    ):
        stmt = (
            select(Billing)
            .options(selectinload(Billing.session).options(*_SESSION_LOADS))
            .order_by(Billing.created_at.desc())
        )
        if is_paid is not None:
            stmt = stmt.where(Billing.is_paid.is_(is_paid))
        if billing_mode:
            stmt = stmt.where(Billing.billing_mode == billing_mode)
        if start_date and end_date:
            stmt = stmt.where(Billing.created_at.between(start_date, end_date))
        if vehicle_class:
            stmt = (
                stmt.join(ParkingSession, Billing.session_id == ParkingSession.id)
                .join(Vehicle, ParkingSession.vehicle_id == Vehicle.id)
                .where(Vehicle.vehicle_class == vehicle_class)
            )
        return list(db.scalars(stmt))

    @app.get("/api/billing/statistics")
    def get_billing_statistics(db: Session = Depends(get_db)):
        return reports.billing_statistics(db)

    @app.get("/api/billing/revenue-trends")
    def get_revenue_trends(period: str = "day", limit: int = 30, db: Session = Depends(get_db)):
        return reports.revenue_trends(db, period, limit)

    @app.get("/api/billing/unpaid", response_model=UnpaidSummary)
    def get_unpaid_bills(db: Session = Depends(get_db)):
        bills = list(
            db.scalars(
                select(Billing)
                .where(Billing.is_paid.is_(False))
                .options(selectinload(Billing.session).options(*_SESSION_LOADS))
                .order_by(Billing.created_at.desc())
            )
        )
        return UnpaidSummary(
            unpaid_bills=[BillingWithSession.model_validate(b) for b in bills],
            total_unpaid_amount=round(sum(float(b.amount) for b in bills), 2),
            count=len(bills),
        )

    @app.get("/api/billing/pricing-config")
    def get_pricing_config():
        return pricing_config()

    @app.get("/api/billing/peak-hours")
    def get_peak_hours(day: Optional[date] = Query(None, alias="date"), db: Session = Depends(get_db)):
        return reports.peak_hours(db, day)

    @app.get("/api/billing/preview/{session_id}", response_model=BillingPreview)
    def preview_billing(session_id: int, use_slab_pricing: bool = False, db: Session = Depends(get_db)):
        session, calculation = sessions.preview_billing(db, session_id, use_slab_pricing)
        return BillingPreview(
            session_id=session.id,
            preview=BillingCalculationOut(**calculation.to_dict()),
            current_time=utcnow(),
            entry_time=session.entry_time,
        )

    @app.get("/api/billing/{billing_id}", response_model=BillingWithSession)
    def get_billing(billing_id: int, db: Session = Depends(get_db)):
        billing = db.scalar(
            select(Billing)
            .where(Billing.id == billing_id)
            .options(selectinload(Billing.session).options(*_SESSION_LOADS))
        )
        if billing is None:
            raise NotFoundError(f"Billing record {billing_id} not found")
        return billing

    @app.patch("/api/billing/{billing_id}/payment", response_model=PaymentResponse)
    def update_payment_status(
        billing_id: int,
        req: PaymentUpdate,
        payload: dict = Depends(get_current_payload),
        db: Session = Depends(get_db),
    ):
        billing = sessions.set_payment_status(db, billing_id, req.is_paid)
        return PaymentResponse(
            message=f"Billing marked as {'paid' if req.is_paid else 'unpaid'}",
            billing=BillingOut.model_validate(billing),
        )

    # --- Long-stay notifications ---
    @app.get("/api/notifications", response_model=AlertList)
    def get_notifications(type: Optional[str] = None, monitor: DurationMonitor = Depends(get_monitor)):
        alerts = monitor.new_alerts() if type == "new" else monitor.current_alerts()
        return _alert_list(alerts)

    @app.get("/api/notifications/count")
    def get_notifications_count(monitor: DurationMonitor = Depends(get_monitor)):
        return {"success": True, "count": monitor.count()}

    @app.get("/api/notifications/stream")
    async def notification_stream(request: Request, monitor: DurationMonitor = Depends(get_monitor)):
        async def event_stream() -> AsyncGenerator[bytes, None]:
            queue = monitor.event_bus.subscribe()
            try:
                initial = await asyncio.to_thread(monitor.payload, "initial")
                yield f"data: {initial}\n\n".encode("utf-8")
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        data = await asyncio.wait_for(queue.get(), timeout=settings.STREAM_KEEPALIVE_SECONDS)
                        yield f"data: {data}\n\n".encode("utf-8")
                    except asyncio.TimeoutError:
                        # keep-alive
                        yield b":keepalive\n\n"
            finally:
                monitor.event_bus.unsubscribe(queue)

        headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)

    @app.post("/api/notifications/check")
    async def trigger_notification_check(
        payload: dict = Depends(get_current_payload),
        monitor: DurationMonitor = Depends(get_monitor),
    ):
        alerts = await asyncio.to_thread(monitor.trigger_check)
        if monitor.event_bus.subscriber_count:
            await monitor.event_bus.publish(await asyncio.to_thread(monitor.payload, "update"))
        body = _alert_list(alerts).model_dump(mode="json")
        body["message"] = "Manual notification check completed"
        return body

    @app.patch("/api/notifications/{session_id}/read")
    def mark_notification_read(
        session_id: int,
        payload: dict = Depends(get_current_payload),
        monitor: DurationMonitor = Depends(get_monitor),
    ):
        if not monitor.acknowledge(session_id):
            raise NotFoundError("Notification not found")
        return {"success": True, "message": "Notification marked as read"}

    @app.get("/api/notifications/vehicle/{number_plate}", response_model=AlertList)
    def get_notifications_by_vehicle(number_plate: str, monitor: DurationMonitor = Depends(get_monitor)):
        return _alert_list(monitor.alerts_for_vehicle(number_plate))

    @app.options("/api/vehicles/entry")
    def entry_options():
        # Allow CORS preflight to succeed explicitly if a proxy blocks default handling
        return Response(status_code=204)

    return app


app = create_app()
