import asyncio
import dataclasses
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload, sessionmaker

from .config import settings
from .models import ParkingSession, SessionStatus, utcnow
from .pricing import duration_hours

logger = logging.getLogger(__name__)


# In-memory pubsub for SSE (simple; replace with Redis for scale)
class EventBus:
    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[str]] = set()

    def subscribe(self) -> asyncio.Queue[str]:
        q: asyncio.Queue[str] = asyncio.Queue()
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue[str]) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, data: str) -> None:
        for q in list(self._subscribers):
            q.put_nowait(data)


@dataclass(frozen=True)
class DurationAlert:
    session_id: int
    vehicle_number_plate: str
    slot_location: str
    entry_time: datetime
    current_duration_hours: float
    staff_name: str
    vehicle_class: str
    is_notified: bool
    notified_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data["entry_time"] = self.entry_time.isoformat()
        data["notified_at"] = self.notified_at.isoformat() if self.notified_at else None
        return data


class DurationMonitor:
    """Tracks ACTIVE sessions that have been parked past the threshold.

    Only :meth:`scan` and :meth:`acknowledge` change the alert map, and both
    swap in a new dict under the lock, so readers always see a whole
    snapshot. Construct one per process and hand it to request handlers.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        threshold_hours: float = settings.LONG_STAY_THRESHOLD_HOURS,
        clock: Callable[[], datetime] = utcnow,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._session_factory = session_factory
        self.threshold_hours = threshold_hours
        self._clock = clock
        self.event_bus = event_bus or EventBus()
        self._alerts: Dict[int, DurationAlert] = {}
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    def _snapshot(self) -> Dict[int, DurationAlert]:
        with self._lock:
            return self._alerts

    def scan(self) -> List[DurationAlert]:
        """One monitoring pass over every ACTIVE session."""
        with self._session_factory() as db:
            active = db.scalars(
                select(ParkingSession)
                .where(ParkingSession.status == SessionStatus.ACTIVE)
                .options(
                    selectinload(ParkingSession.vehicle),
                    selectinload(ParkingSession.slot),
                    selectinload(ParkingSession.staff),
                )
            ).all()
            now = self._clock()
            overdue = [(s, duration_hours(s.entry_time, now)) for s in active]
            overdue = [(s, hours) for s, hours in overdue if hours >= self.threshold_hours]

            with self._lock:
                previous = self._alerts
                alerts: Dict[int, DurationAlert] = {}
                for session, hours in overdue:
                    prior = previous.get(session.id)
                    alerts[session.id] = DurationAlert(
                        session_id=session.id,
                        vehicle_number_plate=session.vehicle.number_plate,
                        slot_location=session.slot.location,
                        entry_time=session.entry_time,
                        current_duration_hours=round(hours, 2),
                        staff_name=session.staff.name,
                        vehicle_class=session.vehicle.vehicle_class.value,
                        is_notified=prior.is_notified if prior else True,
                        notified_at=prior.notified_at if prior else now,
                    )
                    if prior is None:
                        logger.warning(
                            "New long-stay alert: vehicle %s in slot %s - %.2f hours",
                            session.vehicle.number_plate,
                            session.slot.location,
                            hours,
                        )
                # sessions below threshold or no longer ACTIVE drop out here
                self._alerts = alerts

        logger.debug("Duration scan: %d active sessions, %d alerts", len(active), len(alerts))
        return list(alerts.values())

    def current_alerts(self) -> List[DurationAlert]:
        """Alerts with durations refreshed to now, longest stay first."""
        alerts = self._snapshot()
        if not alerts:
            return []
        with self._session_factory() as db:
            still_active = set(
                db.scalars(
                    select(ParkingSession.id)
                    .where(ParkingSession.id.in_(list(alerts)))
                    .where(ParkingSession.status == SessionStatus.ACTIVE)
                )
            )
        now = self._clock()
        refreshed = [
            dataclasses.replace(alert, current_duration_hours=round(duration_hours(alert.entry_time, now), 2))
            for session_id, alert in alerts.items()
            if session_id in still_active
        ]
        return sorted(refreshed, key=lambda a: a.current_duration_hours, reverse=True)

    def new_alerts(self) -> List[DurationAlert]:
        return [a for a in self.current_alerts() if a.is_notified and a.notified_at]

    def alerts_for_vehicle(self, number_plate: str) -> List[DurationAlert]:
        needle = number_plate.lower()
        return [a for a in self.current_alerts() if needle in a.vehicle_number_plate.lower()]

    def acknowledge(self, session_id: int) -> bool:
        with self._lock:
            alert = self._alerts.get(session_id)
            if alert is None:
                return False
            alerts = dict(self._alerts)
            alerts[session_id] = dataclasses.replace(alert, is_notified=False)
            self._alerts = alerts
        return True

    def count(self) -> int:
        return len(self._snapshot())

    def trigger_check(self) -> List[DurationAlert]:
        self.scan()
        return self.current_alerts()

    def payload(self, kind: str) -> str:
        alerts = self.current_alerts()
        return json.dumps(
            {
                "type": kind,
                "alerts": [a.to_dict() for a in alerts],
                "count": len(alerts),
                "timestamp": self._clock().isoformat(),
            }
        )

    async def run_forever(self, interval_seconds: float) -> None:
        """Scan now, then every ``interval_seconds`` until cancelled."""
        while True:
            try:
                await asyncio.to_thread(self.scan)
                if self.event_bus.subscriber_count:
                    data = await asyncio.to_thread(self.payload, "update")
                    await self.event_bus.publish(data)
            except Exception:  # noqa: BLE001
                logger.exception("Error checking long-stay sessions")
            await asyncio.sleep(interval_seconds)

    def start(self, interval_seconds: float = settings.MONITOR_INTERVAL_SECONDS) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(interval_seconds))
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
