"""Read-only aggregates over slots, sessions and bills for dashboards."""

from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session, selectinload

from .models import Billing, ParkingSession, Slot, SlotStatus, Vehicle, utcnow
from .pricing import duration_hours

PERIOD_FORMATS = {
    "hour": "%Y-%m-%d %H:00:00",
    "day": "%Y-%m-%d",
    "week": "%Y-W%W",
    "month": "%Y-%m",
}


def slot_statistics(db: Session) -> dict:
    counts = dict(db.execute(select(Slot.status, func.count(Slot.id)).group_by(Slot.status)).all())
    total = sum(counts.values())
    occupied = counts.get(SlotStatus.OCCUPIED, 0)
    return {
        "total": total,
        "available": counts.get(SlotStatus.AVAILABLE, 0),
        "occupied": occupied,
        "maintenance": counts.get(SlotStatus.MAINTENANCE, 0),
        "occupancy_rate": round(occupied / total * 100, 2) if total else 0.0,
    }


def billing_statistics(db: Session) -> dict:
    total_revenue = db.scalar(select(func.coalesce(func.sum(Billing.amount), 0.0)))
    total_bills = db.scalar(select(func.count(Billing.id)))
    paid_bills = db.scalar(select(func.count(Billing.id)).where(Billing.is_paid.is_(True)))

    by_mode = db.execute(
        select(Billing.billing_mode, func.sum(Billing.amount), func.count(Billing.id)).group_by(Billing.billing_mode)
    ).all()

    paid_amount = case((Billing.is_paid.is_(True), Billing.amount), else_=0.0)
    paid_count = case((Billing.is_paid.is_(True), 1), else_=0)
    by_class = db.execute(
        select(
            Vehicle.vehicle_class,
            func.sum(Billing.amount),
            func.count(Billing.id),
            func.sum(paid_amount),
            func.sum(paid_count),
        )
        .join(ParkingSession, Billing.session_id == ParkingSession.id)
        .join(Vehicle, ParkingSession.vehicle_id == Vehicle.id)
        .group_by(Vehicle.vehicle_class)
    ).all()

    return {
        "total_revenue": round(float(total_revenue or 0), 2),
        "total_bills": total_bills,
        "paid_bills": paid_bills,
        "unpaid_bills": total_bills - paid_bills,
        "revenue_by_mode": [
            {"billing_mode": mode.value, "revenue": round(float(revenue or 0), 2), "count": count}
            for mode, revenue, count in by_mode
        ],
        "revenue_by_vehicle_class": [
            {
                "vehicle_class": vehicle_class.value,
                "total_revenue": round(float(revenue or 0), 2),
                "total_bills": count,
                "paid_revenue": round(float(paid or 0), 2),
                "paid_bills": int(paid_n or 0),
            }
            for vehicle_class, revenue, count, paid, paid_n in by_class
        ],
    }


def _window_start(period: str, limit: int, now: datetime) -> datetime:
    if period == "hour":
        return now - timedelta(hours=limit)
    if period == "week":
        return now - timedelta(weeks=limit)
    if period == "month":
        month_index = now.year * 12 + (now.month - 1) - limit
        return now.replace(year=month_index // 12, month=month_index % 12 + 1, day=1)
    return now - timedelta(days=limit)


def revenue_trends(db: Session, period: str = "day", limit: int = 30, now: Optional[datetime] = None) -> List[dict]:
    if period not in PERIOD_FORMATS:
        period = "day"
    limit = max(1, limit)
    now = now or utcnow()
    fmt = PERIOD_FORMATS[period]

    bills = db.scalars(select(Billing).where(Billing.created_at >= _window_start(period, limit, now)))
    buckets: Dict[str, dict] = {}
    for bill in bills:
        key = bill.created_at.strftime(fmt)
        bucket = buckets.setdefault(
            key,
            {"period": key, "revenue": 0.0, "transactions": 0, "paid_revenue": 0.0, "paid_transactions": 0},
        )
        bucket["revenue"] += float(bill.amount)
        bucket["transactions"] += 1
        if bill.is_paid:
            bucket["paid_revenue"] += float(bill.amount)
            bucket["paid_transactions"] += 1

    rows = sorted(buckets.values(), key=lambda b: b["period"], reverse=True)[:limit]
    for row in rows:
        row["revenue"] = round(row["revenue"], 2)
        row["paid_revenue"] = round(row["paid_revenue"], 2)
    return rows


def peak_hours(db: Session, day: Optional[date] = None) -> List[dict]:
    """Hour-by-hour traffic for one calendar day (UTC)."""
    day = day or utcnow().date()
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)

    sessions = db.scalars(
        select(ParkingSession)
        .where(ParkingSession.entry_time < end)
        .where(or_(ParkingSession.exit_time.is_(None), ParkingSession.exit_time >= start))
        .options(selectinload(ParkingSession.vehicle), selectinload(ParkingSession.billing))
    ).all()

    hours = [
        {
            "hour": h,
            "entries_count": 0,
            "exits_count": 0,
            "revenue": 0.0,
            "avg_occupancy": 0,
            "avg_duration_hours": 0.0,
            "vehicle_breakdown": [],
        }
        for h in range(24)
    ]
    breakdown: Dict[int, Counter] = defaultdict(Counter)
    stays: Dict[int, List[float]] = defaultdict(list)

    for s in sessions:
        if start <= s.entry_time < end:
            row = hours[s.entry_time.hour]
            row["entries_count"] += 1
            if s.billing is not None:
                row["revenue"] += float(s.billing.amount)
            breakdown[s.entry_time.hour][s.vehicle.vehicle_class.value] += 1
        if s.exit_time is not None and start <= s.exit_time < end:
            hours[s.exit_time.hour]["exits_count"] += 1
            stays[s.exit_time.hour].append(duration_hours(s.entry_time, s.exit_time))
        for h in range(24):
            mark = start + timedelta(hours=h)
            if s.entry_time <= mark and (s.exit_time is None or s.exit_time > mark):
                hours[h]["avg_occupancy"] += 1

    for h, row in enumerate(hours):
        row["revenue"] = round(row["revenue"], 2)
        if stays[h]:
            row["avg_duration_hours"] = round(sum(stays[h]) / len(stays[h]), 2)
        row["vehicle_breakdown"] = [
            {"vehicle_class": vc, "count": n} for vc, n in sorted(breakdown[h].items())
        ]
    return hours
