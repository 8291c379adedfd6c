import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List

from .errors import InvalidBillingMode, InvalidVehicleClass
from .models import BillingMode, VehicleClass, utcnow

CENT = Decimal("0.01")


@dataclass(frozen=True)
class SlabTier:
    min_hours: float
    max_hours: float
    rate: Decimal

    def contains(self, duration_hours: float) -> bool:
        return self.min_hours <= duration_hours < self.max_hours


HOURLY_RATES: Dict[VehicleClass, Decimal] = {
    VehicleClass.CAR: Decimal("50.00"),
    VehicleClass.BIKE: Decimal("20.00"),
    VehicleClass.EV: Decimal("60.00"),
    VehicleClass.HANDICAP_ACCESSIBLE: Decimal("40.00"),
}

DAY_PASS_RATES: Dict[VehicleClass, Decimal] = {
    VehicleClass.CAR: Decimal("400.00"),
    VehicleClass.BIKE: Decimal("150.00"),
    VehicleClass.EV: Decimal("500.00"),
    VehicleClass.HANDICAP_ACCESSIBLE: Decimal("300.00"),
}


def _tiers(*rates: str) -> List[SlabTier]:
    bounds = [(0, 1), (1, 3), (3, 6), (6, math.inf)]
    return [SlabTier(lo, hi, Decimal(rate)) for (lo, hi), rate in zip(bounds, rates)]


# Tiers are contiguous and ordered; the last one is unbounded.
SLAB_RATES: Dict[VehicleClass, List[SlabTier]] = {
    VehicleClass.CAR: _tiers("50", "120", "200", "300"),
    VehicleClass.BIKE: _tiers("20", "50", "80", "120"),
    VehicleClass.EV: _tiers("60", "150", "250", "350"),
    VehicleClass.HANDICAP_ACCESSIBLE: _tiers("40", "100", "160", "240"),
}


@dataclass(frozen=True)
class BillingCalculation:
    amount: Decimal
    duration_hours: float
    vehicle_class: VehicleClass
    billing_mode: BillingMode

    def to_dict(self) -> dict:
        return {
            "amount": float(self.amount),
            "duration_hours": self.duration_hours,
            "vehicle_class": self.vehicle_class.value,
            "billing_mode": self.billing_mode.value,
        }


def as_vehicle_class(value) -> VehicleClass:
    try:
        return VehicleClass(value)
    except ValueError as exc:
        raise InvalidVehicleClass(value) from exc


def as_billing_mode(value) -> BillingMode:
    try:
        return BillingMode(value)
    except ValueError as exc:
        raise InvalidBillingMode(value) from exc


def to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def duration_hours(entry_time: datetime, exit_time: datetime) -> float:
    """Elapsed hours between entry and exit, never negative."""
    elapsed = to_naive_utc(exit_time) - to_naive_utc(entry_time)
    return max(0.0, elapsed.total_seconds() / 3600.0)


def hourly_amount(vehicle_class, hours: float) -> Decimal:
    rate = HOURLY_RATES[as_vehicle_class(vehicle_class)]
    # partial hours bill as a full hour, with a one hour minimum
    return rate * max(1, math.ceil(hours))


def slab_amount(vehicle_class, hours: float) -> Decimal:
    tiers = SLAB_RATES[as_vehicle_class(vehicle_class)]
    for tier in tiers:
        if tier.contains(hours):
            return tier.rate
    return tiers[-1].rate


def day_pass_amount(vehicle_class) -> Decimal:
    return DAY_PASS_RATES[as_vehicle_class(vehicle_class)]


def round_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate(
    vehicle_class,
    billing_mode,
    entry_time: datetime,
    exit_time: datetime | None = None,
    use_slab_pricing: bool = False,
) -> BillingCalculation:
    vehicle_class = as_vehicle_class(vehicle_class)
    billing_mode = as_billing_mode(billing_mode)
    hours = duration_hours(entry_time, exit_time or utcnow())

    if billing_mode is BillingMode.HOURLY:
        if use_slab_pricing:
            amount = slab_amount(vehicle_class, hours)
        else:
            amount = hourly_amount(vehicle_class, hours)
    else:
        amount = day_pass_amount(vehicle_class)

    return BillingCalculation(
        amount=round_money(amount),
        duration_hours=round(hours, 2),
        vehicle_class=vehicle_class,
        billing_mode=billing_mode,
    )


def calculate_billing(session, exit_time: datetime | None = None, use_slab_pricing: bool = False) -> BillingCalculation:
    """Price a parking session that ends (or would end) at ``exit_time``."""
    return calculate(
        session.vehicle.vehicle_class,
        session.billing_mode,
        session.entry_time,
        exit_time,
        use_slab_pricing,
    )


def pricing_config() -> dict:
    def _max(tier: SlabTier):
        return None if math.isinf(tier.max_hours) else tier.max_hours

    return {
        "HOURLY": {vc.value: float(rate) for vc, rate in HOURLY_RATES.items()},
        "DAY_PASS": {vc.value: float(rate) for vc, rate in DAY_PASS_RATES.items()},
        "SLAB_PRICING": {
            vc.value: [
                {"min_hours": tier.min_hours, "max_hours": _max(tier), "rate": float(tier.rate)}
                for tier in tiers
            ]
            for vc, tiers in SLAB_RATES.items()
        },
    }
