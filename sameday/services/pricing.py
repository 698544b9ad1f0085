"""Order totals: subtotal, platform fee, distance-based delivery fee.

Everything here is pure. Amounts are integer minor units so a total computed
at checkout is reproduced exactly when recomputed later.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable

from sameday.utils.fees import FeeSchedule, bps_minor_half_up, load_fee_schedule, money_minor_to_major
from sameday.utils.geo import haversine_km, valid_coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedLine:
    unit_price_minor: int
    quantity: int

    @property
    def line_total_minor(self) -> int:
        return int(self.unit_price_minor) * int(self.quantity)


@dataclass(frozen=True)
class OrderTotals:
    subtotal_minor: int
    platform_fee_minor: int
    delivery_fee_minor: int
    total_minor: int
    distance_km: float | None = None

    def to_dict(self) -> dict:
        return {
            "subtotal": money_minor_to_major(self.subtotal_minor),
            "platform_fee": money_minor_to_major(self.platform_fee_minor),
            "delivery_fee": money_minor_to_major(self.delivery_fee_minor),
            "total": money_minor_to_major(self.total_minor),
            "distance_km": self.distance_km,
        }


def _as_line(item) -> PricedLine:
    if isinstance(item, PricedLine):
        return item
    if isinstance(item, dict):
        return PricedLine(int(item["unit_price_minor"]), int(item["quantity"]))
    unit_price_minor, quantity = item
    return PricedLine(int(unit_price_minor), int(quantity))


def compute_subtotal(items: Iterable) -> int:
    return sum(_as_line(i).line_total_minor for i in items)


def compute_platform_fee(subtotal_minor: int, schedule: FeeSchedule | None = None) -> int:
    sched = schedule or load_fee_schedule()
    return bps_minor_half_up(int(subtotal_minor), sched.platform_bps_for(int(subtotal_minor)))


def compute_delivery_fee(distance_km: float, schedule: FeeSchedule | None = None) -> int:
    """Base + per-km rate, clamped to [min, max]. Non-decreasing in distance."""
    sched = schedule or load_fee_schedule()
    if distance_km is None or distance_km <= 0:
        return sched.delivery_min_minor
    raw = Decimal(sched.delivery_base_minor) + Decimal(str(distance_km)) * Decimal(sched.delivery_per_km_minor)
    fee = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(sched.delivery_min_minor, min(fee, sched.delivery_max_minor))


def delivery_fee_for_locations(
    shop_location,
    delivery_location,
    *,
    schedule: FeeSchedule | None = None,
    distance_fn: Callable[[float, float, float, float], float] | None = None,
) -> tuple[int, float | None]:
    """Returns (fee_minor, distance_km). Falls back to the default fee when
    either location is missing or invalid, or the distance lookup fails."""
    sched = schedule or load_fee_schedule()
    if not shop_location or not delivery_location:
        return sched.delivery_default_minor, None
    shop_lat, shop_lon = shop_location
    dest_lat, dest_lon = delivery_location
    if not (valid_coordinates(shop_lat, shop_lon) and valid_coordinates(dest_lat, dest_lon)):
        return sched.delivery_default_minor, None
    try:
        distance_km = float((distance_fn or haversine_km)(float(shop_lat), float(shop_lon), float(dest_lat), float(dest_lon)))
    except Exception as e:
        logger.warning("distance_lookup_failed err=%s fallback=default_fee", e)
        return sched.delivery_default_minor, None
    return compute_delivery_fee(distance_km, sched), round(distance_km, 2)


def compute_order_totals(
    items: Iterable,
    shop_location=None,
    delivery_location=None,
    *,
    schedule: FeeSchedule | None = None,
    distance_fn: Callable[[float, float, float, float], float] | None = None,
) -> OrderTotals:
    sched = schedule or load_fee_schedule()
    subtotal = compute_subtotal(items)
    platform_fee = compute_platform_fee(subtotal, sched)
    delivery_fee, distance_km = delivery_fee_for_locations(
        shop_location,
        delivery_location,
        schedule=sched,
        distance_fn=distance_fn,
    )
    return OrderTotals(
        subtotal_minor=subtotal,
        platform_fee_minor=platform_fee,
        delivery_fee_minor=delivery_fee,
        total_minor=subtotal + platform_fee + delivery_fee,
        distance_km=distance_km,
    )
