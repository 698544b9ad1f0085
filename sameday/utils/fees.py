from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

# Defaults are in major currency units.
DEFAULT_PLATFORM_FEE_SCHEDULE = "0:500"
DEFAULT_DELIVERY_BASE_FEE = 500
DEFAULT_DELIVERY_PER_KM_FEE = 100
DEFAULT_DELIVERY_MIN_FEE = 500
DEFAULT_DELIVERY_MAX_FEE = 5000
DEFAULT_DELIVERY_FEE = 500


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except Exception:
        parsed = 0
    return parsed if parsed > 0 else 0


def money_major_to_minor(amount: float | Decimal | int | str | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor: int | float | Decimal | None) -> float:
    try:
        parsed = Decimal(int(minor or 0))
    except Exception:
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def parse_platform_brackets(raw: str | None) -> tuple[tuple[int, int], ...]:
    """Parse "<lower_bound_major>:<bps>,..." into sorted (lower_bound_minor, bps) pairs.

    Malformed entries are skipped; an empty result falls back to the default
    flat 5% schedule.
    """
    out: dict[int, int] = {}
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk or ":" not in chunk:
            continue
        lower_raw, bps_raw = chunk.split(":", 1)
        try:
            lower_minor = money_major_to_minor(lower_raw.strip())
            bps = int(bps_raw.strip())
        except Exception:
            continue
        if bps < 0 or bps > 10000:
            continue
        out[lower_minor] = bps
    if not out:
        if raw != DEFAULT_PLATFORM_FEE_SCHEDULE:
            return parse_platform_brackets(DEFAULT_PLATFORM_FEE_SCHEDULE)
        return ((0, 500),)
    return tuple(sorted(out.items()))


@dataclass(frozen=True)
class FeeSchedule:
    platform_brackets: tuple[tuple[int, int], ...]
    delivery_base_minor: int
    delivery_per_km_minor: int
    delivery_min_minor: int
    delivery_max_minor: int
    delivery_default_minor: int

    def platform_bps_for(self, subtotal_minor: int) -> int:
        bps = 0
        for lower_minor, bracket_bps in self.platform_brackets:
            if int(subtotal_minor) >= int(lower_minor):
                bps = int(bracket_bps)
        return bps


def load_fee_schedule() -> FeeSchedule:
    min_major = _env_int("DELIVERY_MIN_FEE", DEFAULT_DELIVERY_MIN_FEE)
    max_major = _env_int("DELIVERY_MAX_FEE", DEFAULT_DELIVERY_MAX_FEE)
    if max_major < min_major:
        max_major = min_major
    return FeeSchedule(
        platform_brackets=parse_platform_brackets(
            (os.getenv("PLATFORM_FEE_SCHEDULE") or "").strip() or DEFAULT_PLATFORM_FEE_SCHEDULE
        ),
        delivery_base_minor=money_major_to_minor(_env_int("DELIVERY_BASE_FEE", DEFAULT_DELIVERY_BASE_FEE)),
        delivery_per_km_minor=money_major_to_minor(_env_int("DELIVERY_PER_KM_FEE", DEFAULT_DELIVERY_PER_KM_FEE)),
        delivery_min_minor=money_major_to_minor(min_major),
        delivery_max_minor=money_major_to_minor(max_major),
        delivery_default_minor=money_major_to_minor(_env_int("DELIVERY_DEFAULT_FEE", DEFAULT_DELIVERY_FEE)),
    )
