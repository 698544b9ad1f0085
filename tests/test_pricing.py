from __future__ import annotations

import os
import unittest

from sameday.services.pricing import (
    PricedLine,
    compute_delivery_fee,
    compute_order_totals,
    compute_platform_fee,
    compute_subtotal,
    delivery_fee_for_locations,
)
from sameday.utils.fees import FeeSchedule, load_fee_schedule, parse_platform_brackets


SCHEDULE = FeeSchedule(
    platform_brackets=((0, 500),),
    delivery_base_minor=50_000,
    delivery_per_km_minor=10_000,
    delivery_min_minor=50_000,
    delivery_max_minor=500_000,
    delivery_default_minor=50_000,
)


class PricingTestCase(unittest.TestCase):
    def test_subtotal_accepts_lines_dicts_and_tuples(self):
        items = [
            PricedLine(1500, 2),
            {"unit_price_minor": 250, "quantity": 4},
            (99, 1),
        ]
        self.assertEqual(compute_subtotal(items), 3000 + 1000 + 99)
        self.assertEqual(compute_subtotal([]), 0)

    def test_platform_fee_rounds_half_up(self):
        self.assertEqual(compute_platform_fee(10_000, SCHEDULE), 500)
        self.assertEqual(compute_platform_fee(12_345, SCHEDULE), 617)
        self.assertEqual(compute_platform_fee(24_690, SCHEDULE), 1235)
        self.assertEqual(compute_platform_fee(0, SCHEDULE), 0)

    def test_platform_fee_brackets_pick_highest_lower_bound(self):
        schedule = FeeSchedule(
            platform_brackets=parse_platform_brackets("0:500,10000:300"),
            delivery_base_minor=0,
            delivery_per_km_minor=0,
            delivery_min_minor=0,
            delivery_max_minor=0,
            delivery_default_minor=0,
        )
        self.assertEqual(compute_platform_fee(999_900, schedule), 49_995)
        self.assertEqual(compute_platform_fee(1_000_000, schedule), 30_000)

    def test_malformed_bracket_schedule_falls_back_to_flat_rate(self):
        self.assertEqual(parse_platform_brackets("garbage"), ((0, 500),))
        self.assertEqual(parse_platform_brackets("0:99999"), ((0, 500),))

    def test_delivery_fee_is_clamped_and_monotonic(self):
        self.assertEqual(compute_delivery_fee(0, SCHEDULE), 50_000)
        self.assertEqual(compute_delivery_fee(None, SCHEDULE), 50_000)
        self.assertEqual(compute_delivery_fee(3, SCHEDULE), 80_000)
        self.assertEqual(compute_delivery_fee(2.55, SCHEDULE), 75_500)
        self.assertEqual(compute_delivery_fee(1000, SCHEDULE), 500_000)
        fees = [compute_delivery_fee(km / 4.0, SCHEDULE) for km in range(0, 400)]
        self.assertEqual(fees, sorted(fees))

    def test_missing_or_invalid_location_uses_default_fee(self):
        self.assertEqual(delivery_fee_for_locations(None, (6.5, 3.3), schedule=SCHEDULE), (50_000, None))
        self.assertEqual(delivery_fee_for_locations((6.5, 3.3), None, schedule=SCHEDULE), (50_000, None))
        self.assertEqual(delivery_fee_for_locations((95.0, 3.3), (6.5, 3.3), schedule=SCHEDULE), (50_000, None))

    def test_distance_failure_falls_back_to_default_fee(self):
        def broken(*_args):
            raise RuntimeError("maps down")

        fee, km = delivery_fee_for_locations((6.5, 3.3), (6.6, 3.4), schedule=SCHEDULE, distance_fn=broken)
        self.assertEqual(fee, 50_000)
        self.assertIsNone(km)

    def test_order_totals_add_up(self):
        totals = compute_order_totals(
            [PricedLine(150_000, 2), PricedLine(50_000, 1)],
            (6.5, 3.3),
            (6.6, 3.4),
            schedule=SCHEDULE,
            distance_fn=lambda *_args: 4.0,
        )
        self.assertEqual(totals.subtotal_minor, 350_000)
        self.assertEqual(totals.platform_fee_minor, 17_500)
        self.assertEqual(totals.delivery_fee_minor, 90_000)
        self.assertEqual(totals.total_minor, 350_000 + 17_500 + 90_000)
        self.assertEqual(totals.distance_km, 4.0)
        self.assertEqual(totals.to_dict()["total"], 4575.0)

    def test_schedule_reads_environment(self):
        keys = ("PLATFORM_FEE_SCHEDULE", "DELIVERY_BASE_FEE", "DELIVERY_MIN_FEE", "DELIVERY_MAX_FEE")
        prev = {k: os.getenv(k) for k in keys}
        try:
            os.environ["PLATFORM_FEE_SCHEDULE"] = "0:250"
            os.environ["DELIVERY_BASE_FEE"] = "700"
            os.environ["DELIVERY_MIN_FEE"] = "900"
            os.environ["DELIVERY_MAX_FEE"] = "100"
            schedule = load_fee_schedule()
            self.assertEqual(schedule.platform_bps_for(1), 250)
            self.assertEqual(schedule.delivery_base_minor, 70_000)
            self.assertEqual(schedule.delivery_min_minor, 90_000)
            self.assertEqual(schedule.delivery_max_minor, 90_000)
        finally:
            for k, v in prev.items():
                if v is None:
                    os.environ.pop(k, None)
                else:
                    os.environ[k] = v


if __name__ == "__main__":
    unittest.main()
