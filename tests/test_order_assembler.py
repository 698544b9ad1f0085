from __future__ import annotations

import json
import os
import re
import unittest
import uuid
from datetime import datetime

from sameday import create_app
from sameday.errors import AuthorizationError, InsufficientStock, InvalidProduct, NotFoundError, ShopClosed, ValidationError
from sameday.extensions import db
from sameday.models import Delivery, Order, OrderItem, Payment, PricingUnit, Product, Shop, StockHistory, User, UserRole
from sameday.services.order_assembler import (
    CartItem,
    DeliveryInfo,
    create_orders,
    generate_order_number,
    parse_cart_items,
    parse_delivery_info,
)
from sameday.utils.fees import FeeSchedule
from sameday.utils.principal import principal_for_user_id


SCHEDULE = FeeSchedule(
    platform_brackets=((0, 500),),
    delivery_base_minor=50_000,
    delivery_per_km_minor=10_000,
    delivery_min_minor=50_000,
    delivery_max_minor=500_000,
    delivery_default_minor=50_000,
)

DELIVERY = DeliveryInfo(
    address="12 Admiralty Way",
    city="Lagos",
    state="Lagos",
    phone="08031234567",
    latitude=6.45,
    longitude=3.47,
)


class OrderAssemblerParsingTestCase(unittest.TestCase):
    def test_cart_accepts_camel_case_keys(self):
        items = parse_cart_items([{"shopId": "3", "pricingUnitId": 9, "quantity": "2", "productId": 4}])
        self.assertEqual(items, [CartItem(shop_id=3, pricing_unit_id=9, quantity=2, product_id=4)])

    def test_cart_validation_codes(self):
        cases = [
            (None, "cart_empty"),
            ([], "cart_empty"),
            (["x"], "invalid_cart_item"),
            ([{"shop_id": 1, "quantity": 1}], "invalid_cart_item"),
            ([{"shop_id": "a", "pricing_unit_id": 1, "quantity": 1}], "invalid_cart_item"),
            ([{"shop_id": 1, "pricing_unit_id": 1, "quantity": 0}], "invalid_quantity"),
            ([{"shop_id": 1, "pricing_unit_id": 1, "quantity": 10_001}], "invalid_quantity"),
            ([{"shop_id": 1, "pricing_unit_id": 1, "quantity": 1}] * 101, "cart_too_large"),
        ]
        for raw, code in cases:
            with self.assertRaises(ValidationError) as ctx:
                parse_cart_items(raw)
            self.assertEqual(ctx.exception.code, code, raw)

    def test_delivery_info_reports_missing_fields(self):
        with self.assertRaises(ValidationError) as ctx:
            parse_delivery_info({"address": "1 Road", "city": " "})
        self.assertEqual(ctx.exception.code, "delivery_info_incomplete")
        self.assertEqual(ctx.exception.detail["missing"], ["city", "state", "phone"])

    def test_delivery_info_coordinates(self):
        base = {"address": "1 Road", "city": "Lagos", "state": "Lagos", "phone": "0803"}
        info = parse_delivery_info(dict(base, lat="6.5", lng="3.3"))
        self.assertEqual(info.location, (6.5, 3.3))
        self.assertIsNone(parse_delivery_info(base).location)
        with self.assertRaises(ValidationError) as ctx:
            parse_delivery_info(dict(base, latitude=6.5))
        self.assertEqual(ctx.exception.code, "invalid_coordinates")

    def test_order_number_format(self):
        number = generate_order_number(datetime(2026, 3, 9, 12, 0))
        self.assertRegex(number, r"^ORD-20260309-[0-9A-Z]{6}$")


class OrderAssemblerTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def _user(self, label: str, *roles: str) -> int:
        user = User(name=label, email=f"{label}-{uuid.uuid4().hex[:10]}@sameday.test", phone="08030000000")
        user.set_password("Passw0rd!")
        db.session.add(user)
        db.session.flush()
        for role in roles:
            db.session.add(UserRole(user_id=int(user.id), role=role, status="APPROVED"))
        return int(user.id)

    def _shop(self, *, price_minor: int, stock, lat=None, lon=None, hours=None) -> dict:
        owner_id = self._user("seller", "seller")
        shop = Shop(owner_id=owner_id, name=f"Shop {uuid.uuid4().hex[:6]}", latitude=lat, longitude=lon)
        shop.set_operating_hours(hours)
        db.session.add(shop)
        db.session.flush()
        product = Product(shop_id=int(shop.id), name="Rice")
        db.session.add(product)
        db.session.flush()
        unit = PricingUnit(product_id=int(product.id), unit="1 bag", price_minor=price_minor, stock=stock)
        db.session.add(unit)
        db.session.flush()
        return {"owner_id": owner_id, "shop_id": int(shop.id), "product_id": int(product.id), "unit_id": int(unit.id)}

    def _seed(self) -> dict:
        buyer_id = self._user("buyer", "buyer")
        shop_a = self._shop(price_minor=150_000, stock=10, lat=6.43, lon=3.42)
        shop_b = self._shop(price_minor=50_000, stock=3)
        db.session.commit()
        return {"buyer_id": buyer_id, "a": shop_a, "b": shop_b}

    def test_multi_shop_checkout_creates_one_order_per_shop(self):
        with self.app.app_context():
            ids = self._seed()
            a, b = ids["a"], ids["b"]
            cart = [
                CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=2),
                CartItem(shop_id=b["shop_id"], pricing_unit_id=b["unit_id"], quantity=1, product_id=b["product_id"]),
                CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=1),
            ]
            orders = create_orders(
                principal_for_user_id(ids["buyer_id"]),
                cart,
                DELIVERY,
                schedule=SCHEDULE,
                distance_fn=lambda *_args: 2.0,
            )

            self.assertEqual([o.shop_id for o in orders], [a["shop_id"], b["shop_id"]])
            self.assertEqual(len({o.checkout_ref for o in orders}), 1)
            self.assertNotEqual(orders[0].order_number, orders[1].order_number)

            first, second = orders
            self.assertEqual(
                (first.subtotal_minor, first.platform_fee_minor, first.delivery_fee_minor, first.total_minor),
                (450_000, 22_500, 70_000, 542_500),
            )
            # Shop without coordinates is charged the default fee.
            self.assertEqual(
                (second.subtotal_minor, second.platform_fee_minor, second.delivery_fee_minor, second.total_minor),
                (50_000, 2_500, 50_000, 102_500),
            )

            for order in orders:
                self.assertEqual(order.status, "PENDING")
                self.assertTrue(order.totals_consistent())
                self.assertEqual(order.delivery_address, "12 Admiralty Way")
                payment = Payment.query.filter_by(order_id=order.id).one()
                self.assertEqual((payment.status, payment.escrow_status, payment.amount_minor), ("PENDING", "HELD", order.total_minor))
                delivery = Delivery.query.filter_by(order_id=order.id).one()
                self.assertEqual(delivery.status, "PENDING")
                self.assertIsNone(delivery.rider_id)

            lines = OrderItem.query.filter_by(order_id=first.id).all()
            self.assertEqual([(line.quantity, line.unit_price_minor, line.line_total_minor) for line in lines], [(3, 150_000, 450_000)])

            self.assertEqual(db.session.get(PricingUnit, a["unit_id"]).stock, 7)
            self.assertEqual(db.session.get(PricingUnit, b["unit_id"]).stock, 2)
            history = StockHistory.query.filter_by(pricing_unit_id=a["unit_id"]).one()
            self.assertEqual((history.change_type, history.quantity, history.order_id), ("ORDER_PLACED", -3, first.id))

    def test_price_snapshot_survives_price_change(self):
        with self.app.app_context():
            ids = self._seed()
            a = ids["a"]
            orders = create_orders(
                principal_for_user_id(ids["buyer_id"]),
                [CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=1)],
                DELIVERY,
                schedule=SCHEDULE,
            )
            db.session.get(PricingUnit, a["unit_id"]).price_minor = 999_999
            db.session.commit()
            line = OrderItem.query.filter_by(order_id=orders[0].id).one()
            self.assertEqual(line.unit_price_minor, 150_000)

    def test_shortage_in_one_shop_rolls_back_whole_cart(self):
        with self.app.app_context():
            ids = self._seed()
            a, b = ids["a"], ids["b"]
            before = Order.query.count()
            with self.assertRaises(InsufficientStock) as ctx:
                create_orders(
                    principal_for_user_id(ids["buyer_id"]),
                    [
                        CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=2),
                        CartItem(shop_id=b["shop_id"], pricing_unit_id=b["unit_id"], quantity=5),
                    ],
                    DELIVERY,
                    schedule=SCHEDULE,
                )
            self.assertEqual(ctx.exception.detail["available"], 3)
            self.assertEqual(Order.query.count(), before)
            self.assertEqual(db.session.get(PricingUnit, a["unit_id"]).stock, 10)
            self.assertEqual(StockHistory.query.filter_by(pricing_unit_id=a["unit_id"]).count(), 0)

    def test_closed_shop_is_rejected(self):
        closed_all_week = {
            day: {"closed": True}
            for day in ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
        }
        with self.app.app_context():
            buyer_id = self._user("buyer", "buyer")
            shop = self._shop(price_minor=1000, stock=None, hours=closed_all_week)
            db.session.commit()
            with self.assertRaises(ShopClosed):
                create_orders(
                    principal_for_user_id(buyer_id),
                    [CartItem(shop_id=shop["shop_id"], pricing_unit_id=shop["unit_id"], quantity=1)],
                    DELIVERY,
                    schedule=SCHEDULE,
                )
            self.assertEqual(json.loads(db.session.get(Shop, shop["shop_id"]).operating_hours_json)["monday"], {"closed": True})

    def test_open_hours_window_is_honoured(self):
        hours = {"monday": {"open": "08:00", "close": "20:00"}}
        with self.app.app_context():
            buyer_id = self._user("buyer", "buyer")
            shop = self._shop(price_minor=1000, stock=None, hours=hours)
            db.session.commit()
            cart = [CartItem(shop_id=shop["shop_id"], pricing_unit_id=shop["unit_id"], quantity=1)]
            # 2026-03-09 is a Monday.
            orders = create_orders(principal_for_user_id(buyer_id), cart, DELIVERY, schedule=SCHEDULE, now=datetime(2026, 3, 9, 9, 30))
            self.assertEqual(len(orders), 1)
            with self.assertRaises(ShopClosed):
                create_orders(principal_for_user_id(buyer_id), cart, DELIVERY, schedule=SCHEDULE, now=datetime(2026, 3, 9, 21, 0))

    def test_unit_from_another_shop_is_invalid(self):
        with self.app.app_context():
            ids = self._seed()
            a, b = ids["a"], ids["b"]
            with self.assertRaises(InvalidProduct):
                create_orders(
                    principal_for_user_id(ids["buyer_id"]),
                    [CartItem(shop_id=a["shop_id"], pricing_unit_id=b["unit_id"], quantity=1)],
                    DELIVERY,
                    schedule=SCHEDULE,
                )
            with self.assertRaises(InvalidProduct):
                create_orders(
                    principal_for_user_id(ids["buyer_id"]),
                    [CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=1, product_id=b["product_id"])],
                    DELIVERY,
                    schedule=SCHEDULE,
                )

    def test_unavailable_product_and_unknown_shop(self):
        with self.app.app_context():
            ids = self._seed()
            a = ids["a"]
            db.session.get(Product, a["product_id"]).is_available = False
            db.session.commit()
            buyer = principal_for_user_id(ids["buyer_id"])
            with self.assertRaises(InvalidProduct):
                create_orders(buyer, [CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=1)], DELIVERY, schedule=SCHEDULE)
            with self.assertRaises(NotFoundError) as ctx:
                create_orders(buyer, [CartItem(shop_id=987_654, pricing_unit_id=a["unit_id"], quantity=1)], DELIVERY, schedule=SCHEDULE)
            self.assertEqual(ctx.exception.code, "shop_not_found")

    def test_only_buyers_can_check_out(self):
        with self.app.app_context():
            ids = self._seed()
            rider_id = self._user("rider", "rider")
            db.session.commit()
            a = ids["a"]
            with self.assertRaises(AuthorizationError):
                create_orders(
                    principal_for_user_id(rider_id),
                    [CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=1)],
                    DELIVERY,
                    schedule=SCHEDULE,
                )
            with self.assertRaises(ValidationError) as ctx:
                create_orders(
                    principal_for_user_id(ids["buyer_id"]),
                    [CartItem(shop_id=a["shop_id"], pricing_unit_id=a["unit_id"], quantity=1)],
                    DeliveryInfo(address="", city="Lagos", state="Lagos", phone=""),
                    schedule=SCHEDULE,
                )
            self.assertEqual(ctx.exception.detail["missing"], ["address", "phone"])

    def test_order_numbers_look_right(self):
        with self.app.app_context():
            ids = self._seed()
            b = ids["b"]
            orders = create_orders(
                principal_for_user_id(ids["buyer_id"]),
                [CartItem(shop_id=b["shop_id"], pricing_unit_id=b["unit_id"], quantity=1)],
                DELIVERY,
                schedule=SCHEDULE,
            )
            self.assertTrue(re.match(r"^ORD-\d{8}-[0-9A-Z]{6}$", orders[0].order_number))


if __name__ == "__main__":
    unittest.main()
