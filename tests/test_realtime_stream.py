from __future__ import annotations

import json
import os
import unittest
import uuid

from sameday import create_app
from sameday.extensions import db
from sameday.models import PricingUnit, Product, Shop, User, UserRole
from sameday.segments.segment_stream import order_event_stream, sse_frame
from sameday.services.order_assembler import CartItem, DeliveryInfo, create_orders
from sameday.services.order_service import cancel_order
from sameday.utils.jwt_utils import create_token
from sameday.utils.principal import principal_for_user_id
from sameday.utils.realtime import MemoryBroker, live_event, order_channel, publish_after_commit, set_broker
from sameday.utils.transactions import unit_of_work


class _ScriptedSubscription:
    def __init__(self, events):
        self._events = list(events)
        self.closed = False
        self.timeouts = []

    def get(self, timeout=1.0):
        self.timeouts.append(timeout)
        return self._events.pop(0) if self._events else None

    def close(self):
        self.closed = True


class _StepClock:
    def __init__(self, step=1.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


def _frames(chunks):
    return [json.loads(c[len("data: "):].strip()) for c in chunks if c.startswith("data: ")]


class OrderEventStreamTestCase(unittest.TestCase):
    def test_snapshot_then_events_until_terminal_status(self):
        sub = _ScriptedSubscription(
            [
                live_event("delivery_status", order_id=7, delivery_id=3, status="PICKED_UP", rider=9),
                None,
                live_event("rider_location", order_id=7, delivery_id=3, rider=9, lat=6.5, lon=3.3),
                live_event("order_status", order_id=7, status="DELIVERED"),
                live_event("order_status", order_id=7, status="never-sent"),
            ]
        )
        chunks = list(order_event_stream({"type": "snapshot", "orderId": 7, "status": "PAID"}, sub, clock=_StepClock(0.01)))
        self.assertIn(": keepalive\n\n", chunks)
        frames = _frames(chunks)
        self.assertEqual([f["type"] for f in frames], ["snapshot", "delivery_status", "rider_location", "order_status"])
        self.assertEqual(frames[2]["lat"], 6.5)
        self.assertTrue(sub.closed)

    def test_terminal_snapshot_ends_immediately(self):
        sub = _ScriptedSubscription([live_event("order_status", order_id=1, status="PAID")])
        chunks = list(order_event_stream({"type": "snapshot", "orderId": 1, "status": "CANCELLED"}, sub))
        self.assertEqual(len(chunks), 1)
        self.assertEqual(sub.timeouts, [])
        self.assertTrue(sub.closed)

    def test_stream_stops_at_deadline(self):
        sub = _ScriptedSubscription([])
        chunks = list(
            order_event_stream(
                {"type": "snapshot", "orderId": 1, "status": "PAID"},
                sub,
                keepalive_seconds=5,
                max_seconds=3,
                clock=_StepClock(1.0),
            )
        )
        self.assertEqual(chunks[0], sse_frame({"type": "snapshot", "orderId": 1, "status": "PAID"}))
        self.assertTrue(all(c == ": keepalive\n\n" for c in chunks[1:]))
        self.assertTrue(all(t <= 3 for t in sub.timeouts))
        self.assertTrue(sub.closed)

    def test_live_event_drops_empty_fields(self):
        self.assertEqual(live_event("order_status", order_id=4, status="PAID"), {"type": "order_status", "orderId": 4, "status": "PAID"})
        self.assertEqual(sse_frame({"a": 1}), 'data: {"a":1}\n\n')


class MemoryBrokerTestCase(unittest.TestCase):
    def test_fan_out_and_unsubscribe(self):
        broker = MemoryBroker()
        a = broker.subscribe("ch")
        b = broker.subscribe("ch")
        self.assertEqual(broker.publish("ch", {"type": "x"}), 2)
        self.assertEqual(a.get(timeout=0), {"type": "x"})
        self.assertEqual(b.get(timeout=0), {"type": "x"})
        a.close()
        self.assertEqual(broker.publish("ch", {"type": "y"}), 1)
        b.close()
        self.assertEqual(broker.publish("ch", {"type": "z"}), 0)
        self.assertIsNone(a.get(timeout=0))


class PublishAfterCommitTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev = {k: os.getenv(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL")}
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self.broker = MemoryBroker()
        set_broker(self.broker)

    def tearDown(self):
        set_broker(None)

    def test_events_wait_for_commit(self):
        with self.app.app_context():
            sub = self.broker.subscribe(order_channel(11))
            with self.assertRaises(RuntimeError):
                with unit_of_work():
                    publish_after_commit(11, live_event("order_status", order_id=11, status="PAID"))
                    raise RuntimeError("rolled back")
            self.assertIsNone(sub.get(timeout=0))

            with unit_of_work():
                publish_after_commit(11, live_event("order_status", order_id=11, status="PAID"))
                self.assertIsNone(sub.get(timeout=0))
            self.assertEqual(sub.get(timeout=0)["status"], "PAID")
            sub.close()

    def test_stream_endpoint_for_settled_order(self):
        with self.app.app_context():
            buyer = User(name="Stream Buyer", email=f"stream-{uuid.uuid4().hex[:8]}@sameday.test")
            seller = User(name="Stream Seller", email=f"stream-seller-{uuid.uuid4().hex[:8]}@sameday.test")
            buyer.set_password("Passw0rd!")
            seller.set_password("Passw0rd!")
            db.session.add_all([buyer, seller])
            db.session.flush()
            db.session.add_all(
                [
                    UserRole(user_id=int(buyer.id), role="buyer", status="APPROVED"),
                    UserRole(user_id=int(seller.id), role="seller", status="APPROVED"),
                ]
            )
            shop = Shop(owner_id=int(seller.id), name="Stream Shop")
            db.session.add(shop)
            db.session.flush()
            product = Product(shop_id=int(shop.id), name="Yam")
            db.session.add(product)
            db.session.flush()
            unit = PricingUnit(product_id=int(product.id), unit="tuber", price_minor=90_000, stock=3)
            db.session.add(unit)
            db.session.commit()
            principal = principal_for_user_id(int(buyer.id))
            order = create_orders(
                principal,
                [CartItem(shop_id=int(shop.id), pricing_unit_id=int(unit.id), quantity=1)],
                DeliveryInfo(address="1 Marina", city="Lagos", state="Lagos", phone="08030000000"),
            )[0]
            cancel_order(principal, int(order.id))
            order_id = int(order.id)
            token = create_token(int(buyer.id))
            stranger = User(name="Stranger", email=f"stranger-{uuid.uuid4().hex[:8]}@sameday.test")
            stranger.set_password("Passw0rd!")
            db.session.add(stranger)
            db.session.commit()
            stranger_token = create_token(int(stranger.id))

        res = self.client.get(f"/api/orders/{order_id}/stream", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.mimetype.startswith("text/event-stream"))
        frames = _frames(res.get_data(as_text=True).split("\n\n"))
        self.assertEqual(len(frames), 1)
        self.assertEqual((frames[0]["type"], frames[0]["status"], frames[0]["deliveryStatus"]), ("snapshot", "CANCELLED", "FAILED"))

        res = self.client.get(f"/api/orders/{order_id}/stream", headers={"Authorization": f"Bearer {stranger_token}"})
        self.assertEqual(res.status_code, 403)


if __name__ == "__main__":
    unittest.main()
