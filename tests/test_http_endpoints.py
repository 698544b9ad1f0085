from __future__ import annotations

import os
import unittest
import uuid

from sameday import create_app
from sameday.extensions import db
from sameday.models import PricingUnit, Product, Shop, User, UserRole
from sameday.utils.jwt_utils import create_token


class HttpEndpointsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev = {k: os.getenv(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL", "AUTO_ASSIGN_RIDERS")}
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["AUTO_ASSIGN_RIDERS"] = "0"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
            admin = User(name="Admin", email="admin@sameday.test")
            admin.set_password("AdminPass1!")
            db.session.add(admin)
            db.session.flush()
            db.session.add(UserRole(user_id=int(admin.id), role="admin", status="APPROVED"))
            db.session.commit()
            cls.admin_headers = {"Authorization": f"Bearer {create_token(int(admin.id))}"}
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _register(self, role: str = "buyer") -> tuple[int, dict]:
        email = f"{role}-{uuid.uuid4().hex[:10]}@sameday.test"
        res = self.client.post(
            "/api/auth/register",
            json={"name": role.title(), "email": email, "phone": "08039990000", "password": "Passw0rd!", "role": role},
        )
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        user_id = int(body["user"]["id"])
        if role != "buyer":
            res = self.client.post(f"/api/admin/users/{user_id}/roles/{role}/approve", headers=self.admin_headers)
            self.assertEqual(res.status_code, 200)
        return user_id, {"Authorization": f"Bearer {body['token']}"}

    def _shop_with_unit(self, seller_id: int, *, stock: int = 5) -> tuple[int, int]:
        with self.app.app_context():
            shop = Shop(owner_id=seller_id, name="HTTP Shop", latitude=6.5, longitude=3.35)
            db.session.add(shop)
            db.session.flush()
            product = Product(shop_id=int(shop.id), name="Plantain")
            db.session.add(product)
            db.session.flush()
            unit = PricingUnit(product_id=int(product.id), unit="bunch", price_minor=200_000, stock=stock)
            db.session.add(unit)
            db.session.commit()
            return int(shop.id), int(unit.id)

    def _cart(self, shop_id: int, unit_id: int, quantity: int = 1) -> dict:
        return {
            "items": [{"shopId": shop_id, "pricingUnitId": unit_id, "quantity": quantity}],
            "delivery": {"address": "3 Ozumba Mbadiwe", "city": "Lagos", "state": "Lagos", "phone": "08039991111"},
        }

    def _stock(self, unit_id: int):
        with self.app.app_context():
            return db.session.get(PricingUnit, unit_id).stock

    def test_register_login_and_me(self):
        email = f"login-{uuid.uuid4().hex[:8]}@sameday.test"
        res = self.client.post("/api/auth/register", json={"email": email, "password": "Passw0rd!"})
        self.assertEqual(res.status_code, 201)
        res = self.client.post("/api/auth/register", json={"email": email, "password": "Passw0rd!"})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "email_taken")

        res = self.client.post("/api/auth/login", json={"email": email, "password": "wrong-pass"})
        self.assertEqual(res.status_code, 401)
        res = self.client.post("/api/auth/login", json={"email": email.upper(), "password": "Passw0rd!"})
        self.assertEqual(res.status_code, 200)
        token = res.get_json()["token"]
        res = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["user"]["email"], email)

    def test_self_service_admin_is_refused(self):
        res = self.client.post(
            "/api/auth/register",
            json={"email": f"sneaky-{uuid.uuid4().hex[:8]}@sameday.test", "password": "Passw0rd!", "role": "admin"},
        )
        self.assertEqual(res.status_code, 403)

    def test_checkout_replays_with_idempotency_key(self):
        seller_id, _ = self._register("seller")
        _, buyer = self._register()
        shop_id, unit_id = self._shop_with_unit(seller_id, stock=5)
        headers = dict(buyer, **{"Idempotency-Key": f"checkout-{uuid.uuid4().hex}"})

        first = self.client.post("/api/orders", json=self._cart(shop_id, unit_id, 2), headers=headers)
        self.assertEqual(first.status_code, 201)
        body = first.get_json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["orders"][0]["total"], 4000.0 + 200.0 + 500.0)

        replay = self.client.post("/api/orders", json=self._cart(shop_id, unit_id, 2), headers=headers)
        self.assertEqual(replay.status_code, 201)
        self.assertEqual(replay.get_json()["orders"][0]["id"], body["orders"][0]["id"])
        self.assertEqual(self._stock(unit_id), 3)

        reused = self.client.post("/api/orders", json=self._cart(shop_id, unit_id, 1), headers=headers)
        self.assertEqual(reused.status_code, 409)
        self.assertEqual(reused.get_json()["error"], "idempotency_key_reuse")

    def test_failed_checkout_releases_idempotency_key(self):
        seller_id, _ = self._register("seller")
        _, buyer = self._register()
        shop_id, unit_id = self._shop_with_unit(seller_id, stock=1)
        headers = dict(buyer, **{"Idempotency-Key": f"checkout-{uuid.uuid4().hex}"})

        res = self.client.post("/api/orders", json=self._cart(shop_id, unit_id, 3), headers=headers)
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["error"], "insufficient_stock")
        self.assertEqual(body["detail"]["available"], 1)
        self.assertTrue(body.get("trace_id"))

        with self.app.app_context():
            db.session.get(PricingUnit, unit_id).stock = 3
            db.session.commit()
        res = self.client.post("/api/orders", json=self._cart(shop_id, unit_id, 3), headers=headers)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(self._stock(unit_id), 0)

    def test_paid_order_is_delivered_and_settled(self):
        seller_id, _ = self._register("seller")
        _, buyer = self._register()
        rider_id, rider = self._register("rider")
        _, other_rider = self._register("rider")
        shop_id, unit_id = self._shop_with_unit(seller_id)

        order = self.client.post("/api/orders", json=self._cart(shop_id, unit_id), headers=buyer).get_json()["orders"][0]
        res = self.client.post(f"/api/orders/{order['id']}/payment/confirm", json={"reference": "PSK-HTTP"}, headers=buyer)
        self.assertEqual(res.status_code, 403)
        res = self.client.post(f"/api/orders/{order['id']}/payment/confirm", json={"reference": "PSK-HTTP"}, headers=self.admin_headers)
        self.assertEqual(res.status_code, 200)
        view = res.get_json()["order"]
        self.assertEqual(view["status"], "PAID")
        delivery_id = view["delivery_record"]["id"]

        res = self.client.post(f"/api/rider/deliveries/{delivery_id}/claim", headers=rider)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["delivery"]["rider_id"], rider_id)
        res = self.client.post(f"/api/rider/deliveries/{delivery_id}/claim", headers=other_rider)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "already_assigned")

        res = self.client.patch(f"/api/rider/deliveries/{delivery_id}", json={"status": "IN_TRANSIT"}, headers=rider)
        self.assertEqual(res.status_code, 422)
        self.assertEqual(res.get_json()["error"], "invalid_delivery_transition")
        for step in ("PICKED_UP", "IN_TRANSIT", "DELIVERED"):
            res = self.client.patch(f"/api/rider/deliveries/{delivery_id}", json={"status": step}, headers=rider)
            self.assertEqual(res.status_code, 200, res.get_json())

        res = self.client.get(f"/api/orders/{order['id']}", headers=buyer)
        view = res.get_json()["order"]
        self.assertEqual(view["status"], "DELIVERED")
        self.assertEqual(view["payment"]["escrow_status"], "RELEASED")

        res = self.client.post(f"/api/admin/payments/{order['id']}/release", headers=self.admin_headers)
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["released"])

        res = self.client.get("/api/notifications", headers=buyer)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(any("DELIVERED" in n["message"] for n in res.get_json()["items"]))

    def test_delivery_fee_quote(self):
        seller_id, _ = self._register("seller")
        shop_id, _ = self._shop_with_unit(seller_id)
        res = self.client.post("/api/delivery-fee", json={"shop_id": shop_id})
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual((body["delivery_fee"], body["is_default"]), (500.0, True))
        res = self.client.post("/api/delivery-fee", json={"shop_id": shop_id, "latitude": 6.5, "longitude": 3.35})
        self.assertEqual(res.get_json()["delivery_fee"], 500.0)
        self.assertEqual(res.get_json()["distance_km"], 0.0)

    def test_admin_routes_require_admin(self):
        _, buyer = self._register()
        res = self.client.post("/api/admin/payments/1/release", headers=buyer)
        self.assertEqual(res.status_code, 403)
        res = self.client.post("/api/admin/payments/1/release")
        self.assertEqual(res.status_code, 401)


if __name__ == "__main__":
    unittest.main()
