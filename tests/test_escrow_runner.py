from __future__ import annotations

import json
import os
import unittest
import uuid

from sameday import create_app
from sameday.extensions import db
from sameday.models import Delivery, JobRun, Order, Payment, PricingUnit, Product, Shop, User, UserRole
from sameday.jobs.escrow_runner import run_escrow_automation
from sameday.services.dispute_service import create_dispute
from sameday.services.order_assembler import CartItem, DeliveryInfo, create_orders
from sameday.services.order_service import confirm_payment
from sameday.utils.principal import Principal, principal_for_user_id


class EscrowRunnerTestCase(unittest.TestCase):
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

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _paid_order(self) -> tuple[int, int]:
        suffix = uuid.uuid4().hex[:10]
        buyer = User(name="Sweep Buyer", email=f"sweep-buyer-{suffix}@sameday.test")
        seller = User(name="Sweep Seller", email=f"sweep-seller-{suffix}@sameday.test")
        buyer.set_password("Passw0rd!")
        seller.set_password("Passw0rd!")
        db.session.add_all([buyer, seller])
        db.session.flush()
        db.session.add(UserRole(user_id=int(buyer.id), role="buyer", status="APPROVED"))
        shop = Shop(owner_id=int(seller.id), name="Sweep Shop")
        db.session.add(shop)
        db.session.flush()
        product = Product(shop_id=int(shop.id), name="Garri")
        db.session.add(product)
        db.session.flush()
        unit = PricingUnit(product_id=int(product.id), unit="paint", price_minor=120_000, stock=None)
        db.session.add(unit)
        db.session.commit()
        order = create_orders(
            principal_for_user_id(int(buyer.id)),
            [CartItem(shop_id=int(shop.id), pricing_unit_id=int(unit.id), quantity=1)],
            DeliveryInfo(address="5 Allen Ave", city="Ikeja", state="Lagos", phone="08031112222"),
        )[0]
        confirm_payment(Principal.system(), int(order.id))
        return int(order.id), int(buyer.id)

    def _mark_delivered_without_release(self, order_id: int) -> None:
        # Simulates a crash between the delivery commit and the release.
        rider = User(name="Sweep Rider", email=f"sweep-rider-{uuid.uuid4().hex[:10]}@sameday.test")
        rider.set_password("Passw0rd!")
        db.session.add(rider)
        db.session.flush()
        delivery = Delivery.query.filter_by(order_id=order_id).one()
        delivery.rider_id = int(rider.id)
        delivery.status = "DELIVERED"
        db.session.commit()

    def test_sweeper_releases_missed_settlements_once(self):
        with self.app.app_context():
            missed, _ = self._paid_order()
            in_flight, _ = self._paid_order()
            self._mark_delivered_without_release(missed)

            result = run_escrow_automation(limit=50)
            self.assertEqual((result["processed"], result["released"], result["errors"]), (1, 1, 0))
            payment = Payment.query.filter_by(order_id=missed).one()
            self.assertEqual(payment.escrow_status, "RELEASED")
            self.assertEqual(db.session.get(Order, missed).status, "DELIVERED")
            self.assertEqual(Payment.query.filter_by(order_id=in_flight).one().escrow_status, "HELD")

            again = run_escrow_automation(limit=50)
            self.assertEqual((again["processed"], again["released"]), (0, 0))

            runs = JobRun.query.filter_by(job_name="escrow_runner").order_by(JobRun.id.asc()).all()
            self.assertGreaterEqual(len(runs), 2)
            self.assertEqual(json.loads(runs[-2].summary_json)["released"], 1)

    def test_disputed_orders_are_left_alone(self):
        with self.app.app_context():
            order_id, buyer_id = self._paid_order()
            create_dispute(principal_for_user_id(buyer_id), order_id, "Damaged packaging")
            self._mark_delivered_without_release(order_id)
            result = run_escrow_automation(limit=50)
            self.assertEqual(result["released"], 0)
            self.assertEqual(Payment.query.filter_by(order_id=order_id).one().escrow_status, "DISPUTED")

    def test_cli_command_runs_sweeper(self):
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["run-escrow-sweeper", "--limit", "5"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("'ok': True", result.output)


if __name__ == "__main__":
    unittest.main()
