from __future__ import annotations

import json
import os
import unittest
import uuid

from sameday import create_app
from sameday.extensions import db
from sameday.models import Order, Payment, PricingUnit, Product, ReconciliationReport, Shop, User, UserRole
from sameday.services.order_assembler import CartItem, DeliveryInfo, create_orders
from sameday.services.order_service import confirm_payment
from sameday.services.reconciliation_service import audit_lifecycle_invariants, persist_report
from sameday.utils.jwt_utils import create_token
from sameday.utils.principal import Principal, principal_for_user_id


class ReconciliationTestCase(unittest.TestCase):
    def setUp(self):
        self._prev = {k: os.getenv(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL", "AUTO_ASSIGN_RIDERS")}
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["AUTO_ASSIGN_RIDERS"] = "0"
        self.app = create_app()
        self.app.config.update(TESTING=True)
        with self.app.app_context():
            db.create_all()

    def tearDown(self):
        for key, value in self._prev.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _order(self, *, paid=True) -> int:
        suffix = uuid.uuid4().hex[:10]
        buyer = User(name="Audit Buyer", email=f"audit-buyer-{suffix}@sameday.test")
        seller = User(name="Audit Seller", email=f"audit-seller-{suffix}@sameday.test")
        buyer.set_password("Passw0rd!")
        seller.set_password("Passw0rd!")
        db.session.add_all([buyer, seller])
        db.session.flush()
        db.session.add(UserRole(user_id=int(buyer.id), role="buyer", status="APPROVED"))
        shop = Shop(owner_id=int(seller.id), name="Audit Shop")
        db.session.add(shop)
        db.session.flush()
        product = Product(shop_id=int(shop.id), name="Beans")
        db.session.add(product)
        db.session.flush()
        unit = PricingUnit(product_id=int(product.id), unit="bag", price_minor=250_000, stock=4)
        db.session.add(unit)
        db.session.commit()
        order = create_orders(
            principal_for_user_id(int(buyer.id)),
            [CartItem(shop_id=int(shop.id), pricing_unit_id=int(unit.id), quantity=1)],
            DeliveryInfo(address="12 Broad St", city="Lagos", state="Lagos", phone="08030001234"),
        )[0]
        if paid:
            confirm_payment(Principal.system(), int(order.id))
        return int(order.id)

    def test_consistent_orders_pass(self):
        with self.app.app_context():
            self._order()
            self._order(paid=False)
            summary = audit_lifecycle_invariants()
            self.assertTrue(summary["ok"])
            self.assertEqual((summary["orders_scanned"], summary["violation_count"]), (2, 0))

    def test_tampered_rows_are_reported(self):
        with self.app.app_context():
            totals_off = self._order()
            settled_open = self._order()
            db.session.get(Order, totals_off).total_minor += 1
            payment = Payment.query.filter_by(order_id=settled_open).one()
            payment.escrow_status = "RELEASED"
            db.session.commit()

            summary = audit_lifecycle_invariants()
            self.assertFalse(summary["ok"])
            checks = {(v["order_id"], v["check"]) for v in summary["violations"]}
            self.assertIn((totals_off, "total_mismatch"), checks)
            self.assertIn((totals_off, "payment_amount_mismatch"), checks)
            self.assertIn((settled_open, "escrow_payment_mismatch"), checks)
            self.assertIn((settled_open, "settled_escrow_open_order"), checks)

            self.assertEqual(audit_lifecycle_invariants(limit=1)["orders_scanned"], 1)

            report = persist_report(summary, created_by=None)
            stored = db.session.get(ReconciliationReport, report.id)
            self.assertEqual(stored.violation_count, summary["violation_count"])
            self.assertEqual(json.loads(stored.summary_json)["scope"], "order_lifecycle")

    def test_cli_exits_nonzero_on_violations(self):
        with self.app.app_context():
            order_id = self._order()
            runner = self.app.test_cli_runner()
            clean = runner.invoke(args=["audit-invariants", "--no-persist"])
            self.assertEqual(clean.exit_code, 0, clean.output)
            self.assertIn("violations=0", clean.output)

            Payment.query.filter_by(order_id=order_id).one().amount_minor = 1
            db.session.commit()
            dirty = runner.invoke(args=["audit-invariants"])
            self.assertEqual(dirty.exit_code, 2)
            self.assertEqual(ReconciliationReport.query.count(), 1)

    def test_admin_endpoints(self):
        with self.app.app_context():
            self._order()
            admin = User(name="Audit Admin", email=f"audit-admin-{uuid.uuid4().hex[:8]}@sameday.test")
            admin.set_password("Passw0rd!")
            db.session.add(admin)
            db.session.flush()
            db.session.add(UserRole(user_id=int(admin.id), role="admin", status="APPROVED"))
            db.session.commit()
            headers = {"Authorization": f"Bearer {create_token(int(admin.id))}"}

        client = self.app.test_client()
        res = client.get("/api/admin/reconciliation/latest", headers=headers)
        self.assertEqual(res.status_code, 200)
        self.assertIsNone(res.get_json()["report"])
        res = client.post("/api/admin/reconciliation/run", headers=headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["summary"]["ok"])
        res = client.get("/api/admin/reconciliation/latest", headers=headers)
        self.assertEqual(res.get_json()["report"]["orders_scanned"], 1)


if __name__ == "__main__":
    unittest.main()
