from __future__ import annotations

import json
from datetime import datetime

from sameday.extensions import db
from sameday.models import Delivery, DeliveryStatus, Order, OrderStatus, Payment, PaymentStatus, ReconciliationReport
from sameday.services.escrow_service import EscrowStatus

# Payment statuses each escrow state may sit alongside.
_COMPATIBLE_PAYMENT_STATUS = {
    EscrowStatus.HELD: {PaymentStatus.PENDING, PaymentStatus.COMPLETED},
    EscrowStatus.DISPUTED: {PaymentStatus.COMPLETED},
    EscrowStatus.RELEASED: {PaymentStatus.RELEASED},
    EscrowStatus.REFUNDED: {PaymentStatus.REFUNDED},
}


def _order_violations(order: Order, payment: Payment | None, delivery: Delivery | None) -> list[dict]:
    found = []
    if not order.totals_consistent():
        found.append(
            {
                "check": "total_mismatch",
                "total_minor": int(order.total_minor or 0),
                "parts_minor": int(order.subtotal_minor or 0) + int(order.platform_fee_minor or 0) + int(order.delivery_fee_minor or 0),
            }
        )
    if payment is None:
        found.append({"check": "payment_missing"})
    else:
        escrow = payment.escrow_status or ""
        if (payment.status or "") not in _COMPATIBLE_PAYMENT_STATUS.get(escrow, set()):
            found.append({"check": "escrow_payment_mismatch", "escrow_status": escrow, "payment_status": payment.status})
        if escrow in EscrowStatus.TERMINAL and order.status not in OrderStatus.TERMINAL:
            found.append({"check": "settled_escrow_open_order", "escrow_status": escrow, "order_status": order.status})
        if int(payment.amount_minor or 0) != int(order.total_minor or 0):
            found.append({"check": "payment_amount_mismatch", "amount_minor": int(payment.amount_minor or 0)})
    if delivery is None:
        found.append({"check": "delivery_missing"})
    else:
        status = delivery.status or ""
        has_rider = delivery.rider_id is not None
        if status == DeliveryStatus.PENDING and has_rider:
            found.append({"check": "pending_delivery_has_rider", "rider_id": int(delivery.rider_id)})
        if status not in (DeliveryStatus.PENDING, DeliveryStatus.FAILED) and not has_rider:
            found.append({"check": "assigned_delivery_without_rider", "delivery_status": status})
    return found


def audit_lifecycle_invariants(*, limit: int | None = None) -> dict:
    """Scan orders and report every lifecycle invariant that does not hold."""
    q = Order.query.order_by(Order.id.asc())
    if limit:
        q = q.limit(int(limit))
    orders = q.all()
    ids = [int(o.id) for o in orders]
    payments = {int(p.order_id): p for p in Payment.query.filter(Payment.order_id.in_(ids)).all()} if ids else {}
    deliveries = {int(d.order_id): d for d in Delivery.query.filter(Delivery.order_id.in_(ids)).all()} if ids else {}

    violations = []
    for order in orders:
        for item in _order_violations(order, payments.get(int(order.id)), deliveries.get(int(order.id))):
            item.update({"order_id": int(order.id), "order_number": order.order_number})
            violations.append(item)

    return {
        "ok": not violations,
        "scope": "order_lifecycle",
        "orders_scanned": len(orders),
        "violation_count": len(violations),
        "violations": violations,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "order_lifecycle")[:64],
        orders_scanned=int(summary.get("orders_scanned") or 0),
        violation_count=int(summary.get("violation_count") or 0),
        summary_json=json.dumps(summary, default=str)[:200000],
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report
