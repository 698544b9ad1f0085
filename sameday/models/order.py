from datetime import datetime

from sameday.extensions import db
from sameday.utils.fees import money_minor_to_major


class OrderStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    PREPARING = "PREPARING"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"

    TERMINAL = {DELIVERED, CANCELLED}
    PAID_STATES = {PAID, PREPARING, OUT_FOR_DELIVERY}


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    checkout_ref = db.Column(db.String(64), nullable=True, index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)

    status = db.Column(db.String(24), nullable=False, default=OrderStatus.PENDING, index=True)

    subtotal_minor = db.Column(db.Integer, nullable=False, default=0)
    platform_fee_minor = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_minor = db.Column(db.Integer, nullable=False, default=0)
    total_minor = db.Column(db.Integer, nullable=False, default=0)

    # Delivery address snapshot taken at checkout.
    delivery_address = db.Column(db.String(255), nullable=False, default="")
    delivery_city = db.Column(db.String(64), nullable=False, default="")
    delivery_state = db.Column(db.String(64), nullable=False, default="")
    delivery_phone = db.Column(db.String(32), nullable=False, default="")
    delivery_latitude = db.Column(db.Float, nullable=True)
    delivery_longitude = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)
    cancellation_reason = db.Column(db.String(240), nullable=True)

    def totals_consistent(self) -> bool:
        return int(self.total_minor or 0) == (
            int(self.subtotal_minor or 0)
            + int(self.platform_fee_minor or 0)
            + int(self.delivery_fee_minor or 0)
        )

    def to_dict(self, *, include_items: bool = False) -> dict:
        data = {
            "id": int(self.id),
            "order_number": self.order_number or "",
            "checkout_ref": self.checkout_ref or "",
            "buyer_id": int(self.buyer_id),
            "shop_id": int(self.shop_id),
            "status": self.status or OrderStatus.PENDING,
            "subtotal": money_minor_to_major(self.subtotal_minor),
            "platform_fee": money_minor_to_major(self.platform_fee_minor),
            "delivery_fee": money_minor_to_major(self.delivery_fee_minor),
            "total": money_minor_to_major(self.total_minor),
            "total_minor": int(self.total_minor or 0),
            "delivery": {
                "address": self.delivery_address or "",
                "city": self.delivery_city or "",
                "state": self.delivery_state or "",
                "phone": self.delivery_phone or "",
                "latitude": self.delivery_latitude,
                "longitude": self.delivery_longitude,
            },
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason or "",
        }
        if include_items:
            rows = OrderItem.query.filter_by(order_id=int(self.id)).order_by(OrderItem.id.asc()).all()
            data["items"] = [r.to_dict() for r in rows]
        return data


class OrderItem(db.Model):
    """Immutable line snapshot; unit price is the price at purchase time."""

    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    pricing_unit_id = db.Column(db.Integer, db.ForeignKey("pricing_units.id"), nullable=False, index=True)
    product_name = db.Column(db.String(160), nullable=False, default="")
    unit = db.Column(db.String(64), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_minor = db.Column(db.Integer, nullable=False)
    line_total_minor = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "pricing_unit_id": int(self.pricing_unit_id),
            "product_name": self.product_name or "",
            "unit": self.unit or "",
            "quantity": int(self.quantity or 0),
            "unit_price": money_minor_to_major(self.unit_price_minor),
            "line_total": money_minor_to_major(self.line_total_minor),
        }
