from datetime import datetime

from sameday.extensions import db
from sameday.utils.fees import money_minor_to_major


class PaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class Payment(db.Model):
    """Escrow record, one per order.

    `status` tracks where the buyer's money is from the gateway's point of
    view, `escrow_status` tracks the platform hold.
    """

    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    amount_minor = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    escrow_status = db.Column(db.String(16), nullable=False, default="HELD", index=True)

    reference = db.Column(db.String(120), nullable=True, index=True)
    seller_amount_minor = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "amount": money_minor_to_major(self.amount_minor),
            "amount_minor": int(self.amount_minor or 0),
            "status": self.status or "PENDING",
            "escrow_status": self.escrow_status or "HELD",
            "reference": self.reference or "",
            "seller_amount": money_minor_to_major(self.seller_amount_minor) if self.seller_amount_minor is not None else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
        }
