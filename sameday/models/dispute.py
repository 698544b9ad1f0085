from datetime import datetime

from sameday.extensions import db
from sameday.utils.fees import money_minor_to_major


class DisputeStatus:
    OPEN = "OPEN"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

    TERMINAL = {RESOLVED, CLOSED}


class DisputeResolution:
    BUYER_WINS = "BUYER_WINS"
    SELLER_WINS = "SELLER_WINS"
    PARTIAL = "PARTIAL"

    ALL = {BUYER_WINS, SELLER_WINS, PARTIAL}


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    # Unique: at most one dispute per order, enforced by the store.
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)
    reason = db.Column(db.String(240), nullable=False)
    description = db.Column(db.Text, nullable=True)

    buyer_notes = db.Column(db.Text, nullable=True)
    seller_notes = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)

    resolution = db.Column(db.String(16), nullable=True)  # BUYER_WINS | SELLER_WINS | PARTIAL
    refund_amount_minor = db.Column(db.Integer, nullable=True)
    resolved_by = db.Column(db.Integer, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "status": self.status or "OPEN",
            "reason": self.reason or "",
            "description": self.description or "",
            "buyer_notes": self.buyer_notes or "",
            "seller_notes": self.seller_notes or "",
            "admin_notes": self.admin_notes or "",
            "resolution": self.resolution,
            "refund_amount": money_minor_to_major(self.refund_amount_minor) if self.refund_amount_minor is not None else None,
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
