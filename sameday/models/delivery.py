from datetime import datetime

from sameday.extensions import db


class DeliveryStatus:
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"

    ACTIVE = {ASSIGNED, PICKED_UP, IN_TRANSIT}
    TERMINAL = {DELIVERED, FAILED}
    NEXT = {
        ASSIGNED: PICKED_UP,
        PICKED_UP: IN_TRANSIT,
        IN_TRANSIT: DELIVERED,
    }


class Delivery(db.Model):
    __tablename__ = "deliveries"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    rider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    # Advisory telemetry; last write wins.
    rider_latitude = db.Column(db.Float, nullable=True)
    rider_longitude = db.Column(db.Float, nullable=True)
    location_updated_at = db.Column(db.DateTime, nullable=True)

    estimated_time = db.Column(db.DateTime, nullable=True)
    assigned_at = db.Column(db.DateTime, nullable=True)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "rider_id": int(self.rider_id) if self.rider_id is not None else None,
            "status": self.status or "PENDING",
            "rider_latitude": self.rider_latitude,
            "rider_longitude": self.rider_longitude,
            "location_updated_at": self.location_updated_at.isoformat() if self.location_updated_at else None,
            "estimated_time": self.estimated_time.isoformat() if self.estimated_time else None,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "failure_reason": self.failure_reason or "",
        }
