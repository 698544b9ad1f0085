from datetime import datetime

from sameday.extensions import db


class EscrowTransition(db.Model):
    __tablename__ = "escrow_transitions"
    __table_args__ = (
        db.UniqueConstraint("payment_id", "idempotency_key", name="uq_escrow_transition_payment_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, nullable=False, index=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    from_escrow_status = db.Column(db.String(16), nullable=False, default="")
    to_escrow_status = db.Column(db.String(16), nullable=False)
    from_payment_status = db.Column(db.String(16), nullable=False, default="")
    to_payment_status = db.Column(db.String(16), nullable=False, default="")
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=False)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "payment_id": int(self.payment_id),
            "order_id": int(self.order_id),
            "from_escrow_status": self.from_escrow_status or "",
            "to_escrow_status": self.to_escrow_status or "",
            "from_payment_status": self.from_payment_status or "",
            "to_payment_status": self.to_payment_status or "",
            "actor_type": self.actor_type or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "idempotency_key": self.idempotency_key or "",
            "reason": self.reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
