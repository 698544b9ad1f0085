from datetime import datetime

from sameday.extensions import db


class StockHistory(db.Model):
    __tablename__ = "stock_history"

    id = db.Column(db.Integer, primary_key=True)
    pricing_unit_id = db.Column(db.Integer, db.ForeignKey("pricing_units.id"), nullable=False, index=True)
    change_type = db.Column(db.String(32), nullable=False)  # ORDER_PLACED | ORDER_CANCELLED | RESTOCKED | MANUAL_UPDATE
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=True)
    new_stock = db.Column(db.Integer, nullable=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    notes = db.Column(db.String(240), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "pricing_unit_id": int(self.pricing_unit_id),
            "change_type": self.change_type or "",
            "quantity": int(self.quantity or 0),
            "previous_stock": int(self.previous_stock) if self.previous_stock is not None else None,
            "new_stock": int(self.new_stock) if self.new_stock is not None else None,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
