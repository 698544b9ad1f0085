from datetime import datetime
import json

from sameday.extensions import db
from sameday.utils.fees import money_minor_to_major


class Shop(db.Model):
    __tablename__ = "shops"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(160), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(64), nullable=True)
    state = db.Column(db.String(64), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # {"monday": {"open": "08:00", "close": "20:00", "closed": false}, ...}
    operating_hours_json = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def set_operating_hours(self, hours: dict | None) -> None:
        self.operating_hours_json = json.dumps(hours) if hours else None

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "owner_id": int(self.owner_id),
            "name": self.name or "",
            "address": self.address or "",
            "city": self.city or "",
            "state": self.state or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
            "operating_hours": self.operating_hours_json or None,
            "is_active": bool(self.is_active),
        }


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "shop_id": int(self.shop_id),
            "name": self.name or "",
            "description": self.description or "",
            "is_available": bool(self.is_available),
        }


class PricingUnit(db.Model):
    """Sellable unit of a product ("1kg", "1 bag").

    `stock` is the ledger balance; NULL means untracked/unlimited. It is only
    ever written through the stock ledger's conditional update.
    """

    __tablename__ = "pricing_units"
    __table_args__ = (
        db.CheckConstraint("stock IS NULL OR stock >= 0", name="ck_pricing_units_stock_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    unit = db.Column(db.String(64), nullable=False, default="unit")
    price_minor = db.Column(db.Integer, nullable=False, default=0)
    stock = db.Column(db.Integer, nullable=True)
    low_stock_threshold = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "unit": self.unit or "",
            "price": money_minor_to_major(self.price_minor),
            "price_minor": int(self.price_minor or 0),
            "stock": int(self.stock) if self.stock is not None else None,
            "low_stock_threshold": int(self.low_stock_threshold) if self.low_stock_threshold is not None else None,
            "is_active": bool(self.is_active),
        }
