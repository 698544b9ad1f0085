from __future__ import annotations

from flask import Blueprint, jsonify, request

from sameday.errors import NotFoundError, ValidationError
from sameday.extensions import db
from sameday.models import Shop
from sameday.services.pricing import delivery_fee_for_locations
from sameday.utils.fees import money_minor_to_major
from sameday.utils.geo import valid_coordinates

pricing_bp = Blueprint("pricing_bp", __name__, url_prefix="/api")


@pricing_bp.post("/delivery-fee")
def delivery_fee_quote():
    payload = request.get_json(silent=True) or {}
    try:
        shop_id = int(payload.get("shop_id"))
    except Exception:
        raise ValidationError("shop_id is required", code="shop_required")
    shop = db.session.get(Shop, shop_id)
    if shop is None or not shop.is_active:
        raise NotFoundError(f"Shop {shop_id} not found", code="shop_not_found")

    lat = payload.get("latitude")
    lon = payload.get("longitude")
    destination = (float(lat), float(lon)) if valid_coordinates(lat, lon) else None
    origin = (float(shop.latitude), float(shop.longitude)) if valid_coordinates(shop.latitude, shop.longitude) else None
    fee_minor, distance_km = delivery_fee_for_locations(origin, destination)
    return jsonify(
        {
            "ok": True,
            "shop_id": int(shop.id),
            "delivery_fee": money_minor_to_major(fee_minor),
            "delivery_fee_minor": int(fee_minor),
            "distance_km": distance_km,
            "is_default": distance_km is None,
        }
    ), 200
