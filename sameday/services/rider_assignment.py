from __future__ import annotations

import logging

from sameday.errors import EngineError
from sameday.extensions import db
from sameday.models import Delivery, DeliveryStatus, Order, Shop, UserRole
from sameday.services.delivery_service import assign_delivery
from sameday.utils.geo import haversine_km, valid_coordinates
from sameday.utils.principal import Principal

logger = logging.getLogger(__name__)


def _rider_location(rider_id: int):
    """Last known position: live telemetry first, else the shop of an active job."""
    active = (
        Delivery.query.filter(Delivery.rider_id == int(rider_id))
        .filter(Delivery.status.in_(sorted(DeliveryStatus.ACTIVE)))
        .order_by(Delivery.location_updated_at.desc(), Delivery.id.desc())
        .all()
    )
    for d in active:
        if valid_coordinates(d.rider_latitude, d.rider_longitude):
            return float(d.rider_latitude), float(d.rider_longitude)
    for d in active:
        order = db.session.get(Order, int(d.order_id))
        shop = db.session.get(Shop, int(order.shop_id)) if order else None
        if shop is not None and valid_coordinates(shop.latitude, shop.longitude):
            return float(shop.latitude), float(shop.longitude)
    return None


def available_riders() -> list[int]:
    rows = UserRole.query.filter_by(role="rider", status="APPROVED", is_active=True, is_online=True).all()
    return sorted({int(r.user_id) for r in rows})


def find_nearest_available_rider(latitude, longitude) -> int | None:
    """Nearest approved, online rider. Riders with no known position rank last."""
    riders = available_riders()
    if not riders:
        return None
    if not valid_coordinates(latitude, longitude):
        return riders[0]
    ranked = []
    for rider_id in riders:
        loc = _rider_location(rider_id)
        distance = haversine_km(latitude, longitude, loc[0], loc[1]) if loc else float("inf")
        ranked.append((distance, rider_id))
    ranked.sort()
    return ranked[0][1]


def auto_assign_rider(delivery_id: int) -> int | None:
    """Best-effort claim for the nearest rider. Never raises."""
    try:
        delivery = db.session.get(Delivery, int(delivery_id))
        if delivery is None or delivery.rider_id is not None or delivery.status != DeliveryStatus.PENDING:
            return None
        order = db.session.get(Order, int(delivery.order_id))
        shop = db.session.get(Shop, int(order.shop_id)) if order else None
        rider_id = find_nearest_available_rider(
            shop.latitude if shop else None,
            shop.longitude if shop else None,
        )
        if rider_id is None:
            logger.info("auto_assign_skipped delivery_id=%s reason=no_rider_available", delivery_id)
            return None
        assign_delivery(Principal.system(), int(delivery_id), rider_id)
        logger.info("auto_assign_ok delivery_id=%s rider_id=%s", delivery_id, rider_id)
        return rider_id
    except EngineError as e:
        logger.info("auto_assign_skipped delivery_id=%s reason=%s", delivery_id, e.code)
        return None
    except Exception:
        logger.exception("auto_assign_failed delivery_id=%s", delivery_id)
        db.session.rollback()
        return None
