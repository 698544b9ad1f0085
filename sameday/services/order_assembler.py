"""Checkout: split a cart into one order per shop and create them atomically.

Every shop group of a submission is created in a single transaction together
with its items, escrow payment, delivery record and stock decrements. Any
failure rolls back the whole cart.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sameday.errors import AuthorizationError, InvalidProduct, InsufficientStock, NotFoundError, ShopClosed, ValidationError
from sameday.extensions import db
from sameday.models import Delivery, DeliveryStatus, Order, OrderItem, OrderStatus, Payment, PaymentStatus, PricingUnit, Product, Shop
from sameday.services import notification_service
from sameday.services.pricing import PricedLine, compute_order_totals
from sameday.services.stock_ledger import StockChangeType, adjust_stock
from sameday.utils.events import log_event
from sameday.utils.fees import FeeSchedule, load_fee_schedule
from sameday.utils.geo import valid_coordinates
from sameday.utils.realtime import live_event, publish_after_commit
from sameday.utils.shop_hours import is_shop_open
from sameday.utils.transactions import unit_of_work

logger = logging.getLogger(__name__)

MAX_ITEMS_PER_CART = 100
MAX_QUANTITY_PER_LINE = 10_000
_ORDER_NUMBER_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


@dataclass(frozen=True)
class CartItem:
    shop_id: int
    pricing_unit_id: int
    quantity: int
    product_id: int | None = None


@dataclass(frozen=True)
class DeliveryInfo:
    address: str
    city: str
    state: str
    phone: str
    latitude: float | None = None
    longitude: float | None = None
    notes: str | None = None

    @property
    def location(self):
        if valid_coordinates(self.latitude, self.longitude):
            return float(self.latitude), float(self.longitude)
        return None


def _pick(row: dict, *names):
    for name in names:
        if name in row and row[name] is not None:
            return row[name]
    return None


def _as_int(value, field: str) -> int:
    try:
        return int(value)
    except Exception:
        raise ValidationError(f"{field} must be an integer", code="invalid_cart_item", detail={"field": field})


def parse_cart_items(raw) -> list[CartItem]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Cart is empty", code="cart_empty")
    if len(raw) > MAX_ITEMS_PER_CART:
        raise ValidationError(f"Cart may hold at most {MAX_ITEMS_PER_CART} items", code="cart_too_large")
    items: list[CartItem] = []
    for idx, row in enumerate(raw):
        if not isinstance(row, dict):
            raise ValidationError("Cart items must be objects", code="invalid_cart_item", detail={"index": idx})
        shop_id = _pick(row, "shop_id", "shopId")
        unit_id = _pick(row, "pricing_unit_id", "pricingUnitId")
        quantity = _pick(row, "quantity")
        if shop_id is None or unit_id is None or quantity is None:
            raise ValidationError(
                "Each cart item needs shop_id, pricing_unit_id and quantity",
                code="invalid_cart_item",
                detail={"index": idx},
            )
        qty = _as_int(quantity, "quantity")
        if qty <= 0 or qty > MAX_QUANTITY_PER_LINE:
            raise ValidationError("quantity must be a positive integer", code="invalid_quantity", detail={"index": idx})
        product_id = _pick(row, "product_id", "productId")
        items.append(
            CartItem(
                shop_id=_as_int(shop_id, "shop_id"),
                pricing_unit_id=_as_int(unit_id, "pricing_unit_id"),
                quantity=qty,
                product_id=_as_int(product_id, "product_id") if product_id is not None else None,
            )
        )
    return items


def parse_delivery_info(raw) -> DeliveryInfo:
    data = raw if isinstance(raw, dict) else {}
    fields = {}
    missing = []
    for name in ("address", "city", "state", "phone"):
        value = str(data.get(name) or "").strip()
        if not value:
            missing.append(name)
        fields[name] = value
    if missing:
        raise ValidationError(
            "Delivery information is incomplete",
            code="delivery_info_incomplete",
            detail={"missing": missing},
        )
    lat = _pick(data, "latitude", "lat")
    lon = _pick(data, "longitude", "lng", "lon")
    if lat is not None or lon is not None:
        if not valid_coordinates(lat, lon):
            raise ValidationError("Invalid delivery coordinates", code="invalid_coordinates")
        lat, lon = float(lat), float(lon)
    notes = str(data.get("notes") or "").strip() or None
    return DeliveryInfo(
        address=fields["address"][:255],
        city=fields["city"][:64],
        state=fields["state"][:64],
        phone=fields["phone"][:32],
        latitude=lat,
        longitude=lon,
        notes=notes,
    )


def generate_order_number(now: datetime | None = None) -> str:
    stamp = (now or datetime.utcnow()).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{stamp}-{suffix}"


def _unique_order_number(now: datetime) -> str:
    for _ in range(8):
        candidate = generate_order_number(now)
        if Order.query.filter_by(order_number=candidate).first() is None:
            return candidate
    raise RuntimeError("could not allocate a unique order number")


def _group_by_shop(items: list[CartItem]) -> dict[int, list[CartItem]]:
    """Group lines per shop in cart order, merging repeats of a pricing unit."""
    groups: dict[int, dict[int, CartItem]] = {}
    for item in items:
        lines = groups.setdefault(int(item.shop_id), {})
        prev = lines.get(int(item.pricing_unit_id))
        if prev is None:
            lines[int(item.pricing_unit_id)] = item
        else:
            lines[int(item.pricing_unit_id)] = CartItem(
                shop_id=prev.shop_id,
                pricing_unit_id=prev.pricing_unit_id,
                quantity=prev.quantity + item.quantity,
                product_id=prev.product_id if prev.product_id is not None else item.product_id,
            )
    return {shop_id: list(lines.values()) for shop_id, lines in groups.items()}


def _load_shop(shop_id: int, now: datetime | None) -> Shop:
    shop = db.session.get(Shop, int(shop_id))
    if shop is None or not shop.is_active:
        raise NotFoundError(f"Shop {shop_id} not found", code="shop_not_found", detail={"shop_id": int(shop_id)})
    if not is_shop_open(shop.operating_hours_json, now=now):
        raise ShopClosed(f"{shop.name} is currently closed", detail={"shop_id": int(shop.id), "shop_name": shop.name})
    return shop


def _resolve_line(shop: Shop, item: CartItem) -> tuple[PricingUnit, Product]:
    unit = db.session.get(PricingUnit, int(item.pricing_unit_id))
    product = db.session.get(Product, int(unit.product_id)) if unit is not None else None
    detail = {"shop_id": int(shop.id), "pricing_unit_id": int(item.pricing_unit_id)}
    if unit is None or product is None or int(product.shop_id) != int(shop.id):
        raise InvalidProduct(f"Pricing unit {item.pricing_unit_id} does not belong to {shop.name}", detail=detail)
    if item.product_id is not None and int(item.product_id) != int(product.id):
        raise InvalidProduct(f"Pricing unit {item.pricing_unit_id} does not belong to product {item.product_id}", detail=detail)
    if not unit.is_active or not product.is_available:
        raise InvalidProduct(f"{product.name} is not available", detail=detail)
    if unit.stock is not None and int(unit.stock) < int(item.quantity):
        raise InsufficientStock(
            f"Insufficient stock for {product.name}. Available: {int(unit.stock)} {unit.unit}",
            detail={
                "pricing_unit_id": int(unit.id),
                "product_name": product.name,
                "available": int(unit.stock),
                "requested": int(item.quantity),
            },
        )
    return unit, product


def _shop_location(shop: Shop):
    if valid_coordinates(shop.latitude, shop.longitude):
        return float(shop.latitude), float(shop.longitude)
    return None


def create_orders(
    principal,
    cart_items: list[CartItem],
    delivery: DeliveryInfo,
    *,
    schedule: FeeSchedule | None = None,
    distance_fn: Callable[[float, float, float, float], float] | None = None,
    now: datetime | None = None,
) -> list[Order]:
    """Create one PENDING order per shop in the cart.

    `now` is the local time used for the operating-hours check. Returns the
    created orders in cart order; each is paid independently.
    """
    if principal is None or principal.user_id is None:
        raise AuthorizationError("Sign in to place an order", code="unauthorized")
    if not principal.has_role("buyer"):
        raise AuthorizationError("Only buyers can place orders", code="unauthorized")
    if not cart_items:
        raise ValidationError("Cart is empty", code="cart_empty")
    if delivery is None:
        raise ValidationError("Delivery information is incomplete", code="delivery_info_incomplete")
    missing = [f for f in ("address", "city", "state", "phone") if not str(getattr(delivery, f, "") or "").strip()]
    if missing:
        raise ValidationError("Delivery information is incomplete", code="delivery_info_incomplete", detail={"missing": missing})

    sched = schedule or load_fee_schedule()
    groups = _group_by_shop(list(cart_items))
    checkout_ref = uuid.uuid4().hex
    created: list[Order] = []

    with unit_of_work():
        stamp = datetime.utcnow()
        for shop_id, lines in groups.items():
            shop = _load_shop(shop_id, now)
            resolved = [(item, *_resolve_line(shop, item)) for item in lines]
            totals = compute_order_totals(
                [PricedLine(int(unit.price_minor), int(item.quantity)) for item, unit, _ in resolved],
                _shop_location(shop),
                delivery.location,
                schedule=sched,
                distance_fn=distance_fn,
            )

            order = Order(
                order_number=_unique_order_number(stamp),
                checkout_ref=checkout_ref,
                buyer_id=int(principal.user_id),
                shop_id=int(shop.id),
                status=OrderStatus.PENDING,
                subtotal_minor=totals.subtotal_minor,
                platform_fee_minor=totals.platform_fee_minor,
                delivery_fee_minor=totals.delivery_fee_minor,
                total_minor=totals.total_minor,
                delivery_address=delivery.address,
                delivery_city=delivery.city,
                delivery_state=delivery.state,
                delivery_phone=delivery.phone,
                delivery_latitude=delivery.latitude,
                delivery_longitude=delivery.longitude,
                notes=delivery.notes,
                created_at=stamp,
                updated_at=stamp,
            )
            db.session.add(order)
            db.session.flush()

            for item, unit, product in resolved:
                db.session.add(
                    OrderItem(
                        order_id=int(order.id),
                        product_id=int(product.id),
                        pricing_unit_id=int(unit.id),
                        product_name=product.name or "",
                        unit=unit.unit or "",
                        quantity=int(item.quantity),
                        unit_price_minor=int(unit.price_minor),
                        line_total_minor=int(unit.price_minor) * int(item.quantity),
                    )
                )
            db.session.add(
                Payment(
                    order_id=int(order.id),
                    amount_minor=totals.total_minor,
                    status=PaymentStatus.PENDING,
                    escrow_status="HELD",
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            db.session.add(Delivery(order_id=int(order.id), status=DeliveryStatus.PENDING, created_at=stamp, updated_at=stamp))
            db.session.flush()

            for item, unit, product in resolved:
                adjust_stock(
                    int(unit.id),
                    -int(item.quantity),
                    StockChangeType.ORDER_PLACED,
                    related_order_id=int(order.id),
                    note=f"Order {order.order_number}",
                )

            log_event(
                "order_created",
                actor_user_id=principal.user_id,
                order_id=int(order.id),
                subject_type="order",
                subject_id=int(order.id),
                metadata={
                    "checkout_ref": checkout_ref,
                    "shop_id": int(shop.id),
                    "total_minor": totals.total_minor,
                    "distance_km": totals.distance_km,
                    "items": len(resolved),
                },
            )
            notification_service.notify("order_placed", {"order_id": int(order.id)})
            publish_after_commit(int(order.id), live_event("order_created", order_id=int(order.id), status=OrderStatus.PENDING))
            created.append(order)

    logger.info(
        "checkout_completed buyer_id=%s checkout_ref=%s orders=%s",
        principal.user_id,
        checkout_ref,
        ",".join(o.order_number for o in created),
    )
    return created
