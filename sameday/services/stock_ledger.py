from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import inspect, or_, select, update

from sameday.errors import AuthorizationError, InsufficientStock, UnitNotFound, ValidationError
from sameday.extensions import db
from sameday.models import Order, OrderItem, PricingUnit, Product, Shop, StockHistory
from sameday.services import notification_service
from sameday.utils.transactions import unit_of_work

logger = logging.getLogger(__name__)

UNSET = object()


class StockChangeType:
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    RESTOCKED = "RESTOCKED"
    MANUAL_UPDATE = "MANUAL_UPDATE"

    ALL = {ORDER_PLACED, ORDER_CANCELLED, RESTOCKED, MANUAL_UPDATE}


def _expire_cached_unit(unit_id: int) -> None:
    cached = db.session.identity_map.get(inspect(PricingUnit).identity_key_from_primary_key((int(unit_id),)))
    if cached is not None:
        db.session.expire(cached, ["stock", "updated_at"])


def _append_history(
    *,
    unit_id: int,
    delta: int,
    change_type: str,
    previous_stock: int | None,
    new_stock: int | None,
    related_order_id: int | None,
    note: str | None,
) -> None:
    try:
        with db.session.begin_nested():
            db.session.add(
                StockHistory(
                    pricing_unit_id=unit_id,
                    change_type=change_type,
                    quantity=int(delta),
                    previous_stock=previous_stock,
                    new_stock=new_stock,
                    order_id=int(related_order_id) if related_order_id is not None else None,
                    notes=(note or "")[:240] or None,
                    created_at=datetime.utcnow(),
                )
            )
    except Exception:
        logger.exception("stock_history_write_failed unit_id=%s change_type=%s", unit_id, change_type)


def _unit_label(unit_id: int) -> tuple[str, str]:
    row = (
        db.session.query(Product.name, PricingUnit.unit)
        .join(PricingUnit, PricingUnit.product_id == Product.id)
        .filter(PricingUnit.id == unit_id)
        .first()
    )
    if not row:
        return "", ""
    return row[0] or "", row[1] or ""


def adjust_stock(
    pricing_unit_id: int,
    delta: int,
    change_type: str,
    *,
    related_order_id: int | None = None,
    note: str | None = None,
) -> dict:
    """Apply `delta` to a pricing unit's stock as one conditional UPDATE.

    Untracked units (stock NULL) always succeed and stay NULL. Tracked units
    only change when the result stays >= 0, otherwise InsufficientStock is
    raised and nothing is written. Returns {"pricing_unit_id", "previous_stock",
    "new_stock"}.

    Joins the caller's unit of work when there is one; a standalone call
    commits on its own, and any low-stock alert is written after that commit.
    """
    try:
        unit_id = int(pricing_unit_id)
        delta = int(delta)
    except Exception:
        raise ValidationError("pricing_unit_id and delta must be integers")
    if change_type not in StockChangeType.ALL:
        raise ValidationError(f"unknown stock change type {change_type}", code="invalid_change_type")

    with unit_of_work():
        return _apply_delta(unit_id, delta, change_type, related_order_id=related_order_id, note=note)


def _apply_delta(unit_id: int, delta: int, change_type: str, *, related_order_id, note) -> dict:
    stmt = (
        update(PricingUnit)
        .where(PricingUnit.id == unit_id)
        .where(or_(PricingUnit.stock.is_(None), PricingUnit.stock + delta >= 0))
        .values(stock=PricingUnit.stock + delta, updated_at=datetime.utcnow())
        .returning(PricingUnit.stock)
        .execution_options(synchronize_session=False)
    )
    row = db.session.execute(stmt).first()
    _expire_cached_unit(unit_id)

    if row is None:
        current = db.session.execute(
            select(PricingUnit.stock).where(PricingUnit.id == unit_id)
        ).first()
        if current is None:
            raise UnitNotFound(f"pricing unit {unit_id} not found", detail={"pricing_unit_id": unit_id})
        product_name, unit = _unit_label(unit_id)
        available = int(current[0] or 0)
        raise InsufficientStock(
            f"Insufficient stock for {product_name or unit_id}. Available: {available} {unit}".strip(),
            detail={
                "pricing_unit_id": unit_id,
                "product_name": product_name,
                "available": available,
                "requested": -delta,
            },
        )

    new_stock = row[0]
    previous_stock = int(new_stock) - delta if new_stock is not None else None
    _append_history(
        unit_id=unit_id,
        delta=delta,
        change_type=change_type,
        previous_stock=previous_stock,
        new_stock=new_stock,
        related_order_id=related_order_id,
        note=note,
    )
    if new_stock is not None and delta < 0:
        _check_low_stock(unit_id, int(new_stock))
    logger.info(
        "stock_adjusted unit_id=%s delta=%s change_type=%s new_stock=%s order_id=%s",
        unit_id,
        delta,
        change_type,
        new_stock,
        related_order_id,
    )
    return {
        "pricing_unit_id": unit_id,
        "previous_stock": previous_stock,
        "new_stock": int(new_stock) if new_stock is not None else None,
    }


def _check_low_stock(unit_id: int, current_stock: int) -> None:
    try:
        row = (
            db.session.query(PricingUnit.low_stock_threshold, Product.id, Product.name, PricingUnit.unit, Shop.owner_id)
            .join(Product, PricingUnit.product_id == Product.id)
            .join(Shop, Product.shop_id == Shop.id)
            .filter(PricingUnit.id == unit_id)
            .first()
        )
    except Exception:
        logger.exception("low_stock_lookup_failed unit_id=%s", unit_id)
        return
    if not row:
        return
    threshold, product_id, product_name, unit, owner_id = row
    if threshold is None or current_stock > int(threshold):
        return
    notification_service.notify(
        "low_stock_alert",
        {
            "seller_id": int(owner_id),
            "product_id": int(product_id),
            "pricing_unit_id": unit_id,
            "product_name": product_name or "",
            "unit": unit or "",
            "current_stock": current_stock,
            "threshold": int(threshold),
        },
    )


def restore_order_stock(order: Order, *, note: str | None = None) -> list[dict]:
    items = OrderItem.query.filter_by(order_id=int(order.id)).order_by(OrderItem.id.asc()).all()
    out = []
    for item in items:
        out.append(
            adjust_stock(
                item.pricing_unit_id,
                int(item.quantity),
                StockChangeType.ORDER_CANCELLED,
                related_order_id=int(order.id),
                note=note or f"Stock restored due to order cancellation: {order.order_number}",
            )
        )
    return out


def _owned_unit(principal, pricing_unit_id: int) -> tuple[PricingUnit, Product, Shop]:
    unit = db.session.get(PricingUnit, int(pricing_unit_id))
    if unit is None:
        raise UnitNotFound(f"pricing unit {pricing_unit_id} not found", detail={"pricing_unit_id": int(pricing_unit_id)})
    product = db.session.get(Product, int(unit.product_id))
    shop = db.session.get(Shop, int(product.shop_id)) if product else None
    if shop is None:
        raise UnitNotFound(f"pricing unit {pricing_unit_id} not found", detail={"pricing_unit_id": int(pricing_unit_id)})
    if not principal.is_admin and not (principal.has_role("seller") and principal.user_id == int(shop.owner_id)):
        raise AuthorizationError("Unauthorized to update this pricing unit", code="unauthorized")
    return unit, product, shop


def update_stock(
    principal,
    pricing_unit_id: int,
    *,
    stock=UNSET,
    delta: int | None = None,
    low_stock_threshold=UNSET,
) -> PricingUnit:
    """Seller-facing stock administration.

    `stock` sets an absolute level (None switches tracking off), `delta`
    applies a relative change. Either way the ledger records the difference.
    """
    with unit_of_work():
        unit, _product, _shop = _owned_unit(principal, pricing_unit_id)
        unit_id = int(unit.id)

        if delta is not None and stock is not UNSET:
            raise ValidationError("Provide either stock or delta, not both")

        if delta is not None:
            delta = int(delta)
            if delta:
                adjust_stock(
                    unit_id,
                    delta,
                    StockChangeType.RESTOCKED if delta > 0 else StockChangeType.MANUAL_UPDATE,
                    note="Manual restocking" if delta > 0 else "Manual stock adjustment",
                )
        elif stock is not UNSET:
            _set_absolute_stock(unit, stock)

        if low_stock_threshold is not UNSET:
            if low_stock_threshold is None:
                unit.low_stock_threshold = None
            else:
                threshold = int(low_stock_threshold)
                unit.low_stock_threshold = threshold if threshold >= 0 else None

    db.session.refresh(unit)
    return unit


def _set_absolute_stock(unit: PricingUnit, stock) -> None:
    unit_id = int(unit.id)
    current = unit.stock
    if stock is None:
        if current is None:
            return
        unit.stock = None
        _append_history(
            unit_id=unit_id,
            delta=0,
            change_type=StockChangeType.MANUAL_UPDATE,
            previous_stock=int(current),
            new_stock=None,
            related_order_id=None,
            note="Stock tracking disabled",
        )
        return
    try:
        target = int(stock)
    except Exception:
        raise ValidationError("stock must be an integer or null")
    if target < 0:
        raise ValidationError("stock cannot be negative")
    if current is None:
        unit.stock = target
        _append_history(
            unit_id=unit_id,
            delta=target,
            change_type=StockChangeType.RESTOCKED,
            previous_stock=None,
            new_stock=target,
            related_order_id=None,
            note="Stock tracking enabled",
        )
        return
    difference = target - int(current)
    if difference:
        adjust_stock(
            unit_id,
            difference,
            StockChangeType.RESTOCKED if difference > 0 else StockChangeType.MANUAL_UPDATE,
            note="Manual restocking" if difference > 0 else "Manual stock adjustment",
        )


def stock_history(principal, pricing_unit_id: int, *, limit: int = 50) -> list[StockHistory]:
    _owned_unit(principal, pricing_unit_id)
    return (
        StockHistory.query.filter_by(pricing_unit_id=int(pricing_unit_id))
        .order_by(StockHistory.created_at.desc(), StockHistory.id.desc())
        .limit(max(1, min(int(limit or 50), 500)))
        .all()
    )


def low_stock_items(seller_id: int) -> list[dict]:
    rows = (
        db.session.query(PricingUnit, Product)
        .join(Product, PricingUnit.product_id == Product.id)
        .join(Shop, Product.shop_id == Shop.id)
        .filter(Shop.owner_id == int(seller_id))
        .filter(PricingUnit.is_active.is_(True))
        .filter(PricingUnit.stock.isnot(None))
        .filter(PricingUnit.low_stock_threshold.isnot(None))
        .filter(PricingUnit.stock <= PricingUnit.low_stock_threshold)
        .order_by(PricingUnit.stock.asc())
        .all()
    )
    return [
        {
            "product_id": int(product.id),
            "product_name": product.name or "",
            "pricing_unit_id": int(unit.id),
            "unit": unit.unit or "",
            "current_stock": int(unit.stock),
            "threshold": int(unit.low_stock_threshold),
        }
        for unit, product in rows
    ]

