"""Buyer disputes and admin arbitration.

Opening a dispute freezes the escrow and parks the order in DISPUTED.
Resolution settles the escrow (refund or release) and cancels the order.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from sameday.errors import AlreadyResolved, DisputeExists, NotFoundError, StateError, Unauthorized, ValidationError
from sameday.extensions import db
from sameday.models import Dispute, DisputeResolution, DisputeStatus, Order, OrderStatus, Payment, Shop
from sameday.services import notification_service
from sameday.services.delivery_service import fail_open_delivery
from sameday.services.escrow_service import EscrowStatus, freeze_for_dispute, refund_payment, release_payment
from sameday.services.order_service import get_order
from sameday.utils.events import log_event
from sameday.utils.fees import money_major_to_minor
from sameday.utils.realtime import live_event, publish_after_commit
from sameday.utils.transactions import unit_of_work

logger = logging.getLogger(__name__)


def get_dispute(dispute_id: int) -> Dispute:
    dispute = db.session.get(Dispute, int(dispute_id))
    if dispute is None:
        raise NotFoundError(f"Dispute {dispute_id} not found", code="dispute_not_found")
    return dispute


def _role_in(principal, dispute: Dispute) -> str | None:
    if principal is None:
        return None
    if principal.is_admin:
        return "admin"
    if principal.user_id is None:
        return None
    if int(dispute.buyer_id) == int(principal.user_id):
        return "buyer"
    if int(dispute.seller_id) == int(principal.user_id):
        return "seller"
    return None


def view_dispute(principal, dispute_id: int) -> Dispute:
    dispute = get_dispute(dispute_id)
    if _role_in(principal, dispute) is None:
        raise Unauthorized("You cannot view this dispute")
    return dispute


def list_disputes(principal, *, status: str | None = None, limit: int = 50) -> list[Dispute]:
    if principal is None or principal.user_id is None:
        raise Unauthorized("Sign in to list disputes")
    q = Dispute.query
    if not principal.is_admin:
        uid = int(principal.user_id)
        q = q.filter((Dispute.buyer_id == uid) | (Dispute.seller_id == uid))
    if status:
        q = q.filter(Dispute.status == status.strip().upper())
    return q.order_by(Dispute.created_at.desc(), Dispute.id.desc()).limit(max(1, min(int(limit or 50), 200))).all()


def create_dispute(principal, order_id: int, reason: str, *, description: str | None = None) -> Dispute:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required", code="reason_required")
    if principal is None or principal.user_id is None:
        raise Unauthorized("Sign in to open a dispute")

    with unit_of_work():
        order = get_order(order_id)
        if int(order.buyer_id) != int(principal.user_id):
            raise Unauthorized("Only the buyer can dispute this order")
        if Dispute.query.filter_by(order_id=int(order.id)).first() is not None:
            raise DisputeExists("A dispute already exists for this order", detail={"order_id": int(order.id)})
        if order.status == OrderStatus.PENDING:
            raise StateError("Unpaid orders cannot be disputed", code="order_not_paid")
        if order.status in OrderStatus.TERMINAL:
            raise StateError(f"Cannot dispute a {order.status} order", code="order_not_disputable")
        payment = Payment.query.filter_by(order_id=int(order.id)).first()
        if payment is None or payment.escrow_status != EscrowStatus.HELD:
            raise StateError("Funds for this order are no longer held", code="escrow_not_held")
        shop = db.session.get(Shop, int(order.shop_id))

        now = datetime.utcnow()
        dispute = Dispute(
            order_id=int(order.id),
            buyer_id=int(order.buyer_id),
            seller_id=int(shop.owner_id),
            status=DisputeStatus.OPEN,
            reason=reason[:240],
            description=(description or "").strip() or None,
            created_at=now,
            updated_at=now,
        )
        try:
            with db.session.begin_nested():
                db.session.add(dispute)
        except IntegrityError:
            raise DisputeExists("A dispute already exists for this order", detail={"order_id": int(order.id)})

        previous = order.status
        freeze_for_dispute(payment, dispute_id=int(dispute.id), actor=principal.actor(), reason=reason)
        order.status = OrderStatus.DISPUTED
        order.updated_at = now

        log_event(
            "dispute_created",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="dispute",
            subject_id=int(dispute.id),
            metadata={"from": previous, "reason": reason},
        )
        notification_service.notify("dispute_created", {"order_id": int(order.id), "dispute_id": int(dispute.id)})
        publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=OrderStatus.DISPUTED))
        publish_after_commit(int(order.id), live_event("dispute_status", order_id=int(order.id), status=DisputeStatus.OPEN))
    logger.info("dispute_created dispute_id=%s order_id=%s buyer_id=%s", dispute.id, order.id, principal.user_id)
    return dispute


def annotate_dispute(
    principal,
    dispute_id: int,
    *,
    notes: str | None = None,
    status: str | None = None,
) -> Dispute:
    """Each party writes its own notes field; admins may also move the status.

    Admin status moves are limited to IN_REVIEW and CLOSED; RESOLVED only
    comes from resolve_dispute.
    """
    with unit_of_work():
        dispute = get_dispute(dispute_id)
        role = _role_in(principal, dispute)
        if role is None:
            raise Unauthorized("You cannot update this dispute")
        if dispute.status in DisputeStatus.TERMINAL:
            raise StateError(f"Dispute is {dispute.status}", code="dispute_closed")

        changed = []
        if notes is not None:
            setattr(dispute, f"{role}_notes", str(notes).strip() or None)
            changed.append(f"{role}_notes")
        if status is not None:
            if role != "admin":
                raise Unauthorized("Only admins can change dispute status")
            target = str(status).strip().upper()
            if target not in (DisputeStatus.IN_REVIEW, DisputeStatus.CLOSED):
                raise ValidationError("Status must be IN_REVIEW or CLOSED", code="invalid_status")
            if target != dispute.status:
                dispute.status = target
                changed.append("status")
                if target == DisputeStatus.CLOSED:
                    dispute.resolved_by = principal.user_id
                    dispute.resolved_at = datetime.utcnow()
                publish_after_commit(int(dispute.order_id), live_event("dispute_status", order_id=int(dispute.order_id), status=target))
        if not changed:
            return dispute
        dispute.updated_at = datetime.utcnow()
        log_event(
            "dispute_updated",
            actor_user_id=principal.user_id,
            order_id=int(dispute.order_id),
            subject_type="dispute",
            subject_id=int(dispute.id),
            metadata={"by": role, "fields": changed, "status": dispute.status},
        )
    return dispute


def _partial_amount(refund_amount, payment: Payment) -> int:
    if refund_amount is None:
        raise ValidationError("refund_amount is required for a partial resolution", code="refund_amount_required")
    amount_minor = money_major_to_minor(refund_amount)
    if amount_minor <= 0 or amount_minor > int(payment.amount_minor or 0):
        raise ValidationError(
            "refund_amount must be positive and at most the amount paid",
            code="invalid_refund_amount",
            detail={"max_minor": int(payment.amount_minor or 0)},
        )
    return amount_minor


def resolve_dispute(
    principal,
    dispute_id: int,
    resolution: str,
    *,
    admin_notes: str | None = None,
    refund_amount=None,
) -> Dispute:
    """Admin arbitration. BUYER_WINS and PARTIAL refund, SELLER_WINS releases.

    The order is cancelled whichever way it goes. `refund_amount` (major
    units) is recorded for PARTIAL only; the ledger still refunds in full.
    """
    if principal is None or not principal.is_admin:
        raise Unauthorized("Admin access required")
    outcome = (resolution or "").strip().upper()
    if outcome not in DisputeResolution.ALL:
        raise ValidationError("resolution must be BUYER_WINS, SELLER_WINS or PARTIAL", code="invalid_resolution")

    with unit_of_work():
        dispute = get_dispute(dispute_id)
        if dispute.status in DisputeStatus.TERMINAL:
            raise AlreadyResolved(f"Dispute is already {dispute.status}", detail={"dispute_id": int(dispute.id)})
        order = db.session.get(Order, int(dispute.order_id))
        payment = Payment.query.filter_by(order_id=int(order.id)).first()
        partial_minor = _partial_amount(refund_amount, payment) if outcome == DisputeResolution.PARTIAL else None

        now = datetime.utcnow()
        result = db.session.execute(
            update(Dispute)
            .where(Dispute.id == int(dispute.id))
            .where(Dispute.status.in_([DisputeStatus.OPEN, DisputeStatus.IN_REVIEW]))
            .values(
                status=DisputeStatus.RESOLVED,
                resolution=outcome,
                refund_amount_minor=partial_minor,
                admin_notes=(admin_notes.strip() or None) if admin_notes is not None else dispute.admin_notes,
                resolved_by=int(principal.user_id),
                resolved_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise AlreadyResolved("Dispute was resolved concurrently", detail={"dispute_id": int(dispute.id)})
        db.session.refresh(dispute)

        actor = principal.actor()
        key_base = f"dispute:{int(dispute.id)}:resolve"
        if outcome == DisputeResolution.SELLER_WINS:
            release_payment(order, payment, actor=actor, reason="dispute_seller_wins", idempotency_key=f"{key_base}:release", allow_disputed=True)
        else:
            refund_payment(order, payment, actor=actor, reason=f"dispute_{outcome.lower()}", idempotency_key=f"{key_base}:refund", allow_disputed=True)

        fail_open_delivery(int(order.id), "dispute_resolved")
        previous = order.status
        order.status = OrderStatus.CANCELLED
        order.cancelled_at = order.cancelled_at or now
        order.cancelled_by = int(principal.user_id)
        order.cancellation_reason = f"Dispute resolved: {outcome}"
        order.updated_at = now

        log_event(
            "dispute_resolved",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="dispute",
            subject_id=int(dispute.id),
            metadata={"resolution": outcome, "refund_amount_minor": partial_minor, "order_from": previous},
        )
        notification_service.notify(
            "dispute_resolved",
            {"order_id": int(order.id), "dispute_id": int(dispute.id), "resolution": outcome},
        )
        publish_after_commit(int(order.id), live_event("dispute_status", order_id=int(order.id), status=DisputeStatus.RESOLVED))
        publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=OrderStatus.CANCELLED))
    logger.info("dispute_resolved dispute_id=%s order_id=%s resolution=%s", dispute.id, order.id, outcome)
    return dispute
