from sameday.models.user import User, UserRole
from sameday.models.catalog import Shop, Product, PricingUnit
from sameday.models.stock_history import StockHistory
from sameday.models.order import Order, OrderItem, OrderStatus
from sameday.models.payment import Payment, PaymentStatus
from sameday.models.escrow_transition import EscrowTransition
from sameday.models.delivery import Delivery, DeliveryStatus
from sameday.models.dispute import Dispute, DisputeStatus, DisputeResolution
from sameday.models.notification import Notification
from sameday.models.audit_event import AuditEvent
from sameday.models.idempotency_key import IdempotencyKey
from sameday.models.job_run import JobRun
from sameday.models.reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "UserRole",
    "Shop",
    "Product",
    "PricingUnit",
    "StockHistory",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentStatus",
    "EscrowTransition",
    "Delivery",
    "DeliveryStatus",
    "Dispute",
    "DisputeStatus",
    "DisputeResolution",
    "Notification",
    "AuditEvent",
    "IdempotencyKey",
    "JobRun",
    "ReconciliationReport",
]
