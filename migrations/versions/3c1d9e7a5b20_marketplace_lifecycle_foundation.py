"""marketplace lifecycle foundation

Revision ID: 3c1d9e7a5b20
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "3c1d9e7a5b20"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _create_users(bind):
    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)

    if not _table_exists(bind, "user_roles"):
        op.create_table(
            "user_roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("role", sa.String(length=16), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="APPROVED"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
        )
        op.create_index("ix_user_roles_user_id", "user_roles", ["user_id"])
        op.create_index("ix_user_roles_role", "user_roles", ["role"])


def _create_catalog(bind):
    if not _table_exists(bind, "shops"):
        op.create_table(
            "shops",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("name", sa.String(length=160), nullable=False),
            sa.Column("address", sa.String(length=255), nullable=True),
            sa.Column("city", sa.String(length=64), nullable=True),
            sa.Column("state", sa.String(length=64), nullable=True),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=True),
            sa.Column("longitude", sa.Float(), nullable=True),
            sa.Column("operating_hours_json", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_shops_owner_id", "shops", ["owner_id"])

    if not _table_exists(bind, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("shop_id", sa.Integer(), sa.ForeignKey("shops.id"), nullable=False),
            sa.Column("name", sa.String(length=160), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_products_shop_id", "products", ["shop_id"])

    if not _table_exists(bind, "pricing_units"):
        op.create_table(
            "pricing_units",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
            sa.Column("unit", sa.String(length=64), nullable=False, server_default="unit"),
            sa.Column("price_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("stock", sa.Integer(), nullable=True),
            sa.Column("low_stock_threshold", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("stock IS NULL OR stock >= 0", name="ck_pricing_units_stock_non_negative"),
        )
        op.create_index("ix_pricing_units_product_id", "pricing_units", ["product_id"])

    if not _table_exists(bind, "stock_history"):
        op.create_table(
            "stock_history",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("pricing_unit_id", sa.Integer(), sa.ForeignKey("pricing_units.id"), nullable=False),
            sa.Column("change_type", sa.String(length=32), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("previous_stock", sa.Integer(), nullable=True),
            sa.Column("new_stock", sa.Integer(), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("notes", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_stock_history_pricing_unit_id", "stock_history", ["pricing_unit_id"])
        op.create_index("ix_stock_history_order_id", "stock_history", ["order_id"])
        op.create_index("ix_stock_history_created_at", "stock_history", ["created_at"])


def _create_orders(bind):
    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_number", sa.String(length=32), nullable=False),
            sa.Column("checkout_ref", sa.String(length=64), nullable=True),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("shop_id", sa.Integer(), sa.ForeignKey("shops.id"), nullable=False),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="PENDING"),
            sa.Column("subtotal_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("platform_fee_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delivery_fee_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delivery_address", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("delivery_city", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("delivery_state", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("delivery_phone", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("delivery_latitude", sa.Float(), nullable=True),
            sa.Column("delivery_longitude", sa.Float(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_by", sa.Integer(), nullable=True),
            sa.Column("cancellation_reason", sa.String(length=240), nullable=True),
        )
        op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
        op.create_index("ix_orders_checkout_ref", "orders", ["checkout_ref"])
        op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
        op.create_index("ix_orders_shop_id", "orders", ["shop_id"])
        op.create_index("ix_orders_status", "orders", ["status"])
        op.create_index("ix_orders_created_at", "orders", ["created_at"])

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
            sa.Column("pricing_unit_id", sa.Integer(), sa.ForeignKey("pricing_units.id"), nullable=False),
            sa.Column("product_name", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("unit", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit_price_minor", sa.Integer(), nullable=False),
            sa.Column("line_total_minor", sa.Integer(), nullable=False),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
        op.create_index("ix_order_items_pricing_unit_id", "order_items", ["pricing_unit_id"])


def _create_escrow(bind):
    if not _table_exists(bind, "payments"):
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("escrow_status", sa.String(length=16), nullable=False, server_default="HELD"),
            sa.Column("reference", sa.String(length=120), nullable=True),
            sa.Column("seller_amount_minor", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_payments_order_id", "payments", ["order_id"], unique=True)
        op.create_index("ix_payments_status", "payments", ["status"])
        op.create_index("ix_payments_escrow_status", "payments", ["escrow_status"])
        op.create_index("ix_payments_reference", "payments", ["reference"])

    if not _table_exists(bind, "escrow_transitions"):
        op.create_table(
            "escrow_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("payment_id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("from_escrow_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_escrow_status", sa.String(length=16), nullable=False),
            sa.Column("from_payment_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_payment_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("payment_id", "idempotency_key", name="uq_escrow_transition_payment_key"),
        )
        op.create_index("ix_escrow_transitions_payment_id", "escrow_transitions", ["payment_id"])
        op.create_index("ix_escrow_transitions_order_id", "escrow_transitions", ["order_id"])


def _create_delivery_and_disputes(bind):
    if not _table_exists(bind, "deliveries"):
        op.create_table(
            "deliveries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("rider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("rider_latitude", sa.Float(), nullable=True),
            sa.Column("rider_longitude", sa.Float(), nullable=True),
            sa.Column("location_updated_at", sa.DateTime(), nullable=True),
            sa.Column("estimated_time", sa.DateTime(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.Column("picked_up_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("failed_at", sa.DateTime(), nullable=True),
            sa.Column("failure_reason", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_deliveries_order_id", "deliveries", ["order_id"], unique=True)
        op.create_index("ix_deliveries_rider_id", "deliveries", ["rider_id"])
        op.create_index("ix_deliveries_status", "deliveries", ["status"])

    if not _table_exists(bind, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
            sa.Column("reason", sa.String(length=240), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("buyer_notes", sa.Text(), nullable=True),
            sa.Column("seller_notes", sa.Text(), nullable=True),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("resolution", sa.String(length=16), nullable=True),
            sa.Column("refund_amount_minor", sa.Integer(), nullable=True),
            sa.Column("resolved_by", sa.Integer(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_disputes_order_id", "disputes", ["order_id"], unique=True)
        op.create_index("ix_disputes_buyer_id", "disputes", ["buyer_id"])
        op.create_index("ix_disputes_seller_id", "disputes", ["seller_id"])
        op.create_index("ix_disputes_status", "disputes", ["status"])


def _create_support_tables(bind):
    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("event_type", sa.String(length=48), nullable=False, server_default="generic"),
            sa.Column("channel", sa.String(length=32), nullable=False, server_default="in_app"),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("link", sa.String(length=255), nullable=True),
            sa.Column("to_address", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
            sa.Column("provider", sa.String(length=64), nullable=True),
            sa.Column("provider_ref", sa.String(length=120), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
            sa.Column("read_at", sa.DateTime(), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
        op.create_index("ix_notifications_event_type", "notifications", ["event_type"])
        op.create_index("ix_notifications_status", "notifications", ["status"])
        op.create_index("ix_notifications_created_at", "notifications", ["created_at"])

    if not _table_exists(bind, "audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=64), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])
        op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
        op.create_index("ix_audit_events_actor_user_id", "audit_events", ["actor_user_id"])
        op.create_index("ix_audit_events_order_id", "audit_events", ["order_id"])
        op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])
        op.create_index("ix_audit_events_idempotency_key", "audit_events", ["idempotency_key"], unique=True)

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("response_code", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])

    if not _table_exists(bind, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("scope", sa.String(length=64), nullable=False, server_default="order_lifecycle"),
            sa.Column("orders_scanned", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("violation_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"])


def upgrade():
    bind = op.get_bind()
    _create_users(bind)
    _create_catalog(bind)
    _create_orders(bind)
    _create_escrow(bind)
    _create_delivery_and_disputes(bind)
    _create_support_tables(bind)


def downgrade():
    for table in (
        "reconciliation_reports",
        "job_runs",
        "idempotency_keys",
        "audit_events",
        "notifications",
        "disputes",
        "deliveries",
        "escrow_transitions",
        "payments",
        "order_items",
        "orders",
        "stock_history",
        "pricing_units",
        "products",
        "shops",
        "user_roles",
        "users",
    ):
        op.drop_table(table)
