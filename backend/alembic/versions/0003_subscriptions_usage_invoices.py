"""subscriptions, change records, usage metering and invoices

Revision ID: 0003_subscriptions_usage_invoices
Revises: 0002_pricing_rules
Create Date: 2026-03-16
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0003_subscriptions_usage_invoices"
down_revision = "0002_pricing_rules"
branch_labels = None
depends_on = None

ENUM_NAMES = (
    "subscriptionstatus",
    "planchangetype",
    "invoicestatus",
    "lineitemkind",
    "discounttype",
    "usagebillingstatus",
    "alerttype",
)


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def _index(table: str, *columns: str, unique: bool = False) -> None:
    for column in columns:
        op.create_index(f"ix_{table}_{column}", table, [column], unique=unique)


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        *_base_columns(),
        sa.Column("tenant_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("plan_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("TRIAL", "ACTIVE", "CANCELLED", "EXPIRED", "TRIAL_ENDED", name="subscriptionstatus"),
            nullable=False,
        ),
        sa.Column(
            "billing_cycle",
            postgresql.ENUM("MONTHLY", "QUARTERLY", "YEARLY", name="billingcycle", create_type=False),
            nullable=False,
        ),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("ends_at", sa.DateTime(), nullable=False),
        sa.Column("is_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_starts_at", sa.DateTime(), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("current_user_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_entity_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_storage_gb", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("next_billing_at", sa.DateTime(), nullable=True),
        sa.Column("last_billing_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("pending_plan_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("pending_change_at", sa.DateTime(), nullable=True),
        sa.Column("live_key", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["pending_plan_id"], ["subscription_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("live_key"),
    )
    _index("subscriptions", "id", "tenant_id", "plan_id", "status", "ends_at")

    op.create_table(
        "subscription_change_records",
        *_base_columns(),
        sa.Column("subscription_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("from_plan_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("to_plan_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("change_type", sa.Enum("UPGRADE", "DOWNGRADE", name="planchangetype"), nullable=False),
        sa.Column("proration_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("effective_at", sa.DateTime(), nullable=False),
        sa.Column("reverts_change_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["from_plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["to_plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["reverts_change_id"], ["subscription_change_records.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("subscription_change_records", "id", "subscription_id")

    op.create_table(
        "invoices",
        *_base_columns(),
        sa.Column("number", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("subscription_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("DRAFT", "SENT", "PAID", "OVERDUE", "CANCELLED", name="invoicestatus"),
            nullable=False,
        ),
        sa.Column("discount_code", sa.String(), nullable=True),
        sa.Column("due_date", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("period_key", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("period_key"),
    )
    _index("invoices", "id", "tenant_id", "subscription_id", "status")
    _index("invoices", "number", unique=True)

    op.create_table(
        "invoice_line_items",
        *_base_columns(),
        sa.Column("invoice_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("kind", sa.Enum("BASE_FEE", "USAGE", "PRORATION", name="lineitemkind"), nullable=False),
        sa.Column("pricing_rule_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("change_record_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(16, 4), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.ForeignKeyConstraint(["pricing_rule_id"], ["pricing_rules.id"]),
        sa.ForeignKeyConstraint(["change_record_id"], ["subscription_change_records.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("invoice_line_items", "id", "invoice_id", "change_record_id")

    op.create_table(
        "discount_codes",
        *_base_columns(),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("discount_type", sa.Enum("PERCENTAGE", "FIXED", name="discounttype"), nullable=False),
        sa.Column("value", sa.Numeric(14, 2), nullable=False),
        sa.Column("valid_from", sa.DateTime(), nullable=False),
        sa.Column("valid_until", sa.DateTime(), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("discount_codes", "id")
    _index("discount_codes", "code", unique=True)

    op.create_table(
        "usage_records",
        *_base_columns(),
        sa.Column("subscription_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column("complexity", sa.String(length=20), nullable=True),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column(
            "billing_status",
            sa.Enum("UNBILLED", "BILLED", "INVOICED", name="usagebillingstatus"),
            nullable=False,
        ),
        sa.Column("invoice_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["billable_entities.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("usage_records", "id", "subscription_id", "entity_id", "recorded_at", "billing_status", "invoice_id")

    op.create_table(
        "usage_aggregates",
        *_base_columns(),
        sa.Column("subscription_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["billable_entities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "entity_id", "period_start", name="uq_usage_aggregate_period"),
    )
    _index("usage_aggregates", "id", "subscription_id", "entity_id")

    op.create_table(
        "usage_alerts",
        *_base_columns(),
        sa.Column("subscription_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("alert_type", sa.Enum("SOFT_LIMIT", "HARD_LIMIT", name="alerttype"), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("current_usage", sa.Integer(), nullable=False),
        sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("open_key", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["billable_entities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("open_key"),
    )
    _index("usage_alerts", "id", "subscription_id", "entity_id", "is_resolved")


def downgrade() -> None:
    for table in (
        "usage_alerts",
        "usage_aggregates",
        "usage_records",
        "discount_codes",
        "invoice_line_items",
        "invoices",
        "subscription_change_records",
        "subscriptions",
    ):
        op.drop_table(table)
    if op.get_bind().dialect.name == "postgresql":
        for name in ENUM_NAMES:
            sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
