"""tenants and plan catalogue

Revision ID: 0001_initial
Revises:
Create Date: 2026-03-02
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        *_timestamps(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenants_id", "tenants", ["id"], unique=False)
    op.create_index("ix_tenants_name", "tenants", ["name"], unique=False)
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "subscription_plans",
        *_timestamps(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("price_monthly", sa.Numeric(14, 2), nullable=False),
        sa.Column("price_quarterly", sa.Numeric(14, 2), nullable=True),
        sa.Column("price_yearly", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "billing_cycle",
            sa.Enum("MONTHLY", "QUARTERLY", "YEARLY", name="billingcycle"),
            nullable=False,
        ),
        sa.Column("trial_days", sa.Integer(), nullable=True),
        sa.Column("max_users", sa.Integer(), nullable=True),
        sa.Column("max_entities", sa.Integer(), nullable=True),
        sa.Column("storage_quota_gb", sa.Numeric(10, 2), nullable=True),
        sa.Column("tier_rank", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_plans_id", "subscription_plans", ["id"], unique=False)
    op.create_index("ix_subscription_plans_code", "subscription_plans", ["code"], unique=True)
    op.create_index("ix_subscription_plans_tier_rank", "subscription_plans", ["tier_rank"], unique=False)

    op.create_table(
        "billable_entities",
        *_timestamps(),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("module", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billable_entities_id", "billable_entities", ["id"], unique=False)
    op.create_index("ix_billable_entities_code", "billable_entities", ["code"], unique=True)
    op.create_index("ix_billable_entities_module", "billable_entities", ["module"], unique=False)

    op.create_table(
        "plan_entity_limits",
        *_timestamps(),
        sa.Column("plan_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("soft_limit", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["billable_entities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plan_id", "entity_id", name="uq_plan_entity_limit"),
    )
    op.create_index("ix_plan_entity_limits_id", "plan_entity_limits", ["id"], unique=False)
    op.create_index("ix_plan_entity_limits_plan_id", "plan_entity_limits", ["plan_id"], unique=False)
    op.create_index("ix_plan_entity_limits_entity_id", "plan_entity_limits", ["entity_id"], unique=False)


def downgrade() -> None:
    op.drop_table("plan_entity_limits")
    op.drop_table("billable_entities")
    op.drop_table("subscription_plans")
    op.drop_table("tenants")
    if op.get_bind().dialect.name == "postgresql":
        sa.Enum(name="billingcycle").drop(op.get_bind(), checkfirst=True)
