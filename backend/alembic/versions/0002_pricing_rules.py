"""pricing rules, tiers and complexity multipliers

Revision ID: 0002_pricing_rules
Revises: 0001_initial
Create Date: 2026-03-09
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_pricing_rules"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pricing_rules",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("plan_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column(
            "rule_type",
            sa.Enum("FLAT", "PER_UNIT", "TIERED", "MULTIPLIER", "PERCENTAGE", "BUNDLE", name="pricingruletype"),
            nullable=False,
        ),
        sa.Column("configuration", sa.JSON(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["billable_entities.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pricing_rules_id", "pricing_rules", ["id"], unique=False)
    op.create_index("ix_pricing_rules_plan_id", "pricing_rules", ["plan_id"], unique=False)
    op.create_index("ix_pricing_rules_entity_id", "pricing_rules", ["entity_id"], unique=False)

    op.create_table(
        "pricing_tiers",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("rule_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("min_units", sa.Integer(), nullable=False),
        sa.Column("max_units", sa.Integer(), nullable=True),
        sa.Column("unit_price", sa.Numeric(16, 4), nullable=False),
        sa.ForeignKeyConstraint(["rule_id"], ["pricing_rules.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pricing_tiers_id", "pricing_tiers", ["id"], unique=False)
    op.create_index("ix_pricing_tiers_rule_id", "pricing_tiers", ["rule_id"], unique=False)

    op.create_table(
        "complexity_multipliers",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("rule_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("complexity_level", sa.String(length=20), nullable=False),
        sa.Column("multiplier", sa.Numeric(10, 4), nullable=False),
        sa.ForeignKeyConstraint(["rule_id"], ["pricing_rules.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_complexity_multipliers_id", "complexity_multipliers", ["id"], unique=False)
    op.create_index("ix_complexity_multipliers_rule_id", "complexity_multipliers", ["rule_id"], unique=False)


def downgrade() -> None:
    op.drop_table("complexity_multipliers")
    op.drop_table("pricing_tiers")
    op.drop_table("pricing_rules")
    if op.get_bind().dialect.name == "postgresql":
        sa.Enum(name="pricingruletype").drop(op.get_bind(), checkfirst=True)
