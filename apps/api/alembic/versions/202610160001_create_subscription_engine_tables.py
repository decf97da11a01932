"""create subscription engine tables

Revision ID: 202610160001
Revises:
Create Date: 2026-10-16 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610160001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "subscription_plan",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("prices", sa.JSON(), nullable=False),
        sa.Column("billing_frequency", sa.String(length=32), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("duration_unit", sa.String(length=16), nullable=False),
        sa.Column("max_gyms", sa.Integer(), nullable=False),
        sa.Column("max_clients_per_gym", sa.Integer(), nullable=False),
        sa.Column("max_users_per_gym", sa.Integer(), nullable=False),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_subscription_plan_name"),
        sa.CheckConstraint("duration > 0", name="ck_subscription_plan_duration_positive"),
        sa.CheckConstraint("max_gyms >= 0", name="ck_subscription_plan_max_gyms_nonnegative"),
    )
    op.create_index("ix_subscription_plan_listing", "subscription_plan", ["is_active", "sort_order", "name"])

    op.create_table(
        "organization_subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_plan_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("subscription_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plan.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", name="uq_organization_subscription_org"),
    )
    op.create_index(
        "ix_organization_subscription_status_end",
        "organization_subscription",
        ["status", "subscription_end"],
    )

    op.create_table(
        "subscription_operation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("from_plan_id", sa.Uuid(), nullable=True),
        sa.Column("to_plan_id", sa.Uuid(), nullable=True),
        sa.Column("operation_type", sa.String(length=32), nullable=False),
        sa.Column("executed_by", sa.String(length=128), nullable=False),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("previous_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("new_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proration_amount", sa.Numeric(18, 6), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("plan_price", sa.Numeric(18, 6), nullable=True),
        sa.Column("billing_frequency_months", sa.Integer(), nullable=False),
        sa.Column("resulting_status", sa.String(length=32), nullable=False),
        sa.Column("subscription_version", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_operation_org_created",
        "subscription_operation",
        ["organization_id", "created_at"],
    )
    op.create_index(
        "ix_subscription_operation_type_effective",
        "subscription_operation",
        ["operation_type", "effective_date"],
    )

    op.create_table(
        "subscription_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_plan_id", sa.Uuid(), nullable=True),
        sa.Column("requested_by_user_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("operation_type", sa.String(length=32), nullable=False),
        sa.Column("requested_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("immediate", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("cancellation_reason", sa.String(length=64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("processed_by_user_id", sa.String(length=128), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_status", sa.String(length=32), nullable=False),
        sa.Column("operation_id", sa.Uuid(), nullable=True),
        sa.Column("scheduled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_request_status_created",
        "subscription_request",
        ["status", "created_at"],
    )
    op.create_index("ix_subscription_request_org", "subscription_request", ["organization_id"])

    op.create_table(
        "subscription_cancellation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("reason_description", sa.Text(), nullable=True),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refund_amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("retention_offered", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("retention_details", sa.Text(), nullable=True),
        sa.Column("immediate", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("processed_by_user_id", sa.String(length=128), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_cancellation_org_status",
        "subscription_cancellation",
        ["organization_id", "status"],
    )

    op.create_table(
        "subscription_scheduled_change",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("to_plan_id", sa.Uuid(), nullable=False),
        sa.Column("operation_type", sa.String(length=32), nullable=False),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["to_plan_id"], ["subscription_plan.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_scheduled_change_org_status",
        "subscription_scheduled_change",
        ["organization_id", "status"],
    )

    op.create_table(
        "subscription_payment_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("external_event_id", sa.String(length=255), nullable=False),
        sa.Column("external_reference", sa.String(length=128), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("applied_action", sa.String(length=64), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_event_id", name="uq_subscription_payment_event_external_id"),
    )


def downgrade() -> None:
    op.drop_table("subscription_payment_event")
    op.drop_index("ix_subscription_scheduled_change_org_status", table_name="subscription_scheduled_change")
    op.drop_table("subscription_scheduled_change")
    op.drop_index("ix_subscription_cancellation_org_status", table_name="subscription_cancellation")
    op.drop_table("subscription_cancellation")
    op.drop_index("ix_subscription_request_org", table_name="subscription_request")
    op.drop_index("ix_subscription_request_status_created", table_name="subscription_request")
    op.drop_table("subscription_request")
    op.drop_index("ix_subscription_operation_type_effective", table_name="subscription_operation")
    op.drop_index("ix_subscription_operation_org_created", table_name="subscription_operation")
    op.drop_table("subscription_operation")
    op.drop_index("ix_organization_subscription_status_end", table_name="organization_subscription")
    op.drop_table("organization_subscription")
    op.drop_index("ix_subscription_plan_listing", table_name="subscription_plan")
    op.drop_table("subscription_plan")
