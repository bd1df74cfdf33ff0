"""initial_pipeline_schema

Creates the stage pipeline tables:
  - pipelines         — acquisition / disposal pipeline (revision = version column)
  - pipeline_stages   — per-stage state, one row per registry stage
  - properties        — live properties (promotion target)
  - audit_logs        — append-only lifecycle audit trail
  - notifications     — in-app notifications

Tables created conditionally (IF NOT EXISTS semantics) so databases that
already received them via db.create_all() upgrade cleanly.

Revision ID: 5e1f0a7c2b10
Revises:
Create Date: 2026-10-18 09:12:44.120311
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1f0a7c2b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Pipelines ─────────────────────────────────────────────────────────
    if "pipelines" not in existing:
        op.create_table(
            "pipelines",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("direction", sa.String(length=20), nullable=False),
            sa.Column("asset_reference", sa.String(length=120), nullable=False,
                      comment="Opaque link to the property / unit being tracked"),
            sa.Column("counterparty_info", sa.JSON(), nullable=True,
                      comment="Seller (acquisition) or buyer (disposal) contact fields"),
            sa.Column("asking_amount", sa.Numeric(15, 2), nullable=True),
            sa.Column("negotiated_amount", sa.Numeric(15, 2), nullable=True),
            sa.Column("deposit_amount", sa.Numeric(15, 2), nullable=True),
            sa.Column("total_cost", sa.Numeric(15, 2), nullable=True),
            sa.Column("expected_profit", sa.Numeric(15, 2), nullable=True),
            sa.Column("roi_percentage", sa.Numeric(9, 2), nullable=True),
            sa.Column("balance_outstanding", sa.Numeric(15, 2), nullable=True),
            sa.Column("cost_entries", sa.JSON(), nullable=True,
                      comment="Itemised costs; total_cost is their sum when present"),
            sa.Column("payment_receipts", sa.JSON(), nullable=True,
                      comment="Numbered payments; deposit_amount is their sum when present"),
            sa.Column("current_stage_id", sa.String(length=60), nullable=True),
            sa.Column("overall_status", sa.String(length=20), nullable=False,
                      server_default="NOT_STARTED"),
            sa.Column("overall_progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("cancel_reason", sa.Text(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("target_completion_date", sa.Date(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("direction IN ('ACQUISITION','DISPOSAL')", name="ck_pipeline_direction"),
            sa.CheckConstraint(
                "overall_status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED','CANCELLED')",
                name="ck_pipeline_overall_status",
            ),
            sa.CheckConstraint("overall_progress BETWEEN 0 AND 100", name="ck_pipeline_overall_progress"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_pipelines_direction", "pipelines", ["direction"])
        op.create_index("ix_pipelines_asset_reference", "pipelines", ["asset_reference"])
        op.create_index("ix_pipelines_overall_status", "pipelines", ["overall_status"])
        op.create_index("ix_pipelines_direction_status", "pipelines", ["direction", "overall_status"])

    # ── Pipeline stages ───────────────────────────────────────────────────
    if "pipeline_stages" not in existing:
        op.create_table(
            "pipeline_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("pipeline_id", sa.String(length=36), nullable=False),
            sa.Column("stage_id", sa.String(length=60), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False, comment="Registry order (1..N)"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="NOT_STARTED"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("attached_document_types", sa.JSON(), nullable=True),
            sa.Column("updated_by", sa.String(length=150), nullable=True, comment="Opaque actor id"),
            sa.CheckConstraint(
                "status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED')",
                name="ck_pipeline_stage_status",
            ),
            sa.ForeignKeyConstraint(["pipeline_id"], ["pipelines.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("pipeline_id", "stage_id", name="uq_pipeline_stage"),
        )
        op.create_index("ix_pipeline_stages_pipeline_id", "pipeline_stages", ["pipeline_id"])

    # ── Properties ────────────────────────────────────────────────────────
    if "properties" not in existing:
        op.create_table(
            "properties",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("reference", sa.String(length=120), nullable=False,
                      comment="Asset reference shared with pipelines"),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("physical_address", sa.String(length=300), nullable=True),
            sa.Column("property_type", sa.String(length=30), nullable=True),
            sa.Column("lifecycle_status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
            sa.Column("property_source", sa.String(length=30), nullable=False,
                      server_default="DIRECT_ADDITION"),
            sa.Column("source_reference_id", sa.String(length=36), nullable=True,
                      comment="Acquisition pipeline that created this property"),
            sa.Column("purchase_completion_date", sa.Date(), nullable=True),
            sa.Column("purchase_price", sa.Numeric(15, 2), nullable=True),
            sa.Column("handover_status", sa.String(length=20), nullable=False,
                      server_default="NOT_STARTED"),
            sa.Column("handover_date", sa.Date(), nullable=True),
            sa.Column("sale_price", sa.Numeric(15, 2), nullable=True),
            sa.Column("buyer_name", sa.String(length=200), nullable=True),
            sa.Column("disposal_reference_id", sa.String(length=36), nullable=True,
                      comment="Disposal pipeline that transferred this property"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "lifecycle_status IN ('PIPELINE','ACTIVE','SOLD')",
                name="ck_property_lifecycle_status",
            ),
            sa.CheckConstraint(
                "handover_status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED')",
                name="ck_property_handover_status",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("reference"),
        )

    # ── Audit logs ────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    # ── Notifications ─────────────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])


def downgrade():
    op.drop_index("ix_notifications_recipient", table_name="notifications")
    op.drop_table("notifications")
    for name in ("idx_audit_ts", "idx_audit_action", "idx_audit_actor", "idx_audit_entity"):
        op.drop_index(name, table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("properties")
    op.drop_index("ix_pipeline_stages_pipeline_id", table_name="pipeline_stages")
    op.drop_table("pipeline_stages")
    for name in ("ix_pipelines_direction_status", "ix_pipelines_overall_status",
                 "ix_pipelines_asset_reference", "ix_pipelines_direction"):
        op.drop_index(name, table_name="pipelines")
    op.drop_table("pipelines")
