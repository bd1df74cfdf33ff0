"""
EstateFlow
Stage pipeline persistence models.

Models:
    - Pipeline:       one acquisition or disposal pipeline (aggregate root row)
    - PipelineStage:  per-stage state, one row per registry stage

Architecture:
    Pipeline ──1:N──▶ PipelineStage   (ordered by position)

The engine never touches these classes directly; the SQL pipeline store maps
them to and from ``PipelineRecord`` values. ``revision`` is the optimistic
concurrency counter and is wired as SQLAlchemy's version column, so a stale
UPDATE from another session raises StaleDataError.
"""

from datetime import datetime, timezone

from estateflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PIPELINE_DIRECTIONS = {"ACQUISITION", "DISPOSAL"}

PIPELINE_STATUSES = {"NOT_STARTED", "IN_PROGRESS", "COMPLETED", "CANCELLED"}

STAGE_STATUSES = {"NOT_STARTED", "IN_PROGRESS", "COMPLETED"}


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Pipeline
# ═════════════════════════════════════════════════════════════════════════════


class Pipeline(db.Model):
    """
    Acquisition (purchase) or disposal (handover / sale) pipeline.
    Derived columns (progress, status, current stage, financial figures) are
    written by the engine and only read by reporting layers.
    """

    __tablename__ = "pipelines"

    id = db.Column(db.String(36), primary_key=True)
    direction = db.Column(db.String(20), nullable=False, index=True)
    asset_reference = db.Column(
        db.String(120), nullable=False, index=True,
        comment="Opaque link to the property / unit being tracked",
    )
    counterparty_info = db.Column(
        db.JSON, default=dict,
        comment="Seller (acquisition) or buyer (disposal) contact fields",
    )

    # Financial inputs
    asking_amount = db.Column(db.Numeric(15, 2), nullable=True)
    negotiated_amount = db.Column(db.Numeric(15, 2), nullable=True)
    deposit_amount = db.Column(db.Numeric(15, 2), nullable=True)
    total_cost = db.Column(db.Numeric(15, 2), nullable=True)

    # Financial derived
    expected_profit = db.Column(db.Numeric(15, 2), nullable=True)
    roi_percentage = db.Column(db.Numeric(9, 2), nullable=True)
    balance_outstanding = db.Column(db.Numeric(15, 2), nullable=True)

    # Financial ledger
    cost_entries = db.Column(
        db.JSON, default=list,
        comment="Itemised costs; total_cost is their sum when present",
    )
    payment_receipts = db.Column(
        db.JSON, default=list,
        comment="Numbered payments; deposit_amount is their sum when present",
    )

    # Progress
    current_stage_id = db.Column(db.String(60), nullable=True)
    overall_status = db.Column(db.String(20), nullable=False, default="NOT_STARTED", index=True)
    overall_progress = db.Column(db.Integer, nullable=False, default=0)

    # Lifecycle
    revision = db.Column(db.Integer, nullable=False, default=1)
    is_archived = db.Column(db.Boolean, nullable=False, default=False)
    cancel_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    target_completion_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "direction IN ('ACQUISITION','DISPOSAL')",
            name="ck_pipeline_direction",
        ),
        db.CheckConstraint(
            "overall_status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED','CANCELLED')",
            name="ck_pipeline_overall_status",
        ),
        db.CheckConstraint(
            "overall_progress BETWEEN 0 AND 100",
            name="ck_pipeline_overall_progress",
        ),
        db.Index("ix_pipelines_direction_status", "direction", "overall_status"),
    )

    __mapper_args__ = {
        "version_id_col": revision,
        "version_id_generator": False,
    }

    stages = db.relationship(
        "PipelineStage", backref="pipeline", lazy="selectin",
        cascade="all, delete-orphan", order_by="PipelineStage.position",
    )

    def __repr__(self):
        return f"<Pipeline {self.id}: {self.direction} {self.asset_reference} [{self.overall_status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. PipelineStage
# ═════════════════════════════════════════════════════════════════════════════


class PipelineStage(db.Model):
    """
    State of one registry stage within one pipeline.
    ``completed_at`` is non-null iff status = COMPLETED.
    """

    __tablename__ = "pipeline_stages"

    id = db.Column(db.Integer, primary_key=True)
    pipeline_id = db.Column(
        db.String(36), db.ForeignKey("pipelines.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_id = db.Column(db.String(60), nullable=False)
    position = db.Column(db.Integer, nullable=False, comment="Registry order (1..N)")
    status = db.Column(db.String(20), nullable=False, default="NOT_STARTED")
    notes = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    attached_document_types = db.Column(db.JSON, default=list)
    updated_by = db.Column(db.String(150), nullable=True, comment="Opaque actor id")

    __table_args__ = (
        db.UniqueConstraint("pipeline_id", "stage_id", name="uq_pipeline_stage"),
        db.CheckConstraint(
            "status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED')",
            name="ck_pipeline_stage_status",
        ),
    )

    def __repr__(self):
        return f"<PipelineStage {self.pipeline_id}/{self.stage_id} [{self.status}]>"
