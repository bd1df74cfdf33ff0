"""
EstateFlow
Live property model — the promotion target of completed pipelines.

Lifecycle:
    lifecycle_status:  PIPELINE → ACTIVE → SOLD
    handover_status:   NOT_STARTED → IN_PROGRESS → COMPLETED

A completed ACQUISITION pipeline creates (or activates) the property with
property_source = PURCHASE_PIPELINE. A completed DISPOSAL pipeline marks it
SOLD and records the buyer, sale price and handover date.
"""

from datetime import datetime, timezone

from estateflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

LIFECYCLE_STATUSES = {"PIPELINE", "ACTIVE", "SOLD"}

PROPERTY_SOURCES = {"DIRECT_ADDITION", "PURCHASE_PIPELINE"}

HANDOVER_STATUSES = {"NOT_STARTED", "IN_PROGRESS", "COMPLETED"}


class Property(db.Model):
    """Operationally managed property (rentals, tenants and payments hang off it)."""

    __tablename__ = "properties"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(
        db.String(120), unique=True, nullable=False,
        comment="Asset reference shared with pipelines",
    )
    name = db.Column(db.String(200), nullable=False)
    physical_address = db.Column(db.String(300), default="")
    property_type = db.Column(db.String(30), default="HOME")

    lifecycle_status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    property_source = db.Column(db.String(30), nullable=False, default="DIRECT_ADDITION")
    source_reference_id = db.Column(
        db.String(36), nullable=True,
        comment="Acquisition pipeline that created this property",
    )
    purchase_completion_date = db.Column(db.Date, nullable=True)
    purchase_price = db.Column(db.Numeric(15, 2), nullable=True)

    handover_status = db.Column(db.String(20), nullable=False, default="NOT_STARTED")
    handover_date = db.Column(db.Date, nullable=True)
    sale_price = db.Column(db.Numeric(15, 2), nullable=True)
    buyer_name = db.Column(db.String(200), nullable=True)
    disposal_reference_id = db.Column(
        db.String(36), nullable=True,
        comment="Disposal pipeline that transferred this property",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "lifecycle_status IN ('PIPELINE','ACTIVE','SOLD')",
            name="ck_property_lifecycle_status",
        ),
        db.CheckConstraint(
            "handover_status IN ('NOT_STARTED','IN_PROGRESS','COMPLETED')",
            name="ck_property_handover_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "reference": self.reference,
            "name": self.name,
            "physical_address": self.physical_address,
            "property_type": self.property_type,
            "lifecycle_status": self.lifecycle_status,
            "property_source": self.property_source,
            "source_reference_id": self.source_reference_id,
            "purchase_completion_date": (
                self.purchase_completion_date.isoformat() if self.purchase_completion_date else None
            ),
            "purchase_price": str(self.purchase_price) if self.purchase_price is not None else None,
            "handover_status": self.handover_status,
            "handover_date": self.handover_date.isoformat() if self.handover_date else None,
            "sale_price": str(self.sale_price) if self.sale_price is not None else None,
            "buyer_name": self.buyer_name,
            "disposal_reference_id": self.disposal_reference_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Property {self.id}: {self.reference} [{self.lifecycle_status}]>"
