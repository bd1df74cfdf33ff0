"""
Property gateway — the live-asset side of pipeline promotion.

The completion handler only talks to a gateway:

    lifecycle_status(reference) current lifecycle, None when unknown
    activate_acquired(record)   ACQUISITION completed → property ACTIVE
    mark_transferred(record)    DISPOSAL completed    → property SOLD

A property is sold at most once: transferring a SOLD property is rejected.

SqlPropertyGateway writes Property rows in the caller's session (flush only)
so the promotion commits or rolls back together with the pipeline write.
"""

from __future__ import annotations

import logging
from datetime import date

from estateflow.core.exceptions import NotFoundError, ValidationError
from estateflow.models import db
from estateflow.models.audit import write_audit
from estateflow.models.property import Property
from estateflow.services.pipeline_record import PipelineRecord

logger = logging.getLogger(__name__)


def _completion_date(record: PipelineRecord) -> date | None:
    return record.completed_at.date() if record.completed_at else None


def _display_name(record: PipelineRecord) -> str:
    info = record.counterparty_info or {}
    return info.get("property_name") or record.asset_reference


def _buyer_name(record: PipelineRecord) -> str | None:
    info = record.counterparty_info or {}
    return info.get("name") or info.get("buyer_name")


def _reject_sold(reference: str, status: str | None) -> None:
    if status == "SOLD":
        raise ValidationError(
            f"Property {reference} is already sold",
            details={"lifecycle_status": status},
        )


class SqlPropertyGateway:
    """Property rows via Flask-SQLAlchemy."""

    def lifecycle_status(self, reference: str) -> str | None:
        prop = Property.query.filter_by(reference=reference).first()
        return prop.lifecycle_status if prop else None

    def activate_acquired(self, record: PipelineRecord) -> str:
        prop = Property.query.filter_by(reference=record.asset_reference).first()
        if prop is None:
            prop = Property(reference=record.asset_reference, name=_display_name(record))
            db.session.add(prop)
        else:
            _reject_sold(prop.reference, prop.lifecycle_status)
        prop.lifecycle_status = "ACTIVE"
        prop.property_source = "PURCHASE_PIPELINE"
        prop.source_reference_id = record.id
        prop.purchase_completion_date = _completion_date(record)
        prop.purchase_price = record.financial.negotiated_amount
        db.session.flush()
        write_audit(
            entity_type="property", entity_id=prop.id, action="property.activate",
            diff={"lifecycle_status": "ACTIVE", "source_reference_id": record.id},
        )
        logger.info(
            "Property %s activated from acquisition pipeline %s",
            prop.reference, record.id, extra={"pipeline_id": record.id},
        )
        return prop.reference

    def mark_transferred(self, record: PipelineRecord) -> str:
        prop = Property.query.filter_by(reference=record.asset_reference).first()
        if prop is None:
            raise NotFoundError(resource="Property", resource_id=record.asset_reference)
        _reject_sold(prop.reference, prop.lifecycle_status)
        prop.lifecycle_status = "SOLD"
        prop.handover_status = "COMPLETED"
        prop.handover_date = _completion_date(record)
        prop.sale_price = record.financial.negotiated_amount
        prop.buyer_name = _buyer_name(record)
        prop.disposal_reference_id = record.id
        db.session.flush()
        write_audit(
            entity_type="property", entity_id=prop.id, action="property.transfer",
            diff={"lifecycle_status": "SOLD", "disposal_reference_id": record.id},
        )
        logger.info(
            "Property %s transferred by disposal pipeline %s",
            prop.reference, record.id, extra={"pipeline_id": record.id},
        )
        return prop.reference

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_property(property_id):
        prop = db.session.get(Property, property_id)
        if prop is None:
            raise NotFoundError(resource="Property", resource_id=property_id)
        return prop


class InMemoryPropertyGateway:
    """Dict-backed gateway: ``properties[reference] -> dict``."""

    def __init__(self, properties: dict | None = None):
        self.properties: dict[str, dict] = dict(properties or {})

    def lifecycle_status(self, reference: str) -> str | None:
        prop = self.properties.get(reference)
        if prop is None:
            return None
        return prop.get("lifecycle_status", "ACTIVE")

    def activate_acquired(self, record: PipelineRecord) -> str:
        prop = self.properties.setdefault(record.asset_reference, {"reference": record.asset_reference})
        _reject_sold(record.asset_reference, prop.get("lifecycle_status"))
        prop.update(
            lifecycle_status="ACTIVE",
            property_source="PURCHASE_PIPELINE",
            source_reference_id=record.id,
            purchase_completion_date=_completion_date(record),
            purchase_price=record.financial.negotiated_amount,
        )
        return record.asset_reference

    def mark_transferred(self, record: PipelineRecord) -> str:
        prop = self.properties.get(record.asset_reference)
        if prop is None:
            raise NotFoundError(resource="Property", resource_id=record.asset_reference)
        _reject_sold(record.asset_reference, prop.get("lifecycle_status"))
        prop.update(
            lifecycle_status="SOLD",
            handover_status="COMPLETED",
            handover_date=_completion_date(record),
            sale_price=record.financial.negotiated_amount,
            buyer_name=_buyer_name(record),
            disposal_reference_id=record.id,
        )
        return record.asset_reference
