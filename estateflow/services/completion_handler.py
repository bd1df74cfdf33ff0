"""
Completion / Transfer Handler.

Performs the one-time promotion of a pipeline that has just reached
COMPLETED:

    ACQUISITION  → the property becomes a live, ACTIVE asset
    DISPOSAL     → the property is marked SOLD / handed over

The pipeline service calls ``on_completed`` only on the edge into
COMPLETED, inside the same unit of work as the pipeline write. Any gateway
failure surfaces as PromotionFailedError so the unit of work rolls the
completing transition back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from estateflow.core.exceptions import PromotionFailedError
from estateflow.services.pipeline_record import OverallStatus, PipelineRecord
from estateflow.services.stage_registry import Direction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromotionResult:
    pipeline_id: str
    direction: Direction
    asset_reference: str
    action: str
    completed_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "pipeline_id": self.pipeline_id,
            "direction": self.direction.value,
            "asset_reference": self.asset_reference,
            "action": self.action,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class CompletionHandler:
    """Dispatches promotion to the property gateway by direction."""

    def __init__(self, gateway):
        self.gateway = gateway

    def on_completed(self, record: PipelineRecord) -> PromotionResult:
        if record.overall_status != OverallStatus.COMPLETED:
            raise PromotionFailedError(record.id, f"pipeline is {record.overall_status.value}, not COMPLETED")

        try:
            if record.direction == Direction.ACQUISITION:
                reference = self.gateway.activate_acquired(record)
                action = "property.activate"
            else:
                reference = self.gateway.mark_transferred(record)
                action = "property.transfer"
        except PromotionFailedError:
            raise
        except Exception as exc:
            logger.exception(
                "Promotion failed for pipeline %s", record.id,
                extra={"pipeline_id": record.id, "direction": record.direction.value},
            )
            raise PromotionFailedError(record.id, str(exc) or type(exc).__name__) from exc

        return PromotionResult(
            pipeline_id=record.id,
            direction=record.direction,
            asset_reference=reference or record.asset_reference,
            action=action,
            completed_at=record.completed_at,
        )
