"""
Document Requirement Tracker.

Bookkeeping only: which document *types* are attached to which stage, and
whether a stage's required types are all present. File bytes live in the
document storage service; ``attach_document`` assumes the upload already
succeeded there.

This module never blocks a completion itself. The transition engine calls
``missing_document_types`` through its completion policy, so the rule
"documents are mandatory for completion" can be swapped without touching
the bookkeeping here.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from estateflow.core.exceptions import ValidationError
from estateflow.services.pipeline_record import PipelineRecord, StageState
from estateflow.services.stage_registry import StageDefinition, StageRegistry, default_registry

logger = logging.getLogger(__name__)


def is_stage_satisfied(definition: StageDefinition, state: StageState) -> bool:
    """True iff every required document type is attached."""
    return definition.required_document_types <= state.attached_document_types


def missing_document_types(definition: StageDefinition, state: StageState) -> list[str]:
    return sorted(definition.required_document_types - state.attached_document_types)


def _normalise_type(document_type: str) -> str:
    value = (document_type or "").strip()
    if not value:
        raise ValidationError("document_type is required", details={"document_type": "required"})
    return value


def _replace_stage(record: PipelineRecord, new_state: StageState) -> PipelineRecord:
    stages = tuple(new_state if s.stage_id == new_state.stage_id else s for s in record.stages)
    return replace(record, stages=stages)


def attach_document(
    record: PipelineRecord,
    stage_id: str,
    document_type: str,
    *,
    registry: StageRegistry = default_registry,
) -> PipelineRecord:
    """Add a document type to a stage. Idempotent: returns the same record if already attached."""
    registry.get_stage(record.direction, stage_id)
    document_type = _normalise_type(document_type)
    state = record.stage(stage_id)
    if document_type in state.attached_document_types:
        return record
    logger.debug("Attaching %s to stage %s of pipeline %s", document_type, stage_id, record.id)
    new_state = replace(state, attached_document_types=state.attached_document_types | {document_type})
    return _replace_stage(record, new_state)


def detach_document(
    record: PipelineRecord,
    stage_id: str,
    document_type: str,
    *,
    registry: StageRegistry = default_registry,
) -> PipelineRecord:
    """Remove a document type from a stage. Idempotent."""
    registry.get_stage(record.direction, stage_id)
    document_type = _normalise_type(document_type)
    state = record.stage(stage_id)
    if document_type not in state.attached_document_types:
        return record
    new_state = replace(state, attached_document_types=state.attached_document_types - {document_type})
    return _replace_stage(record, new_state)


def stage_document_report(
    record: PipelineRecord,
    *,
    registry: StageRegistry = default_registry,
) -> list[dict]:
    """Per-stage completeness, in stage order."""
    report = []
    for definition in registry.stages_for(record.direction):
        state = record.stage(definition.id)
        report.append({
            "stage_id": definition.id,
            "order": definition.order,
            "name": definition.name,
            "required": sorted(definition.required_document_types),
            "attached": sorted(state.attached_document_types),
            "missing": missing_document_types(definition, state),
            "satisfied": is_stage_satisfied(definition, state),
        })
    return report
