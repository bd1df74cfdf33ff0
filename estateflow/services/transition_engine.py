"""
Stage Transition Engine — the pipeline state machine.

Per-stage lifecycle:
    NOT_STARTED → IN_PROGRESS → COMPLETED
    COMPLETED   → IN_PROGRESS        (reopen for corrections)
    IN_PROGRESS → NOT_STARTED        (abandon progress)
    NOT_STARTED → COMPLETED          (only for stages without required documents)

Guards, in evaluation order:
    1. record is neither CANCELLED nor archived         → PipelineClosedError
    2. stage id belongs to the record's direction        → UnknownStageError
    3. edge exists in STAGE_TRANSITIONS                  → InvalidTransitionError
    4. lower-order stages completed (unless the
       direction allows out-of-order work)               → StagePrerequisiteError
    5. completion policy satisfied (default: documents)  → DocumentsIncompleteError
    6. NOT_STARTED → COMPLETED only when the stage has
       no required documents                             → InvalidTransitionError

Derived after every successful mutation:
    current_stage_id  lowest-order stage not COMPLETED (None when all are)
    overall_progress  round(100 × completed / total), half-up
    overall_status    NOT_STARTED | IN_PROGRESS | COMPLETED

Every function here is pure: it takes a PipelineRecord and returns a new one.
Persistence, revisions and promotion are the pipeline service's job.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from estateflow.core.exceptions import (
    DocumentsIncompleteError,
    InvalidTransitionError,
    PipelineClosedError,
    StagePrerequisiteError,
    ValidationError,
)
from estateflow.services import document_tracker, financial_calculator
from estateflow.services.pipeline_record import (
    FinancialSnapshot,
    OverallStatus,
    PipelineRecord,
    StageState,
    StageStatus,
)
from estateflow.services.stage_registry import (
    Direction,
    StageDefinition,
    StageRegistry,
    coerce_direction,
    default_registry,
)

logger = logging.getLogger(__name__)

CompletionPolicy = Callable[[StageDefinition, StageState], list[str]]


STAGE_TRANSITIONS = {
    StageStatus.NOT_STARTED: [StageStatus.IN_PROGRESS, StageStatus.COMPLETED],
    StageStatus.IN_PROGRESS: [StageStatus.COMPLETED, StageStatus.NOT_STARTED],
    StageStatus.COMPLETED:   [StageStatus.IN_PROGRESS],
}


def validate_stage_transition(old_status, new_status) -> bool:
    """Return True if the per-stage status edge exists."""
    return new_status in STAGE_TRANSITIONS.get(old_status, [])


# ── Completion policies ──────────────────────────────────────────────────────


def documents_required_policy(definition: StageDefinition, state: StageState) -> list[str]:
    """Default policy: every required document type must be attached."""
    return document_tracker.missing_document_types(definition, state)


def no_documents_policy(definition: StageDefinition, state: StageState) -> list[str]:
    """Permissive policy: completion never waits for documents."""
    return []


# ── Helpers ──────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_stage_status(value: StageStatus | str) -> StageStatus:
    if isinstance(value, StageStatus):
        return value
    try:
        return StageStatus(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown stage status: {value!r}",
            details={"status": f"must be one of {[s.value for s in StageStatus]}"},
        ) from None


def compute_progress(completed: int, total: int) -> int:
    """round(100 × completed / total), rounding halves up."""
    if total <= 0:
        return 0
    value = Decimal(100 * completed) / Decimal(total)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def as_mapping(value, field_name: str) -> dict:
    """None → {}; anything other than a JSON object is rejected."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(
            f"{field_name} must be an object",
            details={field_name: f"expected an object, got {type(value).__name__}"},
        )
    return value


def _ensure_open(record: PipelineRecord, action: str) -> None:
    if record.overall_status == OverallStatus.CANCELLED or record.is_archived:
        raise PipelineClosedError(record.id, record.overall_status.value, action)


def _first_blocking_stage(
    record: PipelineRecord,
    definition: StageDefinition,
    registry: StageRegistry,
) -> StageDefinition | None:
    for prior in registry.stages_for(record.direction):
        if prior.order >= definition.order:
            break
        if record.stage(prior.id).status != StageStatus.COMPLETED:
            return prior
    return None


def derive(record: PipelineRecord, registry: StageRegistry = default_registry) -> PipelineRecord:
    """Recompute current stage, progress and overall status from stage states.

    A CANCELLED record keeps its status; only ``reinstate`` lifts it.
    """
    by_id = {s.stage_id: s for s in record.stages}
    definitions = registry.stages_for(record.direction)

    current_stage_id = None
    for definition in definitions:
        if by_id[definition.id].status != StageStatus.COMPLETED:
            current_stage_id = definition.id
            break

    total = len(definitions)
    completed = record.completed_stage_count()

    if record.overall_status == OverallStatus.CANCELLED:
        status = OverallStatus.CANCELLED
    elif completed == total:
        status = OverallStatus.COMPLETED
    elif all(s.status == StageStatus.NOT_STARTED for s in record.stages):
        status = OverallStatus.NOT_STARTED
    else:
        status = OverallStatus.IN_PROGRESS

    return replace(
        record,
        current_stage_id=current_stage_id,
        overall_progress=compute_progress(completed, total),
        overall_status=status,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Operations
# ═════════════════════════════════════════════════════════════════════════════


def create_record(
    direction: Direction | str,
    asset_reference: str,
    *,
    counterparty_info: dict[str, Any] | None = None,
    financial: dict[str, Any] | None = None,
    target_completion_date: date | None = None,
    pipeline_id: str | None = None,
    now: datetime | None = None,
    registry: StageRegistry = default_registry,
) -> PipelineRecord:
    """Initialise a new record with one NOT_STARTED state per registry stage."""
    direction = coerce_direction(direction)
    asset_reference = (asset_reference or "").strip()
    if not asset_reference:
        raise ValidationError("asset_reference is required", details={"asset_reference": "required"})
    now = now or _utcnow()

    financial = as_mapping(financial, "financial")
    counterparty_info = as_mapping(counterparty_info, "counterparty_info")

    stages = tuple(StageState(stage_id=d.id) for d in registry.stages_for(direction))
    snapshot = financial_calculator.apply_inputs(FinancialSnapshot(), direction, **financial)

    record = PipelineRecord(
        id=pipeline_id or str(uuid.uuid4()),
        direction=direction,
        asset_reference=asset_reference,
        stages=stages,
        financial=snapshot,
        counterparty_info=dict(counterparty_info),
        target_completion_date=target_completion_date,
        created_at=now,
        updated_at=now,
    )
    return derive(record, registry)


def request_transition(
    record: PipelineRecord,
    stage_id: str,
    new_status: StageStatus | str,
    notes: str | None = None,
    *,
    actor: str | None = None,
    now: datetime | None = None,
    registry: StageRegistry = default_registry,
    completion_policy: CompletionPolicy | None = None,
) -> PipelineRecord:
    """Validate and apply one per-stage status change. Returns a new record."""
    _ensure_open(record, "transition")
    definition = registry.get_stage(record.direction, stage_id)
    new_status = coerce_stage_status(new_status)
    state = record.stage(stage_id)
    old_status = state.status

    if not validate_stage_transition(old_status, new_status):
        raise InvalidTransitionError(stage_id, old_status.value, new_status.value)

    if new_status in (StageStatus.IN_PROGRESS, StageStatus.COMPLETED):
        if not registry.allows_out_of_order(record.direction):
            blocking = _first_blocking_stage(record, definition, registry)
            if blocking is not None:
                raise StagePrerequisiteError(stage_id, blocking.id)

    if new_status == StageStatus.COMPLETED:
        policy = completion_policy or documents_required_policy
        missing = policy(definition, state)
        if missing:
            raise DocumentsIncompleteError(stage_id, missing)

        if old_status == StageStatus.NOT_STARTED and definition.required_document_types:
            raise InvalidTransitionError(
                stage_id, old_status.value, new_status.value,
                reason="stage has required documents; move it to IN_PROGRESS first",
            )

    now = now or _utcnow()
    if new_status == StageStatus.NOT_STARTED:
        started_at, completed_at = None, None
    elif new_status == StageStatus.IN_PROGRESS:
        started_at, completed_at = state.started_at or now, None
    else:
        started_at, completed_at = state.started_at or now, now

    new_state = replace(
        state,
        status=new_status,
        notes=notes if notes is not None else state.notes,
        started_at=started_at,
        completed_at=completed_at,
        updated_by=actor,
    )
    stages = tuple(new_state if s.stage_id == stage_id else s for s in record.stages)
    updated = derive(replace(record, stages=stages, updated_at=now), registry)

    if updated.overall_status == OverallStatus.COMPLETED and record.overall_status != OverallStatus.COMPLETED:
        updated = replace(updated, completed_at=now)
    elif updated.overall_status != OverallStatus.COMPLETED:
        updated = replace(updated, completed_at=None)

    logger.debug(
        "Pipeline %s stage %s: %s → %s (progress %d%%)",
        record.id, stage_id, old_status.value, new_status.value, updated.overall_progress,
    )
    return updated


def annotate_stage(
    record: PipelineRecord,
    stage_id: str,
    notes: str | None,
    *,
    actor: str | None = None,
    now: datetime | None = None,
    registry: StageRegistry = default_registry,
) -> PipelineRecord:
    """Replace a stage's notes without changing its status."""
    _ensure_open(record, "annotate")
    registry.get_stage(record.direction, stage_id)
    state = record.stage(stage_id)
    new_state = replace(state, notes=notes, updated_by=actor)
    stages = tuple(new_state if s.stage_id == stage_id else s for s in record.stages)
    return replace(record, stages=stages, updated_at=now or _utcnow())


def update_financials(
    record: PipelineRecord,
    *,
    now: datetime | None = None,
    **fields,
) -> PipelineRecord:
    """Write financial input fields; derived fields are recomputed."""
    _ensure_open(record, "update financials of")
    financial = financial_calculator.apply_inputs(record.financial, record.direction, **fields)
    return replace(record, financial=financial, updated_at=now or _utcnow())


def add_cost_entry(
    record: PipelineRecord,
    fields: dict,
    *,
    actor: str | None = None,
    now: datetime | None = None,
) -> PipelineRecord:
    """Book an itemised cost; ``total_cost`` follows the ledger."""
    _ensure_open(record, "book costs on")
    now = now or _utcnow()
    financial = financial_calculator.add_cost_entry(
        record.financial, record.direction, fields,
        entry_id=str(uuid.uuid4()), created_at=now, created_by=actor,
    )
    return replace(record, financial=financial, updated_at=now)


def remove_cost_entry(record: PipelineRecord, entry_id: str, *, now: datetime | None = None) -> PipelineRecord:
    _ensure_open(record, "remove costs from")
    financial = financial_calculator.remove_cost_entry(record.financial, record.direction, entry_id)
    return replace(record, financial=financial, updated_at=now or _utcnow())


def add_payment_receipt(
    record: PipelineRecord,
    fields: dict,
    *,
    actor: str | None = None,
    now: datetime | None = None,
) -> PipelineRecord:
    """Record a payment; ``deposit_amount`` follows the receipts."""
    _ensure_open(record, "record payments on")
    now = now or _utcnow()
    financial = financial_calculator.add_payment_receipt(
        record.financial, record.direction, fields,
        receipt_id=str(uuid.uuid4()), created_at=now, created_by=actor,
    )
    return replace(record, financial=financial, updated_at=now)


def remove_payment_receipt(record: PipelineRecord, receipt_id: str, *, now: datetime | None = None) -> PipelineRecord:
    _ensure_open(record, "remove payments from")
    financial = financial_calculator.remove_payment_receipt(record.financial, record.direction, receipt_id)
    return replace(record, financial=financial, updated_at=now or _utcnow())


def attach_document(
    record: PipelineRecord,
    stage_id: str,
    document_type: str,
    *,
    now: datetime | None = None,
    registry: StageRegistry = default_registry,
) -> PipelineRecord:
    """Guarded wrapper over the tracker: closed records reject new documents."""
    _ensure_open(record, "attach documents to")
    updated = document_tracker.attach_document(record, stage_id, document_type, registry=registry)
    if updated is record:
        return record
    return replace(updated, updated_at=now or _utcnow())


def detach_document(
    record: PipelineRecord,
    stage_id: str,
    document_type: str,
    *,
    now: datetime | None = None,
    registry: StageRegistry = default_registry,
) -> PipelineRecord:
    _ensure_open(record, "detach documents from")
    updated = document_tracker.detach_document(record, stage_id, document_type, registry=registry)
    if updated is record:
        return record
    return replace(updated, updated_at=now or _utcnow())


def cancel(record: PipelineRecord, reason: str | None = None, *, now: datetime | None = None) -> PipelineRecord:
    """Move a record to CANCELLED. Cancelling a CANCELLED record returns it unchanged."""
    if record.overall_status == OverallStatus.CANCELLED:
        return record
    if record.overall_status == OverallStatus.COMPLETED or record.is_archived:
        raise PipelineClosedError(record.id, record.overall_status.value, "cancel")
    now = now or _utcnow()
    return replace(
        record,
        overall_status=OverallStatus.CANCELLED,
        cancel_reason=reason,
        cancelled_at=now,
        updated_at=now,
    )


def reinstate(
    record: PipelineRecord,
    *,
    now: datetime | None = None,
    registry: StageRegistry = default_registry,
) -> PipelineRecord:
    """Explicit un-cancel: status is recomputed from the stage states."""
    if record.overall_status != OverallStatus.CANCELLED:
        raise ValidationError(
            f"Pipeline {record.id} is not cancelled",
            details={"overall_status": record.overall_status.value},
        )
    reopened = replace(
        record,
        overall_status=OverallStatus.NOT_STARTED,
        cancel_reason=None,
        cancelled_at=None,
        updated_at=now or _utcnow(),
    )
    return derive(reopened, registry)


def archive(record: PipelineRecord, *, now: datetime | None = None) -> PipelineRecord:
    """Mark a COMPLETED record read-only after promotion."""
    if record.overall_status != OverallStatus.COMPLETED:
        raise ValidationError(
            f"Only completed pipelines can be archived (status={record.overall_status.value})",
        )
    return replace(record, is_archived=True, updated_at=now or _utcnow())
