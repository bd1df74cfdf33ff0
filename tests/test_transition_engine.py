"""
Stage transition engine tests (pure functions, no database).

Covers: record creation, derivation of progress / status / current stage,
ordering and document guards, cancel / reinstate / archive, and the
8-stage disposal walk-through.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from estateflow.core.exceptions import (
    DocumentsIncompleteError,
    InvalidTransitionError,
    PipelineClosedError,
    StagePrerequisiteError,
    UnknownStageError,
    ValidationError,
)
from estateflow.services import transition_engine as engine
from estateflow.services.pipeline_record import OverallStatus, StageStatus
from estateflow.services.stage_registry import Direction, default_registry

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _disposal():
    return engine.create_record(Direction.DISPOSAL, "UNIT-12", pipeline_id="disp-1", now=T0)


def _acquisition():
    return engine.create_record(Direction.ACQUISITION, "PLOT-7", pipeline_id="acq-1", now=T0)


def _complete(record, stage_id, registry=default_registry):
    """Attach every required document and walk the stage to COMPLETED."""
    definition = registry.get_stage(record.direction, stage_id)
    for doc in sorted(definition.required_document_types):
        record = engine.attach_document(record, stage_id, doc, registry=registry)
    if definition.required_document_types:
        record = engine.request_transition(record, stage_id, StageStatus.IN_PROGRESS, registry=registry)
    return engine.request_transition(record, stage_id, StageStatus.COMPLETED, registry=registry)


def _assert_invariants(record):
    total = len(record.stages)
    completed = record.completed_stage_count()
    assert record.overall_progress == engine.compute_progress(completed, total)
    if record.overall_status != OverallStatus.CANCELLED:
        assert (record.overall_status == OverallStatus.COMPLETED) == (completed == total)


# ═════════════════════════════════════════════════════════════════════════════
# Creation & derivation
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_new_record_shape(self):
        record = _disposal()
        assert record.revision == 1
        assert record.overall_status == OverallStatus.NOT_STARTED
        assert record.overall_progress == 0
        assert record.current_stage_id == "handover_preparation"
        assert [s.stage_id for s in record.stages] == [d.id for d in default_registry.stages_for("DISPOSAL")]
        assert all(s.status == StageStatus.NOT_STARTED for s in record.stages)
        assert record.created_at == record.updated_at == T0

    def test_generated_id(self):
        record = engine.create_record("acquisition", "PLOT-9")
        assert len(record.id) == 36

    def test_financial_inputs_applied(self):
        record = engine.create_record(
            Direction.DISPOSAL, "UNIT-1",
            financial={"negotiated_amount": 5_000_000, "deposit_amount": 500_000, "total_cost": 4_000_000},
        )
        assert record.financial.roi_percentage == Decimal("25.00")

    def test_blank_asset_reference_rejected(self):
        with pytest.raises(ValidationError):
            engine.create_record(Direction.DISPOSAL, "  ")

    def test_target_date_kept(self):
        record = engine.create_record(Direction.DISPOSAL, "UNIT-1", target_completion_date=date(2026, 12, 31))
        assert record.to_dict()["target_completion_date"] == "2026-12-31"

    @pytest.mark.parametrize("kwargs,field", [
        ({"financial": ["negotiated_amount", 100]}, "financial"),
        ({"financial": "100"}, "financial"),
        ({"counterparty_info": "Jane Wanjiru"}, "counterparty_info"),
        ({"counterparty_info": [("name", "Jane")]}, "counterparty_info"),
    ])
    def test_non_object_payloads_rejected(self, kwargs, field):
        with pytest.raises(ValidationError) as exc:
            engine.create_record(Direction.ACQUISITION, "PLOT-1", **kwargs)
        assert field in exc.value.details


class TestProgress:
    @pytest.mark.parametrize("completed,total,expected", [
        (0, 8, 0), (1, 8, 13), (3, 8, 38), (4, 8, 50), (7, 8, 88), (8, 8, 100), (1, 3, 33), (2, 3, 67), (0, 0, 0),
    ])
    def test_compute_progress_rounds_half_up(self, completed, total, expected):
        assert engine.compute_progress(completed, total) == expected

    def test_status_in_progress_after_first_start(self):
        record = engine.request_transition(_disposal(), "handover_preparation", "IN_PROGRESS")
        assert record.overall_status == OverallStatus.IN_PROGRESS
        assert record.overall_progress == 0
        assert record.current_stage_id == "handover_preparation"

    def test_back_to_not_started_when_abandoned(self):
        record = engine.request_transition(_disposal(), "handover_preparation", "IN_PROGRESS")
        record = engine.request_transition(record, "handover_preparation", "NOT_STARTED")
        assert record.overall_status == OverallStatus.NOT_STARTED
        assert record.stage("handover_preparation").started_at is None


# ═════════════════════════════════════════════════════════════════════════════
# Guards
# ═════════════════════════════════════════════════════════════════════════════


class TestGuards:
    def test_unknown_stage(self):
        with pytest.raises(UnknownStageError):
            engine.request_transition(_disposal(), "initial_search", "IN_PROGRESS")

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            engine.request_transition(_disposal(), "handover_preparation", "DONE")

    def test_same_status_is_invalid(self):
        record = engine.request_transition(_disposal(), "handover_preparation", "IN_PROGRESS")
        with pytest.raises(InvalidTransitionError):
            engine.request_transition(record, "handover_preparation", "IN_PROGRESS")

    def test_direct_completion_blocked_when_documents_required(self):
        record = _complete(_disposal(), "handover_preparation")
        record = engine.attach_document(record, "documentation_survey", "survey_report")
        with pytest.raises(InvalidTransitionError):
            engine.request_transition(record, "documentation_survey", "COMPLETED")

    def test_direct_completion_with_missing_documents_reports_documents(self):
        record = _complete(_disposal(), "handover_preparation")
        with pytest.raises(DocumentsIncompleteError) as exc:
            engine.request_transition(record, "documentation_survey", "COMPLETED")
        assert exc.value.missing_document_types == ["survey_report"]

    def test_direct_completion_behind_open_stage_reports_prerequisite(self):
        record = engine.attach_document(_disposal(), "documentation_survey", "survey_report")
        with pytest.raises(StagePrerequisiteError) as exc:
            engine.request_transition(record, "documentation_survey", "COMPLETED")
        assert exc.value.blocking_stage_id == "handover_preparation"

    def test_direct_completion_without_documents_policy_still_needs_in_progress(self):
        record = _complete(_disposal(), "handover_preparation")
        with pytest.raises(InvalidTransitionError):
            engine.request_transition(
                record, "documentation_survey", "COMPLETED", completion_policy=engine.no_documents_policy,
            )

    def test_direct_completion_allowed_without_required_documents(self):
        record = engine.request_transition(_disposal(), "handover_preparation", "COMPLETED")
        assert record.stage("handover_preparation").status == StageStatus.COMPLETED
        assert record.overall_progress == 13

    def test_prerequisite_error_then_success(self):
        record = _disposal()
        with pytest.raises(StagePrerequisiteError) as exc:
            engine.request_transition(record, "documentation_survey", "IN_PROGRESS")
        assert exc.value.blocking_stage_id == "handover_preparation"

        record = _complete(record, "handover_preparation")
        record = engine.request_transition(record, "documentation_survey", "IN_PROGRESS")
        assert record.stage("documentation_survey").status == StageStatus.IN_PROGRESS

    def test_prerequisite_names_lowest_blocking_stage(self):
        record = _complete(_disposal(), "handover_preparation")
        with pytest.raises(StagePrerequisiteError) as exc:
            engine.request_transition(record, "sale_agreement", "IN_PROGRESS")
        assert exc.value.blocking_stage_id == "documentation_survey"

    def test_out_of_order_direction(self):
        relaxed = default_registry.with_out_of_order(disposal=True)
        record = engine.create_record(Direction.DISPOSAL, "UNIT-3", registry=relaxed)
        record = engine.request_transition(record, "lcb_transfer_forms", "IN_PROGRESS", registry=relaxed)
        assert record.stage("lcb_transfer_forms").status == StageStatus.IN_PROGRESS
        assert record.current_stage_id == "handover_preparation"

    def test_documents_incomplete_is_idempotent_failure(self):
        record = _complete(_disposal(), "handover_preparation")
        record = engine.request_transition(record, "documentation_survey", "IN_PROGRESS")
        snapshot = record.to_dict()
        for _ in range(2):
            with pytest.raises(DocumentsIncompleteError) as exc:
                engine.request_transition(record, "documentation_survey", "COMPLETED")
            assert exc.value.missing_document_types == ["survey_report"]
        assert record.to_dict() == snapshot

    def test_no_documents_policy(self):
        record = _complete(_disposal(), "handover_preparation")
        record = engine.request_transition(record, "documentation_survey", "IN_PROGRESS")
        record = engine.request_transition(
            record, "documentation_survey", "COMPLETED", completion_policy=engine.no_documents_policy,
        )
        assert record.stage("documentation_survey").status == StageStatus.COMPLETED


class TestStageTimestamps:
    def test_started_and_completed_at(self):
        t1 = datetime(2026, 3, 2, tzinfo=timezone.utc)
        t2 = datetime(2026, 3, 3, tzinfo=timezone.utc)
        record = engine.request_transition(_disposal(), "handover_preparation", "IN_PROGRESS", now=t1, actor="agent-7")
        record = engine.request_transition(record, "handover_preparation", "COMPLETED", now=t2, notes="keys ready")
        state = record.stage("handover_preparation")
        assert state.started_at == t1
        assert state.completed_at == t2
        assert state.notes == "keys ready"
        assert record.updated_at == t2

    def test_reopen_clears_completed_at(self):
        record = _complete(_disposal(), "handover_preparation")
        record = engine.request_transition(record, "handover_preparation", "IN_PROGRESS")
        state = record.stage("handover_preparation")
        assert state.completed_at is None
        assert state.started_at is not None
        assert record.overall_progress == 0

    def test_annotate_keeps_status(self):
        record = engine.annotate_stage(_disposal(), "legal_clearance", "waiting on lawyer", actor="ann")
        state = record.stage("legal_clearance")
        assert state.notes == "waiting on lawyer"
        assert state.status == StageStatus.NOT_STARTED
        assert state.updated_by == "ann"


# ═════════════════════════════════════════════════════════════════════════════
# Cancel / reinstate / archive
# ═════════════════════════════════════════════════════════════════════════════


class TestCancel:
    def test_cancel_is_idempotent(self):
        cancelled = engine.cancel(_disposal(), "buyer withdrew")
        again = engine.cancel(cancelled, "buyer withdrew")
        assert again is cancelled
        assert cancelled.overall_status == OverallStatus.CANCELLED
        assert cancelled.cancel_reason == "buyer withdrew"
        assert cancelled.cancelled_at is not None

    def test_cancelled_record_rejects_transitions(self):
        cancelled = engine.cancel(_disposal())
        with pytest.raises(PipelineClosedError):
            engine.request_transition(cancelled, "handover_preparation", "IN_PROGRESS")
        with pytest.raises(PipelineClosedError):
            engine.attach_document(cancelled, "documentation_survey", "survey_report")
        with pytest.raises(PipelineClosedError):
            engine.update_financials(cancelled, negotiated_amount=1)

    def test_cancel_completed_record_rejected(self):
        record = _disposal()
        for definition in default_registry.stages_for(Direction.DISPOSAL):
            record = _complete(record, definition.id)
        with pytest.raises(PipelineClosedError):
            engine.cancel(record)

    def test_reinstate_recomputes_status(self):
        record = _complete(_disposal(), "handover_preparation")
        cancelled = engine.cancel(record)
        reinstated = engine.reinstate(cancelled)
        assert reinstated.overall_status == OverallStatus.IN_PROGRESS
        assert reinstated.cancel_reason is None
        assert reinstated.overall_progress == 13

    def test_reinstate_requires_cancelled(self):
        with pytest.raises(ValidationError):
            engine.reinstate(_disposal())

    def test_archive_only_completed(self):
        with pytest.raises(ValidationError):
            engine.archive(_disposal())


# ═════════════════════════════════════════════════════════════════════════════
# Walk-through
# ═════════════════════════════════════════════════════════════════════════════


class TestDisposalScenario:
    def test_eight_stage_walk(self):
        record = _disposal()
        stages = default_registry.stages_for(Direction.DISPOSAL)
        assert record.overall_progress == 0

        for definition in stages[:7]:
            record = _complete(record, definition.id)
            _assert_invariants(record)
        assert record.overall_progress == 88
        assert record.overall_status == OverallStatus.IN_PROGRESS
        assert record.current_stage_id == "title_transfer"
        assert record.completed_at is None

        record = _complete(record, "title_transfer")
        _assert_invariants(record)
        assert record.overall_status == OverallStatus.COMPLETED
        assert record.overall_progress == 100
        assert record.current_stage_id is None
        assert record.completed_at is not None

        archived = engine.archive(record)
        assert archived.is_archived
        with pytest.raises(PipelineClosedError):
            engine.request_transition(archived, "title_transfer", "IN_PROGRESS")

    def test_acquisition_walk(self):
        record = _acquisition()
        for definition in default_registry.stages_for(Direction.ACQUISITION):
            record = _complete(record, definition.id)
            _assert_invariants(record)
        assert record.overall_status == OverallStatus.COMPLETED

    def test_input_never_mutated(self):
        record = _disposal()
        before = record.to_dict()
        engine.request_transition(record, "handover_preparation", "COMPLETED")
        assert record.to_dict() == before
