"""
Pipeline Service — orchestration of the stage engine.

Every mutating operation follows the same shape inside one unit of work:

    load → revision check → pure engine operation → save(expected_revision)
         → audit row → (edge into COMPLETED) promotion

If anything raises, the unit of work rolls back every write made in it,
so a failed promotion leaves the pipeline at its previous revision and the
identical call can be retried. ``PipelineCompleted`` is published only
after the commit.

An asset belongs to at most one open (not COMPLETED, not CANCELLED)
pipeline at a time; a disposal needs an ACTIVE property to start from.

Usage:
    from estateflow.services.pipeline_service import get_pipeline_service

    svc = get_pipeline_service()
    record = svc.request_transition(pid, "legal_clearance", "IN_PROGRESS", expected_revision=3)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from flask import current_app

from estateflow.core.exceptions import ConcurrentModificationError, ConflictError, PipelineError, ValidationError
from estateflow.services import document_tracker, financial_calculator, transition_engine
from estateflow.services.completion_handler import CompletionHandler
from estateflow.services.notification_service import NotificationService
from estateflow.services.pipeline_events import EventPublisher, PipelineCompleted
from estateflow.services.pipeline_record import OverallStatus, PipelineRecord
from estateflow.services.pipeline_store import SqlPipelineStore
from estateflow.services.property_service import SqlPropertyGateway
from estateflow.services.stage_registry import Direction, StageRegistry, default_registry, registry_from_config

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_date(val: str | date | None) -> date | None:
    """Convert an ISO ``YYYY-MM-DD`` string to a date; None/"" stay None."""
    if val is None or isinstance(val, date):
        return val
    val = str(val).strip()
    if not val:
        return None
    try:
        return date.fromisoformat(val[:10])
    except ValueError:
        raise ValidationError(
            f"Invalid date: {val!r}", details={"target_completion_date": "expected YYYY-MM-DD"},
        ) from None


def coerce_revision(value) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError("revision is required", details={"revision": "required integer"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("revision must be an integer", details={"revision": "not an integer"}) from None


def _diff(old: PipelineRecord, new: PipelineRecord) -> dict:
    """Field-level old→new for the summary fields an audit reader cares about."""
    diff = {}
    for name in ("overall_status", "overall_progress", "current_stage_id", "is_archived", "revision"):
        before, after = getattr(old, name), getattr(new, name)
        if before != after:
            diff[name] = {
                "old": getattr(before, "value", before),
                "new": getattr(after, "value", after),
            }
    for before, after in zip(old.stages, new.stages):
        if before != after:
            diff[after.stage_id] = {"old": before.to_dict(), "new": after.to_dict()}
    if old.financial != new.financial:
        diff["financial"] = {"old": old.financial.to_dict(), "new": new.financial.to_dict()}
    return diff


class PipelineService:
    """Binds the pure engine to a store, a completion handler and listeners."""

    def __init__(
        self,
        store,
        completion_handler: CompletionHandler,
        *,
        registry: StageRegistry = default_registry,
        completion_policy=None,
        publisher: EventPublisher | None = None,
        clock=_utcnow,
    ):
        self.store = store
        self.completion_handler = completion_handler
        self.registry = registry
        self.completion_policy = completion_policy or transition_engine.documents_required_policy
        self.publisher = publisher or EventPublisher()
        self.clock = clock

    # ── Read ──────────────────────────────────────────────────────────────

    def get(self, pipeline_id: str) -> PipelineRecord:
        return self.store.load(pipeline_id)

    def list(self, direction=None, status=None, asset_reference=None) -> list[PipelineRecord]:
        return self.store.list(direction=direction, status=status, asset_reference=asset_reference)

    def document_report(self, pipeline_id: str) -> list[dict]:
        record = self.store.load(pipeline_id)
        return document_tracker.stage_document_report(record, registry=self.registry)

    def financial_summary(self, pipeline_id: str) -> dict:
        record = self.store.load(pipeline_id)
        summary = financial_calculator.financial_summary(record.financial, record.direction)
        summary["pipeline_id"] = record.id
        summary["direction"] = record.direction.value
        return summary

    # ── Create ────────────────────────────────────────────────────────────

    def create_pipeline(
        self,
        direction,
        asset_reference: str,
        *,
        counterparty_info: dict | None = None,
        financial: dict | None = None,
        target_completion_date=None,
        actor: str | None = None,
    ) -> PipelineRecord:
        record = transition_engine.create_record(
            direction,
            asset_reference,
            counterparty_info=counterparty_info,
            financial=financial,
            target_completion_date=parse_date(target_completion_date),
            now=self.clock(),
            registry=self.registry,
        )
        with self.store.unit_of_work():
            self._ensure_asset_free(record.asset_reference)
            if record.direction == Direction.DISPOSAL:
                self._ensure_active_property(record.asset_reference)
            self.store.add(record)
            self.store.record_event(record, "pipeline.create", actor=actor, diff={
                "direction": record.direction.value,
                "asset_reference": record.asset_reference,
            })
        logger.info(
            "Pipeline %s created (%s, asset=%s)", record.id, record.direction.value, record.asset_reference,
            extra={"pipeline_id": record.id, "direction": record.direction.value},
        )
        return record

    # ── Mutations ─────────────────────────────────────────────────────────

    def request_transition(
        self,
        pipeline_id: str,
        stage_id: str,
        new_status,
        expected_revision: int,
        *,
        notes: str | None = None,
        actor: str | None = None,
    ) -> PipelineRecord:
        """Move one stage to ``new_status``; promotes the pipeline on the edge into COMPLETED."""
        try:
            return self._mutate(
                pipeline_id,
                expected_revision,
                "pipeline.transition",
                lambda record: transition_engine.request_transition(
                    record, stage_id, new_status, notes,
                    actor=actor,
                    now=self.clock(),
                    registry=self.registry,
                    completion_policy=self.completion_policy,
                ),
                actor=actor,
            )
        except (ValidationError, PipelineError) as exc:
            logger.info(
                "Transition rejected for pipeline %s stage %s: %s", pipeline_id, stage_id, exc,
                extra={"pipeline_id": pipeline_id, "stage_id": stage_id},
            )
            raise

    def annotate_stage(self, pipeline_id, stage_id, notes, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.annotate",
            lambda record: transition_engine.annotate_stage(
                record, stage_id, notes, actor=actor, now=self.clock(), registry=self.registry,
            ),
            actor=actor,
        )

    def attach_document(self, pipeline_id, stage_id, document_type, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.attach_document",
            lambda record: transition_engine.attach_document(
                record, stage_id, document_type, now=self.clock(), registry=self.registry,
            ),
            actor=actor,
        )

    def detach_document(self, pipeline_id, stage_id, document_type, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.detach_document",
            lambda record: transition_engine.detach_document(
                record, stage_id, document_type, now=self.clock(), registry=self.registry,
            ),
            actor=actor,
        )

    def update_financials(self, pipeline_id, fields: dict, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.update_financials",
            lambda record: transition_engine.update_financials(
                record, now=self.clock(), **transition_engine.as_mapping(fields, "financial"),
            ),
            actor=actor,
        )

    def cancel(self, pipeline_id: str, expected_revision, reason: str | None = None, *, actor=None) -> PipelineRecord:
        """Cancel a pipeline. Cancelling an already CANCELLED pipeline returns it unchanged."""
        current = self.store.load(pipeline_id)
        if current.overall_status == OverallStatus.CANCELLED:
            return current
        record = self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.cancel",
            lambda record: transition_engine.cancel(record, reason, now=self.clock()),
            actor=actor,
        )
        logger.info("Pipeline %s cancelled", pipeline_id, extra={"pipeline_id": pipeline_id})
        return record

    def reinstate(self, pipeline_id: str, expected_revision, *, actor=None) -> PipelineRecord:
        """Un-cancel a pipeline, provided no other pipeline has claimed the asset meanwhile."""
        def operation(record):
            reopened = transition_engine.reinstate(record, now=self.clock(), registry=self.registry)
            self._ensure_asset_free(record.asset_reference, exclude_id=record.id)
            return reopened

        return self._mutate(pipeline_id, expected_revision, "pipeline.reinstate", operation, actor=actor)

    # ── Financial ledger ──────────────────────────────────────────────────

    def add_cost_entry(self, pipeline_id, fields: dict, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.add_cost",
            lambda record: transition_engine.add_cost_entry(record, fields, actor=actor, now=self.clock()),
            actor=actor,
        )

    def remove_cost_entry(self, pipeline_id, entry_id: str, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.remove_cost",
            lambda record: transition_engine.remove_cost_entry(record, entry_id, now=self.clock()),
            actor=actor,
        )

    def add_payment_receipt(self, pipeline_id, fields: dict, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.add_payment",
            lambda record: transition_engine.add_payment_receipt(record, fields, actor=actor, now=self.clock()),
            actor=actor,
        )

    def remove_payment_receipt(self, pipeline_id, receipt_id: str, expected_revision, *, actor=None) -> PipelineRecord:
        return self._mutate(
            pipeline_id,
            expected_revision,
            "pipeline.remove_payment",
            lambda record: transition_engine.remove_payment_receipt(record, receipt_id, now=self.clock()),
            actor=actor,
        )

    # ── Internals ─────────────────────────────────────────────────────────

    def _ensure_asset_free(self, asset_reference: str, *, exclude_id: str | None = None) -> None:
        """An asset is in at most one open pipeline, whatever the direction."""
        for other in self.store.list(asset_reference=asset_reference):
            if other.id != exclude_id and not other.is_terminal:
                raise ConflictError("Open pipeline", "asset_reference", asset_reference)

    def _ensure_active_property(self, asset_reference: str) -> None:
        status = self.completion_handler.gateway.lifecycle_status(asset_reference)
        if status != "ACTIVE":
            raise ValidationError(
                f"Property {asset_reference} cannot be disposed of",
                details={"asset_reference": f"needs an ACTIVE property, found {status or 'none'}"},
            )

    def _mutate(self, pipeline_id, expected_revision, action, operation, *, actor=None) -> PipelineRecord:
        expected_revision = coerce_revision(expected_revision)
        completed_now = False

        with self.store.unit_of_work():
            current = self.store.load(pipeline_id)
            if current.revision != expected_revision:
                raise ConcurrentModificationError(pipeline_id, expected_revision, current.revision)

            updated = operation(current)
            if updated is current:
                return current

            completed_now = (
                updated.overall_status == OverallStatus.COMPLETED
                and current.overall_status != OverallStatus.COMPLETED
            )
            if completed_now:
                updated = transition_engine.archive(updated, now=updated.updated_at)

            saved = self.store.save(updated, expected_revision)
            self.store.record_event(saved, action, actor=actor, diff=_diff(current, saved))

            if completed_now:
                result = self.completion_handler.on_completed(saved)
                self.store.record_event(saved, "pipeline.complete", actor=actor, diff=result.to_dict())

        logger.info(
            "Pipeline %s %s → revision %d (%s, %d%%)",
            saved.id, action, saved.revision, saved.overall_status.value, saved.overall_progress,
            extra={"pipeline_id": saved.id, "direction": saved.direction.value},
        )
        if completed_now:
            self.publisher.publish(PipelineCompleted(
                pipeline_id=saved.id,
                direction=saved.direction,
                asset_reference=saved.asset_reference,
            ))
        return saved


# ── Flask wiring ─────────────────────────────────────────────────────────────


def build_pipeline_service(app) -> PipelineService:
    """Create the SQL-backed service for ``app`` and register it as an extension."""
    if app.config.get("PIPELINE_REQUIRE_DOCUMENTS", True):
        policy = transition_engine.documents_required_policy
    else:
        policy = transition_engine.no_documents_policy

    publisher = EventPublisher()
    publisher.subscribe(NotificationService.notify_pipeline_completed)

    service = PipelineService(
        SqlPipelineStore(),
        CompletionHandler(SqlPropertyGateway()),
        registry=registry_from_config(app.config),
        completion_policy=policy,
        publisher=publisher,
    )
    app.extensions["pipeline_service"] = service
    return service


def get_pipeline_service() -> PipelineService:
    return current_app.extensions["pipeline_service"]
