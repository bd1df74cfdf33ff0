"""
Pipeline Record Store — persistence boundary of the stage engine.

Two implementations share one contract:

    load(pipeline_id)                   → PipelineRecord   (NotFoundError)
    add(record)                         → PipelineRecord   (ConflictError on duplicate id)
    save(record, expected_revision)     → PipelineRecord   (revision + 1)
    list(direction=None, status=None,
         asset_reference=None)          → list[PipelineRecord]
    record_event(record, action, ...)   → audit trail entry
    unit_of_work()                      → context manager: all writes or none

``save`` is the optimistic-concurrency compare-and-swap: it only writes when
the stored revision equals ``expected_revision`` and raises
ConcurrentModificationError otherwise.

SqlPipelineStore maps records onto the Pipeline / PipelineStage models and
relies on SQLAlchemy's version column (UPDATE … WHERE revision = :expected).
InMemoryPipelineStore keeps records in a dict behind a lock held only for
the compare-and-swap itself; records of different pipelines never wait on
each other beyond that.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from estateflow.core.exceptions import ConcurrentModificationError, ConflictError, NotFoundError
from estateflow.models import db
from estateflow.models.audit import write_audit
from estateflow.models.pipeline import Pipeline, PipelineStage
from estateflow.services.pipeline_record import (
    CostEntry,
    FinancialSnapshot,
    OverallStatus,
    PaymentReceipt,
    PipelineRecord,
    StageState,
    StageStatus,
)
from estateflow.services.stage_registry import Direction, coerce_direction

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _coerce_status(value) -> OverallStatus | None:
    if value is None:
        return None
    return value if isinstance(value, OverallStatus) else OverallStatus(str(value).upper())


# ═════════════════════════════════════════════════════════════════════════════
# SQL store
# ═════════════════════════════════════════════════════════════════════════════


class SqlPipelineStore:
    """Flask-SQLAlchemy backed store. Must be used inside an app context."""

    # ── Mapping ──────────────────────────────────────────────────────────

    @staticmethod
    def to_record(row: Pipeline) -> PipelineRecord:
        stages = tuple(
            StageState(
                stage_id=s.stage_id,
                status=StageStatus(s.status),
                notes=s.notes,
                started_at=_aware(s.started_at),
                completed_at=_aware(s.completed_at),
                attached_document_types=frozenset(s.attached_document_types or ()),
                updated_by=s.updated_by,
            )
            for s in sorted(row.stages, key=lambda s: s.position)
        )
        financial = FinancialSnapshot(
            **{
                name: getattr(row, name)
                for name in FinancialSnapshot.INPUT_FIELDS + FinancialSnapshot.DERIVED_FIELDS
            },
            cost_entries=tuple(CostEntry.from_dict(d) for d in row.cost_entries or ()),
            payment_receipts=tuple(PaymentReceipt.from_dict(d) for d in row.payment_receipts or ()),
        )
        return PipelineRecord(
            id=row.id,
            direction=Direction(row.direction),
            asset_reference=row.asset_reference,
            stages=stages,
            financial=financial,
            counterparty_info=dict(row.counterparty_info or {}),
            current_stage_id=row.current_stage_id,
            overall_status=OverallStatus(row.overall_status),
            overall_progress=row.overall_progress,
            revision=row.revision,
            is_archived=bool(row.is_archived),
            cancel_reason=row.cancel_reason,
            cancelled_at=_aware(row.cancelled_at),
            completed_at=_aware(row.completed_at),
            target_completion_date=row.target_completion_date,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _write_row(row: Pipeline, record: PipelineRecord) -> None:
        row.asset_reference = record.asset_reference
        row.counterparty_info = dict(record.counterparty_info)
        for name in FinancialSnapshot.INPUT_FIELDS + FinancialSnapshot.DERIVED_FIELDS:
            setattr(row, name, getattr(record.financial, name))
        row.cost_entries = [e.to_dict() for e in record.financial.cost_entries]
        row.payment_receipts = [r.to_dict() for r in record.financial.payment_receipts]
        row.current_stage_id = record.current_stage_id
        row.overall_status = record.overall_status.value
        row.overall_progress = record.overall_progress
        row.is_archived = record.is_archived
        row.cancel_reason = record.cancel_reason
        row.cancelled_at = record.cancelled_at
        row.completed_at = record.completed_at
        row.target_completion_date = record.target_completion_date
        row.updated_at = record.updated_at

        by_stage_id = {s.stage_id: s for s in row.stages}
        for position, state in enumerate(record.stages, start=1):
            stage_row = by_stage_id.get(state.stage_id)
            if stage_row is None:
                stage_row = PipelineStage(stage_id=state.stage_id, position=position)
                row.stages.append(stage_row)
            stage_row.position = position
            stage_row.status = state.status.value
            stage_row.notes = state.notes
            stage_row.started_at = state.started_at
            stage_row.completed_at = state.completed_at
            # JSON columns only track reassignment
            stage_row.attached_document_types = sorted(state.attached_document_types)
            stage_row.updated_by = state.updated_by

    # ── Contract ─────────────────────────────────────────────────────────

    def load(self, pipeline_id: str) -> PipelineRecord:
        row = db.session.get(Pipeline, pipeline_id)
        if row is None:
            raise NotFoundError(resource="Pipeline", resource_id=pipeline_id)
        return self.to_record(row)

    def add(self, record: PipelineRecord) -> PipelineRecord:
        row = Pipeline(
            id=record.id,
            direction=record.direction.value,
            revision=record.revision,
            created_at=record.created_at,
        )
        self._write_row(row, record)
        db.session.add(row)
        db.session.flush()
        return record

    def save(self, record: PipelineRecord, expected_revision: int) -> PipelineRecord:
        row = db.session.get(Pipeline, record.id)
        if row is None:
            raise NotFoundError(resource="Pipeline", resource_id=record.id)
        if row.revision != expected_revision:
            raise ConcurrentModificationError(record.id, expected_revision, row.revision)

        new_revision = expected_revision + 1
        self._write_row(row, record)
        row.revision = new_revision
        try:
            db.session.flush()
        except StaleDataError:
            logger.info("Stale write rejected for pipeline %s", record.id, extra={"pipeline_id": record.id})
            raise ConcurrentModificationError(record.id, expected_revision) from None
        return replace(record, revision=new_revision)

    def list(self, direction=None, status=None, asset_reference=None) -> list[PipelineRecord]:
        q = Pipeline.query
        if asset_reference:
            q = q.filter(Pipeline.asset_reference == asset_reference)
        if direction:
            q = q.filter(Pipeline.direction == coerce_direction(direction).value)
        if status:
            q = q.filter(Pipeline.overall_status == _coerce_status(status).value)
        rows = q.order_by(Pipeline.created_at.desc(), Pipeline.id).all()
        return [self.to_record(r) for r in rows]

    def record_event(self, record: PipelineRecord, action: str, *, actor=None, diff=None) -> None:
        write_audit(
            entity_type="pipeline",
            entity_id=record.id,
            action=action,
            actor=actor,
            diff=diff,
        )

    @contextmanager
    def unit_of_work(self):
        """Commit on success, roll back the whole session on any exception."""
        try:
            yield self
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


# ═════════════════════════════════════════════════════════════════════════════
# In-memory store
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AuditEntry:
    pipeline_id: str
    action: str
    actor: str
    diff: dict
    timestamp: datetime


_MISSING = object()


class InMemoryPipelineStore:
    """Dict-backed store for tests and embedded use.

    Writes made inside ``unit_of_work`` are journaled per thread and undone
    if the block raises. A journaled write is only undone while it is still
    the stored value; a later successful write by another caller wins.
    """

    def __init__(self):
        self._records: dict[str, PipelineRecord] = {}
        self._lock = threading.Lock()
        self._local = threading.local()
        self.audit_trail: list[AuditEntry] = []

    def _journal(self):
        return getattr(self._local, "journal", None)

    def load(self, pipeline_id: str) -> PipelineRecord:
        record = self._records.get(pipeline_id)
        if record is None:
            raise NotFoundError(resource="Pipeline", resource_id=pipeline_id)
        return record

    def add(self, record: PipelineRecord) -> PipelineRecord:
        with self._lock:
            if record.id in self._records:
                raise ConflictError("Pipeline", "id", record.id)
            self._records[record.id] = record
        journal = self._journal()
        if journal is not None:
            journal.append((record.id, _MISSING, record))
        return record

    def save(self, record: PipelineRecord, expected_revision: int) -> PipelineRecord:
        with self._lock:
            current = self._records.get(record.id)
            if current is None:
                raise NotFoundError(resource="Pipeline", resource_id=record.id)
            if current.revision != expected_revision:
                raise ConcurrentModificationError(record.id, expected_revision, current.revision)
            saved = replace(record, revision=expected_revision + 1)
            self._records[record.id] = saved
        journal = self._journal()
        if journal is not None:
            journal.append((record.id, current, saved))
        return saved

    def list(self, direction=None, status=None, asset_reference=None) -> list[PipelineRecord]:
        records = list(self._records.values())
        if asset_reference:
            records = [r for r in records if r.asset_reference == asset_reference]
        if direction:
            direction = coerce_direction(direction)
            records = [r for r in records if r.direction == direction]
        if status:
            status = _coerce_status(status)
            records = [r for r in records if r.overall_status == status]
        return sorted(records, key=lambda r: (r.created_at or datetime.min.replace(tzinfo=timezone.utc), r.id))

    def record_event(self, record: PipelineRecord, action: str, *, actor=None, diff=None) -> None:
        entry = AuditEntry(
            pipeline_id=record.id,
            action=action,
            actor=actor or "system",
            diff=dict(diff or {}),
            timestamp=datetime.now(timezone.utc),
        )
        with self._lock:
            self.audit_trail.append(entry)
        journal = self._journal()
        if journal is not None:
            journal.append((None, _MISSING, entry))

    def _undo(self, journal) -> None:
        with self._lock:
            for key, previous, written in reversed(journal):
                if key is None:
                    if written in self.audit_trail:
                        self.audit_trail.remove(written)
                    continue
                if self._records.get(key) is not written:
                    logger.warning("Skipping rollback of pipeline %s: overwritten by a later save", key)
                    continue
                if previous is _MISSING:
                    del self._records[key]
                else:
                    self._records[key] = previous

    @contextmanager
    def unit_of_work(self):
        if self._journal() is not None:
            # Nested: the outermost unit of work owns the journal.
            yield self
            return
        self._local.journal = []
        try:
            yield self
        except Exception:
            self._undo(self._local.journal)
            raise
        finally:
            self._local.journal = None
