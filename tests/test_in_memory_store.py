"""
In-memory store and service tests: thread races, unit-of-work rollback,
exactly-once promotion, completion events.
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from estateflow.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    PipelineClosedError,
    PromotionFailedError,
    ValidationError,
)
from estateflow.services.completion_handler import CompletionHandler
from estateflow.services.pipeline_events import EventPublisher
from estateflow.services.pipeline_record import OverallStatus, StageStatus
from estateflow.services.pipeline_service import PipelineService
from estateflow.services.property_service import InMemoryPropertyGateway
from estateflow.services.stage_registry import Direction, default_registry
from estateflow.services.transition_engine import create_record, request_transition

DISP_STAGES = [s.id for s in default_registry.stages_for(Direction.DISPOSAL)]
ACQ_STAGES = [s.id for s in default_registry.stages_for(Direction.ACQUISITION)]
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class CountingGateway(InMemoryPropertyGateway):
    def __init__(self, properties=None):
        super().__init__(properties)
        self.calls = []

    def activate_acquired(self, record):
        self.calls.append(("activate", record.id))
        return super().activate_acquired(record)

    def mark_transferred(self, record):
        self.calls.append(("transfer", record.id))
        return super().mark_transferred(record)


def _seed(gateway, reference, status="ACTIVE"):
    gateway.properties[reference] = {"reference": reference, "lifecycle_status": status}


# ═════════════════════════════════════════════════════════════════════════
# Store contract
# ═════════════════════════════════════════════════════════════════════════


class TestStore:
    def test_add_load_save(self, memory_store):
        record = memory_store.add(create_record(Direction.DISPOSAL, "UNIT-1", now=T0))
        assert memory_store.load(record.id) is record

        moved = request_transition(record, "handover_preparation", "IN_PROGRESS", now=T0)
        saved = memory_store.save(moved, expected_revision=1)
        assert saved.revision == 2
        assert memory_store.load(record.id) == saved

    def test_save_with_stale_revision(self, memory_store):
        record = memory_store.add(create_record(Direction.DISPOSAL, "UNIT-1", now=T0))
        memory_store.save(record, expected_revision=1)
        with pytest.raises(ConcurrentModificationError) as exc:
            memory_store.save(record, expected_revision=1)
        assert exc.value.actual_revision == 2

    def test_add_duplicate_id(self, memory_store):
        record = memory_store.add(create_record(Direction.DISPOSAL, "UNIT-1", now=T0))
        with pytest.raises(ConflictError):
            memory_store.add(record)

    def test_load_missing(self, memory_store):
        with pytest.raises(NotFoundError):
            memory_store.load("nope")

    def test_list_filters_and_order(self, memory_store):
        a = memory_store.add(create_record(Direction.ACQUISITION, "PLOT-1", now=T0))
        d = memory_store.add(create_record(Direction.DISPOSAL, "UNIT-1", now=T0.replace(hour=10)))
        assert [r.id for r in memory_store.list()] == [a.id, d.id]
        assert [r.id for r in memory_store.list(direction="DISPOSAL")] == [d.id]
        assert memory_store.list(status="CANCELLED") == []
        assert [r.id for r in memory_store.list(asset_reference="PLOT-1")] == [a.id]

    def test_unit_of_work_undoes_writes_on_error(self, memory_store):
        record = memory_store.add(create_record(Direction.DISPOSAL, "UNIT-1", now=T0))
        with pytest.raises(RuntimeError):
            with memory_store.unit_of_work():
                memory_store.save(record, expected_revision=1)
                memory_store.record_event(record, "pipeline.transition")
                raise RuntimeError("boom")
        assert memory_store.load(record.id) is record
        assert memory_store.audit_trail == []

    def test_unit_of_work_undoes_add(self, memory_store):
        record = create_record(Direction.DISPOSAL, "UNIT-1", now=T0)
        with pytest.raises(RuntimeError):
            with memory_store.unit_of_work():
                memory_store.add(record)
                raise RuntimeError("boom")
        with pytest.raises(NotFoundError):
            memory_store.load(record.id)

    def test_nested_unit_of_work_rolls_back_with_outer(self, memory_store):
        record = memory_store.add(create_record(Direction.DISPOSAL, "UNIT-1", now=T0))
        with pytest.raises(RuntimeError):
            with memory_store.unit_of_work():
                with memory_store.unit_of_work():
                    memory_store.save(record, expected_revision=1)
                raise RuntimeError("outer fails")
        assert memory_store.load(record.id).revision == 1


# ═════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════


class TestThreadRace:
    def test_exactly_one_writer_wins(self, memory_service, gateway):
        _seed(gateway, "UNIT-12")
        record = memory_service.create_pipeline("DISPOSAL", "UNIT-12")
        barrier = threading.Barrier(2)
        outcomes = {}

        def attach():
            barrier.wait()
            try:
                outcomes["attach"] = memory_service.attach_document(
                    record.id, "documentation_survey", "survey_report", 1,
                )
            except ConcurrentModificationError as exc:
                outcomes["attach"] = exc

        def complete():
            barrier.wait()
            try:
                outcomes["complete"] = memory_service.request_transition(
                    record.id, "handover_preparation", "COMPLETED", 1,
                )
            except ConcurrentModificationError as exc:
                outcomes["complete"] = exc

        threads = [threading.Thread(target=attach), threading.Thread(target=complete)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        errors = [k for k, v in outcomes.items() if isinstance(v, ConcurrentModificationError)]
        winners = [k for k, v in outcomes.items() if not isinstance(v, ConcurrentModificationError)]
        assert len(errors) == 1 and len(winners) == 1
        assert memory_service.get(record.id).revision == 2

        # The loser reloads and retries; both changes end up applied.
        fresh = memory_service.get(record.id)
        if errors[0] == "attach":
            final = memory_service.attach_document(fresh.id, "documentation_survey", "survey_report", fresh.revision)
        else:
            final = memory_service.request_transition(fresh.id, "handover_preparation", "COMPLETED", fresh.revision)
        assert final.revision == 3
        assert final.stage("handover_preparation").status == StageStatus.COMPLETED
        assert final.stage("documentation_survey").attached_document_types == {"survey_report"}


# ═════════════════════════════════════════════════════════════════════════
# Promotion
# ═════════════════════════════════════════════════════════════════════════


class TestPromotion:
    def test_promotion_fires_exactly_once(self, memory_store, walk):
        gateway = CountingGateway()
        svc = PipelineService(memory_store, CompletionHandler(gateway))
        record = walk(svc, svc.create_pipeline("ACQUISITION", "PLOT-7"), ACQ_STAGES)

        assert gateway.calls == [("activate", record.id)]
        assert gateway.properties["PLOT-7"]["lifecycle_status"] == "ACTIVE"
        with pytest.raises(PipelineClosedError):
            svc.request_transition(record.id, "property_transfer", "IN_PROGRESS", record.revision)
        with pytest.raises(PipelineClosedError):
            svc.attach_document(record.id, "property_transfer", "extra_photo", record.revision)
        assert len(gateway.calls) == 1
        actions = [e.action for e in memory_store.audit_trail if e.pipeline_id == record.id]
        assert actions.count("pipeline.complete") == 1

    def test_failed_promotion_rolls_back_then_retry(self, memory_service, memory_store, gateway, walk):
        _seed(gateway, "UNIT-9")
        record = memory_service.create_pipeline("DISPOSAL", "UNIT-9")
        gateway.properties["UNIT-9"]["lifecycle_status"] = "SOLD"
        record = walk(memory_service, record, DISP_STAGES[:7])
        record = memory_service.attach_document(record.id, "title_transfer", "registered_title", record.revision)
        record = memory_service.request_transition(record.id, "title_transfer", "IN_PROGRESS", record.revision)
        before = memory_store.load(record.id)
        trail_len = len(memory_store.audit_trail)

        with pytest.raises(PromotionFailedError):
            memory_service.request_transition(record.id, "title_transfer", "COMPLETED", before.revision)

        assert memory_store.load(record.id) is before
        assert len(memory_store.audit_trail) == trail_len

        gateway.properties["UNIT-9"]["lifecycle_status"] = "ACTIVE"
        done = memory_service.request_transition(record.id, "title_transfer", "COMPLETED", before.revision)
        assert done.overall_status == OverallStatus.COMPLETED
        assert done.overall_progress == 100
        assert gateway.properties["UNIT-9"]["lifecycle_status"] == "SOLD"

    def test_event_published_after_commit(self, memory_store, gateway, walk):
        publisher = EventPublisher()
        seen = []
        publisher.subscribe(lambda event: seen.append((event, memory_store.load(event.pipeline_id).revision)))
        svc = PipelineService(memory_store, CompletionHandler(gateway), publisher=publisher)
        record = walk(svc, svc.create_pipeline("ACQUISITION", "PLOT-3"), ACQ_STAGES)

        assert len(seen) == 1
        event, revision_seen = seen[0]
        assert event.pipeline_id == record.id
        assert event.direction == Direction.ACQUISITION
        assert event.asset_reference == "PLOT-3"
        assert revision_seen == record.revision

    def test_failing_listener_does_not_break_completion(self, memory_store, gateway, walk, caplog):
        publisher = EventPublisher()

        def broken(event):
            raise RuntimeError("mail server down")

        publisher.subscribe(broken)
        svc = PipelineService(memory_store, CompletionHandler(gateway), publisher=publisher)
        with caplog.at_level("ERROR"):
            record = walk(svc, svc.create_pipeline("ACQUISITION", "PLOT-4"), ACQ_STAGES)
        assert record.overall_status == OverallStatus.COMPLETED
        assert "failed" in caplog.text


# ═════════════════════════════════════════════════════════════════════════
# One open pipeline per asset
# ═════════════════════════════════════════════════════════════════════════


class TestAssetExclusivity:
    def test_second_disposal_cannot_overwrite_first_sale(self, memory_service, gateway, walk):
        _seed(gateway, "HOUSE-1")
        alice = memory_service.create_pipeline(
            "DISPOSAL", "HOUSE-1",
            counterparty_info={"name": "Alice"}, financial={"negotiated_amount": 100},
        )
        with pytest.raises(ConflictError):
            memory_service.create_pipeline(
                "DISPOSAL", "HOUSE-1",
                counterparty_info={"name": "Bob"}, financial={"negotiated_amount": 50},
            )
        assert len(memory_service.list(asset_reference="HOUSE-1")) == 1

        walk(memory_service, alice, DISP_STAGES)
        with pytest.raises(ValidationError):
            memory_service.create_pipeline("DISPOSAL", "HOUSE-1", counterparty_info={"name": "Bob"})

        prop = gateway.properties["HOUSE-1"]
        assert prop["lifecycle_status"] == "SOLD"
        assert prop["sale_price"] == Decimal("100.00")
        assert prop["buyer_name"] == "Alice"

    def test_other_direction_also_blocked(self, memory_service):
        memory_service.create_pipeline("ACQUISITION", "PLOT-1")
        with pytest.raises(ConflictError):
            memory_service.create_pipeline("ACQUISITION", "PLOT-1")

    def test_disposal_needs_active_property(self, memory_service, gateway):
        with pytest.raises(ValidationError) as exc:
            memory_service.create_pipeline("DISPOSAL", "UNIT-404")
        assert "none" in exc.value.details["asset_reference"]

        _seed(gateway, "UNIT-5", status="PIPELINE")
        with pytest.raises(ValidationError):
            memory_service.create_pipeline("DISPOSAL", "UNIT-5")
        assert memory_service.list() == []

    def test_cancel_frees_asset_and_reinstate_rechecks(self, memory_service, gateway):
        _seed(gateway, "UNIT-12")
        first = memory_service.create_pipeline("DISPOSAL", "UNIT-12")
        first = memory_service.cancel(first.id, first.revision, "buyer withdrew")
        second = memory_service.create_pipeline("DISPOSAL", "UNIT-12")

        with pytest.raises(ConflictError):
            memory_service.reinstate(first.id, first.revision)
        assert memory_service.get(first.id).overall_status == OverallStatus.CANCELLED

        memory_service.cancel(second.id, second.revision)
        reopened = memory_service.reinstate(first.id, first.revision)
        assert reopened.overall_status == OverallStatus.NOT_STARTED


class TestPropertyGateway:
    def test_mark_transferred_records_buyer_and_sells_once(self):
        gateway = InMemoryPropertyGateway({"UNIT-3": {"reference": "UNIT-3", "lifecycle_status": "ACTIVE"}})
        record = create_record(
            Direction.DISPOSAL, "UNIT-3",
            counterparty_info={"buyer_name": "Jane Wanjiru"}, financial={"negotiated_amount": 900},
            now=T0,
        )
        assert gateway.mark_transferred(record) == "UNIT-3"
        assert gateway.properties["UNIT-3"]["buyer_name"] == "Jane Wanjiru"
        assert gateway.lifecycle_status("UNIT-3") == "SOLD"

        with pytest.raises(ValidationError):
            gateway.mark_transferred(record)

    def test_lifecycle_status_unknown(self):
        assert InMemoryPropertyGateway().lifecycle_status("nope") is None
