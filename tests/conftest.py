"""
Shared pytest fixtures for the EstateFlow test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - service: the app's SQL-backed PipelineService
    - memory_service: PipelineService over the in-memory store and gateway
"""

from datetime import datetime, timedelta, timezone

import pytest

from estateflow import create_app
from estateflow.models import db as _db
from estateflow.services.completion_handler import CompletionHandler
from estateflow.services.pipeline_service import PipelineService, get_pipeline_service
from estateflow.services.pipeline_store import InMemoryPipelineStore
from estateflow.services.property_service import InMemoryPropertyGateway


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def service(app):
    """SQL-backed service registered by the app factory."""
    return get_pipeline_service()


# ── In-memory fixtures ───────────────────────────────────────────────────


class StepClock:
    """Deterministic clock: every call advances one minute."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


@pytest.fixture()
def gateway():
    return InMemoryPropertyGateway()


@pytest.fixture()
def memory_store():
    return InMemoryPipelineStore()


@pytest.fixture()
def memory_service(memory_store, gateway):
    return PipelineService(memory_store, CompletionHandler(gateway), clock=StepClock())


# ── Scenario helpers ─────────────────────────────────────────────────────


def _walk(svc, record, stage_ids, actor="agent-1"):
    """Attach required documents and complete each stage in turn via the service."""
    for stage_id in stage_ids:
        definition = svc.registry.get_stage(record.direction, stage_id)
        for doc in sorted(definition.required_document_types):
            record = svc.attach_document(record.id, stage_id, doc, record.revision, actor=actor)
        if definition.required_document_types:
            record = svc.request_transition(record.id, stage_id, "IN_PROGRESS", record.revision, actor=actor)
        record = svc.request_transition(record.id, stage_id, "COMPLETED", record.revision, actor=actor)
    return record


@pytest.fixture()
def walk():
    """``walk(service, record, stage_ids)`` → record after completing those stages."""
    return _walk
