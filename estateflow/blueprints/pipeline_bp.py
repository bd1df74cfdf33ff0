"""
Pipeline Blueprint — acquisition & disposal stage pipelines.

Endpoints:
  Pipeline:      GET/POST /pipelines, GET /pipelines/<id>
  Lifecycle:     POST /pipelines/<id>/transition
                 POST /pipelines/<id>/cancel
                 POST /pipelines/<id>/reinstate
  Stage notes:   PUT  /pipelines/<id>/stages/<stage_id>/notes
  Documents:     POST/DELETE /pipelines/<id>/documents
                 GET  /pipelines/<id>/documents/report
  Financials:    PUT  /pipelines/<id>/financial
                 GET  /pipelines/<id>/financial/summary
                 POST /pipelines/<id>/financial/costs, DELETE .../costs/<entry_id>
                 POST /pipelines/<id>/financial/payments, DELETE .../payments/<receipt_id>
  Registry:      GET  /pipelines/stages/<direction>

Every mutating endpoint requires the ``revision`` the caller last read.
A stale revision yields 409 with the current revision in the body; the
caller reloads and retries. The acting user is taken from the ``X-Actor``
header (identity is resolved upstream).
"""

import logging

from flask import Blueprint, jsonify, request

from estateflow.core.exceptions import ConflictError, NotFoundError, PipelineError, ValidationError
from estateflow.services.pipeline_service import get_pipeline_service

logger = logging.getLogger(__name__)

pipeline_bp = Blueprint("pipelines", __name__, url_prefix="/api/v1/pipelines")


def _actor(data: dict | None = None) -> str | None:
    return request.headers.get("X-Actor") or (data or {}).get("actor") or None


def _record_json(record):
    return record.to_dict(registry=get_pipeline_service().registry)


# ── Error handlers ────────────────────────────────────────────────────────────


@pipeline_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@pipeline_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"error": str(error), "details": error.details}), 422


@pipeline_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return jsonify({"error": str(error), "details": {error.field: error.value}}), 409


@pipeline_bp.errorhandler(PipelineError)
def _handle_pipeline_error(error: PipelineError):
    return jsonify({"error": str(error), "details": error.details}), error.status_code


@pipeline_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in pipeline_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


# ═════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/stages/<direction>", methods=["GET"])
def list_stages(direction):
    """Stage definitions and ordering policy for one direction."""
    entry = get_pipeline_service().registry.entry(direction)
    return jsonify(entry.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Pipeline CRUD
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("", methods=["GET"])
def list_pipelines():
    """List pipelines, optionally filtered by ?direction=, ?status= and ?asset_reference=."""
    records = get_pipeline_service().list(
        direction=request.args.get("direction"),
        status=request.args.get("status"),
        asset_reference=request.args.get("asset_reference"),
    )
    return jsonify({"items": [_record_json(r) for r in records], "total": len(records)})


@pipeline_bp.route("", methods=["POST"])
def create_pipeline():
    """
    Body: {direction, asset_reference, counterparty_info?, financial?,
           target_completion_date?}
    """
    data = request.get_json(silent=True) or {}
    if not data.get("direction"):
        return jsonify({"error": "direction is required"}), 400
    if not (data.get("asset_reference") or "").strip():
        return jsonify({"error": "asset_reference is required"}), 400

    record = get_pipeline_service().create_pipeline(
        data["direction"],
        data["asset_reference"],
        counterparty_info=data.get("counterparty_info"),
        financial=data.get("financial"),
        target_completion_date=data.get("target_completion_date"),
        actor=_actor(data),
    )
    return jsonify(_record_json(record)), 201


@pipeline_bp.route("/<pipeline_id>", methods=["GET"])
def get_pipeline(pipeline_id):
    record = get_pipeline_service().get(pipeline_id)
    return jsonify(_record_json(record))


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/<pipeline_id>/transition", methods=["POST"])
def transition_stage(pipeline_id):
    """Body: {stage_id, status, revision, notes?}"""
    data = request.get_json(silent=True) or {}
    if not data.get("stage_id") or not data.get("status"):
        return jsonify({"error": "stage_id and status are required"}), 400

    record = get_pipeline_service().request_transition(
        pipeline_id,
        data["stage_id"],
        data["status"],
        data.get("revision"),
        notes=data.get("notes"),
        actor=_actor(data),
    )
    return jsonify(_record_json(record))


@pipeline_bp.route("/<pipeline_id>/stages/<stage_id>/notes", methods=["PUT"])
def annotate_stage(pipeline_id, stage_id):
    """Body: {notes, revision}"""
    data = request.get_json(silent=True) or {}
    record = get_pipeline_service().annotate_stage(
        pipeline_id, stage_id, data.get("notes"), data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record))


@pipeline_bp.route("/<pipeline_id>/cancel", methods=["POST"])
def cancel_pipeline(pipeline_id):
    """Body: {revision, reason?}. Cancelling twice returns the cancelled record."""
    data = request.get_json(silent=True) or {}
    record = get_pipeline_service().cancel(
        pipeline_id, data.get("revision"), data.get("reason"), actor=_actor(data),
    )
    return jsonify(_record_json(record))


@pipeline_bp.route("/<pipeline_id>/reinstate", methods=["POST"])
def reinstate_pipeline(pipeline_id):
    """Body: {revision}"""
    data = request.get_json(silent=True) or {}
    record = get_pipeline_service().reinstate(pipeline_id, data.get("revision"), actor=_actor(data))
    return jsonify(_record_json(record))


# ═════════════════════════════════════════════════════════════════════════
# Documents
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/<pipeline_id>/documents", methods=["POST"])
def attach_document(pipeline_id):
    """Body: {stage_id, document_type, revision}"""
    data = request.get_json(silent=True) or {}
    if not data.get("stage_id") or not data.get("document_type"):
        return jsonify({"error": "stage_id and document_type are required"}), 400
    record = get_pipeline_service().attach_document(
        pipeline_id, data["stage_id"], data["document_type"], data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record))


@pipeline_bp.route("/<pipeline_id>/documents", methods=["DELETE"])
def detach_document(pipeline_id):
    """Body: {stage_id, document_type, revision}"""
    data = request.get_json(silent=True) or {}
    if not data.get("stage_id") or not data.get("document_type"):
        return jsonify({"error": "stage_id and document_type are required"}), 400
    record = get_pipeline_service().detach_document(
        pipeline_id, data["stage_id"], data["document_type"], data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record))


@pipeline_bp.route("/<pipeline_id>/documents/report", methods=["GET"])
def document_report(pipeline_id):
    report = get_pipeline_service().document_report(pipeline_id)
    return jsonify({
        "pipeline_id": pipeline_id,
        "stages": report,
        "satisfied_count": sum(1 for s in report if s["satisfied"]),
    })


# ═════════════════════════════════════════════════════════════════════════
# Financials
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/<pipeline_id>/financial", methods=["PUT"])
def update_financial(pipeline_id):
    """Body: {revision, asking_amount?, negotiated_amount?, deposit_amount?, total_cost?}"""
    data = request.get_json(silent=True) or {}
    fields = {k: v for k, v in data.items() if k not in ("revision", "actor")}
    record = get_pipeline_service().update_financials(
        pipeline_id, fields, data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record))


@pipeline_bp.route("/<pipeline_id>/financial/summary", methods=["GET"])
def financial_summary(pipeline_id):
    return jsonify(get_pipeline_service().financial_summary(pipeline_id))


@pipeline_bp.route("/<pipeline_id>/financial/costs", methods=["POST"])
def add_cost_entry(pipeline_id):
    """Body: {revision, category, amount, description?, payment_reference?, incurred_on?}"""
    data = request.get_json(silent=True) or {}
    fields = {k: v for k, v in data.items() if k not in ("revision", "actor")}
    record = get_pipeline_service().add_cost_entry(
        pipeline_id, fields, data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record)), 201


@pipeline_bp.route("/<pipeline_id>/financial/costs/<entry_id>", methods=["DELETE"])
def remove_cost_entry(pipeline_id, entry_id):
    """Body: {revision}"""
    data = request.get_json(silent=True) or {}
    record = get_pipeline_service().remove_cost_entry(
        pipeline_id, entry_id, data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record))


@pipeline_bp.route("/<pipeline_id>/financial/payments", methods=["POST"])
def add_payment_receipt(pipeline_id):
    """Body: {revision, amount, payment_method?, payment_reference?, paid_on?, notes?}"""
    data = request.get_json(silent=True) or {}
    fields = {k: v for k, v in data.items() if k not in ("revision", "actor")}
    record = get_pipeline_service().add_payment_receipt(
        pipeline_id, fields, data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record)), 201


@pipeline_bp.route("/<pipeline_id>/financial/payments/<receipt_id>", methods=["DELETE"])
def remove_payment_receipt(pipeline_id, receipt_id):
    """Body: {revision}"""
    data = request.get_json(silent=True) or {}
    record = get_pipeline_service().remove_payment_receipt(
        pipeline_id, receipt_id, data.get("revision"), actor=_actor(data),
    )
    return jsonify(_record_json(record))
