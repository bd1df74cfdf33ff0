"""
EstateFlow
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for pipeline lifecycle events.
"""

import json
from datetime import datetime, timezone

from estateflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"pipeline", "property"}

AUDIT_ACTIONS = {
    # Pipeline lifecycle
    "pipeline.create",
    "pipeline.transition",
    "pipeline.annotate",
    "pipeline.attach_document",
    "pipeline.detach_document",
    "pipeline.update_financials",
    "pipeline.add_cost",
    "pipeline.remove_cost",
    "pipeline.add_payment",
    "pipeline.remove_payment",
    "pipeline.cancel",
    "pipeline.reinstate",
    "pipeline.complete",
    # Property promotion
    "property.activate",
    "property.transfer",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every pipeline lifecycle event.

    One row per action. ``diff_json`` carries the old→new snapshot of the
    fields the action touched.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="pipeline | property",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (UUID or int-as-string)",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="pipeline.transition | pipeline.cancel | property.activate | …",
    )
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Opaque actor id or 'system'",
    )

    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}}",
    )

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control: the row commits or rolls back with the
    pipeline write it describes.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type!r}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action!r}")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
