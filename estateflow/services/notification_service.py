"""
EstateFlow
Notification Service.

Creates and queries in-app notifications. Subscribed to the pipeline event
publisher: every committed promotion leaves a broadcast notification.
"""

import logging
from datetime import datetime, timezone

from estateflow.models import db
from estateflow.models.notification import Notification
from estateflow.services.pipeline_events import PipelineCompleted
from estateflow.services.stage_registry import Direction

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        )
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient="all"):
        """Return count of unread notifications."""
        return Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        ).filter_by(is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient="all"):
        """Mark all notifications for a recipient as read."""
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        ).filter_by(is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count

    # ── Pipeline integration ──────────────────────────────────────────────

    @staticmethod
    def notify_pipeline_completed(event: PipelineCompleted):
        """Listener for PipelineCompleted: broadcast the promotion."""
        if event.direction == Direction.ACQUISITION:
            title = f"Acquisition completed: {event.asset_reference}"
            message = "The property is now active and available for management."
        else:
            title = f"Disposal completed: {event.asset_reference}"
            message = "The property has been handed over to the buyer."
        notif = NotificationService.create(
            title=title,
            message=message,
            category="pipeline",
            severity="success",
            entity_type="pipeline",
            entity_id=event.pipeline_id,
        )
        logger.info("Notification %s created for pipeline %s", notif.id, event.pipeline_id,
                    extra={"pipeline_id": event.pipeline_id})
        return notif
