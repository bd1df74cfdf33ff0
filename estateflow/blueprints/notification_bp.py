"""
Notification Blueprint — in-app notifications left by pipeline promotions.

Endpoints:
    NOTIF    /api/v1/notifications                     GET
             /api/v1/notifications/unread-count        GET
             /api/v1/notifications/<id>/read           PATCH
             /api/v1/notifications/mark-all-read       POST
"""

import logging

from flask import Blueprint, jsonify, request

from estateflow.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1/notifications")


@notification_bp.route("", methods=["GET"])
def list_notifications():
    """List notifications for ?recipient= (broadcasts included), newest first."""
    recipient = request.args.get("recipient", "all")
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 500)
    offset = request.args.get("offset", 0, type=int)

    items, total = NotificationService.list_for_recipient(
        recipient=recipient, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@notification_bp.route("/unread-count", methods=["GET"])
def notification_unread_count():
    recipient = request.args.get("recipient", "all")
    return jsonify({"unread_count": NotificationService.unread_count(recipient=recipient)})


@notification_bp.route("/<int:nid>/read", methods=["PATCH"])
def mark_notification_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return jsonify({"error": "Notification not found"}), 404
    return jsonify(notif.to_dict())


@notification_bp.route("/mark-all-read", methods=["POST"])
def mark_all_notifications_read():
    data = request.get_json(silent=True) or {}
    count = NotificationService.mark_all_read(recipient=data.get("recipient", "all"))
    logger.info("Marked %d notifications read", count)
    return jsonify({"marked_read": count})
