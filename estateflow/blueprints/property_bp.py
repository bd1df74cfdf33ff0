"""
Property Blueprint — read access to live properties.

Properties are created and closed out by pipeline promotion; this surface
only lists and fetches them.

Endpoints:
    GET /api/v1/properties                 ?lifecycle_status=&property_source=
                                           &handover_status=&limit=&offset=
    GET /api/v1/properties/<id>
"""

import logging

from flask import Blueprint, jsonify, request

from estateflow.blueprints import paginate_query
from estateflow.core.exceptions import NotFoundError
from estateflow.models.property import HANDOVER_STATUSES, LIFECYCLE_STATUSES, PROPERTY_SOURCES, Property
from estateflow.services.property_service import SqlPropertyGateway

logger = logging.getLogger(__name__)

property_bp = Blueprint("properties", __name__, url_prefix="/api/v1/properties")

_FILTERS = {
    "lifecycle_status": LIFECYCLE_STATUSES,
    "property_source": PROPERTY_SOURCES,
    "handover_status": HANDOVER_STATUSES,
}


@property_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return jsonify({"error": str(error)}), 404


@property_bp.route("", methods=["GET"])
def list_properties():
    q = Property.query
    for field, allowed in _FILTERS.items():
        value = (request.args.get(field) or "").upper()
        if not value:
            continue
        if value not in allowed:
            return jsonify({"error": f"{field} must be one of {sorted(allowed)}"}), 400
        q = q.filter_by(**{field: value})
    items, total = paginate_query(q.order_by(Property.reference))
    return jsonify({"items": [p.to_dict() for p in items], "total": total})


@property_bp.route("/<int:property_id>", methods=["GET"])
def get_property(property_id):
    prop = SqlPropertyGateway.get_property(property_id)
    return jsonify(prop.to_dict())
