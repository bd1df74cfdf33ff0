"""
EstateFlow
HTTP blueprints: pipelines, properties, health.
"""

from flask import request


def paginate_query(query, default_limit=50, max_limit=500):
    """Slice a SQLAlchemy query by ?limit= and ?offset=.

    Bad or negative values fall back to the defaults.

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = max(min(int(request.args.get("limit", default_limit)), max_limit), 1)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return query.limit(limit).offset(offset).all(), total
