"""
PhD Progress Tracker
Blueprint registry and shared view helpers.
"""

from flask import jsonify, request

from phdtrack.services.notification import NotificationService


def pagination_args(default_limit=50, max_limit=200):
    """Read limit/offset pagination from the query string.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = min(max(int(request.args.get("limit", default_limit)), 1), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def json_body() -> dict:
    """Request JSON as a dict; non-object bodies read as empty."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def respond(result, events=None, status=200):
    """Dispatch post-commit notification events, then serialise ``result``."""
    if events:
        NotificationService.dispatch(events)
    return jsonify(result), status
