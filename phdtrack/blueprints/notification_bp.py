"""
PhD Progress Tracker
Notification & Scheduling Blueprint.

Provides:
    - The caller's notification inbox (list, unread count, mark read, delete)
    - Scheduled job listing and manual trigger (administrators)
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from phdtrack.auth import require_actor, require_role
from phdtrack.blueprints import pagination_args
from phdtrack.models.auth import ROLE_ADMIN
from phdtrack.services.notification import NotificationService
from phdtrack.services.scheduler_service import SchedulerService, get_registered_jobs
from phdtrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  INBOX
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Query params: unread_only, limit, offset"""
    actor = require_actor()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit, offset = pagination_args()
    items, total = NotificationService.list_for_recipient(
        actor.id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    actor = require_actor()
    return jsonify({"unread_count": NotificationService.unread_count(actor.id)}), 200


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    actor = require_actor()
    notif = NotificationService.mark_read(nid, actor.id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict()), 200


@notification_bp.route("/notifications/<int:nid>", methods=["DELETE"])
def delete_notification(nid):
    actor = require_actor()
    if not NotificationService.delete(nid, actor.id):
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify({"deleted": True, "id": nid}), 200


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    actor = require_actor()
    count = NotificationService.mark_all_read(actor.id)
    return jsonify({"marked_read": count}), 200


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/jobs", methods=["GET"])
def list_jobs():
    actor = require_actor()
    require_role(actor, ROLE_ADMIN)
    return jsonify({"items": SchedulerService.list_jobs()}), 200


@notification_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Trigger a registered job immediately."""
    actor = require_actor()
    require_role(actor, ROLE_ADMIN)
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    logger.info("Job %s triggered by user %s", job_name, actor.id, extra={"operation": job_name})
    result = SchedulerService.run_job(job_name)
    status = 200 if result["status"] == "success" else 500
    return jsonify(result), status
