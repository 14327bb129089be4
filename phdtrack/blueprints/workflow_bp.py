"""
Workflow blueprint — stage status, advancement and reporting.

Endpoint groups:
  Catalog        GET  /api/v1/workflow/stages
  Status         GET  /api/v1/students/<id>/workflow
                 GET  /api/v1/students/<id>/available-forms
  Transitions    POST /api/v1/students/<id>/workflow/advance
                 POST /api/v1/students/<id>/workflow/complete
                 PUT  /api/v1/students/<id>/workflow/semester
  Reporting      GET  /api/v1/workflow/analytics
                 GET  /api/v1/workflow/attention

Identity comes from ``g.actor`` (see phdtrack.auth). Service layer owns all
business rules and commits; errors map to JSON via the app-level handlers.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

import phdtrack.services.workflow_service as wfs
from phdtrack.auth import ensure_can_view_student, require_actor, require_role
from phdtrack.blueprints import json_body, respond
from phdtrack.models.auth import ROLE_ADMIN, ROLE_GEC, ROLE_SUPERVISOR
from phdtrack.services.stage_catalog import CATALOG
from phdtrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")


@workflow_bp.route("/workflow/stages", methods=["GET"])
def list_stages():
    """Ordered stage catalog with each stage's required forms."""
    return jsonify({"stages": CATALOG.to_list()}), 200


# ═════════════════════════════════════════════════════════════════════════
# Student status
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/students/<int:student_id>/workflow", methods=["GET"])
def get_workflow(student_id):
    actor = require_actor()
    ensure_can_view_student(actor, student_id)
    status, events = wfs.get_workflow_status(student_id)
    return respond(status, events)


@workflow_bp.route("/students/<int:student_id>/available-forms", methods=["GET"])
def available_forms(student_id):
    actor = require_actor()
    ensure_can_view_student(actor, student_id)
    forms = wfs.get_available_forms(student_id)
    return jsonify({"items": forms, "total": len(forms)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/students/<int:student_id>/workflow/advance", methods=["POST"])
def advance(student_id):
    """Advance to the next stage.

    Body: {current_stage}
    The stage the caller believes is current; a stale value is rejected.
    """
    actor = require_actor()
    data = json_body()
    current_stage = (data.get("current_stage") or "").strip()
    if not current_stage:
        return api_error(E.VALIDATION_REQUIRED, "current_stage is required")
    progress, events = wfs.advance(student_id, current_stage, actor)
    return respond(progress, events)


@workflow_bp.route("/students/<int:student_id>/workflow/complete", methods=["POST"])
def complete(student_id):
    actor = require_actor()
    progress, events = wfs.complete_program(student_id, actor)
    return respond(progress, events)


@workflow_bp.route("/students/<int:student_id>/workflow/semester", methods=["PUT"])
def update_semester(student_id):
    """Body: {semester: int, academic_year: "YYYY-YYYY"}"""
    actor = require_actor()
    data = json_body()
    if "semester" not in data or "academic_year" not in data:
        return api_error(E.VALIDATION_REQUIRED, "semester and academic_year are required")
    progress, events = wfs.update_semester(student_id, data["semester"], data["academic_year"], actor)
    return respond(progress, events)


# ═════════════════════════════════════════════════════════════════════════
# Reporting
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow/analytics", methods=["GET"])
def analytics():
    actor = require_actor()
    require_role(actor, ROLE_ADMIN)
    return jsonify(wfs.get_workflow_analytics()), 200


@workflow_bp.route("/workflow/attention", methods=["GET"])
def attention():
    """Students stuck beyond the threshold. Query params: threshold_days (optional)."""
    actor = require_actor()
    require_role(actor, ROLE_ADMIN, ROLE_SUPERVISOR, ROLE_GEC)
    raw = request.args.get("threshold_days")
    if raw is None:
        threshold = current_app.config.get("ATTENTION_THRESHOLD_DAYS", 90)
    else:
        try:
            threshold = int(raw)
        except ValueError:
            threshold = -1
    if threshold < 0:
        return api_error(E.VALIDATION_INVALID, "threshold_days must be a non-negative integer")
    items = wfs.get_students_requiring_attention(threshold)
    return jsonify({"threshold_days": threshold, "items": items, "total": len(items)}), 200
