"""
Forms blueprint — form catalog, drafts, submissions and channel decisions.

Endpoint groups:
  Form types      GET  /api/v1/form-types
                  GET  /api/v1/form-types/analytics
                  GET  /api/v1/form-types/<code>/prerequisites
  Drafts          GET  /api/v1/form-types/<code>/draft
                  PUT  /api/v1/form-types/<code>/draft
  Submissions     POST /api/v1/submissions
                  GET  /api/v1/submissions
                  GET  /api/v1/submissions/<id>
  Decisions       POST /api/v1/submissions/<id>/decision
                  GET  /api/v1/approvals/pending
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import phdtrack.services.submission_service as subs
import phdtrack.services.workflow_service as wfs
from phdtrack.auth import ensure_can_view_student, require_actor, require_role
from phdtrack.blueprints import json_body, pagination_args, respond
from phdtrack.core.exceptions import AuthorizationError
from phdtrack.models.auth import ROLE_ADMIN
from phdtrack.models.workflow import SUBMISSION_STATUSES
from phdtrack.services.prerequisite_service import check_prerequisites
from phdtrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

forms_bp = Blueprint("forms_bp", __name__, url_prefix="/api/v1")


def _target_student(actor) -> int:
    """Students act on themselves; staff must name ``student_id``."""
    if actor.is_student:
        return actor.id
    student_id = request.args.get("student_id", type=int)
    if student_id is None:
        raise AuthorizationError("student_id is required for staff requests")
    ensure_can_view_student(actor, student_id)
    return student_id


# ═════════════════════════════════════════════════════════════════════════
# Form types
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("/form-types", methods=["GET"])
def list_form_types():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    items = subs.list_form_types(include_inactive=include_inactive)
    return jsonify({"items": items, "total": len(items)}), 200


@forms_bp.route("/form-types/analytics", methods=["GET"])
def form_analytics():
    """Per-form-type submission figures. Query params: months (default 12)."""
    actor = require_actor()
    require_role(actor, ROLE_ADMIN)
    raw = request.args.get("months", "12")
    try:
        months = int(raw)
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "months must be an integer")
    return jsonify(wfs.get_form_analytics(months)), 200


@forms_bp.route("/form-types/<form_code>/prerequisites", methods=["GET"])
def prerequisites(form_code):
    actor = require_actor()
    student_id = _target_student(actor)
    result = check_prerequisites(student_id, form_code)
    return jsonify({"form_code": form_code, "student_id": student_id, **result}), 200


# ═════════════════════════════════════════════════════════════════════════
# Drafts
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("/form-types/<form_code>/draft", methods=["GET"])
def get_draft(form_code):
    actor = require_actor()
    student_id = _target_student(actor)
    return jsonify(subs.load_draft(student_id, form_code)), 200


@forms_bp.route("/form-types/<form_code>/draft", methods=["PUT"])
def save_draft(form_code):
    """Body: {form_data: {...}, step_number?: int, total_steps?: int}"""
    actor = require_actor()
    data = json_body()
    draft = subs.save_draft(
        actor.id,
        form_code,
        data.get("form_data", {}),
        step_number=data.get("step_number", 0),
        total_steps=data.get("total_steps", 1),
        actor=actor,
    )
    return jsonify(draft), 200


# ═════════════════════════════════════════════════════════════════════════
# Submissions
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("/submissions", methods=["POST"])
def create_submission():
    """Body: {form_code, payload, semester?, academic_year?}"""
    actor = require_actor()
    data = json_body()
    form_code = (data.get("form_code") or "").strip()
    if not form_code:
        return api_error(E.VALIDATION_REQUIRED, "form_code is required")
    submission, events = subs.submit(
        actor.id,
        form_code,
        data.get("payload"),
        actor=actor,
        semester=data.get("semester"),
        academic_year=data.get("academic_year"),
    )
    return respond(submission, events, 201)


@forms_bp.route("/submissions", methods=["GET"])
def list_submissions():
    """Query params: student_id (staff), status, form_code, limit, offset"""
    actor = require_actor()
    student_id = _target_student(actor)
    status = request.args.get("status")
    if status and status not in SUBMISSION_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"status must be one of {sorted(SUBMISSION_STATUSES)}")
    limit, offset = pagination_args()
    items, total = subs.list_submissions(
        student_id, status=status, form_code=request.args.get("form_code"), limit=limit, offset=offset,
    )
    return jsonify({"items": items, "total": total, "limit": limit, "offset": offset}), 200


@forms_bp.route("/submissions/<int:submission_id>", methods=["GET"])
def get_submission(submission_id):
    actor = require_actor()
    return jsonify(subs.get_submission(submission_id, actor)), 200


# ═════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("/submissions/<int:submission_id>/decision", methods=["POST"])
def decide(submission_id):
    """Body: {channel: admin|supervisor|gec, action: approve|reject, comment?}"""
    actor = require_actor()
    data = json_body()
    channel = (data.get("channel") or "").strip()
    action = (data.get("action") or "").strip()
    if not channel or not action:
        return api_error(E.VALIDATION_REQUIRED, "channel and action are required")
    submission, events = subs.record_decision(submission_id, channel, action, actor, data.get("comment"))
    return respond(submission, events)


@forms_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    actor = require_actor()
    items = subs.list_pending_approvals(actor)
    return jsonify({"items": items, "total": len(items)}), 200
