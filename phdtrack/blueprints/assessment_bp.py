"""
Assessment blueprint — comprehensive exams and thesis defenses.

Endpoints:
    GET  /api/v1/students/<id>/exams
    POST /api/v1/students/<id>/exams           {exam_date, venue?}
    POST /api/v1/exams/<id>/result             {result: pass|fail, remarks?}
    GET  /api/v1/students/<id>/defenses
    POST /api/v1/students/<id>/defenses        {defense_type, scheduled_date, venue?}
    POST /api/v1/defenses/<id>/result          {result: pass|fail, remarks?}
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify

import phdtrack.services.assessment_service as assessments
from phdtrack.auth import ensure_can_view_student, require_actor
from phdtrack.blueprints import json_body, respond
from phdtrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

assessment_bp = Blueprint("assessment_bp", __name__, url_prefix="/api/v1")


@assessment_bp.route("/students/<int:student_id>/exams", methods=["GET"])
def list_exams(student_id):
    actor = require_actor()
    ensure_can_view_student(actor, student_id)
    return jsonify({"items": assessments.list_exams(student_id)}), 200


@assessment_bp.route("/students/<int:student_id>/exams", methods=["POST"])
def schedule_exam(student_id):
    actor = require_actor()
    data = json_body()
    if not data.get("exam_date"):
        return api_error(E.VALIDATION_REQUIRED, "exam_date is required")
    exam, events = assessments.schedule_comprehensive_exam(
        student_id, data["exam_date"], actor, venue=data.get("venue", ""),
    )
    return respond(exam, events, 201)


@assessment_bp.route("/exams/<int:exam_id>/result", methods=["POST"])
def exam_result(exam_id):
    actor = require_actor()
    data = json_body()
    exam, events = assessments.record_exam_result(exam_id, data.get("result"), actor, data.get("remarks"))
    return respond(exam, events)


@assessment_bp.route("/students/<int:student_id>/defenses", methods=["GET"])
def list_defenses(student_id):
    actor = require_actor()
    ensure_can_view_student(actor, student_id)
    return jsonify({"items": assessments.list_defenses(student_id)}), 200


@assessment_bp.route("/students/<int:student_id>/defenses", methods=["POST"])
def schedule_defense(student_id):
    actor = require_actor()
    data = json_body()
    if not data.get("defense_type") or not data.get("scheduled_date"):
        return api_error(E.VALIDATION_REQUIRED, "defense_type and scheduled_date are required")
    defense, events = assessments.schedule_defense(
        student_id, data["defense_type"], data["scheduled_date"], actor, venue=data.get("venue", ""),
    )
    return respond(defense, events, 201)


@assessment_bp.route("/defenses/<int:defense_id>/result", methods=["POST"])
def defense_result(defense_id):
    actor = require_actor()
    data = json_body()
    defense, events = assessments.record_defense_result(
        defense_id, data.get("result"), actor, data.get("remarks"),
    )
    return respond(defense, events)
