"""
Assessment records — scheduling and results for exams and defenses.

Only administrators and committee members may write these records. The
advancement engine reads ``overall_result`` for the comprehensive-exam,
synopsis-defense and thesis-defense stage predicates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from phdtrack.auth import Actor, require_role
from phdtrack.core.exceptions import ConflictError, NotFoundError, ValidationError
from phdtrack.models import db
from phdtrack.models.assessment import (
    DECIDED_RESULTS,
    DEFENSE_TYPES,
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    ComprehensiveExam,
    ThesisDefense,
)
from phdtrack.models.auth import ROLE_ADMIN, ROLE_GEC
from phdtrack.services.helpers.store import guarded_store
from phdtrack.services.notification import NotificationEvent
from phdtrack.services.submission_service import get_student

logger = logging.getLogger(__name__)

_DEFENSE_LABEL = {
    "synopsis": "Synopsis Defense",
    "in_house": "In-house Thesis Defense",
    "public": "Public Thesis Defense",
}


def _parse_when(value, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be an ISO-8601 datetime", details={field: "invalid datetime"}) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_result(result: str) -> None:
    if result not in DECIDED_RESULTS:
        raise ValidationError("result must be pass or fail", details={"result": result})


def _result_event(student_id: int, title: str, passed: bool) -> NotificationEvent:
    return NotificationEvent(
        recipient_id=student_id,
        title=f"{title} {'Passed' if passed else 'Not Passed'}",
        message=(
            f"Your {title.lower()} result has been recorded as "
            f"{'pass' if passed else 'fail'}."
        ),
        severity="success" if passed else "warning",
        category="assessment",
        action_required=not passed,
        action_url="/workflow",
    )


# ── Comprehensive exam ───────────────────────────────────────────────────────


def schedule_comprehensive_exam(student_id: int, exam_date, actor: Actor, venue: str = ""):
    require_role(actor, ROLE_ADMIN, ROLE_GEC)
    get_student(student_id)
    when = _parse_when(exam_date, "exam_date")

    with guarded_store("schedule_exam", student_id=student_id):
        exam = ComprehensiveExam(student_id=student_id, exam_date=when, venue=venue or "")
        db.session.add(exam)
        db.session.commit()

    event = NotificationEvent(
        recipient_id=student_id,
        title="Comprehensive Exam Scheduled",
        message=f"Your comprehensive exam is scheduled for {when:%Y-%m-%d %H:%M} UTC"
                + (f" at {venue}." if venue else "."),
        category="assessment",
    )
    return exam.to_dict(), [event]


def record_exam_result(exam_id: int, result: str, actor: Actor, remarks: str | None = None):
    require_role(actor, ROLE_ADMIN, ROLE_GEC)
    _check_result(result)

    with guarded_store("record_exam_result", exam_id=exam_id):
        exam = db.session.get(ComprehensiveExam, exam_id)
        if exam is None:
            raise NotFoundError(resource="ComprehensiveExam", resource_id=exam_id)
        if exam.exam_status == SESSION_CANCELLED:
            raise ConflictError("ComprehensiveExam", "exam_status", exam.exam_status,
                                message="Cannot record a result for a cancelled exam")
        exam.overall_result = result
        exam.exam_status = SESSION_COMPLETED
        exam.remarks = remarks
        exam.recorded_by_id = actor.id
        db.session.commit()

    logger.info("Comprehensive exam %s recorded as %s", exam_id, result,
                extra={"student_id": exam.student_id, "operation": "record_exam_result"})
    return exam.to_dict(), [_result_event(exam.student_id, "Comprehensive Exam", result == "pass")]


def list_exams(student_id: int) -> list[dict]:
    rows = db.session.execute(
        select(ComprehensiveExam)
        .where(ComprehensiveExam.student_id == student_id)
        .order_by(ComprehensiveExam.exam_date.desc(), ComprehensiveExam.id.desc())
    ).scalars().all()
    return [e.to_dict() for e in rows]


# ── Defenses ─────────────────────────────────────────────────────────────────


def schedule_defense(student_id: int, defense_type: str, scheduled_date, actor: Actor, venue: str = ""):
    require_role(actor, ROLE_ADMIN, ROLE_GEC)
    if defense_type not in DEFENSE_TYPES:
        raise ValidationError("defense_type must be synopsis, in_house or public",
                              details={"defense_type": defense_type})
    get_student(student_id)
    when = _parse_when(scheduled_date, "scheduled_date")

    with guarded_store("schedule_defense", student_id=student_id):
        defense = ThesisDefense(
            student_id=student_id,
            defense_type=defense_type,
            scheduled_date=when,
            venue=venue or "",
        )
        db.session.add(defense)
        db.session.commit()

    label = _DEFENSE_LABEL[defense_type]
    event = NotificationEvent(
        recipient_id=student_id,
        title=f"{label} Scheduled",
        message=f"Your {label.lower()} is scheduled for {when:%Y-%m-%d %H:%M} UTC"
                + (f" at {venue}." if venue else "."),
        category="assessment",
    )
    return defense.to_dict(), [event]


def record_defense_result(defense_id: int, result: str, actor: Actor, remarks: str | None = None):
    require_role(actor, ROLE_ADMIN, ROLE_GEC)
    _check_result(result)

    with guarded_store("record_defense_result", defense_id=defense_id):
        defense = db.session.get(ThesisDefense, defense_id)
        if defense is None:
            raise NotFoundError(resource="ThesisDefense", resource_id=defense_id)
        if defense.defense_status == SESSION_CANCELLED:
            raise ConflictError("ThesisDefense", "defense_status", defense.defense_status,
                                message="Cannot record a result for a cancelled defense")
        defense.overall_result = result
        defense.defense_status = SESSION_COMPLETED
        defense.remarks = remarks
        defense.recorded_by_id = actor.id
        db.session.commit()

    logger.info("%s defense %s recorded as %s", defense.defense_type, defense_id, result,
                extra={"student_id": defense.student_id, "operation": "record_defense_result"})
    label = _DEFENSE_LABEL[defense.defense_type]
    return defense.to_dict(), [_result_event(defense.student_id, label, result == "pass")]


def list_defenses(student_id: int) -> list[dict]:
    rows = db.session.execute(
        select(ThesisDefense)
        .where(ThesisDefense.student_id == student_id)
        .order_by(ThesisDefense.scheduled_date.desc(), ThesisDefense.id.desc())
    ).scalars().all()
    return [d.to_dict() for d in rows]
