"""
Stage Advancement Engine and workflow queries.

State machine:
    states      = catalog stages, strictly linear, plus an implicit
                  "programme complete" once the last stage is closed
    transitions = forward only, one step, gated by ``can_advance``

``advance`` is a conditional UPDATE keyed on the stored ``current_stage``;
two concurrent requests for the same student cannot both succeed, and the
loser gets a ``ConflictError`` rather than a double advance.

Mutating functions return ``(result, events)`` like the submission ledger.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from phdtrack.auth import Actor, ensure_owner_or_admin
from phdtrack.core.exceptions import (
    AdvancementBlocked,
    ConflictError,
    InvalidStage,
    ValidationError,
)
from phdtrack.models import db
from phdtrack.models.assessment import (
    DEFENSE_IN_HOUSE,
    DEFENSE_PUBLIC,
    DEFENSE_SYNOPSIS,
    RESULT_PASS,
    ComprehensiveExam,
    ThesisDefense,
)
from phdtrack.models.audit import record_audit
from phdtrack.models.auth import ROLE_STUDENT, User
from phdtrack.models.workflow import (
    STATUS_APPROVED,
    SUBMISSION_STATUSES,
    FormSubmission,
    FormType,
    StageTransition,
    WorkflowProgress,
)
from phdtrack.services.helpers.store import guarded_store
from phdtrack.services.notification import NotificationEvent
from phdtrack.services.prerequisite_service import check_prerequisites, latest_statuses
from phdtrack.services.stage_catalog import CATALOG, FORM_DEFINITIONS, SUPERVISOR_CONSENT_FORM
from phdtrack.services.submission_service import get_student

logger = logging.getLogger(__name__)

_ACADEMIC_YEAR_RE = re.compile(r"^(\d{4})-(\d{4})$")
MAX_SEMESTER = 16


# ── Helpers ──────────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive values (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_since(value: datetime | None, now: datetime | None = None) -> int:
    if value is None:
        return 0
    return ((now or _now()) - as_utc(value)).days


def current_academic_year(today: datetime | None = None) -> str:
    year = (today or _now()).year
    return f"{year}-{year + 1}"


def _get_progress(student_id: int) -> WorkflowProgress | None:
    return db.session.execute(
        select(WorkflowProgress).where(WorkflowProgress.student_id == student_id)
    ).scalar_one_or_none()


def _stage_label(stage: str | None) -> str:
    return CATALOG.label(stage) if stage else "Programme Complete"


def _form_name(code: str) -> str:
    definition = FORM_DEFINITIONS.get(code)
    return definition.name if definition else code


# ═══════════════════════════════════════════════════════════════════════════
#  Eligibility
# ═══════════════════════════════════════════════════════════════════════════


def missing_stage_forms(student_id: int, stage: str) -> list[str]:
    """Required form codes for ``stage`` without an approved submission."""
    required = CATALOG.required_forms(stage)
    if not required:
        return []
    approved = set(db.session.execute(
        select(FormType.code)
        .join(FormSubmission, FormSubmission.form_type_id == FormType.id)
        .where(
            FormSubmission.student_id == student_id,
            FormSubmission.status == STATUS_APPROVED,
            FormType.code.in_(required),
        )
    ).scalars())
    return [code for code in required if code not in approved]


def _latest_exam(student_id: int) -> ComprehensiveExam | None:
    return db.session.execute(
        select(ComprehensiveExam)
        .where(ComprehensiveExam.student_id == student_id)
        .order_by(ComprehensiveExam.created_at.desc(), ComprehensiveExam.id.desc())
        .limit(1)
    ).scalars().first()


def _latest_defense(student_id: int, defense_type: str) -> ThesisDefense | None:
    return db.session.execute(
        select(ThesisDefense)
        .where(ThesisDefense.student_id == student_id, ThesisDefense.defense_type == defense_type)
        .order_by(ThesisDefense.created_at.desc(), ThesisDefense.id.desc())
        .limit(1)
    ).scalars().first()


def stage_predicate(student_id: int, stage: str) -> tuple[bool, str | None]:
    """Stage-specific gate beyond form approvals. Returns (holds, reason)."""
    if stage == "comprehensive_exam":
        exam = _latest_exam(student_id)
        if exam is None or exam.overall_result != RESULT_PASS:
            return False, "comprehensive exam not passed"
    elif stage == "synopsis_defense":
        defense = _latest_defense(student_id, DEFENSE_SYNOPSIS)
        if defense is None or defense.overall_result != RESULT_PASS:
            return False, "synopsis defense not passed"
    elif stage == "thesis_defense":
        passed = set(db.session.execute(
            select(ThesisDefense.defense_type).where(
                ThesisDefense.student_id == student_id,
                ThesisDefense.overall_result == RESULT_PASS,
            )
        ).scalars())
        if not {DEFENSE_IN_HOUSE, DEFENSE_PUBLIC} <= passed:
            return False, "in-house and public defenses must both be passed"
    return True, None


def evaluate_stage(student_id: int, stage: str) -> dict:
    missing = missing_stage_forms(student_id, stage)
    holds, reason = stage_predicate(student_id, stage)
    return {
        "can_advance": not missing and holds,
        "missing_forms": missing,
        "predicate_met": holds,
        "reason": reason if not holds else ("required forms not approved" if missing else None),
    }


def can_advance(student_id: int, stage: str) -> bool:
    if stage not in CATALOG:
        raise InvalidStage(stage)
    return evaluate_stage(student_id, stage)["can_advance"]


# ═══════════════════════════════════════════════════════════════════════════
#  Status
# ═══════════════════════════════════════════════════════════════════════════


def _ensure_progress(student_id: int):
    """Return (progress, events), creating the row on first access."""
    progress = _get_progress(student_id)
    if progress is not None:
        return progress, []

    with guarded_store("ensure_progress", student_id=student_id):
        progress = WorkflowProgress(
            student_id=student_id,
            current_stage=CATALOG.first_stage,
            stage_start_date=_now(),
            is_stage_completed=False,
            semester=1,
            academic_year=current_academic_year(),
        )
        db.session.add(progress)
        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent first query created the row; use theirs
            db.session.rollback()
            return _get_progress(student_id), []

    logger.info("Workflow initialised for student %s", student_id,
                extra={"student_id": student_id, "stage": progress.current_stage})
    welcome = NotificationEvent(
        recipient_id=student_id,
        title="Welcome to the PhD Programme",
        message=(
            f"Your PhD workflow has started at {_stage_label(progress.current_stage)}. "
            f"Begin by submitting the {_form_name(SUPERVISOR_CONSENT_FORM)} ({SUPERVISOR_CONSENT_FORM})."
        ),
        severity="info",
        category="workflow",
        action_required=True,
        action_url="/workflow",
    )
    return progress, [welcome]


def _stage_forms(student_id: int, stage: str) -> list[dict]:
    codes = CATALOG.required_forms(stage)
    statuses = latest_statuses(student_id, codes)
    return [
        {"form_code": code, "form_name": _form_name(code), "latest_status": statuses[code]}
        for code in codes
    ]


def _completion_percentage(progress: WorkflowProgress) -> float:
    done = CATALOG.ordinal(progress.current_stage)
    if progress.is_stage_completed:
        done += 1
    return round(done * 100.0 / len(CATALOG.stages), 1)


def get_workflow_status(student_id: int):
    """Current stage, stage forms and eligibility. Creates progress lazily."""
    get_student(student_id)
    progress, events = _ensure_progress(student_id)
    stage = progress.current_stage
    evaluation = evaluate_stage(student_id, stage)
    history = db.session.execute(
        select(StageTransition)
        .where(StageTransition.student_id == student_id)
        .order_by(StageTransition.completed_at.asc(), StageTransition.id.asc())
    ).scalars().all()

    status = {
        **progress.to_dict(),
        "stage_label": _stage_label(stage),
        "stage_ordinal": CATALOG.ordinal(stage),
        "total_stages": len(CATALOG.stages),
        "next_stage": CATALOG.next_stage(stage),
        "days_in_stage": days_since(progress.stage_start_date),
        "program_completed": progress.is_stage_completed and CATALOG.is_terminal(stage),
        "completion_percentage": _completion_percentage(progress),
        "stage_forms": _stage_forms(student_id, stage),
        "can_advance": evaluation["can_advance"] and not progress.is_stage_completed,
        "missing_forms": evaluation["missing_forms"],
        "blocking_reason": evaluation["reason"],
        "history": [t.to_dict() for t in history],
    }
    return status, events


def get_available_forms(student_id: int) -> list[dict]:
    """Forms of the current stage with their prerequisite state."""
    get_student(student_id)
    progress = _get_progress(student_id)
    stage = progress.current_stage if progress else CATALOG.first_stage
    codes = set(CATALOG.required_forms(stage))
    form_types = db.session.execute(
        select(FormType).where(FormType.code.in_(codes), FormType.is_active.is_(True))
    ).scalars().all()
    statuses = latest_statuses(student_id, [ft.code for ft in form_types])

    order = {code: i for i, code in enumerate(CATALOG.required_forms(stage))}
    forms = []
    for ft in sorted(form_types, key=lambda f: order[f.code]):
        prereq = check_prerequisites(student_id, ft.code)
        forms.append({
            **ft.to_dict(),
            "latest_status": statuses[ft.code],
            "prerequisites_met": prereq["met"],
            "missing_prerequisites": prereq["missing"],
        })
    return forms


# ═══════════════════════════════════════════════════════════════════════════
#  Advance
# ═══════════════════════════════════════════════════════════════════════════


def _audit_best_effort(student_id: int, action: str, actor: Actor, changes: dict | None = None) -> None:
    """Append an audit row in its own commit; failures are logged only."""
    try:
        record_audit(student_id, action, actor, changes)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Audit write failed for %s", action,
                         extra={"operation": action, "student_id": student_id})


def advance(student_id: int, current_stage: str, actor: Actor | None = None):
    """Move the student from ``current_stage`` to the next catalog stage.

    Raises:
        InvalidStage: unknown or terminal stage, or stage is not the stored one.
        AdvancementBlocked: forms or stage predicate outstanding. No mutation.
        ConflictError: another request advanced the student first.
    """
    ensure_owner_or_admin(actor, student_id)
    get_student(student_id)

    if current_stage not in CATALOG:
        raise InvalidStage(current_stage)
    if CATALOG.is_terminal(current_stage):
        raise InvalidStage(current_stage, reason="the terminal stage; use programme completion")

    progress = _get_progress(student_id)
    if progress is None or progress.current_stage != current_stage:
        stored = progress.current_stage if progress else None
        raise InvalidStage(current_stage, reason=f"not the student's current stage (current={stored})")

    evaluation = evaluate_stage(student_id, current_stage)
    if not evaluation["can_advance"]:
        raise AdvancementBlocked(current_stage, evaluation["missing_forms"], evaluation["reason"])

    next_stage = CATALOG.next_stage(current_stage)
    now = _now()
    started_at = progress.stage_start_date

    with guarded_store("advance", student_id=student_id, stage=current_stage):
        result = db.session.execute(
            update(WorkflowProgress)
            .where(
                WorkflowProgress.student_id == student_id,
                WorkflowProgress.current_stage == current_stage,
            )
            .values(
                current_stage=next_stage,
                stage_start_date=now,
                is_stage_completed=False,
                stage_completion_date=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "WorkflowProgress", "current_stage", current_stage,
                message=f"Student {student_id} is no longer at stage {current_stage}",
            )
        db.session.add(StageTransition(
            student_id=student_id,
            from_stage=current_stage,
            to_stage=next_stage,
            stage_started_at=started_at,
            completed_at=now,
            advanced_by_id=actor.id if actor else None,
        ))
        db.session.commit()

    db.session.refresh(progress)
    logger.info("Student %s advanced %s -> %s", student_id, current_stage, next_stage,
                extra={"student_id": student_id, "stage": next_stage})

    if actor is not None and actor.is_admin:
        _audit_best_effort(student_id, "workflow.advance", actor,
                           {"current_stage": {"old": current_stage, "new": next_stage}})

    forms = CATALOG.required_forms(next_stage)
    form_lines = ", ".join(f"{code} ({_form_name(code)})" for code in forms)
    message = f"You have advanced to {_stage_label(next_stage)}."
    if forms:
        message += f" Required forms: {form_lines}."
    event = NotificationEvent(
        recipient_id=student_id,
        title=f"Advanced to {_stage_label(next_stage)} Stage",
        message=message,
        severity="success",
        category="workflow",
        action_required=bool(forms),
        action_url="/workflow",
    )
    return progress.to_dict(), [event]


def complete_program(student_id: int, actor: Actor | None = None):
    """Close the terminal stage once its requirements hold."""
    ensure_owner_or_admin(actor, student_id)
    get_student(student_id)
    progress = _get_progress(student_id)
    stage = CATALOG.last_stage
    if progress is None or progress.current_stage != stage:
        raise InvalidStage(progress.current_stage if progress else CATALOG.first_stage,
                           reason="not the terminal stage")
    if progress.is_stage_completed:
        raise ConflictError("WorkflowProgress", "is_stage_completed", "true",
                            message=f"Student {student_id} has already completed the programme")

    evaluation = evaluate_stage(student_id, stage)
    if not evaluation["can_advance"]:
        raise AdvancementBlocked(stage, evaluation["missing_forms"], evaluation["reason"])

    now = _now()
    with guarded_store("complete_program", student_id=student_id, stage=stage):
        result = db.session.execute(
            update(WorkflowProgress)
            .where(
                WorkflowProgress.student_id == student_id,
                WorkflowProgress.current_stage == stage,
                WorkflowProgress.is_stage_completed.is_(False),
            )
            .values(is_stage_completed=True, stage_completion_date=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("WorkflowProgress", "is_stage_completed", "true",
                                message=f"Student {student_id} has already completed the programme")
        db.session.add(StageTransition(
            student_id=student_id,
            from_stage=stage,
            to_stage=None,
            stage_started_at=progress.stage_start_date,
            completed_at=now,
            advanced_by_id=actor.id if actor else None,
        ))
        db.session.commit()

    db.session.refresh(progress)
    logger.info("Student %s completed the programme", student_id,
                extra={"student_id": student_id, "stage": stage})
    if actor is not None and actor.is_admin:
        _audit_best_effort(student_id, "workflow.complete", actor)
    event = NotificationEvent(
        recipient_id=student_id,
        title="PhD Programme Completed",
        message="All graduation requirements are approved. Congratulations!",
        severity="success",
        category="workflow",
    )
    return progress.to_dict(), [event]


# ── Semester ─────────────────────────────────────────────────────────────────


def update_semester(student_id: int, semester, academic_year, actor: Actor | None = None):
    """Set the student's semester and academic year. Returns (progress, events)."""
    ensure_owner_or_admin(actor, student_id)
    get_student(student_id)

    errors = {}
    if not isinstance(semester, int) or isinstance(semester, bool) or not 1 <= semester <= MAX_SEMESTER:
        errors["semester"] = f"must be an integer between 1 and {MAX_SEMESTER}"
    match = _ACADEMIC_YEAR_RE.match(academic_year or "") if isinstance(academic_year, str) else None
    if match is None or int(match.group(2)) != int(match.group(1)) + 1:
        errors["academic_year"] = "must look like YYYY-YYYY with consecutive years"
    if errors:
        raise ValidationError("Invalid semester update", details=errors)

    progress, events = _ensure_progress(student_id)
    old = {"semester": progress.semester, "academic_year": progress.academic_year}
    with guarded_store("update_semester", student_id=student_id):
        progress.semester = semester
        progress.academic_year = academic_year
        db.session.commit()

    if actor is not None and actor.is_admin:
        _audit_best_effort(student_id, "workflow.update_semester", actor, {
            "semester": {"old": old["semester"], "new": semester},
            "academic_year": {"old": old["academic_year"], "new": academic_year},
        })
    return progress.to_dict(), events


# ═══════════════════════════════════════════════════════════════════════════
#  Reporting
# ═══════════════════════════════════════════════════════════════════════════


def get_workflow_analytics() -> dict:
    """Stage distribution, completion rates and approval turnaround per stage."""
    now = _now()
    rows = db.session.execute(
        select(WorkflowProgress)
        .join(User, User.id == WorkflowProgress.student_id)
        .where(User.is_active.is_(True))
    ).scalars().all()

    by_stage: dict[str, list[WorkflowProgress]] = defaultdict(list)
    for p in rows:
        by_stage[p.current_stage].append(p)

    distribution = []
    for stage in CATALOG.stages:
        members = by_stage.get(stage, [])
        days = [days_since(p.stage_start_date, now) for p in members]
        distribution.append({
            "stage": stage,
            "label": CATALOG.label(stage),
            "student_count": len(members),
            "avg_days_in_stage": round(sum(days) / len(days), 1) if days else 0.0,
        })

    completed = sum(1 for p in rows if p.is_stage_completed and CATALOG.is_terminal(p.current_stage))
    total = len(rows)
    completion = {
        "total_students": total,
        "completed_program": completed,
        "completion_rate": round(completed * 100.0 / total, 1) if total else 0.0,
        "reached_stage": {
            stage: sum(1 for p in rows if CATALOG.ordinal(p.current_stage) >= i)
            for i, stage in enumerate(CATALOG.stages)
        },
    }

    approved = db.session.execute(
        select(FormType.stage, FormSubmission.submitted_at, FormSubmission.approved_at)
        .join(FormType, FormSubmission.form_type_id == FormType.id)
        .where(FormSubmission.status == STATUS_APPROVED, FormSubmission.approved_at.is_not(None))
    ).all()
    turnaround: dict[str, list[float]] = defaultdict(list)
    for stage, submitted_at, approved_at in approved:
        delta = as_utc(approved_at) - as_utc(submitted_at)
        turnaround[stage].append(delta.total_seconds() / 86400.0)
    approval_times = [
        {
            "stage": stage,
            "approved_submissions": len(turnaround[stage]),
            "avg_approval_days": round(sum(turnaround[stage]) / len(turnaround[stage]), 2),
        }
        for stage in CATALOG.stages
        if turnaround.get(stage)
    ]

    status_counts = dict(db.session.execute(
        select(FormSubmission.status, func.count(FormSubmission.id)).group_by(FormSubmission.status)
    ).all())

    return {
        "stage_distribution": distribution,
        "completion": completion,
        "approval_times": approval_times,
        "submission_status_counts": status_counts,
    }


def _month_keys(now: datetime, months: int) -> list[str]:
    """``YYYY-MM`` keys for the last ``months`` calendar months, oldest first."""
    year, month = now.year, now.month
    keys = []
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return keys[::-1]


def get_form_analytics(months: int = 12) -> dict:
    """Per-form-type status counts and approval turnaround, plus a monthly submission trend."""
    if not isinstance(months, int) or not 1 <= months <= 60:
        raise ValidationError("months must be an integer between 1 and 60")
    now = _now()
    rows = db.session.execute(
        select(FormType.code, FormSubmission.status, FormSubmission.submitted_at, FormSubmission.approved_at)
        .join(FormType, FormSubmission.form_type_id == FormType.id)
    ).all()

    counts: dict[str, dict[str, int]] = defaultdict(lambda: dict.fromkeys(sorted(SUBMISSION_STATUSES), 0))
    turnaround: dict[str, list[float]] = defaultdict(list)
    keys = _month_keys(now, months)
    trend = dict.fromkeys(keys, 0)
    for code, status, submitted_at, approved_at in rows:
        counts[code][status] = counts[code].get(status, 0) + 1
        if status == STATUS_APPROVED and approved_at is not None and submitted_at is not None:
            delta = as_utc(approved_at) - as_utc(submitted_at)
            turnaround[code].append(delta.total_seconds() / 86400.0)
        if submitted_at is not None:
            key = as_utc(submitted_at).strftime("%Y-%m")
            if key in trend:
                trend[key] += 1

    form_types = db.session.execute(select(FormType)).scalars().all()

    def _order(ft):
        return (CATALOG.ordinal(ft.stage) if ft.stage in CATALOG else len(CATALOG.stages)), ft.code

    per_form = []
    for ft in sorted(form_types, key=_order):
        by_status = counts.get(ft.code) or dict.fromkeys(sorted(SUBMISSION_STATUSES), 0)
        days = turnaround.get(ft.code, [])
        per_form.append({
            "form_code": ft.code,
            "form_name": ft.name,
            "stage": ft.stage,
            "total_submissions": sum(by_status.values()),
            "by_status": by_status,
            "avg_approval_days": round(sum(days) / len(days), 2) if days else None,
        })

    return {
        "forms": per_form,
        "monthly_trend": [{"month": key, "submissions": trend[key]} for key in keys],
    }


def get_students_requiring_attention(threshold_days: int = 90) -> list[dict]:
    """Active students stuck in an uncompleted stage for more than ``threshold_days``."""
    if not isinstance(threshold_days, int) or threshold_days < 0:
        raise ValidationError("threshold_days must be a non-negative integer")
    now = _now()
    rows = db.session.execute(
        select(WorkflowProgress, User)
        .join(User, User.id == WorkflowProgress.student_id)
        .where(
            User.is_active.is_(True),
            User.role == ROLE_STUDENT,
            WorkflowProgress.is_stage_completed.is_(False),
        )
    ).all()

    stuck = []
    for progress, student in rows:
        started = as_utc(progress.stage_start_date)
        elapsed = now - started
        if elapsed.total_seconds() <= threshold_days * 86400:
            continue
        stuck.append((started, {
            "student_id": student.id,
            "full_name": student.full_name,
            "email": student.email,
            "current_stage": progress.current_stage,
            "stage_label": CATALOG.label(progress.current_stage),
            "stage_start_date": started.isoformat(),
            "days_in_stage": elapsed.days,
        }))
    # Longest in stage first
    stuck.sort(key=lambda item: (item[0], item[1]["student_id"]))
    return [entry for _, entry in stuck]
