"""
Submission Ledger — filing forms and recording channel decisions.

Every mutating function returns ``(result, events)`` where ``events`` is a
list of ``NotificationEvent`` to dispatch after the commit. Nothing here
talks to the notification sink directly.

Flow for ``submit``:
    form type active? -> payload shape -> prerequisites -> quota
    -> persist (required channels pending, others n/a) -> clear draft
    -> events for every approver the form needs

Flow for ``record_decision``:
    authorise actor for channel -> re-read row under lock
    -> update channel -> recompute aggregate from the full snapshot
    -> persist -> event for the owning student
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from phdtrack.auth import Actor
from phdtrack.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PrerequisitesNotMet,
    SubmissionLimitExceeded,
    ValidationError,
)
from phdtrack.models import db
from phdtrack.models.auth import ROLE_ADMIN, ROLE_GEC, ROLE_STUDENT, ROLE_SUPERVISOR, User
from phdtrack.models.workflow import (
    CHANNEL_APPROVED,
    CHANNEL_PENDING,
    CHANNEL_REJECTED,
    CHANNELS,
    OPEN_STATUSES,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    TERMINAL_STATUSES,
    FormDraft,
    FormSubmission,
    FormType,
    WorkflowProgress,
)
from phdtrack.services.approval_aggregator import aggregate, initial_channel_statuses
from phdtrack.services.helpers.store import guarded_store
from phdtrack.services.notification import NotificationEvent
from phdtrack.services.prerequisite_service import check_prerequisites
from phdtrack.services.stage_catalog import FORM_DEFINITIONS, SUPERVISOR_CONSENT_FORM

logger = logging.getLogger(__name__)

COMMITTEE_FORM = "PHDEE02-C"

DECISION_ACTIONS = {"approve": CHANNEL_APPROVED, "reject": CHANNEL_REJECTED}

_CHANNEL_ROLE = {
    "admin": ROLE_ADMIN,
    "supervisor": ROLE_SUPERVISOR,
    "gec": ROLE_GEC,
}

_CHANNEL_LABEL = {
    "admin": "Administrator",
    "supervisor": "Supervisor",
    "gec": "GEC",
}


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_student(student_id: int) -> User:
    student = db.session.get(User, student_id)
    if student is None or student.role != ROLE_STUDENT:
        raise NotFoundError(resource="Student", resource_id=student_id)
    return student


def get_form_type(form_code: str, *, active_only: bool = True) -> FormType:
    form_type = db.session.execute(
        select(FormType).where(FormType.code == form_code)
    ).scalar_one_or_none()
    if form_type is None:
        raise ValidationError(f"Unknown form type: {form_code}", details={"form_code": form_code})
    if active_only and not form_type.is_active:
        raise ValidationError(f"Form type {form_code} is not active", details={"form_code": form_code})
    return form_type


def _latest_approved(student_id: int, form_code: str) -> FormSubmission | None:
    stmt = (
        select(FormSubmission)
        .join(FormType, FormSubmission.form_type_id == FormType.id)
        .where(
            FormSubmission.student_id == student_id,
            FormType.code == form_code,
            FormSubmission.status == STATUS_APPROVED,
        )
        .order_by(FormSubmission.approved_at.desc(), FormSubmission.id.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalars().first()


def _as_user_id(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def resolve_supervisor_id(student_id: int) -> int | None:
    """Supervisor named on the student's latest approved supervisor-consent form."""
    consent = _latest_approved(student_id, SUPERVISOR_CONSENT_FORM)
    if consent is None:
        return None
    return _as_user_id((consent.payload or {}).get("supervisor_id"))


def resolve_committee_ids(student_id: int) -> set[int]:
    """Committee members named on the student's latest approved GEC formation form."""
    formation = _latest_approved(student_id, COMMITTEE_FORM)
    if formation is None:
        return set()
    members = (formation.payload or {}).get("committee_members") or []
    return set(_active_gec_ids(members))


def designated_supervisor(submission: FormSubmission) -> int | None:
    """Supervisor who must decide this submission's supervisor channel, if known."""
    # The consent form names the supervisor who must approve it
    if submission.form_type.code == SUPERVISOR_CONSENT_FORM:
        return _as_user_id((submission.payload or {}).get("supervisor_id"))
    return resolve_supervisor_id(submission.student_id)


def _active_user_ids(role: str) -> list[int]:
    return list(db.session.execute(
        select(User.id).where(User.role == role, User.is_active.is_(True)).order_by(User.id)
    ).scalars())


def _active_gec_ids(values) -> list[int]:
    """The subset of ``values`` that are ids of active GEC members."""
    if not isinstance(values, (list, tuple, set)):
        return []
    ids = {uid for uid in (_as_user_id(v) for v in values) if uid is not None}
    if not ids:
        return []
    return list(db.session.execute(
        select(User.id).where(User.id.in_(ids), User.role == ROLE_GEC, User.is_active.is_(True))
    ).scalars())


# ── Validation ───────────────────────────────────────────────────────────────


def _validate_payload(form_code: str, payload) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Form payload must be a JSON object", details={"payload": "must be an object"})

    definition = FORM_DEFINITIONS.get(form_code)
    required = definition.required_fields if definition else ()
    errors = {
        name: "is required"
        for name in required
        if payload.get(name) in (None, "", [], {})
    }
    if errors:
        raise ValidationError(f"Form {form_code} is missing required fields", details=errors)

    if form_code == SUPERVISOR_CONSENT_FORM:
        supervisor = db.session.get(User, _as_user_id(payload.get("supervisor_id")) or 0)
        if supervisor is None or supervisor.role != ROLE_SUPERVISOR or not supervisor.is_active:
            raise ValidationError(
                "supervisor_id must reference an active supervisor",
                details={"supervisor_id": "unknown supervisor"},
            )
    elif form_code == COMMITTEE_FORM:
        members = payload.get("committee_members")
        if not isinstance(members, list):
            raise ValidationError(
                "committee_members must be a list of user ids",
                details={"committee_members": "must be a list"},
            )
        valid = set(_active_gec_ids(members))
        unknown = [m for m in members if _as_user_id(m) not in valid]
        if unknown:
            raise ValidationError(
                "committee_members must reference active GEC members",
                details={"committee_members": {"unknown": unknown}},
            )
    return payload


# ═══════════════════════════════════════════════════════════════════════════
#  Submit
# ═══════════════════════════════════════════════════════════════════════════


def submit(student_id: int, form_code: str, payload, *, actor: Actor | None = None,
           semester: int | None = None, academic_year: str | None = None):
    """File a new submission of ``form_code`` for the student.

    Raises:
        ValidationError: unknown/inactive form or malformed payload.
        PrerequisitesNotMet: a prerequisite form's latest submission is not approved.
        SubmissionLimitExceeded: the non-rejected quota is used up.
        AuthorizationError: ``actor`` is not the owning student.
    """
    if actor is not None and (not actor.is_student or actor.id != student_id):
        raise AuthorizationError("Only the student may submit their own forms")

    student = get_student(student_id)
    form_type = get_form_type(form_code)
    payload = _validate_payload(form_code, payload)

    prereq = check_prerequisites(student_id, form_code)
    if not prereq["met"]:
        raise PrerequisitesNotMet(form_code, prereq["missing"])

    if semester is None or academic_year is None:
        progress = db.session.execute(
            select(WorkflowProgress).where(WorkflowProgress.student_id == student_id)
        ).scalar_one_or_none()
        if progress is not None:
            semester = semester if semester is not None else progress.semester
            academic_year = academic_year or progress.academic_year

    required = form_type.required_channels
    snapshot = initial_channel_statuses(required)

    with guarded_store("submit", student_id=student_id, form_code=form_code):
        limit = form_type.max_submissions_per_user
        if limit is not None:
            # Serialises concurrent submits of this form type until commit
            db.session.execute(
                select(FormType.id).where(FormType.id == form_type.id).with_for_update()
            )
            used = db.session.execute(
                select(func.count(FormSubmission.id)).where(
                    FormSubmission.student_id == student_id,
                    FormSubmission.form_type_id == form_type.id,
                    FormSubmission.status != STATUS_REJECTED,
                )
            ).scalar_one()
            if used >= limit:
                raise SubmissionLimitExceeded(form_code, limit)

        submission = FormSubmission(
            student_id=student_id,
            form_type_id=form_type.id,
            payload=payload,
            status=STATUS_SUBMITTED,
            semester=semester,
            academic_year=academic_year,
        )
        for ch, status in snapshot.items():
            setattr(submission, f"{ch}_status", status)
        if not required:
            submission.status = STATUS_APPROVED
            submission.approved_at = datetime.now(timezone.utc)
        db.session.add(submission)

        draft = _find_draft(student_id, form_type.id)
        if draft is not None:
            db.session.delete(draft)
        db.session.commit()

    logger.info(
        "Form %s submitted by student %s", form_code, student_id,
        extra={"student_id": student_id, "form_code": form_code, "submission_id": submission.id},
    )

    events = _approver_events(submission, form_type, student)
    if not required:
        events.append(_owner_event(submission, STATUS_APPROVED, None))
    return submission.to_dict(), events


def _approver_events(submission: FormSubmission, form_type: FormType, student: User) -> list[NotificationEvent]:
    recipients: dict[int, str] = {}
    required = form_type.required_channels

    if "admin" in required:
        for uid in _active_user_ids(ROLE_ADMIN):
            recipients.setdefault(uid, "admin")
    if "supervisor" in required:
        supervisor_id = designated_supervisor(submission)
        if supervisor_id is not None:
            recipients.setdefault(supervisor_id, "supervisor")
        else:
            logger.warning(
                "No approved supervisor for student %s; supervisor not notified", student.id,
                extra={"student_id": student.id, "form_code": form_type.code},
            )
    if "gec" in required:
        members = resolve_committee_ids(student.id) or set(_active_user_ids(ROLE_GEC))
        for uid in sorted(members):
            recipients.setdefault(uid, "gec")

    name = student.full_name or f"Student {student.id}"
    return [
        NotificationEvent(
            recipient_id=uid,
            title=f"New {form_type.name} submission",
            message=f"{name} submitted {form_type.code}; {_CHANNEL_LABEL[channel]} approval is required.",
            severity="info",
            category="submission",
            related_submission_id=submission.id,
            action_required=True,
            action_url=f"/submissions/{submission.id}",
        )
        for uid, channel in recipients.items()
    ]


# ═══════════════════════════════════════════════════════════════════════════
#  Decisions
# ═══════════════════════════════════════════════════════════════════════════


def _authorize_decision(submission: FormSubmission, channel: str, actor: Actor) -> None:
    if actor.role != _CHANNEL_ROLE[channel]:
        raise AuthorizationError(f"Role {actor.role!r} cannot decide the {channel} channel")
    if channel == "supervisor":
        designated = designated_supervisor(submission)
        if designated is not None and designated != actor.id:
            raise AuthorizationError("Only the student's designated supervisor may decide this channel")
    elif channel == "gec":
        members = resolve_committee_ids(submission.student_id)
        if members and actor.id not in members:
            raise AuthorizationError("Only members of the student's committee may decide this channel")


def record_decision(submission_id: int, channel: str, action: str, actor: Actor,
                    comment: str | None = None):
    """Record one channel's approve/reject and recompute the aggregate status.

    The row is re-read under ``SELECT ... FOR UPDATE`` with
    ``populate_existing`` so the aggregate reflects sibling-channel
    decisions committed after this request started.
    """
    if channel not in CHANNELS:
        raise ValidationError(f"Unknown channel: {channel}", details={"channel": "must be admin, supervisor or gec"})
    if action not in DECISION_ACTIONS:
        raise ValidationError(f"Unknown action: {action}", details={"action": "must be approve or reject"})
    if actor is None:
        raise AuthorizationError("A decision requires an authenticated actor")

    with guarded_store("record_decision", submission_id=submission_id, channel=channel):
        submission = db.session.execute(
            select(FormSubmission)
            .where(FormSubmission.id == submission_id)
            .with_for_update(of=FormSubmission)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if submission is None:
            raise NotFoundError(resource="FormSubmission", resource_id=submission_id)

        required = submission.form_type.required_channels
        if channel not in required:
            raise ValidationError(
                f"Form {submission.form_type.code} does not require {channel} approval",
                details={"channel": "not required for this form"},
            )
        _authorize_decision(submission, channel, actor)
        if submission.status in TERMINAL_STATUSES:
            raise ConflictError(
                "FormSubmission", "status", submission.status,
                message=f"Submission {submission_id} is already {submission.status}",
            )

        submission.set_channel(channel, DECISION_ACTIONS[action], approver_id=actor.id, comment=comment)
        new_status = aggregate(required, submission.channel_snapshot())
        submission.status = new_status
        if new_status == STATUS_APPROVED:
            submission.approved_at = datetime.now(timezone.utc)
        db.session.commit()

    logger.info(
        "Decision %s on submission %s via %s -> %s", action, submission_id, channel, new_status,
        extra={"submission_id": submission_id, "channel": channel, "student_id": submission.student_id},
    )
    return submission.to_dict(), [_owner_event(submission, new_status, channel, comment)]


def _owner_event(submission: FormSubmission, status: str, channel: str | None,
                 comment: str | None = None) -> NotificationEvent:
    code = submission.form_type.code
    name = submission.form_type.name
    if status == STATUS_APPROVED:
        title, severity, action_required = "Form Approved", "success", False
        message = f"Your {name} ({code}) has been approved."
    elif status == STATUS_REJECTED:
        title, severity, action_required = "Form Rejected", "warning", True
        message = f"Your {name} ({code}) was rejected by the {_CHANNEL_LABEL[channel]}."
        if comment:
            message += f" Comment: {comment}"
    else:
        title, severity, action_required = "Form Review Update", "info", False
        message = f"The {_CHANNEL_LABEL[channel]} recorded a decision on your {name} ({code})."
    return NotificationEvent(
        recipient_id=submission.student_id,
        title=title,
        message=message,
        severity=severity,
        category="decision",
        related_submission_id=submission.id,
        action_required=action_required,
        action_url=f"/submissions/{submission.id}",
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Drafts
# ═══════════════════════════════════════════════════════════════════════════


def _find_draft(student_id: int, form_type_id: int) -> FormDraft | None:
    return db.session.execute(
        select(FormDraft).where(
            FormDraft.student_id == student_id,
            FormDraft.form_type_id == form_type_id,
        )
    ).scalar_one_or_none()


def save_draft(student_id: int, form_code: str, payload, *, step_number: int = 0,
               total_steps: int = 1, actor: Actor | None = None) -> dict:
    """Insert-or-update the student's draft for ``form_code``. Idempotent."""
    if actor is not None and actor.id != student_id:
        raise AuthorizationError("Only the student may save their own drafts")
    get_student(student_id)
    form_type = get_form_type(form_code)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Draft payload must be a JSON object", details={"form_data": "must be an object"})
    if not isinstance(step_number, int) or not isinstance(total_steps, int):
        raise ValidationError("step_number and total_steps must be integers")
    if total_steps < 1 or not 0 <= step_number <= total_steps:
        raise ValidationError(
            "step_number must be between 0 and total_steps",
            details={"step_number": step_number, "total_steps": total_steps},
        )

    with guarded_store("save_draft", student_id=student_id, form_code=form_code):
        # A concurrent first save can win the unique key; retry once as an update
        for attempt in (1, 2):
            draft = _find_draft(student_id, form_type.id)
            if draft is None:
                draft = FormDraft(student_id=student_id, form_type_id=form_type.id)
                db.session.add(draft)
            draft.payload = payload
            draft.step_number = step_number
            draft.total_steps = total_steps
            try:
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if attempt == 2:
                    raise
    return draft.to_dict()


def load_draft(student_id: int, form_code: str) -> dict:
    form_type = get_form_type(form_code, active_only=False)
    draft = _find_draft(student_id, form_type.id)
    if draft is None:
        return {"form_data": {}, "step_number": 0, "total_steps": 1, "updated_at": None}
    return draft.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════════════


def list_form_types(include_inactive: bool = False) -> list[dict]:
    from phdtrack.services.stage_catalog import CATALOG

    stmt = select(FormType)
    if not include_inactive:
        stmt = stmt.where(FormType.is_active.is_(True))
    rows = db.session.execute(stmt).scalars().all()

    def _order(ft):
        stage_idx = CATALOG.ordinal(ft.stage) if ft.stage in CATALOG else len(CATALOG.stages)
        return stage_idx, ft.code

    return [ft.to_dict() for ft in sorted(rows, key=_order)]


def list_submissions(student_id: int, *, status: str | None = None, form_code: str | None = None,
                     limit: int = 50, offset: int = 0):
    stmt = select(FormSubmission).where(FormSubmission.student_id == student_id)
    if status:
        stmt = stmt.where(FormSubmission.status == status)
    if form_code:
        stmt = stmt.join(FormType, FormSubmission.form_type_id == FormType.id).where(FormType.code == form_code)
    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    items = db.session.execute(
        stmt.order_by(FormSubmission.submitted_at.desc(), FormSubmission.id.desc())
        .limit(limit).offset(offset)
    ).scalars().all()
    return [s.to_dict() for s in items], total


def get_submission(submission_id: int, actor: Actor) -> dict:
    submission = db.session.get(FormSubmission, submission_id)
    if submission is None or (actor.is_student and submission.student_id != actor.id):
        raise NotFoundError(resource="FormSubmission", resource_id=submission_id)
    return submission.to_dict()


def list_pending_approvals(actor: Actor) -> list[dict]:
    """Open submissions waiting on the channel that matches the actor's role."""
    channel = next((ch for ch, role in _CHANNEL_ROLE.items() if role == actor.role), None)
    if channel is None:
        raise AuthorizationError(f"Role {actor.role!r} has no approval queue")

    column = getattr(FormSubmission, f"{channel}_status")
    rows = db.session.execute(
        select(FormSubmission)
        .where(column == CHANNEL_PENDING, FormSubmission.status.in_(OPEN_STATUSES))
        .order_by(FormSubmission.submitted_at.asc(), FormSubmission.id.asc())
    ).scalars().all()

    pending = []
    for sub in rows:
        if channel == "supervisor":
            designated = designated_supervisor(sub)
            if designated is not None and designated != actor.id:
                continue
        elif channel == "gec":
            members = resolve_committee_ids(sub.student_id)
            if members and actor.id not in members:
                continue
        pending.append(sub.to_dict())
    return pending
