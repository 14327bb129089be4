"""
PhD Progress Tracker
Scheduled Jobs.

Periodic sweeps that emit reminders. Each job is idempotent: before writing
a reminder it checks whether one of the same category already reached the
recipient inside the cooldown window, instead of relying on locks.

Jobs:
    - pending_form_reminders: nudges approvers about submissions waiting too long
    - stage_reminders: warns students stuck in a stage past the attention threshold
    - deadline_reminders: announces exams and defenses in the coming days
    - stale_notification_cleanup: deletes old, read, non-actionable notifications
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select

from phdtrack.models import db
from phdtrack.models.assessment import SESSION_SCHEDULED, ComprehensiveExam, ThesisDefense
from phdtrack.models.auth import ROLE_ADMIN, ROLE_GEC, User
from phdtrack.models.notification import Notification
from phdtrack.models.workflow import CHANNEL_PENDING, OPEN_STATUSES, FormSubmission
from phdtrack.services.notification import NotificationEvent, NotificationService
from phdtrack.services.scheduler_service import register_job

logger = logging.getLogger(__name__)

PENDING_CATEGORY = "pending_reminder"
STAGE_CATEGORY = "stage_reminder"
DEADLINE_CATEGORY = "deadline_reminder"


def _active_ids(role: str) -> list[int]:
    return list(db.session.execute(
        select(User.id).where(User.role == role, User.is_active.is_(True))
    ).scalars())


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Pending form reminders
# ═══════════════════════════════════════════════════════════════════════════

@register_job("pending_form_reminders")
def send_pending_form_reminders(app) -> dict[str, Any]:
    """Remind approvers about submissions open longer than PENDING_REMINDER_DAYS."""
    from phdtrack.services.submission_service import designated_supervisor, resolve_committee_ids

    days = app.config.get("PENDING_REMINDER_DAYS", 7)
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    results = {"submissions_checked": 0, "reminders_created": 0, "skipped_recent": 0}

    stale = db.session.execute(
        select(FormSubmission).where(
            FormSubmission.status.in_(OPEN_STATUSES),
            FormSubmission.submitted_at < cutoff,
        )
    ).scalars().all()

    admins = _active_ids(ROLE_ADMIN)
    events = []
    for sub in stale:
        results["submissions_checked"] += 1
        snapshot = sub.channel_snapshot()
        recipients: set[int] = set()
        if snapshot["admin"] == CHANNEL_PENDING:
            recipients.update(admins)
        if snapshot["supervisor"] == CHANNEL_PENDING:
            supervisor_id = designated_supervisor(sub)
            if supervisor_id is not None:
                recipients.add(supervisor_id)
        if snapshot["gec"] == CHANNEL_PENDING:
            recipients.update(resolve_committee_ids(sub.student_id) or _active_ids(ROLE_GEC))

        for uid in sorted(recipients):
            if NotificationService.exists_recent(uid, PENDING_CATEGORY, days, related_submission_id=sub.id):
                results["skipped_recent"] += 1
                continue
            events.append(NotificationEvent(
                recipient_id=uid,
                title=f"Pending approval: {sub.form_type.code}",
                message=(
                    f"{sub.form_type.name} from student {sub.student_id} has been waiting "
                    f"more than {days} days for your decision."
                ),
                severity="warning",
                category=PENDING_CATEGORY,
                related_submission_id=sub.id,
                action_required=True,
                action_url=f"/submissions/{sub.id}",
            ))

    results["reminders_created"] = NotificationService.dispatch(events)
    logger.info("Pending form reminders: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Stage reminders
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stage_reminders")
def send_stage_reminders(app) -> dict[str, Any]:
    """Warn students whose current stage is older than ATTENTION_THRESHOLD_DAYS."""
    from phdtrack.services.workflow_service import get_students_requiring_attention

    threshold = app.config.get("ATTENTION_THRESHOLD_DAYS", 90)
    cooldown = app.config.get("STAGE_REMINDER_COOLDOWN_DAYS", 30)
    results = {"students_flagged": 0, "reminders_created": 0, "skipped_recent": 0}

    events = []
    for entry in get_students_requiring_attention(threshold):
        results["students_flagged"] += 1
        if NotificationService.exists_recent(entry["student_id"], STAGE_CATEGORY, cooldown):
            results["skipped_recent"] += 1
            continue
        events.append(NotificationEvent(
            recipient_id=entry["student_id"],
            title=f"Stage Reminder: {entry['stage_label']}",
            message=(
                f"You have been in the {entry['stage_label']} stage for "
                f"{entry['days_in_stage']} days. Please complete the outstanding requirements."
            ),
            severity="warning",
            category=STAGE_CATEGORY,
            action_required=True,
            action_url="/workflow",
        ))

    results["reminders_created"] = NotificationService.dispatch(events)
    logger.info("Stage reminders: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Exam / defense deadline reminders
# ═══════════════════════════════════════════════════════════════════════════

@register_job("deadline_reminders")
def send_deadline_reminders(app) -> dict[str, Any]:
    """Announce exams and defenses scheduled within DEADLINE_WINDOW_DAYS."""
    window = app.config.get("DEADLINE_WINDOW_DAYS", 7)
    cooldown = app.config.get("DEADLINE_REMINDER_COOLDOWN_DAYS", 3)
    now = datetime.now(timezone.utc)
    horizon = now + timedelta(days=window)
    results = {"sessions_found": 0, "reminders_created": 0, "skipped_recent": 0}

    upcoming = []
    for exam in db.session.execute(
        select(ComprehensiveExam).where(
            ComprehensiveExam.exam_status == SESSION_SCHEDULED,
            ComprehensiveExam.exam_date >= now,
            ComprehensiveExam.exam_date <= horizon,
        )
    ).scalars():
        upcoming.append((exam.student_id, "Comprehensive Exam", exam.exam_date, exam.venue))
    for defense in db.session.execute(
        select(ThesisDefense).where(
            ThesisDefense.defense_status == SESSION_SCHEDULED,
            ThesisDefense.scheduled_date >= now,
            ThesisDefense.scheduled_date <= horizon,
        )
    ).scalars():
        label = defense.defense_type.replace("_", "-").title() + " Defense"
        upcoming.append((defense.student_id, label, defense.scheduled_date, defense.venue))

    events = []
    notified: set[int] = set()
    for student_id, label, when, venue in upcoming:
        results["sessions_found"] += 1
        if student_id in notified or NotificationService.exists_recent(student_id, DEADLINE_CATEGORY, cooldown):
            results["skipped_recent"] += 1
            continue
        notified.add(student_id)
        events.append(NotificationEvent(
            recipient_id=student_id,
            title=f"Upcoming {label}",
            message=f"Your {label.lower()} is scheduled for {when:%Y-%m-%d %H:%M}"
                    + (f" at {venue}." if venue else "."),
            severity="info",
            category=DEADLINE_CATEGORY,
            action_url="/workflow",
        ))

    results["reminders_created"] = NotificationService.dispatch(events)
    logger.info("Deadline reminders: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 4: Stale Notification Cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("stale_notification_cleanup")
def cleanup_stale_notifications(app) -> dict[str, Any]:
    """Delete read, non-actionable notifications read more than NOTIFICATION_RETENTION_DAYS ago."""
    days = app.config.get("NOTIFICATION_RETENTION_DAYS", 30)
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)

    result = db.session.execute(
        delete(Notification).where(
            Notification.is_read.is_(True),
            Notification.action_required.is_(False),
            Notification.read_at < cutoff,
        ).execution_options(synchronize_session=False)
    )
    db.session.commit()
    logger.info("Stale notification cleanup: deleted %d", result.rowcount)
    return {"deleted": result.rowcount, "cutoff": cutoff.isoformat()}
