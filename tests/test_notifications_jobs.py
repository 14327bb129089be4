"""
PhD Progress Tracker
Tests — Notification service + scheduled reminder jobs.

Covers:
    1. NotificationService dispatch, inbox queries, read state and deletion
    2. Job registry and SchedulerService
    3. Scheduled jobs (pending forms, stage reminders, deadlines, cleanup)
    4. Idempotency of every reminder sweep
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from phdtrack.models import db
from phdtrack.models.assessment import ComprehensiveExam, ThesisDefense
from phdtrack.models.notification import Notification
from phdtrack.models.workflow import FormSubmission, FormType, WorkflowProgress
from phdtrack.services.notification import NotificationEvent, NotificationService
from phdtrack.services.scheduled_jobs import (
    cleanup_stale_notifications,
    send_deadline_reminders,
    send_pending_form_reminders,
    send_stage_reminders,
)
import phdtrack.services.scheduler_service as scheduler_service
from phdtrack.services.scheduler_service import SchedulerService, get_registered_jobs, register_job


def _notification_count(**filters):
    stmt = select(func.count(Notification.id))
    for key, value in filters.items():
        stmt = stmt.where(getattr(Notification, key) == value)
    return db.session.execute(stmt).scalar_one()


def _create_notification(user, *, title="Test Alert", category="workflow", is_read=False,
                         read_days_ago=None, action_required=False):
    """Create a Notification directly in DB."""
    n = Notification(
        recipient_id=user.id, title=title, message="Details here",
        category=category, action_required=action_required, is_read=is_read,
    )
    if read_days_ago is not None:
        n.read_at = datetime.now(timezone.utc) - timedelta(days=read_days_ago)
    db.session.add(n)
    db.session.commit()
    return n


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: NotificationService
# ═══════════════════════════════════════════════════════════════════════════

class TestNotificationService:
    def test_dispatch_persists_events(self, student):
        count = NotificationService.dispatch([
            NotificationEvent(recipient_id=student.id, title="One"),
            NotificationEvent(recipient_id=student.id, title="Two", severity="warning"),
        ])
        assert count == 2
        assert _notification_count(recipient_id=student.id) == 2

    def test_dispatch_nothing(self):
        assert NotificationService.dispatch([]) == 0
        assert NotificationService.dispatch(None) == 0

    def test_dispatch_to_unknown_recipient_writes_nothing(self, student):
        count = NotificationService.dispatch([NotificationEvent(recipient_id=999999, title="Ghost")])
        assert count == 0
        assert _notification_count() == 0

    def test_unknown_recipient_does_not_drop_the_batch(self, student, admin):
        count = NotificationService.dispatch([
            NotificationEvent(recipient_id=admin.id, title="For the office"),
            NotificationEvent(recipient_id=999999, title="Ghost"),
            NotificationEvent(recipient_id=student.id, title="For the student"),
        ])
        assert count == 2
        recipients = set(db.session.execute(select(Notification.recipient_id)).scalars())
        assert recipients == {admin.id, student.id}

    def test_dispatch_failure_is_swallowed(self, student):
        count = NotificationService.dispatch([
            NotificationEvent(recipient_id=student.id, title="One"),
            NotificationEvent(recipient_id=student.id, title=None),
        ])
        assert count == 0
        assert _notification_count() == 0

    def test_inbox_newest_first_and_paginated(self, student):
        for i in range(3):
            _create_notification(student, title=f"N{i}")
        items, total = NotificationService.list_for_recipient(student.id, limit=2)
        assert total == 3
        assert [n.title for n in items] == ["N2", "N1"]

    def test_inbox_is_per_recipient(self, student, supervisor):
        _create_notification(student)
        _create_notification(supervisor)
        items, total = NotificationService.list_for_recipient(supervisor.id)
        assert total == 1 and items[0].recipient_id == supervisor.id

    def test_mark_read_and_unread_count(self, student):
        n = _create_notification(student)
        _create_notification(student)
        assert NotificationService.unread_count(student.id) == 2
        marked = NotificationService.mark_read(n.id, student.id)
        assert marked.is_read is True
        assert marked.read_at is not None
        assert NotificationService.unread_count(student.id) == 1

    def test_mark_read_other_users_notification(self, student, supervisor):
        n = _create_notification(student)
        assert NotificationService.mark_read(n.id, supervisor.id) is None

    def test_mark_all_read(self, student):
        for _ in range(3):
            _create_notification(student)
        assert NotificationService.mark_all_read(student.id) == 3
        assert NotificationService.unread_count(student.id) == 0

    def test_delete_own_notification(self, student):
        n = _create_notification(student)
        kept = _create_notification(student)
        assert NotificationService.delete(n.id, student.id) is True
        assert set(db.session.execute(select(Notification.id)).scalars()) == {kept.id}

    def test_delete_other_users_notification(self, student, supervisor):
        n = _create_notification(student)
        assert NotificationService.delete(n.id, supervisor.id) is False
        assert NotificationService.delete(424242, student.id) is False
        assert _notification_count(recipient_id=student.id) == 1

    def test_exists_recent(self, student):
        _create_notification(student, category="stage_reminder")
        assert NotificationService.exists_recent(student.id, "stage_reminder", 1) is True
        assert NotificationService.exists_recent(student.id, "deadline_reminder", 1) is False


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class TestScheduler:
    def test_all_jobs_registered(self):
        jobs = get_registered_jobs()
        assert {
            "pending_form_reminders",
            "stage_reminders",
            "deadline_reminders",
            "stale_notification_cleanup",
        } <= set(jobs)

    def test_list_jobs_has_descriptions(self):
        listed = {j["job_name"]: j["description"] for j in SchedulerService.list_jobs()}
        assert listed["stage_reminders"].startswith("Warn students")

    def test_unknown_job(self):
        result = SchedulerService.run_job("does_not_exist")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]

    def test_last_run_is_recorded(self, monkeypatch):
        monkeypatch.setitem(scheduler_service._job_registry, "noop", lambda app: {"touched": 0})
        monkeypatch.setattr(SchedulerService, "_last_runs", {})
        run = SchedulerService.run_job("noop")
        assert run["status"] == "success"
        assert run["result"] == {"touched": 0}
        assert SchedulerService.last_run("noop") is run
        listed = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert listed["noop"]["last_run"]["status"] == "success"
        assert listed["stage_reminders"]["last_run"] is None

    def test_failing_job_is_reported_not_raised(self, monkeypatch):
        def boom(app):
            raise RuntimeError("mail relay down")

        monkeypatch.setitem(scheduler_service._job_registry, "boom", boom)
        monkeypatch.setattr(SchedulerService, "_last_runs", {})
        run = SchedulerService.run_job("boom")
        assert run["status"] == "failed"
        assert run["error"] == "mail relay down"

    def test_duplicate_registration_rejected(self):
        with pytest.raises(ValueError):
            register_job("stage_reminders")(lambda app: None)


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Jobs
# ═══════════════════════════════════════════════════════════════════════════

class TestPendingFormReminders:
    def _stale_consent(self, student, supervisor, days_ago=10):
        ft = db.session.execute(select(FormType).where(FormType.code == "PHDEE02-A")).scalar_one()
        sub = FormSubmission(
            student_id=student.id, form_type_id=ft.id,
            payload={"supervisor_id": supervisor.id, "research_area": "x"},
            status="submitted", supervisor_status="pending",
            submitted_at=datetime.now(timezone.utc) - timedelta(days=days_ago),
        )
        db.session.add(sub)
        db.session.commit()
        return sub

    def test_reminds_designated_supervisor(self, app, student, supervisor, admin):
        sub = self._stale_consent(student, supervisor)
        result = send_pending_form_reminders(app)
        assert result["submissions_checked"] == 1
        assert result["reminders_created"] == 1
        n = db.session.execute(select(Notification)).scalar_one()
        assert n.recipient_id == supervisor.id
        assert n.related_submission_id == sub.id
        assert n.category == "pending_reminder"

    def test_second_run_is_idempotent(self, app, student, supervisor):
        self._stale_consent(student, supervisor)
        send_pending_form_reminders(app)
        result = send_pending_form_reminders(app)
        assert result["reminders_created"] == 0
        assert result["skipped_recent"] == 1
        assert _notification_count(category="pending_reminder") == 1

    def test_recent_submissions_skipped(self, app, student, supervisor):
        self._stale_consent(student, supervisor, days_ago=2)
        assert send_pending_form_reminders(app)["submissions_checked"] == 0


class TestStageReminders:
    def _progress(self, student, days_ago):
        db.session.add(WorkflowProgress(
            student_id=student.id, current_stage="thesis_writing",
            stage_start_date=datetime.now(timezone.utc) - timedelta(days=days_ago),
            is_stage_completed=False, semester=5, academic_year="2026-2027",
        ))
        db.session.commit()

    def test_flags_students_past_threshold(self, app, make_user):
        stuck, fresh = make_user(), make_user()
        self._progress(stuck, 120)
        self._progress(fresh, 10)
        result = send_stage_reminders(app)
        assert result == {"students_flagged": 1, "reminders_created": 1, "skipped_recent": 0}
        n = db.session.execute(select(Notification)).scalar_one()
        assert n.recipient_id == stuck.id
        assert n.title == "Stage Reminder: Thesis Writing"

    def test_cooldown(self, app, student):
        self._progress(student, 120)
        send_stage_reminders(app)
        result = send_stage_reminders(app)
        assert result["reminders_created"] == 0
        assert result["skipped_recent"] == 1


class TestDeadlineReminders:
    def test_upcoming_sessions_within_window(self, app, make_user):
        soon, later = make_user(), make_user()
        now = datetime.now(timezone.utc)
        db.session.add(ComprehensiveExam(student_id=soon.id, exam_date=now + timedelta(days=3), venue="Room 4"))
        db.session.add(ThesisDefense(student_id=later.id, defense_type="public",
                                     scheduled_date=now + timedelta(days=20)))
        db.session.commit()

        result = send_deadline_reminders(app)
        assert result["sessions_found"] == 1
        assert result["reminders_created"] == 1
        n = db.session.execute(select(Notification)).scalar_one()
        assert n.recipient_id == soon.id
        assert n.title == "Upcoming Comprehensive Exam"
        assert "Room 4" in n.message

    def test_deadline_cooldown(self, app, student):
        db.session.add(ThesisDefense(student_id=student.id, defense_type="in_house",
                                     scheduled_date=datetime.now(timezone.utc) + timedelta(days=2)))
        db.session.commit()
        send_deadline_reminders(app)
        assert send_deadline_reminders(app)["reminders_created"] == 0


class TestCleanup:
    def test_deletes_only_old_read_informational(self, app, student):
        old = _create_notification(student, is_read=True, read_days_ago=45)
        recent = _create_notification(student, is_read=True, read_days_ago=2)
        unread = _create_notification(student)
        actionable = _create_notification(student, is_read=True, read_days_ago=45, action_required=True)
        old_id = old.id

        result = cleanup_stale_notifications(app)

        assert result["deleted"] == 1
        remaining = set(db.session.execute(select(Notification.id)).scalars())
        assert remaining == {recent.id, unread.id, actionable.id}
        assert old_id not in remaining


@pytest.mark.parametrize("job_name", [
    "pending_form_reminders", "stage_reminders", "deadline_reminders", "stale_notification_cleanup",
])
def test_jobs_have_docstrings(job_name):
    assert get_registered_jobs()[job_name].__doc__
