"""
PhD Progress Tracker
Tests — submission ledger: filing, channel decisions, quotas and drafts.

Covers:
    1. Submitting the supervisor consent form and its supervisor decision
    2. Two-channel forms (under_review until every channel approves)
    3. Prerequisite and quota enforcement
    4. Decision authorisation and terminal-state conflicts
    5. Committee formation and committee-restricted decisions
    6. Drafts
    7. Pending approval queues
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, update

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
from phdtrack.models.auth import ROLE_GEC
from phdtrack.models.workflow import FormDraft, FormSubmission, FormType
import phdtrack.services.submission_service as subs


def _consent(student, supervisor, **extra):
    payload = {"supervisor_id": supervisor.id, "research_area": "Power Systems", **extra}
    return subs.submit(student.id, "PHDEE02-A", payload, actor=Actor.from_user(student))


def _approved_consent(student, supervisor):
    sub, _ = _consent(student, supervisor)
    approved, _ = subs.record_decision(sub["id"], "supervisor", "approve", Actor.from_user(supervisor))
    return approved


# ═══════════════════════════════════════════════════════════════════════════
#  Supervisor consent
# ═══════════════════════════════════════════════════════════════════════════


class TestConsentSubmission:
    def test_submit_creates_pending_supervisor_channel(self, student, supervisor):
        sub, events = _consent(student, supervisor)
        assert sub["status"] == "submitted"
        assert sub["form_code"] == "PHDEE02-A"
        assert sub["channels"]["supervisor"]["status"] == "pending"
        assert sub["channels"]["admin"]["status"] == "n/a"
        assert sub["channels"]["gec"]["status"] == "n/a"

    def test_submit_notifies_named_supervisor(self, student, supervisor, admin):
        sub, events = _consent(student, supervisor)
        assert [e.recipient_id for e in events] == [supervisor.id]
        assert events[0].action_required is True
        assert events[0].related_submission_id == sub["id"]

    def test_supervisor_approval_approves_submission(self, student, supervisor):
        sub, _ = _consent(student, supervisor)
        result, events = subs.record_decision(
            sub["id"], "supervisor", "approve", Actor.from_user(supervisor), comment="Happy to supervise",
        )
        assert result["status"] == "approved"
        assert result["approved_at"] is not None
        assert result["channels"]["supervisor"]["approver_id"] == supervisor.id
        assert result["channels"]["supervisor"]["comment"] == "Happy to supervise"
        assert len(events) == 1
        assert events[0].recipient_id == student.id
        assert events[0].title == "Form Approved"
        assert events[0].severity == "success"

    def test_supervisor_rejection(self, student, supervisor):
        sub, _ = _consent(student, supervisor)
        result, events = subs.record_decision(
            sub["id"], "supervisor", "reject", Actor.from_user(supervisor), comment="Scope too broad",
        )
        assert result["status"] == "rejected"
        assert result["approved_at"] is None
        assert events[0].title == "Form Rejected"
        assert events[0].action_required is True
        assert "Scope too broad" in events[0].message

    def test_supervisor_must_exist_and_be_a_supervisor(self, student, make_user):
        other_student = make_user()
        with pytest.raises(ValidationError) as exc:
            subs.submit(
                student.id, "PHDEE02-A",
                {"supervisor_id": other_student.id, "research_area": "x"},
                actor=Actor.from_user(student),
            )
        assert "supervisor_id" in exc.value.details

    def test_missing_required_field(self, student, supervisor):
        with pytest.raises(ValidationError) as exc:
            subs.submit(student.id, "PHDEE02-A", {"supervisor_id": supervisor.id},
                        actor=Actor.from_user(student))
        assert exc.value.details == {"research_area": "is required"}

    def test_payload_must_be_object(self, student):
        with pytest.raises(ValidationError):
            subs.submit(student.id, "PHDEE02-A", ["not", "a", "dict"], actor=Actor.from_user(student))

    def test_unknown_form_code(self, student):
        with pytest.raises(ValidationError, match="Unknown form type"):
            subs.submit(student.id, "PHDEE99", {}, actor=Actor.from_user(student))

    def test_only_owner_may_submit(self, student, supervisor, make_user):
        intruder = make_user()
        with pytest.raises(AuthorizationError):
            subs.submit(student.id, "PHDEE02-A",
                        {"supervisor_id": supervisor.id, "research_area": "x"},
                        actor=Actor.from_user(intruder))

    def test_unknown_student(self, supervisor):
        with pytest.raises(NotFoundError):
            subs.submit(9999, "PHDEE02-A", {"supervisor_id": supervisor.id, "research_area": "x"})


# ═══════════════════════════════════════════════════════════════════════════
#  Multi-channel forms
# ═══════════════════════════════════════════════════════════════════════════


class TestMultiChannel:
    def test_course_registration_needs_both_channels(self, student, supervisor, admin):
        _approved_consent(student, supervisor)
        sub, events = subs.submit(student.id, "PHDEE02-B", {"courses": ["EE-801"]},
                                  actor=Actor.from_user(student))
        assert {e.recipient_id for e in events} == {admin.id, supervisor.id}

        after_admin, ev = subs.record_decision(sub["id"], "admin", "approve", Actor.from_user(admin))
        assert after_admin["status"] == "under_review"
        assert ev[0].title == "Form Review Update"

        final, ev = subs.record_decision(sub["id"], "supervisor", "approve", Actor.from_user(supervisor))
        assert final["status"] == "approved"
        assert ev[0].title == "Form Approved"

    def test_one_rejection_is_terminal(self, student, supervisor, admin):
        _approved_consent(student, supervisor)
        sub, _ = subs.submit(student.id, "PHDEE02-B", {"courses": ["EE-801"]},
                             actor=Actor.from_user(student))
        subs.record_decision(sub["id"], "admin", "approve", Actor.from_user(admin))
        rejected, _ = subs.record_decision(sub["id"], "supervisor", "reject", Actor.from_user(supervisor))
        assert rejected["status"] == "rejected"
        with pytest.raises(ConflictError):
            subs.record_decision(sub["id"], "admin", "approve", Actor.from_user(admin))

    def test_redecision_allowed_while_open(self, student, supervisor, admin):
        _approved_consent(student, supervisor)
        sub, _ = subs.submit(student.id, "PHDEE02-B", {"courses": ["EE-801"]},
                             actor=Actor.from_user(student))
        subs.record_decision(sub["id"], "admin", "approve", Actor.from_user(admin), comment="first")
        again, _ = subs.record_decision(sub["id"], "admin", "approve", Actor.from_user(admin), comment="second")
        assert again["status"] == "under_review"
        assert again["channels"]["admin"]["comment"] == "second"

    def test_aggregate_uses_stored_sibling_decision(self, student, supervisor, admin):
        _approved_consent(student, supervisor)
        sub, _ = subs.submit(student.id, "PHDEE02-B", {"courses": ["EE-801"]},
                             actor=Actor.from_user(student))
        loaded = db.session.get(FormSubmission, sub["id"])
        assert loaded.admin_status == "pending"

        # Admin approval written behind the session's back; the loaded object stays stale
        db.session.execute(
            update(FormSubmission)
            .where(FormSubmission.id == sub["id"])
            .values(admin_status="approved", admin_approver_id=admin.id, status="under_review")
            .execution_options(synchronize_session=False)
        )
        assert loaded.admin_status == "pending"

        final, _ = subs.record_decision(sub["id"], "supervisor", "approve", Actor.from_user(supervisor))
        assert final["status"] == "approved"
        assert final["channels"]["admin"]["status"] == "approved"


# ═══════════════════════════════════════════════════════════════════════════
#  Prerequisites & quotas
# ═══════════════════════════════════════════════════════════════════════════


class TestSubmissionRules:
    def test_prerequisites_enforced(self, student):
        with pytest.raises(PrerequisitesNotMet) as exc:
            subs.submit(student.id, "PHDEE02-B", {"courses": ["EE-801"]}, actor=Actor.from_user(student))
        assert exc.value.missing == ["PHDEE02-A"]
        assert exc.value.details == {"missing": ["PHDEE02-A"]}

    def test_pending_prerequisite_blocks(self, student, supervisor):
        _consent(student, supervisor)
        with pytest.raises(PrerequisitesNotMet):
            subs.submit(student.id, "PHDEE02-B", {"courses": ["EE-801"]}, actor=Actor.from_user(student))

    def test_quota_counts_non_rejected(self, student, supervisor):
        _consent(student, supervisor)
        with pytest.raises(SubmissionLimitExceeded) as exc:
            _consent(student, supervisor)
        assert exc.value.limit == 1
        count = db.session.execute(select(func.count(FormSubmission.id))).scalar_one()
        assert count == 1

    def test_quota_rejection_keeps_the_draft(self, student, supervisor):
        _consent(student, supervisor)
        subs.save_draft(student.id, "PHDEE02-A", {"research_area": "Draft"})
        with pytest.raises(SubmissionLimitExceeded):
            _consent(student, supervisor)
        assert subs.load_draft(student.id, "PHDEE02-A")["form_data"] == {"research_area": "Draft"}

    def test_rejected_submissions_free_the_quota(self, student, supervisor):
        sub, _ = _consent(student, supervisor)
        subs.record_decision(sub["id"], "supervisor", "reject", Actor.from_user(supervisor))
        resubmitted, _ = _consent(student, supervisor)
        assert resubmitted["status"] == "submitted"

    def test_inactive_form_type_rejected(self, student, supervisor):
        ft = subs.get_form_type("PHDEE02-A")
        ft.is_active = False
        db.session.commit()
        with pytest.raises(ValidationError, match="not active"):
            _consent(student, supervisor)

    def test_semester_defaults_from_progress(self, student, supervisor):
        from phdtrack.services.workflow_service import get_workflow_status, update_semester

        get_workflow_status(student.id)
        update_semester(student.id, 3, "2026-2027")
        sub, _ = _consent(student, supervisor)
        assert sub["semester"] == 3
        assert sub["academic_year"] == "2026-2027"


# ═══════════════════════════════════════════════════════════════════════════
#  Decision authorisation
# ═══════════════════════════════════════════════════════════════════════════


class TestDecisionAuthorisation:
    def test_other_supervisor_cannot_decide(self, student, supervisor, make_user):
        other = make_user("supervisor")
        sub, _ = _consent(student, supervisor)
        with pytest.raises(AuthorizationError):
            subs.record_decision(sub["id"], "supervisor", "approve", Actor.from_user(other))

    def test_role_must_match_channel(self, student, supervisor, admin):
        _approved_consent(student, supervisor)
        sub, _ = subs.submit(student.id, "PHDEE02-B", {"courses": ["EE-801"]},
                             actor=Actor.from_user(student))
        with pytest.raises(AuthorizationError):
            subs.record_decision(sub["id"], "supervisor", "approve", Actor.from_user(admin))

    def test_channel_not_required(self, student, supervisor, admin):
        sub, _ = _consent(student, supervisor)
        with pytest.raises(ValidationError, match="does not require admin"):
            subs.record_decision(sub["id"], "admin", "approve", Actor.from_user(admin))

    def test_unknown_channel_and_action(self, student, supervisor):
        sub, _ = _consent(student, supervisor)
        with pytest.raises(ValidationError):
            subs.record_decision(sub["id"], "dean", "approve", Actor.from_user(supervisor))
        with pytest.raises(ValidationError):
            subs.record_decision(sub["id"], "supervisor", "maybe", Actor.from_user(supervisor))

    def test_unknown_submission(self, supervisor):
        with pytest.raises(NotFoundError):
            subs.record_decision(4242, "supervisor", "approve", Actor.from_user(supervisor))

    def test_decision_on_approved_submission_conflicts(self, student, supervisor):
        approved = _approved_consent(student, supervisor)
        with pytest.raises(ConflictError):
            subs.record_decision(approved["id"], "supervisor", "reject", Actor.from_user(supervisor))


# ═══════════════════════════════════════════════════════════════════════════
#  Committee formation
# ═══════════════════════════════════════════════════════════════════════════


def _approved(student, code, payload=None):
    """Insert an approved submission directly, bypassing the channels."""
    ft = db.session.execute(select(FormType).where(FormType.code == code)).scalar_one()
    sub = FormSubmission(student_id=student.id, form_type_id=ft.id, payload=payload or {},
                         status="approved", approved_at=datetime.now(timezone.utc))
    db.session.add(sub)
    db.session.commit()
    return sub


class TestCommitteeFormation:
    def _form_committee(self, student, members):
        return subs.submit(student.id, "PHDEE02-C", {"committee_members": members},
                           actor=Actor.from_user(student))

    def test_active_gec_members_accepted(self, student, gec, make_user):
        _approved(student, "PHDEE02-B")
        second = make_user(ROLE_GEC)
        sub, _ = self._form_committee(student, [gec.id, str(second.id)])
        assert sub["status"] == "submitted"
        assert sub["payload"]["committee_members"] == [gec.id, str(second.id)]

    def test_non_committee_and_unknown_ids_rejected(self, student, supervisor, gec):
        _approved(student, "PHDEE02-B")
        with pytest.raises(ValidationError) as exc:
            self._form_committee(student, [gec.id, supervisor.id, 99999])
        assert exc.value.details["committee_members"]["unknown"] == [supervisor.id, 99999]
        assert db.session.execute(select(func.count(FormSubmission.id))).scalar_one() == 1

    def test_inactive_member_rejected(self, student, make_user):
        _approved(student, "PHDEE02-B")
        retired = make_user(ROLE_GEC, is_active=False)
        with pytest.raises(ValidationError):
            self._form_committee(student, [retired.id])

    def test_members_must_be_a_list(self, student, gec):
        _approved(student, "PHDEE02-B")
        with pytest.raises(ValidationError) as exc:
            self._form_committee(student, f"{gec.id}")
        assert exc.value.details == {"committee_members": "must be a list"}

    def test_named_committee_restricts_gec_channel(self, student, admin, gec, make_user):
        outsider = make_user(ROLE_GEC)
        _approved(student, "PHDEE02-C", {"committee_members": [gec.id]})
        _approved(student, "PHDEE03")
        sub, events = subs.submit(student.id, "PHDEE1", {}, actor=Actor.from_user(student))
        assert {e.recipient_id for e in events} == {admin.id, gec.id}
        with pytest.raises(AuthorizationError):
            subs.record_decision(sub["id"], "gec", "approve", Actor.from_user(outsider))
        decided, _ = subs.record_decision(sub["id"], "gec", "approve", Actor.from_user(gec))
        assert decided["channels"]["gec"]["status"] == "approved"

    def test_stored_committee_of_unknown_ids_falls_back_to_all_gec(self, student, supervisor, admin, gec):
        _approved(student, "PHDEE02-C", {"committee_members": [supervisor.id, 99999]})
        _approved(student, "PHDEE03")
        assert subs.resolve_committee_ids(student.id) == set()

        sub, events = subs.submit(student.id, "PHDEE1", {}, actor=Actor.from_user(student))
        assert {e.recipient_id for e in events} == {admin.id, gec.id}
        decided, _ = subs.record_decision(sub["id"], "gec", "approve", Actor.from_user(gec))
        assert decided["channels"]["gec"]["status"] == "approved"


# ═══════════════════════════════════════════════════════════════════════════
#  Drafts
# ═══════════════════════════════════════════════════════════════════════════


class TestDrafts:
    def test_empty_draft(self, student):
        assert subs.load_draft(student.id, "PHDEE02-A") == {
            "form_data": {}, "step_number": 0, "total_steps": 1, "updated_at": None,
        }

    def test_save_is_upsert(self, student):
        subs.save_draft(student.id, "PHDEE02-A", {"research_area": "Po"}, step_number=1, total_steps=3)
        subs.save_draft(student.id, "PHDEE02-A", {"research_area": "Power"}, step_number=2, total_steps=3)
        draft = subs.load_draft(student.id, "PHDEE02-A")
        assert draft["form_data"] == {"research_area": "Power"}
        assert draft["step_number"] == 2
        assert db.session.execute(select(func.count(FormDraft.id))).scalar_one() == 1

    def test_step_bounds(self, student):
        with pytest.raises(ValidationError):
            subs.save_draft(student.id, "PHDEE02-A", {}, step_number=4, total_steps=3)
        with pytest.raises(ValidationError):
            subs.save_draft(student.id, "PHDEE02-A", {}, step_number=0, total_steps=0)

    def test_draft_is_owner_only(self, student, make_user):
        other = make_user()
        with pytest.raises(AuthorizationError):
            subs.save_draft(student.id, "PHDEE02-A", {}, actor=Actor.from_user(other))

    def test_submit_clears_draft_and_drafts_do_not_use_quota(self, student, supervisor):
        subs.save_draft(student.id, "PHDEE02-A", {"research_area": "Power"})
        _consent(student, supervisor)
        assert subs.load_draft(student.id, "PHDEE02-A")["form_data"] == {}
        assert db.session.execute(select(func.count(FormDraft.id))).scalar_one() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_pending_queue_for_designated_supervisor(self, student, supervisor, make_user):
        other = make_user("supervisor")
        sub, _ = _consent(student, supervisor)
        mine = subs.list_pending_approvals(Actor.from_user(supervisor))
        assert [s["id"] for s in mine] == [sub["id"]]
        assert subs.list_pending_approvals(Actor.from_user(other)) == []

    def test_students_have_no_queue(self, student):
        with pytest.raises(AuthorizationError):
            subs.list_pending_approvals(Actor.from_user(student))

    def test_list_submissions_filters(self, student, supervisor):
        sub, _ = _consent(student, supervisor)
        subs.record_decision(sub["id"], "supervisor", "reject", Actor.from_user(supervisor))
        _consent(student, supervisor)
        items, total = subs.list_submissions(student.id)
        assert total == 2
        rejected, total = subs.list_submissions(student.id, status="rejected")
        assert total == 1 and rejected[0]["id"] == sub["id"]

    def test_student_cannot_read_others_submission(self, student, supervisor, make_user):
        other = make_user()
        sub, _ = _consent(student, supervisor)
        with pytest.raises(NotFoundError):
            subs.get_submission(sub["id"], Actor.from_user(other))
        assert subs.get_submission(sub["id"], Actor.from_user(supervisor))["id"] == sub["id"]

    def test_form_types_sorted_by_stage(self):
        codes = [ft["code"] for ft in subs.list_form_types()]
        assert codes[0] == "PHDEE02-A"
        assert codes[-2:] == ["PHDEE-COMPLETION", "PHDEE-TRANSCRIPT"]
