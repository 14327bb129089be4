"""phd_workflow_core

Creates the PhD workflow tables:
  - users               — students and staff (role: student | supervisor | admin | gec)
  - form_types          — catalog of forms with approval channels and prerequisites
  - form_submissions    — submitted forms with per-channel decision state
  - form_drafts         — one in-progress draft per (student, form type)
  - workflow_progress   — one row per student: current stage and semester
  - stage_transitions   — history of completed stages
  - comprehensive_exams — scheduled exams and recorded results
  - thesis_defenses     — synopsis / in-house / public defenses
  - notifications       — per-user inbox
  - workflow_audits     — administrator actions on a student workflow

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-03-02 10:12:41.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def _tz():
    return sa.DateTime(timezone=True)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── User ──────────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=False),
            sa.Column(
                "role", sa.String(length=20), nullable=False,
                comment="student | supervisor | admin | gec",
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("student_number", sa.String(length=30), nullable=True),
            sa.Column("enrollment_year", sa.Integer(), nullable=True),
            sa.Column("department", sa.String(length=120), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
            sa.UniqueConstraint("student_number"),
        )
        op.create_index("ix_users_role", "users", ["role"])

    # ── FormType ──────────────────────────────────────────────────────────
    if "form_types" not in existing:
        op.create_table(
            "form_types",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=30), nullable=False, comment="e.g. PHDEE02-A"),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column(
                "stage", sa.String(length=40), nullable=False,
                comment="Workflow stage the form belongs to",
            ),
            sa.Column("requires_admin_approval", sa.Boolean(), nullable=False),
            sa.Column("requires_supervisor_approval", sa.Boolean(), nullable=False),
            sa.Column("requires_gec_approval", sa.Boolean(), nullable=False),
            sa.Column("prerequisite_codes", sa.JSON(), nullable=False),
            sa.Column("max_submissions_per_user", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", _tz(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )
        op.create_index("ix_form_types_stage", "form_types", ["stage"])

    # ── FormSubmission ────────────────────────────────────────────────────
    if "form_submissions" not in existing:
        channel_cols = []
        for channel in ("admin", "supervisor", "gec"):
            channel_cols += [
                sa.Column(f"{channel}_status", sa.String(length=10), nullable=False),
                sa.Column(f"{channel}_approver_id", sa.Integer(), nullable=True),
                sa.Column(f"{channel}_decided_at", _tz(), nullable=True),
                sa.Column(f"{channel}_comment", sa.Text(), nullable=True),
                sa.ForeignKeyConstraint([f"{channel}_approver_id"], ["users.id"], ondelete="SET NULL"),
            ]
        op.create_table(
            "form_submissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column("form_type_id", sa.Integer(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column(
                "status", sa.String(length=20), nullable=False,
                comment="submitted | under_review | approved | rejected",
            ),
            *channel_cols,
            sa.Column("semester", sa.Integer(), nullable=True),
            sa.Column("academic_year", sa.String(length=9), nullable=True, comment="YYYY-YYYY"),
            sa.Column("submitted_at", _tz(), nullable=False),
            sa.Column("approved_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["form_type_id"], ["form_types.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_form_submissions_student_id", "form_submissions", ["student_id"])
        op.create_index("ix_submission_student_form", "form_submissions", ["student_id", "form_type_id"])
        op.create_index("ix_submission_status", "form_submissions", ["status"])

    # ── FormDraft ─────────────────────────────────────────────────────────
    if "form_drafts" not in existing:
        op.create_table(
            "form_drafts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column("form_type_id", sa.Integer(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=False),
            sa.Column("total_steps", sa.Integer(), nullable=False),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["form_type_id"], ["form_types.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("student_id", "form_type_id", name="uq_draft_student_form"),
        )
        op.create_index("ix_form_drafts_student_id", "form_drafts", ["student_id"])

    # ── WorkflowProgress ──────────────────────────────────────────────────
    if "workflow_progress" not in existing:
        op.create_table(
            "workflow_progress",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column("current_stage", sa.String(length=40), nullable=False),
            sa.Column("stage_start_date", _tz(), nullable=False),
            sa.Column("is_stage_completed", sa.Boolean(), nullable=False),
            sa.Column("stage_completion_date", _tz(), nullable=True),
            sa.Column("semester", sa.Integer(), nullable=False),
            sa.Column("academic_year", sa.String(length=9), nullable=False, comment="YYYY-YYYY"),
            sa.Column("created_at", _tz(), nullable=True),
            sa.Column("updated_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("student_id"),
        )

    # ── StageTransition ───────────────────────────────────────────────────
    if "stage_transitions" not in existing:
        op.create_table(
            "stage_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column("from_stage", sa.String(length=40), nullable=False),
            sa.Column(
                "to_stage", sa.String(length=40), nullable=True,
                comment="NULL when the programme was completed",
            ),
            sa.Column("stage_started_at", _tz(), nullable=True),
            sa.Column("completed_at", _tz(), nullable=False),
            sa.Column("advanced_by_id", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["advanced_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stage_transitions_student_id", "stage_transitions", ["student_id"])

    # ── ComprehensiveExam / ThesisDefense ─────────────────────────────────
    if "comprehensive_exams" not in existing:
        op.create_table(
            "comprehensive_exams",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column("exam_date", _tz(), nullable=False),
            sa.Column("venue", sa.String(length=200), nullable=True),
            sa.Column(
                "exam_status", sa.String(length=20), nullable=False,
                comment="scheduled | completed | cancelled",
            ),
            sa.Column(
                "overall_result", sa.String(length=10), nullable=False,
                comment="pending | pass | fail",
            ),
            sa.Column("remarks", sa.Text(), nullable=True),
            sa.Column("recorded_by_id", sa.Integer(), nullable=True),
            sa.Column("created_at", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recorded_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_comprehensive_exams_student_id", "comprehensive_exams", ["student_id"])

    if "thesis_defenses" not in existing:
        op.create_table(
            "thesis_defenses",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column(
                "defense_type", sa.String(length=20), nullable=False,
                comment="synopsis | in_house | public",
            ),
            sa.Column("scheduled_date", _tz(), nullable=False),
            sa.Column("venue", sa.String(length=200), nullable=True),
            sa.Column("defense_status", sa.String(length=20), nullable=False),
            sa.Column("overall_result", sa.String(length=10), nullable=False),
            sa.Column("remarks", sa.Text(), nullable=True),
            sa.Column("recorded_by_id", sa.Integer(), nullable=True),
            sa.Column("created_at", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recorded_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_thesis_defenses_student_id", "thesis_defenses", ["student_id"])
        op.create_index("ix_defense_student_type", "thesis_defenses", ["student_id", "defense_type"])

    # ── Notification ──────────────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("related_submission_id", sa.Integer(), nullable=True),
            sa.Column("action_required", sa.Boolean(), nullable=False),
            sa.Column("action_url", sa.String(length=300), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", _tz(), nullable=True),
            sa.Column("created_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["related_submission_id"], ["form_submissions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
        op.create_index("ix_notification_recipient_read", "notifications", ["recipient_id", "is_read"])
        op.create_index("ix_notification_category_created", "notifications", ["category", "created_at"])

    # ── WorkflowAudit ─────────────────────────────────────────────────────
    if "workflow_audits" not in existing:
        op.create_table(
            "workflow_audits",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("student_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=40), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_role", sa.String(length=20), nullable=False),
            sa.Column("changes", sa.JSON(), nullable=False, comment="{field: {old, new}}"),
            sa.Column("created_at", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["student_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_audits_action", "workflow_audits", ["action"])
        op.create_index("ix_workflow_audit_student_created", "workflow_audits", ["student_id", "created_at"])


def downgrade():
    for table in (
        "workflow_audits",
        "notifications",
        "thesis_defenses",
        "comprehensive_exams",
        "stage_transitions",
        "workflow_progress",
        "form_drafts",
        "form_submissions",
        "form_types",
        "users",
    ):
        op.drop_table(table)
