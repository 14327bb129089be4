"""
PhD Progress Tracker
Workflow domain models.

Models:
    - FormType: catalog row for a document template and its approval channels
    - FormSubmission: one filing of a form by a student, with per-channel state
    - FormDraft: in-progress form data, one row per (student, form type)
    - WorkflowProgress: the student's current stage, one row per student
    - StageTransition: append-only history of completed stages
"""

from datetime import datetime, timezone

from phdtrack.models import db

# ── Constants ────────────────────────────────────────────────────────────────

CHANNELS = ("admin", "supervisor", "gec")

CHANNEL_PENDING = "pending"
CHANNEL_APPROVED = "approved"
CHANNEL_REJECTED = "rejected"
CHANNEL_NOT_REQUIRED = "n/a"
CHANNEL_STATUSES = frozenset({CHANNEL_PENDING, CHANNEL_APPROVED, CHANNEL_REJECTED, CHANNEL_NOT_REQUIRED})

STATUS_SUBMITTED = "submitted"
STATUS_UNDER_REVIEW = "under_review"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
SUBMISSION_STATUSES = frozenset({STATUS_SUBMITTED, STATUS_UNDER_REVIEW, STATUS_APPROVED, STATUS_REJECTED})
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})
OPEN_STATUSES = frozenset({STATUS_SUBMITTED, STATUS_UNDER_REVIEW})


def _iso(value):
    return value.isoformat() if value else None


class FormType(db.Model):
    """Document template that a student files and one or more channels approve."""

    __tablename__ = "form_types"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=False, unique=True, comment="e.g. PHDEE02-A")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    stage = db.Column(db.String(40), nullable=False, index=True, comment="Workflow stage the form belongs to")

    requires_admin_approval = db.Column(db.Boolean, nullable=False, default=False)
    requires_supervisor_approval = db.Column(db.Boolean, nullable=False, default=False)
    requires_gec_approval = db.Column(db.Boolean, nullable=False, default=False)

    prerequisite_codes = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Ordered list of form codes that must be approved first",
    )
    max_submissions_per_user = db.Column(
        db.Integer, nullable=True,
        comment="Quota of non-rejected submissions per student; NULL = unlimited",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def required_channels(self) -> frozenset[str]:
        return frozenset(
            ch for ch in CHANNELS
            if getattr(self, f"requires_{ch}_approval")
        )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "stage": self.stage,
            "required_channels": [ch for ch in CHANNELS if ch in self.required_channels],
            "prerequisite_codes": list(self.prerequisite_codes or []),
            "max_submissions_per_user": self.max_submissions_per_user,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<FormType {self.code}>"


class FormSubmission(db.Model):
    """
    A student's filing of a form type.

    Each channel carries its own status, approver, timestamp and comment.
    ``status`` is always derived from the channel snapshot by the
    approval aggregator; it is never written directly by callers.
    """

    __tablename__ = "form_submissions"
    __table_args__ = (
        db.Index("ix_submission_student_form", "student_id", "form_type_id"),
        db.Index("ix_submission_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    form_type_id = db.Column(
        db.Integer, db.ForeignKey("form_types.id", ondelete="RESTRICT"), nullable=False,
    )
    payload = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(
        db.String(20), nullable=False, default=STATUS_SUBMITTED,
        comment="submitted | under_review | approved | rejected",
    )

    # Administrator channel
    admin_status = db.Column(db.String(10), nullable=False, default=CHANNEL_NOT_REQUIRED)
    admin_approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    admin_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    admin_comment = db.Column(db.Text, nullable=True)

    # Supervisor channel
    supervisor_status = db.Column(db.String(10), nullable=False, default=CHANNEL_NOT_REQUIRED)
    supervisor_approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    supervisor_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    supervisor_comment = db.Column(db.Text, nullable=True)

    # Graduate examination committee channel
    gec_status = db.Column(db.String(10), nullable=False, default=CHANNEL_NOT_REQUIRED)
    gec_approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    gec_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    gec_comment = db.Column(db.Text, nullable=True)

    semester = db.Column(db.Integer, nullable=True)
    academic_year = db.Column(db.String(9), nullable=True, comment="YYYY-YYYY")

    submitted_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    form_type = db.relationship("FormType", lazy="joined")

    def channel_snapshot(self) -> dict[str, str]:
        return {ch: getattr(self, f"{ch}_status") for ch in CHANNELS}

    def set_channel(self, channel: str, status: str, *, approver_id=None, comment=None):
        setattr(self, f"{channel}_status", status)
        setattr(self, f"{channel}_approver_id", approver_id)
        setattr(self, f"{channel}_decided_at", datetime.now(timezone.utc))
        setattr(self, f"{channel}_comment", comment)

    def to_dict(self):
        channels = {}
        for ch in CHANNELS:
            channels[ch] = {
                "status": getattr(self, f"{ch}_status"),
                "approver_id": getattr(self, f"{ch}_approver_id"),
                "decided_at": _iso(getattr(self, f"{ch}_decided_at")),
                "comment": getattr(self, f"{ch}_comment"),
            }
        return {
            "id": self.id,
            "student_id": self.student_id,
            "form_type_id": self.form_type_id,
            "form_code": self.form_type.code if self.form_type else None,
            "form_name": self.form_type.name if self.form_type else None,
            "payload": self.payload or {},
            "status": self.status,
            "channels": channels,
            "semester": self.semester,
            "academic_year": self.academic_year,
            "submitted_at": _iso(self.submitted_at),
            "approved_at": _iso(self.approved_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<FormSubmission {self.id}: student={self.student_id} status={self.status}>"


class FormDraft(db.Model):
    """Saved, not-yet-submitted form data. Upserted on (student_id, form_type_id)."""

    __tablename__ = "form_drafts"
    __table_args__ = (
        db.UniqueConstraint("student_id", "form_type_id", name="uq_draft_student_form"),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    form_type_id = db.Column(
        db.Integer, db.ForeignKey("form_types.id", ondelete="CASCADE"), nullable=False,
    )
    payload = db.Column(db.JSON, nullable=False, default=dict)
    step_number = db.Column(db.Integer, nullable=False, default=0)
    total_steps = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "form_data": self.payload or {},
            "step_number": self.step_number,
            "total_steps": self.total_steps,
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<FormDraft student={self.student_id} form_type={self.form_type_id}>"


class WorkflowProgress(db.Model):
    """
    The student's position in the stage sequence.

    Exactly one row per student. Only the advancement engine changes the
    stage fields; semester fields change through the explicit update call.
    """

    __tablename__ = "workflow_progress"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    current_stage = db.Column(db.String(40), nullable=False)
    stage_start_date = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    is_stage_completed = db.Column(db.Boolean, nullable=False, default=False)
    stage_completion_date = db.Column(db.DateTime(timezone=True), nullable=True)
    semester = db.Column(db.Integer, nullable=False, default=1)
    academic_year = db.Column(db.String(9), nullable=False, comment="YYYY-YYYY")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "student_id": self.student_id,
            "current_stage": self.current_stage,
            "stage_start_date": _iso(self.stage_start_date),
            "is_stage_completed": self.is_stage_completed,
            "stage_completion_date": _iso(self.stage_completion_date),
            "semester": self.semester,
            "academic_year": self.academic_year,
        }

    def __repr__(self):
        return f"<WorkflowProgress student={self.student_id} stage={self.current_stage}>"


class StageTransition(db.Model):
    """Append-only record of a completed stage."""

    __tablename__ = "stage_transitions"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_stage = db.Column(db.String(40), nullable=False)
    to_stage = db.Column(db.String(40), nullable=True, comment="NULL when the programme was completed")
    stage_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )
    advanced_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "student_id": self.student_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "stage_started_at": _iso(self.stage_started_at),
            "completed_at": _iso(self.completed_at),
            "advanced_by_id": self.advanced_by_id,
        }

    def __repr__(self):
        return f"<StageTransition {self.from_stage} -> {self.to_stage}>"
