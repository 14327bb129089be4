"""
PhD Progress Tracker
Workflow audit trail.

Administrators can move a student's workflow on the student's behalf
(advance, completion, semester corrections). Each such action leaves one
append-only ``WorkflowAudit`` row; students acting on their own workflow
are covered by ``StageTransition`` and are not audited here.
"""

from datetime import datetime, timezone

from phdtrack.models import db

AUDIT_ACTIONS = {
    "workflow.advance",
    "workflow.complete",
    "workflow.update_semester",
}


class WorkflowAudit(db.Model):
    __tablename__ = "workflow_audits"
    __table_args__ = (
        db.Index("ix_workflow_audit_student_created", "student_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    action = db.Column(db.String(40), nullable=False, index=True)
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    actor_role = db.Column(db.String(20), nullable=False)
    changes = db.Column(db.JSON, nullable=False, default=dict, comment="{field: {old, new}}")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "student_id": self.student_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "actor_role": self.actor_role,
            "changes": self.changes or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkflowAudit {self.id}: {self.action} student={self.student_id}>"


def record_audit(student_id: int, action: str, actor, changes: dict | None = None) -> WorkflowAudit:
    """Add one audit row for ``actor`` (an ``Actor``). Flushes; the caller commits."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    entry = WorkflowAudit(
        student_id=student_id,
        action=action,
        actor_user_id=actor.id,
        actor_role=actor.role,
        changes=changes or {},
    )
    db.session.add(entry)
    db.session.flush()
    return entry
