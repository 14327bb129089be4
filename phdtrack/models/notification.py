"""
PhD Progress Tracker
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from phdtrack.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {
    "workflow", "submission", "decision", "assessment",
    "pending_reminder", "stage_reminder", "deadline_reminder", "system",
}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. Content is write-once; only the
    read-tracking fields change after creation.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notification_recipient_read", "recipient_id", "is_read"),
        db.Index("ix_notification_category_created", "category", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    related_submission_id = db.Column(
        db.Integer, db.ForeignKey("form_submissions.id", ondelete="SET NULL"), nullable=True,
    )
    action_required = db.Column(db.Boolean, nullable=False, default=False)
    action_url = db.Column(db.String(300), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "related_submission_id": self.related_submission_id,
            "action_required": self.action_required,
            "action_url": self.action_url,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
