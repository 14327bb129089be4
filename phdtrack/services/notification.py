"""
PhD Progress Tracker
Notification Service.

Workflow services never write notifications themselves. They return a list
of ``NotificationEvent`` records next to their result, and the calling
layer hands that list to ``NotificationService.dispatch`` after the primary
mutation has committed. Dispatch is best-effort: a failure is logged and
swallowed so it can never undo or block the workflow change.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update

from phdtrack.models import db
from phdtrack.models.auth import User
from phdtrack.models.notification import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    """Post-commit notification to deliver to one recipient."""

    recipient_id: int
    title: str
    message: str = ""
    severity: str = "info"
    category: str = "workflow"
    related_submission_id: int | None = None
    action_required: bool = False
    action_url: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient_id, title, message="", severity="info", category="system",
               related_submission_id=None, action_required=False, action_url=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            severity=severity,
            category=category,
            related_submission_id=related_submission_id,
            action_required=action_required,
            action_url=action_url,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def dispatch(events) -> int:
        """
        Persist a batch of events in one commit.

        Never raises: on failure the batch is rolled back and logged.
        Events addressed to a user id that does not exist are dropped with
        a warning; the rest of the batch is still written.

        Returns:
            Number of notifications written (0 on failure).
        """
        events = list(events or [])
        if not events:
            return 0
        try:
            wanted = {e.recipient_id for e in events}
            known = set(db.session.execute(select(User.id).where(User.id.in_(wanted))).scalars())
            dropped = [e for e in events if e.recipient_id not in known]
            if dropped:
                logger.warning(
                    "Dropping %d notification(s) for unknown recipients %s", len(dropped),
                    sorted({e.recipient_id for e in dropped}),
                    extra={"operation": "notification_dispatch"},
                )
                events = [e for e in events if e.recipient_id in known]
            if not events:
                return 0
            for event in events:
                db.session.add(Notification(**event.to_dict()))
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception(
                "Notification dispatch failed; %d event(s) dropped", len(events),
                extra={"operation": "notification_dispatch"},
            )
            return 0
        return len(events)

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        stmt = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        total = db.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return db.session.execute(
            select(func.count(Notification.id)).where(
                Notification.recipient_id == recipient_id,
                Notification.is_read.is_(False),
            )
        ).scalar_one()

    @staticmethod
    def exists_recent(recipient_id, category, within_days, related_submission_id=None) -> bool:
        """True if a notification of ``category`` reached the recipient within ``within_days``.

        Idempotency guard for periodic reminder sweeps.
        """
        since = datetime.now(timezone.utc) - timedelta(days=within_days)
        stmt = select(Notification.id).where(
            Notification.recipient_id == recipient_id,
            Notification.category == category,
            Notification.created_at > since,
        )
        if related_submission_id is not None:
            stmt = stmt.where(Notification.related_submission_id == related_submission_id)
        return db.session.execute(stmt.limit(1)).first() is not None

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read. Returns None if not owned by the recipient."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            return None
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        result = db.session.execute(
            update(Notification)
            .where(Notification.recipient_id == recipient_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session="fetch")
        )
        db.session.commit()
        return result.rowcount

    @staticmethod
    def delete(notification_id, recipient_id) -> bool:
        """Delete one notification. False if it does not exist or is not the recipient's."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            return False
        db.session.delete(notif)
        db.session.commit()
        return True
