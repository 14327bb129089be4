"""
Prerequisite Checker.

A prerequisite form is satisfied when the student's MOST RECENT submission
of that form is approved. An older approved filing does not count if a
newer one is still under review or was rejected.

Read-only: nothing in this module writes to the session.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from phdtrack.models import db
from phdtrack.models.workflow import STATUS_APPROVED, FormSubmission, FormType

logger = logging.getLogger(__name__)


def latest_submission(student_id: int, form_code: str) -> FormSubmission | None:
    """Return the student's newest submission of ``form_code`` (ties broken by id)."""
    stmt = (
        select(FormSubmission)
        .join(FormType, FormSubmission.form_type_id == FormType.id)
        .where(FormSubmission.student_id == student_id, FormType.code == form_code)
        .order_by(FormSubmission.submitted_at.desc(), FormSubmission.id.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalars().first()


def latest_statuses(student_id: int, form_codes) -> dict[str, str | None]:
    """Map each code to the status of the student's newest submission, or None."""
    result = {}
    for code in form_codes:
        sub = latest_submission(student_id, code)
        result[code] = sub.status if sub else None
    return result


def check_prerequisites(student_id: int, form_code: str) -> dict:
    """Decide whether ``form_code``'s declared prerequisites are satisfied.

    Returns:
        {"met": bool, "missing": [code, ...]} with ``missing`` in declaration order.
        An unknown form code has no declared prerequisites and is reported as met.
    """
    form_type = db.session.execute(
        select(FormType).where(FormType.code == form_code)
    ).scalar_one_or_none()
    if form_type is None:
        logger.warning(
            "Prerequisite check for unknown form %s treated as no prerequisites", form_code,
            extra={"student_id": student_id, "form_code": form_code},
        )
        return {"met": True, "missing": []}

    statuses = latest_statuses(student_id, form_type.prerequisite_codes or [])
    missing = [code for code, status in statuses.items() if status != STATUS_APPROVED]
    return {"met": not missing, "missing": missing}
