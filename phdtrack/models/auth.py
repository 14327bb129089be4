"""
PhD Progress Tracker
Identity model.

Models:
    - User: a person known to the workflow engine, with a single role.

Credentials live with the external identity provider; this table only
holds what the engine needs for role checks and notification fan-out.
"""

from datetime import datetime, timezone

from phdtrack.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_STUDENT = "student"
ROLE_SUPERVISOR = "supervisor"
ROLE_ADMIN = "admin"
ROLE_GEC = "gec"

VALID_ROLES = frozenset({ROLE_STUDENT, ROLE_SUPERVISOR, ROLE_ADMIN, ROLE_GEC})


class User(db.Model):
    """Student, supervisor, administrator or graduate examination committee member."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(200), nullable=False, default="")
    role = db.Column(
        db.String(20), nullable=False, default=ROLE_STUDENT, index=True,
        comment="student | supervisor | admin | gec",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Student-only attributes
    student_number = db.Column(db.String(30), nullable=True, unique=True)
    enrollment_year = db.Column(db.Integer, nullable=True)
    department = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @property
    def is_student(self) -> bool:
        return self.role == ROLE_STUDENT

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "student_number": self.student_number,
            "enrollment_year": self.enrollment_year,
            "department": self.department,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
