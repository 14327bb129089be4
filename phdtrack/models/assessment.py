"""
PhD Progress Tracker
Assessment records — comprehensive exams and thesis defenses.

Models:
    - ComprehensiveExam: scheduled sitting of the comprehensive examination
    - ThesisDefense: synopsis, in-house or public defense session

Both carry an ``overall_result`` that the advancement engine reads for its
stage-specific predicates.
"""

from datetime import datetime, timezone

from phdtrack.models import db

# ── Constants ────────────────────────────────────────────────────────────────

RESULT_PENDING = "pending"
RESULT_PASS = "pass"
RESULT_FAIL = "fail"
VALID_RESULTS = frozenset({RESULT_PENDING, RESULT_PASS, RESULT_FAIL})
DECIDED_RESULTS = frozenset({RESULT_PASS, RESULT_FAIL})

SESSION_SCHEDULED = "scheduled"
SESSION_COMPLETED = "completed"
SESSION_CANCELLED = "cancelled"

DEFENSE_SYNOPSIS = "synopsis"
DEFENSE_IN_HOUSE = "in_house"
DEFENSE_PUBLIC = "public"
DEFENSE_TYPES = frozenset({DEFENSE_SYNOPSIS, DEFENSE_IN_HOUSE, DEFENSE_PUBLIC})


class ComprehensiveExam(db.Model):
    __tablename__ = "comprehensive_exams"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    exam_date = db.Column(db.DateTime(timezone=True), nullable=False)
    venue = db.Column(db.String(200), default="")
    exam_status = db.Column(
        db.String(20), nullable=False, default=SESSION_SCHEDULED,
        comment="scheduled | completed | cancelled",
    )
    overall_result = db.Column(
        db.String(10), nullable=False, default=RESULT_PENDING, comment="pending | pass | fail",
    )
    remarks = db.Column(db.Text, nullable=True)
    recorded_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "student_id": self.student_id,
            "exam_date": self.exam_date.isoformat() if self.exam_date else None,
            "venue": self.venue,
            "exam_status": self.exam_status,
            "overall_result": self.overall_result,
            "remarks": self.remarks,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ComprehensiveExam {self.id}: student={self.student_id} result={self.overall_result}>"


class ThesisDefense(db.Model):
    __tablename__ = "thesis_defenses"
    __table_args__ = (
        db.Index("ix_defense_student_type", "student_id", "defense_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    defense_type = db.Column(db.String(20), nullable=False, comment="synopsis | in_house | public")
    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=False)
    venue = db.Column(db.String(200), default="")
    defense_status = db.Column(
        db.String(20), nullable=False, default=SESSION_SCHEDULED,
        comment="scheduled | completed | cancelled",
    )
    overall_result = db.Column(
        db.String(10), nullable=False, default=RESULT_PENDING, comment="pending | pass | fail",
    )
    remarks = db.Column(db.Text, nullable=True)
    recorded_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "student_id": self.student_id,
            "defense_type": self.defense_type,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "venue": self.venue,
            "defense_status": self.defense_status,
            "overall_result": self.overall_result,
            "remarks": self.remarks,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ThesisDefense {self.id}: {self.defense_type} result={self.overall_result}>"
