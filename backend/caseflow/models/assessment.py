"""
Assessment model - the analyst's evaluation of one prescription
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (JSON, CheckConstraint, Column, DateTime, Float,
                        ForeignKey, Integer, String, Text, Uuid)
from sqlalchemy.orm import relationship

from caseflow.core.database import Base


class AssessmentStatus(str, Enum):
    """Assessment status"""
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Assessment(Base):
    """Assessment model"""
    __tablename__ = "assessments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id"), nullable=False, unique=True)
    analyst_id = Column(String(64), nullable=False, index=True)

    test_content = Column(Text, nullable=True)
    test_results = Column(JSON, nullable=True)
    test_score = Column(Float, nullable=True)
    analysis_report = Column(Text, nullable=True)
    metrics = Column(JSON, nullable=True)
    recommendations = Column(JSON, nullable=True)

    # Derived metrics reported by the analyst
    study_hours = Column(Float, nullable=True)
    tasks_completed = Column(Integer, nullable=True)
    courses_attended = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False, default=AssessmentStatus.DRAFT.value)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    prescription = relationship("Prescription", back_populates="assessment")

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'in_review', 'completed', 'cancelled')",
            name="assessments_status_check"
        ),
    )

    @property
    def case_id(self):
        return self.prescription.case_id if self.prescription else None

    def __repr__(self):
        return f"<Assessment(id={self.id}, prescription_id={self.prescription_id}, status={self.status})>"
