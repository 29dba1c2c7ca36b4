"""
Prescription models - one cycle's issued strategy with its courses, learning tasks and items
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (JSON, CheckConstraint, Column, DateTime, Float,
                        ForeignKey, Integer, String, Text, UniqueConstraint,
                        Uuid)
from sqlalchemy.orm import relationship

from caseflow.core.database import Base
from caseflow.core.utils import is_past_due


class PrescriptionStatus(str, Enum):
    """Prescription status"""
    DRAFT = "draft"
    ISSUED = "issued"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LearningTaskStatus(str, Enum):
    """Learning task status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class PrescriptionItemType(str, Enum):
    """Free-form prescription item kind"""
    TASK = "task"
    COURSE = "course"
    RESOURCE = "resource"
    ASSESSMENT = "assessment"
    NOTE = "note"
    GOAL = "goal"
    OTHER = "other"


class PrescriptionItemStatus(str, Enum):
    """Prescription item status"""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Prescription(Base):
    """Prescription model"""
    __tablename__ = "prescriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    case_id = Column(Uuid(as_uuid=True), ForeignKey("cases.id"), nullable=False, index=True)
    counselor_id = Column(String(64), nullable=False, index=True)
    counseling_session_id = Column(String(64), nullable=True)
    cycle_number = Column(Integer, nullable=False)

    strategy_report = Column(Text, nullable=True)
    counseling_notes = Column(Text, nullable=True)
    learning_goals = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default=PrescriptionStatus.DRAFT.value)
    issued_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    case = relationship("Case", back_populates="prescriptions")
    courses = relationship("PrescriptionCourse", back_populates="prescription", order_by="PrescriptionCourse.created_at")
    learning_tasks = relationship("LearningTask", back_populates="prescription", order_by="LearningTask.created_at")
    items = relationship("PrescriptionItem", back_populates="prescription", order_by="PrescriptionItem.sort_order")
    assessment = relationship("Assessment", back_populates="prescription", uselist=False)

    __table_args__ = (
        UniqueConstraint("case_id", "cycle_number", name="uq_prescriptions_case_cycle"),
        CheckConstraint("cycle_number >= 1", name="prescriptions_cycle_number_check"),
        CheckConstraint(
            "status IN ('draft', 'issued', 'completed', 'cancelled')",
            name="prescriptions_status_check"
        ),
    )

    def __repr__(self):
        return f"<Prescription(id={self.id}, cycle_number={self.cycle_number}, status={self.status})>"


class PrescriptionCourse(Base):
    """Course recommendation attached to a prescription"""
    __tablename__ = "prescription_courses"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id"), nullable=False, index=True)
    course_template_id = Column(String(64), ForeignKey("course_templates.id"), nullable=False)
    reason = Column(Text, nullable=True)
    recommended_sessions = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    prescription = relationship("Prescription", back_populates="courses")

    __table_args__ = (
        UniqueConstraint("prescription_id", "course_template_id", name="uq_prescription_courses_pair"),
        CheckConstraint("recommended_sessions >= 1", name="prescription_courses_sessions_check"),
    )


class LearningTask(Base):
    """Learning task assigned to the student by a prescription"""
    __tablename__ = "learning_tasks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    resources = Column(JSON, nullable=True)
    estimated_hours = Column(Float, nullable=True)
    status = Column(String(20), nullable=False, default=LearningTaskStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    due_date = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    prescription = relationship("Prescription", back_populates="learning_tasks")

    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="learning_tasks_progress_check"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (LearningTaskStatus.COMPLETED.value, LearningTaskStatus.SKIPPED.value)

    @property
    def is_overdue(self) -> bool:
        return not self.is_terminal and is_past_due(self.due_date)


class PrescriptionItem(Base):
    """Ordered free-form entry of a prescription"""
    __tablename__ = "prescription_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    prescription_id = Column(Uuid(as_uuid=True), ForeignKey("prescriptions.id"), nullable=False, index=True)
    item_type = Column(String(20), nullable=False, default=PrescriptionItemType.OTHER.value)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    item_metadata = Column("metadata", JSON, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=PrescriptionItemStatus.PENDING.value)
    completion_notes = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    prescription = relationship("Prescription", back_populates="items")
