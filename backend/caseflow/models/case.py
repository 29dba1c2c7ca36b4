"""
Case model - one student's advisory engagement
"""
from enum import Enum
from uuid import uuid4

from sqlalchemy import (CheckConstraint, Column, DateTime, Index, Integer,
                        String, Uuid)
from sqlalchemy.orm import relationship

from caseflow.core.database import Base
from caseflow.core.utils import utcnow


class CaseStage(str, Enum):
    """Workflow stage of a case"""
    PLANNING = "planning"  # Planner handles payment, channel and staffing
    COUNSELING = "counseling"  # Counselor builds strategy and prescription
    ANALYZING = "analyzing"  # Analyst assesses the issued prescription
    CYCLING = "cycling"  # Counselor reviews analysis, loop or close
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CaseStage.COMPLETED, CaseStage.CANCELLED)


class PaymentStatus(str, Enum):
    """Payment confirmation status"""
    PENDING = "pending"
    CONFIRMED = "confirmed"


class Case(Base):
    """Case model - the central workflow aggregate"""
    __tablename__ = "cases"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    case_template_id = Column(String(64), nullable=False, index=True)  # Case-based offering
    student_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(64), nullable=True)

    # Actor references (opaque identifiers owned by the identity service)
    planner_id = Column(String(64), nullable=False, index=True)
    counselor_id = Column(String(64), nullable=True, index=True)
    analyst_id = Column(String(64), nullable=True, index=True)

    stage = Column(String(20), nullable=False, default=CaseStage.PLANNING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    cycle_count = Column(Integer, nullable=False, default=0)
    line_group_url = Column(String(500), nullable=True)

    payment_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Optimistic concurrency guard on top of the row lock
    version = Column(Integer, nullable=False, default=1)

    # Relationships
    tasks = relationship("Task", back_populates="case", order_by="Task.created_at")
    prescriptions = relationship("Prescription", back_populates="case", order_by="Prescription.cycle_number")
    notes = relationship("CaseNote", back_populates="case", order_by="CaseNote.created_at")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_cases_student_stage", "student_id", "stage"),
        Index("idx_cases_counselor_stage", "counselor_id", "stage"),
        Index("idx_cases_analyst_stage", "analyst_id", "stage"),
        CheckConstraint("cycle_count >= 0", name="cases_cycle_count_check"),
        CheckConstraint(
            "stage IN ('planning', 'counseling', 'analyzing', 'cycling', 'completed', 'cancelled')",
            name="cases_stage_check"
        ),
    )

    @property
    def stage_enum(self) -> CaseStage:
        return CaseStage(self.stage)

    @property
    def is_terminal(self) -> bool:
        return self.stage_enum.is_terminal

    @property
    def is_payment_confirmed(self) -> bool:
        return self.payment_status == PaymentStatus.CONFIRMED.value

    def __repr__(self):
        return f"<Case(id={self.id}, stage={self.stage}, cycle_count={self.cycle_count})>"
