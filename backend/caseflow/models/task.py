"""
Task model - actor-assigned unit of work scoped to a case
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Union
from uuid import UUID, uuid4

from sqlalchemy import (JSON, CheckConstraint, Column, DateTime, ForeignKey,
                        Index, String, Text, Uuid)
from sqlalchemy.orm import relationship

from caseflow.core.database import Base
from caseflow.core.utils import is_past_due


class TaskStatus(str, Enum):
    """Task status"""
    PENDING = "pending"  # Ready to be picked up
    IN_PROGRESS = "in_progress"  # Started by the assignee
    BLOCKED = "blocked"  # Waiting on an incomplete dependency
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def open_values(cls) -> List[str]:
        return [cls.PENDING.value, cls.IN_PROGRESS.value, cls.BLOCKED.value]


class TaskPriority(str, Enum):
    """Task priority"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TaskType(str, Enum):
    """Fixed task vocabulary"""
    # Planner
    CREATE_LINE_GROUP = "create_line_group"
    CONFIRM_PAYMENT = "confirm_payment"
    ASSIGN_COUNSELOR = "assign_counselor"
    ASSIGN_ANALYST = "assign_analyst"

    # Counselor
    CREATE_STRATEGY = "create_strategy"
    CONDUCT_COUNSELING = "conduct_counseling"
    ISSUE_PRESCRIPTION = "issue_prescription"
    REVIEW_ANALYSIS = "review_analysis"
    ADJUST_STRATEGY = "adjust_strategy"

    # Analyst
    CREATE_ASSESSMENT = "create_assessment"
    ANALYZE_RESULTS = "analyze_results"
    SUBMIT_ANALYSIS = "submit_analysis"

    # Student
    COMPLETE_LEARNING_TASK = "complete_learning_task"
    ATTEND_COURSE = "attend_course"
    TAKE_ASSESSMENT = "take_assessment"


# Task types completed only through their lifecycle operation
WORKFLOW_DRIVEN_TASK_TYPES = frozenset([
    TaskType.CREATE_LINE_GROUP.value,
    TaskType.CONFIRM_PAYMENT.value,
    TaskType.ASSIGN_COUNSELOR.value,
    TaskType.ASSIGN_ANALYST.value,
    TaskType.CREATE_STRATEGY.value,
    TaskType.ISSUE_PRESCRIPTION.value,
    TaskType.REVIEW_ANALYSIS.value,
    TaskType.CREATE_ASSESSMENT.value,
    TaskType.SUBMIT_ANALYSIS.value,
])


class TaskSubjectType(str, Enum):
    """Kind of entity a task is about"""
    CASE = "case"
    PRESCRIPTION = "prescription"
    ASSESSMENT = "assessment"


@dataclass(frozen=True)
class CaseRef:
    id: UUID
    subject_type = TaskSubjectType.CASE


@dataclass(frozen=True)
class PrescriptionRef:
    id: UUID
    subject_type = TaskSubjectType.PRESCRIPTION


@dataclass(frozen=True)
class AssessmentRef:
    id: UUID
    subject_type = TaskSubjectType.ASSESSMENT


TaskSubject = Union[CaseRef, PrescriptionRef, AssessmentRef]

_SUBJECT_REFS = {
    TaskSubjectType.CASE.value: CaseRef,
    TaskSubjectType.PRESCRIPTION.value: PrescriptionRef,
    TaskSubjectType.ASSESSMENT.value: AssessmentRef,
}


class Task(Base):
    """Task model"""
    __tablename__ = "case_tasks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    case_id = Column(Uuid(as_uuid=True), ForeignKey("cases.id"), nullable=False, index=True)
    assignee_id = Column(String(64), nullable=False, index=True)

    # Subject of work: the case itself, a prescription or an assessment
    subject_type = Column(String(20), nullable=False, default=TaskSubjectType.CASE.value)
    subject_id = Column(Uuid(as_uuid=True), nullable=False)

    type = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    priority = Column(String(20), nullable=False, default=TaskPriority.NORMAL.value)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    task_metadata = Column("metadata", JSON, nullable=True)

    due_date = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    case = relationship("Case", back_populates="tasks")

    __table_args__ = (
        Index("idx_case_tasks_case_status", "case_id", "status"),
        Index("idx_case_tasks_assignee_status", "assignee_id", "status"),
        Index("idx_case_tasks_subject", "subject_type", "subject_id"),
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'blocked', 'completed', 'cancelled')",
            name="case_tasks_status_check"
        ),
    )

    @property
    def subject(self) -> TaskSubject:
        return _SUBJECT_REFS[self.subject_type](self.subject_id)

    @subject.setter
    def subject(self, value: TaskSubject) -> None:
        self.subject_type = value.subject_type.value
        self.subject_id = value.id

    @property
    def dependencies(self) -> List["Task"]:
        return [link.depends_on for link in self.dependency_links]

    @property
    def dependents(self) -> List["Task"]:
        return [link.task for link in self.dependent_links]

    @property
    def is_open(self) -> bool:
        return self.status in TaskStatus.open_values()

    @property
    def is_overdue(self) -> bool:
        return self.is_open and is_past_due(self.due_date)

    def __repr__(self):
        return f"<Task(id={self.id}, type={self.type}, status={self.status})>"


class TaskDependency(Base):
    """Directed dependency edge between two tasks"""
    __tablename__ = "case_task_dependencies"

    task_id = Column(Uuid(as_uuid=True), ForeignKey("case_tasks.id"), primary_key=True)
    depends_on_task_id = Column(Uuid(as_uuid=True), ForeignKey("case_tasks.id"), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    task = relationship("Task", foreign_keys=[task_id], backref="dependency_links")
    depends_on = relationship("Task", foreign_keys=[depends_on_task_id], backref="dependent_links")

    __table_args__ = (
        CheckConstraint("task_id != depends_on_task_id", name="case_task_dependencies_no_self_check"),
    )
