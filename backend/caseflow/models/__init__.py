"""
SQLAlchemy models
"""
from caseflow.core.database import Base
from caseflow.models.assessment import Assessment, AssessmentStatus  # noqa: F401
from caseflow.models.case import Case, CaseStage, PaymentStatus  # noqa: F401
from caseflow.models.case_note import (CaseNote, ImmutableNoteError,  # noqa: F401
                                       NoteType)
from caseflow.models.course_template import CourseTemplate  # noqa: F401
from caseflow.models.prescription import (LearningTask,  # noqa: F401
                                          LearningTaskStatus, Prescription,
                                          PrescriptionCourse,
                                          PrescriptionItem,
                                          PrescriptionItemStatus,
                                          PrescriptionItemType,
                                          PrescriptionStatus)
from caseflow.models.task import (WORKFLOW_DRIVEN_TASK_TYPES,  # noqa: F401
                                  AssessmentRef, CaseRef, PrescriptionRef,
                                  Task, TaskDependency, TaskPriority,
                                  TaskStatus, TaskSubject, TaskSubjectType,
                                  TaskType)

__all__ = [
    "Base",
    "Assessment",
    "AssessmentStatus",
    "Case",
    "CaseStage",
    "PaymentStatus",
    "CaseNote",
    "ImmutableNoteError",
    "NoteType",
    "CourseTemplate",
    "LearningTask",
    "LearningTaskStatus",
    "Prescription",
    "PrescriptionCourse",
    "PrescriptionItem",
    "PrescriptionItemStatus",
    "PrescriptionItemType",
    "PrescriptionStatus",
    "WORKFLOW_DRIVEN_TASK_TYPES",
    "AssessmentRef",
    "CaseRef",
    "PrescriptionRef",
    "Task",
    "TaskDependency",
    "TaskPriority",
    "TaskStatus",
    "TaskSubject",
    "TaskSubjectType",
    "TaskType",
]
