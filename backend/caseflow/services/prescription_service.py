"""
Prescription Cycle - strategy issuance, finalization and learning task progress
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from caseflow.core.errors import (InvalidTransitionError, NotFoundError,
                                  PreconditionUnmetError)
from caseflow.core.logging_config import LoggingConfig
from caseflow.core.utils import utcnow
from caseflow.models.case import Case
from caseflow.models.prescription import (LearningTask, LearningTaskStatus,
                                          Prescription, PrescriptionCourse,
                                          PrescriptionItem,
                                          PrescriptionItemStatus,
                                          PrescriptionItemType,
                                          PrescriptionStatus)
from caseflow.services.course_catalog import CourseCatalog, DatabaseCourseCatalog

logger = LoggingConfig.get_logger(__name__)


@dataclass
class CourseRecommendation:
    course_template_id: str
    reason: Optional[str] = None
    recommended_sessions: int = 1


@dataclass
class LearningTaskInput:
    title: str
    description: Optional[str] = None
    resources: Optional[List[Any]] = None
    estimated_hours: Optional[float] = None
    due_date: Optional[datetime] = None


@dataclass
class PrescriptionItemInput:
    title: str
    item_type: PrescriptionItemType = PrescriptionItemType.OTHER
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    sort_order: Optional[int] = None


class PrescriptionService:
    """Service for the prescription part of a cycle"""

    def __init__(self, db: Session, catalog: Optional[CourseCatalog] = None):
        self.db = db
        self.catalog = catalog or DatabaseCourseCatalog(db)

    def get(self, prescription_id: UUID, case_id: Optional[UUID] = None) -> Prescription:
        prescription = self.db.query(Prescription).filter(Prescription.id == prescription_id).first()
        if not prescription or (case_id is not None and prescription.case_id != case_id):
            raise NotFoundError(
                f"Prescription {prescription_id} not found",
                {"prescription_id": str(prescription_id)}
            )
        return prescription

    def get_by_cycle(self, case_id: UUID, cycle_number: int) -> Optional[Prescription]:
        return self.db.query(Prescription).filter(
            Prescription.case_id == case_id,
            Prescription.cycle_number == cycle_number
        ).first()

    def list_for_case(self, case_id: UUID) -> List[Prescription]:
        return self.db.query(Prescription).filter(
            Prescription.case_id == case_id
        ).order_by(Prescription.cycle_number).all()

    def issue_draft(
        self,
        case: Case,
        counselor_id: str,
        strategy_report: Optional[str] = None,
        counseling_notes: Optional[str] = None,
        learning_goals: Optional[List[Any]] = None,
        counseling_session_id: Optional[str] = None,
    ) -> Prescription:
        """
        Create the draft prescription of the case's next cycle

        The first prescription of a case has cycle_number 1.
        """
        cycle_number = case.cycle_count + 1
        if self.get_by_cycle(case.id, cycle_number):
            raise PreconditionUnmetError(
                f"Cycle #{cycle_number} already has a prescription",
                {"case_id": str(case.id), "cycle_number": cycle_number}
            )

        prescription = Prescription(
            case_id=case.id,
            counselor_id=counselor_id,
            counseling_session_id=counseling_session_id,
            cycle_number=cycle_number,
            strategy_report=strategy_report,
            counseling_notes=counseling_notes,
            learning_goals=learning_goals,
            status=PrescriptionStatus.DRAFT.value,
        )
        self.db.add(prescription)
        self.db.flush()

        logger.info(
            f"Draft prescription created for cycle #{cycle_number}",
            extra={"case_id": str(case.id), "prescription_id": str(prescription.id), "cycle_number": cycle_number}
        )
        return prescription

    def validate_courses(self, courses: Sequence[CourseRecommendation]) -> None:
        """Reject unknown, repeated or malformed course recommendations"""
        ids = [c.course_template_id for c in courses]
        repeated = sorted({i for i in ids if ids.count(i) > 1})
        if repeated:
            raise PreconditionUnmetError(
                "Course template recommended more than once",
                {"course_template_ids": repeated}
            )
        invalid_sessions = [c.course_template_id for c in courses if c.recommended_sessions < 1]
        if invalid_sessions:
            raise PreconditionUnmetError(
                "Recommended sessions must be at least 1",
                {"course_template_ids": invalid_sessions}
            )
        missing = self.catalog.find_missing(ids)
        if missing:
            raise PreconditionUnmetError(
                "Unknown course template",
                {"course_template_ids": missing}
            )

    def finalize(
        self,
        prescription: Prescription,
        courses: Sequence[CourseRecommendation] = (),
        learning_tasks: Sequence[LearningTaskInput] = (),
        items: Sequence[PrescriptionItemInput] = (),
        now: Optional[datetime] = None,
    ) -> Prescription:
        """
        Attach courses, learning tasks and items and issue the prescription

        Args:
            prescription: Draft prescription
            courses: Course recommendations, validated against the catalog
            learning_tasks: Learning tasks for the student
            items: Free-form ordered items
            now: Issue timestamp

        Returns:
            The issued prescription

        Raises:
            PreconditionUnmetError: prescription is not a draft or a course is unknown
        """
        if prescription.status != PrescriptionStatus.DRAFT.value:
            raise PreconditionUnmetError(
                f"Prescription must be a draft to be issued (status: {prescription.status})",
                {"prescription_id": str(prescription.id), "status": prescription.status}
            )

        self.validate_courses(courses)

        for course in courses:
            prescription.courses.append(PrescriptionCourse(
                course_template_id=course.course_template_id,
                reason=course.reason,
                recommended_sessions=course.recommended_sessions,
            ))

        for task in learning_tasks:
            prescription.learning_tasks.append(LearningTask(
                title=task.title,
                description=task.description,
                resources=task.resources,
                estimated_hours=task.estimated_hours,
                due_date=task.due_date,
                status=LearningTaskStatus.PENDING.value,
                progress=0,
            ))

        for index, item in enumerate(items):
            prescription.items.append(PrescriptionItem(
                item_type=item.item_type.value,
                title=item.title,
                description=item.description,
                item_metadata=item.metadata or None,
                sort_order=item.sort_order if item.sort_order is not None else index,
                status=PrescriptionItemStatus.PENDING.value,
            ))

        prescription.status = PrescriptionStatus.ISSUED.value
        prescription.issued_at = now or utcnow()
        self.db.flush()

        logger.info(
            f"Prescription issued for cycle #{prescription.cycle_number}",
            extra={
                "case_id": str(prescription.case_id),
                "prescription_id": str(prescription.id),
                "courses": len(courses),
                "learning_tasks": len(learning_tasks),
                "items": len(items),
            }
        )
        return prescription

    def complete(self, prescription: Prescription, now: Optional[datetime] = None) -> Prescription:
        if prescription.status != PrescriptionStatus.ISSUED.value:
            raise PreconditionUnmetError(
                f"Only an issued prescription can be completed (status: {prescription.status})",
                {"prescription_id": str(prescription.id), "status": prescription.status}
            )
        prescription.status = PrescriptionStatus.COMPLETED.value
        prescription.completed_at = now or utcnow()
        self.db.flush()
        return prescription

    def cancel(self, prescription: Prescription) -> bool:
        """Cancel a draft or issued prescription; its cycle number stays used"""
        if prescription.status not in (PrescriptionStatus.DRAFT.value, PrescriptionStatus.ISSUED.value):
            return False
        prescription.status = PrescriptionStatus.CANCELLED.value
        self.db.flush()
        return True

    @staticmethod
    def task_completion_rate(prescription: Prescription) -> float:
        """Completed learning tasks over all learning tasks, 0.0 when there are none"""
        total = len(prescription.learning_tasks)
        if total == 0:
            return 0.0
        completed = sum(
            1 for t in prescription.learning_tasks
            if t.status == LearningTaskStatus.COMPLETED.value
        )
        return round(completed / total, 4)

    # ------------------------------------------------------------------
    # Learning tasks
    # ------------------------------------------------------------------

    def get_learning_task(self, learning_task_id: UUID, case_id: Optional[UUID] = None) -> LearningTask:
        learning_task = self.db.query(LearningTask).filter(LearningTask.id == learning_task_id).first()
        if not learning_task or (case_id is not None and learning_task.prescription.case_id != case_id):
            raise NotFoundError(
                f"Learning task {learning_task_id} not found",
                {"learning_task_id": str(learning_task_id)}
            )
        return learning_task

    def start_learning_task(self, learning_task: LearningTask, now: Optional[datetime] = None) -> LearningTask:
        self._ensure_learning_task_open(learning_task)
        if learning_task.status == LearningTaskStatus.PENDING.value:
            learning_task.status = LearningTaskStatus.IN_PROGRESS.value
            learning_task.started_at = now or utcnow()
            self.db.flush()
        return learning_task

    def set_learning_task_progress(
        self,
        learning_task: LearningTask,
        progress: int,
        now: Optional[datetime] = None,
    ) -> LearningTask:
        if not 0 <= progress <= 100:
            raise PreconditionUnmetError(
                "Progress must be between 0 and 100",
                {"learning_task_id": str(learning_task.id), "progress": progress}
            )
        self._ensure_learning_task_open(learning_task)
        now = now or utcnow()

        if progress >= 100:
            return self.complete_learning_task(learning_task, now=now)

        if progress > 0 and learning_task.status == LearningTaskStatus.PENDING.value:
            learning_task.status = LearningTaskStatus.IN_PROGRESS.value
            learning_task.started_at = now
        learning_task.progress = progress
        self.db.flush()
        return learning_task

    def complete_learning_task(self, learning_task: LearningTask, now: Optional[datetime] = None) -> LearningTask:
        self._ensure_learning_task_open(learning_task)
        now = now or utcnow()
        if learning_task.started_at is None:
            learning_task.started_at = now
        learning_task.status = LearningTaskStatus.COMPLETED.value
        learning_task.progress = 100
        learning_task.completed_at = now
        self.db.flush()
        return learning_task

    def skip_learning_task(self, learning_task: LearningTask) -> LearningTask:
        self._ensure_learning_task_open(learning_task)
        learning_task.status = LearningTaskStatus.SKIPPED.value
        self.db.flush()
        return learning_task

    # ------------------------------------------------------------------
    # Prescription items
    # ------------------------------------------------------------------

    def get_item(self, item_id: UUID, case_id: Optional[UUID] = None) -> PrescriptionItem:
        item = self.db.query(PrescriptionItem).filter(PrescriptionItem.id == item_id).first()
        if not item or (case_id is not None and item.prescription.case_id != case_id):
            raise NotFoundError(f"Prescription item {item_id} not found", {"item_id": str(item_id)})
        return item

    def complete_item(
        self,
        item: PrescriptionItem,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PrescriptionItem:
        if item.status in (PrescriptionItemStatus.COMPLETED.value, PrescriptionItemStatus.CANCELLED.value):
            raise InvalidTransitionError(
                f"Prescription item is already {item.status}",
                {"item_id": str(item.id), "status": item.status}
            )
        item.status = PrescriptionItemStatus.COMPLETED.value
        item.completion_notes = notes
        item.completed_at = now or utcnow()
        self.db.flush()
        return item

    @staticmethod
    def _ensure_learning_task_open(learning_task: LearningTask) -> None:
        if learning_task.is_terminal:
            raise InvalidTransitionError(
                f"Learning task is already {learning_task.status}",
                {"learning_task_id": str(learning_task.id), "status": learning_task.status}
            )
