"""
Task Graph - generation of stage-scoped task batches and dependency-gated readiness

Tasks are created in declarative batches when a case enters a stage and are
completed by the lifecycle operation that performs the matching work. A task
with an incomplete dependency is blocked and cannot be started or completed.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from caseflow.core.errors import (InvalidTransitionError, NotFoundError,
                                  PreconditionUnmetError)
from caseflow.core.logging_config import LoggingConfig
from caseflow.core.metrics import case_tasks_total
from caseflow.models.case import Case
from caseflow.models.task import (Task, TaskDependency, TaskPriority,
                                  TaskStatus, TaskSubject, TaskType)

logger = LoggingConfig.get_logger(__name__)


class ActorRole(str, Enum):
    """Case actor roles that receive tasks"""
    PLANNER = "planner"
    COUNSELOR = "counselor"
    ANALYST = "analyst"

    @property
    def case_attribute(self) -> str:
        return f"{self.value}_id"


class TaskBatchKind(str, Enum):
    """Batches generated at stage boundaries"""
    PLANNER_INTAKE = "planner_intake"  # Case created
    COUNSELOR_ROUND = "counselor_round"  # Case enters counseling
    ANALYST_CYCLE = "analyst_cycle"  # Prescription issued


@dataclass(frozen=True)
class TaskTemplate:
    """One task of a batch; title and description are str.format templates"""
    type: TaskType
    title: str
    description: str
    priority: TaskPriority = TaskPriority.NORMAL

    def render(self, params: Dict[str, Any]) -> Tuple[str, str]:
        return self.title.format(**params), self.description.format(**params)


@dataclass(frozen=True)
class TaskBatch:
    role: ActorRole
    templates: Tuple[TaskTemplate, ...]


STAGE_TASK_BATCHES: Dict[TaskBatchKind, TaskBatch] = {
    TaskBatchKind.PLANNER_INTAKE: TaskBatch(
        role=ActorRole.PLANNER,
        templates=(
            TaskTemplate(
                TaskType.CREATE_LINE_GROUP,
                "Create LINE group",
                "Create a LINE group for student {student_id} and invite the case staff.",
                TaskPriority.HIGH,
            ),
            TaskTemplate(
                TaskType.CONFIRM_PAYMENT,
                "Confirm payment",
                "Confirm the student's payment status.",
                TaskPriority.HIGH,
            ),
            TaskTemplate(
                TaskType.ASSIGN_COUNSELOR,
                "Assign counselor",
                "Assign a suitable counselor to this case.",
            ),
            TaskTemplate(
                TaskType.ASSIGN_ANALYST,
                "Assign analyst",
                "Assign a suitable analyst to this case.",
            ),
        ),
    ),
    TaskBatchKind.COUNSELOR_ROUND: TaskBatch(
        role=ActorRole.COUNSELOR,
        templates=(
            TaskTemplate(
                TaskType.CREATE_STRATEGY,
                "Create learning strategy{suffix}",
                "Write a personalised learning strategy report from the student's background and goals.",
                TaskPriority.HIGH,
            ),
            TaskTemplate(
                TaskType.CONDUCT_COUNSELING,
                "Conduct counseling session{suffix}",
                "Meet the student to understand their learning needs and difficulties.",
                TaskPriority.HIGH,
            ),
            TaskTemplate(
                TaskType.ISSUE_PRESCRIPTION,
                "Issue prescription{suffix}",
                "Issue a prescription with learning tasks and courses based on the counseling outcome.",
            ),
        ),
    ),
    TaskBatchKind.ANALYST_CYCLE: TaskBatch(
        role=ActorRole.ANALYST,
        templates=(
            TaskTemplate(
                TaskType.CREATE_ASSESSMENT,
                "Create assessment (cycle #{cycle})",
                "Build the test and evaluation items matching the prescription.",
                TaskPriority.HIGH,
            ),
            TaskTemplate(
                TaskType.ANALYZE_RESULTS,
                "Analyze learning results (cycle #{cycle})",
                "Collect and analyse study data, test results and course attendance.",
            ),
            TaskTemplate(
                TaskType.SUBMIT_ANALYSIS,
                "Submit analysis report (cycle #{cycle})",
                "Finish the analysis report and submit it for the counselor's review.",
            ),
        ),
    ),
}

REVIEW_ANALYSIS_TEMPLATE = TaskTemplate(
    TaskType.REVIEW_ANALYSIS,
    "Review analysis report (cycle #{cycle})",
    "Review the analyst's report and decide whether the learning strategy needs another cycle.",
    TaskPriority.HIGH,
)


def counselor_round_suffix(cycle_count: int) -> str:
    """Title suffix for a counselor round; empty for the first round"""
    if cycle_count <= 0:
        return ""
    return f" (cycle #{cycle_count} continuation)"


class TaskGraph:
    """
    Task Graph service

    Operates inside the caller's transaction: it flushes but never commits.
    """

    def __init__(self, db: Session):
        """
        Initialize Task Graph

        Args:
            db: Database session
        """
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: UUID, case_id: Optional[UUID] = None) -> Task:
        task = self.db.query(Task).filter(Task.id == task_id).first()
        if not task or (case_id is not None and task.case_id != case_id):
            raise NotFoundError(f"Task {task_id} not found", {"task_id": str(task_id)})
        return task

    def list_for_case(
        self,
        case_id: UUID,
        status: Optional[TaskStatus] = None,
        assignee_id: Optional[str] = None,
        task_type: Optional[TaskType] = None,
    ) -> List[Task]:
        query = self.db.query(Task).filter(Task.case_id == case_id)
        if status:
            query = query.filter(Task.status == status.value)
        if assignee_id:
            query = query.filter(Task.assignee_id == assignee_id)
        if task_type:
            query = query.filter(Task.type == task_type.value)
        return query.order_by(Task.created_at).all()

    def open_tasks(self, case_id: UUID) -> List[Task]:
        return self.db.query(Task).filter(
            Task.case_id == case_id,
            Task.status.in_(TaskStatus.open_values())
        ).order_by(Task.created_at).all()

    def latest_of_type(
        self,
        case_id: UUID,
        task_type: TaskType,
        subject: Optional[TaskSubject] = None,
    ) -> Optional[Task]:
        query = self._typed_query(case_id, task_type, subject)
        return query.order_by(Task.created_at.desc()).first()

    def is_blocked(self, task: Task) -> bool:
        """True if the task is blocked or any dependency is not completed"""
        if task.status == TaskStatus.BLOCKED.value:
            return True
        return any(dep.status != TaskStatus.COMPLETED.value for dep in task.dependencies)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_task(
        self,
        case: Case,
        assignee_id: str,
        task_type: TaskType,
        title: str,
        subject: TaskSubject,
        description: Optional[str] = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        due_date: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        task = Task(
            case_id=case.id,
            assignee_id=assignee_id,
            type=task_type.value,
            status=TaskStatus.PENDING.value,
            priority=priority.value,
            title=title,
            description=description,
            due_date=due_date,
            task_metadata=metadata,
        )
        task.subject = subject
        self.db.add(task)
        self.db.flush()
        case_tasks_total.labels(task_type=task_type.value).inc()
        return task

    def generate_batch(
        self,
        case: Case,
        kind: TaskBatchKind,
        subject: TaskSubject,
        skip: Iterable[TaskType] = (),
        **params: Any,
    ) -> List[Task]:
        """
        Instantiate a declarative batch for the case actor owning it

        Args:
            case: Case the batch belongs to
            kind: Which batch to generate
            subject: Subject of work for every task in the batch
            skip: Task types to leave out
            **params: Values for title/description templates

        Returns:
            Created tasks in batch order
        """
        batch = STAGE_TASK_BATCHES[kind]
        assignee_id = getattr(case, batch.role.case_attribute)
        if not assignee_id:
            raise PreconditionUnmetError(
                f"Case has no {batch.role.value} to receive the {kind.value} tasks",
                {"case_id": str(case.id), "role": batch.role.value}
            )

        skipped = {t.value for t in skip}
        template_params = {"student_id": case.student_id, "cycle": case.cycle_count, "suffix": ""}
        template_params.update(params)

        tasks = []
        for template in batch.templates:
            if template.type.value in skipped:
                continue
            title, description = template.render(template_params)
            tasks.append(self.create_task(
                case,
                assignee_id=assignee_id,
                task_type=template.type,
                title=title,
                description=description,
                priority=template.priority,
                subject=subject,
            ))

        logger.info(
            f"Generated {len(tasks)} {kind.value} tasks",
            extra={
                "case_id": str(case.id),
                "batch": kind.value,
                "assignee_id": assignee_id,
                "task_types": [t.type for t in tasks],
            }
        )
        return tasks

    def add_dependency(self, task: Task, depends_on: Task) -> TaskDependency:
        """
        Add a dependency edge task -> depends_on

        Rejects self edges, edges across cases and edges that would close a cycle.
        A pending task whose new dependency is incomplete becomes blocked.
        """
        if task.id == depends_on.id:
            raise PreconditionUnmetError("Task cannot depend on itself", {"task_id": str(task.id)})
        if task.case_id != depends_on.case_id:
            raise PreconditionUnmetError(
                "Task dependencies must stay within one case",
                {"task_id": str(task.id), "depends_on_task_id": str(depends_on.id)}
            )

        for link in task.dependency_links:
            if link.depends_on_task_id == depends_on.id:
                return link

        if self._reaches(depends_on, task.id):
            raise PreconditionUnmetError(
                "Dependency would create a cycle",
                {"task_id": str(task.id), "depends_on_task_id": str(depends_on.id)}
            )

        link = TaskDependency(task=task, depends_on=depends_on)
        self.db.add(link)

        if depends_on.status != TaskStatus.COMPLETED.value and task.status == TaskStatus.PENDING.value:
            task.status = TaskStatus.BLOCKED.value

        self.db.flush()
        return link

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_started(self, task: Task, now: Optional[datetime] = None) -> Task:
        """Start a task; only pending, unblocked tasks can be started"""
        if task.status != TaskStatus.PENDING.value or self.is_blocked(task):
            raise InvalidTransitionError(
                f"Task cannot be started from status {task.status}",
                {"task_id": str(task.id), "status": task.status, "blocked": self.is_blocked(task)}
            )
        task.status = TaskStatus.IN_PROGRESS.value
        task.started_at = now or datetime.now(timezone.utc)
        self.db.flush()
        return task

    def mark_completed(self, task: Task, now: Optional[datetime] = None) -> List[Task]:
        """
        Complete a task and unblock dependents whose dependencies are now all completed

        Returns:
            Dependents flipped from blocked to pending
        """
        if task.status == TaskStatus.COMPLETED.value:
            return []
        if task.status == TaskStatus.CANCELLED.value or self.is_blocked(task):
            raise InvalidTransitionError(
                f"Task cannot be completed from status {task.status}",
                {"task_id": str(task.id), "status": task.status}
            )

        task.status = TaskStatus.COMPLETED.value
        task.completed_at = now or datetime.now(timezone.utc)

        unblocked = []
        for dependent in task.dependents:
            if dependent.status != TaskStatus.BLOCKED.value:
                continue
            if all(dep.status == TaskStatus.COMPLETED.value for dep in dependent.dependencies):
                dependent.status = TaskStatus.PENDING.value
                unblocked.append(dependent)

        self.db.flush()

        if unblocked:
            logger.debug(
                f"Task {task.id} completion unblocked {len(unblocked)} task(s)",
                extra={"task_id": str(task.id), "unblocked": [str(t.id) for t in unblocked]}
            )
        return unblocked

    def complete_matching(
        self,
        case_id: UUID,
        task_type: TaskType,
        subject: Optional[TaskSubject] = None,
        now: Optional[datetime] = None,
    ) -> List[Task]:
        """Complete every open task of a type (optionally for one subject) on a case"""
        tasks = self._typed_query(case_id, task_type, subject).filter(
            Task.status.in_(TaskStatus.open_values())
        ).order_by(Task.created_at).all()

        now = now or datetime.now(timezone.utc)
        for task in tasks:
            self.mark_completed(task, now=now)
        return tasks

    def bulk_cancel_open(self, case_id: UUID) -> int:
        """Cancel every pending, in-progress or blocked task of a case"""
        tasks = self.open_tasks(case_id)
        for task in tasks:
            task.status = TaskStatus.CANCELLED.value
        self.db.flush()

        logger.info(
            f"Cancelled {len(tasks)} open task(s)",
            extra={"case_id": str(case_id), "cancelled": len(tasks)}
        )
        return len(tasks)

    def reassign_open(self, case_id: UUID, from_assignee: str, to_assignee: str) -> int:
        """Move open tasks of one actor to another"""
        tasks = self.db.query(Task).filter(
            Task.case_id == case_id,
            Task.assignee_id == from_assignee,
            Task.status.in_(TaskStatus.open_values())
        ).all()
        for task in tasks:
            task.assignee_id = to_assignee
        self.db.flush()

        if tasks:
            logger.info(
                f"Reassigned {len(tasks)} open task(s)",
                extra={"case_id": str(case_id), "from_assignee": from_assignee, "to_assignee": to_assignee}
            )
        return len(tasks)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _typed_query(self, case_id: UUID, task_type: TaskType, subject: Optional[TaskSubject]):
        query = self.db.query(Task).filter(Task.case_id == case_id, Task.type == task_type.value)
        if subject is not None:
            query = query.filter(
                Task.subject_type == subject.subject_type.value,
                Task.subject_id == subject.id
            )
        return query

    def _reaches(self, start: Task, target_id: UUID) -> bool:
        """Depth-first search along dependency edges from start"""
        seen: Set[UUID] = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current.id == target_id:
                return True
            if current.id in seen:
                continue
            seen.add(current.id)
            stack.extend(current.dependencies)
        return False
