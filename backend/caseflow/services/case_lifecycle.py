"""
Case Lifecycle - stage state machine and orchestration of tasks, prescriptions and assessments

Every operation is one unit of work: the case row is locked, all domain checks
run before the first write, all writes share one commit, and any exception
rolls the whole operation back. Notifications collected while the operation
runs are handed to the scheduler only after the commit succeeded; delivery
happens outside the operation.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (Any, Callable, Dict, List, Optional, Sequence, Tuple)
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from caseflow.core.errors import (ConcurrencyConflictError,
                                  InvalidTransitionError, NotFoundError,
                                  PreconditionUnmetError, WorkflowError)
from caseflow.core.logging_config import LoggingConfig
from caseflow.core.metrics import (case_operation_duration_seconds,
                                   case_operations_total,
                                   case_stage_transitions_total)
from caseflow.core.utils import utcnow
from caseflow.models.assessment import Assessment, AssessmentStatus
from caseflow.models.case import Case, CaseStage, PaymentStatus
from caseflow.models.case_note import CaseNote, NoteType
from caseflow.models.prescription import (LearningTask, Prescription,
                                          PrescriptionItem,
                                          PrescriptionItemStatus,
                                          PrescriptionStatus)
from caseflow.models.task import (WORKFLOW_DRIVEN_TASK_TYPES, AssessmentRef,
                                  CaseRef, PrescriptionRef, Task, TaskStatus,
                                  TaskType)
from caseflow.services.assessment_service import AssessmentService
from caseflow.services.case_note_service import CaseNoteService
from caseflow.services.course_catalog import CourseCatalog
from caseflow.services.notification_dispatcher import (
    LoggingNotificationDispatcher, Notification, NotificationDispatcher,
    NotificationEvent, NotificationScheduler, dispatch_all,
    dispatch_in_background)
from caseflow.services.prescription_service import (CourseRecommendation,
                                                    LearningTaskInput,
                                                    PrescriptionItemInput,
                                                    PrescriptionService)
from caseflow.services.task_graph import (REVIEW_ANALYSIS_TEMPLATE,
                                          TaskBatchKind, TaskGraph,
                                          counselor_round_suffix)

logger = LoggingConfig.get_logger(__name__)

MAX_ATTEMPTS = 2


class OperationOutcome(str, Enum):
    """Result kind of a lifecycle operation"""
    SUCCESS = "success"
    DUPLICATE = "duplicate"  # Step already done; nothing changed


class LearningTaskAction(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    SKIP = "skip"


@dataclass
class OperationResult:
    outcome: OperationOutcome
    case: Case
    message: str = ""
    prescription: Optional[Prescription] = None
    assessment: Optional[Assessment] = None
    task: Optional[Task] = None
    note: Optional[CaseNote] = None
    learning_task: Optional[LearningTask] = None
    prescription_item: Optional[PrescriptionItem] = None

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == OperationOutcome.DUPLICATE


@dataclass
class _OperationContext:
    operation: str
    actor_id: str
    now: datetime
    case: Optional[Case] = None
    transitions: List[Tuple[str, str]] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)

    def notify(self, recipient_id: Optional[str], event: NotificationEvent, **payload: Any) -> None:
        body = {
            "case_id": str(self.case.id),
            "stage": self.case.stage,
            "cycle_count": self.case.cycle_count,
            "actor_id": self.actor_id,
        }
        body.update(payload)
        self.notifications.append(Notification(recipient_id, event, body))


class CaseLifecycleService:
    """
    Case Lifecycle service

    Owns the case stage state machine:
    planning -> counseling -> analyzing -> cycling -> (counseling | completed),
    with cancelled reachable from every non-terminal stage.
    """

    ALLOWED_TRANSITIONS: Dict[CaseStage, List[CaseStage]] = {
        CaseStage.PLANNING: [CaseStage.COUNSELING, CaseStage.CANCELLED],
        CaseStage.COUNSELING: [CaseStage.ANALYZING, CaseStage.CANCELLED],
        CaseStage.ANALYZING: [CaseStage.CYCLING, CaseStage.CANCELLED],
        CaseStage.CYCLING: [CaseStage.COUNSELING, CaseStage.COMPLETED, CaseStage.CANCELLED],
        CaseStage.COMPLETED: [],
        CaseStage.CANCELLED: [],
    }

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        catalog: Optional[CourseCatalog] = None,
        schedule: Optional[NotificationScheduler] = None,
    ):
        """
        Initialize Case Lifecycle service

        Args:
            db: Database session; the service commits and rolls back on it
            dispatcher: Notification port, log-only when omitted
            catalog: Course catalog port, database-backed when omitted
            schedule: Runs notification delivery after the operation returns,
                a daemon thread when omitted
        """
        self.db = db
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.schedule = schedule or dispatch_in_background
        self.tasks = TaskGraph(db)
        self.prescriptions = PrescriptionService(db, catalog=catalog)
        self.assessments = AssessmentService(db)
        self.notes = CaseNoteService(db)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _lock_case(self, case_id: UUID) -> Case:
        case = (
            self.db.query(Case)
            .filter(Case.id == case_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not case:
            raise NotFoundError(f"Case {case_id} not found", {"case_id": str(case_id)})
        return case

    def _run(
        self,
        operation: str,
        actor_id: str,
        handler: Callable[[_OperationContext], OperationResult],
        case_id: Optional[UUID] = None,
    ) -> OperationResult:
        start_time = time.time()
        attempt = 0

        while True:
            attempt += 1
            ctx = _OperationContext(operation=operation, actor_id=actor_id, now=utcnow())
            try:
                if case_id is not None:
                    ctx.case = self._lock_case(case_id)
                result = handler(ctx)
                self.db.commit()
                break
            except StaleDataError:
                self.db.rollback()
                if attempt < MAX_ATTEMPTS:
                    logger.warning(
                        f"{operation} lost a concurrent update, retrying",
                        extra={"case_id": str(case_id), "operation": operation, "attempt": attempt}
                    )
                    continue
                case_operations_total.labels(operation=operation, outcome="concurrency_conflict").inc()
                raise ConcurrencyConflictError(
                    "Case was modified concurrently, please retry",
                    {"case_id": str(case_id), "operation": operation}
                )
            except WorkflowError as e:
                self.db.rollback()
                case_operations_total.labels(operation=operation, outcome=e.kind).inc()
                logger.info(
                    f"{operation} rejected: {e.message}",
                    extra={"case_id": str(case_id), "operation": operation, "error": e.kind, "details": e.details}
                )
                raise
            except Exception:
                self.db.rollback()
                case_operations_total.labels(operation=operation, outcome="error").inc()
                logger.error(
                    f"{operation} failed",
                    exc_info=True,
                    extra={"case_id": str(case_id), "operation": operation}
                )
                raise

        for from_stage, to_stage in ctx.transitions:
            case_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()
            logger.info(
                f"Case stage {from_stage} -> {to_stage}",
                extra={
                    "case_id": str(result.case.id),
                    "operation": operation,
                    "from_stage": from_stage,
                    "to_stage": to_stage,
                    "actor_id": actor_id,
                }
            )

        case_operations_total.labels(operation=operation, outcome=result.outcome.value).inc()
        case_operation_duration_seconds.labels(operation=operation).observe(time.time() - start_time)
        logger.info(
            f"{operation} {result.outcome.value}",
            extra={
                "case_id": str(result.case.id),
                "operation": operation,
                "outcome": result.outcome.value,
                "actor_id": actor_id,
            }
        )

        if ctx.notifications:
            try:
                self.schedule(dispatch_all, self.dispatcher, list(ctx.notifications))
            except Exception as e:
                logger.warning(
                    f"Could not schedule notifications for {operation}: {e}",
                    exc_info=True,
                    extra={"case_id": str(result.case.id), "operation": operation}
                )
        return result

    def _transition(self, ctx: _OperationContext, to_stage: CaseStage) -> None:
        case = ctx.case
        from_stage = case.stage_enum
        if to_stage not in self.ALLOWED_TRANSITIONS[from_stage]:
            raise InvalidTransitionError(
                f"Cannot move case from {from_stage.value} to {to_stage.value}",
                {"case_id": str(case.id), "from_stage": from_stage.value, "to_stage": to_stage.value}
            )
        case.stage = to_stage.value
        ctx.transitions.append((from_stage.value, to_stage.value))

    @staticmethod
    def _ensure_active(case: Case, operation: str) -> None:
        if case.is_terminal:
            raise InvalidTransitionError(
                f"Case is {case.stage}; {operation} is not allowed",
                {"case_id": str(case.id), "stage": case.stage, "operation": operation}
            )

    @staticmethod
    def _ensure_stage(case: Case, stage: CaseStage, operation: str) -> None:
        if case.stage != stage.value:
            raise InvalidTransitionError(
                f"{operation} requires stage {stage.value} (current: {case.stage})",
                {"case_id": str(case.id), "stage": case.stage, "required_stage": stage.value}
            )

    @staticmethod
    def _duplicate(ctx: _OperationContext, message: str, **related: Any) -> OperationResult:
        return OperationResult(OperationOutcome.DUPLICATE, ctx.case, message=message, **related)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def create_case(
        self,
        actor_id: str,
        student_id: str,
        case_template_id: str,
        planner_id: str,
        order_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Open a case for a student enrolled in a case-based offering

        Without an order there is nothing to settle, so payment starts confirmed
        and the planner batch leaves out the confirm_payment task.
        """
        def handler(ctx: _OperationContext) -> OperationResult:
            case = Case(
                case_template_id=case_template_id,
                student_id=student_id,
                order_id=order_id,
                planner_id=planner_id,
                stage=CaseStage.PLANNING.value,
                cycle_count=0,
            )
            if order_id:
                case.payment_status = PaymentStatus.PENDING.value
            else:
                case.payment_status = PaymentStatus.CONFIRMED.value
                case.payment_confirmed_at = ctx.now
            self.db.add(case)
            self.db.flush()
            ctx.case = case

            skip = [] if order_id else [TaskType.CONFIRM_PAYMENT]
            self.tasks.generate_batch(case, TaskBatchKind.PLANNER_INTAKE, CaseRef(case.id), skip=skip)
            note = self.notes.append(case, actor_id, NoteType.PLANNING, "Case created")
            ctx.notify(planner_id, NotificationEvent.CASE_CREATED, student_id=student_id)
            return OperationResult(OperationOutcome.SUCCESS, case, message="Case created", note=note)

        return self._run("create_case", actor_id, handler)

    def confirm_payment(
        self,
        case_id: UUID,
        actor_id: str,
        method: Optional[str] = None,
        note: Optional[str] = None,
    ) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            self._ensure_active(case, "confirm_payment")
            if case.is_payment_confirmed:
                return self._duplicate(ctx, "Payment already confirmed")

            case.payment_status = PaymentStatus.CONFIRMED.value
            if case.payment_confirmed_at is None:
                case.payment_confirmed_at = ctx.now
            self.tasks.complete_matching(case.id, TaskType.CONFIRM_PAYMENT, now=ctx.now)

            lines = ["Payment confirmed"]
            if method:
                lines.append(f"Method: {method}")
            if note:
                lines.append(f"Note: {note}")
            case_note = self.notes.append(case, actor_id, NoteType.PLANNING, "\n".join(lines))

            ctx.notify(case.student_id, NotificationEvent.PAYMENT_CONFIRMED, method=method)
            return OperationResult(OperationOutcome.SUCCESS, case, message="Payment confirmed", note=case_note)

        return self._run("confirm_payment", actor_id, handler, case_id)

    def create_line_group(self, case_id: UUID, actor_id: str, line_group_url: str) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            self._ensure_active(case, "create_line_group")
            if case.line_group_url == line_group_url:
                return self._duplicate(ctx, "LINE group already recorded")

            previous = case.line_group_url
            case.line_group_url = line_group_url
            self.tasks.complete_matching(case.id, TaskType.CREATE_LINE_GROUP, now=ctx.now)

            verb = "updated" if previous else "created"
            note = self.notes.append(case, actor_id, NoteType.PLANNING, f"LINE group {verb}: {line_group_url}")
            return OperationResult(OperationOutcome.SUCCESS, case, message=f"LINE group {verb}", note=note)

        return self._run("create_line_group", actor_id, handler, case_id)

    def assign_counselor(self, case_id: UUID, actor_id: str, counselor_id: str) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            self._ensure_active(case, "assign_counselor")
            if case.counselor_id == counselor_id:
                return self._duplicate(ctx, "Counselor already assigned")

            previous = case.counselor_id
            case.counselor_id = counselor_id
            self.tasks.complete_matching(case.id, TaskType.ASSIGN_COUNSELOR, now=ctx.now)

            if previous:
                self.tasks.reassign_open(case.id, previous, counselor_id)
                content = f"Counselor changed from {previous} to {counselor_id}"
            else:
                content = f"Counselor assigned: {counselor_id}"
            note = self.notes.append(case, actor_id, NoteType.PLANNING, content)

            ctx.notify(counselor_id, NotificationEvent.COUNSELOR_ASSIGNED, student_id=case.student_id)
            return OperationResult(OperationOutcome.SUCCESS, case, message=content, note=note)

        return self._run("assign_counselor", actor_id, handler, case_id)

    def assign_analyst(self, case_id: UUID, actor_id: str, analyst_id: str) -> OperationResult:
        """
        Assign the analyst; in planning this also starts counseling

        Raises:
            PreconditionUnmetError: no counselor assigned yet
        """
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            self._ensure_active(case, "assign_analyst")
            if not case.counselor_id:
                raise PreconditionUnmetError(
                    "A counselor must be assigned before the analyst",
                    {"case_id": str(case.id)}
                )

            if case.stage != CaseStage.PLANNING.value:
                if case.analyst_id == analyst_id:
                    return self._duplicate(ctx, "Analyst already assigned")
                previous = case.analyst_id
                case.analyst_id = analyst_id
                if previous:
                    self.tasks.reassign_open(case.id, previous, analyst_id)
                content = f"Analyst changed from {previous} to {analyst_id}"
                note = self.notes.append(case, actor_id, NoteType.PLANNING, content)
                ctx.notify(analyst_id, NotificationEvent.ANALYST_ASSIGNED, student_id=case.student_id)
                return OperationResult(OperationOutcome.SUCCESS, case, message=content, note=note)

            case.analyst_id = analyst_id
            self._transition(ctx, CaseStage.COUNSELING)
            if case.started_at is None:
                case.started_at = ctx.now
            self.tasks.complete_matching(case.id, TaskType.ASSIGN_ANALYST, now=ctx.now)
            self.tasks.generate_batch(
                case,
                TaskBatchKind.COUNSELOR_ROUND,
                CaseRef(case.id),
                suffix=counselor_round_suffix(case.cycle_count),
            )

            content = f"Analyst assigned: {analyst_id}; counseling started"
            note = self.notes.append(case, actor_id, NoteType.PLANNING, content)
            ctx.notify(analyst_id, NotificationEvent.ANALYST_ASSIGNED, student_id=case.student_id)
            return OperationResult(OperationOutcome.SUCCESS, case, message="Analyst assigned", note=note)

        return self._run("assign_analyst", actor_id, handler, case_id)

    # ------------------------------------------------------------------
    # Counseling
    # ------------------------------------------------------------------

    def issue_strategy(
        self,
        case_id: UUID,
        actor_id: str,
        strategy_report: Optional[str] = None,
        counseling_notes: Optional[str] = None,
        learning_goals: Optional[List[Any]] = None,
        counseling_session_id: Optional[str] = None,
    ) -> OperationResult:
        """Create the draft prescription of the next cycle"""
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            self._ensure_active(case, "issue_strategy")
            if not case.counselor_id:
                raise PreconditionUnmetError(
                    "A counselor must be assigned to issue a strategy",
                    {"case_id": str(case.id)}
                )

            existing = self.prescriptions.get_by_cycle(case.id, case.cycle_count + 1)
            if existing:
                return self._duplicate(
                    ctx,
                    f"Strategy for cycle #{existing.cycle_number} already issued",
                    prescription=existing,
                )

            self._ensure_stage(case, CaseStage.COUNSELING, "issue_strategy")
            prescription = self.prescriptions.issue_draft(
                case,
                counselor_id=case.counselor_id,
                strategy_report=strategy_report,
                counseling_notes=counseling_notes,
                learning_goals=learning_goals,
                counseling_session_id=counseling_session_id,
            )
            self.tasks.complete_matching(case.id, TaskType.CREATE_STRATEGY, now=ctx.now)
            note = self.notes.append(
                case, actor_id, NoteType.COUNSELING,
                f"Learning strategy drafted for cycle #{prescription.cycle_number}"
            )
            return OperationResult(
                OperationOutcome.SUCCESS, case,
                message="Strategy issued",
                prescription=prescription,
                note=note,
            )

        return self._run("issue_strategy", actor_id, handler, case_id)

    def issue_prescription(
        self,
        case_id: UUID,
        actor_id: str,
        prescription_id: UUID,
        courses: Sequence[CourseRecommendation] = (),
        learning_tasks: Sequence[LearningTaskInput] = (),
        items: Sequence[PrescriptionItemInput] = (),
    ) -> OperationResult:
        """
        Finalize the draft prescription and hand the cycle to the analyst

        Raises:
            InvalidTransitionError: case is not in counseling
            PreconditionUnmetError: prescription is not a draft or a course is unknown
        """
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            prescription = self.prescriptions.get(prescription_id, case_id=case.id)
            if prescription.status in (PrescriptionStatus.ISSUED.value, PrescriptionStatus.COMPLETED.value):
                return self._duplicate(ctx, "Prescription already issued", prescription=prescription)

            self._ensure_active(case, "issue_prescription")
            self._ensure_stage(case, CaseStage.COUNSELING, "issue_prescription")
            self.prescriptions.finalize(prescription, courses, learning_tasks, items, now=ctx.now)

            self._transition(ctx, CaseStage.ANALYZING)
            self.tasks.complete_matching(case.id, TaskType.ISSUE_PRESCRIPTION, now=ctx.now)
            self.tasks.complete_matching(case.id, TaskType.CONDUCT_COUNSELING, now=ctx.now)
            if case.analyst_id:
                self.tasks.generate_batch(
                    case,
                    TaskBatchKind.ANALYST_CYCLE,
                    PrescriptionRef(prescription.id),
                    cycle=prescription.cycle_number,
                )

            note = self.notes.append(
                case, actor_id, NoteType.COUNSELING,
                f"Prescription issued for cycle #{prescription.cycle_number} "
                f"({len(courses)} courses, {len(learning_tasks)} learning tasks)"
            )
            payload = {"prescription_id": str(prescription.id), "cycle_number": prescription.cycle_number}
            ctx.notify(case.analyst_id, NotificationEvent.PRESCRIPTION_ISSUED, **payload)
            ctx.notify(case.student_id, NotificationEvent.PRESCRIPTION_ISSUED, **payload)
            return OperationResult(
                OperationOutcome.SUCCESS, case,
                message="Prescription issued",
                prescription=prescription,
                note=note,
            )

        return self._run("issue_prescription", actor_id, handler, case_id)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def create_assessment(
        self,
        case_id: UUID,
        actor_id: str,
        prescription_id: UUID,
        test_content: Optional[str] = None,
        test_results: Optional[Dict[str, Any]] = None,
        test_score: Optional[float] = None,
    ) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            prescription = self.prescriptions.get(prescription_id, case_id=case.id)
            existing = prescription.assessment
            if existing is not None and existing.status != AssessmentStatus.CANCELLED.value:
                return self._duplicate(
                    ctx, "Assessment already created",
                    prescription=prescription, assessment=existing,
                )

            self._ensure_active(case, "create_assessment")
            self._ensure_stage(case, CaseStage.ANALYZING, "create_assessment")
            if not case.analyst_id:
                raise PreconditionUnmetError(
                    "An analyst must be assigned to create an assessment",
                    {"case_id": str(case.id)}
                )

            assessment = self.assessments.create(
                prescription,
                analyst_id=case.analyst_id,
                test_content=test_content,
                test_results=test_results,
                test_score=test_score,
            )
            self.tasks.complete_matching(
                case.id, TaskType.CREATE_ASSESSMENT, PrescriptionRef(prescription.id), now=ctx.now
            )
            return OperationResult(
                OperationOutcome.SUCCESS, case,
                message="Assessment created",
                prescription=prescription,
                assessment=assessment,
            )

        return self._run("create_assessment", actor_id, handler, case_id)

    def submit_analysis(
        self,
        case_id: UUID,
        actor_id: str,
        assessment_id: UUID,
        analysis_report: Optional[str] = None,
        metrics: Optional[Dict[str, Any]] = None,
        recommendations: Optional[List[Any]] = None,
        study_hours: Optional[float] = None,
        tasks_completed: Optional[int] = None,
        courses_attended: Optional[int] = None,
        test_results: Optional[Dict[str, Any]] = None,
        test_score: Optional[float] = None,
    ) -> OperationResult:
        """
        Complete the assessment and close the cycle

        The assessment, the prescription, cycle_count, the stage and the review
        task all change in this one commit.
        """
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            assessment = self.assessments.get(assessment_id, case_id=case.id)
            prescription = assessment.prescription
            if assessment.status == AssessmentStatus.COMPLETED.value:
                return self._duplicate(
                    ctx, "Analysis already submitted",
                    prescription=prescription, assessment=assessment,
                )

            self._ensure_active(case, "submit_analysis")
            self._ensure_stage(case, CaseStage.ANALYZING, "submit_analysis")
            self.assessments.submit(
                assessment,
                analysis_report=analysis_report,
                metrics=metrics,
                recommendations=recommendations,
                study_hours=study_hours,
                tasks_completed=tasks_completed,
                courses_attended=courses_attended,
                test_results=test_results,
                test_score=test_score,
                now=ctx.now,
            )
            self.prescriptions.complete(prescription, now=ctx.now)

            case.cycle_count += 1
            self._transition(ctx, CaseStage.CYCLING)

            subject = PrescriptionRef(prescription.id)
            self.tasks.complete_matching(case.id, TaskType.ANALYZE_RESULTS, subject, now=ctx.now)
            submitted = self.tasks.complete_matching(case.id, TaskType.SUBMIT_ANALYSIS, subject, now=ctx.now)
            submit_task = submitted[-1] if submitted else self.tasks.latest_of_type(
                case.id, TaskType.SUBMIT_ANALYSIS, subject
            )

            title, description = REVIEW_ANALYSIS_TEMPLATE.render({"cycle": case.cycle_count})
            review_task = self.tasks.create_task(
                case,
                assignee_id=case.counselor_id,
                task_type=REVIEW_ANALYSIS_TEMPLATE.type,
                title=title,
                description=description,
                priority=REVIEW_ANALYSIS_TEMPLATE.priority,
                subject=AssessmentRef(assessment.id),
            )
            if submit_task is not None:
                self.tasks.add_dependency(review_task, submit_task)

            note = self.notes.append(
                case, actor_id, NoteType.ANALYZING,
                f"Analysis submitted for cycle #{case.cycle_count}"
            )
            ctx.notify(
                case.counselor_id, NotificationEvent.ANALYSIS_COMPLETED,
                assessment_id=str(assessment.id),
                cycle_number=prescription.cycle_number,
            )
            return OperationResult(
                OperationOutcome.SUCCESS, case,
                message="Analysis submitted",
                prescription=prescription,
                assessment=assessment,
                task=review_task,
                note=note,
            )

        return self._run("submit_analysis", actor_id, handler, case_id)

    def review_analysis(
        self,
        case_id: UUID,
        actor_id: str,
        continue_cycle: bool,
        review_notes: Optional[str] = None,
        assessment_id: Optional[UUID] = None,
    ) -> OperationResult:
        """
        Counselor decision after an analysis: start another round or close the case

        Raises:
            InvalidTransitionError: case is not cycling, or the review targets a stale assessment
        """
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            if case.stage != CaseStage.CYCLING.value:
                latest_review = self.tasks.latest_of_type(case.id, TaskType.REVIEW_ANALYSIS)
                decided = CaseStage.COUNSELING if continue_cycle else CaseStage.COMPLETED
                if (
                    latest_review is not None
                    and latest_review.status == TaskStatus.COMPLETED.value
                    and case.stage == decided.value
                ):
                    return self._duplicate(ctx, "Analysis already reviewed", task=latest_review)
                raise InvalidTransitionError(
                    f"review_analysis requires stage cycling (current: {case.stage})",
                    {"case_id": str(case.id), "stage": case.stage}
                )

            reviewed = self._latest_completed_assessment(case)
            if assessment_id is not None and (reviewed is None or reviewed.id != assessment_id):
                raise InvalidTransitionError(
                    "Review targets an assessment that is not the latest completed one",
                    {"case_id": str(case.id), "assessment_id": str(assessment_id)}
                )

            if reviewed is not None:
                completed = self.tasks.complete_matching(
                    case.id, TaskType.REVIEW_ANALYSIS, AssessmentRef(reviewed.id), now=ctx.now
                )
            else:
                completed = self.tasks.complete_matching(case.id, TaskType.REVIEW_ANALYSIS, now=ctx.now)
            review_task = completed[-1] if completed else None

            if continue_cycle:
                self._transition(ctx, CaseStage.COUNSELING)
                self.tasks.generate_batch(
                    case,
                    TaskBatchKind.COUNSELOR_ROUND,
                    CaseRef(case.id),
                    suffix=counselor_round_suffix(case.cycle_count),
                )
                content = f"Analysis for cycle #{case.cycle_count} reviewed; starting another counseling round"
                message = "New cycle started"
                ctx.notify(case.counselor_id, NotificationEvent.CYCLE_STARTED)
                ctx.notify(case.student_id, NotificationEvent.CYCLE_STARTED)
            else:
                self._transition(ctx, CaseStage.COMPLETED)
                case.completed_at = ctx.now
                self.tasks.bulk_cancel_open(case.id)
                content = f"Analysis for cycle #{case.cycle_count} reviewed; case completed"
                message = "Case completed"
                for recipient in self._case_actors(case):
                    ctx.notify(recipient, NotificationEvent.CASE_COMPLETED)

            if review_notes:
                content = f"{content}\nReview notes: {review_notes}"
            note = self.notes.append(case, actor_id, NoteType.COUNSELING, content)
            return OperationResult(
                OperationOutcome.SUCCESS, case,
                message=message,
                assessment=reviewed,
                task=review_task,
                note=note,
            )

        return self._run("review_analysis", actor_id, handler, case_id)

    def _latest_completed_assessment(self, case: Case) -> Optional[Assessment]:
        prescription = self.prescriptions.get_by_cycle(case.id, case.cycle_count)
        if prescription is None or prescription.assessment is None:
            return None
        if prescription.assessment.status != AssessmentStatus.COMPLETED.value:
            return None
        return prescription.assessment

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_case(self, case_id: UUID, actor_id: str, reason: str) -> OperationResult:
        """
        Cancel a non-terminal case

        Open tasks are cancelled, and so are open prescriptions and their
        assessments. A cancelled prescription keeps its cycle number.
        """
        def handler(ctx: _OperationContext) -> OperationResult:
            case = ctx.case
            self._ensure_active(case, "cancel_case")
            self._transition(ctx, CaseStage.CANCELLED)
            self.tasks.bulk_cancel_open(case.id)

            for prescription in self.prescriptions.list_for_case(case.id):
                if prescription.assessment is not None:
                    self.assessments.cancel(prescription.assessment)
                self.prescriptions.cancel(prescription)

            note = self.notes.append(case, actor_id, NoteType.ISSUE, f"Case cancelled. Reason: {reason}")
            for recipient in self._case_actors(case):
                ctx.notify(recipient, NotificationEvent.CASE_CANCELLED, reason=reason)
            return OperationResult(OperationOutcome.SUCCESS, case, message="Case cancelled", note=note)

        return self._run("cancel_case", actor_id, handler, case_id)

    @staticmethod
    def _case_actors(case: Case) -> List[str]:
        actors = [case.student_id, case.planner_id, case.counselor_id, case.analyst_id]
        return list(dict.fromkeys(a for a in actors if a))

    # ------------------------------------------------------------------
    # Notes, tasks and learning tasks
    # ------------------------------------------------------------------

    def add_note(
        self,
        case_id: UUID,
        actor_id: str,
        content: str,
        note_type: NoteType = NoteType.GENERAL,
        attachments: Optional[List[Any]] = None,
    ) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            note = self.notes.append(ctx.case, actor_id, note_type, content, attachments)
            return OperationResult(OperationOutcome.SUCCESS, ctx.case, message="Note added", note=note)

        return self._run("add_note", actor_id, handler, case_id)

    def start_task(self, case_id: UUID, actor_id: str, task_id: UUID) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            self._ensure_active(ctx.case, "start_task")
            task = self.tasks.get_task(task_id, case_id=ctx.case.id)
            if task.status == TaskStatus.IN_PROGRESS.value:
                return self._duplicate(ctx, "Task already started", task=task)
            self.tasks.mark_started(task, now=ctx.now)
            return OperationResult(OperationOutcome.SUCCESS, ctx.case, message="Task started", task=task)

        return self._run("start_task", actor_id, handler, case_id)

    def complete_task(self, case_id: UUID, actor_id: str, task_id: UUID) -> OperationResult:
        """Complete a manual task; workflow tasks close through their own operation"""
        def handler(ctx: _OperationContext) -> OperationResult:
            self._ensure_active(ctx.case, "complete_task")
            task = self.tasks.get_task(task_id, case_id=ctx.case.id)
            if task.status == TaskStatus.COMPLETED.value:
                return self._duplicate(ctx, "Task already completed", task=task)
            if task.type in WORKFLOW_DRIVEN_TASK_TYPES:
                raise InvalidTransitionError(
                    f"{task.type} tasks are completed by their workflow operation",
                    {"task_id": str(task.id), "type": task.type}
                )
            self.tasks.mark_completed(task, now=ctx.now)
            return OperationResult(OperationOutcome.SUCCESS, ctx.case, message="Task completed", task=task)

        return self._run("complete_task", actor_id, handler, case_id)

    def update_learning_task(
        self,
        case_id: UUID,
        actor_id: str,
        learning_task_id: UUID,
        action: LearningTaskAction,
        progress: Optional[int] = None,
    ) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            self._ensure_active(ctx.case, "update_learning_task")
            learning_task = self.prescriptions.get_learning_task(learning_task_id, case_id=ctx.case.id)
            already = {
                LearningTaskAction.START: "in_progress",
                LearningTaskAction.COMPLETE: "completed",
                LearningTaskAction.SKIP: "skipped",
            }.get(action)
            if already and learning_task.status == already:
                return self._duplicate(ctx, f"Learning task already {already}", learning_task=learning_task)

            if action == LearningTaskAction.START:
                self.prescriptions.start_learning_task(learning_task, now=ctx.now)
            elif action == LearningTaskAction.PROGRESS:
                if progress is None:
                    raise PreconditionUnmetError(
                        "Progress value is required",
                        {"learning_task_id": str(learning_task.id)}
                    )
                self.prescriptions.set_learning_task_progress(learning_task, progress, now=ctx.now)
            elif action == LearningTaskAction.COMPLETE:
                self.prescriptions.complete_learning_task(learning_task, now=ctx.now)
            else:
                self.prescriptions.skip_learning_task(learning_task)

            return OperationResult(
                OperationOutcome.SUCCESS, ctx.case,
                message=f"Learning task {learning_task.status}",
                prescription=learning_task.prescription,
                learning_task=learning_task,
            )

        return self._run("update_learning_task", actor_id, handler, case_id)

    def complete_prescription_item(
        self,
        case_id: UUID,
        actor_id: str,
        item_id: UUID,
        notes: Optional[str] = None,
    ) -> OperationResult:
        def handler(ctx: _OperationContext) -> OperationResult:
            self._ensure_active(ctx.case, "complete_prescription_item")
            item = self.prescriptions.get_item(item_id, case_id=ctx.case.id)
            if item.status == PrescriptionItemStatus.COMPLETED.value:
                return self._duplicate(
                    ctx, "Prescription item already completed",
                    prescription=item.prescription, prescription_item=item,
                )
            self.prescriptions.complete_item(item, notes=notes, now=ctx.now)
            return OperationResult(
                OperationOutcome.SUCCESS, ctx.case,
                message="Prescription item completed",
                prescription=item.prescription,
                prescription_item=item,
            )

        return self._run("complete_prescription_item", actor_id, handler, case_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_case(self, case_id: UUID) -> Case:
        case = self.db.query(Case).filter(Case.id == case_id).first()
        if not case:
            raise NotFoundError(f"Case {case_id} not found", {"case_id": str(case_id)})
        return case

    def list_cases(
        self,
        stage: Optional[CaseStage] = None,
        payment_status: Optional[PaymentStatus] = None,
        student_id: Optional[str] = None,
        planner_id: Optional[str] = None,
        counselor_id: Optional[str] = None,
        analyst_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 15,
    ) -> Tuple[List[Case], int]:
        """
        List cases with filters and pagination

        Returns:
            (cases on the requested page, total matching cases)
        """
        query = self.db.query(Case)
        if stage:
            query = query.filter(Case.stage == stage.value)
        if payment_status:
            query = query.filter(Case.payment_status == payment_status.value)
        if student_id:
            query = query.filter(Case.student_id == student_id)
        if planner_id:
            query = query.filter(Case.planner_id == planner_id)
        if counselor_id:
            query = query.filter(Case.counselor_id == counselor_id)
        if analyst_id:
            query = query.filter(Case.analyst_id == analyst_id)

        total = query.count()
        page = max(page, 1)
        cases = (
            query.order_by(Case.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return cases, total

    def get_statistics(self, case_id: UUID) -> Dict[str, Any]:
        case = self.get_case(case_id)
        task_counts = dict(
            self.db.query(Task.status, func.count(Task.id))
            .filter(Task.case_id == case.id)
            .group_by(Task.status)
            .all()
        )
        prescriptions = self.prescriptions.list_for_case(case.id)
        latest = prescriptions[-1] if prescriptions else None
        return {
            "case_id": str(case.id),
            "stage": case.stage,
            "payment_status": case.payment_status,
            "cycle_count": case.cycle_count,
            "total_prescriptions": len(prescriptions),
            "total_assessments": sum(1 for p in prescriptions if p.assessment is not None),
            "total_tasks": sum(task_counts.values()),
            "completed_tasks": task_counts.get(TaskStatus.COMPLETED.value, 0),
            "pending_tasks": task_counts.get(TaskStatus.PENDING.value, 0),
            "in_progress_tasks": task_counts.get(TaskStatus.IN_PROGRESS.value, 0),
            "blocked_tasks": task_counts.get(TaskStatus.BLOCKED.value, 0),
            "cancelled_tasks": task_counts.get(TaskStatus.CANCELLED.value, 0),
            "latest_task_completion_rate": (
                PrescriptionService.task_completion_rate(latest) if latest else 0.0
            ),
        }
