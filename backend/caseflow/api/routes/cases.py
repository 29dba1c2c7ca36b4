"""
API routes for case workflow operations
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import (APIRouter, BackgroundTasks, Depends, Header, Query,
                     status)
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.orm import Session

from caseflow.core.config import get_settings
from caseflow.core.database import get_db
from caseflow.models.case import CaseStage, PaymentStatus
from caseflow.models.case_note import NoteType
from caseflow.models.prescription import PrescriptionItemType
from caseflow.models.task import TaskStatus, TaskType
from caseflow.services.case_lifecycle import (CaseLifecycleService,
                                              LearningTaskAction,
                                              OperationResult)
from caseflow.services.notification_dispatcher import (
    NotificationDispatcher, get_notification_dispatcher)
from caseflow.services.prescription_service import (CourseRecommendation,
                                                    LearningTaskInput,
                                                    PrescriptionItemInput,
                                                    PrescriptionService)

router = APIRouter(prefix="/api/cases", tags=["cases"])


# ============================================================================
# Response models
# ============================================================================

class CaseResponse(BaseModel):
    """Case response model"""
    id: UUID
    case_template_id: str
    student_id: str
    order_id: Optional[str] = None
    planner_id: str
    counselor_id: Optional[str] = None
    analyst_id: Optional[str] = None
    stage: str
    payment_status: str
    cycle_count: int
    line_group_url: Optional[str] = None
    payment_confirmed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        from_attributes = True


class TaskResponse(BaseModel):
    """Task response model"""
    id: UUID
    case_id: UUID
    assignee_id: str
    subject_type: str
    subject_id: UUID
    type: str
    status: str
    priority: str
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    is_overdue: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PrescriptionCourseResponse(BaseModel):
    course_template_id: str
    reason: Optional[str] = None
    recommended_sessions: int

    class Config:
        from_attributes = True


class LearningTaskResponse(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None
    resources: Optional[List[Any]] = None
    estimated_hours: Optional[float] = None
    status: str
    progress: int
    due_date: Optional[datetime] = None
    is_overdue: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PrescriptionItemResponse(BaseModel):
    id: UUID
    item_type: str
    title: str
    description: Optional[str] = None
    item_metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("item_metadata", "metadata"),
        serialization_alias="metadata",
    )
    sort_order: int
    status: str
    completion_notes: Optional[str] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PrescriptionResponse(BaseModel):
    """Prescription response model"""
    id: UUID
    case_id: UUID
    counselor_id: str
    counseling_session_id: Optional[str] = None
    cycle_number: int
    strategy_report: Optional[str] = None
    counseling_notes: Optional[str] = None
    learning_goals: Optional[List[Any]] = None
    status: str
    issued_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    courses: List[PrescriptionCourseResponse] = []
    learning_tasks: List[LearningTaskResponse] = []
    items: List[PrescriptionItemResponse] = []
    task_completion_rate: float = 0.0

    class Config:
        from_attributes = True


class AssessmentResponse(BaseModel):
    """Assessment response model"""
    id: UUID
    prescription_id: UUID
    analyst_id: str
    test_content: Optional[str] = None
    test_results: Optional[Dict[str, Any]] = None
    test_score: Optional[float] = None
    analysis_report: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    recommendations: Optional[List[Any]] = None
    study_hours: Optional[float] = None
    tasks_completed: Optional[int] = None
    courses_attended: Optional[int] = None
    status: str
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NoteResponse(BaseModel):
    """Case note response model"""
    id: UUID
    case_id: UUID
    author_id: str
    note_type: str
    content: str
    attachments: Optional[List[Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OperationResponse(BaseModel):
    """Envelope returned by every lifecycle operation"""
    outcome: str
    message: str
    case: CaseResponse
    prescription: Optional[PrescriptionResponse] = None
    assessment: Optional[AssessmentResponse] = None
    task: Optional[TaskResponse] = None
    note: Optional[NoteResponse] = None
    learning_task: Optional[LearningTaskResponse] = None
    prescription_item: Optional[PrescriptionItemResponse] = None


class CaseListResponse(BaseModel):
    items: List[CaseResponse]
    total: int
    page: int
    page_size: int


# ============================================================================
# Request models
# ============================================================================

class CreateCaseRequest(BaseModel):
    student_id: str
    case_template_id: str
    planner_id: str
    order_id: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    method: Optional[str] = Field(None, description="Payment method reported by the order service")
    note: Optional[str] = None


class LineGroupRequest(BaseModel):
    line_group_url: str = Field(..., min_length=1, max_length=500)


class AssignCounselorRequest(BaseModel):
    counselor_id: str


class AssignAnalystRequest(BaseModel):
    analyst_id: str


class IssueStrategyRequest(BaseModel):
    strategy_report: str
    counseling_notes: Optional[str] = None
    learning_goals: Optional[List[Any]] = None
    counseling_session_id: Optional[str] = None


class CourseRecommendationRequest(BaseModel):
    course_template_id: str
    reason: Optional[str] = None
    recommended_sessions: int = Field(1, ge=1)


class LearningTaskRequest(BaseModel):
    title: str
    description: Optional[str] = None
    resources: Optional[List[Any]] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    due_date: Optional[datetime] = None


class PrescriptionItemRequest(BaseModel):
    title: str
    item_type: PrescriptionItemType = PrescriptionItemType.OTHER
    description: Optional[str] = None
    metadata: Dict[str, Any] = {}
    sort_order: Optional[int] = None


class IssuePrescriptionRequest(BaseModel):
    prescription_id: UUID
    courses: List[CourseRecommendationRequest] = []
    learning_tasks: List[LearningTaskRequest] = []
    items: List[PrescriptionItemRequest] = []


class CreateAssessmentRequest(BaseModel):
    prescription_id: UUID
    test_content: Optional[str] = None
    test_results: Optional[Dict[str, Any]] = None
    test_score: Optional[float] = None


class SubmitAnalysisRequest(BaseModel):
    assessment_id: UUID
    analysis_report: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    recommendations: Optional[List[Any]] = None
    study_hours: Optional[float] = Field(None, ge=0)
    tasks_completed: Optional[int] = Field(None, ge=0)
    courses_attended: Optional[int] = Field(None, ge=0)
    test_results: Optional[Dict[str, Any]] = None
    test_score: Optional[float] = None


class ReviewAnalysisRequest(BaseModel):
    continue_cycle: bool
    review_notes: Optional[str] = None
    assessment_id: Optional[UUID] = None


class CancelCaseRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class AddNoteRequest(BaseModel):
    content: str = Field(..., min_length=1)
    note_type: NoteType = NoteType.GENERAL
    attachments: Optional[List[Any]] = None


class LearningTaskUpdateRequest(BaseModel):
    action: LearningTaskAction
    progress: Optional[int] = Field(None, ge=0, le=100)


class CompleteItemRequest(BaseModel):
    notes: Optional[str] = None


# ============================================================================
# Dependencies and serialization
# ============================================================================

def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


def get_lifecycle_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> CaseLifecycleService:
    # Notifications are delivered after the response is sent
    return CaseLifecycleService(db, dispatcher=dispatcher, schedule=background_tasks.add_task)


def _prescription_response(prescription) -> PrescriptionResponse:
    response = PrescriptionResponse.model_validate(prescription)
    response.task_completion_rate = PrescriptionService.task_completion_rate(prescription)
    return response


def _operation_response(result: OperationResult) -> OperationResponse:
    return OperationResponse(
        outcome=result.outcome.value,
        message=result.message,
        case=CaseResponse.model_validate(result.case),
        prescription=_prescription_response(result.prescription) if result.prescription else None,
        assessment=AssessmentResponse.model_validate(result.assessment) if result.assessment else None,
        task=TaskResponse.model_validate(result.task) if result.task else None,
        note=NoteResponse.model_validate(result.note) if result.note else None,
        learning_task=LearningTaskResponse.model_validate(result.learning_task) if result.learning_task else None,
        prescription_item=(
            PrescriptionItemResponse.model_validate(result.prescription_item)
            if result.prescription_item else None
        ),
    )


# ============================================================================
# Queries
# ============================================================================

@router.get("", response_model=CaseListResponse)
def list_cases(
    stage: Optional[CaseStage] = None,
    payment_status: Optional[PaymentStatus] = None,
    student_id: Optional[str] = None,
    planner_id: Optional[str] = None,
    counselor_id: Optional[str] = None,
    analyst_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """List cases with filters and pagination"""
    page_size = page_size or get_settings().default_page_size
    cases, total = service.list_cases(
        stage=stage,
        payment_status=payment_status,
        student_id=student_id,
        planner_id=planner_id,
        counselor_id=counselor_id,
        analyst_id=analyst_id,
        page=page,
        page_size=page_size,
    )
    return CaseListResponse(
        items=[CaseResponse.model_validate(c) for c in cases],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{case_id}", response_model=CaseResponse)
def get_case(case_id: UUID, service: CaseLifecycleService = Depends(get_lifecycle_service)):
    """Get case by ID"""
    return service.get_case(case_id)


@router.get("/{case_id}/tasks", response_model=List[TaskResponse])
def get_case_tasks(
    case_id: UUID,
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    assignee_id: Optional[str] = None,
    task_type: Optional[TaskType] = Query(None, alias="type"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Get tasks of a case"""
    case = service.get_case(case_id)
    return service.tasks.list_for_case(case.id, status=status_filter, assignee_id=assignee_id, task_type=task_type)


@router.get("/{case_id}/notes", response_model=List[NoteResponse])
def get_case_notes(
    case_id: UUID,
    note_type: Optional[NoteType] = None,
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Get notes of a case in creation order"""
    case = service.get_case(case_id)
    return service.notes.list_for_case(case.id, note_type=note_type)


@router.get("/{case_id}/prescriptions", response_model=List[PrescriptionResponse])
def get_case_prescriptions(case_id: UUID, service: CaseLifecycleService = Depends(get_lifecycle_service)):
    """Get prescriptions of a case ordered by cycle"""
    case = service.get_case(case_id)
    return [_prescription_response(p) for p in service.prescriptions.list_for_case(case.id)]


@router.get("/{case_id}/assessments", response_model=List[AssessmentResponse])
def get_case_assessments(case_id: UUID, service: CaseLifecycleService = Depends(get_lifecycle_service)):
    """Get assessments of a case ordered by cycle"""
    case = service.get_case(case_id)
    return service.assessments.list_for_case(case.id)


@router.get("/{case_id}/statistics")
def get_case_statistics(case_id: UUID, service: CaseLifecycleService = Depends(get_lifecycle_service)):
    """Get task, prescription and cycle counters of a case"""
    return service.get_statistics(case_id)


# ============================================================================
# Lifecycle operations
# ============================================================================

@router.post("", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
def create_case(
    request: CreateCaseRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Open a case for an enrolled student"""
    result = service.create_case(
        actor_id,
        student_id=request.student_id,
        case_template_id=request.case_template_id,
        planner_id=request.planner_id,
        order_id=request.order_id,
    )
    return _operation_response(result)


@router.post("/{case_id}/confirm-payment", response_model=OperationResponse)
def confirm_payment(
    case_id: UUID,
    request: ConfirmPaymentRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Confirm payment (planner)"""
    return _operation_response(service.confirm_payment(case_id, actor_id, method=request.method, note=request.note))


@router.post("/{case_id}/line-group", response_model=OperationResponse)
def create_line_group(
    case_id: UUID,
    request: LineGroupRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Record the LINE group of the case (planner)"""
    return _operation_response(service.create_line_group(case_id, actor_id, request.line_group_url))


@router.post("/{case_id}/assign-counselor", response_model=OperationResponse)
def assign_counselor(
    case_id: UUID,
    request: AssignCounselorRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Assign counselor (planner)"""
    return _operation_response(service.assign_counselor(case_id, actor_id, request.counselor_id))


@router.post("/{case_id}/assign-analyst", response_model=OperationResponse)
def assign_analyst(
    case_id: UUID,
    request: AssignAnalystRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Assign analyst and start counseling (planner)"""
    return _operation_response(service.assign_analyst(case_id, actor_id, request.analyst_id))


@router.post("/{case_id}/strategy", response_model=OperationResponse)
def issue_strategy(
    case_id: UUID,
    request: IssueStrategyRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Draft the learning strategy of the next cycle (counselor)"""
    result = service.issue_strategy(
        case_id,
        actor_id,
        strategy_report=request.strategy_report,
        counseling_notes=request.counseling_notes,
        learning_goals=request.learning_goals,
        counseling_session_id=request.counseling_session_id,
    )
    return _operation_response(result)


@router.post("/{case_id}/issue-prescription", response_model=OperationResponse)
def issue_prescription(
    case_id: UUID,
    request: IssuePrescriptionRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Issue the drafted prescription (counselor)"""
    result = service.issue_prescription(
        case_id,
        actor_id,
        prescription_id=request.prescription_id,
        courses=[CourseRecommendation(**c.model_dump()) for c in request.courses],
        learning_tasks=[LearningTaskInput(**t.model_dump()) for t in request.learning_tasks],
        items=[PrescriptionItemInput(**i.model_dump()) for i in request.items],
    )
    return _operation_response(result)


@router.post("/{case_id}/assessments", response_model=OperationResponse)
def create_assessment(
    case_id: UUID,
    request: CreateAssessmentRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Create the assessment of an issued prescription (analyst)"""
    result = service.create_assessment(
        case_id,
        actor_id,
        prescription_id=request.prescription_id,
        test_content=request.test_content,
        test_results=request.test_results,
        test_score=request.test_score,
    )
    return _operation_response(result)


@router.post("/{case_id}/submit-analysis", response_model=OperationResponse)
def submit_analysis(
    case_id: UUID,
    request: SubmitAnalysisRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Submit the analysis report and close the cycle (analyst)"""
    return _operation_response(service.submit_analysis(case_id, actor_id, **request.model_dump()))


@router.post("/{case_id}/review-analysis", response_model=OperationResponse)
def review_analysis(
    case_id: UUID,
    request: ReviewAnalysisRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Review the analysis and continue or close the case (counselor)"""
    result = service.review_analysis(
        case_id,
        actor_id,
        continue_cycle=request.continue_cycle,
        review_notes=request.review_notes,
        assessment_id=request.assessment_id,
    )
    return _operation_response(result)


@router.post("/{case_id}/cancel", response_model=OperationResponse)
def cancel_case(
    case_id: UUID,
    request: CancelCaseRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Cancel the case"""
    return _operation_response(service.cancel_case(case_id, actor_id, request.reason))


@router.post("/{case_id}/notes", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
def add_note(
    case_id: UUID,
    request: AddNoteRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Append a note to the case"""
    result = service.add_note(
        case_id, actor_id, request.content,
        note_type=request.note_type,
        attachments=request.attachments,
    )
    return _operation_response(result)


@router.post("/{case_id}/tasks/{task_id}/start", response_model=OperationResponse)
def start_task(
    case_id: UUID,
    task_id: UUID,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Start a task"""
    return _operation_response(service.start_task(case_id, actor_id, task_id))


@router.post("/{case_id}/tasks/{task_id}/complete", response_model=OperationResponse)
def complete_task(
    case_id: UUID,
    task_id: UUID,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Complete a manual task"""
    return _operation_response(service.complete_task(case_id, actor_id, task_id))


@router.post("/{case_id}/learning-tasks/{learning_task_id}", response_model=OperationResponse)
def update_learning_task(
    case_id: UUID,
    learning_task_id: UUID,
    request: LearningTaskUpdateRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Start, progress, complete or skip a learning task"""
    result = service.update_learning_task(
        case_id, actor_id, learning_task_id,
        action=request.action,
        progress=request.progress,
    )
    return _operation_response(result)


@router.post("/{case_id}/prescription-items/{item_id}/complete", response_model=OperationResponse)
def complete_prescription_item(
    case_id: UUID,
    item_id: UUID,
    request: CompleteItemRequest,
    actor_id: str = Header(..., alias="X-Actor-ID"),
    service: CaseLifecycleService = Depends(get_lifecycle_service),
):
    """Mark a prescription item as done"""
    result = service.complete_prescription_item(case_id, actor_id, item_id, notes=request.notes)
    return _operation_response(result)
