"""
Assessment Pipeline - the analyst's evaluation of an issued prescription
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from caseflow.core.errors import NotFoundError, PreconditionUnmetError
from caseflow.core.logging_config import LoggingConfig
from caseflow.core.utils import utcnow
from caseflow.models.assessment import Assessment, AssessmentStatus
from caseflow.models.prescription import Prescription, PrescriptionStatus

logger = LoggingConfig.get_logger(__name__)

SUBMITTABLE_STATUSES = (AssessmentStatus.DRAFT.value, AssessmentStatus.IN_REVIEW.value)


class AssessmentService:
    """Service for assessments; runs inside the caller's transaction"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, assessment_id: UUID, case_id: Optional[UUID] = None) -> Assessment:
        assessment = self.db.query(Assessment).filter(Assessment.id == assessment_id).first()
        if not assessment or (case_id is not None and assessment.case_id != case_id):
            raise NotFoundError(
                f"Assessment {assessment_id} not found",
                {"assessment_id": str(assessment_id)}
            )
        return assessment

    def list_for_case(self, case_id: UUID) -> List[Assessment]:
        return self.db.query(Assessment).join(Prescription).filter(
            Prescription.case_id == case_id
        ).order_by(Prescription.cycle_number).all()

    def create(
        self,
        prescription: Prescription,
        analyst_id: str,
        test_content: Optional[str] = None,
        test_results: Optional[Dict[str, Any]] = None,
        test_score: Optional[float] = None,
    ) -> Assessment:
        """
        Create the draft assessment of an issued prescription

        Raises:
            PreconditionUnmetError: prescription not issued or already assessed
        """
        if prescription.status != PrescriptionStatus.ISSUED.value:
            raise PreconditionUnmetError(
                f"Assessment requires an issued prescription (status: {prescription.status})",
                {"prescription_id": str(prescription.id), "status": prescription.status}
            )
        if prescription.assessment is not None:
            raise PreconditionUnmetError(
                "Prescription already has an assessment",
                {"prescription_id": str(prescription.id), "assessment_id": str(prescription.assessment.id)}
            )

        assessment = Assessment(
            prescription=prescription,
            analyst_id=analyst_id,
            test_content=test_content,
            test_results=test_results,
            test_score=test_score,
            status=AssessmentStatus.DRAFT.value,
        )
        self.db.add(assessment)
        self.db.flush()

        logger.info(
            "Draft assessment created",
            extra={
                "case_id": str(prescription.case_id),
                "prescription_id": str(prescription.id),
                "assessment_id": str(assessment.id),
            }
        )
        return assessment

    def submit(
        self,
        assessment: Assessment,
        analysis_report: Optional[str] = None,
        metrics: Optional[Dict[str, Any]] = None,
        recommendations: Optional[List[Any]] = None,
        study_hours: Optional[float] = None,
        tasks_completed: Optional[int] = None,
        courses_attended: Optional[int] = None,
        test_results: Optional[Dict[str, Any]] = None,
        test_score: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Assessment:
        """
        Submit the analysis: draft/in_review -> in_review -> completed

        Completing the prescription, the cycle counter and the stage change are
        the caller's part of the same unit of work.
        """
        if assessment.status not in SUBMITTABLE_STATUSES:
            raise PreconditionUnmetError(
                f"Assessment cannot be submitted from status {assessment.status}",
                {"assessment_id": str(assessment.id), "status": assessment.status}
            )
        prescription = assessment.prescription
        if prescription.status != PrescriptionStatus.ISSUED.value:
            raise PreconditionUnmetError(
                f"Assessment can only be submitted against an issued prescription (status: {prescription.status})",
                {"assessment_id": str(assessment.id), "prescription_id": str(prescription.id)}
            )

        now = now or utcnow()
        assessment.analysis_report = analysis_report
        assessment.metrics = metrics
        assessment.recommendations = recommendations
        assessment.study_hours = study_hours
        assessment.tasks_completed = tasks_completed
        assessment.courses_attended = courses_attended
        if test_results is not None:
            assessment.test_results = test_results
        if test_score is not None:
            assessment.test_score = test_score

        if assessment.status == AssessmentStatus.DRAFT.value:
            assessment.status = AssessmentStatus.IN_REVIEW.value
        if assessment.submitted_at is None:
            assessment.submitted_at = now

        assessment.status = AssessmentStatus.COMPLETED.value
        assessment.completed_at = now
        self.db.flush()

        logger.info(
            "Assessment completed",
            extra={
                "case_id": str(prescription.case_id),
                "assessment_id": str(assessment.id),
                "study_hours": study_hours,
            }
        )
        return assessment

    def cancel(self, assessment: Assessment) -> bool:
        if assessment.status not in SUBMITTABLE_STATUSES:
            return False
        assessment.status = AssessmentStatus.CANCELLED.value
        self.db.flush()
        return True
