"""
Unit tests for AssessmentService
"""
import pytest

from caseflow.core.errors import NotFoundError, PreconditionUnmetError
from caseflow.models.assessment import AssessmentStatus
from caseflow.models.case import Case, CaseStage
from caseflow.services.assessment_service import AssessmentService
from caseflow.services.prescription_service import PrescriptionService


@pytest.fixture
def case(db):
    case = Case(
        case_template_id="tpl-1",
        student_id="student-1",
        planner_id="planner-1",
        counselor_id="counselor-1",
        analyst_id="analyst-1",
        stage=CaseStage.ANALYZING.value,
        cycle_count=0,
    )
    db.add(case)
    db.flush()
    return case


@pytest.fixture
def prescriptions(db, courses):
    return PrescriptionService(db)


@pytest.fixture
def assessments(db):
    return AssessmentService(db)


@pytest.fixture
def issued(prescriptions, case):
    draft = prescriptions.issue_draft(case, counselor_id="counselor-1")
    return prescriptions.finalize(draft)


def test_create_requires_issued_prescription(prescriptions, assessments, case):
    """Test assessment on a draft prescription"""
    draft = prescriptions.issue_draft(case, counselor_id="counselor-1")

    with pytest.raises(PreconditionUnmetError):
        assessments.create(draft, analyst_id="analyst-1")


def test_create_assessment(assessments, issued):
    """Test creating a draft assessment"""
    assessment = assessments.create(issued, analyst_id="analyst-1", test_content="Unit test 1")

    assert assessment.status == AssessmentStatus.DRAFT.value
    assert assessment.prescription is issued
    assert assessment.case_id == issued.case_id
    assert issued.assessment is assessment


def test_one_assessment_per_prescription(assessments, issued):
    """Test a second assessment on the same prescription"""
    assessments.create(issued, analyst_id="analyst-1")

    with pytest.raises(PreconditionUnmetError):
        assessments.create(issued, analyst_id="analyst-1")


def test_submit_completes_assessment(assessments, issued):
    """Test submitting the analysis"""
    assessment = assessments.create(issued, analyst_id="analyst-1")

    assessments.submit(
        assessment,
        analysis_report="Steady progress",
        metrics={"accuracy": 0.8},
        recommendations=["More practice"],
        study_hours=12.5,
        tasks_completed=4,
        courses_attended=2,
        test_score=78.0,
    )

    assert assessment.status == AssessmentStatus.COMPLETED.value
    assert assessment.submitted_at is not None
    assert assessment.completed_at is not None
    assert assessment.study_hours == 12.5
    assert assessment.test_score == 78.0


def test_submit_keeps_test_results_when_omitted(assessments, issued):
    """Test submit without new test results"""
    assessment = assessments.create(issued, analyst_id="analyst-1", test_results={"q1": "a"}, test_score=60.0)

    assessments.submit(assessment, analysis_report="Report")

    assert assessment.test_results == {"q1": "a"}
    assert assessment.test_score == 60.0


def test_submit_twice_rejected(assessments, issued):
    """Test resubmitting a completed assessment at component level"""
    assessment = assessments.create(issued, analyst_id="analyst-1")
    assessments.submit(assessment)

    with pytest.raises(PreconditionUnmetError):
        assessments.submit(assessment)


def test_submit_requires_issued_prescription(prescriptions, assessments, issued):
    """Test submit against a cancelled prescription"""
    assessment = assessments.create(issued, analyst_id="analyst-1")
    prescriptions.cancel(issued)

    with pytest.raises(PreconditionUnmetError):
        assessments.submit(assessment)


def test_cancel_only_open_assessments(assessments, issued):
    """Test cancelling draft and completed assessments"""
    assessment = assessments.create(issued, analyst_id="analyst-1")
    assessments.submit(assessment)

    assert assessments.cancel(assessment) is False
    assert assessment.status == AssessmentStatus.COMPLETED.value


def test_get_and_list_for_case(assessments, issued, case):
    """Test lookups scoped to a case"""
    assessment = assessments.create(issued, analyst_id="analyst-1")

    assert assessments.get(assessment.id, case_id=case.id) is assessment
    assert assessments.list_for_case(case.id) == [assessment]
    with pytest.raises(NotFoundError):
        assessments.get(assessment.id, case_id=assessment.id)
