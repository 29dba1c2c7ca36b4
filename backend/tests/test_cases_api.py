"""
Tests for the case workflow HTTP API
"""
from datetime import timedelta
from uuid import UUID, uuid4

from caseflow.core.utils import utcnow
from caseflow.models.task import Task
from caseflow.services.notification_dispatcher import NotificationEvent

PLANNER = {"X-Actor-ID": "planner-1"}
COUNSELOR = {"X-Actor-ID": "counselor-1"}
ANALYST = {"X-Actor-ID": "analyst-1"}


def _create_case(client, order_id="order-1"):
    response = client.post(
        "/api/cases",
        json={
            "student_id": "student-1",
            "case_template_id": "tpl-1",
            "planner_id": "planner-1",
            "order_id": order_id,
        },
        headers=PLANNER,
    )
    assert response.status_code == 201
    return response.json()["case"]["id"]


def _start_counseling(client, case_id):
    client.post(f"/api/cases/{case_id}/assign-counselor", json={"counselor_id": "counselor-1"}, headers=PLANNER)
    response = client.post(f"/api/cases/{case_id}/assign-analyst", json={"analyst_id": "analyst-1"}, headers=PLANNER)
    assert response.status_code == 200
    return response.json()


def _issue_prescription(client, case_id, courses):
    response = client.post(
        f"/api/cases/{case_id}/strategy",
        json={"strategy_report": "Reading first", "learning_goals": ["B1 reading"]},
        headers=COUNSELOR,
    )
    prescription_id = response.json()["prescription"]["id"]
    response = client.post(
        f"/api/cases/{case_id}/issue-prescription",
        json={
            "prescription_id": prescription_id,
            "courses": [{"course_template_id": c, "recommended_sessions": 2} for c in courses],
            "learning_tasks": [{"title": "Read chapter 1"}, {"title": "Write summary"}],
            "items": [{"title": "Graded reader", "item_type": "resource", "metadata": {"level": "B1"}}],
        },
        headers=COUNSELOR,
    )
    return response


def test_health(client):
    """Test basic health endpoint"""
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_detailed_health(client):
    """Test detailed health with the test database"""
    response = client.get("/health/detailed")

    assert response.status_code == 200
    assert response.json()["components"]["database"]["status"] == "healthy"


def test_metrics_endpoint(client):
    """Test Prometheus exposition"""
    _create_case(client)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "case_operations_total" in response.text


def test_create_and_get_case(client, dispatcher):
    """Test creating and reading a case"""
    case_id = _create_case(client)

    response = client.get(f"/api/cases/{case_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["stage"] == "planning"
    assert data["payment_status"] == "pending"
    assert data["version"] >= 1
    assert dispatcher.events() == [NotificationEvent.CASE_CREATED]


def test_actor_header_required(client):
    """Test operations without an actor"""
    response = client.post(
        "/api/cases",
        json={"student_id": "student-1", "case_template_id": "tpl-1", "planner_id": "planner-1"},
    )

    assert response.status_code == 422


def test_unknown_case_is_404(client):
    """Test domain NotFound mapping"""
    response = client.post(f"/api/cases/{uuid4()}/confirm-payment", json={}, headers=PLANNER)

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_precondition_error_mapping(client):
    """Test PreconditionUnmet mapping on analyst before counselor"""
    case_id = _create_case(client)

    response = client.post(f"/api/cases/{case_id}/assign-analyst", json={"analyst_id": "analyst-1"}, headers=PLANNER)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "precondition_unmet"
    assert body["details"]["case_id"] == case_id


def test_duplicate_outcome(client):
    """Test repeated payment confirmation"""
    case_id = _create_case(client)

    first = client.post(f"/api/cases/{case_id}/confirm-payment", json={"method": "card"}, headers=PLANNER)
    second = client.post(f"/api/cases/{case_id}/confirm-payment", json={"method": "card"}, headers=PLANNER)

    assert first.json()["outcome"] == "success"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"


def test_full_cycle_over_http(client, courses):
    """Test one cycle from planning to completion"""
    case_id = _create_case(client)
    started = _start_counseling(client, case_id)
    assert started["case"]["stage"] == "counseling"

    response = _issue_prescription(client, case_id, courses[:2])
    assert response.status_code == 200
    issued = response.json()
    prescription = issued["prescription"]
    assert issued["case"]["stage"] == "analyzing"
    assert prescription["cycle_number"] == 1
    assert prescription["status"] == "issued"
    assert len(prescription["courses"]) == 2
    assert prescription["items"][0]["metadata"] == {"level": "B1"}
    assert prescription["task_completion_rate"] == 0.0

    learning_task_id = prescription["learning_tasks"][0]["id"]
    response = client.post(
        f"/api/cases/{case_id}/learning-tasks/{learning_task_id}",
        json={"action": "complete"},
        headers={"X-Actor-ID": "student-1"},
    )
    assert response.json()["learning_task"]["status"] == "completed"
    assert response.json()["prescription"]["task_completion_rate"] == 0.5

    response = client.post(
        f"/api/cases/{case_id}/assessments",
        json={"prescription_id": prescription["id"], "test_content": "Reading quiz"},
        headers=ANALYST,
    )
    assessment_id = response.json()["assessment"]["id"]

    response = client.post(
        f"/api/cases/{case_id}/submit-analysis",
        json={"assessment_id": assessment_id, "analysis_report": "On track", "study_hours": 10},
        headers=ANALYST,
    )
    submitted = response.json()
    assert submitted["case"]["stage"] == "cycling"
    assert submitted["case"]["cycle_count"] == 1
    assert submitted["task"]["type"] == "review_analysis"

    response = client.post(
        f"/api/cases/{case_id}/review-analysis",
        json={"continue_cycle": False, "assessment_id": assessment_id, "review_notes": "Goals met"},
        headers=COUNSELOR,
    )
    assert response.status_code == 200
    assert response.json()["case"]["stage"] == "completed"

    tasks = client.get(f"/api/cases/{case_id}/tasks").json()
    assert all(t["status"] in ("completed", "cancelled") for t in tasks)

    notes = client.get(f"/api/cases/{case_id}/notes").json()
    assert notes[-1]["note_type"] == "counseling"
    assert "Review notes: Goals met" in notes[-1]["content"]

    assessments = client.get(f"/api/cases/{case_id}/assessments").json()
    assert [a["status"] for a in assessments] == ["completed"]

    prescriptions = client.get(f"/api/cases/{case_id}/prescriptions").json()
    assert [p["status"] for p in prescriptions] == ["completed"]

    stats = client.get(f"/api/cases/{case_id}/statistics").json()
    assert stats["stage"] == "completed"
    assert stats["cycle_count"] == 1
    assert stats["pending_tasks"] == 0


def test_unknown_course_rejected(client):
    """Test issuing a prescription with an unknown course template"""
    case_id = _create_case(client)
    _start_counseling(client, case_id)

    response = _issue_prescription(client, case_id, ["no-such-course"])

    assert response.status_code == 422
    assert response.json()["details"]["course_template_ids"] == ["no-such-course"]
    assert client.get(f"/api/cases/{case_id}").json()["stage"] == "counseling"


def test_invalid_transition_mapping(client):
    """Test InvalidTransition on review before analysis"""
    case_id = _create_case(client)
    _start_counseling(client, case_id)

    response = client.post(
        f"/api/cases/{case_id}/review-analysis",
        json={"continue_cycle": True},
        headers=COUNSELOR,
    )

    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"


def test_task_endpoints(client):
    """Test task filters and manual task transitions"""
    case_id = _create_case(client)
    _start_counseling(client, case_id)

    counselor_tasks = client.get(f"/api/cases/{case_id}/tasks", params={"assignee_id": "counselor-1"}).json()
    assert len(counselor_tasks) == 3

    session_task = client.get(
        f"/api/cases/{case_id}/tasks", params={"type": "conduct_counseling"}
    ).json()[0]
    response = client.post(f"/api/cases/{case_id}/tasks/{session_task['id']}/start", headers=COUNSELOR)
    assert response.json()["task"]["status"] == "in_progress"
    response = client.post(f"/api/cases/{case_id}/tasks/{session_task['id']}/complete", headers=COUNSELOR)
    assert response.json()["task"]["status"] == "completed"

    strategy_task = client.get(
        f"/api/cases/{case_id}/tasks", params={"type": "create_strategy"}
    ).json()[0]
    response = client.post(f"/api/cases/{case_id}/tasks/{strategy_task['id']}/complete", headers=COUNSELOR)
    assert response.status_code == 409


def test_cancel_and_notes(client, dispatcher):
    """Test cancelling a case and adding a note afterwards"""
    case_id = _create_case(client)

    response = client.post(f"/api/cases/{case_id}/cancel", json={"reason": "Refund requested"}, headers=PLANNER)
    assert response.json()["case"]["stage"] == "cancelled"
    assert response.json()["note"]["content"] == "Case cancelled. Reason: Refund requested"

    response = client.post(f"/api/cases/{case_id}/cancel", json={"reason": "Again"}, headers=PLANNER)
    assert response.status_code == 409

    response = client.post(
        f"/api/cases/{case_id}/notes",
        json={"content": "Refund issued", "note_type": "issue"},
        headers=PLANNER,
    )
    assert response.status_code == 201
    assert response.json()["note"]["author_id"] == "planner-1"
    assert NotificationEvent.CASE_CANCELLED in dispatcher.events()


def test_list_cases(client):
    """Test listing with filters and pagination"""
    _create_case(client)
    _create_case(client)
    paid_id = _create_case(client, order_id=None)

    response = client.get("/api/cases", params={"page_size": 2})
    data = response.json()
    assert data["total"] == 3
    assert len(data["items"]) == 2
    assert data["page_size"] == 2

    response = client.get("/api/cases", params={"payment_status": "confirmed"})
    assert [c["id"] for c in response.json()["items"]] == [paid_id]


def test_complete_prescription_item_endpoint(client, courses):
    """Test completing a prescription item over HTTP"""
    case_id = _create_case(client)
    _start_counseling(client, case_id)
    item = _issue_prescription(client, case_id, courses[:1]).json()["prescription"]["items"][0]
    path = f"/api/cases/{case_id}/prescription-items/{item['id']}/complete"

    response = client.post(path, json={"notes": "Read 40 pages"}, headers={"X-Actor-ID": "student-1"})

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "success"
    assert data["prescription_item"]["status"] == "completed"
    assert data["prescription_item"]["completion_notes"] == "Read 40 pages"
    assert data["prescription_item"]["metadata"] == {"level": "B1"}

    response = client.post(path, json={}, headers={"X-Actor-ID": "student-1"})
    assert response.json()["outcome"] == "duplicate"

    response = client.post(
        f"/api/cases/{case_id}/prescription-items/{uuid4()}/complete", json={}, headers={"X-Actor-ID": "student-1"}
    )
    assert response.status_code == 404


def test_task_overdue_flag(client, db):
    """Test open tasks past their due date are reported overdue"""
    case_id = _create_case(client)
    tasks = client.get(f"/api/cases/{case_id}/tasks").json()
    assert not any(t["is_overdue"] for t in tasks)

    payment_task = db.get(Task, UUID(next(t["id"] for t in tasks if t["type"] == "confirm_payment")))
    payment_task.due_date = utcnow() - timedelta(days=1)
    db.commit()

    overdue = [t["type"] for t in client.get(f"/api/cases/{case_id}/tasks").json() if t["is_overdue"]]
    assert overdue == ["confirm_payment"]

    client.post(f"/api/cases/{case_id}/confirm-payment", json={}, headers=PLANNER)
    assert not any(t["is_overdue"] for t in client.get(f"/api/cases/{case_id}/tasks").json())
