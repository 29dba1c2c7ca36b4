"""
Unit tests for TaskGraph
"""
import pytest

from caseflow.core.errors import (InvalidTransitionError, NotFoundError,
                                  PreconditionUnmetError)
from caseflow.models.case import Case, CaseStage
from caseflow.models.task import (CaseRef, PrescriptionRef, TaskStatus,
                                  TaskSubjectType, TaskType)
from caseflow.services.task_graph import (TaskBatchKind, TaskGraph,
                                          counselor_round_suffix)


@pytest.fixture
def case(db):
    case = Case(
        case_template_id="tpl-1",
        student_id="student-1",
        planner_id="planner-1",
        counselor_id="counselor-1",
        stage=CaseStage.PLANNING.value,
        cycle_count=0,
    )
    db.add(case)
    db.flush()
    return case


@pytest.fixture
def graph(db):
    return TaskGraph(db)


def _manual_task(graph, case, title="Follow up"):
    return graph.create_task(
        case,
        assignee_id=case.planner_id,
        task_type=TaskType.ADJUST_STRATEGY,
        title=title,
        subject=CaseRef(case.id),
    )


def test_generate_planner_batch(graph, case):
    """Test planner intake batch contents"""
    tasks = graph.generate_batch(case, TaskBatchKind.PLANNER_INTAKE, CaseRef(case.id))

    assert [t.type for t in tasks] == [
        TaskType.CREATE_LINE_GROUP.value,
        TaskType.CONFIRM_PAYMENT.value,
        TaskType.ASSIGN_COUNSELOR.value,
        TaskType.ASSIGN_ANALYST.value,
    ]
    assert all(t.assignee_id == "planner-1" for t in tasks)
    assert all(t.status == TaskStatus.PENDING.value for t in tasks)
    assert all(t.subject_type == TaskSubjectType.CASE.value for t in tasks)
    assert tasks[0].title == "Create LINE group"
    assert "student-1" in tasks[0].description


def test_generate_batch_skips_types(graph, case):
    """Test skipping task types in a batch"""
    tasks = graph.generate_batch(
        case, TaskBatchKind.PLANNER_INTAKE, CaseRef(case.id), skip=[TaskType.CONFIRM_PAYMENT]
    )

    assert TaskType.CONFIRM_PAYMENT.value not in [t.type for t in tasks]
    assert len(tasks) == 3


def test_generate_batch_requires_assignee(graph, case):
    """Test analyst batch without an analyst"""
    with pytest.raises(PreconditionUnmetError):
        graph.generate_batch(case, TaskBatchKind.ANALYST_CYCLE, CaseRef(case.id))


def test_counselor_round_titles(graph, case):
    """Test continuation suffix on counselor rounds"""
    first = graph.generate_batch(
        case, TaskBatchKind.COUNSELOR_ROUND, CaseRef(case.id), suffix=counselor_round_suffix(0)
    )
    second = graph.generate_batch(
        case, TaskBatchKind.COUNSELOR_ROUND, CaseRef(case.id), suffix=counselor_round_suffix(2)
    )

    assert first[0].title == "Create learning strategy"
    assert second[0].title == "Create learning strategy (cycle #2 continuation)"
    assert second[2].title == "Issue prescription (cycle #2 continuation)"


def test_analyst_batch_subject(graph, case):
    """Test analyst batch bound to a prescription"""
    case.analyst_id = "analyst-1"
    prescription_ref = PrescriptionRef(case.id)
    tasks = graph.generate_batch(case, TaskBatchKind.ANALYST_CYCLE, prescription_ref, cycle=3)

    assert all(t.subject == prescription_ref for t in tasks)
    assert tasks[0].title == "Create assessment (cycle #3)"


def test_dependency_blocks_and_unblocks(graph, case):
    """Test blocked dependents become pending when dependencies complete"""
    first = _manual_task(graph, case, "First")
    second = _manual_task(graph, case, "Second")
    graph.add_dependency(second, first)

    assert second.status == TaskStatus.BLOCKED.value
    assert graph.is_blocked(second)

    with pytest.raises(InvalidTransitionError):
        graph.mark_started(second)

    unblocked = graph.mark_completed(first)

    assert unblocked == [second]
    assert second.status == TaskStatus.PENDING.value
    assert not graph.is_blocked(second)


def test_dependent_waits_for_all_dependencies(graph, case):
    """Test a task with two dependencies stays blocked until both complete"""
    a = _manual_task(graph, case, "A")
    b = _manual_task(graph, case, "B")
    target = _manual_task(graph, case, "Target")
    graph.add_dependency(target, a)
    graph.add_dependency(target, b)

    assert graph.mark_completed(a) == []
    assert target.status == TaskStatus.BLOCKED.value

    assert graph.mark_completed(b) == [target]
    assert target.status == TaskStatus.PENDING.value


def test_dependency_on_completed_task_does_not_block(graph, case):
    """Test dependency on an already completed task"""
    done = _manual_task(graph, case, "Done")
    graph.mark_completed(done)
    follow_up = _manual_task(graph, case, "Follow up")

    graph.add_dependency(follow_up, done)

    assert follow_up.status == TaskStatus.PENDING.value


def test_dependency_rejects_self_and_cycles(graph, case):
    """Test self edges and cycles are rejected"""
    a = _manual_task(graph, case, "A")
    b = _manual_task(graph, case, "B")
    c = _manual_task(graph, case, "C")

    with pytest.raises(PreconditionUnmetError):
        graph.add_dependency(a, a)

    graph.add_dependency(b, a)
    graph.add_dependency(c, b)
    with pytest.raises(PreconditionUnmetError):
        graph.add_dependency(a, c)


def test_dependency_rejects_other_case(db, graph, case):
    """Test dependencies cannot cross cases"""
    other = Case(
        case_template_id="tpl-1",
        student_id="student-2",
        planner_id="planner-1",
        stage=CaseStage.PLANNING.value,
        cycle_count=0,
    )
    db.add(other)
    db.flush()

    with pytest.raises(PreconditionUnmetError):
        graph.add_dependency(_manual_task(graph, case), _manual_task(graph, other))


def test_duplicate_dependency_returns_existing_edge(graph, case):
    """Test adding the same edge twice"""
    a = _manual_task(graph, case, "A")
    b = _manual_task(graph, case, "B")

    first = graph.add_dependency(b, a)
    second = graph.add_dependency(b, a)

    assert first is second
    assert len(b.dependencies) == 1


def test_mark_completed_is_idempotent(graph, case):
    """Test completing an already completed task"""
    task = _manual_task(graph, case)
    graph.mark_completed(task)
    completed_at = task.completed_at

    assert graph.mark_completed(task) == []
    assert task.completed_at == completed_at


def test_cancelled_task_cannot_complete(graph, case):
    """Test completing a cancelled task"""
    task = _manual_task(graph, case)
    graph.bulk_cancel_open(case.id)

    assert task.status == TaskStatus.CANCELLED.value
    with pytest.raises(InvalidTransitionError):
        graph.mark_completed(task)


def test_complete_matching_filters_by_subject(graph, case):
    """Test completing tasks of one type for one subject only"""
    case.analyst_id = "analyst-1"
    ref_one = PrescriptionRef(case.id)
    other_task = graph.create_task(
        case, "analyst-1", TaskType.ANALYZE_RESULTS, "Other", subject=CaseRef(case.id)
    )
    matching = graph.create_task(
        case, "analyst-1", TaskType.ANALYZE_RESULTS, "Matching", subject=ref_one
    )

    completed = graph.complete_matching(case.id, TaskType.ANALYZE_RESULTS, ref_one)

    assert completed == [matching]
    assert other_task.status == TaskStatus.PENDING.value


def test_reassign_open_tasks(graph, case):
    """Test moving open tasks to another actor"""
    done = _manual_task(graph, case, "Done")
    graph.mark_completed(done)
    open_task = _manual_task(graph, case, "Open")

    moved = graph.reassign_open(case.id, "planner-1", "planner-2")

    assert moved == 1
    assert open_task.assignee_id == "planner-2"
    assert done.assignee_id == "planner-1"


def test_list_for_case_filters(graph, case):
    """Test task listing filters"""
    graph.generate_batch(case, TaskBatchKind.PLANNER_INTAKE, CaseRef(case.id))
    graph.generate_batch(case, TaskBatchKind.COUNSELOR_ROUND, CaseRef(case.id))

    assert len(graph.list_for_case(case.id)) == 7
    assert len(graph.list_for_case(case.id, assignee_id="counselor-1")) == 3
    assert len(graph.list_for_case(case.id, task_type=TaskType.CONFIRM_PAYMENT)) == 1
    assert graph.list_for_case(case.id, status=TaskStatus.COMPLETED) == []


def test_get_task_not_found(graph, case):
    """Test unknown task lookup"""
    task = _manual_task(graph, case)

    with pytest.raises(NotFoundError):
        graph.get_task(case.id)
    with pytest.raises(NotFoundError):
        graph.get_task(task.id, case_id=task.id)
