from typing import Any

import pytest

from phasegate.errors import (
    ConcurrentTransitionError,
    PhaseMismatchError,
    WorkflowStateError,
)
from phasegate.gates import COVERAGE_MINIMUM
from phasegate.models import (
    ComplexityLevel,
    Dimension,
    ExecutionMode,
    MachineState,
    Phase,
    PhaseResult,
    Task,
    TaskStatus,
)
from phasegate.orchestrator import WorkflowOrchestrator
from phasegate.state import MemoryTaskStateStore

PASSING_METRICS: dict[str, Any] = {
    "coverage": 95,
    "complexity": 3,
    "duplication": 1,
    "tests_passing": True,
    "code_review": True,
    "test_independence": True,
    "architecture_review": True,
    "risk_assessment": True,
    "design_documented": True,
    "security_audit": True,
    "performance_benchmark": True,
}

LOW_COVERAGE = {"coverage": 70, "complexity": 3, "duplication": 1}


def _build(
    **kwargs: Any,
) -> tuple[WorkflowOrchestrator, MemoryTaskStateStore, list[dict[str, Any]]]:
    store = MemoryTaskStateStore()
    events: list[dict[str, Any]] = []
    orchestrator = WorkflowOrchestrator(store, event_hook=events.append, **kwargs)
    return orchestrator, store, events


def _task(
    level: ComplexityLevel,
    *,
    mode: ExecutionMode | None = None,
    task_id: str = "task-1",
    design_required: bool = True,
) -> Task:
    return Task(
        id=task_id,
        description="work item",
        level=level,
        mode=mode or ExecutionMode.standard(),
        design_required=design_required,
    )


def _passing(phase: Phase, **metrics: Any) -> PhaseResult:
    merged = dict(PASSING_METRICS)
    merged.update(metrics)
    return PhaseResult(phase, metrics=merged)


def _advance_to(orchestrator: WorkflowOrchestrator, task: Task, phase: Phase) -> None:
    while task.current_phase is not phase:
        assert task.current_phase is not None
        gate = orchestrator.advance(task, _passing(task.current_phase))
        assert gate is not None and gate.passed


def test_l1_task_completes_with_three_phases() -> None:
    orchestrator, store, events = _build()
    task = _task(ComplexityLevel.L1)

    definition = orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    gate = orchestrator.advance(
        task, PhaseResult(Phase.IMPLEMENT, metrics={"coverage": 95, "complexity": 3})
    )
    orchestrator.advance(task, PhaseResult(Phase.REVIEW, metrics={"tests_passing": True}))

    assert definition.phases == (Phase.ANALYZE, Phase.IMPLEMENT, Phase.REVIEW)
    assert gate is not None and gate.passed
    assert task.status is TaskStatus.COMPLETED
    assert task.state is MachineState.COMPLETED
    assert task.current_phase is None
    assert len(task.history) == 3
    assert task.escalation_log == []
    assert Phase.DESIGN not in [entry.phase for entry in task.history]
    assert store.is_archived(task.id)
    assert [event["event"] for event in events][-1] == "task_completed"


def test_plan_result_missing_architecture_review_escalates_l2_to_l3() -> None:
    orchestrator, store, events = _build()
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))

    gate = orchestrator.advance(
        task, PhaseResult(Phase.PLAN, metrics={"architecture_review": False})
    )

    assert gate is not None and gate.passed
    assert task.level is ComplexityLevel.L3
    assert task.initial_level is ComplexityLevel.L2
    assert task.plan == [
        Phase.ANALYZE,
        Phase.PLAN,
        Phase.DESIGN,
        Phase.IMPLEMENT,
        Phase.REVIEW,
        Phase.ARCHIVE,
    ]
    assert task.current_phase is Phase.DESIGN
    assert len(task.escalation_log) == 1
    event = task.escalation_log[0]
    assert (event.from_level, event.to_level, event.at_phase) == (
        ComplexityLevel.L2,
        ComplexityLevel.L3,
        Phase.PLAN,
    )
    assert "architecture_review" in event.reason
    assert len(store.load(task.id).escalation_log) == 1
    assert any(item["event"] == "task_escalated" for item in events)


def test_repeated_coverage_failure_blocks_on_third_attempt() -> None:
    orchestrator, _store, events = _build()
    task = _task(ComplexityLevel.L3)
    orchestrator.start(task)
    _advance_to(orchestrator, task, Phase.IMPLEMENT)

    first = orchestrator.advance(task, PhaseResult(Phase.IMPLEMENT, metrics=LOW_COVERAGE))
    assert first is not None and first.unmet == {COVERAGE_MINIMUM}
    assert task.status is TaskStatus.RUNNING
    orchestrator.advance(task, PhaseResult(Phase.IMPLEMENT, metrics=LOW_COVERAGE))
    assert task.status is TaskStatus.RUNNING
    orchestrator.advance(task, PhaseResult(Phase.IMPLEMENT, metrics=LOW_COVERAGE))

    assert task.status is TaskStatus.BLOCKED
    assert task.state is MachineState.BLOCKED
    assert task.unmet == [COVERAGE_MINIMUM]
    assert task.attempts["implement"] == 3
    assert "coverage_minimum (reported coverage=70)" in (task.failure_reason or "")
    assert [entry.phase for entry in task.history].count(Phase.IMPLEMENT) == 1
    assert [item["event"] for item in events].count("phase_retry") == 2


def test_single_focus_review_checks_only_focus_gate() -> None:
    orchestrator, store, _events = _build()
    task = _task(ComplexityLevel.L4, mode=ExecutionMode.single_focus(Dimension.TESTING))

    definition = orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    orchestrator.advance(task, PhaseResult(Phase.IMPLEMENT))
    gate = orchestrator.advance(
        task,
        PhaseResult(
            Phase.REVIEW,
            metrics={"coverage": 91, "test_independence": True, "complexity": 30},
        ),
    )

    assert definition.phases == (Phase.ANALYZE, Phase.IMPLEMENT, Phase.REVIEW)
    assert gate is not None and gate.passed
    assert "complexity_max" not in gate.checked
    assert task.status is TaskStatus.COMPLETED
    assert Phase.ARCHIVE not in task.plan
    assert store.is_archived(task.id)


def test_failed_execution_retries_then_blocks() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L1)
    orchestrator.start(task)

    for _ in range(2):
        assert orchestrator.advance(task, PhaseResult(Phase.ANALYZE, succeeded=False)) is None
        assert task.status is TaskStatus.RUNNING
    orchestrator.advance(
        task, PhaseResult(Phase.ANALYZE, succeeded=False, failure_reason="tool crashed")
    )

    assert task.status is TaskStatus.BLOCKED
    assert task.failure_reason == "tool crashed"
    assert task.unmet == []


def test_max_retries_zero_blocks_immediately() -> None:
    orchestrator, _store, _events = _build(max_retries=0)
    task = _task(ComplexityLevel.L1)
    orchestrator.start(task)

    orchestrator.advance(task, PhaseResult(Phase.ANALYZE, succeeded=False))

    assert task.status is TaskStatus.BLOCKED


def test_escalation_takes_precedence_over_exhausted_retries() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    orchestrator.advance(task, PhaseResult(Phase.PLAN, succeeded=False))
    orchestrator.advance(task, PhaseResult(Phase.PLAN, succeeded=False))

    orchestrator.advance(task, PhaseResult(Phase.PLAN, metrics={"architecture_review": False}))

    assert task.status is TaskStatus.RUNNING
    assert task.level is ComplexityLevel.L3
    assert task.current_phase is Phase.DESIGN
    assert "plan" not in task.attempts


def test_escalation_steps_one_level_at_a_time() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L1)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    orchestrator.advance(
        task, PhaseResult(Phase.IMPLEMENT, metrics={"coverage": 95, "complexity": 3})
    )

    gate = orchestrator.advance(
        task,
        PhaseResult(
            Phase.REVIEW,
            metrics={"tests_passing": True, "code_review": True, "test_independence": False},
        ),
    )

    assert gate is not None and gate.passed
    assert task.level is ComplexityLevel.L3
    assert [(event.from_level, event.to_level) for event in task.escalation_log] == [
        (ComplexityLevel.L1, ComplexityLevel.L2),
        (ComplexityLevel.L2, ComplexityLevel.L3),
    ]
    assert task.plan == [Phase.ANALYZE, Phase.IMPLEMENT, Phase.REVIEW, Phase.ARCHIVE]
    assert task.current_phase is Phase.ARCHIVE
    assert task.status is TaskStatus.RUNNING


def test_escalation_rechecks_remaining_requirements_at_new_level() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L3)
    orchestrator.start(task)
    _advance_to(orchestrator, task, Phase.REVIEW)

    gate = orchestrator.advance(
        task,
        PhaseResult(
            Phase.REVIEW,
            metrics={
                "tests_passing": True,
                "code_review": True,
                "test_independence": True,
                "security_audit": False,
            },
        ),
    )

    assert task.level is ComplexityLevel.L4
    assert gate is not None and gate.passed is False
    assert gate.unmet == {"performance_benchmark"}
    assert task.current_phase is Phase.REVIEW
    assert task.status is TaskStatus.RUNNING


def test_escalated_task_runs_archive_before_completing() -> None:
    orchestrator, store, _events = _build()
    task = _task(ComplexityLevel.L3)
    orchestrator.start(task)
    _advance_to(orchestrator, task, Phase.REVIEW)

    orchestrator.advance(task, _passing(Phase.REVIEW, security_audit=False))
    assert task.level is ComplexityLevel.L4
    assert task.current_phase is Phase.ARCHIVE
    orchestrator.advance(task, PhaseResult(Phase.ARCHIVE))

    assert task.status is TaskStatus.COMPLETED
    assert [entry.phase for entry in task.history][-1] is Phase.ARCHIVE
    assert store.load(task.id).archived is True


def test_implicit_archive_is_appended_when_plan_lacks_it() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L1)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    orchestrator.advance(
        task, PhaseResult(Phase.IMPLEMENT, metrics={"coverage": 95, "complexity": 3})
    )
    task.level = ComplexityLevel.L2

    orchestrator.advance(task, _passing(Phase.REVIEW))

    assert task.plan[-1] is Phase.ARCHIVE
    assert task.current_phase is Phase.ARCHIVE
    assert task.status is TaskStatus.RUNNING


def test_deescalation_from_analyze_shrinks_plan() -> None:
    orchestrator, _store, events = _build()
    task = _task(ComplexityLevel.L3)
    orchestrator.start(task)

    orchestrator.advance(task, PhaseResult(Phase.ANALYZE, metrics={"suggested_level": 1}))

    assert task.level is ComplexityLevel.L1
    assert task.plan == [Phase.ANALYZE, Phase.IMPLEMENT, Phase.REVIEW]
    assert task.current_phase is Phase.IMPLEMENT
    assert len(task.deescalation_log) == 1
    assert task.escalation_log == []
    assert any(item["event"] == "task_deescalated" for item in events)


def test_deescalation_is_ignored_after_escalation() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))

    orchestrator.advance(
        task,
        PhaseResult(Phase.PLAN, metrics={"architecture_review": False, "suggested_level": 1}),
    )

    assert task.level is ComplexityLevel.L3
    assert task.deescalation_log == []


def test_deescalation_can_be_disabled() -> None:
    orchestrator, _store, _events = _build(allow_deescalation=False)
    task = _task(ComplexityLevel.L3)
    orchestrator.start(task)

    orchestrator.advance(task, PhaseResult(Phase.ANALYZE, metrics={"suggested_level": 1}))

    assert task.level is ComplexityLevel.L3
    assert task.current_phase is Phase.PLAN


def test_full_auto_skips_design_until_escalation_requires_it() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L2, mode=ExecutionMode.full_auto(), design_required=False)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))

    orchestrator.advance(task, PhaseResult(Phase.PLAN, metrics={"architecture_review": False}))

    assert task.design_required is True
    assert task.current_phase is Phase.DESIGN


def test_phase_mismatch_fails_the_task() -> None:
    orchestrator, store, _events = _build()
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)

    with pytest.raises(PhaseMismatchError, match="awaits 'analyze'"):
        orchestrator.advance(task, PhaseResult(Phase.REVIEW))

    assert task.status is TaskStatus.FAILED
    assert "tagged 'review'" in (task.failure_reason or "")
    assert store.is_archived(task.id)


def test_fatal_result_fails_the_task_with_reason() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L1)
    orchestrator.start(task)

    result = orchestrator.advance(
        task,
        PhaseResult(Phase.ANALYZE, succeeded=False, fatal=True, failure_reason="disk full"),
    )

    assert result is None
    assert task.status is TaskStatus.FAILED
    assert task.failure_reason == "disk full"


def test_abort_is_idempotent() -> None:
    orchestrator, store, events = _build()
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)

    orchestrator.abort(task, "user cancelled")
    orchestrator.abort(task, "second abort")

    assert task.status is TaskStatus.FAILED
    assert task.failure_reason == "user cancelled"
    assert store.load(task.id).failure_reason == "user cancelled"
    assert [item["event"] for item in events].count("task_failed") == 1


def test_concurrent_transition_is_rejected_without_changes() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L1)
    orchestrator.start(task)
    before = task.to_dict()

    with orchestrator._lock_for(task.id):  # noqa: SLF001
        with pytest.raises(ConcurrentTransitionError, match="in progress"):
            orchestrator.advance(task, PhaseResult(Phase.ANALYZE))

    assert task.to_dict() == before


def test_transitions_from_wrong_state_are_rejected() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L1)

    with pytest.raises(ConcurrentTransitionError):
        orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    orchestrator.start(task)
    with pytest.raises(ConcurrentTransitionError):
        orchestrator.start(task)
    orchestrator.abort(task, "stop")
    with pytest.raises(ConcurrentTransitionError):
        orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    with pytest.raises(ConcurrentTransitionError):
        orchestrator.resume(task)


def _blocked_at_implement(level: ComplexityLevel) -> tuple[WorkflowOrchestrator, Task]:
    orchestrator, _store, _events = _build()
    task = _task(level)
    orchestrator.start(task)
    _advance_to(orchestrator, task, Phase.IMPLEMENT)
    for _ in range(3):
        orchestrator.advance(task, PhaseResult(Phase.IMPLEMENT, metrics=LOW_COVERAGE))
    assert task.status is TaskStatus.BLOCKED
    return orchestrator, task


def test_resume_gives_blocked_task_a_fresh_budget() -> None:
    orchestrator, task = _blocked_at_implement(ComplexityLevel.L2)

    orchestrator.resume(task)

    assert task.status is TaskStatus.RUNNING
    assert task.attempts["implement"] == 0
    assert task.unmet == []
    orchestrator.advance(task, PhaseResult(Phase.IMPLEMENT, metrics=LOW_COVERAGE))
    assert task.status is TaskStatus.RUNNING
    orchestrator.advance(task, _passing(Phase.IMPLEMENT))
    assert task.current_phase is Phase.REVIEW


def test_corrective_result_unblocks_task() -> None:
    orchestrator, task = _blocked_at_implement(ComplexityLevel.L2)

    gate = orchestrator.advance(task, _passing(Phase.IMPLEMENT))

    assert gate is not None and gate.passed
    assert task.status is TaskStatus.RUNNING
    assert task.current_phase is Phase.REVIEW


def test_replan_to_higher_level_resumes_at_first_new_phase() -> None:
    orchestrator, task = _blocked_at_implement(ComplexityLevel.L2)

    definition = orchestrator.replan(task, ComplexityLevel.L3)

    assert definition.phases == (
        Phase.ANALYZE,
        Phase.PLAN,
        Phase.DESIGN,
        Phase.IMPLEMENT,
        Phase.REVIEW,
        Phase.ARCHIVE,
    )
    assert task.status is TaskStatus.RUNNING
    assert task.current_phase is Phase.DESIGN
    assert [entry.phase for entry in task.history] == [Phase.ANALYZE, Phase.PLAN]
    assert task.escalation_log[-1].reason == "Manual re-plan"
    assert orchestrator.store.load(task.id).escalation_log[-1].to_level is ComplexityLevel.L3


def test_replan_cannot_lower_level_after_gate_bearing_phase() -> None:
    orchestrator, task = _blocked_at_implement(ComplexityLevel.L3)

    with pytest.raises(WorkflowStateError, match="can no longer be lowered"):
        orchestrator.replan(task, ComplexityLevel.L1)

    assert task.level is ComplexityLevel.L3
    assert task.status is TaskStatus.BLOCKED


def test_replan_lowering_before_design_is_recorded_as_deescalation() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L3)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))

    orchestrator.replan(task, ComplexityLevel.L1)

    assert task.plan == [Phase.ANALYZE, Phase.IMPLEMENT, Phase.REVIEW]
    assert task.current_phase is Phase.IMPLEMENT
    assert task.deescalation_log[-1].to_level is ComplexityLevel.L1


def test_escalation_is_written_together_with_new_level_and_plan() -> None:
    store = MemoryTaskStateStore()

    def hook(event: dict[str, Any]) -> None:
        if event["event"] == "task_escalated":
            raise RuntimeError("event journal unavailable")

    orchestrator = WorkflowOrchestrator(store, event_hook=hook)
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))

    with pytest.raises(RuntimeError, match="event journal unavailable"):
        orchestrator.advance(task, PhaseResult(Phase.PLAN, metrics={"architecture_review": False}))

    stored = store.load(task.id)
    assert stored.level is ComplexityLevel.L2
    assert stored.plan == [
        Phase.ANALYZE,
        Phase.PLAN,
        Phase.IMPLEMENT,
        Phase.REVIEW,
        Phase.ARCHIVE,
    ]
    assert stored.escalation_log == []
    assert stored.current_phase is Phase.PLAN


def test_escalation_reaches_store_in_single_save() -> None:
    orchestrator, store, _events = _build()
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    revision = store.get_envelope(task.id)["revision"]

    orchestrator.advance(task, PhaseResult(Phase.PLAN, metrics={"architecture_review": False}))

    envelope = store.get_envelope(task.id)
    stored = store.load(task.id)
    assert envelope["revision"] == revision + 1
    assert stored.level is ComplexityLevel.L3
    assert stored.current_phase is Phase.DESIGN
    assert [(event.from_level, event.to_level) for event in stored.escalation_log] == [
        (ComplexityLevel.L2, ComplexityLevel.L3)
    ]


def test_escalation_at_review_does_not_schedule_design_after_implement() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L2)
    orchestrator.start(task)
    _advance_to(orchestrator, task, Phase.REVIEW)

    orchestrator.advance(task, _passing(Phase.REVIEW, test_independence=False))

    assert task.level is ComplexityLevel.L3
    assert task.plan == [
        Phase.ANALYZE,
        Phase.PLAN,
        Phase.IMPLEMENT,
        Phase.REVIEW,
        Phase.ARCHIVE,
    ]
    assert task.current_phase is Phase.ARCHIVE


def test_manual_replan_upward_adds_design_to_full_auto_task() -> None:
    orchestrator, _store, _events = _build()
    task = _task(ComplexityLevel.L2, mode=ExecutionMode.full_auto(), design_required=False)
    orchestrator.start(task)
    orchestrator.advance(task, PhaseResult(Phase.ANALYZE))
    assert Phase.DESIGN not in task.plan

    definition = orchestrator.replan(task, ComplexityLevel.L3)

    assert task.design_required is True
    assert Phase.DESIGN in definition.phases
    assert task.current_phase is Phase.PLAN


def test_replan_without_current_phase_raises_state_error() -> None:
    orchestrator, store, _events = _build()
    task = _task(ComplexityLevel.L2)
    task.state = MachineState.RUNNING
    store.save(task)

    with pytest.raises(WorkflowStateError, match="no current phase"):
        orchestrator.replan(task, ComplexityLevel.L3)

    assert store.load(task.id).level is ComplexityLevel.L2


def test_finished_tasks_release_their_transition_locks() -> None:
    orchestrator, _store, _events = _build()
    done = _task(ComplexityLevel.L1, task_id="task-done")
    live = _task(ComplexityLevel.L1, task_id="task-live")
    orchestrator.start(done)
    orchestrator.start(live)
    _advance_to(orchestrator, done, Phase.REVIEW)
    orchestrator.advance(done, _passing(Phase.REVIEW))

    assert done.status is TaskStatus.COMPLETED
    assert set(orchestrator._locks) == {"task-live"}  # noqa: SLF001
