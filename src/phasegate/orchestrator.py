"""Gated phase state machine for a single task.

States: Planned -> Running(phase) -> GateCheck(phase) -> Running(next) ... ->
Completed, with Escalating as a pass-through state when a gate shows the task
was under-classified, Blocked when retries are exhausted, and Failed on abort
or executor faults. Each transition runs to completion under a per-task lock
and leaves the task persisted in the state store.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Any

from phasegate.errors import (
    ConcurrentTransitionError,
    PhaseMismatchError,
    WorkflowStateError,
)
from phasegate.gates import GateResult, QualityGateEvaluator
from phasegate.models import (
    ComplexityLevel,
    EscalationEvent,
    MachineState,
    ModeKind,
    Phase,
    PhaseResult,
    Task,
    TaskStatus,
    WorkflowDefinition,
)
from phasegate.planner import STANDARD_PHASES, WorkflowPlanner
from phasegate.state.store import TaskStateStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]

DEESCALATION_PHASES = frozenset({Phase.ANALYZE, Phase.PLAN})
GATE_BEARING_PHASES = frozenset({Phase.DESIGN, Phase.IMPLEMENT, Phase.REVIEW, Phase.ARCHIVE})
SUGGESTED_LEVEL_METRIC = "suggested_level"


class WorkflowOrchestrator:
    def __init__(
        self,
        store: TaskStateStore,
        *,
        planner: WorkflowPlanner | None = None,
        evaluator: QualityGateEvaluator | None = None,
        max_retries: int = 2,
        allow_deescalation: bool = True,
        event_hook: EventHook | None = None,
    ) -> None:
        self.store = store
        self.planner = planner or WorkflowPlanner()
        self.evaluator = evaluator or QualityGateEvaluator()
        self.max_retries = max(0, int(max_retries))
        self.allow_deescalation = allow_deescalation
        self.event_hook = event_hook
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, task_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[task_id] = lock
            return lock

    @contextmanager
    def _transition(self, task: Task, name: str, *, wait: bool = False) -> Iterator[None]:
        lock = self._lock_for(task.id)
        if not lock.acquire(blocking=wait):
            raise ConcurrentTransitionError(
                f"Cannot {name} task {task.id}: another transition is in progress.",
                task_id=task.id,
            )
        try:
            yield
        finally:
            lock.release()
            if task.is_terminal:
                with self._locks_guard:
                    if self._locks.get(task.id) is lock:
                        del self._locks[task.id]

    def _emit(self, task: Task, event: str, **fields: Any) -> None:
        payload: dict[str, Any] = {
            "event": event,
            "task_id": task.id,
            "level": str(task.level),
            "status": task.status.value,
            "state": task.state.value,
            "phase": task.current_phase.value if task.current_phase else None,
        }
        payload.update(fields)
        logger.debug("task %s: %s %s", task.id, event, fields or "")
        if self.event_hook:
            self.event_hook(payload)

    def definition(self, task: Task) -> WorkflowDefinition:
        return WorkflowDefinition(level=task.level, mode=task.mode, phases=tuple(task.plan))

    def _persist(self, task: Task) -> None:
        task.touch()
        if task.is_terminal:
            self.store.archive(task)
        else:
            self.store.save(task)

    def start(self, task: Task) -> WorkflowDefinition:
        with self._transition(task, "start"):
            if (
                task.status is not TaskStatus.RUNNING
                or task.state is not MachineState.PLANNED
                or task.current_phase is not None
            ):
                raise ConcurrentTransitionError(
                    f"Task {task.id} cannot start from state {task.state.value}.",
                    task_id=task.id,
                )
            definition = self.planner.plan(
                task.level, task.mode, design_required=task.design_required
            )
            task.plan = list(definition.phases)
            task.current_phase = definition.phases[0]
            task.state = MachineState.RUNNING
            self._persist(task)
            logger.info(
                "Started task %s at %s (%s): %s",
                task.id,
                task.level,
                task.mode,
                " -> ".join(phase.value for phase in task.plan),
            )
            self._emit(task, "task_started", plan=[phase.value for phase in task.plan])
            return definition

    def advance(self, task: Task, result: PhaseResult) -> GateResult | None:
        """Accept the executor's result for the current phase.

        Returns the gate result when the result reached a gate check, ``None``
        when it was a failed execution or a fatal fault.
        """
        with self._transition(task, "advance"):
            if task.state not in {MachineState.RUNNING, MachineState.BLOCKED}:
                raise ConcurrentTransitionError(
                    f"Task {task.id} is {task.state.value} and is not awaiting a phase result.",
                    task_id=task.id,
                )
            phase = task.current_phase
            if phase is None:
                raise WorkflowStateError(
                    f"Task {task.id} has no current phase.", task_id=task.id
                )
            if result.phase is not phase:
                reason = (
                    f"Executor returned a result tagged '{result.phase.value}' while task "
                    f"{task.id} awaits '{phase.value}'."
                )
                self._fail(task, reason)
                raise PhaseMismatchError(reason, task_id=task.id, phase=result.phase.value)

            if task.status is TaskStatus.BLOCKED:
                logger.info("Task %s: corrective result received for %s", task.id, phase)
                task.status = TaskStatus.RUNNING
                task.state = MachineState.RUNNING

            self._record_history(task, result)

            if result.fatal:
                self._fail(
                    task, result.failure_reason or "Executor reported an unrecoverable fault."
                )
                return None

            if not result.succeeded:
                self._handle_failure(
                    task, result.failure_reason or f"Phase {phase.value} failed.", unmet=()
                )
                self._persist(task)
                return None

            task.state = MachineState.GATE_CHECK
            gate = self._evaluate(task, phase, result)
            waived: set[str] = set()
            while gate.escalation_triggers and task.level.next_level() is not None:
                waived.update(gate.escalation_triggers)
                self._escalate(task, phase, gate.escalation_triggers)
                gate = self._evaluate(task, phase, result)

            remaining = gate.unmet - waived
            if remaining:
                final = GateResult(
                    passed=False,
                    unmet=frozenset(remaining),
                    escalation_triggers=gate.escalation_triggers - waived,
                    checked=gate.checked,
                )
                self._handle_failure(task, final.describe(result.metrics), unmet=remaining)
                self._persist(task)
                return final

            self._pass_phase(task, phase, result)
            self._persist(task)
            return GateResult(passed=True, checked=gate.checked)

    def _evaluate(self, task: Task, phase: Phase, result: PhaseResult) -> GateResult:
        gate = self.evaluator.evaluate(
            task.level, phase, result.metrics, dimension=task.mode.dimension
        )
        self._emit(task, "gate_checked", gate=gate.to_dict())
        return gate

    @staticmethod
    def _record_history(task: Task, result: PhaseResult) -> None:
        if task.history and task.history[-1].phase is result.phase:
            task.history[-1] = result
        else:
            task.history.append(result)

    def _handle_failure(self, task: Task, reason: str, *, unmet: Iterable[str]) -> None:
        phase = task.current_phase
        if phase is None:
            raise WorkflowStateError(f"Task {task.id} has no current phase.", task_id=task.id)
        attempts = task.attempts.get(phase.value, 0) + 1
        task.attempts[phase.value] = attempts
        task.failure_reason = reason
        task.unmet = sorted(unmet)
        if attempts > self.max_retries:
            task.status = TaskStatus.BLOCKED
            task.state = MachineState.BLOCKED
            logger.warning("Task %s blocked in %s: %s", task.id, phase, reason)
            self._emit(task, "task_blocked", reason=reason, unmet=task.unmet, attempt=attempts)
            return
        task.status = TaskStatus.RUNNING
        task.state = MachineState.RUNNING
        logger.info(
            "Task %s: %s attempt %d failed, retrying (%d of %d): %s",
            task.id,
            phase,
            attempts,
            attempts,
            self.max_retries,
            reason,
        )
        self._emit(task, "phase_retry", reason=reason, unmet=task.unmet, attempt=attempts)

    @staticmethod
    def _design_required_at(task: Task, level: ComplexityLevel) -> bool:
        if task.mode.kind is ModeKind.FULL_AUTO and Phase.DESIGN in STANDARD_PHASES[level]:
            return True
        return task.design_required

    def _escalate(self, task: Task, phase: Phase, triggers: frozenset[str]) -> None:
        old_level = task.level
        new_level = old_level.next_level()
        if new_level is None:
            raise WorkflowStateError(
                f"Task {task.id} is already at the highest level.", task_id=task.id
            )
        task.state = MachineState.ESCALATING
        reason = (
            f"{phase.value} reported {', '.join(sorted(triggers))} unmet, "
            f"which only higher-level gates require"
        )
        event = EscalationEvent(
            from_level=old_level, to_level=new_level, reason=reason, at_phase=phase
        )
        task.design_required = self._design_required_at(task, new_level)
        passed = task.completed_phases() + [phase]
        definition = self.planner.replan(task, new_level, passed=passed)
        task.level = new_level
        task.plan = list(definition.phases)
        task.escalation_log.append(event)
        task.state = MachineState.GATE_CHECK
        logger.info("Escalated task %s from %s to %s at %s", task.id, old_level, new_level, phase)
        self._emit(
            task,
            "task_escalated",
            from_level=str(old_level),
            to_level=str(new_level),
            reason=reason,
            plan=[item.value for item in task.plan],
        )

    def _maybe_deescalate(self, task: Task, phase: Phase, result: PhaseResult) -> None:
        if not self.allow_deescalation or phase not in DEESCALATION_PHASES:
            return
        if task.mode.kind is ModeKind.SINGLE_FOCUS or task.escalation_log:
            return
        if any(entry.phase in GATE_BEARING_PHASES for entry in task.history):
            return
        suggested = result.metrics.get(SUGGESTED_LEVEL_METRIC)
        if isinstance(suggested, bool) or not isinstance(suggested, (int, float)):
            return
        try:
            target = ComplexityLevel(int(suggested))
        except ValueError:
            logger.warning(
                "Ignoring out-of-range suggested_level %r for task %s", suggested, task.id
            )
            return
        if target >= task.level:
            return

        old_level = task.level
        passed = task.completed_phases() + [phase]
        definition = self.planner.replan(task, target, passed=passed)
        task.level = target
        task.plan = list(definition.phases)
        task.deescalation_log.append(
            EscalationEvent(
                from_level=old_level,
                to_level=target,
                reason=f"{phase.value} suggested level {target}",
                at_phase=phase,
            )
        )
        logger.info("De-escalated task %s from %s to %s at %s", task.id, old_level, target, phase)
        self._emit(
            task,
            "task_deescalated",
            from_level=str(old_level),
            to_level=str(target),
            plan=[item.value for item in task.plan],
        )

    def _pass_phase(self, task: Task, phase: Phase, result: PhaseResult) -> None:
        task.attempts.pop(phase.value, None)
        task.failure_reason = None
        task.unmet = []
        self._maybe_deescalate(task, phase, result)

        next_phase = self.definition(task).next_phase(phase)
        if (
            next_phase is None
            and Phase.ARCHIVE not in task.plan
            and self.planner.requires_archive(task.level, task.mode)
        ):
            task.plan.append(Phase.ARCHIVE)
            next_phase = Phase.ARCHIVE
            logger.info("Task %s: appended implicit archive phase", task.id)

        self._emit(task, "phase_passed", passed_phase=phase.value)
        if next_phase is None:
            task.status = TaskStatus.COMPLETED
            task.state = MachineState.COMPLETED
            task.current_phase = None
            logger.info("Task %s completed at %s", task.id, task.level)
            self._emit(task, "task_completed", history=len(task.history))
            return
        task.current_phase = next_phase
        task.state = MachineState.RUNNING

    def _fail(self, task: Task, reason: str) -> None:
        task.status = TaskStatus.FAILED
        task.state = MachineState.FAILED
        task.failure_reason = reason
        logger.error("Task %s failed: %s", task.id, reason)
        self._emit(task, "task_failed", reason=reason)
        self._persist(task)

    def abort(self, task: Task, reason: str) -> None:
        with self._transition(task, "abort", wait=True):
            if task.is_terminal:
                logger.debug("Abort of terminal task %s ignored", task.id)
                return
            self._fail(task, reason)

    def resume(self, task: Task) -> None:
        """Manual override: give a blocked task a fresh retry budget on its phase."""
        with self._transition(task, "resume"):
            if task.status is not TaskStatus.BLOCKED or task.current_phase is None:
                raise ConcurrentTransitionError(
                    f"Task {task.id} is {task.status.value}; only blocked tasks can resume.",
                    task_id=task.id,
                )
            task.attempts[task.current_phase.value] = 0
            task.status = TaskStatus.RUNNING
            task.state = MachineState.RUNNING
            task.failure_reason = None
            task.unmet = []
            self._persist(task)
            logger.info("Resumed task %s at %s", task.id, task.current_phase)
            self._emit(task, "task_resumed")

    def replan(self, task: Task, level: ComplexityLevel | None = None) -> WorkflowDefinition:
        """Re-plan a running or blocked task, optionally at another level.

        Raising the level is recorded as an escalation. Lowering it is only
        allowed while de-escalation would be: before any gate-bearing phase ran
        and before any escalation.
        """
        with self._transition(task, "replan"):
            if task.status not in {TaskStatus.RUNNING, TaskStatus.BLOCKED} or (
                task.state is MachineState.PLANNED
            ):
                raise ConcurrentTransitionError(
                    f"Task {task.id} is {task.state.value} and cannot be re-planned.",
                    task_id=task.id,
                )
            target = task.level if level is None else level
            phase = task.current_phase
            if phase is None:
                raise WorkflowStateError(
                    f"Task {task.id} has no current phase.", task_id=task.id
                )
            if target < task.level and (
                task.escalation_log
                or any(entry.phase in GATE_BEARING_PHASES for entry in task.history)
            ):
                raise WorkflowStateError(
                    f"Task {task.id} can no longer be lowered to {target}.", task_id=task.id
                )

            design_required = task.design_required
            if target > task.level:
                design_required = self._design_required_at(task, target)
            passed = task.completed_phases()
            definition = self.planner.replan(
                task, target, passed=passed, design_required=design_required
            )
            first_open = next((item for item in definition.phases if item not in passed), None)
            if first_open is None:
                raise WorkflowStateError(
                    f"Re-plan of task {task.id} leaves no phase to run.", task_id=task.id
                )
            if target > task.level:
                event = EscalationEvent(
                    from_level=task.level,
                    to_level=target,
                    reason="Manual re-plan",
                    at_phase=phase,
                )
                task.escalation_log.append(event)
            elif target < task.level:
                task.deescalation_log.append(
                    EscalationEvent(
                        from_level=task.level,
                        to_level=target,
                        reason="Manual re-plan",
                        at_phase=phase,
                    )
                )
            task.level = target
            task.design_required = design_required
            task.plan = list(definition.phases)
            if first_open is not phase:
                # Resume at the earliest phase the new plan has not passed yet.
                task.current_phase = first_open
                task.history = [entry for entry in task.history if entry.phase in passed]
            task.attempts.pop(phase.value, None)
            task.status = TaskStatus.RUNNING
            task.state = MachineState.RUNNING
            task.failure_reason = None
            task.unmet = []
            self._persist(task)
            logger.info("Re-planned task %s at %s", task.id, target)
            self._emit(task, "task_replanned", plan=[item.value for item in task.plan])
            return definition
