from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from phasegate.classifier import DEFAULT_LEVEL_KEYWORDS, ComplexityClassifier, KeywordClassifier
from phasegate.config import PhasegateConfig
from phasegate.errors import ConcurrentTransitionError, ExecutorFaultError
from phasegate.executors import CommandExecutor, PhaseExecutor
from phasegate.gates import GateResult
from phasegate.models import (
    ComplexityLevel,
    ExecutionMode,
    MachineState,
    PhaseResult,
    Task,
    TaskStatus,
    WorkflowDefinition,
)
from phasegate.orchestrator import WorkflowOrchestrator
from phasegate.state import MemoryTaskStateStore, TaskStateStore
from phasegate.state.store import TASK_ID_PATTERN

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Control surface over the orchestrator, addressed by task id.

    Every call loads the task from the store, applies one transition and
    leaves the result persisted. Calls on the same id are serialised; a call
    arriving while another is in flight is rejected, except ``abort_task``,
    which waits for the in-flight transition and then aborts.
    """

    def __init__(
        self,
        store: TaskStateStore,
        *,
        classifier: ComplexityClassifier | None = None,
        executor: PhaseExecutor | None = None,
        default_mode: ExecutionMode | None = None,
        max_retries: int = 2,
        allow_deescalation: bool = True,
    ) -> None:
        self.store = store
        self.classifier = classifier or KeywordClassifier()
        self.executor = executor
        self.default_mode = default_mode or ExecutionMode.standard()
        self.orchestrator = WorkflowOrchestrator(
            store,
            max_retries=max_retries,
            allow_deescalation=allow_deescalation,
            event_hook=self._record_event,
        )
        self._call_locks: dict[str, threading.Lock] = {}
        self._call_locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: PhasegateConfig, repo_root: Path) -> WorkflowEngine:
        repo_root = repo_root.resolve()
        if config.state.backend == "memory":
            store: TaskStateStore = MemoryTaskStateStore()
        else:
            store = TaskStateStore(repo_root / config.state.directory)

        level_keywords = {level: list(words) for level, words in DEFAULT_LEVEL_KEYWORDS.items()}
        level_keywords[ComplexityLevel.L1].extend(config.classifier.extra_l1_keywords)
        level_keywords[ComplexityLevel.L4].extend(config.classifier.extra_l4_keywords)
        classifier = KeywordClassifier(
            level_keywords=level_keywords,
            scope_thresholds=config.classifier.scope_thresholds,
        )
        executor = CommandExecutor(
            config.executor.commands(),
            working_directory=(repo_root / config.project.working_directory).resolve(),
            timeout_seconds=max(1.0, float(config.executor.timeout_seconds)),
        )
        return cls(
            store,
            classifier=classifier,
            executor=executor,
            default_mode=ExecutionMode.parse(config.workflow.default_mode),
            max_retries=config.workflow.max_retries,
            allow_deescalation=config.workflow.allow_deescalation,
        )

    def _record_event(self, event: dict[str, Any]) -> None:
        self.store.record_event(str(event["task_id"]), event)

    @contextmanager
    def _task_call(self, task_id: str, name: str, *, wait: bool = False) -> Iterator[None]:
        with self._call_locks_guard:
            lock = self._call_locks.setdefault(task_id, threading.Lock())
        if not lock.acquire(blocking=wait):
            raise ConcurrentTransitionError(
                f"Cannot {name} task {task_id}: another call on it is in progress.",
                task_id=task_id,
            )
        try:
            yield
        finally:
            lock.release()
            if TASK_ID_PATTERN.match(task_id) and self.store.is_archived(task_id):
                with self._call_locks_guard:
                    if self._call_locks.get(task_id) is lock:
                        del self._call_locks[task_id]

    def submit_task(
        self,
        description: str,
        scope_estimate: int | None = None,
        mode: ExecutionMode | None = None,
    ) -> str:
        level = self.classifier.classify(description, scope_estimate)
        task = Task(
            id=f"task-{uuid4().hex[:12]}",
            description=description.strip(),
            level=level,
            mode=mode or self.default_mode,
            scope_estimate=scope_estimate,
            design_required=self.classifier.requires_architecture(description),
        )
        self.store.save(task)
        logger.info("Submitted task %s classified %s (%s)", task.id, level, task.mode)
        self._record_event(
            {
                "event": "task_submitted",
                "task_id": task.id,
                "level": str(level),
                "mode": str(task.mode),
            }
        )
        return task.id

    def get_status(self, task_id: str) -> Task:
        return self.store.load(task_id)

    def events(self, task_id: str) -> list[dict[str, Any]]:
        return self.store.events(task_id)

    def force_mode(self, task_id: str, mode: ExecutionMode) -> Task:
        with self._task_call(task_id, "force mode of"):
            task = self.store.load(task_id)
            if task.state is not MachineState.PLANNED or task.status is not TaskStatus.RUNNING:
                raise ConcurrentTransitionError(
                    f"Mode of task {task_id} can only change before it starts.",
                    task_id=task_id,
                )
            task.mode = mode
            task.touch()
            self.store.save(task)
            logger.info("Forced task %s into %s mode", task_id, mode)
            return task

    def start_task(self, task_id: str) -> WorkflowDefinition:
        with self._task_call(task_id, "start"):
            return self.orchestrator.start(self.store.load(task_id))

    def advance_task(self, task_id: str, result: PhaseResult) -> GateResult | None:
        with self._task_call(task_id, "advance"):
            return self.orchestrator.advance(self.store.load(task_id), result)

    def resume_task(self, task_id: str) -> Task:
        with self._task_call(task_id, "resume"):
            task = self.store.load(task_id)
            self.orchestrator.resume(task)
            return task

    def replan_task(self, task_id: str, level: ComplexityLevel | None = None) -> WorkflowDefinition:
        with self._task_call(task_id, "re-plan"):
            return self.orchestrator.replan(self.store.load(task_id), level)

    def abort_task(self, task_id: str, reason: str) -> Task:
        with self._task_call(task_id, "abort", wait=True):
            task = self.store.load(task_id)
            self.orchestrator.abort(task, reason)
        if self.executor is not None:
            self.executor.cancel(task_id)
        return task

    @staticmethod
    def _phase_context(task: Task) -> dict[str, Any]:
        phase = task.current_phase
        return {
            "description": task.description,
            "level": str(task.level),
            "mode": str(task.mode),
            "plan": [item.value for item in task.plan],
            "attempt": task.attempts.get(phase.value, 0) + 1 if phase else 1,
            "previous_failure": task.failure_reason,
            "unmet": list(task.unmet),
        }

    async def run_task(self, task_id: str) -> Task:
        """Drive the executor through the plan until the task stops.

        Stops when the task completes, fails, blocks, or is aborted from
        elsewhere while a phase is in flight.
        """
        if self.executor is None:
            raise ConcurrentTransitionError(
                f"No phase executor configured to run task {task_id}.", task_id=task_id
            )
        task = self.store.load(task_id)
        if task.state is MachineState.PLANNED and task.status is TaskStatus.RUNNING:
            self.start_task(task_id)
            task = self.store.load(task_id)

        while task.status is TaskStatus.RUNNING and task.current_phase is not None:
            phase = task.current_phase
            logger.info("Running %s for task %s", phase, task_id)
            try:
                result = await self.executor.execute(task_id, phase, self._phase_context(task))
            except ExecutorFaultError as exc:
                logger.error("Executor gave up on %s for task %s: %s", phase, task_id, exc)
                return self.abort_task(task_id, str(exc))
            except Exception as exc:
                logger.exception("Executor fault in %s for task %s", phase, task_id)
                return self.abort_task(task_id, f"Executor fault in {phase.value}: {exc}")

            try:
                self.advance_task(task_id, result)
            except ConcurrentTransitionError:
                current = self.store.load(task_id)
                if not current.is_terminal:
                    raise
                logger.info("Task %s ended while %s was in flight; result dropped", task_id, phase)
                return current
            task = self.store.load(task_id)
        return task
