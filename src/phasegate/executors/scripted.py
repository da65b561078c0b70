from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from typing import Any

from phasegate.executors.base import PhaseExecutor
from phasegate.models import MetricValue, Phase, PhaseResult


class ScriptedExecutor(PhaseExecutor):
    """Replays canned results per phase, in order.

    When a phase's queue runs dry the last scripted result for it is repeated;
    phases with no script succeed with ``default_metrics``.
    """

    def __init__(
        self,
        script: dict[Phase, Iterable[PhaseResult]] | None = None,
        *,
        default_metrics: dict[str, MetricValue] | None = None,
    ) -> None:
        self._queues: dict[Phase, deque[PhaseResult]] = {
            phase: deque(results) for phase, results in (script or {}).items()
        }
        self._last: dict[Phase, PhaseResult] = {}
        self.default_metrics = dict(default_metrics or {})
        self.calls: list[tuple[str, Phase]] = []
        self.cancelled: list[str] = []

    async def execute(self, task_id: str, phase: Phase, context: dict[str, Any]) -> PhaseResult:
        _ = context
        self.calls.append((task_id, phase))
        queue = self._queues.get(phase)
        if queue:
            template = queue.popleft()
            self._last[phase] = template
        elif phase in self._last:
            template = self._last[phase]
        else:
            return PhaseResult(phase=phase, succeeded=True, metrics=dict(self.default_metrics))
        return PhaseResult.from_dict(template.to_dict())

    def cancel(self, task_id: str) -> None:
        self.cancelled.append(task_id)
