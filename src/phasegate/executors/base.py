from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from phasegate.models import Phase, PhaseResult


class PhaseExecutor(ABC):
    @abstractmethod
    async def execute(self, task_id: str, phase: Phase, context: dict[str, Any]) -> PhaseResult:
        """Perform one phase of work and return its tagged result.

        Raise :class:`~phasegate.errors.ExecutorFaultError` to fail the task
        with the error message as its reason.
        """

    def cancel(self, task_id: str) -> None:
        """Best-effort stop signal for in-flight work on ``task_id``."""
        _ = task_id
