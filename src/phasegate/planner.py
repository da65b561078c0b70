from __future__ import annotations

import logging

from phasegate.errors import InvalidModeError
from phasegate.models import (
    ComplexityLevel,
    Dimension,
    ExecutionMode,
    ModeKind,
    Phase,
    Task,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

STANDARD_PHASES: dict[ComplexityLevel, tuple[Phase, ...]] = {
    ComplexityLevel.L1: (Phase.ANALYZE, Phase.IMPLEMENT, Phase.REVIEW),
    ComplexityLevel.L2: (
        Phase.ANALYZE,
        Phase.PLAN,
        Phase.IMPLEMENT,
        Phase.REVIEW,
        Phase.ARCHIVE,
    ),
    ComplexityLevel.L3: (
        Phase.ANALYZE,
        Phase.PLAN,
        Phase.DESIGN,
        Phase.IMPLEMENT,
        Phase.REVIEW,
        Phase.ARCHIVE,
    ),
    ComplexityLevel.L4: (
        Phase.ANALYZE,
        Phase.PLAN,
        Phase.DESIGN,
        Phase.IMPLEMENT,
        Phase.REVIEW,
        Phase.ARCHIVE,
    ),
}

FOCUS_PHASES: tuple[Phase, ...] = (Phase.ANALYZE, Phase.IMPLEMENT, Phase.REVIEW)
PRE_IMPLEMENT_PHASES = frozenset({Phase.PLAN, Phase.DESIGN})


class WorkflowPlanner:
    def plan(
        self,
        level: ComplexityLevel,
        mode: ExecutionMode,
        *,
        dimension: Dimension | None = None,
        design_required: bool = True,
    ) -> WorkflowDefinition:
        """Return the ordered phases a task at ``level`` runs under ``mode``.

        ``dimension`` may be passed separately from the mode for callers that
        hold the two apart; it must agree with the mode.
        """
        if dimension is not None:
            if mode.kind is not ModeKind.SINGLE_FOCUS:
                raise InvalidModeError(
                    f"Dimension '{dimension}' given without single-focus mode."
                )
            if mode.dimension is not dimension:
                raise InvalidModeError(
                    f"Dimension '{dimension}' does not match mode dimension '{mode.dimension}'."
                )

        if mode.kind is ModeKind.SINGLE_FOCUS:
            phases = FOCUS_PHASES
        elif mode.kind is ModeKind.FULL_AUTO and not design_required:
            phases = tuple(phase for phase in STANDARD_PHASES[level] if phase is not Phase.DESIGN)
        else:
            phases = STANDARD_PHASES[level]
        return WorkflowDefinition(level=level, mode=mode, phases=phases)

    @staticmethod
    def requires_archive(level: ComplexityLevel, mode: ExecutionMode) -> bool:
        if mode.kind is ModeKind.SINGLE_FOCUS:
            return False
        return Phase.ARCHIVE in STANDARD_PHASES[level]

    def replan(
        self,
        task: Task,
        level: ComplexityLevel,
        *,
        passed: list[Phase] | None = None,
        design_required: bool | None = None,
    ) -> WorkflowDefinition:
        """Plan ``task`` at ``level`` without re-running phases it already passed.

        Passed phases keep the order they ran in; the new level's phases that
        have not run yet follow in the new level's order. Plan and Design are
        left out once Implement has passed.
        """
        done = list(passed) if passed is not None else task.completed_phases()
        if design_required is None:
            design_required = task.design_required
        target = self.plan(level, task.mode, design_required=design_required)
        remaining = [phase for phase in target.phases if phase not in done]
        if Phase.IMPLEMENT in done:
            remaining = [phase for phase in remaining if phase not in PRE_IMPLEMENT_PHASES]
        phases = tuple(done + remaining)
        logger.debug(
            "Replanned task %s at %s: %s",
            task.id,
            level,
            ", ".join(phase.value for phase in phases),
        )
        return WorkflowDefinition(level=level, mode=task.mode, phases=phases)
