from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

from phasegate.errors import InvalidModeError, InvalidWorkflowError, WorkflowStateError

MetricValue = int | float | bool


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class ComplexityLevel(IntEnum):
    L1 = 1
    L2 = 2
    L3 = 3
    L4 = 4

    def __str__(self) -> str:
        return self.name

    @classmethod
    def parse(cls, value: object) -> ComplexityLevel:
        if isinstance(value, ComplexityLevel):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Unsupported complexity level: {value!r}")
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip().upper()
        if text.startswith("L"):
            text = text[1:]
        try:
            return cls(int(text))
        except ValueError as exc:
            raise ValueError(f"Unsupported complexity level: {value!r}") from exc

    def next_level(self) -> ComplexityLevel | None:
        if self is ComplexityLevel.L4:
            return None
        return ComplexityLevel(self.value + 1)


class Phase(StrEnum):
    ANALYZE = "analyze"
    PLAN = "plan"
    DESIGN = "design"
    IMPLEMENT = "implement"
    REVIEW = "review"
    ARCHIVE = "archive"


class Dimension(StrEnum):
    ARCHITECTURE = "architecture"
    TESTING = "testing"
    REFACTORING = "refactoring"
    DOCUMENTATION = "documentation"
    SECURITY = "security"
    PERFORMANCE = "performance"


class ModeKind(StrEnum):
    STANDARD = "standard"
    FULL_AUTO = "full_auto"
    SINGLE_FOCUS = "single_focus"


class TaskStatus(StrEnum):
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


class MachineState(StrEnum):
    PLANNED = "planned"
    RUNNING = "running"
    GATE_CHECK = "gate_check"
    ESCALATING = "escalating"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


@dataclass(frozen=True, slots=True)
class ExecutionMode:
    kind: ModeKind = ModeKind.STANDARD
    dimension: Dimension | None = None

    def __post_init__(self) -> None:
        if self.kind is ModeKind.SINGLE_FOCUS and self.dimension is None:
            raise InvalidModeError("Single-focus mode requires a focus dimension.")
        if self.kind is not ModeKind.SINGLE_FOCUS and self.dimension is not None:
            raise InvalidModeError(
                f"Dimension '{self.dimension}' is only valid with single-focus mode."
            )

    @classmethod
    def standard(cls) -> ExecutionMode:
        return cls(ModeKind.STANDARD)

    @classmethod
    def full_auto(cls) -> ExecutionMode:
        return cls(ModeKind.FULL_AUTO)

    @classmethod
    def single_focus(cls, dimension: Dimension | str) -> ExecutionMode:
        try:
            parsed = Dimension(str(dimension).strip().lower())
        except ValueError as exc:
            raise InvalidModeError(f"Unknown focus dimension: {dimension}") from exc
        return cls(ModeKind.SINGLE_FOCUS, parsed)

    @classmethod
    def parse(cls, text: str, dimension: str | None = None) -> ExecutionMode:
        """Parse ``standard``, ``full-auto`` or ``focus:<dimension>``.

        A separate ``dimension`` may be given instead of the ``focus:`` suffix;
        giving one with a non-focus mode is an error.
        """
        raw = text.strip().lower().replace("-", "_")
        if raw.startswith("focus:"):
            if dimension is not None:
                raise InvalidModeError("Focus dimension given twice.")
            return cls.single_focus(raw.split(":", maxsplit=1)[1])
        if raw in {"focus", "single_focus"}:
            if dimension is None:
                raise InvalidModeError("Single-focus mode requires a focus dimension.")
            return cls.single_focus(dimension)
        try:
            kind = ModeKind(raw)
        except ValueError as exc:
            raise InvalidModeError(f"Unknown execution mode: {text}") from exc
        if dimension is not None:
            raise InvalidModeError(f"Dimension '{dimension}' is only valid with focus mode.")
        return cls(kind)

    def __str__(self) -> str:
        if self.kind is ModeKind.SINGLE_FOCUS:
            return f"focus:{self.dimension}"
        return self.kind.value.replace("_", "-")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "dimension": self.dimension.value if self.dimension else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionMode:
        dimension = data.get("dimension")
        return cls(
            ModeKind(data.get("kind", ModeKind.STANDARD.value)),
            Dimension(dimension) if dimension else None,
        )


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    level: ComplexityLevel
    mode: ExecutionMode
    phases: tuple[Phase, ...]

    def __post_init__(self) -> None:
        if not self.phases:
            raise InvalidWorkflowError("Workflow must contain at least one phase.")
        if self.phases[0] is not Phase.ANALYZE:
            raise InvalidWorkflowError("Workflow must start with the analyze phase.")
        if len(set(self.phases)) != len(self.phases):
            raise InvalidWorkflowError("Workflow phases must be unique.")
        if Phase.ARCHIVE in self.phases and self.phases[-1] is not Phase.ARCHIVE:
            raise InvalidWorkflowError("Archive phase must be the last phase.")

    def __contains__(self, phase: object) -> bool:
        return phase in self.phases

    def __len__(self) -> int:
        return len(self.phases)

    def next_phase(self, phase: Phase) -> Phase | None:
        index = self.phases.index(phase)
        if index + 1 >= len(self.phases):
            return None
        return self.phases[index + 1]


@dataclass(slots=True)
class PhaseResult:
    phase: Phase
    succeeded: bool = True
    metrics: dict[str, MetricValue] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    failure_reason: str | None = None
    fatal: bool = False
    recorded_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "succeeded": self.succeeded,
            "metrics": dict(self.metrics),
            "artifacts": list(self.artifacts),
            "failure_reason": self.failure_reason,
            "fatal": self.fatal,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseResult:
        return cls(
            phase=Phase(data["phase"]),
            succeeded=bool(data.get("succeeded", True)),
            metrics=dict(data.get("metrics") or {}),
            artifacts=[str(item) for item in data.get("artifacts") or []],
            failure_reason=data.get("failure_reason"),
            fatal=bool(data.get("fatal", False)),
            recorded_at=data.get("recorded_at") or _utcnow_iso(),
        )


@dataclass(slots=True)
class EscalationEvent:
    from_level: ComplexityLevel
    to_level: ComplexityLevel
    reason: str
    at_phase: Phase
    at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_level": str(self.from_level),
            "to_level": str(self.to_level),
            "reason": self.reason,
            "at_phase": self.at_phase.value,
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationEvent:
        return cls(
            from_level=ComplexityLevel.parse(data["from_level"]),
            to_level=ComplexityLevel.parse(data["to_level"]),
            reason=str(data.get("reason", "")),
            at_phase=Phase(data["at_phase"]),
            at=data.get("at") or _utcnow_iso(),
        )


@dataclass(slots=True)
class Task:
    id: str
    description: str
    level: ComplexityLevel
    mode: ExecutionMode = field(default_factory=ExecutionMode)
    status: TaskStatus = TaskStatus.RUNNING
    state: MachineState = MachineState.PLANNED
    current_phase: Phase | None = None
    plan: list[Phase] = field(default_factory=list)
    history: list[PhaseResult] = field(default_factory=list)
    escalation_log: list[EscalationEvent] = field(default_factory=list)
    deescalation_log: list[EscalationEvent] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)
    design_required: bool = True
    initial_level: ComplexityLevel | None = None
    scope_estimate: int | None = None
    failure_reason: str | None = None
    unmet: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    archived: bool = False

    def __post_init__(self) -> None:
        if self.initial_level is None:
            self.initial_level = self.level

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def completed_phases(self) -> list[Phase]:
        return [entry.phase for entry in self.history if entry.phase is not self.current_phase]

    def touch(self) -> None:
        self.updated_at = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "level": str(self.level),
            "initial_level": str(self.initial_level),
            "mode": self.mode.to_dict(),
            "status": self.status.value,
            "state": self.state.value,
            "current_phase": self.current_phase.value if self.current_phase else None,
            "plan": [phase.value for phase in self.plan],
            "history": [entry.to_dict() for entry in self.history],
            "escalation_log": [event.to_dict() for event in self.escalation_log],
            "deescalation_log": [event.to_dict() for event in self.deescalation_log],
            "attempts": dict(self.attempts),
            "design_required": self.design_required,
            "scope_estimate": self.scope_estimate,
            "failure_reason": self.failure_reason,
            "unmet": list(self.unmet),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        try:
            current_phase = data.get("current_phase")
            return cls(
                id=str(data["id"]),
                description=str(data.get("description", "")),
                level=ComplexityLevel.parse(data["level"]),
                initial_level=ComplexityLevel.parse(data.get("initial_level") or data["level"]),
                mode=ExecutionMode.from_dict(data.get("mode") or {}),
                status=TaskStatus(data.get("status", TaskStatus.RUNNING.value)),
                state=MachineState(data.get("state", MachineState.PLANNED.value)),
                current_phase=Phase(current_phase) if current_phase else None,
                plan=[Phase(item) for item in data.get("plan") or []],
                history=[PhaseResult.from_dict(item) for item in data.get("history") or []],
                escalation_log=[
                    EscalationEvent.from_dict(item) for item in data.get("escalation_log") or []
                ],
                deescalation_log=[
                    EscalationEvent.from_dict(item)
                    for item in data.get("deescalation_log") or []
                ],
                attempts={
                    str(key): int(value) for key, value in (data.get("attempts") or {}).items()
                },
                design_required=bool(data.get("design_required", True)),
                scope_estimate=data.get("scope_estimate"),
                failure_reason=data.get("failure_reason"),
                unmet=[str(item) for item in data.get("unmet") or []],
                created_at=data.get("created_at") or _utcnow_iso(),
                updated_at=data.get("updated_at") or _utcnow_iso(),
                archived=bool(data.get("archived", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise WorkflowStateError(f"Malformed task record: {exc}") from exc
