"""Quality gate tables and the pure gate evaluator.

Gates are keyed by ``(ComplexityLevel, Phase)`` for level-driven workflows and
by ``(Dimension, Phase)`` for single-focus workflows. A phase without an entry
has no gate and always passes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from phasegate.errors import InvalidWorkflowError
from phasegate.models import ComplexityLevel, Dimension, MetricValue, Phase

COVERAGE_MINIMUM = "coverage_minimum"
COMPLEXITY_MAX = "complexity_max"
DUPLICATION_MAX = "duplication_max"

# requirement name -> metric name reported by the executor
NUMERIC_METRICS = {
    COVERAGE_MINIMUM: "coverage",
    COMPLEXITY_MAX: "complexity",
    DUPLICATION_MAX: "duplication",
}


class CoverageScope(IntEnum):
    CHANGED_LINES = 1
    MODULE = 2
    SYSTEM = 3


@dataclass(frozen=True, slots=True)
class QualityGate:
    coverage_minimum: float | None = None
    complexity_max: int | None = None
    duplication_max: float | None = None
    extra_requirements: frozenset[str] = frozenset()
    coverage_scope: CoverageScope = CoverageScope.MODULE

    def requirement_names(self) -> frozenset[str]:
        names = set(self.extra_requirements)
        if self.coverage_minimum is not None:
            names.add(COVERAGE_MINIMUM)
        if self.complexity_max is not None:
            names.add(COMPLEXITY_MAX)
        if self.duplication_max is not None:
            names.add(DUPLICATION_MAX)
        return frozenset(names)

    def is_at_least_as_strict_as(self, other: QualityGate) -> bool:
        if not other.extra_requirements <= self.extra_requirements:
            return False
        if other.coverage_minimum is not None:
            if self.coverage_minimum is None:
                return False
            # A wider scope at an equal-or-lower percentage still covers more code.
            if (
                self.coverage_scope <= other.coverage_scope
                and self.coverage_minimum < other.coverage_minimum
            ):
                return False
            if self.coverage_scope < other.coverage_scope:
                return False
        if other.complexity_max is not None:
            if self.complexity_max is None or self.complexity_max > other.complexity_max:
                return False
        if other.duplication_max is not None:
            if self.duplication_max is None or self.duplication_max > other.duplication_max:
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "coverage_minimum": self.coverage_minimum,
            "coverage_scope": self.coverage_scope.name.lower(),
            "complexity_max": self.complexity_max,
            "duplication_max": self.duplication_max,
            "extra_requirements": sorted(self.extra_requirements),
        }


@dataclass(frozen=True, slots=True)
class GateResult:
    passed: bool
    unmet: frozenset[str] = frozenset()
    escalation_triggers: frozenset[str] = frozenset()
    checked: frozenset[str] = field(default_factory=frozenset)

    @property
    def remediable(self) -> frozenset[str]:
        return self.unmet - self.escalation_triggers

    def describe(self, metrics: Mapping[str, Any] | None = None) -> str:
        if self.passed:
            return "All quality gate requirements met."
        parts: list[str] = []
        for name in sorted(self.unmet):
            metric_name = NUMERIC_METRICS.get(name, name)
            if metrics is not None and metric_name in metrics:
                parts.append(f"{name} (reported {metric_name}={metrics[metric_name]!r})")
            elif metrics is not None:
                parts.append(f"{name} (metric '{metric_name}' missing)")
            else:
                parts.append(name)
        return "Unmet quality gate requirements: " + ", ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "unmet": sorted(self.unmet),
            "escalation_triggers": sorted(self.escalation_triggers),
            "checked": sorted(self.checked),
        }


def _gate(
    coverage: float | None = None,
    complexity: int | None = None,
    duplication: float | None = None,
    extras: tuple[str, ...] = (),
    scope: CoverageScope = CoverageScope.MODULE,
) -> QualityGate:
    return QualityGate(
        coverage_minimum=coverage,
        complexity_max=complexity,
        duplication_max=duplication,
        extra_requirements=frozenset(extras),
        coverage_scope=scope,
    )


L = ComplexityLevel
P = Phase

LEVEL_GATES: dict[tuple[ComplexityLevel, Phase], QualityGate] = {
    (L.L1, P.IMPLEMENT): _gate(90, 5, scope=CoverageScope.CHANGED_LINES),
    (L.L1, P.REVIEW): _gate(extras=("tests_passing",)),
    (L.L2, P.IMPLEMENT): _gate(80, 5, 5),
    (L.L2, P.REVIEW): _gate(extras=("tests_passing", "code_review")),
    (L.L3, P.PLAN): _gate(extras=("architecture_review",)),
    (L.L3, P.DESIGN): _gate(extras=("design_documented",)),
    (L.L3, P.IMPLEMENT): _gate(80, 5, 3),
    (L.L3, P.REVIEW): _gate(extras=("tests_passing", "code_review", "test_independence")),
    (L.L4, P.PLAN): _gate(extras=("architecture_review", "risk_assessment")),
    (L.L4, P.DESIGN): _gate(extras=("design_documented", "architecture_review")),
    (L.L4, P.IMPLEMENT): _gate(
        90, 5, 3, extras=("performance_benchmark",), scope=CoverageScope.SYSTEM
    ),
    (L.L4, P.REVIEW): _gate(
        extras=(
            "tests_passing",
            "code_review",
            "test_independence",
            "security_audit",
            "performance_benchmark",
        )
    ),
}

D = Dimension

FOCUS_GATES: dict[tuple[Dimension, Phase], QualityGate] = {
    (D.ARCHITECTURE, P.REVIEW): _gate(complexity=5, extras=("architecture_review",)),
    (D.TESTING, P.REVIEW): _gate(coverage=90, extras=("test_independence",)),
    (D.REFACTORING, P.REVIEW): _gate(complexity=5, duplication=3),
    (D.DOCUMENTATION, P.REVIEW): _gate(extras=("documentation_complete",)),
    (D.SECURITY, P.REVIEW): _gate(extras=("security_audit",)),
    (D.PERFORMANCE, P.REVIEW): _gate(extras=("performance_benchmark",)),
}

del L, P, D


def validate_gate_table(table: Mapping[tuple[ComplexityLevel, Phase], QualityGate]) -> None:
    """Reject tables where a higher level relaxes a gate of a lower level."""
    for (level, phase), gate in table.items():
        for higher in ComplexityLevel:
            if higher <= level:
                continue
            other = table.get((higher, phase))
            if other is None or not other.is_at_least_as_strict_as(gate):
                raise InvalidWorkflowError(
                    f"Gate for {higher}/{phase} is weaker than the gate for {level}/{phase}."
                )


def _numeric(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class QualityGateEvaluator:
    def __init__(
        self,
        level_gates: Mapping[tuple[ComplexityLevel, Phase], QualityGate] | None = None,
        focus_gates: Mapping[tuple[Dimension, Phase], QualityGate] | None = None,
    ) -> None:
        self.level_gates = dict(LEVEL_GATES if level_gates is None else level_gates)
        self.focus_gates = dict(FOCUS_GATES if focus_gates is None else focus_gates)
        validate_gate_table(self.level_gates)

    def gate_for(
        self,
        level: ComplexityLevel,
        phase: Phase,
        *,
        dimension: Dimension | None = None,
    ) -> QualityGate | None:
        if dimension is not None:
            return self.focus_gates.get((dimension, phase))
        return self.level_gates.get((level, phase))

    def _higher_level_requirements(self, level: ComplexityLevel, phase: Phase) -> set[str]:
        names: set[str] = set()
        for higher in ComplexityLevel:
            if higher <= level:
                continue
            gate = self.level_gates.get((higher, phase))
            if gate is not None:
                names.update(gate.extra_requirements)
        return names

    def evaluate(
        self,
        level: ComplexityLevel,
        phase: Phase,
        metrics: Mapping[str, MetricValue],
        *,
        dimension: Dimension | None = None,
    ) -> GateResult:
        gate = self.gate_for(level, phase, dimension=dimension)
        unmet: set[str] = set()
        checked: set[str] = set()

        if gate is not None:
            checked.update(gate.requirement_names())
            if gate.coverage_minimum is not None:
                coverage = _numeric(metrics.get("coverage"))
                if coverage is None or coverage < gate.coverage_minimum:
                    unmet.add(COVERAGE_MINIMUM)
            if gate.complexity_max is not None:
                complexity = _numeric(metrics.get("complexity"))
                if complexity is None or complexity > gate.complexity_max:
                    unmet.add(COMPLEXITY_MAX)
            if gate.duplication_max is not None:
                duplication = _numeric(metrics.get("duplication"))
                if duplication is None or duplication > gate.duplication_max:
                    unmet.add(DUPLICATION_MAX)
            for requirement in gate.extra_requirements:
                if metrics.get(requirement) is not True:
                    unmet.add(requirement)

        triggers: set[str] = set()
        if dimension is None:
            own = gate.extra_requirements if gate is not None else frozenset()
            for requirement in self._higher_level_requirements(level, phase) - own:
                if metrics.get(requirement) is False:
                    triggers.add(requirement)
            checked.update(triggers)
            unmet.update(triggers)

        return GateResult(
            passed=not unmet,
            unmet=frozenset(unmet),
            escalation_triggers=frozenset(triggers),
            checked=frozenset(checked),
        )
