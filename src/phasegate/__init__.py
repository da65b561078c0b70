"""Complexity-gated task workflow engine."""

from phasegate.engine import WorkflowEngine
from phasegate.gates import GateResult, QualityGate, QualityGateEvaluator
from phasegate.models import (
    ComplexityLevel,
    Dimension,
    ExecutionMode,
    Phase,
    PhaseResult,
    Task,
    TaskStatus,
    WorkflowDefinition,
)
from phasegate.orchestrator import WorkflowOrchestrator
from phasegate.planner import WorkflowPlanner
from phasegate.state import TaskStateStore

__version__ = "0.1.0"

__all__ = [
    "ComplexityLevel",
    "Dimension",
    "ExecutionMode",
    "GateResult",
    "Phase",
    "PhaseResult",
    "QualityGate",
    "QualityGateEvaluator",
    "Task",
    "TaskStateStore",
    "TaskStatus",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowOrchestrator",
    "WorkflowPlanner",
    "__version__",
]
