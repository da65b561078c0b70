from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from phasegate.models import Phase

StateBackendName = Literal["local", "memory"]
ModeName = Literal["standard", "full-auto"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    working_directory: str = "."


@dataclass(slots=True)
class WorkflowConfig:
    default_mode: ModeName = "standard"
    max_retries: int = 2
    allow_deescalation: bool = True


@dataclass(slots=True)
class ClassifierConfig:
    scope_thresholds: list[int] = field(default_factory=lambda: [2, 6, 15])
    extra_l1_keywords: list[str] = field(default_factory=list)
    extra_l4_keywords: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ExecutorConfig:
    timeout_seconds: float = 600.0
    analyze_command: str = ""
    plan_command: str = ""
    design_command: str = ""
    implement_command: str = ""
    review_command: str = ""
    archive_command: str = ""

    def commands(self) -> dict[Phase, str]:
        return {
            Phase.ANALYZE: self.analyze_command,
            Phase.PLAN: self.plan_command,
            Phase.DESIGN: self.design_command,
            Phase.IMPLEMENT: self.implement_command,
            Phase.REVIEW: self.review_command,
            Phase.ARCHIVE: self.archive_command,
        }


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"
    directory: str = ".phasegate"


@dataclass(slots=True)
class PhasegateConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> PhasegateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PhasegateConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            classifier=ClassifierConfig(**data.get("classifier", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "working_directory": self.project.working_directory,
            },
            "workflow": {
                "default_mode": self.workflow.default_mode,
                "max_retries": self.workflow.max_retries,
                "allow_deescalation": self.workflow.allow_deescalation,
            },
            "classifier": {
                "scope_thresholds": list(self.classifier.scope_thresholds),
                "extra_l1_keywords": list(self.classifier.extra_l1_keywords),
                "extra_l4_keywords": list(self.classifier.extra_l4_keywords),
            },
            "executor": {
                "timeout_seconds": self.executor.timeout_seconds,
                "analyze_command": self.executor.analyze_command,
                "plan_command": self.executor.plan_command,
                "design_command": self.executor.design_command,
                "implement_command": self.executor.implement_command,
                "review_command": self.executor.review_command,
                "archive_command": self.executor.archive_command,
            },
            "state": {
                "backend": self.state.backend,
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PhasegateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "workflow", "classifier", "executor", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PhasegateConfig:
    if not path.exists():
        return PhasegateConfig.default()
    return PhasegateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PhasegateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
