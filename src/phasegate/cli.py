from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from phasegate.config import load_config, save_config
from phasegate.engine import WorkflowEngine
from phasegate.errors import WorkflowError
from phasegate.gates import FOCUS_GATES, LEVEL_GATES
from phasegate.models import (
    ComplexityLevel,
    Dimension,
    ExecutionMode,
    MetricValue,
    Phase,
    PhaseResult,
)
from phasegate.planner import WorkflowPlanner

LEVEL_CHOICES = [level.name for level in ComplexityLevel]
PHASE_CHOICES = [phase.value for phase in Phase]
DIMENSION_CHOICES = [dimension.value for dimension in Dimension]
MODE_CHOICES = ["standard", "full-auto", "focus"]


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_engine(config_value: str) -> WorkflowEngine:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    return WorkflowEngine.from_config(config, repo_root)


@contextmanager
def _workflow_errors() -> Iterator[None]:
    try:
        yield
    except WorkflowError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_mode(mode: str | None, dimension: str | None) -> ExecutionMode | None:
    if mode is None:
        if dimension is not None:
            return ExecutionMode.single_focus(dimension)
        return None
    return ExecutionMode.parse(mode, dimension)


def _parse_metric(raw: str) -> tuple[str, MetricValue]:
    if "=" not in raw:
        raise click.BadParameter(f"Expected NAME=VALUE, got '{raw}'.", param_hint="--metric")
    name, value = (part.strip() for part in raw.split("=", maxsplit=1))
    lowered = value.lower()
    if lowered in {"true", "yes", "pass"}:
        return name, True
    if lowered in {"false", "no", "fail"}:
        return name, False
    try:
        return name, int(value)
    except ValueError:
        pass
    try:
        return name, float(value.rstrip("%"))
    except ValueError as exc:
        raise click.BadParameter(
            f"Metric '{name}' must be a number or a boolean, got '{value}'.",
            param_hint="--metric",
        ) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option("-v", "--verbose", count=True, help="Repeat for debug output.")
def cli(verbose: int) -> None:
    """Phasegate CLI."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command("init")
@click.option("--mode", type=click.Choice(["standard", "full-auto"]), default=None)
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def init_command(mode: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if mode:
        config.workflow.default_mode = mode  # type: ignore[assignment]
    save_config(config_path, config)
    (repo_root / config.state.directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized phasegate in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Default mode: {config.workflow.default_mode}")
    click.echo(f"State backend: {config.state.backend}")


@cli.command("submit")
@click.argument("description")
@click.option("--scope", "scope_estimate", type=int, default=None, help="Files expected to change.")
@click.option("--mode", type=click.Choice(MODE_CHOICES), default=None)
@click.option("--dimension", type=click.Choice(DIMENSION_CHOICES), default=None)
@click.option("--start", "start_now", is_flag=True, default=False)
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def submit_command(
    description: str,
    scope_estimate: int | None,
    mode: str | None,
    dimension: str | None,
    start_now: bool,
    config_value: str,
) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        task_id = engine.submit_task(description, scope_estimate, _parse_mode(mode, dimension))
        task = engine.get_status(task_id)
        click.echo(f"Task: {task_id}")
        click.echo(f"Level: {task.level}")
        click.echo(f"Mode: {task.mode}")
        if start_now:
            definition = engine.start_task(task_id)
            click.echo("Plan: " + " -> ".join(phase.value for phase in definition.phases))


@cli.command("plan")
@click.option("--level", type=click.Choice(LEVEL_CHOICES), required=True)
@click.option("--mode", type=click.Choice(MODE_CHOICES), default="standard", show_default=True)
@click.option("--dimension", type=click.Choice(DIMENSION_CHOICES), default=None)
@click.option("--no-design", is_flag=True, default=False, help="Full-auto: skip design.")
def plan_command(level: str, mode: str, dimension: str | None, no_design: bool) -> None:
    with _workflow_errors():
        definition = WorkflowPlanner().plan(
            ComplexityLevel.parse(level),
            ExecutionMode.parse(mode, dimension),
            design_required=not no_design,
        )
    click.echo(" -> ".join(phase.value for phase in definition.phases))


@cli.command("gates")
@click.option("--level", type=click.Choice(LEVEL_CHOICES), default=None)
@click.option("--dimension", type=click.Choice(DIMENSION_CHOICES), default=None)
def gates_command(level: str | None, dimension: str | None) -> None:
    if dimension is not None:
        payload = {
            phase.value: gate.to_dict()
            for (gate_dimension, phase), gate in FOCUS_GATES.items()
            if gate_dimension.value == dimension
        }
        _echo_json({f"focus:{dimension}": payload})
        return
    levels = [ComplexityLevel.parse(level)] if level else list(ComplexityLevel)
    _echo_json(
        {
            str(item): {
                phase.value: gate.to_dict()
                for (gate_level, phase), gate in LEVEL_GATES.items()
                if gate_level is item
            }
            for item in levels
        }
    )


@cli.command("list")
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def list_command(config_value: str) -> None:
    engine = _load_engine(config_value)
    task_ids = engine.store.list_ids()
    if not task_ids:
        click.echo("No tasks found.")
        return
    with _workflow_errors():
        for task_id in task_ids:
            task = engine.get_status(task_id)
            phase = task.current_phase.value if task.current_phase else "-"
            status = task.status.value
            click.echo(f"{task.id} {task.level} {status:<9} {phase:<9} {task.description}")


@cli.command("status")
@click.argument("task_id")
@click.option("--events", "show_events", is_flag=True, default=False)
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def status_command(task_id: str, show_events: bool, config_value: str) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        payload = engine.get_status(task_id).to_dict()
        if show_events:
            payload["events"] = engine.events(task_id)
    _echo_json(payload)


@cli.command("start")
@click.argument("task_id")
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def start_command(task_id: str, config_value: str) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        definition = engine.start_task(task_id)
    click.echo("Plan: " + " -> ".join(phase.value for phase in definition.phases))


@cli.command("advance")
@click.argument("task_id")
@click.option("--phase", type=click.Choice(PHASE_CHOICES), required=True)
@click.option("--metric", "metrics", multiple=True, help="NAME=VALUE, repeatable.")
@click.option("--artifact", "artifacts", multiple=True)
@click.option("--failed", is_flag=True, default=False, help="Report a failed execution.")
@click.option("--fatal", is_flag=True, default=False, help="Report an unrecoverable fault.")
@click.option("--reason", default=None)
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def advance_command(
    task_id: str,
    phase: str,
    metrics: tuple[str, ...],
    artifacts: tuple[str, ...],
    failed: bool,
    fatal: bool,
    reason: str | None,
    config_value: str,
) -> None:
    engine = _load_engine(config_value)
    result = PhaseResult(
        phase=Phase(phase),
        succeeded=not (failed or fatal),
        metrics=dict(_parse_metric(item) for item in metrics),
        artifacts=list(artifacts),
        failure_reason=reason,
        fatal=fatal,
    )
    with _workflow_errors():
        gate = engine.advance_task(task_id, result)
        task = engine.get_status(task_id)
    if gate is not None:
        click.echo(f"Gate: {'passed' if gate.passed else 'failed'}")
        if gate.unmet:
            click.echo("Unmet: " + ", ".join(sorted(gate.unmet)))
    click.echo(f"Status: {task.status.value}")
    click.echo(f"Level: {task.level}")
    if task.current_phase:
        click.echo(f"Current phase: {task.current_phase.value}")
    if task.failure_reason:
        click.echo(f"Reason: {task.failure_reason}")


@cli.command("resume")
@click.argument("task_id")
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def resume_command(task_id: str, config_value: str) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        task = engine.resume_task(task_id)
    phase = task.current_phase.value if task.current_phase else "-"
    click.echo(f"Resumed {task_id} at {phase}")


@cli.command("replan")
@click.argument("task_id")
@click.option("--level", type=click.Choice(LEVEL_CHOICES), default=None)
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def replan_command(task_id: str, level: str | None, config_value: str) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        definition = engine.replan_task(task_id, ComplexityLevel.parse(level) if level else None)
    click.echo(f"Level: {definition.level}")
    click.echo("Plan: " + " -> ".join(phase.value for phase in definition.phases))


@cli.command("run")
@click.argument("task_id")
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def run_command(task_id: str, config_value: str) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        task = asyncio.run(engine.run_task(task_id))
    click.echo(f"Task: {task.id}")
    click.echo(f"Status: {task.status.value}")
    click.echo(f"Level: {task.level}")
    click.echo(f"Phases run: {len(task.history)}/{len(task.plan)}")
    if task.escalation_log:
        click.echo(f"Escalations: {len(task.escalation_log)}")
    if task.failure_reason:
        click.echo(f"Reason: {task.failure_reason}")


@cli.command("abort")
@click.argument("task_id")
@click.option("--reason", required=True)
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def abort_command(task_id: str, reason: str, config_value: str) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        task = engine.abort_task(task_id, reason)
    click.echo(f"Task {task.id} is {task.status.value}")


@cli.command("force-mode")
@click.argument("task_id")
@click.argument("mode", type=click.Choice(MODE_CHOICES))
@click.option("--dimension", type=click.Choice(DIMENSION_CHOICES), default=None)
@click.option("--config", "config_value", default="phasegate.toml", show_default=True)
def force_mode_command(task_id: str, mode: str, dimension: str | None, config_value: str) -> None:
    engine = _load_engine(config_value)
    with _workflow_errors():
        task = engine.force_mode(task_id, ExecutionMode.parse(mode, dimension))
    click.echo(f"Task {task.id} mode set to {task.mode}")
