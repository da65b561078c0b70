from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Any

from phasegate.executors.base import PhaseExecutor
from phasegate.models import MetricValue, Phase, PhaseResult

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
TOTAL_COVERAGE_PATTERN = re.compile(r"^TOTAL\b.*?\b(\d{1,3}(?:\.\d+)?)%\s*$", re.MULTILINE)
OUTPUT_TAIL_CHARS = 1000


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def _metric_value(value: Any) -> MetricValue | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, dict):
        percent = value.get("percent")
        if isinstance(percent, (int, float)) and not isinstance(percent, bool):
            return percent
    return None


def parse_phase_output(stdout: str) -> tuple[dict[str, MetricValue], list[str]]:
    """Collect metrics and artifacts from JSON lines a phase command printed.

    A line may carry a ``metrics`` object and an ``artifacts`` list; any other
    numeric or boolean top-level key is read as a metric too. Later lines win.
    Without a JSON ``coverage`` metric, a coverage.py ``TOTAL ... NN%`` line is
    used.
    """
    metrics: dict[str, MetricValue] = {}
    artifacts: list[str] = []
    for payload in extract_json_objects(stdout):
        nested = payload.get("metrics")
        sources = [payload, nested] if isinstance(nested, dict) else [payload]
        for source in sources:
            for key, raw_value in source.items():
                if key in {"metrics", "artifacts"}:
                    continue
                value = _metric_value(raw_value)
                if value is not None:
                    metrics[str(key)] = value
        items = payload.get("artifacts")
        if isinstance(items, list):
            artifacts.extend(str(item) for item in items)

    if "coverage" not in metrics:
        matches = TOTAL_COVERAGE_PATTERN.findall(stdout)
        if matches:
            metrics["coverage"] = min(100.0, max(0.0, float(matches[-1])))
    return metrics, artifacts


class CommandExecutor(PhaseExecutor):
    """Runs one configured shell command per phase.

    The command sees ``PHASEGATE_TASK_ID``, ``PHASEGATE_PHASE`` and
    ``PHASEGATE_CONTEXT`` (JSON) in its environment. A non-zero exit or a
    timeout becomes a failed result; a missing executable is fatal.
    """

    def __init__(
        self,
        commands: dict[Phase, str],
        *,
        working_directory: Path | None = None,
        timeout_seconds: float = 600.0,
    ) -> None:
        self.commands = dict(commands)
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self._running: dict[str, asyncio.subprocess.Process] = {}

    @staticmethod
    def _tail(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").strip()[-OUTPUT_TAIL_CHARS:]

    async def _spawn(self, command: str, env: dict[str, str]) -> asyncio.subprocess.Process:
        cwd = str(self.working_directory) if self.working_directory else None
        if SHELL_REQUIRED_PATTERN.search(command):
            return await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        try:
            tokens = shlex.split(command)
        except ValueError:
            return await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        return await asyncio.create_subprocess_exec(
            *tokens,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def execute(self, task_id: str, phase: Phase, context: dict[str, Any]) -> PhaseResult:
        command = self.commands.get(phase, "").strip()
        if not command:
            logger.info("No command configured for phase %s; reporting empty success", phase)
            return PhaseResult(phase=phase, succeeded=True)

        env = os.environ.copy()
        env["PHASEGATE_TASK_ID"] = task_id
        env["PHASEGATE_PHASE"] = phase.value
        env["PHASEGATE_CONTEXT"] = json.dumps(context, ensure_ascii=False, default=str)

        try:
            process = await self._spawn(command, env)
        except (FileNotFoundError, PermissionError) as exc:
            return PhaseResult(
                phase=phase,
                succeeded=False,
                fatal=True,
                failure_reason=f"Phase command could not start: {exc}",
            )

        self._running[task_id] = process
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            return PhaseResult(
                phase=phase,
                succeeded=False,
                failure_reason=(
                    f"Phase command timed out after {self.timeout_seconds:.1f}s: {command}"
                ),
            )
        except asyncio.CancelledError:
            logger.info("Phase %s of task %s cancelled; killing its command", phase, task_id)
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            await asyncio.shield(process.wait())
            raise
        finally:
            self._running.pop(task_id, None)

        stdout_text = stdout.decode("utf-8", errors="replace")
        metrics, artifacts = parse_phase_output(stdout_text)
        if process.returncode != 0:
            detail = self._tail(stderr) or self._tail(stdout)
            return PhaseResult(
                phase=phase,
                succeeded=False,
                metrics=metrics,
                artifacts=artifacts,
                failure_reason=f"Phase command exited with code {process.returncode}: {detail}",
            )
        return PhaseResult(phase=phase, succeeded=True, metrics=metrics, artifacts=artifacts)

    def cancel(self, task_id: str) -> None:
        process = self._running.get(task_id)
        if process is None or process.returncode is not None:
            return
        logger.info("Sending stop signal to phase command of task %s", task_id)
        try:
            process.terminate()
        except ProcessLookupError:
            pass
