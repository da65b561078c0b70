import json
import re
import shlex
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from phasegate.cli import cli
from phasegate.config import load_config, save_config
from phasegate.models import Phase


def _python_command(code: str) -> str:
    return shlex.join([sys.executable, "-c", code])


def _set_phase_commands(config_path: Path) -> None:
    config = load_config(config_path)
    report = {
        "coverage": 96,
        "complexity": 2,
        "duplication": 0,
        "tests_passing": True,
        "code_review": True,
    }
    config.executor.implement_command = _python_command(
        f"import json\nprint(json.dumps({report!r}))"
    )
    config.executor.review_command = _python_command(
        f"import json\nprint(json.dumps({report!r}))"
    )
    save_config(config_path, config)


def _extract_task_id(output: str) -> str:
    match = re.search(r"Task: (task-[0-9a-f]{12})", output)
    assert match, output
    return match.group(1)


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_init_writes_config_and_state_dir(repo: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--mode", "full-auto"])

    assert result.exit_code == 0, result.output
    assert "Default mode: full-auto" in result.output
    assert load_config(repo / "phasegate.toml").workflow.default_mode == "full-auto"
    assert (repo / ".phasegate").is_dir()


def test_cli_manual_lifecycle(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    submit = runner.invoke(cli, ["submit", "Fix typo in README", "--start"])
    assert submit.exit_code == 0, submit.output
    assert "Level: L1" in submit.output
    assert "Plan: analyze -> implement -> review" in submit.output
    task_id = _extract_task_id(submit.output)

    analyze = runner.invoke(cli, ["advance", task_id, "--phase", "analyze"])
    assert analyze.exit_code == 0, analyze.output
    assert "Current phase: implement" in analyze.output

    failing = runner.invoke(
        cli,
        ["advance", task_id, "--phase", "implement", "--metric", "coverage=70%",
         "--metric", "complexity=3"],
    )
    assert failing.exit_code == 0, failing.output
    assert "Gate: failed" in failing.output
    assert "Unmet: coverage_minimum" in failing.output

    passing = runner.invoke(
        cli,
        ["advance", task_id, "--phase", "implement", "--metric", "coverage=92",
         "--metric", "complexity=3"],
    )
    assert "Gate: passed" in passing.output

    review = runner.invoke(
        cli, ["advance", task_id, "--phase", "review", "--metric", "tests_passing=true"]
    )
    assert review.exit_code == 0, review.output
    assert "Status: completed" in review.output

    status = runner.invoke(cli, ["status", task_id, "--events"])
    assert status.exit_code == 0
    payload = json.loads(status.output)
    assert payload["status"] == "completed"
    assert payload["archived"] is True
    assert [entry["phase"] for entry in payload["history"]] == ["analyze", "implement", "review"]
    assert payload["events"][-1]["event"] == "task_completed"

    listing = runner.invoke(cli, ["list"])
    assert task_id in listing.output


def test_cli_run_drives_configured_commands(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _set_phase_commands(repo / "phasegate.toml")

    submit = runner.invoke(cli, ["submit", "Add export option"])
    task_id = _extract_task_id(submit.output)
    run = runner.invoke(cli, ["run", task_id])

    assert run.exit_code == 0, run.output
    assert "Status: completed" in run.output
    assert "Phases run: 5/5" in run.output


def test_cli_maps_workflow_errors_to_click_errors(repo: Path) -> None:
    runner = CliRunner()

    missing = runner.invoke(cli, ["status", "task-000000000000"])
    assert missing.exit_code != 0
    assert "Task not found" in missing.output

    unclassifiable = runner.invoke(cli, ["submit", "Something vague"])
    assert unclassifiable.exit_code != 0
    assert "Cannot classify task" in unclassifiable.output

    bad_metric = runner.invoke(
        cli, ["advance", "task-000000000000", "--phase", "analyze", "--metric", "coverage"]
    )
    assert bad_metric.exit_code != 0
    assert "NAME=VALUE" in bad_metric.output


def test_cli_phase_mismatch_fails_task(repo: Path) -> None:
    runner = CliRunner()
    submit = runner.invoke(cli, ["submit", "Fix typo", "--start"])
    task_id = _extract_task_id(submit.output)

    mismatch = runner.invoke(cli, ["advance", task_id, "--phase", "review"])
    status = runner.invoke(cli, ["status", task_id])

    assert mismatch.exit_code != 0
    assert "awaits 'analyze'" in mismatch.output
    assert json.loads(status.output)["status"] == "failed"


def test_cli_force_mode_resume_replan_and_abort(repo: Path) -> None:
    runner = CliRunner()
    submit = runner.invoke(cli, ["submit", "Add export option", "--scope", "3"])
    task_id = _extract_task_id(submit.output)

    forced = runner.invoke(cli, ["force-mode", task_id, "focus", "--dimension", "testing"])
    assert forced.exit_code == 0, forced.output
    assert "focus:testing" in forced.output

    start = runner.invoke(cli, ["start", task_id])
    assert "Plan: analyze -> implement -> review" in start.output
    for _ in range(3):
        runner.invoke(cli, ["advance", task_id, "--phase", "analyze", "--failed"])
    blocked = json.loads(runner.invoke(cli, ["status", task_id]).output)
    assert blocked["status"] == "blocked"

    resumed = runner.invoke(cli, ["resume", task_id])
    assert resumed.exit_code == 0, resumed.output
    assert "Resumed" in resumed.output

    replanned = runner.invoke(cli, ["replan", task_id, "--level", "L3"])
    assert replanned.exit_code == 0, replanned.output
    assert "Level: L3" in replanned.output

    aborted = runner.invoke(cli, ["abort", task_id, "--reason", "superseded"])
    assert aborted.exit_code == 0
    assert "is failed" in aborted.output
    again = runner.invoke(cli, ["abort", task_id, "--reason", "twice"])
    assert again.exit_code == 0


def test_plan_and_gates_commands() -> None:
    runner = CliRunner()

    plan = runner.invoke(cli, ["plan", "--level", "L3", "--mode", "full-auto", "--no-design"])
    assert plan.exit_code == 0
    assert plan.output.strip() == "analyze -> plan -> implement -> review -> archive"

    focus = runner.invoke(cli, ["plan", "--level", "L4", "--mode", "focus"])
    assert focus.exit_code != 0

    gates = runner.invoke(cli, ["gates", "--level", "L1"])
    table = json.loads(gates.output)
    assert table["L1"][Phase.IMPLEMENT.value]["coverage_minimum"] == 90
    assert table["L1"][Phase.IMPLEMENT.value]["coverage_scope"] == "changed_lines"

    focus_gates = json.loads(runner.invoke(cli, ["gates", "--dimension", "testing"]).output)
    assert focus_gates["focus:testing"]["review"]["extra_requirements"] == ["test_independence"]
