from __future__ import annotations

import re
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from covbot.cli import app
from covbot.storage import CoverageFile, CoverageStore

URL = "https://github.com/acme/widgets"

runner = CliRunner()


@pytest.fixture()
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("DATABASE_PATH", "WORKSPACE_ROOT", "ENABLE_JOB_PROCESSOR", "AI_PROVIDER", "COVERAGE_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "coverage-bot.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "paths": {"database": "state/coverage.sqlite", "workspaces": "workspaces"},
                "scheduler": {"enabled": False},
            }
        ),
        encoding="utf-8",
    )
    return path


def _invoke(config_file: Path, *args: str):
    return runner.invoke(app, ["--config", str(config_file), *args])


def _queued_id(output: str) -> str:
    match = re.search(r"Queued \w+ job ([0-9a-f]+)", output)
    assert match, output
    return match.group(1)


def test_analyze_then_status_and_jobs(config_file: Path) -> None:
    result = _invoke(config_file, "analyze", URL)
    assert result.exit_code == 0, result.output
    job_id = _queued_id(result.output)
    assert (config_file.parent / "state" / "coverage.sqlite").exists()

    again = _invoke(config_file, "analyze", URL)
    assert "already queued" in again.output

    status = _invoke(config_file, "status", job_id)
    assert status.exit_code == 0
    assert f"Job {job_id} [analysis] pending 0%" in status.output

    listing = _invoke(config_file, "jobs")
    assert job_id in listing.output


def test_cancel_and_cancel_again(config_file: Path) -> None:
    job_id = _queued_id(_invoke(config_file, "analyze", URL).output)

    assert _invoke(config_file, "cancel", job_id).exit_code == 0
    status = _invoke(config_file, "status", job_id)
    assert "failed" in status.output
    assert "Cancelled by user" in status.output

    assert _invoke(config_file, "cancel", job_id).exit_code == 1
    assert "No eligible jobs." in _invoke(config_file, "run-next").output


def test_coverage_and_improve(config_file: Path) -> None:
    analyze = _invoke(config_file, "analyze", URL)
    repo_id = re.search(r"Repository: (\w+)", analyze.output).group(1)

    empty = _invoke(config_file, "coverage", repo_id)
    assert "acme/widgets (main) last analysed: never" in empty.output
    assert "No coverage data." in empty.output

    with CoverageStore(config_file.parent / "state" / "coverage.sqlite") as store:
        store.replace_coverage_files(
            repo_id,
            [
                CoverageFile(repository_id=repo_id, path="src/low.ts", coverage_percentage=12.5),
                CoverageFile(repository_id=repo_id, path="src/high.ts", coverage_percentage=95),
            ],
        )

    listed = _invoke(config_file, "coverage", repo_id, "--below", "50")
    assert "src/low.ts" in listed.output
    assert "src/high.ts" not in listed.output

    assert _invoke(config_file, "improve", repo_id).exit_code == 1

    improve = _invoke(config_file, "improve", repo_id, "--all-below", "50", "--provider", "openai")
    assert improve.exit_code == 0, improve.output
    assert "Provider: openai" in improve.output
    assert "- src/low.ts" in improve.output


def test_unknown_job_is_an_error(config_file: Path) -> None:
    result = _invoke(config_file, "status", "missing")
    assert result.exit_code == 1


def test_worker_refuses_when_processor_disabled(config_file: Path) -> None:
    result = _invoke(config_file, "worker")
    assert result.exit_code == 1


def test_missing_config_file_is_reported(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "jobs"])
    assert result.exit_code == 1


def test_providers_lists_both(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr("covbot.agents.base.shutil.which", lambda name: None)

    result = _invoke(config_file, "providers")

    assert result.exit_code == 0
    assert "claude: available (default)" in result.output
    assert "openai: unavailable" in result.output
