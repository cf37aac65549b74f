from __future__ import annotations

import json
import textwrap
from pathlib import Path
from typing import List

import pytest

from covbot.coverage import CoverageCycle, CoverageReport, FileCoverage, parse_istanbul_json, parse_lcov
from covbot.errors import CoverageParseError
from covbot.tools.runner import CommandResult, CommandRunner

from conftest import write_istanbul


def _row(path: str, covered: int, total: int) -> FileCoverage:
    return FileCoverage(path=path, lines_covered=covered, lines_total=total, percentage=round(covered / total * 100, 1))


def test_aggregate_uses_line_counts_not_mean_of_percentages() -> None:
    report = CoverageReport.from_files([_row("src/a.ts", 8, 10), _row("src/b.ts", 0, 5)])

    assert report.total_coverage == pytest.approx(53.33, abs=0.01)


def test_missing_source_files_are_recorded_at_zero() -> None:
    report = CoverageReport.from_files([_row("src/a.ts", 8, 10), _row("src/b.ts", 2, 4)])

    added = report.add_missing(["src/a.ts", "src/b.ts", "src/c.ts"])
    report.sort_ascending()

    assert added == 1
    missing = report.match("src/c.ts")
    assert missing is not None
    assert missing.percentage == 0
    assert missing.uncovered_lines == [1]
    assert [entry.path for entry in report.files] == ["src/c.ts", "src/b.ts", "src/a.ts"]


def test_match_prefers_exact_path_then_basename() -> None:
    report = CoverageReport.from_files(
        [_row("lib/button.ts", 1, 2), _row("src/button.ts", 2, 2), _row("lib/other.ts", 1, 1)]
    )

    assert report.match("src/button.ts").percentage == 100.0
    assert report.match("app/src/button.ts").path == "src/button.ts"
    assert report.match("deep/nested/other.ts").path == "lib/other.ts"
    assert report.match("src/unknown.ts") is None


def test_parse_istanbul_relative_to_checkout(tmp_path: Path) -> None:
    artifact = write_istanbul(tmp_path, {"src/a.ts": (3, 4), "src/b.ts": (0, 2)})

    report = parse_istanbul_json(artifact, base_path=tmp_path)

    a = report.match("src/a.ts")
    assert a.path == "src/a.ts"
    assert (a.lines_covered, a.lines_total, a.percentage) == (3, 4, 75.0)
    assert a.uncovered_lines == [4]
    assert report.match("src/b.ts").uncovered_lines == [1, 2]
    assert report.total_coverage == 50.0


def test_parse_istanbul_merges_statements_on_same_line(tmp_path: Path) -> None:
    artifact = tmp_path / "coverage-final.json"
    artifact.write_text(
        json.dumps(
            {
                "src/a.ts": {
                    "statementMap": {
                        "0": {"start": {"line": 1}, "end": {"line": 1}},
                        "1": {"start": {"line": 1}, "end": {"line": 1}},
                        "2": {"start": {"line": 2}, "end": {"line": 4}},
                    },
                    "s": {"0": 0, "1": 3, "2": 0},
                }
            }
        ),
        encoding="utf-8",
    )

    entry = parse_istanbul_json(artifact).files[0]

    assert (entry.lines_covered, entry.lines_total) == (1, 2)
    assert entry.uncovered_lines == [2]


def test_parse_istanbul_rejects_garbage(tmp_path: Path) -> None:
    artifact = tmp_path / "coverage-final.json"
    artifact.write_text("{not json", encoding="utf-8")
    with pytest.raises(CoverageParseError):
        parse_istanbul_json(artifact)


def test_parse_lcov(tmp_path: Path) -> None:
    artifact = tmp_path / "lcov.info"
    artifact.write_text(
        textwrap.dedent(
            f"""
            TN:
            SF:{tmp_path.resolve() / 'src' / 'a.ts'}
            DA:1,1
            DA:2,0
            DA:3,5
            LF:3
            LH:2
            end_of_record
            SF:src/b.ts
            DA:10,0
            end_of_record
            """
        ).lstrip(),
        encoding="utf-8",
    )

    report = parse_lcov(artifact, base_path=tmp_path)

    a = report.match("src/a.ts")
    assert a.path == "src/a.ts"
    assert a.percentage == pytest.approx(66.7)
    assert a.uncovered_lines == [2]
    assert report.match("src/b.ts").uncovered_lines == [10]
    assert report.total_coverage == 50.0


class _ArtifactRunner(CommandRunner):
    def __init__(self, writer) -> None:
        super().__init__()
        self.writer = writer
        self.calls: List[Path] = []

    def run_tests_with_coverage(self, project_dir: Path, manager, has_test_script: bool) -> CommandResult:
        self.calls.append(project_dir)
        self.writer(project_dir)
        return CommandResult(command=["npm", "test"], cwd=project_dir, exit_code=1, stdout="", stderr="")


def test_cycle_without_artifacts_yields_empty_report(tmp_path: Path) -> None:
    cycle = CoverageCycle(_ArtifactRunner(lambda project_dir: None))

    report = cycle.run(tmp_path, tmp_path, "npm", True)

    assert report.files == []
    assert report.total_coverage == 0.0


def test_cycle_anchors_subproject_paths_to_checkout(tmp_path: Path) -> None:
    project_dir = tmp_path / "frontend"
    (project_dir / "src").mkdir(parents=True)
    (project_dir / "src" / "view.ts").write_text("export {};\n", encoding="utf-8")

    def write_lcov(directory: Path) -> None:
        target = directory / "coverage" / "lcov.info"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("SF:src/view.ts\nDA:1,1\nDA:2,0\nend_of_record\n", encoding="utf-8")

    runner = _ArtifactRunner(write_lcov)
    report = CoverageCycle(runner).run(tmp_path, project_dir, "npm", True)

    assert runner.calls == [project_dir]
    assert [entry.path for entry in report.files] == ["frontend/src/view.ts"]


def test_cycle_discards_stale_artifacts_before_running(tmp_path: Path) -> None:
    write_istanbul(tmp_path, {"src/stale.ts": (1, 1)})

    report = CoverageCycle(_ArtifactRunner(lambda project_dir: None)).run(tmp_path, tmp_path, "npm", True)

    assert report.files == []
