"""One coverage run: execute tests, find the artifact, normalise the report."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..tools.runner import CommandRunner, PackageManager
from .parsers import parse_istanbul_json, parse_lcov
from .report import CoverageReport

LOGGER = logging.getLogger(__name__)

ISTANBUL_ARTIFACT = Path("coverage") / "coverage-final.json"
LCOV_ARTIFACT = Path("coverage") / "lcov.info"


class CoverageCycle:
    """Run the project's coverage command and read back what it wrote."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def run(
        self,
        checkout: Path,
        project_dir: Path,
        manager: PackageManager,
        has_test_script: bool,
    ) -> CoverageReport:
        for artifact in (ISTANBUL_ARTIFACT, LCOV_ARTIFACT):
            (project_dir / artifact).unlink(missing_ok=True)
        self.runner.run_tests_with_coverage(project_dir, manager, has_test_script)
        return self.read(checkout, project_dir)

    def read(self, checkout: Path, project_dir: Path) -> CoverageReport:
        """Parse the first artifact present; neither present means an empty report."""

        istanbul = project_dir / ISTANBUL_ARTIFACT
        lcov = project_dir / LCOV_ARTIFACT
        if istanbul.is_file():
            report = parse_istanbul_json(istanbul, base_path=checkout)
        elif lcov.is_file():
            report = parse_lcov(lcov, base_path=checkout)
        else:
            LOGGER.info("No coverage artifact found under %s", project_dir)
            return CoverageReport.empty()

        prefix = _subdirectory(checkout, project_dir)
        if prefix:
            for entry in report.files:
                entry.path = _anchor(entry.path, checkout, project_dir, prefix)
        LOGGER.info(
            "Parsed coverage for %d files (%.2f%% overall)", len(report.files), report.total_coverage
        )
        return report


def _subdirectory(checkout: Path, project_dir: Path) -> Optional[str]:
    relative = project_dir.resolve().relative_to(checkout.resolve()).as_posix()
    return None if relative in ("", ".") else relative


def _anchor(path: str, checkout: Path, project_dir: Path, prefix: str) -> str:
    # Runners report paths relative to the project directory; records are
    # keyed relative to the checkout root.
    if path.startswith("/") or path.startswith(f"{prefix}/"):
        return path
    if not (checkout / path).exists() and (project_dir / path).exists():
        return f"{prefix}/{path}"
    return path


__all__ = ["CoverageCycle", "ISTANBUL_ARTIFACT", "LCOV_ARTIFACT"]
