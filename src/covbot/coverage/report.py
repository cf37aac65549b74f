"""Normalised coverage report shared by every coverage format.

Whatever the test runner emits (Istanbul JSON, LCOV), parsers reduce it to a
list of :class:`FileCoverage` rows keyed by checkout-relative path.  Aggregate
coverage is always recomputed from line counts, never averaged from
percentages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, List, Optional


def percentage_of(covered: int, total: int) -> float:
    """Return ``covered / total`` as a percentage with one decimal."""

    if total <= 0:
        return 0.0
    return round(covered / total * 100, 1)


@dataclass(slots=True)
class FileCoverage:
    """Coverage for a single source file."""

    path: str
    lines_covered: int
    lines_total: int
    percentage: float
    uncovered_lines: List[int] = field(default_factory=list)

    @classmethod
    def from_line_hits(cls, path: str, hits: dict[int, int]) -> "FileCoverage":
        """Build a row from a ``line -> hit count`` map."""

        covered = sum(1 for count in hits.values() if count > 0)
        uncovered = sorted(line for line, count in hits.items() if count == 0)
        return cls(
            path=path,
            lines_covered=covered,
            lines_total=len(hits),
            percentage=percentage_of(covered, len(hits)) if hits else 100.0,
            uncovered_lines=uncovered,
        )

    @classmethod
    def untested(cls, path: str) -> "FileCoverage":
        """Placeholder for a source file the coverage run never loaded."""

        return cls(path=path, lines_covered=0, lines_total=1, percentage=0.0, uncovered_lines=[1])

    @property
    def basename(self) -> str:
        return PurePosixPath(self.path).name


@dataclass(slots=True)
class CoverageReport:
    """All files from one coverage run plus their aggregate percentage."""

    files: List[FileCoverage] = field(default_factory=list)
    total_coverage: float = 0.0

    @classmethod
    def empty(cls) -> "CoverageReport":
        return cls(files=[], total_coverage=0.0)

    @classmethod
    def from_files(cls, files: Iterable[FileCoverage]) -> "CoverageReport":
        report = cls(files=list(files))
        report.recompute_total()
        return report

    @property
    def paths(self) -> set[str]:
        return {entry.path for entry in self.files}

    def recompute_total(self) -> float:
        """Aggregate as covered lines over total lines across all files."""

        covered = sum(entry.lines_covered for entry in self.files)
        total = sum(entry.lines_total for entry in self.files)
        self.total_coverage = round(covered / total * 100, 2) if total > 0 else 0.0
        return self.total_coverage

    def add_missing(self, source_paths: Iterable[str]) -> int:
        """Add a 0% row for every source path absent from the report."""

        known = self.paths
        added = 0
        for path in source_paths:
            if path in known:
                continue
            self.files.append(FileCoverage.untested(path))
            known.add(path)
            added += 1
        return added

    def sort_ascending(self) -> None:
        self.files.sort(key=lambda entry: (entry.percentage, entry.path))

    def match(self, path: str) -> Optional[FileCoverage]:
        """Find the row for ``path``: exact path, then parent+basename, then basename.

        Coverage tools report paths relative to the project directory (or as
        absolute paths) while records are relative to the checkout root, so an
        exact match is not always possible.
        """

        for entry in self.files:
            if entry.path == path:
                return entry

        target = PurePosixPath(path)
        parent = target.parent.name
        if parent:
            for entry in self.files:
                candidate = PurePosixPath(entry.path)
                if candidate.name == target.name and candidate.parent.name == parent:
                    return entry

        for entry in self.files:
            if entry.basename == target.name:
                return entry
        return None


__all__ = ["CoverageReport", "FileCoverage", "percentage_of"]
