"""Coverage model, artifact parsers and the test-run cycle."""

from .cycle import CoverageCycle
from .parsers import parse_istanbul_json, parse_lcov
from .report import CoverageReport, FileCoverage

__all__ = ["CoverageCycle", "CoverageReport", "FileCoverage", "parse_istanbul_json", "parse_lcov"]
