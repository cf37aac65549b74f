"""Readers for the coverage artifacts produced by JavaScript test runners.

Istanbul ``coverage-final.json`` structure (Jest, Vitest, NYC)::

    {
      "/abs/path/file.ts": {
        "statementMap": {"0": {"start": {"line": 1}, "end": {"line": 2}}, ...},
        "s": {"0": 1, ...}
      }
    }

LCOV ``lcov.info`` is line oriented: ``SF:<path>``, ``DA:<line>,<hits>``,
``end_of_record``.
"""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath
from typing import Dict

from ..errors import CoverageParseError
from .report import CoverageReport, FileCoverage


def _relative_path(raw: str, base_path: Path | None) -> str:
    normalised = raw.replace("\\", "/")
    if base_path is not None:
        candidate = PurePosixPath(normalised)
        base = PurePosixPath(base_path.resolve().as_posix())
        if candidate.is_absolute():
            try:
                return candidate.relative_to(base).as_posix()
            except ValueError:
                pass
    while normalised.startswith("./"):
        normalised = normalised[2:]
    return normalised


def parse_istanbul_json(path: Path, *, base_path: Path | None = None) -> CoverageReport:
    """Parse an Istanbul JSON map into a :class:`CoverageReport`."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as error:
        raise CoverageParseError(f"Failed to parse Istanbul JSON {path}: {error}") from error

    if not isinstance(data, dict):
        raise CoverageParseError(f"Istanbul JSON {path} is not an object")

    files: list[FileCoverage] = []
    for file_path, file_data in data.items():
        if not isinstance(file_data, dict):
            continue
        hits: Dict[int, int] = {}
        statement_map = file_data.get("statementMap") or {}
        statement_hits = file_data.get("s") or {}
        for statement_id, info in statement_map.items():
            start_line = int((info.get("start") or {}).get("line", 0) or 0)
            count = int(statement_hits.get(statement_id, 0) or 0)
            # Multi-line statements count on their first line only.
            if start_line <= 0:
                continue
            hits[start_line] = max(hits.get(start_line, 0), count)
        relative = _relative_path(str(file_data.get("path") or file_path), base_path)
        files.append(FileCoverage.from_line_hits(relative, hits))

    return CoverageReport.from_files(files)


def parse_lcov(path: Path, *, base_path: Path | None = None) -> CoverageReport:
    """Parse an LCOV tracefile into a :class:`CoverageReport`."""

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise CoverageParseError(f"Failed to read LCOV file {path}: {error}") from error

    files: list[FileCoverage] = []
    current_path: str | None = None
    hits: Dict[int, int] = {}

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("SF:"):
            current_path = _relative_path(line[3:], base_path)
            hits = {}
        elif line.startswith("DA:") and current_path is not None:
            parts = line[3:].split(",")
            if len(parts) < 2:
                continue
            try:
                line_number = int(parts[0])
                count = 0 if parts[1] == "-" else int(parts[1])
            except ValueError:
                continue
            hits[line_number] = max(hits.get(line_number, 0), count)
        elif line == "end_of_record" and current_path is not None:
            files.append(FileCoverage.from_line_hits(current_path, hits))
            current_path = None
            hits = {}

    if current_path is not None:
        files.append(FileCoverage.from_line_hits(current_path, hits))

    return CoverageReport.from_files(files)


__all__ = ["parse_istanbul_json", "parse_lcov"]
