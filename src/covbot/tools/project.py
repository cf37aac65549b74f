"""Locate the testable project inside a checkout and enumerate its sources."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

LOGGER = logging.getLogger(__name__)

MANIFEST = "package.json"
CONVENTIONAL_SUBDIRS = ("ui", "frontend", "web", "client", "app", "backend", "server", "api", "src")
SKIP_DIRECTORIES = frozenset(
    {"node_modules", ".git", "dist", "build", "coverage", ".next", ".nuxt", "__mocks__"}
)
SOURCE_SUFFIX = ".ts"
_NON_SOURCE_SUFFIXES = (".test.ts", ".spec.ts", ".d.ts")


@dataclass(slots=True, frozen=True)
class ProjectDirectory:
    """A directory holding a manifest, and whether it declares a test script."""

    path: Path
    has_test_script: bool

    def relative_to(self, root: Path) -> Optional[str]:
        """``None`` for the checkout root, else the posix subdirectory path."""

        relative = self.path.resolve().relative_to(root.resolve()).as_posix()
        return None if relative in ("", ".") else relative


def _declares_test_script(manifest: Path) -> bool:
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        LOGGER.debug("Ignoring unreadable manifest %s: %s", manifest, error)
        return False
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return isinstance(scripts, dict) and bool(scripts.get("test"))


def find_project_directory(checkout: Path) -> Optional[ProjectDirectory]:
    """Search the root, then conventional subdirectories, for a manifest.

    A directory whose manifest declares a ``test`` script always wins over
    one that merely has a manifest.
    """

    candidates = [checkout, *(checkout / name for name in CONVENTIONAL_SUBDIRS)]
    for directory in candidates:
        manifest = directory / MANIFEST
        if manifest.is_file() and _declares_test_script(manifest):
            return ProjectDirectory(directory, True)

    for directory in candidates[1:]:
        if (directory / MANIFEST).is_file():
            return ProjectDirectory(directory, False)
    if (checkout / MANIFEST).is_file():
        return ProjectDirectory(checkout, False)
    return None


def describe_project(directory: Path) -> Optional[ProjectDirectory]:
    """Describe a known project directory, or ``None`` when it has no manifest."""

    manifest = directory / MANIFEST
    if not manifest.is_file():
        return None
    return ProjectDirectory(directory, _declares_test_script(manifest))


def is_source_file(name: str) -> bool:
    return name.endswith(SOURCE_SUFFIX) and not name.endswith(_NON_SOURCE_SUFFIXES)


def enumerate_source_files(checkout: Path) -> List[str]:
    """Every source file under ``checkout`` as a sorted posix relative path."""

    found: List[str] = []
    for current, directories, files in os.walk(checkout):
        directories[:] = sorted(name for name in directories if name not in SKIP_DIRECTORIES)
        base = Path(current)
        for name in files:
            if is_source_file(name):
                found.append((base / name).relative_to(checkout).as_posix())
    return sorted(found)


__all__ = [
    "CONVENTIONAL_SUBDIRS",
    "ProjectDirectory",
    "describe_project",
    "enumerate_source_files",
    "find_project_directory",
    "is_source_file",
]
