"""Keep only test-file changes in a workspace after the agent has run.

The agent is untrusted: it may edit sources, configs or anything else in the
checkout.  :func:`contain_changes` reverts (or deletes) every changed path that
is not a test file and refuses to continue if one survives.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Protocol

from ..errors import ContainmentError, TestValidationError

LOGGER = logging.getLogger(__name__)

_TEST_FILE_RE = re.compile(r"\.(?:test|spec)\.[cm]?[jt]sx?$")
_DECLARATION_RE = re.compile(r"\b(?:describe|it|test)\s*\(")
_ASSERTION_RE = re.compile(r"\bexpect\s*\(")


class ChangeTracker(Protocol):
    """The slice of :class:`~covbot.tools.vcs.GitRepository` the guard needs."""

    root: Path

    def changed_files(self) -> List[str]: ...

    def restore(self, path: str) -> bool: ...

    def delete(self, path: str) -> bool: ...


def is_test_file(path: str) -> bool:
    """``*.test.ts`` / ``*.spec.js`` and friends."""

    return bool(_TEST_FILE_RE.search(path))


def has_test_constructs(content: str) -> bool:
    """True when ``content`` declares a test and asserts something."""

    return bool(_DECLARATION_RE.search(content)) and bool(_ASSERTION_RE.search(content))


@dataclass(slots=True)
class ContainmentResult:
    allowed: List[str] = field(default_factory=list)
    reverted: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def removed(self) -> List[str]:
        return [*self.reverted, *self.deleted]


def contain_changes(repo: ChangeTracker, *, baseline: Iterable[str] = ()) -> ContainmentResult:
    """Revert or delete every non-test change and return the surviving test files.

    Paths in ``baseline`` were already dirty before the agent ran (installed
    dependencies, coverage artifacts) and are left alone.  Raises
    :class:`ContainmentError` when a non-test path is still changed after both
    remediation attempts.
    """

    ignored = frozenset(baseline)
    result = ContainmentResult()
    for path in repo.changed_files():
        if path in ignored or is_test_file(path):
            continue
        if repo.restore(path) and path not in repo.changed_files():
            LOGGER.warning("Reverted non-test change to %s", path)
            result.reverted.append(path)
            continue
        if repo.delete(path):
            LOGGER.warning("Deleted non-test file %s", path)
            result.deleted.append(path)

    remaining = [path for path in repo.changed_files() if path not in ignored]
    violations = tuple(path for path in remaining if not is_test_file(path))
    if violations:
        raise ContainmentError(
            f"Agent modified non-test files that could not be reverted: {', '.join(violations)}",
            paths=violations,
        )
    result.allowed = [path for path in remaining if is_test_file(path)]
    return result


def discard_changes(repo: ChangeTracker, paths: Iterable[str]) -> List[str]:
    """Drop rejected changes: restore tracked paths, delete new ones."""

    discarded: List[str] = []
    for path in paths:
        if repo.restore(path) or repo.delete(path):
            discarded.append(path)
        else:
            LOGGER.warning("Could not discard rejected change to %s", path)
    if discarded:
        LOGGER.info("Discarded %d rejected test file(s)", len(discarded))
    return discarded


def validate_test_files(root: Path, paths: Iterable[str]) -> List[str]:
    """Require at least one test file, each with a declaration and an assertion."""

    test_paths = [path for path in paths if is_test_file(path)]
    if not test_paths:
        raise TestValidationError("Agent produced no tests")

    invalid: List[str] = []
    for path in test_paths:
        target = root / path
        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.debug("Unreadable test file %s: %s", target, error)
            invalid.append(path)
            continue
        if not has_test_constructs(content):
            invalid.append(path)
    if invalid:
        raise TestValidationError(
            f"Test files lack a test declaration or assertion: {', '.join(invalid)}"
        )
    return test_paths


__all__ = [
    "ChangeTracker",
    "ContainmentResult",
    "contain_changes",
    "discard_changes",
    "has_test_constructs",
    "is_test_file",
    "validate_test_files",
]
