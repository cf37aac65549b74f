"""Exception taxonomy shared by the job pipeline and its collaborators.

Every error carries a short ``kind`` tag so callers (CLI, status endpoints) can
branch on the category without parsing messages.  The job record itself only
stores ``str(error)``.
"""

from __future__ import annotations


class CoverageBotError(RuntimeError):
    """Base class for all errors raised by the coverage bot."""

    kind = "error"
    retryable = False


class ConfigError(CoverageBotError):
    """Raised when configuration values cannot be parsed or validated."""

    kind = "config"


class NotFoundError(CoverageBotError):
    """Raised when a repository, coverage file, or job id does not resolve."""

    kind = "not-found"


class InvalidTransitionError(CoverageBotError):
    """Raised when a record is asked to move to a state it cannot reach."""

    kind = "invalid-transition"


class JobCancelledError(CoverageBotError):
    """Raised inside a pipeline once the stored job was cancelled externally."""

    kind = "cancelled"


class ExternalToolError(CoverageBotError):
    """Raised when a subprocess (clone, install, test run) fails."""

    kind = "external-tool"


class GitError(ExternalToolError):
    """Raised when a git command fails or the repository cannot be used."""

    kind = "git"


class GitHubApiError(ExternalToolError):
    """Raised when the GitHub REST API rejects a request."""

    kind = "github-api"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AgentError(ExternalToolError):
    """Raised when the code-generation agent cannot be run to completion."""

    kind = "agent"
    retryable = True


class AgentTimeoutError(AgentError):
    """Raised when the agent exceeds its wall-clock budget and is killed."""

    kind = "agent-timeout"


class TestValidationError(CoverageBotError):
    """Raised when the agent produced no usable test files."""

    __test__ = False
    kind = "validation"
    retryable = True


class ContainmentError(CoverageBotError):
    """Raised when a non-test change survives revert and delete."""

    kind = "containment"

    def __init__(self, message: str, *, paths: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.paths = paths


class CoverageParseError(CoverageBotError):
    """Raised when a coverage artifact exists but cannot be decoded."""

    kind = "coverage-parse"


__all__ = [
    "AgentError",
    "AgentTimeoutError",
    "ConfigError",
    "ContainmentError",
    "CoverageBotError",
    "CoverageParseError",
    "ExternalToolError",
    "GitError",
    "GitHubApiError",
    "InvalidTransitionError",
    "JobCancelledError",
    "NotFoundError",
    "TestValidationError",
]
