"""External collaborators: git, GitHub, package managers, workspace guards."""

from .containment import ContainmentResult, contain_changes, is_test_file, validate_test_files
from .github import GitHubClient, PullRequest
from .project import ProjectDirectory, enumerate_source_files, find_project_directory
from .runner import CommandResult, CommandRunner, PackageManager
from .vcs import GitRepository, cleanup, generate_branch_name, workspace_for

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ContainmentResult",
    "GitHubClient",
    "GitRepository",
    "PackageManager",
    "ProjectDirectory",
    "PullRequest",
    "cleanup",
    "contain_changes",
    "enumerate_source_files",
    "find_project_directory",
    "generate_branch_name",
    "is_test_file",
    "validate_test_files",
    "workspace_for",
]
