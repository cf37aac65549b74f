"""Job orchestration: pick the next eligible job and drive it to a terminal state.

Two pipelines share one engine:

* analysis: clone, run coverage, record per-file coverage for the repository;
* improvement: clone, let an agent write tests for 1..N files, contain and
  validate what it wrote, re-measure, commit, push and open a pull request.

Every checkpoint persists the job and reports progress.  Any error inside a
pipeline becomes ``job.fail(message)``; nothing escapes to the scheduler.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Sequence

from .agents import AgentTarget, CodeAgent, get_agent
from .config import Settings
from .coverage.cycle import CoverageCycle
from .coverage.report import CoverageReport, FileCoverage
from .errors import (
    CoverageBotError,
    ExternalToolError,
    JobCancelledError,
    NotFoundError,
    TestValidationError,
)
from .storage.schema import (
    AiProvider,
    AnalysisJob,
    CoverageFile,
    CoverageFileStatus,
    ImprovementJob,
    JobStatus,
    JobType,
    Repository,
)
from .storage.store import AnyJob, CoverageStore
from .tools.containment import contain_changes, discard_changes, validate_test_files
from .tools.github import GitHubClient
from .tools.project import ProjectDirectory, describe_project, enumerate_source_files, find_project_directory
from .tools.runner import CommandRunner
from .tools.vcs import GitRepository, cleanup, generate_branch_name, workspace_for
from .utils.slug import branch_seed

LOGGER = logging.getLogger(__name__)

ProgressSink = Callable[[str, int, str], None]
CloneFn = Callable[..., GitRepository]
AgentFactory = Callable[[AiProvider], CodeAgent]

# Progress window reserved for agent attempts in improvement jobs.
_ATTEMPT_PROGRESS_START = 30
_ATTEMPT_PROGRESS_SPAN = 40


@dataclass(slots=True)
class AttemptOutcome:
    """What the bounded retry loop left behind."""

    attempts: int = 0
    test_paths: List[str] = field(default_factory=list)
    coverage: Dict[str, FileCoverage] = field(default_factory=dict)
    last_error: Optional[CoverageBotError] = None


class JobOrchestrator:
    """Coordinator that claims pending jobs and runs their pipelines."""

    def __init__(
        self,
        store: CoverageStore,
        settings: Settings,
        *,
        runner: CommandRunner | None = None,
        cycle: CoverageCycle | None = None,
        github: GitHubClient | None = None,
        agent_factory: AgentFactory | None = None,
        clone: CloneFn | None = None,
        progress_sink: ProgressSink | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.runner = runner or CommandRunner(timeout=settings.command_timeout_s)
        self.cycle = cycle or CoverageCycle(self.runner)
        self.github = github or GitHubClient(settings.github_token, api_url=settings.github_api_url)
        self.agent_factory = agent_factory or self._default_agent
        self.clone = clone or GitRepository.clone
        self.progress_sink = progress_sink
        self._claim_lock = threading.Lock()
        # Jobs executing in this process, kept until their pipeline unwinds even
        # if the stored record was already cancelled.
        self._executing: Dict[str, AnyJob] = {}

    def _default_agent(self, provider: AiProvider) -> CodeAgent:
        return get_agent(provider, timeout=self.settings.ai_timeout_s)

    # ------------------------------------------------------------ scheduling
    def process_next_job(self) -> Optional[AnyJob]:
        """Claim the oldest eligible pending job and run it to completion.

        Returns the job's final stored state, or ``None`` when nothing was
        eligible (in which case nothing was touched).
        """

        job = self.claim_next_job()
        if job is None:
            return None
        return self.execute_job(job)

    def claim_next_job(self) -> Optional[AnyJob]:
        """Atomically pick an eligible pending job and move it to running."""

        with self._claim_lock:
            for job in self.store.list_pending_jobs():
                if not self._is_eligible(job):
                    continue
                job.start()
                self.store.save_job(job)
                self._executing[job.id] = job
                LOGGER.info("Claimed %s job %s for repository %s", job.type, job.id, job.repository_id)
                return job
        return None

    def _is_eligible(self, job: AnyJob) -> bool:
        if isinstance(job, AnalysisJob):
            busy = self.store.list_running_jobs(JobType.ANALYSIS)
            local = [item for item in self._executing.values() if isinstance(item, AnalysisJob)]
        else:
            busy = self.store.list_running_jobs(JobType.IMPROVEMENT, repository_id=job.repository_id)
            local = [
                item
                for item in self._executing.values()
                if isinstance(item, ImprovementJob) and item.repository_id == job.repository_id
            ]
        return not busy and not local

    def execute_job(self, job: AnyJob) -> AnyJob:
        """Run the pipeline for an already-claimed (running) job."""

        with self._claim_lock:
            self._executing.setdefault(job.id, job)
        try:
            if isinstance(job, AnalysisJob):
                self._run_analysis(job)
            else:
                self._run_improvement(job)
        finally:
            with self._claim_lock:
                self._executing.pop(job.id, None)
        return self.store.get_job(job.id) or job

    # ------------------------------------------------------------- progress
    def _emit(self, job_id: str, progress: int, message: str) -> None:
        LOGGER.info("[job %s] %d%% - %s", job_id, progress, message)
        if self.progress_sink is None:
            return
        try:
            self.progress_sink(job_id, progress, message)
        except Exception:
            LOGGER.warning("Progress sink raised for job %s", job_id, exc_info=True)

    def _ensure_not_cancelled(self, job: AnyJob) -> None:
        status = self.store.get_job_status(job.id)
        if status is None:
            raise JobCancelledError(f"Job {job.id} was deleted")
        if status != JobStatus.RUNNING:
            raise JobCancelledError(f"Job {job.id} is {status.value}; stopping")

    def _persist(self, job: AnyJob) -> None:
        """Write ``job`` unless the stored record left ``running`` meanwhile."""

        if not self.store.update_running_job(job):
            self._ensure_not_cancelled(job)
            raise JobCancelledError(f"Job {job.id} is no longer running; stopping")

    def _checkpoint(self, job: AnyJob, progress: int, message: str) -> None:
        value = max(progress, job.progress)
        job.update_progress(value)
        self._persist(job)
        self._emit(job.id, value, message)

    def _finish(self, job: AnyJob, message: str) -> None:
        self._persist(job)
        self._emit(job.id, job.progress, message)

    def _fail(self, job: AnyJob, error: BaseException) -> None:
        message = str(error) or error.__class__.__name__
        if isinstance(error, JobCancelledError):
            LOGGER.info("Job %s stopped: %s", job.id, message)
            return
        LOGGER.error("Job %s failed: %s", job.id, message, exc_info=not isinstance(error, CoverageBotError))
        if job.status.is_terminal:
            job = self.store.get_job(job.id) or job
        if job.status.is_terminal:
            LOGGER.info("Job %s already %s; leaving stored record untouched", job.id, job.status.value)
            return
        job.fail(message)
        if not self.store.update_running_job(job):
            LOGGER.info("Job %s was stopped elsewhere; leaving stored record untouched", job.id)
            return
        self._emit(job.id, job.progress, f"Failed: {message}")

    # ------------------------------------------------------------- analysis
    def _run_analysis(self, job: AnalysisJob) -> None:
        workspace = workspace_for(self.settings.workspace_root, job.id)
        try:
            self._checkpoint(job, 5, "Resolving repository")
            repository = self._resolve_repository(job)

            self._checkpoint(job, 10, f"Cloning {repository.full_name} ({job.branch})")
            cleanup(workspace)
            self.clone(
                repository.url,
                workspace,
                branch=job.branch,
                token=self.settings.github_token,
                timeout=self.settings.command_timeout_s,
            )

            self._checkpoint(job, 20, "Locating project directory")
            project = find_project_directory(workspace)
            report = self._measure_checkout(job, workspace, project)

            self._checkpoint(job, 75, "Enumerating source files")
            added = report.add_missing(enumerate_source_files(workspace))
            if added:
                LOGGER.info("Recorded %d source files without coverage data at 0%%", added)
            report.recompute_total()
            report.sort_ascending()

            project_dir = project.relative_to(workspace) if project else None
            records = [
                CoverageFile(
                    repository_id=repository.id,
                    path=entry.path,
                    coverage_percentage=entry.percentage,
                    uncovered_lines=entry.uncovered_lines,
                    project_dir=project_dir,
                )
                for entry in report.files
            ]

            self._checkpoint(job, 90, f"Saving coverage for {len(records)} files")
            self.store.replace_coverage_files(repository.id, records)
            repository.mark_analyzed()
            self.store.save_repository(repository)

            threshold = self.settings.coverage_threshold
            below = sum(1 for record in records if record.coverage_percentage < threshold)
            job.complete_analysis(len(records), below)
            self._finish(
                job,
                f"Analysis complete: {len(records)} files, {below} below {threshold:g}% "
                f"({report.total_coverage:.2f}% overall)",
            )
        except Exception as error:
            self._fail(job, error)
        finally:
            cleanup(workspace)

    def _resolve_repository(self, job: AnalysisJob) -> Repository:
        repository = self.store.get_repository(job.repository_id)
        if repository is None:
            repository = self.store.find_repository(job.repository_url, job.branch)
        if repository is None:
            repository = Repository.from_url(job.repository_url, job.branch)
            repository.id = job.repository_id
            self.store.save_repository(repository)
        return repository

    def _measure_checkout(
        self,
        job: AnalysisJob,
        workspace: Path,
        project: Optional[ProjectDirectory],
    ) -> CoverageReport:
        if project is None:
            LOGGER.warning("No package.json found in %s; continuing with empty coverage", workspace)
            return CoverageReport.empty()

        manager = self.runner.detect_package_manager(project.path)
        self._checkpoint(job, 30, f"Installing dependencies with {manager}")
        self.runner.install_dependencies(project.path, manager)

        self._checkpoint(job, 50, "Running tests with coverage")
        return self.cycle.run(workspace, project.path, manager, project.has_test_script)

    # ---------------------------------------------------------- improvement
    def _run_improvement(self, job: ImprovementJob) -> None:
        workspace = workspace_for(self.settings.workspace_root, job.id)
        try:
            repository, files = self._load_targets(job)
            for record in files:
                if record.status != CoverageFileStatus.IMPROVING:
                    record.mark_improving()
                    self.store.save_coverage_file(record)
            self._checkpoint(job, 5, f"Loaded {len(files)} target file(s)")

            self._checkpoint(job, 10, f"Cloning {repository.full_name} ({repository.default_branch})")
            cleanup(workspace)
            repo = self.clone(
                repository.url,
                workspace,
                branch=repository.default_branch,
                token=self.settings.github_token,
                timeout=self.settings.command_timeout_s,
            )

            project = self._target_project(workspace, files[0])
            manager = self.runner.detect_package_manager(project.path)
            self._checkpoint(job, 15, f"Installing dependencies with {manager}")
            self.runner.install_dependencies(project.path, manager)

            branch = generate_branch_name(branch_seed([record.path for record in files]))
            repo.create_branch(branch)
            self._checkpoint(job, 25, f"Created branch {branch}")

            targets = self._read_targets(workspace, files)
            agent = self.agent_factory(job.ai_provider)
            outcome = self._generate_with_retries(job, repo, agent, targets, files, project, manager)
            if not outcome.test_paths:
                raise outcome.last_error or TestValidationError("Agent produced no tests")

            average = self._average_coverage(files)
            self._checkpoint(job, 75, f"Committing {len(outcome.test_paths)} test file(s)")
            repo.commit_paths(self._commit_message(files, average), outcome.test_paths)

            self._checkpoint(job, 80, f"Pushing {branch}")
            repo.push(branch)

            self._checkpoint(job, 90, "Opening pull request")
            pull_request = self.github.create_pull_request(
                repository.owner,
                repository.name,
                title=self._pr_title(files),
                body=self._pr_body(files, outcome, average),
                head=branch,
                base=repository.default_branch,
            )

            self._ensure_not_cancelled(job)
            for record in files:
                record.mark_improved(record.coverage_percentage, record.uncovered_lines)
                self.store.save_coverage_file(record)
            job.complete_improvement(pull_request.url)
            self._finish(job, f"Pull request opened: {pull_request.url}")
        except Exception as error:
            self._fail(job, error)
            self._reset_files(job)
        finally:
            cleanup(workspace)

    def _load_targets(self, job: ImprovementJob) -> tuple[Repository, List[CoverageFile]]:
        repository = self.store.get_repository(job.repository_id)
        if repository is None:
            raise NotFoundError(f"Repository {job.repository_id} not found")
        files: List[CoverageFile] = []
        for file_id in job.file_ids:
            record = self.store.get_coverage_file(file_id)
            if record is None:
                raise NotFoundError(f"Coverage file {file_id} not found")
            if record.repository_id != repository.id:
                raise NotFoundError(f"Coverage file {file_id} does not belong to repository {repository.id}")
            files.append(record)
        return repository, files

    def _target_project(self, workspace: Path, first: CoverageFile) -> ProjectDirectory:
        directory = workspace / first.project_dir if first.project_dir else workspace
        project = describe_project(directory)
        if project is None:
            raise ExternalToolError(f"No package.json found in {directory}")
        return project

    def _read_targets(self, workspace: Path, files: Sequence[CoverageFile]) -> List[AgentTarget]:
        targets: List[AgentTarget] = []
        for record in files:
            source = workspace / record.path
            if not source.is_file():
                raise NotFoundError(f"Source file not found in checkout: {record.path}")
            targets.append(
                AgentTarget(
                    path=record.path,
                    content=source.read_text(encoding="utf-8", errors="replace"),
                    uncovered_lines=list(record.uncovered_lines),
                )
            )
        return targets

    def _generate_with_retries(
        self,
        job: ImprovementJob,
        repo: GitRepository,
        agent: CodeAgent,
        targets: Sequence[AgentTarget],
        files: Sequence[CoverageFile],
        project: ProjectDirectory,
        manager: str,
    ) -> AttemptOutcome:
        """Bounded retries over the whole batch.

        Each attempt runs the agent, contains its changes, validates the test
        files left in the tree and re-measures coverage.  Retryable errors
        (agent failures, invalid tests) consume an attempt and the rejected
        test files are discarded; anything else, containment violations
        included, propagates.  Stops early once every target meets the
        threshold.
        """

        outcome = AttemptOutcome()
        max_attempts = self.settings.ai_max_retries
        span = _ATTEMPT_PROGRESS_SPAN / max_attempts
        threshold = self.settings.coverage_threshold
        baseline = frozenset(repo.changed_files())

        for attempt in range(1, max_attempts + 1):
            base = _ATTEMPT_PROGRESS_START + int((attempt - 1) * span)
            job.attempts = attempt
            outcome.attempts = attempt
            self._checkpoint(job, base, f"Attempt {attempt}/{max_attempts}: generating tests with {agent.name}")

            agent_error: Optional[CoverageBotError] = None
            try:
                agent.generate_tests(repo.root, targets)
            except CoverageBotError as error:
                if not error.retryable:
                    raise
                agent_error = error
                LOGGER.warning("Attempt %d/%d: %s", attempt, max_attempts, error)

            containment = contain_changes(repo, baseline=baseline)
            if containment.removed:
                LOGGER.warning(
                    "Attempt %d/%d: removed %d non-test change(s)", attempt, max_attempts, len(containment.removed)
                )
            try:
                outcome.test_paths = validate_test_files(repo.root, containment.allowed)
            except CoverageBotError as error:
                if not error.retryable:
                    raise
                outcome.test_paths = []
                outcome.last_error = agent_error or error
                LOGGER.warning("Attempt %d/%d produced no usable tests: %s", attempt, max_attempts, error)
                discard_changes(repo, containment.allowed)
                continue
            if agent_error is not None:
                outcome.last_error = agent_error

            self._checkpoint(
                job,
                base + int(span / 2),
                f"Attempt {attempt}/{max_attempts}: measuring coverage for {len(outcome.test_paths)} test file(s)",
            )
            report = self.cycle.run(repo.root, project.path, manager, project.has_test_script)
            self._ensure_not_cancelled(job)
            self._apply_coverage(files, report, outcome)

            if all(record.coverage_percentage >= threshold for record in files):
                LOGGER.info("All %d target files reached %.1f%% after attempt %d", len(files), threshold, attempt)
                break

        return outcome

    def _apply_coverage(
        self,
        files: Sequence[CoverageFile],
        report: CoverageReport,
        outcome: AttemptOutcome,
    ) -> None:
        for record in files:
            match = report.match(record.path)
            if match is None:
                LOGGER.warning("No coverage data matched %s; keeping %.1f%%", record.path, record.coverage_percentage)
                continue
            outcome.coverage[record.id] = match
            record.update_coverage(match.percentage, match.uncovered_lines)
            self.store.save_coverage_file(record)

    def _reset_files(self, job: ImprovementJob) -> None:
        for file_id in job.file_ids:
            record = self.store.get_coverage_file(file_id)
            if record is None:
                continue
            record.reset_to_pending()
            self.store.save_coverage_file(record)

    # ------------------------------------------------------- PR composition
    @staticmethod
    def _average_coverage(files: Sequence[CoverageFile]) -> float:
        if not files:
            return 0.0
        return sum(record.coverage_percentage for record in files) / len(files)

    @staticmethod
    def _subject(files: Sequence[CoverageFile]) -> str:
        if len(files) == 1:
            return PurePosixPath(files[0].path).name
        return f"{len(files)} files"

    def _commit_message(self, files: Sequence[CoverageFile], average: float) -> str:
        lines = [f"test: improve coverage for {self._subject(files)}", ""]
        lines.extend(f"- {record.path}: {record.coverage_percentage:.1f}%" for record in files)
        lines.extend(["", f"Average coverage: {average:.1f}%"])
        return "\n".join(lines)

    def _pr_title(self, files: Sequence[CoverageFile]) -> str:
        return f"Improve test coverage for {self._subject(files)}"

    def _pr_body(self, files: Sequence[CoverageFile], outcome: AttemptOutcome, average: float) -> str:
        rows = "\n".join(
            f"| `{record.path}` | {record.coverage_percentage:.1f}% | {len(record.uncovered_lines)} |"
            for record in files
        )
        tests = "\n".join(f"- `{path}`" for path in outcome.test_paths)
        return (
            "## Summary\n"
            f"Adds generated tests for {self._subject(files)}.\n\n"
            "### Results\n"
            "| File | Coverage | Uncovered lines |\n"
            "| --- | --- | --- |\n"
            f"{rows}\n\n"
            f"- **Average coverage:** {average:.1f}%\n"
            f"- **Generation attempts:** {outcome.attempts}\n\n"
            "### Test files\n"
            f"{tests}\n\n"
            "### Checklist\n"
            "- [ ] Review generated tests\n"
            "- [ ] Run the test suite locally\n"
            "- [ ] Confirm the coverage improvement\n"
        )


__all__ = ["AttemptOutcome", "JobOrchestrator", "ProgressSink"]
