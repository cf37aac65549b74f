"""Request-side job operations used by the CLI (and any other front end)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import InvalidTransitionError, NotFoundError
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

LOGGER = logging.getLogger(__name__)

_ACTIVE = [JobStatus.PENDING, JobStatus.RUNNING]


@dataclass(slots=True)
class JobRequestResult:
    """A queued job, flagged when an equivalent active job was reused."""

    job: AnyJob
    is_existing: bool = False


class JobService:
    def __init__(self, store: CoverageStore, *, default_provider: AiProvider | str = AiProvider.CLAUDE) -> None:
        self.store = store
        self.default_provider = AiProvider(default_provider)

    # -------------------------------------------------------------- analysis
    def start_analysis(self, url: str, branch: str | None = None) -> JobRequestResult:
        """Queue an analysis for ``url``/``branch`` unless one is already active."""

        branch_name = (branch or "main").strip() or "main"
        repository = self.store.find_repository(url, branch_name)
        if repository is None:
            repository = Repository.from_url(url, branch_name)
            self.store.save_repository(repository)
            LOGGER.info("Tracking new repository %s (%s)", repository.full_name, branch_name)

        active = self.store.list_jobs(
            repository_id=repository.id,
            job_type=JobType.ANALYSIS,
            statuses=_ACTIVE,
            newest_first=False,
            limit=1,
        )
        if active:
            return JobRequestResult(active[0], is_existing=True)

        job = AnalysisJob(repository_id=repository.id, repository_url=url, branch=branch_name)
        self.store.save_job(job)
        LOGGER.info("Queued analysis job %s for %s", job.id, repository.full_name)
        return JobRequestResult(job)

    # ----------------------------------------------------------- improvement
    def start_improvement(
        self,
        repository_id: str,
        file_ids: Sequence[str],
        provider: AiProvider | str | None = None,
    ) -> JobRequestResult:
        """Queue one improvement job covering every file in ``file_ids``."""

        if not file_ids:
            raise ValueError("At least one coverage file id is required")
        repository = self.store.get_repository(repository_id)
        if repository is None:
            raise NotFoundError(f"Repository {repository_id} not found")

        files: List[CoverageFile] = []
        for file_id in dict.fromkeys(file_ids):
            record = self.store.get_coverage_file(file_id)
            if record is None:
                raise NotFoundError(f"Coverage file {file_id} not found")
            if record.repository_id != repository_id:
                raise NotFoundError(f"Coverage file {file_id} does not belong to repository {repository_id}")
            files.append(record)

        for record in files:
            existing = self.store.find_active_jobs_for_file(record.id)
            if existing:
                return JobRequestResult(existing[0], is_existing=True)

        job = ImprovementJob(
            repository_id=repository_id,
            file_ids=[record.id for record in files],
            file_paths=[record.path for record in files],
            ai_provider=AiProvider(provider) if provider else self.default_provider,
        )
        self.store.save_job(job)
        for record in files:
            if record.status != CoverageFileStatus.IMPROVING:
                record.mark_improving()
                self.store.save_coverage_file(record)
        LOGGER.info("Queued improvement job %s for %d file(s)", job.id, len(files))
        return JobRequestResult(job)

    def files_below_threshold(self, repository_id: str, threshold: float) -> List[CoverageFile]:
        if self.store.get_repository(repository_id) is None:
            raise NotFoundError(f"Repository {repository_id} not found")
        return self.store.list_files_below_threshold(repository_id, threshold)

    # ---------------------------------------------------------------- queries
    def get_job(self, job_id: str) -> AnyJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(self, repository_id: Optional[str] = None, *, limit: Optional[int] = None) -> List[AnyJob]:
        return self.store.list_jobs(repository_id=repository_id, limit=limit)

    def coverage(self, repository_id: str) -> tuple[Repository, List[CoverageFile]]:
        repository = self.store.get_repository(repository_id)
        if repository is None:
            raise NotFoundError(f"Repository {repository_id} not found")
        return repository, self.store.list_coverage_files(repository_id)

    # ----------------------------------------------------------------- cancel
    def cancel(self, job_id: str) -> AnyJob:
        """Fail a pending or running job with the cancellation message."""

        job = self.get_job(job_id)
        if not job.status.is_active:
            raise InvalidTransitionError(f"Job {job_id} is {job.status.value} and cannot be cancelled")
        job.cancel()
        self.store.save_job(job)
        if isinstance(job, ImprovementJob):
            for file_id in job.file_ids:
                record = self.store.get_coverage_file(file_id)
                if record is not None:
                    record.reset_to_pending()
                    self.store.save_coverage_file(record)
        LOGGER.info("Cancelled job %s", job_id)
        return job


__all__ = ["JobRequestResult", "JobService"]
