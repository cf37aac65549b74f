from __future__ import annotations

import pytest

from covbot.errors import InvalidTransitionError
from covbot.storage.schema import (
    CANCELLED_MESSAGE,
    JOB_ADAPTER,
    AiProvider,
    AnalysisJob,
    CoverageFile,
    CoverageFileStatus,
    ImprovementJob,
    JobStatus,
    Repository,
    parse_github_url,
)


def _analysis() -> AnalysisJob:
    return AnalysisJob(repository_id="repo-1", repository_url="https://github.com/acme/widgets")


def test_job_lifecycle_pending_running_completed() -> None:
    job = _analysis()
    assert job.status == JobStatus.PENDING

    job.start()
    job.update_progress(40)
    job.complete_analysis(files_found=12, files_below_threshold=5)

    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert (job.files_found, job.files_below_threshold) == (12, 5)


def test_terminal_jobs_reject_further_transitions() -> None:
    job = _analysis()
    job.start()
    job.complete_analysis(1, 0)

    with pytest.raises(InvalidTransitionError):
        job.start()
    with pytest.raises(InvalidTransitionError):
        job.fail("late failure")
    with pytest.raises(InvalidTransitionError):
        job.update_progress(50)


def test_failed_job_cannot_be_restarted() -> None:
    job = _analysis()
    job.start()
    job.fail("clone failed")

    assert job.error == "clone failed"
    with pytest.raises(InvalidTransitionError):
        job.start()


def test_progress_only_changes_while_running() -> None:
    job = _analysis()
    with pytest.raises(InvalidTransitionError):
        job.update_progress(10)

    job.start()
    with pytest.raises(ValueError):
        job.update_progress(101)


def test_pending_job_cannot_complete_without_running() -> None:
    job = ImprovementJob(repository_id="repo-1", file_ids=["f1"])
    with pytest.raises(InvalidTransitionError):
        job.complete_improvement("https://github.com/acme/widgets/pull/1")


def test_cancel_records_failure_with_fixed_message() -> None:
    pending = _analysis()
    pending.cancel()
    assert pending.status == JobStatus.FAILED
    assert pending.error == CANCELLED_MESSAGE

    running = _analysis()
    running.start()
    running.cancel()
    assert running.status == JobStatus.FAILED


def test_completion_methods_belong_to_their_variant() -> None:
    assert not hasattr(_analysis(), "complete_improvement")
    assert not hasattr(ImprovementJob(repository_id="r", file_ids=["f"]), "complete_analysis")


def test_improvement_requires_files_and_https_pr_url() -> None:
    with pytest.raises(ValueError):
        ImprovementJob(repository_id="repo-1", file_ids=[])

    job = ImprovementJob(repository_id="repo-1", file_ids=["a", "b"], ai_provider=AiProvider.OPENAI)
    assert job.file_count == 2
    job.start()
    with pytest.raises(ValueError):
        job.complete_improvement("http://insecure.example/pr/1")
    job.complete_improvement("https://github.com/acme/widgets/pull/7")
    assert job.pr_url.endswith("/pull/7")


def test_job_adapter_selects_variant_by_type() -> None:
    improvement = ImprovementJob(repository_id="repo-1", file_ids=["f1"])
    parsed = JOB_ADAPTER.validate_python(improvement.model_dump(mode="json"))
    assert isinstance(parsed, ImprovementJob)

    parsed = JOB_ADAPTER.validate_python(_analysis().model_dump(mode="json"))
    assert isinstance(parsed, AnalysisJob)


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/acme/widgets",
        "https://github.com/acme/widgets.git",
        "git@github.com:acme/widgets.git",
        "ssh://git@github.com/acme/widgets",
    ],
)
def test_parse_github_url_accepts_common_forms(url: str) -> None:
    assert parse_github_url(url) == ("acme", "widgets")


def test_parse_github_url_rejects_other_hosts() -> None:
    with pytest.raises(ValueError):
        parse_github_url("https://gitlab.com/acme/widgets")


def test_repository_from_url_sets_identity() -> None:
    repository = Repository.from_url("https://github.com/acme/widgets.git", "develop")
    assert repository.full_name == "acme/widgets"
    assert repository.branch == repository.default_branch == "develop"
    assert repository.last_analyzed_at is None

    repository.mark_analyzed()
    assert repository.last_analyzed_at is not None


def test_coverage_file_state_machine() -> None:
    record = CoverageFile(repository_id="repo-1", path="src/a.ts", coverage_percentage=42.349)
    assert record.coverage_percentage == 42.3

    with pytest.raises(InvalidTransitionError):
        record.mark_improved(90, [])

    record.mark_improving()
    with pytest.raises(InvalidTransitionError):
        record.mark_improving()

    record.mark_improved(91.26, [4, 5])
    assert record.status == CoverageFileStatus.IMPROVED
    assert record.coverage_percentage == 91.3
    assert record.uncovered_lines == [4, 5]

    # An improved file may be queued again.
    record.mark_improving()
    record.reset_to_pending()
    assert record.status == CoverageFileStatus.PENDING


def test_update_coverage_clamps_percentage() -> None:
    record = CoverageFile(repository_id="repo-1", path="src/a.ts")
    record.update_coverage(140.0, [])
    assert record.coverage_percentage == 100.0
    record.update_coverage(-3, [1])
    assert record.coverage_percentage == 0.0
