from __future__ import annotations

import threading
from typing import List, Optional

import pytest

from covbot.scheduler import JobScheduler
from covbot.storage import AnalysisJob


class StubOrchestrator:
    def __init__(self, jobs: List[AnalysisJob], *, fail_claim: bool = False) -> None:
        self.jobs = list(jobs)
        self.fail_claim = fail_claim
        self.executed: List[str] = []
        self.release = threading.Event()
        self.release.set()

    def claim_next_job(self) -> Optional[AnalysisJob]:
        if self.fail_claim:
            raise RuntimeError("database is locked")
        return self.jobs.pop(0) if self.jobs else None

    def execute_job(self, job: AnalysisJob) -> AnalysisJob:
        self.release.wait(5)
        self.executed.append(job.id)
        if job.repository_id == "explodes":
            raise RuntimeError("boom")
        return job


def _job(repository_id: str = "r1") -> AnalysisJob:
    return AnalysisJob(repository_id=repository_id, repository_url="https://github.com/acme/widgets")


def test_tick_runs_one_job_on_a_worker() -> None:
    first, second = _job(), _job()
    orchestrator = StubOrchestrator([first, second])
    scheduler = JobScheduler(orchestrator, interval=1)

    worker = scheduler.tick()
    worker.join(5)

    assert orchestrator.executed == [first.id]
    assert orchestrator.jobs == [second]


def test_tick_without_work_returns_none() -> None:
    assert JobScheduler(StubOrchestrator([]), interval=1).tick() is None


def test_claim_errors_do_not_escape() -> None:
    assert JobScheduler(StubOrchestrator([_job()], fail_claim=True), interval=1).tick() is None


def test_worker_errors_are_contained() -> None:
    orchestrator = StubOrchestrator([_job("explodes")])
    worker = JobScheduler(orchestrator, interval=1).tick()
    worker.join(5)

    assert not worker.is_alive()
    assert len(orchestrator.executed) == 1


def test_start_and_stop_wait_for_workers() -> None:
    job = _job()
    orchestrator = StubOrchestrator([job])
    orchestrator.release.clear()
    scheduler = JobScheduler(orchestrator, interval=0.05)

    scheduler.start()
    for _ in range(100):
        if scheduler.active_workers():
            break
        threading.Event().wait(0.02)
    assert scheduler.running
    assert len(scheduler.active_workers()) == 1

    orchestrator.release.set()
    scheduler.stop(wait=True, timeout=5)

    assert not scheduler.running
    assert orchestrator.executed == [job.id]
    assert scheduler.active_workers() == []


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        JobScheduler(StubOrchestrator([]), interval=0)
