"""Periodic trigger that hands eligible jobs to the orchestrator."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .orchestrator import JobOrchestrator

LOGGER = logging.getLogger(__name__)


class JobScheduler:
    """Poll the orchestrator every ``interval`` seconds between ``start`` and ``stop``.

    Each tick claims at most one job (under the orchestrator's lock) and runs
    it on a short-lived worker thread, so a long job for one repository does
    not hold back an eligible job for another.
    """

    def __init__(self, orchestrator: JobOrchestrator, *, interval: float = 5.0) -> None:
        if interval <= 0:
            raise ValueError("Scheduler interval must be positive")
        self.orchestrator = orchestrator
        self.interval = interval
        self._stop = threading.Event()
        self._loop: Optional[threading.Thread] = None
        self._workers: List[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._loop = threading.Thread(target=self._run, name="covbot-scheduler", daemon=True)
            self._loop.start()
        LOGGER.info("Job scheduler started (every %.1fs)", self.interval)

    def stop(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop polling; optionally wait for in-flight jobs to finish."""

        self._stop.set()
        loop = self._loop
        if loop is not None:
            loop.join(timeout=self.interval + 1)
        self._loop = None
        if wait:
            for worker in self.active_workers():
                worker.join(timeout=timeout)
        LOGGER.info("Job scheduler stopped")

    def active_workers(self) -> List[threading.Thread]:
        with self._lock:
            self._workers = [worker for worker in self._workers if worker.is_alive()]
            return list(self._workers)

    def tick(self) -> Optional[threading.Thread]:
        """Claim one eligible job and start a worker for it."""

        try:
            job = self.orchestrator.claim_next_job()
        except Exception:
            LOGGER.exception("Failed to claim the next job")
            return None
        if job is None:
            return None

        worker = threading.Thread(
            target=self._execute,
            args=(job,),
            name=f"covbot-job-{job.id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._workers.append(worker)
        worker.start()
        return worker

    def _execute(self, job) -> None:
        try:
            self.orchestrator.execute_job(job)
        except Exception:
            LOGGER.exception("Unhandled error while executing job %s", job.id)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval)


__all__ = ["JobScheduler"]
