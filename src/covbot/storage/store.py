"""SQLite persistence for repositories, coverage files, and jobs."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from .schema import (
    JOB_ADAPTER,
    AnalysisJob,
    CoverageFile,
    CoverageFileStatus,
    ImprovementJob,
    JobStatus,
    JobType,
    Repository,
)

DEFAULT_DB_PATH = Path("data/coverage.sqlite")
LOGGER = logging.getLogger(__name__)

AnyJob = AnalysisJob | ImprovementJob

# Columns shared by every job row; the variant-specific fields live in ``payload``.
_JOB_ENVELOPE_FIELDS = frozenset(
    {"id", "type", "repository_id", "status", "progress", "error", "created_at", "updated_at"}
)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class CoverageStore:
    """SQLite-backed persistence shared by the API surface and the job pipeline.

    A single connection is shared between scheduler worker threads; every
    statement runs under ``self._lock``.  Each mutation is a whole-record
    upsert keyed by id, so concurrent writers to *different* records never
    interfere.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "CoverageStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS repositories (
                id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                branch TEXT NOT NULL,
                default_branch TEXT NOT NULL,
                last_analyzed_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(url, branch)
            );

            CREATE TABLE IF NOT EXISTS coverage_files (
                id TEXT PRIMARY KEY,
                repository_id TEXT NOT NULL,
                path TEXT NOT NULL,
                coverage_percentage REAL NOT NULL,
                uncovered_lines TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                project_dir TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(repository_id) REFERENCES repositories(id) ON DELETE CASCADE,
                UNIQUE(repository_id, path)
            );
            CREATE INDEX IF NOT EXISTS idx_coverage_files_repository
                ON coverage_files(repository_id);

            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                repository_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                progress INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(repository_id) REFERENCES repositories(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_jobs_status_type
                ON jobs(status, type, created_at);
            CREATE INDEX IF NOT EXISTS idx_jobs_repository
                ON jobs(repository_id);
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # Repository operations ------------------------------------------------------------
    def save_repository(self, repository: Repository) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO repositories (
                    id, url, owner, name, branch, default_branch, last_analyzed_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    url = excluded.url,
                    owner = excluded.owner,
                    name = excluded.name,
                    branch = excluded.branch,
                    default_branch = excluded.default_branch,
                    last_analyzed_at = excluded.last_analyzed_at
                """,
                (
                    repository.id,
                    repository.url,
                    repository.owner,
                    repository.name,
                    repository.branch,
                    repository.default_branch,
                    _as_iso(repository.last_analyzed_at) if repository.last_analyzed_at else None,
                    _as_iso(repository.created_at),
                ),
            )

    def get_repository(self, repository_id: str) -> Optional[Repository]:
        rows = self._query("SELECT * FROM repositories WHERE id = ?", (repository_id,))
        return self._row_to_repository(rows[0]) if rows else None

    def find_repository(self, url: str, branch: str) -> Optional[Repository]:
        rows = self._query(
            "SELECT * FROM repositories WHERE url = ? AND branch = ?",
            (url, branch),
        )
        return self._row_to_repository(rows[0]) if rows else None

    def list_repositories(self) -> List[Repository]:
        rows = self._query("SELECT * FROM repositories ORDER BY created_at ASC")
        return [self._row_to_repository(row) for row in rows]

    def delete_repository(self, repository_id: str) -> None:
        with self._transaction():
            self._conn.execute("DELETE FROM repositories WHERE id = ?", (repository_id,))

    # Coverage file operations ---------------------------------------------------------
    def save_coverage_file(self, coverage_file: CoverageFile) -> None:
        with self._transaction():
            self._upsert_coverage_file(coverage_file)

    def _upsert_coverage_file(self, record: CoverageFile) -> None:
        self._conn.execute(
            """
            INSERT INTO coverage_files (
                id, repository_id, path, coverage_percentage, uncovered_lines,
                status, project_dir, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                coverage_percentage = excluded.coverage_percentage,
                uncovered_lines = excluded.uncovered_lines,
                status = excluded.status,
                project_dir = excluded.project_dir,
                updated_at = excluded.updated_at
            """,
            (
                record.id,
                record.repository_id,
                record.path,
                record.coverage_percentage,
                json.dumps(list(record.uncovered_lines)),
                record.status.value,
                record.project_dir,
                _as_iso(record.created_at),
                _as_iso(record.updated_at),
            ),
        )

    def replace_coverage_files(self, repository_id: str, files: Sequence[CoverageFile]) -> None:
        """Delete every stored file for ``repository_id`` and insert ``files``.

        Runs in one transaction, so readers see either the old set or the new
        one.
        """

        with self._transaction():
            self._conn.execute("DELETE FROM coverage_files WHERE repository_id = ?", (repository_id,))
            for record in files:
                if record.repository_id != repository_id:
                    raise ValueError(
                        f"Coverage file {record.path} belongs to {record.repository_id}, "
                        f"not {repository_id}"
                    )
                self._upsert_coverage_file(record)

    def get_coverage_file(self, file_id: str) -> Optional[CoverageFile]:
        rows = self._query("SELECT * FROM coverage_files WHERE id = ?", (file_id,))
        return self._row_to_coverage_file(rows[0]) if rows else None

    def find_coverage_file(self, repository_id: str, path: str) -> Optional[CoverageFile]:
        rows = self._query(
            "SELECT * FROM coverage_files WHERE repository_id = ? AND path = ?",
            (repository_id, path),
        )
        return self._row_to_coverage_file(rows[0]) if rows else None

    def list_coverage_files(self, repository_id: str) -> List[CoverageFile]:
        rows = self._query(
            "SELECT * FROM coverage_files WHERE repository_id = ? "
            "ORDER BY coverage_percentage ASC, path ASC",
            (repository_id,),
        )
        return [self._row_to_coverage_file(row) for row in rows]

    def list_files_below_threshold(self, repository_id: str, threshold: float) -> List[CoverageFile]:
        rows = self._query(
            "SELECT * FROM coverage_files WHERE repository_id = ? AND coverage_percentage < ? "
            "ORDER BY coverage_percentage ASC, path ASC",
            (repository_id, threshold),
        )
        return [self._row_to_coverage_file(row) for row in rows]

    def delete_coverage_files(self, repository_id: str) -> None:
        with self._transaction():
            self._conn.execute("DELETE FROM coverage_files WHERE repository_id = ?", (repository_id,))

    # Job operations -------------------------------------------------------------------
    def save_job(self, job: AnyJob) -> None:
        payload = job.model_dump(mode="json", exclude=set(_JOB_ENVELOPE_FIELDS))
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO jobs (
                    id, type, repository_id, status, progress, error, payload,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    progress = excluded.progress,
                    error = excluded.error,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    job.id,
                    job.type,
                    job.repository_id,
                    job.status.value,
                    job.progress,
                    job.error,
                    json.dumps(payload),
                    _as_iso(job.created_at),
                    _as_iso(job.updated_at),
                ),
            )

    def update_running_job(self, job: AnyJob) -> bool:
        """Write ``job`` only while its stored status is still ``running``.

        Returns ``False`` (and writes nothing) when another writer already
        moved the stored record out of ``running``, e.g. a cancellation.
        """

        payload = job.model_dump(mode="json", exclude=set(_JOB_ENVELOPE_FIELDS))
        with self._transaction():
            cursor = self._conn.execute(
                """
                UPDATE jobs
                SET status = ?, progress = ?, error = ?, payload = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    job.status.value,
                    job.progress,
                    job.error,
                    json.dumps(payload),
                    _as_iso(job.updated_at),
                    job.id,
                    JobStatus.RUNNING.value,
                ),
            )
        return cursor.rowcount == 1

    def get_job(self, job_id: str) -> Optional[AnyJob]:
        rows = self._query("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(rows[0]) if rows else None

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        rows = self._query("SELECT status FROM jobs WHERE id = ?", (job_id,))
        return JobStatus(rows[0]["status"]) if rows else None

    def list_jobs(
        self,
        *,
        repository_id: Optional[str] = None,
        job_type: Optional[JobType] = None,
        statuses: Optional[Sequence[JobStatus]] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[AnyJob]:
        query = "SELECT * FROM jobs"
        clauses: List[str] = []
        params: List[Any] = []
        if repository_id:
            clauses.append("repository_id = ?")
            params.append(repository_id)
        if job_type:
            clauses.append("type = ?")
            params.append(JobType(job_type).value)
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            clauses.append(f"status IN ({placeholders})")
            params.extend(JobStatus(status).value for status in statuses)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        # rowid breaks ties between jobs created within the same timestamp.
        query += " ORDER BY created_at DESC, rowid DESC" if newest_first else " ORDER BY created_at ASC, rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [self._row_to_job(row) for row in self._query(query, params)]

    def list_pending_jobs(self, job_type: Optional[JobType] = None, limit: Optional[int] = None) -> List[AnyJob]:
        """Pending jobs, oldest first."""
        return self.list_jobs(
            job_type=job_type,
            statuses=[JobStatus.PENDING],
            newest_first=False,
            limit=limit,
        )

    def find_oldest_pending_job(self, job_type: Optional[JobType] = None) -> Optional[AnyJob]:
        jobs = self.list_pending_jobs(job_type, limit=1)
        return jobs[0] if jobs else None

    def list_running_jobs(
        self,
        job_type: Optional[JobType] = None,
        repository_id: Optional[str] = None,
    ) -> List[AnyJob]:
        return self.list_jobs(
            job_type=job_type,
            repository_id=repository_id,
            statuses=[JobStatus.RUNNING],
            newest_first=False,
        )

    def find_active_jobs_for_file(self, file_id: str) -> List[ImprovementJob]:
        active = self.list_jobs(
            job_type=JobType.IMPROVEMENT,
            statuses=[JobStatus.PENDING, JobStatus.RUNNING],
            newest_first=False,
        )
        return [job for job in active if isinstance(job, ImprovementJob) and file_id in job.file_ids]

    def delete_job(self, job_id: str) -> None:
        with self._transaction():
            self._conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    # Row mapping ----------------------------------------------------------------------
    @staticmethod
    def _row_to_repository(row: sqlite3.Row) -> Repository:
        return Repository(
            id=row["id"],
            url=row["url"],
            owner=row["owner"],
            name=row["name"],
            branch=row["branch"],
            default_branch=row["default_branch"],
            last_analyzed_at=_from_iso(row["last_analyzed_at"]),
            created_at=_from_iso(row["created_at"]),
        )

    @staticmethod
    def _row_to_coverage_file(row: sqlite3.Row) -> CoverageFile:
        return CoverageFile(
            id=row["id"],
            repository_id=row["repository_id"],
            path=row["path"],
            coverage_percentage=row["coverage_percentage"],
            uncovered_lines=_load_json(row["uncovered_lines"], default=[]),
            status=CoverageFileStatus(row["status"]),
            project_dir=row["project_dir"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> AnyJob:
        data = dict(_load_json(row["payload"], default={}))
        data.update(
            id=row["id"],
            type=row["type"],
            repository_id=row["repository_id"],
            status=row["status"],
            progress=row["progress"],
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        return JOB_ADAPTER.validate_python(data)


__all__ = ["AnyJob", "CoverageStore", "DEFAULT_DB_PATH"]
