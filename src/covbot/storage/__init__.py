"""Persistence layer: record models and the SQLite store."""

from .schema import (
    AiProvider,
    AnalysisJob,
    CoverageFile,
    CoverageFileStatus,
    ImprovementJob,
    JobStatus,
    JobType,
    Repository,
)
from .store import AnyJob, CoverageStore

__all__ = [
    "AiProvider",
    "AnalysisJob",
    "AnyJob",
    "CoverageFile",
    "CoverageFileStatus",
    "CoverageStore",
    "ImprovementJob",
    "JobStatus",
    "JobType",
    "Repository",
]
