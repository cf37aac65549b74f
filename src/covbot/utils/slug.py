"""Slug helpers for branch names and workspace directories."""

from __future__ import annotations

import hashlib
import re
from pathlib import PurePosixPath
from typing import Pattern, Sequence

_UNSAFE: Pattern[str] = re.compile(r"[^a-z0-9-]+")
_HYPHEN_COLLAPSE: Pattern[str] = re.compile(r"-{2,}")
_SOURCE_SUFFIXES = (".tsx", ".ts", ".jsx", ".js", ".mjs", ".cjs")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 50) -> str:
    """Lowercase ``value`` and collapse anything outside ``[a-z0-9-]`` to hyphens."""

    slug = _normalize(value or "")
    if not slug:
        slug = _normalize(fallback) or "item"
    if len(slug) > max_length:
        slug = _abbreviate(slug, max_length)
    return slug


def _abbreviate(slug: str, max_length: int) -> str:
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}" if prefix else digest


def _normalize(value: str) -> str:
    slug = _UNSAFE.sub("-", value.strip().lower())
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")


def branch_seed(paths: Sequence[str]) -> str:
    """Seed for an improvement branch: the file stem for one file, ``<n>-files`` otherwise."""

    if len(paths) == 1:
        name = PurePosixPath(paths[0]).name
        for suffix in _SOURCE_SUFFIXES:
            if name.endswith(suffix):
                name = name[: -len(suffix)]
                break
        parent = PurePosixPath(paths[0]).parent.name
        return f"{parent}-{name}" if parent else name
    return f"{len(paths)}-files"


__all__ = ["branch_seed", "slugify"]
