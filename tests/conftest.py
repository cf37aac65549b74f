from __future__ import annotations

import json
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from covbot.config import Settings  # noqa: E402
from covbot.storage import CoverageStore, Repository  # noqa: E402


def run_git(root: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def init_git_repo(root: Path, files: Mapping[str, str]) -> Path:
    """Create a committed git repository on ``main`` containing ``files``."""

    root.mkdir(parents=True, exist_ok=True)
    run_git(root, "init")
    run_git(root, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(root, "config", "user.email", "tests@example.com")
    run_git(root, "config", "user.name", "Coverage Tests")
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    run_git(root, "add", ".")
    run_git(root, "commit", "-m", "Initial commit")
    return root


def istanbul_payload(project_dir: Path, entries: Mapping[str, tuple[int, int]]) -> Dict[str, object]:
    """Istanbul JSON where each file has ``total`` one-line statements, ``covered`` of them hit."""

    payload: Dict[str, object] = {}
    for relative, (covered, total) in entries.items():
        absolute = (project_dir.resolve() / relative).as_posix()
        statement_map = {
            str(index): {"start": {"line": index + 1, "column": 0}, "end": {"line": index + 1, "column": 10}}
            for index in range(total)
        }
        hits = {str(index): (1 if index < covered else 0) for index in range(total)}
        payload[absolute] = {"path": absolute, "statementMap": statement_map, "s": hits}
    return payload


def write_istanbul(project_dir: Path, entries: Mapping[str, tuple[int, int]]) -> Path:
    target = project_dir / "coverage" / "coverage-final.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(istanbul_payload(project_dir, entries)), encoding="utf-8")
    return target


PACKAGE_JSON = json.dumps({"name": "widgets", "scripts": {"test": "jest"}}, indent=2)

MATH_SOURCE = textwrap.dedent(
    """
    export function add(a: number, b: number): number {
      return a + b;
    }
    """
).lstrip()

VALID_TEST = textwrap.dedent(
    """
    import { add } from './math';

    describe('add', () => {
      it('adds numbers', () => {
        expect(add(1, 2)).toBe(3);
      });
    });
    """
).lstrip()


@dataclass(slots=True)
class OriginRepo:
    """A local repository standing in for the GitHub remote."""

    root: Path

    def branches(self) -> list[str]:
        output = run_git(self.root, "branch", "--list", "--format=%(refname:short)")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def changed_between(self, base: str, head: str) -> list[str]:
        output = run_git(self.root, "diff", "--name-only", base, head)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def show(self, ref: str, path: str) -> str:
        return run_git(self.root, "show", f"{ref}:{path}")


@pytest.fixture()
def origin_repo(tmp_path: Path) -> OriginRepo:
    root = init_git_repo(
        tmp_path / "origin",
        {
            "package.json": PACKAGE_JSON,
            "src/math.ts": MATH_SOURCE,
            "src/util.ts": "export const noop = () => undefined;\n",
            "src/extra.ts": "export const extra = 1;\n",
            "src/types.d.ts": "declare const x: number;\n",
            "src/existing.test.ts": "describe('x', () => { it('y', () => { expect(1).toBe(1); }); });\n",
        },
    )
    return OriginRepo(root)


@pytest.fixture()
def store(tmp_path: Path):
    with CoverageStore(tmp_path / "data" / "coverage.sqlite") as coverage_store:
        yield coverage_store


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        coverage_threshold=80,
        ai_max_retries=3,
        database_path=tmp_path / "data" / "coverage.sqlite",
        workspace_root=tmp_path / "workspaces",
    )


@pytest.fixture()
def repository(store: CoverageStore, origin_repo: OriginRepo) -> Repository:
    record = Repository(url=str(origin_repo.root), owner="acme", name="widgets")
    store.save_repository(record)
    return record
