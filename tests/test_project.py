from __future__ import annotations

import json
from pathlib import Path

from covbot.tools.project import describe_project, enumerate_source_files, find_project_directory, is_source_file


def _manifest(directory: Path, *, test_script: bool) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    scripts = {"test": "jest"} if test_script else {"build": "tsc"}
    (directory / "package.json").write_text(json.dumps({"scripts": scripts}), encoding="utf-8")


def test_root_with_test_script_wins(tmp_path: Path) -> None:
    _manifest(tmp_path, test_script=True)
    _manifest(tmp_path / "frontend", test_script=True)

    project = find_project_directory(tmp_path)

    assert project is not None
    assert project.path == tmp_path
    assert project.has_test_script
    assert project.relative_to(tmp_path) is None


def test_subdirectory_with_test_script_beats_bare_root(tmp_path: Path) -> None:
    _manifest(tmp_path, test_script=False)
    _manifest(tmp_path / "frontend", test_script=True)

    project = find_project_directory(tmp_path)

    assert project.path == tmp_path / "frontend"
    assert project.relative_to(tmp_path) == "frontend"


def test_manifest_without_test_script_is_still_used(tmp_path: Path) -> None:
    _manifest(tmp_path / "web", test_script=False)

    project = find_project_directory(tmp_path)

    assert project.path == tmp_path / "web"
    assert not project.has_test_script


def test_no_manifest_means_no_project(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    assert find_project_directory(tmp_path) is None
    assert describe_project(tmp_path) is None


def test_source_file_filter() -> None:
    assert is_source_file("math.ts")
    assert not is_source_file("math.test.ts")
    assert not is_source_file("math.spec.ts")
    assert not is_source_file("types.d.ts")
    assert not is_source_file("math.js")


def test_enumerate_skips_build_and_dependency_directories(tmp_path: Path) -> None:
    for relative in (
        "src/a.ts",
        "src/nested/b.ts",
        "src/a.test.ts",
        "node_modules/pkg/index.ts",
        "dist/a.ts",
        "coverage/lcov-report/x.ts",
    ):
        target = tmp_path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("export {};\n", encoding="utf-8")

    assert enumerate_source_files(tmp_path) == ["src/a.ts", "src/nested/b.ts"]
