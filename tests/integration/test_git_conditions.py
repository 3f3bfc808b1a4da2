"""GIT_STATUS conditions against a real ``git`` binary."""

import shutil
import subprocess

import pytest

from baton.conditions import ConditionContext, ConditionEvaluator, SubprocessGitClient
from baton.models import StepCondition

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

CLEAN_TREE = StepCondition.model_validate(
    {"name": "clean_tree", "logic": {"type": "GIT_STATUS", "require_clean_working_tree": True}}
)


def _init_repo(path) -> None:
    subprocess.run(["git", "init", "-q", str(path)], check=True)
    subprocess.run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=path, check=True)


@pytest.mark.asyncio
async def test_untracked_file_makes_tree_dirty(store, tmp_path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    _init_repo(tmp_path)
    evaluator = ConditionEvaluator(store)
    context = ConditionContext(project_path=str(tmp_path))

    clean = await evaluator.evaluate(CLEAN_TREE, context)
    assert clean.valid, f"Expected a clean tree, got: {clean.reason}"
    assert clean.details["current_branch"] == "main"

    (tmp_path / "notes.txt").write_text("draft")
    dirty = await evaluator.evaluate(CLEAN_TREE, context)
    assert not dirty.valid
    assert dirty.reason == "Working tree is not clean"
    assert dirty.details["has_untracked_files"] is True
    assert dirty.details["untracked_files"] == ["notes.txt"]
    assert dirty.details["has_uncommitted_changes"] is False


@pytest.mark.asyncio
async def test_branch_requirement(store, tmp_path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    _init_repo(tmp_path)
    condition = StepCondition.model_validate(
        {"name": "on_release", "logic": {"type": "GIT_STATUS", "require_branch": "release"}}
    )
    result = await ConditionEvaluator(store).evaluate(condition, ConditionContext(project_path=str(tmp_path)))
    assert not result.valid
    assert result.reason == "Current branch is 'main', required 'release'"


@pytest.mark.asyncio
async def test_outside_a_repository_fails_the_condition(store, tmp_path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    result = await ConditionEvaluator(store).evaluate(CLEAN_TREE, ConditionContext(project_path=str(tmp_path)))
    assert not result.valid
    assert result.reason.startswith("Git status check failed:")


@pytest.mark.asyncio
async def test_client_reports_porcelain_lines(tmp_path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    _init_repo(tmp_path)
    (tmp_path / "a.py").write_text("x = 1\n")
    subprocess.run(["git", "add", "a.py"], cwd=tmp_path, check=True)

    client = SubprocessGitClient(tmp_path, timeout=5)
    assert await client.get_status() == ["A  a.py"]
    assert await client.get_untracked_files() == []
    assert await client.get_branch() == "main"


@pytest.mark.asyncio
async def test_staged_but_uncommitted_file_fails_clean_tree(store, tmp_path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    _init_repo(tmp_path)
    (tmp_path / "a.py").write_text("x = 1\n")
    subprocess.run(["git", "add", "a.py"], cwd=tmp_path, check=True)

    result = await ConditionEvaluator(store).evaluate(CLEAN_TREE, ConditionContext(project_path=str(tmp_path)))
    assert result.valid is False
    assert result.reason == "Working tree is not clean"
    assert result.details["has_uncommitted_changes"] is True
    assert result.details["has_untracked_files"] is False
    assert result.details["status_details"] == ["A  a.py"]
