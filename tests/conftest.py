"""Shared pytest fixtures for the git-memory test suite.

Non-fixture helpers (fake commit source, git repository builders) are in
helpers.py.
"""

import shutil
import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from helpers import FakeCommitSource, run_git  # noqa: E402

from index_store import IndexStore  # noqa: E402


@pytest.fixture
def store(tmp_path: Path):
    """An initialized, open IndexStore under tmp_path/.ai/memory.db."""
    index = IndexStore(tmp_path / ".ai" / "memory.db").initialize()
    yield index
    index.close()


@pytest.fixture
def source() -> FakeCommitSource:
    return FakeCommitSource()


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    """An empty git repository on branch ``main``.

    Tests using it are skipped when git is not installed.
    """
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "-q")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo, "config", "commit.gpgsign", "false")
    return repo
