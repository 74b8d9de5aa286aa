"""Shared test helpers for the git-memory test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(an in-memory commit source, real-repository builders) used across
multiple test files.
"""

import hashlib
import os
import subprocess
from pathlib import Path
from typing import Optional

from commit_source import (
    CommitRecord,
    FileChange,
    GitError,
    NumstatEntry,
    RevisionNotFoundError,
    RevisionRange,
)

BASE_TS = 1_700_000_000


# --- In-memory commit source ---

class FakeCommitSource:
    """Linear history kept in memory, oldest commit first.

    Implements both the indexer's CommitSource and the aggregator's
    BranchSource protocols.
    """

    def __init__(self) -> None:
        self.commits: list[CommitRecord] = []
        self.changes: dict[str, list[FileChange]] = {}
        self.stats: dict[str, list[NumstatEntry]] = {}
        self.ranges: list[RevisionRange] = []
        self.fail_on: set[str] = set()
        self.branch = "main"
        self.refs: dict[str, str] = {}
        self.divergence: tuple[int, int] = (0, 0)
        self._counter = 0

    def add_commit(
        self,
        subject: str,
        files: Optional[dict[str, tuple]] = None,
        timestamp: Optional[int] = None,
        author: str = "Dev",
    ) -> CommitRecord:
        """Append a commit. ``files`` maps path -> (status, insertions, deletions)."""
        self._counter += 1
        commit_hash = hashlib.sha1(f"{self._counter}:{subject}".encode()).hexdigest()
        if timestamp is None:
            timestamp = BASE_TS + self._counter * 60
        commit = CommitRecord(hash=commit_hash, author=author, timestamp=timestamp, subject=subject)
        self.commits.append(commit)
        files = files or {"README": ("M", 1, 0)}
        self.changes[commit_hash] = [FileChange(status=s, path=p) for p, (s, _, _) in files.items()]
        self.stats[commit_hash] = [
            NumstatEntry(insertions=i, deletions=d, path=p) for p, (_, i, d) in files.items()
        ]
        return commit

    def rewrite(self, count: int) -> list[CommitRecord]:
        """Replace the newest ``count`` commits with copies under new hashes (amend/rebase)."""
        old = self.commits[-count:]
        del self.commits[-count:]
        rewritten = []
        for commit in old:
            files = {
                c.path: (c.status, n.insertions, n.deletions)
                for c, n in zip(self.changes[commit.hash], self.stats[commit.hash])
            }
            rewritten.append(
                self.add_commit(commit.subject + " (amended)", files, commit.timestamp + 1, commit.author)
            )
        return rewritten

    # CommitSource

    def head(self) -> Optional[str]:
        return self.commits[-1].hash if self.commits else None

    def object_exists(self, commit_hash: str) -> bool:
        return any(c.hash == commit_hash for c in self.commits)

    def _index_of(self, commit_hash: str) -> int:
        for i, commit in enumerate(self.commits):
            if commit.hash == commit_hash:
                return i
        raise RevisionNotFoundError(f"bad revision '{commit_hash}'")

    def iter_commits(self, revision_range: RevisionRange):
        self.ranges.append(revision_range)
        tip = self._index_of(revision_range.tip) if revision_range.tip != "HEAD" else len(self.commits) - 1
        if revision_range.exclude is not None:
            start = self._index_of(revision_range.exclude) + 1
        else:
            start = max(tip + 1 - (revision_range.depth or 0), 0)
        for commit in reversed(self.commits[start:tip + 1]):
            yield commit

    def file_changes(self, commit_hash: str) -> list[FileChange]:
        if commit_hash in self.fail_on:
            raise GitError(f"diff-tree failed for {commit_hash}")
        return list(self.changes[commit_hash])

    def numstat(self, commit_hash: str) -> list[NumstatEntry]:
        return list(self.stats[commit_hash])

    # BranchSource

    def current_branch(self) -> str:
        return self.branch

    def resolve_ref(self, name: str) -> Optional[str]:
        return self.refs.get(name)

    def ahead_behind(self, base: str, ref: str = "HEAD") -> tuple[int, int]:
        return self.divergence


def table_snapshot(store) -> dict[str, list[tuple]]:
    """All rows of the index tables, for before/after comparisons."""
    return {
        "commits": [tuple(r) for r in store.query("SELECT * FROM commits ORDER BY hash")],
        "file_changes": [tuple(r) for r in store.query("SELECT * FROM file_changes ORDER BY id")],
    }


# --- Real repository builders ---

def git_env(timestamp: Optional[int] = None) -> dict[str, str]:
    env = dict(os.environ)
    env.update({
        "GIT_AUTHOR_NAME": "Test Author",
        "GIT_AUTHOR_EMAIL": "author@example.com",
        "GIT_COMMITTER_NAME": "Test Author",
        "GIT_COMMITTER_EMAIL": "author@example.com",
        "GIT_CONFIG_NOSYSTEM": "1",
    })
    if timestamp is not None:
        env["GIT_AUTHOR_DATE"] = f"@{timestamp} +0000"
        env["GIT_COMMITTER_DATE"] = f"@{timestamp} +0000"
    return env


def run_git(repo: Path, *args: str, timestamp: Optional[int] = None) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=str(repo),
        capture_output=True,
        text=True,
        env=git_env(timestamp),
        check=True,
    )
    return result.stdout.strip()


def git_commit(
    repo: Path,
    files: dict[str, Optional[str | bytes]],
    message: str,
    timestamp: Optional[int] = None,
) -> str:
    """Write (or delete, for None) the given files, commit them and return the hash."""
    for name, content in files.items():
        path = repo / name
        if content is None:
            run_git(repo, "rm", "-q", "--", name)
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        run_git(repo, "add", "--", name)
    run_git(repo, "commit", "-q", "--no-verify", "-m", message, timestamp=timestamp)
    return run_git(repo, "rev-parse", "HEAD")
