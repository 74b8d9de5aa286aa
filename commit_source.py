"""Read-only access to git history for the indexer.

Wraps the git CLI. Commits are streamed from ``git log -z`` so a large range
is never buffered in memory; per-commit file changes come from
``git diff-tree -z`` which keeps paths with tabs, quotes or newlines intact.

All git output is decoded as UTF-8 with ``errors="replace"``: a path or
subject that is not valid UTF-8 is stored with U+FFFD in place of the bad
bytes. sqlite3 only binds valid UTF-8 text, so surrogate-escaped strings
could not be stored.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Optional

logger = logging.getLogger(__name__)

FIELD_SEP = "\x1f"
RECORD_SEP = "\x00"
LOG_FORMAT = FIELD_SEP.join(["%H", "%an", "%at", "%s"])

# stderr fragments git emits when a revision in a range does not exist
_MISSING_REVISION_MARKERS = (
    "bad revision",
    "unknown revision",
    "bad object",
    "invalid object",
    "ambiguous argument",
    "invalid revision range",
)


class GitError(Exception):
    """A git command failed."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class RevisionNotFoundError(GitError):
    """A revision referenced by a range no longer exists (e.g. after a rebase)."""


class GitEnvironmentError(GitError):
    """git is missing, or the path is not inside a work tree."""


@dataclass(frozen=True)
class RevisionRange:
    """A commit range: the last N commits, or tip minus a known commit."""

    depth: Optional[int] = None
    exclude: Optional[str] = None
    tip: str = "HEAD"

    @classmethod
    def last(cls, n: int, tip: str = "HEAD") -> RevisionRange:
        return cls(depth=n, tip=tip)

    @classmethod
    def since(cls, known: str, tip: str = "HEAD") -> RevisionRange:
        return cls(exclude=known, tip=tip)

    @property
    def is_full(self) -> bool:
        return self.exclude is None

    def to_args(self) -> list[str]:
        if self.exclude is not None:
            return [f"{self.exclude}..{self.tip}"]
        return ["-n", str(self.depth or 0), self.tip]


@dataclass(frozen=True)
class CommitRecord:
    hash: str
    author: str
    timestamp: int
    subject: str

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


@dataclass(frozen=True)
class FileChange:
    status: str  # single letter: A, M, D, R, C, T, ...
    path: str


@dataclass(frozen=True)
class NumstatEntry:
    insertions: int
    deletions: int
    path: str


def _is_missing_revision(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _MISSING_REVISION_MARKERS)


def _iter_records(stream: IO[str], sep: str = RECORD_SEP, chunk_size: int = 8192) -> Iterator[str]:
    """Yield separator-terminated records from a text stream."""
    buffer = ""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        buffer += chunk
        *records, buffer = buffer.split(sep)
        for record in records:
            yield record
    if buffer:
        yield buffer


def parse_log_record(record: str) -> Optional[CommitRecord]:
    """Parse one ``git log -z`` record produced with LOG_FORMAT."""
    record = record.strip("\n")
    if not record:
        return None
    parts = record.split(FIELD_SEP, 3)
    if len(parts) != 4:
        logger.warning("Malformed git log record: %r", record[:200])
        return None
    commit_hash, author, ts, subject = parts
    try:
        timestamp = int(ts)
    except ValueError:
        logger.warning("Bad timestamp %r for commit %s", ts, commit_hash)
        timestamp = 0
    return CommitRecord(hash=commit_hash, author=author, timestamp=timestamp, subject=subject)


def parse_name_status(output: str) -> list[FileChange]:
    """Parse ``git diff-tree --name-status -z`` output.

    Each entry is ``STATUS NUL path NUL``; renames and copies carry two paths
    (``R100 NUL old NUL new NUL``) and are recorded under the new path.
    """
    tokens = output.split(RECORD_SEP)
    changes: list[FileChange] = []
    i = 0
    while i < len(tokens):
        token = tokens[i].strip("\n")
        if not token:
            i += 1
            continue
        letter = token[0]
        if letter in ("R", "C"):
            if i + 2 >= len(tokens):
                logger.warning("Truncated rename entry in diff-tree output")
                break
            changes.append(FileChange(status=letter, path=tokens[i + 2]))
            i += 3
        else:
            if i + 1 >= len(tokens):
                break
            changes.append(FileChange(status=letter, path=tokens[i + 1]))
            i += 2
    return changes


def _count(value: str) -> int:
    # Binary files report "-" for both counts
    try:
        return int(value)
    except ValueError:
        return 0


def parse_numstat(output: str) -> list[NumstatEntry]:
    """Parse ``git diff-tree --numstat -z`` output.

    Entries are ``ins TAB del TAB path NUL``; for renames the path field is
    empty and the old and new paths follow as two NUL-terminated tokens.
    """
    tokens = output.split(RECORD_SEP)
    entries: list[NumstatEntry] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if not token:
            continue
        parts = token.split("\t", 2)
        if len(parts) != 3:
            logger.warning("Malformed numstat entry: %r", token[:200])
            continue
        added, removed, path = parts
        if not path:
            if i + 1 >= len(tokens):
                break
            path = tokens[i + 1]
            i += 2
        entries.append(NumstatEntry(insertions=_count(added), deletions=_count(removed), path=path))
    return entries


class GitCommitSource:
    """Query interface over a local git repository."""

    def __init__(self, repo_path: str | Path, timeout: int = 30) -> None:
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.repo_path),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise GitEnvironmentError("git not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise GitError(f"git {args[0]} timed out after {self.timeout}s") from e

        if check and result.returncode != 0:
            stderr = result.stderr.strip()
            message = f"git {' '.join(args)} failed (rc={result.returncode}): {stderr[:200]}"
            if _is_missing_revision(stderr):
                raise RevisionNotFoundError(message, stderr)
            raise GitError(message, stderr)
        return result

    def iter_commits(self, revision_range: RevisionRange) -> Iterator[CommitRecord]:
        """Stream commits in the range, newest first."""
        cmd = ["git", "log", "-z", f"--format={LOG_FORMAT}", *revision_range.to_args(), "--"]
        logger.debug("Running %s", " ".join(cmd))
        # stderr goes to a file so git never blocks on a full pipe while stdout is read
        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as errfile:
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(self.repo_path),
                    stdout=subprocess.PIPE,
                    stderr=errfile,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except FileNotFoundError as e:
                raise GitEnvironmentError("git not found on PATH") from e

            try:
                for record in _iter_records(proc.stdout):
                    commit = parse_log_record(record)
                    if commit is not None:
                        yield commit
                try:
                    proc.wait(timeout=self.timeout)
                except subprocess.TimeoutExpired as e:
                    raise GitError(f"git log timed out after {self.timeout}s") from e
                if proc.returncode != 0:
                    errfile.seek(0)
                    stderr = errfile.read().strip()
                    message = f"git log {' '.join(revision_range.to_args())} failed: {stderr[:200]}"
                    if _is_missing_revision(stderr):
                        raise RevisionNotFoundError(message, stderr)
                    raise GitError(message, stderr)
            finally:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
                proc.stdout.close()

    def file_changes(self, commit_hash: str) -> list[FileChange]:
        result = self._run(
            "diff-tree", "--no-commit-id", "-r", "--name-status", "--root", "-z", commit_hash, "--",
        )
        return parse_name_status(result.stdout)

    def numstat(self, commit_hash: str) -> list[NumstatEntry]:
        result = self._run(
            "diff-tree", "--no-commit-id", "-r", "--numstat", "--root", "-z", commit_hash, "--",
        )
        return parse_numstat(result.stdout)

    def head(self) -> Optional[str]:
        """Current tip hash, or None on an unborn branch."""
        result = self._run("rev-parse", "--verify", "-q", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def object_exists(self, commit_hash: str) -> bool:
        if not commit_hash:
            return False
        result = self._run("cat-file", "-e", f"{commit_hash}^{{commit}}", check=False)
        return result.returncode == 0

    def current_branch(self) -> str:
        result = self._run("symbolic-ref", "--short", "-q", "HEAD", check=False)
        branch = result.stdout.strip()
        return branch if result.returncode == 0 and branch else "detached"

    def resolve_ref(self, name: str) -> Optional[str]:
        result = self._run("rev-parse", "--verify", "-q", f"{name}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def ahead_behind(self, base: str, ref: str = "HEAD") -> tuple[int, int]:
        """Return (ahead, behind) of ``ref`` relative to ``base``."""
        result = self._run("rev-list", "--left-right", "--count", f"{base}...{ref}")
        parts = result.stdout.split()
        if len(parts) != 2:
            return 0, 0
        behind, ahead = (_count(p) for p in parts)
        return ahead, behind

    def toplevel(self) -> Path:
        result = self._run("rev-parse", "--show-toplevel")
        return Path(result.stdout.strip())

    def hooks_dir(self) -> Path:
        # honours core.hooksPath and linked worktrees
        result = self._run("rev-parse", "--git-path", "hooks")
        return self.repo_path / result.stdout.strip()


def check_environment(path: str | Path) -> Path:
    """Verify git is available and ``path`` is inside a work tree.

    Returns the repository top level. Raises GitEnvironmentError otherwise.
    """
    if shutil.which("git") is None:
        raise GitEnvironmentError("git not found on PATH")
    source = GitCommitSource(path)
    result = source._run("rev-parse", "--is-inside-work-tree", check=False)
    if result.returncode != 0 or result.stdout.strip() != "true":
        raise GitEnvironmentError(f"not inside a git work tree: {path}")
    return source.toplevel()
