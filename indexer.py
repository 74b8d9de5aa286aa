"""Incremental commit indexer.

Turns the commit stream from a CommitSource into rows in the IndexStore.
Every run starts from an explicit Checkpoint and finishes by writing a new
one, so re-running after a crash or a history rewrite never duplicates rows:

- no checkpoint: scan the last ``initial_depth`` commits
- checkpoint commit still exists: scan ``<checkpoint>..<tip>``
- checkpoint commit is gone (rebase, amend, force-push): scan the last
  ``initial_depth`` commits again; commits already indexed are skipped
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional, Protocol

from pydantic import BaseModel

from commit_source import (
    CommitRecord,
    FileChange,
    NumstatEntry,
    RevisionNotFoundError,
    RevisionRange,
)
from index_store import Checkpoint, IndexedCommit, IndexStore
from memory_config import IndexConfig

logger = logging.getLogger(__name__)


class CommitSource(Protocol):
    def iter_commits(self, revision_range: RevisionRange) -> Iterator[CommitRecord]: ...

    def file_changes(self, commit_hash: str) -> list[FileChange]: ...

    def numstat(self, commit_hash: str) -> list[NumstatEntry]: ...

    def head(self) -> Optional[str]: ...

    def object_exists(self, commit_hash: str) -> bool: ...


class IndexMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    REWRITE_RECOVERY = "rewrite_recovery"
    EMPTY = "empty"  # no commits on the current branch yet


class IndexReport(BaseModel):
    """Outcome of one indexing run."""

    mode: IndexMode
    new_commits: int = 0
    scanned: int = 0
    skipped: int = 0
    checkpoint: Checkpoint


def summarize_numstat(entries: Iterable[NumstatEntry]) -> tuple[int, int, int]:
    """Return (files_changed, insertions, deletions) for a commit."""
    files_changed = insertions = deletions = 0
    for entry in entries:
        files_changed += 1
        insertions += max(entry.insertions, 0)
        deletions += max(entry.deletions, 0)
    return files_changed, insertions, deletions


def plan_range(
    checkpoint: Checkpoint,
    tip: str,
    source: CommitSource,
    depth: int,
) -> tuple[RevisionRange, IndexMode]:
    """Pick the revision range for a run starting from ``checkpoint``."""
    last = checkpoint.last_indexed_hash
    if not last:
        return RevisionRange.last(depth, tip), IndexMode.FULL
    if source.object_exists(last):
        return RevisionRange.since(last, tip), IndexMode.INCREMENTAL
    logger.info(
        "Checkpoint %s no longer exists (history rewritten?), rescanning last %d commits",
        last[:8], depth,
    )
    return RevisionRange.last(depth, tip), IndexMode.REWRITE_RECOVERY


class IncrementalIndexer:
    """Ingests new commits into an IndexStore exactly once."""

    def __init__(
        self,
        store: IndexStore,
        source: CommitSource,
        config: Optional[IndexConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.source = source
        self.config = config or IndexConfig()
        self.clock = clock

    def run(self, checkpoint: Optional[Checkpoint] = None) -> IndexReport:
        """Index everything new since ``checkpoint`` and return the new cursor.

        Defaults to the checkpoint stored in the index. The new checkpoint is
        written only after the whole scan succeeds; any exception propagates
        and leaves the previous checkpoint in place.
        """
        if checkpoint is None:
            checkpoint = self.store.load_checkpoint()

        tip = self.source.head()
        if tip is None:
            logger.info("No commits on the current branch, nothing to index")
            return IndexReport(mode=IndexMode.EMPTY, checkpoint=self._advance(None))

        revision_range, mode = plan_range(checkpoint, tip, self.source, self.config.initial_depth)
        try:
            scanned, new, skipped = self._scan(revision_range)
        except RevisionNotFoundError:
            if mode is not IndexMode.INCREMENTAL:
                raise
            # Checkpoint vanished between the existence check and the scan
            logger.info("Range %s became invalid, falling back to a full rescan",
                        " ".join(revision_range.to_args()))
            mode = IndexMode.REWRITE_RECOVERY
            scanned, new, skipped = self._scan(RevisionRange.last(self.config.initial_depth, tip))

        report = IndexReport(
            mode=mode,
            new_commits=new,
            scanned=scanned,
            skipped=skipped,
            checkpoint=self._advance(tip),
        )
        logger.debug(
            "Index run (%s): scanned=%d new=%d skipped=%d",
            mode.value, scanned, new, skipped,
        )
        return report

    def _advance(self, tip: Optional[str]) -> Checkpoint:
        checkpoint = Checkpoint(last_indexed_hash=tip, last_indexed_at=int(self.clock()))
        self.store.save_checkpoint(checkpoint)
        return checkpoint

    def _scan(self, revision_range: RevisionRange) -> tuple[int, int, int]:
        scanned = new = skipped = 0
        for commit in self.source.iter_commits(revision_range):
            scanned += 1
            if self.store.has_commit(commit.hash):
                skipped += 1
                continue
            if self._ingest(commit):
                new += 1
        return scanned, new, skipped

    def _ingest(self, commit: CommitRecord) -> bool:
        """Write one commit and its file changes atomically."""
        changes = self.source.file_changes(commit.hash)
        files_changed, insertions, deletions = summarize_numstat(self.source.numstat(commit.hash))
        row = IndexedCommit(
            hash=commit.hash,
            author=commit.author,
            timestamp=commit.timestamp,
            subject=commit.subject,
            files_changed=files_changed,
            insertions=insertions,
            deletions=deletions,
        )
        with self.store.transaction():
            if not self.store.insert_commit_if_absent(row):
                return False
            for change in changes:
                self.store.insert_file_change(commit.hash, change.path, change.status[:1])
        logger.debug("Indexed %s %s", commit.short_hash, commit.subject[:60])
        return True
