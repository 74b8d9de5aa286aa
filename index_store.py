"""SQLite-backed commit index persisted to .ai/memory.db."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
CURRENT_CHECKPOINT_VERSION = 1

META_LAST_HASH = "last_indexed_hash"
META_LAST_AT = "last_indexed_at"
META_CHECKPOINT_VERSION = "checkpoint_version"

# version -> (name, func); MIGRATIONS[n] upgrades a store from n-1 to n
MIGRATIONS: dict[int, tuple[str, Callable[[sqlite3.Connection], None]]] = {}


def migration(version: int, name: str):
    """Decorator to register a schema migration."""

    def decorator(func: Callable[[sqlite3.Connection], None]):
        MIGRATIONS[version] = (name, func)
        return func

    return decorator


@migration(1, "initial_schema")
def migrate_v1(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS commits (
            hash TEXT PRIMARY KEY,
            author TEXT,
            ts INTEGER,
            message TEXT,
            files_changed INTEGER,
            insertions INTEGER,
            deletions INTEGER
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS file_changes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            commit_hash TEXT NOT NULL REFERENCES commits(hash),
            file_path TEXT NOT NULL,
            status TEXT
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_commits_ts ON commits(ts)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_file_changes_commit ON file_changes(commit_hash)")


class StoreNotInitializedError(Exception):
    """The store file is missing; `git-memory init` has not been run."""


class IndexedCommit(BaseModel):
    """A commit row with its ingestion-time aggregates."""

    hash: str
    author: str = ""
    timestamp: int = 0
    subject: str = ""
    files_changed: int = Field(default=0, ge=0)
    insertions: int = Field(default=0, ge=0)
    deletions: int = Field(default=0, ge=0)

    @property
    def short_hash(self) -> str:
        return self.hash[:7]


class Checkpoint(BaseModel):
    """Indexing cursor: how far the last successful run got."""

    version: int = Field(default=CURRENT_CHECKPOINT_VERSION)
    last_indexed_hash: Optional[str] = None
    last_indexed_at: Optional[int] = None

    @property
    def has_run(self) -> bool:
        return self.last_indexed_at is not None


class IndexStore:
    """Owns the commits, file_changes and meta tables.

    Usage::

        with IndexStore(path).initialize() as store:
            ...

    ``initialize()`` creates the file and applies migrations; ``open()``
    requires an existing store and raises StoreNotInitializedError otherwise.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

    # --- lifecycle ---

    def exists(self) -> bool:
        return self.db_path.is_file()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> IndexStore:
        """Create the store if needed and bring the schema up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if self._conn is None:
            self._conn = self._connect()
        self._migrate()
        return self

    def open(self) -> IndexStore:
        """Open an existing store."""
        if not self.exists():
            raise StoreNotInitializedError(
                f"{self.db_path} not found; run 'git-memory init' first"
            )
        if self._conn is None:
            self._conn = self._connect()
        if self._schema_version() == 0:
            self.close()
            raise StoreNotInitializedError(
                f"{self.db_path} has no schema; run 'git-memory init' first"
            )
        self._migrate()
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> IndexStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("IndexStore is not open")
        return self._conn

    def _schema_version(self) -> int:
        try:
            row = self.conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            return row[0] if row else 0
        except sqlite3.OperationalError:
            return 0

    def _migrate(self) -> None:
        current = self._schema_version()
        if current >= SCHEMA_VERSION:
            return
        with self.conn:
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
            )
            for version in range(current + 1, SCHEMA_VERSION + 1):
                if version in MIGRATIONS:
                    name, func = MIGRATIONS[version]
                    logger.info("Running migration %d: %s", version, name)
                    func(self.conn)
            self.conn.execute("DELETE FROM schema_version")
            self.conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit everything written inside the block, or nothing."""
        with self.conn:
            yield self.conn

    # --- writes ---

    def insert_commit_if_absent(self, commit: IndexedCommit) -> bool:
        """Insert a commit row. Returns False when the hash was already present."""
        cursor = self.conn.execute(
            """INSERT OR IGNORE INTO commits
               (hash, author, ts, message, files_changed, insertions, deletions)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                commit.hash, commit.author, commit.timestamp, commit.subject,
                commit.files_changed, commit.insertions, commit.deletions,
            ),
        )
        return cursor.rowcount == 1

    def insert_file_change(self, commit_hash: str, file_path: str, status: str) -> None:
        self.conn.execute(
            "INSERT INTO file_changes (commit_hash, file_path, status) VALUES (?, ?, ?)",
            (commit_hash, file_path, status),
        )

    def set_meta(self, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value)
            )

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Overwrite the stored checkpoint."""
        with self.conn:
            self.conn.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                [
                    (META_LAST_HASH, checkpoint.last_indexed_hash or ""),
                    (META_LAST_AT, str(checkpoint.last_indexed_at or 0)),
                    (META_CHECKPOINT_VERSION, str(checkpoint.version)),
                ],
            )

    # --- reads ---

    def get_meta(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def load_checkpoint(self) -> Checkpoint:
        last_hash = self.get_meta(META_LAST_HASH)
        last_at = self.get_meta(META_LAST_AT)
        try:
            at = int(last_at) if last_at else None
        except ValueError:
            logger.warning("Ignoring malformed %s value: %r", META_LAST_AT, last_at)
            at = None

        raw_version = self.get_meta(META_CHECKPOINT_VERSION)
        try:
            version = int(raw_version) if raw_version else CURRENT_CHECKPOINT_VERSION
        except ValueError:
            logger.warning("Ignoring malformed %s value: %r", META_CHECKPOINT_VERSION, raw_version)
            version = CURRENT_CHECKPOINT_VERSION
        if version > CURRENT_CHECKPOINT_VERSION:
            logger.warning(
                "Checkpoint version %d is newer than supported (%d), rescanning",
                version, CURRENT_CHECKPOINT_VERSION,
            )
            return Checkpoint()
        return Checkpoint(version=version, last_indexed_hash=last_hash or None, last_indexed_at=at)

    def has_commit(self, commit_hash: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM commits WHERE hash = ? LIMIT 1", (commit_hash,)
        ).fetchone()
        return row is not None

    def commit_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM commits").fetchone()[0]

    def get_commit(self, commit_hash: str) -> Optional[IndexedCommit]:
        row = self.conn.execute(
            """SELECT hash, author, ts, message, files_changed, insertions, deletions
               FROM commits WHERE hash = ?""",
            (commit_hash,),
        ).fetchone()
        if row is None:
            return None
        return IndexedCommit(
            hash=row["hash"],
            author=row["author"] or "",
            timestamp=row["ts"] or 0,
            subject=row["message"] or "",
            files_changed=row["files_changed"] or 0,
            insertions=row["insertions"] or 0,
            deletions=row["deletions"] or 0,
        )

    def file_changes_for(self, commit_hash: str) -> list[tuple[str, str]]:
        """(file_path, status) rows for a commit, in insertion order."""
        rows = self.conn.execute(
            "SELECT file_path, status FROM file_changes WHERE commit_hash = ? ORDER BY id",
            (commit_hash,),
        ).fetchall()
        return [(row["file_path"], row["status"]) for row in rows]

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def iter_query(self, sql: str, params: tuple | list = ()) -> Iterator[sqlite3.Row]:
        yield from self.conn.execute(sql, params)
