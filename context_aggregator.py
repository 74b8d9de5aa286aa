"""Project context derived from the commit index.

All activity figures come from what has been indexed, never from live
history, so a commit made since the last `git-memory index` does not show
up here. Only the branch line queries git directly.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from itertools import groupby
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from commit_source import GitError
from index_store import IndexStore
from memory_config import ContextConfig

logger = logging.getLogger(__name__)

ROOT_AREA = "(root)"

_WINDOW_SQL = "SELECT hash FROM commits ORDER BY ts DESC, hash DESC LIMIT ?"

HOT_FILES_SQL = f"""
    SELECT file_path, COUNT(*) AS changes
    FROM file_changes
    WHERE commit_hash IN ({_WINDOW_SQL})
    GROUP BY file_path
    ORDER BY changes DESC, file_path ASC
    LIMIT ?
"""

ACTIVE_AREAS_SQL = f"""
    SELECT
        CASE WHEN INSTR(file_path, '/') > 0
            THEN SUBSTR(file_path, 1, INSTR(file_path, '/') - 1)
            ELSE ?
        END AS area,
        COUNT(*) AS changes
    FROM file_changes
    WHERE commit_hash IN ({_WINDOW_SQL})
    GROUP BY area
    ORDER BY changes DESC, area ASC
    LIMIT ?
"""

RECENT_COMMITS_SQL = "SELECT hash, ts, message FROM commits ORDER BY ts DESC, hash DESC"


class BranchSource(Protocol):
    def current_branch(self) -> str: ...

    def resolve_ref(self, name: str) -> Optional[str]: ...

    def ahead_behind(self, base: str, ref: str = "HEAD") -> tuple[int, int]: ...


class PathActivity(BaseModel):
    """Change count for a file path or a top-level area."""

    name: str
    changes: int


class DayActivity(BaseModel):
    """Commits made on one local calendar day, newest first."""

    day: date
    entries: list[str] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.entries)

    @property
    def text(self) -> str:
        return "\n".join(self.entries)


class BranchStatus(BaseModel):
    branch: str
    trunk: Optional[str] = None
    ahead: int = 0
    behind: int = 0

    @property
    def compared(self) -> bool:
        return self.trunk is not None and self.trunk != self.branch


class ProjectContext(BaseModel):
    """Everything rendered into the session context."""

    branch: BranchStatus
    window_commits: int
    hot_files: list[PathActivity] = Field(default_factory=list)
    active_areas: list[PathActivity] = Field(default_factory=list)
    recent_activity: list[DayActivity] = Field(default_factory=list)


def area_of(file_path: str) -> str:
    """Top-level path segment, or ROOT_AREA for files at the repository root."""
    head, sep, _ = file_path.partition("/")
    return head if sep else ROOT_AREA


class ContextAggregator:
    """Read-only queries over an IndexStore."""

    def __init__(
        self,
        store: IndexStore,
        branches: BranchSource,
        config: Optional[ContextConfig] = None,
    ) -> None:
        self.store = store
        self.branches = branches
        self.config = config or ContextConfig()

    def hot_files(self, window: Optional[int] = None, limit: Optional[int] = None) -> list[PathActivity]:
        """Most frequently changed paths among the newest ``window`` commits."""
        if window is None:
            window = self.config.window_commits
        if limit is None:
            limit = self.config.hot_files_limit
        rows = self.store.query(HOT_FILES_SQL, (max(window, 0), max(limit, 0)))
        return [PathActivity(name=row["file_path"], changes=row["changes"]) for row in rows]

    def active_areas(self, window: Optional[int] = None, limit: Optional[int] = None) -> list[PathActivity]:
        """Change counts grouped by top-level directory."""
        if window is None:
            window = self.config.window_commits
        if limit is None:
            limit = self.config.areas_limit
        rows = self.store.query(ACTIVE_AREAS_SQL, (ROOT_AREA, max(window, 0), max(limit, 0)))
        return [PathActivity(name=row["area"], changes=row["changes"]) for row in rows]

    def recent_activity(self, limit: Optional[int] = None) -> list[DayActivity]:
        """Indexed commits grouped by local calendar day, newest day first."""
        if limit is None:
            limit = self.config.activity_limit
        width = self.config.subject_width
        days: list[DayActivity] = []
        if limit <= 0:
            return days
        rows = self.store.iter_query(RECENT_COMMITS_SQL)
        for day, group in groupby(rows, key=lambda row: datetime.fromtimestamp(row["ts"]).date()):
            if len(days) >= limit:
                break
            entries = [f"{row['hash'][:7]} {(row['message'] or '')[:width]}" for row in group]
            days.append(DayActivity(day=day, entries=entries))
        return days

    def branch_status(self) -> BranchStatus:
        branch = self.branches.current_branch()
        trunk = None
        for candidate in self.config.trunk_candidates:
            if self.branches.resolve_ref(candidate):
                trunk = candidate
                break

        status = BranchStatus(branch=branch, trunk=trunk)
        if status.compared:
            try:
                status.ahead, status.behind = self.branches.ahead_behind(trunk, "HEAD")
            except GitError as e:
                logger.warning("Could not compare %s with %s: %s", branch, trunk, e)
        return status

    def build(self, limit: Optional[int] = None) -> ProjectContext:
        return ProjectContext(
            branch=self.branch_status(),
            window_commits=self.config.window_commits,
            hot_files=self.hot_files(),
            active_areas=self.active_areas(),
            recent_activity=self.recent_activity(limit),
        )


def render_context(context: ProjectContext) -> str:
    """Render a ProjectContext as plain text with pipe-delimited rows."""
    branch = context.branch
    lines = [f"## Branch: {branch.branch}"]
    if branch.compared:
        lines.append(f"Ahead: {branch.ahead} / Behind: {branch.behind} vs {branch.trunk}")
    lines.append("")

    lines.append(f"## Hot Files (last {context.window_commits} commits)")
    lines.extend(f"{f.changes}|{f.name}" for f in context.hot_files)
    if not context.hot_files:
        lines.append("(none)")
    lines.append("")

    lines.append("## Active Areas")
    lines.extend(f"{a.changes}|{a.name}" for a in context.active_areas)
    if not context.active_areas:
        lines.append("(none)")
    lines.append("")

    lines.append("## Recent Activity")
    lines.extend(f"{d.day.isoformat()}|{d.count}|{d.text}" for d in context.recent_activity)
    if not context.recent_activity:
        lines.append("(none)")

    return "\n".join(lines)
