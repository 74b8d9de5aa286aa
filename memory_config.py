"""Configuration validation for git-memory."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_FILENAME = "config.json"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class IndexConfig(BaseModel):
    """Commit scanning limits."""

    initial_depth: int = Field(
        default=100, ge=1, le=100_000,
        description="Commits scanned on a first run or after a history rewrite",
    )


class ContextConfig(BaseModel):
    """Recency window and row limits for the rendered context."""

    window_commits: int = Field(default=50, ge=1)
    hot_files_limit: int = Field(default=10, ge=1, le=100)
    areas_limit: int = Field(default=8, ge=1, le=100)
    activity_limit: int = Field(default=20, ge=1, le=1000)
    subject_width: int = Field(default=60, ge=10, le=500)
    trunk_candidates: list[str] = Field(
        default_factory=lambda: ["main", "master"],
        description="Branches tried in order when computing ahead/behind",
    )


class ArtifactConfig(BaseModel):
    """Session artifacts: CLAUDE.md section and hook registration."""

    claude_md: str = Field(default="CLAUDE.md")
    start_marker: str = Field(default="<!-- git-memory:start -->")
    end_marker: str = Field(default="<!-- git-memory:end -->")
    heading: str = Field(default="## Project Memory (auto-generated)")
    settings_path: str = Field(default=".claude/settings.json")
    tool_name: str = Field(
        default="git-memory",
        description="Substring identifying an existing registration of this tool",
    )
    session_hook_command: str = Field(
        default="git-memory index --quiet && git-memory refresh-claude-md --quiet",
    )
    post_commit_command: str = Field(default="git-memory index --background --quiet")


class MemoryConfig(BaseModel):
    """Root configuration model for .ai/config.json."""

    db_dir: str = Field(default=".ai")
    db_name: str = Field(default="memory.db")
    index: IndexConfig = Field(default_factory=IndexConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    artifacts: ArtifactConfig = Field(default_factory=ArtifactConfig)

    def db_path(self, root: str | Path) -> Path:
        """Location of the store file inside the working tree at ``root``."""
        return Path(root) / self.db_dir / self.db_name


def load_config(config_path: str | Path) -> Result[MemoryConfig]:
    """Load and validate git-memory config from JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.debug("Config not found at %s, using defaults", path)
        return Result.ok(MemoryConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = MemoryConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")
