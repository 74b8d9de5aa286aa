"""git-memory: index git history into SQLite for LLM session context.

Entry point for the ``git-memory`` command. Diagnostics and progress go to
stderr through logging; command output (context, status) goes to stdout.
"""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from artifact_writer import install_post_commit_hook, install_session_hook, merge_marked_section
from commit_source import GitCommitSource, GitEnvironmentError, GitError, check_environment
from context_aggregator import ContextAggregator, render_context
from index_store import IndexStore, StoreNotInitializedError
from indexer import IncrementalIndexer, IndexReport
from memory_config import CONFIG_FILENAME, ContextConfig, MemoryConfig, Result, load_config

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1

BACKGROUND_LOG = "index.log"


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        })


def setup_logging(verbose: bool = False, quiet: bool = False, json_log: bool = False) -> None:
    """Configure root logging on stderr."""
    if verbose:
        log_level = logging.DEBUG
    elif quiet:
        log_level = logging.WARNING
    else:
        log_level = logging.INFO

    if json_log:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(
            level=log_level,
            stream=sys.stderr,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class GitMemory:
    """Commands of the git-memory CLI, bound to one repository."""

    def __init__(
        self,
        root: str | Path,
        config: Optional[MemoryConfig] = None,
        source: Optional[GitCommitSource] = None,
    ) -> None:
        self.root = Path(root)
        self.config = config or MemoryConfig()
        self.source = source or GitCommitSource(self.root)
        self.db_path = self.config.db_path(self.root)

    def _open_store(self) -> IndexStore:
        return IndexStore(self.db_path).open()

    def _index(self, store: IndexStore) -> IndexReport:
        indexer = IncrementalIndexer(store, self.source, self.config.index)
        return indexer.run(store.load_checkpoint())

    def init(self) -> int:
        """Create the store, index the last commits and install the session hook."""
        with IndexStore(self.db_path).initialize() as store:
            logger.info("Indexing last %d commits...", self.config.index.initial_depth)
            report = self._index(store)
        logger.info("Indexed %d commits → %s", report.new_commits, self.db_path)

        self.install_session_hook()
        result = self.refresh_claude_md()
        return EXIT_OK if result.success else EXIT_ERROR

    def index(self) -> int:
        with self._open_store() as store:
            report = self._index(store)
        logger.info("Indexed %d new commits", report.new_commits)
        return EXIT_OK

    def status(self) -> str:
        with self._open_store() as store:
            total = store.commit_count()
            checkpoint = store.load_checkpoint()
            branch_status = ContextAggregator(store, self.source, self.config.context).branch_status()

        lines = [
            f"Branch:    {branch_status.branch}",
            f"Indexed:   {total} commits",
        ]
        if checkpoint.last_indexed_hash:
            lines.append(f"Last hash: {checkpoint.last_indexed_hash[:8]}")
        if checkpoint.last_indexed_at:
            ran_at = datetime.fromtimestamp(checkpoint.last_indexed_at)
            lines.append(f"Last run:  {ran_at:%Y-%m-%d %H:%M}")
        if branch_status.compared:
            lines.append(
                f"vs {branch_status.trunk}: +{branch_status.ahead}/-{branch_status.behind}"
            )
        return "\n".join(lines)

    def context(self, limit: Optional[int] = None) -> str:
        with self._open_store() as store:
            aggregator = ContextAggregator(store, self.source, self.config.context)
            return render_context(aggregator.build(limit))

    def refresh_claude_md(self, limit: Optional[int] = None) -> Result[str]:
        artifacts = self.config.artifacts
        result = merge_marked_section(self.root / artifacts.claude_md, self.context(limit), artifacts)
        if not result.success:
            logger.error("Could not refresh %s: %s", artifacts.claude_md, result.error)
        return result

    def install_session_hook(self) -> Result[str]:
        artifacts = self.config.artifacts
        settings = self.root / artifacts.settings_path
        result = install_session_hook(settings, artifacts.session_hook_command, artifacts.tool_name)
        if not result.success:
            logger.warning("Could not update %s (%s); add the hook manually", settings, result.error)
        return result

    def install_hook(self) -> int:
        """Install the post-commit hook, then make sure the index and CLAUDE.md exist."""
        artifacts = self.config.artifacts
        result = install_post_commit_hook(
            self.source.hooks_dir(), artifacts.post_commit_command, artifacts.tool_name,
        )
        if not result.success:
            logger.error("post-commit hook not installed: %s", result.error)
            return EXIT_ERROR
        if not self.db_path.exists():
            return self.init()
        return EXIT_OK if self.refresh_claude_md().success else EXIT_ERROR

    def spawn_background_index(self) -> int:
        """Start ``index`` in a detached process logging to .ai/index.log.

        Returns immediately so a git hook is never held up; failures of the
        worker end up in the log file only.
        """
        log_path = self.db_path.parent / BACKGROUND_LOG
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [sys.executable, "-m", "git_memory", "index", "--repo", str(self.root), "--quiet"]
        with open(log_path, "a", encoding="utf-8") as log:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.root),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=log,
                start_new_session=True,
            )
        logger.debug("Background index started (pid %d), logging to %s", proc.pid, log_path)
        return proc.pid


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--repo", default=".", help="Path inside the git repository")
    common.add_argument("--config", default=None, help="Path to config.json (default: .ai/config.json)")
    common.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    common.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    common.add_argument("--json-log", action="store_true", help="Output structured JSON logs")

    parser = argparse.ArgumentParser(
        prog="git-memory", description="Git history as project memory"
    )
    sub = parser.add_subparsers(dest="command", metavar="<command>")
    sub.add_parser("init", parents=[common], help="Create .ai/memory.db and index last 100 commits")
    index = sub.add_parser("index", parents=[common], help="Incremental index (new commits only)")
    index.add_argument("--background", action="store_true", help="Run detached, logging to .ai/index.log")
    sub.add_parser("status", parents=[common], help="Show index status and branch info")
    context = sub.add_parser("context", parents=[common], help="Output project context for LLM sessions")
    context.add_argument("--limit", type=positive_int, default=None, help="Days of recent activity to show")
    refresh = sub.add_parser("refresh-claude-md", parents=[common], help="Update CLAUDE.md with project memory section")
    refresh.add_argument("--limit", type=positive_int, default=None, help="Days of recent activity to show")
    sub.add_parser("install-hook", parents=[common], help="Install a post-commit hook that indexes in the background")
    sub.add_parser("version", help="Show version")
    return parser


def run(args: argparse.Namespace) -> int:
    """Execute a parsed command. Raises on environment and precondition errors."""
    root = check_environment(Path(args.repo).resolve())

    config_path = args.config or (root / ".ai" / CONFIG_FILENAME)
    config_result = load_config(config_path)
    if not config_result.success:
        logger.error("Config error: %s", config_result.error)
        return EXIT_ERROR
    config = config_result.data
    if getattr(args, "limit", None) is not None:
        config.context = ContextConfig.model_validate(
            {**config.context.model_dump(), "activity_limit": args.limit}
        )

    app = GitMemory(root, config)
    command = args.command
    if command == "init":
        return app.init()
    if command == "index":
        if args.background:
            app.spawn_background_index()
            return EXIT_OK
        return app.index()
    if command == "status":
        print(app.status())
        return EXIT_OK
    if command == "context":
        print(app.context())
        return EXIT_OK
    if command == "refresh-claude-md":
        return EXIT_OK if app.refresh_claude_md().success else EXIT_ERROR
    if command == "install-hook":
        return app.install_hook()
    raise ValueError(f"unknown command: {command}")


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_OK)
    if args.command == "version":
        print(f"git-memory {VERSION}")
        sys.exit(EXIT_OK)

    setup_logging(verbose=args.verbose, quiet=args.quiet, json_log=args.json_log)

    try:
        exit_code = run(args)
    except GitEnvironmentError as e:
        logger.error("%s", e)
        exit_code = EXIT_ERROR
    except StoreNotInitializedError as e:
        logger.error("%s", e)
        exit_code = EXIT_ERROR
    except (GitError, sqlite3.Error) as e:
        logger.error("git-memory %s failed: %s", args.command, e)
        exit_code = EXIT_ERROR
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
