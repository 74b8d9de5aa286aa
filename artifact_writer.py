"""Session artifacts: the CLAUDE.md memory section and hook registration.

None of these merges are fatal. Each returns a Result whose data names the
action taken (``created``, ``updated``, ``appended``, ``added``, ``exists``),
and content outside the parts git-memory owns is left untouched.
"""

from __future__ import annotations

import json
import logging
import stat
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from memory_config import ArtifactConfig, Result

logger = logging.getLogger(__name__)

SESSION_START_EVENT = "SessionStart"
POST_COMMIT_HOOK = "post-commit"


class HookCommand(BaseModel):
    type: str = "command"
    command: str


class HookMatcher(BaseModel):
    """One entry under hooks.<event> in .claude/settings.json."""

    matcher: str = ""
    hooks: list[HookCommand] = Field(default_factory=list)


def render_section(body: str, config: Optional[ArtifactConfig] = None) -> str:
    """Wrap rendered context in the start/end markers (no trailing newline)."""
    config = config or ArtifactConfig()
    return f"{config.start_marker}\n{config.heading}\n\n{body}\n{config.end_marker}"


def _read_text(path: Path) -> str:
    # surrogateescape + no newline translation keeps unrelated bytes intact
    return path.read_bytes().decode("utf-8", errors="surrogateescape")


def _write_text(path: Path, text: str) -> None:
    path.write_bytes(text.encode("utf-8", errors="surrogateescape"))


def _find_section(lines: list[str], start_marker: str, end_marker: str) -> Optional[tuple[int, int]]:
    """Line indices of the marked section, or None.

    Uses the first end marker and the closest start marker above it, so a
    stray start marker earlier in the document is left alone.
    """
    stripped = [line.rstrip("\r\n") for line in lines]
    try:
        end = stripped.index(end_marker)
    except ValueError:
        return None
    for start in range(end - 1, -1, -1):
        if stripped[start] == start_marker:
            return start, end
    return None


def merge_marked_section(
    path: str | Path, body: str, config: Optional[ArtifactConfig] = None,
) -> Result[str]:
    """Create, replace or append the marked memory section in ``path``."""
    config = config or ArtifactConfig()
    path = Path(path)
    section = render_section(body, config)

    try:
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            _write_text(path, section + "\n")
            logger.info("Created %s with project memory", path)
            return Result.ok("created")

        text = _read_text(path)
        lines = text.splitlines(keepends=True)
        found = _find_section(lines, config.start_marker, config.end_marker)
        if found is not None:
            start, end = found
            end_line = lines[end]
            ending = end_line[len(end_line.rstrip("\r\n")):]
            merged = "".join(lines[:start]) + section + ending + "".join(lines[end + 1:])
            _write_text(path, merged)
            logger.info("Updated project memory section in %s", path)
            return Result.ok("updated")

        separator = "" if not text or text.endswith("\n") else "\n"
        _write_text(path, f"{text}{separator}\n{section}\n")
        logger.info("Appended project memory section to %s", path)
        return Result.ok("appended")
    except OSError as e:
        return Result.fail(f"Could not update {path}: {e}", "WRITE_ERROR")


def install_session_hook(
    settings_path: str | Path,
    command: str,
    tool_name: str = "git-memory",
    event: str = SESSION_START_EVENT,
) -> Result[str]:
    """Register ``command`` as a session-start hook in a settings JSON file.

    Does nothing when the file already mentions ``tool_name``.
    """
    path = Path(settings_path)
    entry = HookMatcher(hooks=[HookCommand(command=command)]).model_dump()

    try:
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            data = {"hooks": {event: [entry]}}
            path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
            logger.info("Created %s with %s hook", path, event)
            return Result.ok("created")

        raw = path.read_text(encoding="utf-8")
        if tool_name in raw:
            logger.info("%s hook already installed in %s", event, path)
            return Result.ok("exists")

        data = json.loads(raw) if raw.strip() else {}
        if not isinstance(data, dict):
            return Result.fail(f"{path} is not a JSON object", "INVALID_STRUCTURE")
        hooks = data.setdefault("hooks", {})
        if not isinstance(hooks, dict):
            return Result.fail(f"'hooks' in {path} is not an object", "INVALID_STRUCTURE")
        entries = hooks.setdefault(event, [])
        if not isinstance(entries, list):
            return Result.fail(f"'hooks.{event}' in {path} is not a list", "INVALID_STRUCTURE")
        entries.append(entry)

        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        logger.info("Added %s hook to %s", event, path)
        return Result.ok("added")
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except OSError as e:
        return Result.fail(f"Could not update {path}: {e}", "WRITE_ERROR")


def install_post_commit_hook(
    hooks_dir: str | Path, command: str, tool_name: str = "git-memory",
) -> Result[str]:
    """Run ``command`` from the repository's post-commit hook.

    The command must return immediately (``index --background``); its
    failures are discarded so a commit never fails because of indexing.
    """
    hook = Path(hooks_dir) / POST_COMMIT_HOOK
    block = f"# {tool_name}: auto-index on commit\n{command} >/dev/null 2>&1 || true\n"

    try:
        if hook.exists():
            existing = _read_text(hook)
            if tool_name in existing:
                logger.info("post-commit hook already installed")
                return Result.ok("exists")
            separator = "" if existing.endswith("\n") else "\n"
            _write_text(hook, f"{existing}{separator}\n{block}")
            action = "appended"
        else:
            hook.parent.mkdir(parents=True, exist_ok=True)
            _write_text(hook, f"#!/bin/sh\n{block}")
            action = "created"

        mode = hook.stat().st_mode
        hook.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        logger.info("post-commit hook %s at %s", action, hook)
        return Result.ok(action)
    except OSError as e:
        return Result.fail(f"Could not install {hook}: {e}", "WRITE_ERROR")
