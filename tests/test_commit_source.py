"""Tests for commit_source module."""

import io
import os
import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from commit_source import (
    FIELD_SEP,
    CommitRecord,
    FileChange,
    GitCommitSource,
    GitEnvironmentError,
    GitError,
    NumstatEntry,
    RevisionNotFoundError,
    RevisionRange,
    _iter_records,
    check_environment,
    parse_log_record,
    parse_name_status,
    parse_numstat,
)

from helpers import BASE_TS, git_commit, run_git


class TestRevisionRange:
    def test_last(self) -> None:
        assert RevisionRange.last(100).to_args() == ["-n", "100", "HEAD"]
        assert RevisionRange.last(5, "abc123").to_args() == ["-n", "5", "abc123"]
        assert RevisionRange.last(5).is_full

    def test_since(self) -> None:
        rng = RevisionRange.since("abc123", "def456")
        assert rng.to_args() == ["abc123..def456"]
        assert not rng.is_full


class TestParsers:
    def test_parse_log_record(self) -> None:
        record = FIELD_SEP.join(["a" * 40, "Jane Doe", "1700000000", "Add feature"])
        commit = parse_log_record(record)
        assert commit == CommitRecord(
            hash="a" * 40, author="Jane Doe", timestamp=1700000000, subject="Add feature",
        )
        assert commit.short_hash == "a" * 7

    def test_parse_log_record_keeps_special_characters(self) -> None:
        subject = "fix \"quoted\" | piped 'thing' \\ done"
        record = FIELD_SEP.join(["b" * 40, "O'Brien", "1", subject])
        commit = parse_log_record(record)
        assert commit.subject == subject
        assert commit.author == "O'Brien"

    def test_parse_log_record_malformed(self) -> None:
        assert parse_log_record("") is None
        assert parse_log_record("not a record") is None

    def test_parse_name_status(self) -> None:
        output = "M\0a.txt\0A\0dir/b c.txt\0R100\0old.py\0new.py\0D\0gone\0"
        assert parse_name_status(output) == [
            FileChange("M", "a.txt"),
            FileChange("A", "dir/b c.txt"),
            FileChange("R", "new.py"),
            FileChange("D", "gone"),
        ]

    def test_parse_name_status_empty(self) -> None:
        assert parse_name_status("") == []

    def test_parse_numstat_treats_binary_as_zero(self) -> None:
        output = "3\t1\ta.txt\0" "0\t5\tb.txt\0" "-\t-\tc.bin\0"
        assert parse_numstat(output) == [
            NumstatEntry(3, 1, "a.txt"),
            NumstatEntry(0, 5, "b.txt"),
            NumstatEntry(0, 0, "c.bin"),
        ]

    def test_parse_numstat_rename(self) -> None:
        output = "2\t2\t\0old.py\0new.py\0" "1\t0\tz.txt\0"
        assert parse_numstat(output) == [
            NumstatEntry(2, 2, "new.py"),
            NumstatEntry(1, 0, "z.txt"),
        ]

    def test_iter_records_across_chunks(self) -> None:
        stream = io.StringIO("first\0second record\0third")
        assert list(_iter_records(stream, chunk_size=4)) == ["first", "second record", "third"]


class TestGitCommitSource:
    def test_iter_commits_newest_first(self, repo_dir: Path) -> None:
        h1 = git_commit(repo_dir, {"a.txt": "one\n"}, "first", BASE_TS)
        h2 = git_commit(repo_dir, {"a.txt": "two\n"}, "second", BASE_TS + 60)

        commits = list(GitCommitSource(repo_dir).iter_commits(RevisionRange.last(10)))

        assert [c.hash for c in commits] == [h2, h1]
        assert commits[0].timestamp == BASE_TS + 60
        assert commits[0].author == "Test Author"
        assert commits[1].subject == "first"

    def test_depth_and_since_ranges(self, repo_dir: Path) -> None:
        hashes = [
            git_commit(repo_dir, {"a.txt": f"{i}\n"}, f"commit {i}", BASE_TS + i * 60)
            for i in range(4)
        ]
        source = GitCommitSource(repo_dir)

        last_two = [c.hash for c in source.iter_commits(RevisionRange.last(2))]
        assert last_two == [hashes[3], hashes[2]]

        since = [c.hash for c in source.iter_commits(RevisionRange.since(hashes[1], hashes[3]))]
        assert since == [hashes[3], hashes[2]]

    def test_subject_with_quotes_and_pipes(self, repo_dir: Path) -> None:
        subject = 'Fix "parser" | handle it\'s edge case'
        git_commit(repo_dir, {"a.txt": "x\n"}, subject, BASE_TS)

        commit = next(GitCommitSource(repo_dir).iter_commits(RevisionRange.last(1)))
        assert commit.subject == subject

    def test_missing_revision_is_distinct_error(self, repo_dir: Path) -> None:
        git_commit(repo_dir, {"a.txt": "x\n"}, "only", BASE_TS)
        source = GitCommitSource(repo_dir)

        with pytest.raises(RevisionNotFoundError):
            list(source.iter_commits(RevisionRange.since("deadbeef" * 5)))

    def test_log_timeout_raises_git_error(self, tmp_path: Path) -> None:
        proc = MagicMock()
        proc.stdout = io.StringIO("")
        proc.wait.side_effect = subprocess.TimeoutExpired(cmd="git log", timeout=1)
        source = GitCommitSource(tmp_path, timeout=1)

        with patch("commit_source.subprocess.Popen", return_value=proc):
            with pytest.raises(GitError, match="timed out") as exc_info:
                list(source.iter_commits(RevisionRange.last(5)))

        assert not isinstance(exc_info.value, RevisionNotFoundError)

    @pytest.mark.skipif(os.name == "nt", reason="needs a POSIX shell")
    def test_large_stderr_does_not_block(self, tmp_path: Path) -> None:
        # More than a pipe buffer of stderr before any stdout
        script = tmp_path / "git"
        script.write_text(
            "#!/bin/sh\n"
            "i=0\n"
            "while [ $i -lt 2000 ]; do echo 'warning: noisy output line padding padding' >&2; i=$((i+1)); done\n"
            "printf 'aaaaaaa\\037Dev\\0371700000000\\037subject\\000'\n",
            encoding="utf-8",
        )
        script.chmod(0o755)
        source = GitCommitSource(tmp_path, timeout=10)
        real_popen = subprocess.Popen

        def fake_popen(cmd, **kwargs):
            return real_popen([str(script), *cmd[1:]], **kwargs)

        with patch("commit_source.subprocess.Popen", side_effect=fake_popen):
            commits = list(source.iter_commits(RevisionRange.last(1)))

        assert [c.subject for c in commits] == ["subject"]

    def test_non_utf8_path_is_replaced(self, repo_dir: Path) -> None:
        name = os.fsdecode(b"caf\xe9.txt")
        try:
            commit = git_commit(repo_dir, {name: "x\n"}, "latin-1 name", BASE_TS)
        except (OSError, UnicodeError, subprocess.CalledProcessError):
            pytest.skip("filesystem does not accept non-UTF-8 names")

        assert GitCommitSource(repo_dir).file_changes(commit) == [FileChange("A", "caf\ufffd.txt")]

    def test_file_changes_and_numstat(self, repo_dir: Path) -> None:
        root = git_commit(
            repo_dir,
            {"a.txt": "1\n2\n3\n", "b.txt": "x\ny\nz\nw\nv\n"},
            "root",
            BASE_TS,
        )
        second = git_commit(
            repo_dir,
            {"a.txt": "1\n2\n3\n4\n", "b.txt": None, "c.bin": b"\x00\xff\x00binary\x00"},
            "second",
            BASE_TS + 60,
        )
        source = GitCommitSource(repo_dir)

        assert source.file_changes(root) == [FileChange("A", "a.txt"), FileChange("A", "b.txt")]
        assert source.file_changes(second) == [
            FileChange("M", "a.txt"),
            FileChange("D", "b.txt"),
            FileChange("A", "c.bin"),
        ]
        assert source.numstat(second) == [
            NumstatEntry(1, 0, "a.txt"),
            NumstatEntry(0, 5, "b.txt"),
            NumstatEntry(0, 0, "c.bin"),
        ]

    def test_paths_with_unusual_characters(self, repo_dir: Path) -> None:
        name = 'dir/we"ird | name.txt'
        commit = git_commit(repo_dir, {name: "x\n"}, "odd path", BASE_TS)
        source = GitCommitSource(repo_dir)

        assert source.file_changes(commit) == [FileChange("A", name)]
        assert source.numstat(commit) == [NumstatEntry(1, 0, name)]

    def test_head_on_empty_repository(self, repo_dir: Path) -> None:
        assert GitCommitSource(repo_dir).head() is None

    def test_head_and_object_exists(self, repo_dir: Path) -> None:
        commit = git_commit(repo_dir, {"a.txt": "x\n"}, "only", BASE_TS)
        source = GitCommitSource(repo_dir)

        assert source.head() == commit
        assert source.object_exists(commit)
        assert not source.object_exists("deadbeef" * 5)
        assert not source.object_exists("")

    def test_branches(self, repo_dir: Path) -> None:
        git_commit(repo_dir, {"a.txt": "base\n"}, "base", BASE_TS)
        run_git(repo_dir, "checkout", "-q", "-b", "feature")
        git_commit(repo_dir, {"f.txt": "1\n"}, "feature 1", BASE_TS + 60)
        git_commit(repo_dir, {"f.txt": "2\n"}, "feature 2", BASE_TS + 120)
        run_git(repo_dir, "checkout", "-q", "main")
        git_commit(repo_dir, {"m.txt": "1\n"}, "main 1", BASE_TS + 180)
        run_git(repo_dir, "checkout", "-q", "feature")
        source = GitCommitSource(repo_dir)

        assert source.current_branch() == "feature"
        assert source.resolve_ref("main") is not None
        assert source.resolve_ref("master") is None
        assert source.ahead_behind("main") == (2, 1)

        run_git(repo_dir, "checkout", "-q", "--detach")
        assert source.current_branch() == "detached"

    def test_hooks_dir(self, repo_dir: Path) -> None:
        hooks = GitCommitSource(repo_dir).hooks_dir()
        assert hooks.name == "hooks"
        assert hooks.resolve() == (repo_dir / ".git" / "hooks").resolve()


class TestCheckEnvironment:
    def test_returns_toplevel(self, repo_dir: Path) -> None:
        nested = repo_dir / "sub" / "dir"
        nested.mkdir(parents=True)
        assert check_environment(nested).resolve() == repo_dir.resolve()

    def test_not_a_repository(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
        if shutil.which("git") is None:
            pytest.skip("git not installed")

        with pytest.raises(GitEnvironmentError):
            check_environment(plain)

    def test_git_missing(self, tmp_path: Path) -> None:
        with patch("commit_source.shutil.which", return_value=None):
            with pytest.raises(GitEnvironmentError, match="git not found"):
                check_environment(tmp_path)
