"""Tests for taskloop.statusline — agent statusline and session hook."""

from __future__ import annotations

import json

import pytest

from taskloop.errors import LockFileError
from taskloop.lockfile import LockRecord, read_lock, write_lock
from taskloop.statusline import (
    CYAN,
    GREEN,
    RED,
    RESET,
    YELLOW,
    context_color,
    context_percent,
    model_name,
    parse_status,
    record_session,
    render,
    short_model_name,
    statusline,
    task_info,
)


class TestParsing:
    """Tests for status parsing helpers."""

    @pytest.mark.parametrize("raw", ["", "   ", "nope", "[1]"])
    def test_bad_input_is_empty(self, raw):
        """Unusable stdin is an empty status."""
        assert parse_status(raw) == {}

    def test_model_name(self):
        """display_name wins over id; missing is Unknown."""
        assert model_name({"model": {"display_name": "Opus", "id": "x"}}) == "Opus"
        assert model_name({"model": {"id": "claude-sonnet-4"}}) == "claude-sonnet-4"
        assert model_name({"model": "haiku"}) == "haiku"
        assert model_name({}) == "Unknown"

    @pytest.mark.parametrize("name,short", [
        ("claude-opus-4-1", "Opus"),
        ("Claude Sonnet", "Sonnet"),
        ("claude-3-5-haiku", "Haiku"),
        ("gpt-4o", "Gpt"),
        ("Unknown", "Unknown"),
    ])
    def test_short_model_name(self, name, short):
        """Known families are recognised anywhere in the name."""
        assert short_model_name(name) == short

    def test_context_percent(self):
        """used_percentage is rounded."""
        assert context_percent({"context_window": {"used_percentage": 41.6}}) == 42

    def test_legacy_context(self):
        """Older statuses give size and usage separately."""
        assert context_percent({"context_window": 200000, "context_used": 50000}) == 25
        assert context_percent({"context_window": 0, "context_used": 5}) == 0

    def test_no_context(self):
        """Missing context is 0%."""
        assert context_percent({}) == 0

    @pytest.mark.parametrize("pct,color", [(0, GREEN), (59, GREEN), (60, YELLOW), (79, YELLOW), (80, RED)])
    def test_context_color(self, pct, color):
        """Green below 60, yellow below 80, red above."""
        assert context_color(pct) == color


class TestRender:
    """Tests for render / task_info / statusline."""

    def test_without_lock(self):
        """No lock: model and context only."""
        line = render({"model": {"display_name": "Claude Opus"}, "context_window": {"used_percentage": 10}})
        assert line == f"{YELLOW}[Opus]{RESET} {GREEN}10%{RESET}"

    def test_with_task(self):
        """The current task is prefixed."""
        lock = {"currentTask": {"id": 4, "title": "Add login"}}
        line = render({"model": "sonnet"}, lock)
        assert line.startswith(f"{CYAN}#4: Add login | {RESET}")

    def test_long_title_truncated(self):
        """Titles longer than 40 characters are shortened."""
        info = task_info({"currentTask": {"id": 1, "title": "x" * 60}})
        assert info == f"#1: {'x' * 37}... | "

    def test_watch_lock_has_no_task(self):
        """A watch lock has no currentTask."""
        assert task_info({"mode": "interactive"}) == ""

    def test_statusline_reads_active_lock(self, tmp_path):
        """The active build lock supplies the task."""
        write_lock(
            tmp_path / ".taskloop" / "specs" / "auth" / "index.lock",
            LockRecord(pid=1, context={"currentTask": {"id": 2, "title": "Login"}}),
        )
        raw = json.dumps({"model": {"id": "claude-opus"}, "context_window": {"used_percentage": 85}})
        line = statusline(raw, tmp_path)
        assert "#2: Login" in line
        assert f"{RED}85%{RESET}" in line

    def test_statusline_empty_project(self, tmp_path):
        """No lock and no input still renders."""
        assert statusline("", tmp_path) == f"{YELLOW}[Unknown]{RESET} {GREEN}0%{RESET}"


class TestRecordSession:
    """Tests for record_session."""

    def test_records_session_id(self, tmp_path):
        """session_id is merged into the lock named by the environment."""
        path = tmp_path / "index.lock"
        write_lock(path, LockRecord(pid=5, context={"currentTask": {"id": 1}}))
        env = {"TASKLOOP_LOCK_FILE": str(path)}

        assert record_session('{"session_id": "s-1"}', env)

        record = read_lock(path)
        assert record.context["session_id"] == "s-1"
        assert record.context["currentTask"] == {"id": 1}

    def test_no_env(self):
        """Outside a supervised run there is nothing to do."""
        assert not record_session('{"session_id": "s-1"}', {})

    def test_no_session_id(self, tmp_path):
        """Input without session_id is ignored."""
        assert not record_session("{}", {"TASKLOOP_LOCK_FILE": str(tmp_path / "index.lock")})

    def test_lock_gone(self, tmp_path):
        """A lock removed in the meantime is not recreated."""
        path = tmp_path / "index.lock"
        assert not record_session('{"session_id": "s"}', {"TASKLOOP_LOCK_FILE": str(path)})
        assert not path.exists()

    def test_unwritable_lock_raises(self, tmp_path, monkeypatch):
        """Write failures propagate as LockFileError."""
        path = tmp_path / "index.lock"
        write_lock(path, LockRecord(pid=5))

        def fail(*_args, **_kwargs):
            raise OSError("read-only file system")

        monkeypatch.setattr("taskloop.lockfile.write_json_atomic", fail)
        with pytest.raises(LockFileError, match="read-only"):
            record_session('{"session_id": "s"}', {"TASKLOOP_LOCK_FILE": str(path)})
