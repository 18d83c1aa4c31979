"""Tests for taskloop.scaffold — ``taskloop init``."""

from __future__ import annotations

import json

import pytest

from taskloop.errors import ConfigError
from taskloop.scaffold import init_project
from taskloop.tasks.io import load_task_graph
from taskloop.scheduler import detect_circular_dependencies


class TestInitProject:
    """Tests for init_project."""

    def test_creates_layout(self, tmp_path):
        """Directories, agent commands, settings and a sample graph are created."""
        report = init_project(tmp_path)

        assert (tmp_path / ".taskloop" / "specs").is_dir()
        assert (tmp_path / ".claude" / "commands" / "build-next.md").is_file()
        assert (tmp_path / ".claude" / "commands" / "process-comments.md").is_file()
        assert ".claude/settings.local.json" in report.created
        assert report.kept == []

    def test_settings_wire_statusline_and_hook(self, tmp_path):
        """The agent is told to call back into taskloop."""
        init_project(tmp_path)
        settings = json.loads((tmp_path / ".claude" / "settings.local.json").read_text(encoding="utf-8"))
        assert settings["statusLine"]["command"] == "taskloop statusline"
        hook = settings["hooks"]["SessionStart"][0]["hooks"][0]
        assert hook["command"] == "taskloop hook session-start"

    def test_sample_graph_is_valid(self, tmp_path):
        """The sample tasks.json loads and has no cycles."""
        init_project(tmp_path)
        graph = load_task_graph(tmp_path / ".taskloop" / "specs" / "example" / "tasks.json")
        assert len(graph.tasks) == 2
        assert detect_circular_dependencies(graph.tasks) == set()

    def test_build_command_mentions_notify(self, tmp_path):
        """The build-next command ends with the completion notification."""
        init_project(tmp_path)
        text = (tmp_path / ".claude" / "commands" / "build-next.md").read_text(encoding="utf-8")
        assert 'taskloop notify build "$TASKLOOP_LOCK_FILE" --task' in text

    def test_existing_files_kept(self, tmp_path):
        """Without --force user edits survive."""
        init_project(tmp_path)
        target = tmp_path / ".claude" / "commands" / "build-next.md"
        target.write_text("custom", encoding="utf-8")

        report = init_project(tmp_path)

        assert target.read_text(encoding="utf-8") == "custom"
        assert ".claude/commands/build-next.md" in report.kept
        assert report.created == []

    def test_force_overwrites(self, tmp_path):
        """--force rewrites generated files."""
        init_project(tmp_path)
        target = tmp_path / ".claude" / "commands" / "build-next.md"
        target.write_text("custom", encoding="utf-8")

        report = init_project(tmp_path, force=True)

        assert target.read_text(encoding="utf-8") != "custom"
        assert ".claude/commands/build-next.md" in report.overwritten

    def test_missing_directory(self, tmp_path):
        """init refuses a directory that does not exist."""
        with pytest.raises(ConfigError, match="Directory not found"):
            init_project(tmp_path / "nope")
