"""``taskloop init``: create the state directory and agent commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from taskloop import log
from taskloop.config import SPECS_DIR, STATE_DIR
from taskloop.errors import ConfigError
from taskloop.io_utils import dump_json, write_text
from taskloop.lockfile import now_iso

DIRECTORIES = (STATE_DIR, SPECS_DIR, ".claude", ".claude/commands")

BUILD_NEXT_MD = """\
---
description: Implement the next task from a taskloop tasks.json
argument-hint: <path to tasks.json>
---

You are running inside `taskloop build`. The task graph is at: $ARGUMENTS

1. Read the lock file named by `$TASKLOOP_LOCK_FILE`; `currentTask.id` is the
   task you must implement (its `status` is `in_progress` in the graph). Do
   not start any other task.
2. Implement it completely: follow its `steps` and make every item in
   `acceptance` true. Add or update tests where appropriate.
3. Run the project's tests and fix failures you introduced.
4. Set the task's `status` to `completed` in the task graph. Do not modify
   other tasks.
5. Signal completion so the loop can record stats and move on:

       taskloop notify build "$TASKLOOP_LOCK_FILE" --task <task id>

   This ends the session. Do not do anything after it.
"""

PROCESS_COMMENTS_MD = """\
---
description: Act on @ai comments collected by taskloop watch
argument-hint: <path to comments.json>
---

You are running inside `taskloop watch`. The collected comments are at:
$ARGUMENTS

The file has the shape `{"comments": [{"file", "line", "text"}], "metadata": {...}}`.

1. Read every comment and the surrounding code at `file:line`.
2. Make the requested change for each comment.
3. Remove each processed `@ai` comment, including its stop word, so it does
   not trigger again.
4. When done, report back:

       taskloop notify watch-complete '{"filesProcessed": <n>, "commentsFound": <n>}'
"""

SETTINGS_LOCAL = {
    "statusLine": {"type": "command", "command": "taskloop statusline"},
    "hooks": {
        "SessionStart": [
            {"hooks": [{"type": "command", "command": "taskloop hook session-start"}]}
        ]
    },
}


def sample_tasks() -> dict[str, object]:
    return {
        "title": "Example feature",
        "branch": "feature/example",
        "created": now_iso(),
        "tasks": [
            {
                "id": 1,
                "title": "Create the data model",
                "description": "Add the model and its migration.",
                "steps": ["Define the fields", "Write the migration"],
                "status": "pending",
                "dependencies": [],
                "priority": 1,
                "acceptance": ["Migration runs cleanly"],
            },
            {
                "id": 2,
                "title": "Expose the model through an API endpoint",
                "description": "List and create endpoints with validation.",
                "steps": ["Add routes", "Add controller", "Add request validation"],
                "status": "pending",
                "dependencies": [1],
                "priority": 2,
                "acceptance": ["Endpoints covered by feature tests"],
            },
        ],
    }


@dataclass
class InitReport:
    created: list[str] = field(default_factory=list)
    overwritten: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


def _place(root: Path, rel: str, content: str, force: bool, report: InitReport) -> None:
    target = root / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        if not force:
            report.kept.append(rel)
            log.console.print(f"  [yellow]Exists[/yellow] {rel}")
            return
        write_text(target, content)
        report.overwritten.append(rel)
        log.console.print(f"  [green]Overwritten[/green] {rel}")
        return
    write_text(target, content)
    report.created.append(rel)
    log.console.print(f"  [green]Created[/green] {rel}")


def init_project(root: Path, force: bool = False) -> InitReport:
    if not root.is_dir():
        raise ConfigError(f"Directory not found: {root}")

    log.info(f"Initializing taskloop in: {root}")
    report = InitReport()
    for rel in DIRECTORIES:
        path = root / rel
        if path.is_dir():
            log.console.print(f"  [yellow]Exists[/yellow] {rel}/")
        else:
            path.mkdir(parents=True, exist_ok=True)
            report.created.append(f"{rel}/")
            log.console.print(f"  [green]Created[/green] {rel}/")

    _place(root, ".claude/commands/build-next.md", BUILD_NEXT_MD, force, report)
    _place(root, ".claude/commands/process-comments.md", PROCESS_COMMENTS_MD, force, report)
    _place(root, ".claude/settings.local.json", dump_json(SETTINGS_LOCAL), force, report)
    _place(root, f"{SPECS_DIR}/example/tasks.json", dump_json(sample_tasks()), force, report)

    log.console.print("")
    log.success("taskloop initialized!")
    log.console.print("")
    log.console.print("Next steps:")
    log.console.print(f"  1. Describe a feature in {SPECS_DIR}/<feature>/tasks.json")
    log.console.print(f"  2. Run: [green]taskloop build {SPECS_DIR}/<feature>/tasks.json[/green]")
    return report
