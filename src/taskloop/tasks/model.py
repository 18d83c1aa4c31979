"""Task and TaskGraph data models used across task loading, scheduling and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from taskloop.errors import TaskGraphError


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# Keys owned by the dataclass fields; everything else round-trips via ``extra``.
_TASK_KEYS = (
    "id", "title", "description", "steps", "status",
    "dependencies", "priority", "acceptance", "stats",
)
_GRAPH_KEYS = ("title", "branch", "created", "tasks", "sources", "stats")


def _list_field(raw: Mapping[str, Any], key: str, extra: dict[str, Any]) -> list[Any]:
    """A list-valued field; any other present value is kept verbatim in *extra*."""
    value = raw.get(key)
    if isinstance(value, list):
        return list(value)
    if key in raw:
        extra[key] = value
    return []


def _int_field(value: object, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TaskGraphError(f"{what} must be an integer, got {value!r}")
    return value


@dataclass
class Task:
    id: int
    title: str = ""
    description: str = ""
    status: str = TaskStatus.PENDING.value
    priority: int | None = None
    dependencies: list[int] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    acceptance: list[str] = field(default_factory=list)
    stats: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        """Title, falling back to description, for progress output."""
        return self.title or self.description or f"Task {self.id}"

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def is_in_progress(self) -> bool:
        return self.status == TaskStatus.IN_PROGRESS

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Task":
        if not isinstance(raw, Mapping):
            raise TaskGraphError(f"Each task must be an object, got {type(raw).__name__}")
        if "id" not in raw:
            raise TaskGraphError("Task is missing required field 'id'")
        task_id = _int_field(raw["id"], "Task id")

        priority = raw.get("priority")
        if priority is not None:
            priority = _int_field(priority, f"Task {task_id} priority")

        deps_raw = raw.get("dependencies") or []
        if not isinstance(deps_raw, list):
            raise TaskGraphError(f"Task {task_id} dependencies must be a list")
        deps = [_int_field(d, f"Task {task_id} dependency") for d in deps_raw]

        status = raw.get("status", TaskStatus.PENDING.value)
        stats = raw.get("stats")
        extra = {k: v for k, v in raw.items() if k not in _TASK_KEYS}

        return cls(
            id=task_id,
            title=str(raw.get("title") or ""),
            description=str(raw.get("description") or ""),
            status=str(status),
            priority=priority,
            dependencies=deps,
            steps=_list_field(raw, "steps", extra),
            acceptance=_list_field(raw, "acceptance", extra),
            stats=dict(stats) if isinstance(stats, Mapping) else None,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id}
        if self.title:
            out["title"] = self.title
        if self.description:
            out["description"] = self.description
        if self.steps:
            out["steps"] = list(self.steps)
        out["status"] = self.status.value if isinstance(self.status, TaskStatus) else self.status
        out["dependencies"] = list(self.dependencies)
        if self.priority is not None:
            out["priority"] = self.priority
        if self.acceptance:
            out["acceptance"] = list(self.acceptance)
        if self.stats is not None:
            out["stats"] = dict(self.stats)
        out.update(self.extra)
        return out


@dataclass
class TaskGraph:
    title: str = ""
    branch: str = ""
    created: str = ""
    tasks: list[Task] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    stats: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    # Set when the title was read from a legacy "feature" key only.
    title_from_feature: bool = field(default=False, repr=False, compare=False)

    def get_task(self, task_id: int) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def pending_ids(self) -> list[int]:
        return [t.id for t in self.tasks if t.is_pending]

    def in_progress_ids(self) -> list[int]:
        return [t.id for t in self.tasks if t.is_in_progress]

    def count_completed(self) -> int:
        return sum(1 for t in self.tasks if t.is_completed)

    def count_pending(self) -> int:
        return sum(1 for t in self.tasks if t.is_pending)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TaskGraph":
        tasks_raw = raw.get("tasks")
        if not isinstance(tasks_raw, list):
            raise TaskGraphError("Tasks file must contain a 'tasks' array")

        tasks = [Task.from_dict(t) for t in tasks_raw]
        seen: set[int] = set()
        for t in tasks:
            if t.id in seen:
                raise TaskGraphError(f"Duplicate task id: {t.id}")
            seen.add(t.id)

        extra = {k: v for k, v in raw.items() if k not in _GRAPH_KEYS}
        title_from_feature = not raw.get("title") and bool(raw.get("feature"))
        title = raw.get("title") or raw.get("feature") or ""
        stats = raw.get("stats")

        return cls(
            title=str(title),
            branch=str(raw.get("branch") or ""),
            created=str(raw.get("created") or ""),
            tasks=tasks,
            sources=_list_field(raw, "sources", extra),
            stats=dict(stats) if isinstance(stats, Mapping) else None,
            extra=extra,
            title_from_feature=title_from_feature,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        # Legacy graphs carry the title as "feature" only; don't add a duplicate key.
        if self.title and not (self.title_from_feature and self.extra.get("feature") == self.title):
            out["title"] = self.title
        if self.branch:
            out["branch"] = self.branch
        if self.created:
            out["created"] = self.created
        out["tasks"] = [t.to_dict() for t in self.tasks]
        if self.sources:
            out["sources"] = list(self.sources)
        if self.stats is not None:
            out["stats"] = dict(self.stats)
        out.update(self.extra)
        return out
