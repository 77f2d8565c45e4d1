"""Task list persisted to .codebro/tasks.md, and the taskManager tool on top of it."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from . import fmt
from .registry import Tool, ToolContext

TASKS_RELPATH = Path(".codebro") / "tasks.md"
VALID_ACTIONS = ("create", "update", "get", "list", "delete")
VALID_STATUSES = ("pending", "in_progress", "completed", "failed")
VALID_PRIORITIES = ("low", "medium", "high")
MAX_DESCRIPTION = 500

_HEADING_RE = re.compile(r"^## (?P<id>\S+): (?P<description>.*)$")
_FIELD_RE = re.compile(r"^- \*\*(?P<key>[A-Za-z]+)\*\*: (?P<value>.*)$")
_SUBTASK_RE = re.compile(r"^  - \[(?P<mark>[ xX])\] (?P<text>.*)$")


@dataclass
class Subtask:
    description: str
    completed: bool = False


@dataclass
class Task:
    id: str
    description: str
    status: str = "pending"
    priority: str = "medium"
    created_at: str = ""
    updated_at: str = ""
    notes: str = ""
    subtasks: list[Subtask] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "notes": self.notes,
            "subtasks": [
                {"description": s.description, "completed": s.completed}
                for s in self.subtasks
            ],
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _safe_tasks_path(base_dir: str) -> Path:
    """Build the task file path and verify it resolves inside base_dir."""
    base = Path(base_dir).resolve()
    path = (base / TASKS_RELPATH).resolve()
    if not path.is_relative_to(base):
        raise ValueError(f"task file {path} escapes base directory {base}")
    return path


def render_tasks(tasks: list[Task]) -> str:
    lines = ["# Tasks", ""]
    for task in tasks:
        lines.append(f"## {task.id}: {task.description}")
        lines.append(f"- **Status**: {task.status}")
        lines.append(f"- **Priority**: {task.priority}")
        lines.append(f"- **Created**: {task.created_at}")
        lines.append(f"- **Updated**: {task.updated_at}")
        if task.notes:
            lines.append(f"- **Notes**: {' '.join(task.notes.split())}")
        if task.subtasks:
            lines.append("- **Subtasks**:")
            for sub in task.subtasks:
                mark = "x" if sub.completed else " "
                lines.append(f"  - [{mark}] {sub.description}")
        lines.append("")
    return "\n".join(lines)


def parse_tasks(text: str) -> list[Task]:
    """Parse the Markdown written by ``render_tasks``. Unrecognized lines are skipped."""
    tasks: list[Task] = []
    current = None
    keys = {
        "Status": "status",
        "Priority": "priority",
        "Created": "created_at",
        "Updated": "updated_at",
        "Notes": "notes",
    }
    for line in text.splitlines():
        m = _HEADING_RE.match(line)
        if m:
            current = Task(id=m["id"], description=m["description"].strip())
            tasks.append(current)
            continue
        if current is None:
            continue
        m = _SUBTASK_RE.match(line)
        if m:
            current.subtasks.append(
                Subtask(description=m["text"].strip(), completed=m["mark"] != " ")
            )
            continue
        m = _FIELD_RE.match(line)
        if m and m["key"] in keys:
            setattr(current, keys[m["key"]], m["value"].strip())
    return tasks


class TaskStore:
    """Tasks for one working directory, re-read from disk on every access."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    @property
    def path(self) -> Path:
        return _safe_tasks_path(self.base_dir)

    def load(self) -> list[Task]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except (FileNotFoundError, ValueError):
            return []
        return parse_tasks(text)

    def save(self, tasks: list[Task]) -> None:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_tasks(tasks), encoding="utf-8")

    def create(self, description: str, priority: str = "medium", subtasks=()) -> Task:
        tasks = self.load()
        now = _now()
        task = Task(
            id=f"task-{uuid.uuid4().hex[:8]}",
            description=description,
            priority=priority,
            created_at=now,
            updated_at=now,
            subtasks=[Subtask(str(s)) for s in subtasks],
        )
        tasks.append(task)
        self.save(tasks)
        return task

    def get(self, task_id: str) -> Task | None:
        return next((t for t in self.load() if t.id == task_id), None)

    def update(self, task_id: str, **changes) -> Task | None:
        tasks = self.load()
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            return None
        for key, value in changes.items():
            if value is not None:
                setattr(task, key, value)
        task.updated_at = _now()
        self.save(tasks)
        return task

    def delete(self, task_id: str) -> bool:
        tasks = self.load()
        remaining = [t for t in tasks if t.id != task_id]
        if len(remaining) == len(tasks):
            return False
        self.save(remaining)
        return True


def _error(message: str) -> dict:
    return {"success": False, "error": message}


def _subtask_list(raw) -> list[Subtask] | str:
    """Accept plain strings or ``{"description", "completed"}`` objects."""
    if not isinstance(raw, list):
        return "'subtasks' must be an array"
    result = []
    for item in raw:
        if isinstance(item, str):
            result.append(Subtask(item))
        elif isinstance(item, dict) and isinstance(item.get("description"), str):
            result.append(Subtask(item["description"], bool(item.get("completed"))))
        else:
            return "each subtask must be a string or an object with a description"
    return result


class TaskManagerTool(Tool):
    name = "taskManager"
    description = (
        "Create, update, get, list and delete tasks persisted in .codebro/tasks.md. "
        "Use it in PLAN mode to record the plan as tasks with subtasks, and in "
        "EXECUTE mode to mark progress."
    )
    parameters = {
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": list(VALID_ACTIONS)},
            "taskId": {"type": "string", "description": "Required for update, get and delete."},
            "description": {"type": "string"},
            "status": {"type": "string", "enum": list(VALID_STATUSES)},
            "priority": {"type": "string", "enum": list(VALID_PRIORITIES)},
            "notes": {"type": "string"},
            "subtasks": {
                "type": "array",
                "items": {
                    "anyOf": [
                        {"type": "string"},
                        {
                            "type": "object",
                            "properties": {
                                "description": {"type": "string"},
                                "completed": {"type": "boolean"},
                            },
                            "required": ["description"],
                        },
                    ]
                },
            },
        },
        "required": ["action"],
    }

    def run(self, args: dict, context: ToolContext):
        action = args.get("action", "")
        if action not in VALID_ACTIONS:
            return _error(
                f"invalid action {action!r}, expected one of: {', '.join(VALID_ACTIONS)}"
            )
        try:
            _safe_tasks_path(context.working_directory)
        except ValueError as e:
            return _error(str(e))
        store = TaskStore(context.working_directory)

        if action == "list":
            tasks = store.load()
            status = args.get("status")
            if status:
                tasks = [t for t in tasks if t.status == status]
            return {"success": True, "tasks": [t.to_dict() for t in tasks]}

        if action == "create":
            return self._create(store, args, context)

        task_id = args.get("taskId", "")
        if not isinstance(task_id, str) or not task_id.strip():
            return _error(f"'{action}' requires a non-empty 'taskId'")
        task_id = task_id.strip()

        if action == "get":
            task = store.get(task_id)
            if task is None:
                return _error(f"no task with id {task_id!r}")
            return {"success": True, "task": task.to_dict()}

        if action == "delete":
            if not store.delete(task_id):
                return _error(f"no task with id {task_id!r}")
            _report(context, "delete", task_id)
            return {"success": True, "taskId": task_id}

        return self._update(store, task_id, args, context)

    def _create(self, store: TaskStore, args: dict, context: ToolContext):
        description = args.get("description", "")
        if not isinstance(description, str) or not description.strip():
            return _error("'create' requires a non-empty 'description'")
        if len(description) > MAX_DESCRIPTION:
            return _error(f"description exceeds {MAX_DESCRIPTION} characters")
        priority = args.get("priority", "medium")
        if priority not in VALID_PRIORITIES:
            return _error(f"invalid priority {priority!r}")
        subtasks = _subtask_list(args.get("subtasks", []))
        if isinstance(subtasks, str):
            return _error(subtasks)

        task = store.create(description.strip(), priority)
        if subtasks:
            task = store.update(task.id, subtasks=subtasks)
        _report(context, "create", f"{task.id}: {task.description[:80]}")
        return {"success": True, "task": task.to_dict()}

    def _update(self, store: TaskStore, task_id: str, args: dict, context: ToolContext):
        status = args.get("status")
        if status is not None and status not in VALID_STATUSES:
            return _error(
                f"invalid status {status!r}, expected one of: {', '.join(VALID_STATUSES)}"
            )
        priority = args.get("priority")
        if priority is not None and priority not in VALID_PRIORITIES:
            return _error(f"invalid priority {priority!r}")
        subtasks = None
        if "subtasks" in args:
            subtasks = _subtask_list(args["subtasks"])
            if isinstance(subtasks, str):
                return _error(subtasks)

        task = store.update(
            task_id,
            description=args.get("description") or None,
            status=status,
            priority=priority,
            notes=args.get("notes"),
            subtasks=subtasks,
        )
        if task is None:
            return _error(f"no task with id {task_id!r}")
        _report(context, "update", f"{task.id} -> {task.status}")
        return {"success": True, "task": task.to_dict()}


def _report(context: ToolContext, action: str, detail: str) -> None:
    if getattr(context.progress, "verbose", False):
        fmt.task_update(action, detail)
