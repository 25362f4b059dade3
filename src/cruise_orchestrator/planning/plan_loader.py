"""Plan file loading (YAML or JSON) into validated ``Plan`` objects."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TypeVar

import yaml

from cruise_orchestrator.domain.models import Plan, Task, TaskComplexity, TaskStatus
from cruise_orchestrator.planning.task_graph import (
    DependencyCycleError,
    UnknownDependencyError,
    validate_plan,
)

_E = TypeVar("_E", TaskStatus, TaskComplexity)

_ALLOWED_TASK_KEYS = frozenset(
    {
        "id",
        "subject",
        "description",
        "dependencies",
        "status",
        "complexity",
        "component",
        "acceptance_criteria",
    }
)


class PlanLoadError(ValueError):
    """Raised when a plan document cannot be parsed or fails validation."""

    def __init__(self, source: str, errors: Sequence[str]) -> None:
        self.source = source
        self.errors = tuple(errors)
        detail = "; ".join(self.errors) if self.errors else "unknown error"
        super().__init__(f"invalid plan {source}: {detail}")


def load_plan(path: str | Path) -> Plan:
    """Read a ``.yaml``/``.yml``/``.json`` plan file and validate its dependency graph."""
    plan_path = Path(path)
    source = plan_path.as_posix()
    try:
        text = plan_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanLoadError(source, [f"failed to read file: {exc}"]) from exc

    if plan_path.suffix.lower() == ".json":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PlanLoadError(source, [f"invalid JSON: {exc}"]) from exc
    else:
        try:
            payload = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise PlanLoadError(source, [f"invalid YAML: {exc}"]) from exc

    return parse_plan(payload, source=source, default_title=plan_path.stem)


def parse_plan(payload: object, *, source: str = "<memory>", default_title: str = "plan") -> Plan:
    """Build a ``Plan`` from a decoded document; collects every field error before raising."""
    if isinstance(payload, list):
        title = default_title
        records: object = payload
    elif isinstance(payload, Mapping):
        title = payload.get("title", default_title)
        records = payload.get("tasks")
    else:
        raise PlanLoadError(source, ["plan must be a list of tasks or an object with 'tasks'"])

    if not isinstance(title, str) or not title.strip():
        raise PlanLoadError(source, ["'title' must be a non-empty string"])
    if not isinstance(records, list):
        raise PlanLoadError(source, ["'tasks' must be a list"])

    errors: list[str] = []
    tasks: list[Task] = []
    seen: set[str] = set()
    for index, record in enumerate(records):
        entry = f"tasks[{index}]"
        if not isinstance(record, Mapping):
            errors.append(f"{entry} must be an object")
            continue
        try:
            task = _parse_task(record, entry)
        except ValueError as exc:
            errors.append(str(exc))
            continue
        if task.id in seen:
            errors.append(f"{entry}: duplicate task id {task.id!r}")
            continue
        seen.add(task.id)
        tasks.append(task)

    if errors:
        raise PlanLoadError(source, errors)

    try:
        validate_plan(tasks)
    except (DependencyCycleError, UnknownDependencyError) as exc:
        raise PlanLoadError(source, [str(exc)]) from exc

    return Plan(title.strip(), tasks)


def plan_to_dict(plan: Plan) -> dict[str, object]:
    return {
        "title": plan.title,
        "tasks": [
            {
                "id": task.id,
                "subject": task.subject,
                "description": task.description,
                "dependencies": list(task.dependencies),
                "status": task.status.value,
                "complexity": task.complexity.value,
                "component": task.component,
                "acceptance_criteria": list(task.acceptance_criteria),
            }
            for task in plan
        ],
    }


def _parse_task(record: Mapping[object, object], entry: str) -> Task:
    unknown = sorted(str(key) for key in record if key not in _ALLOWED_TASK_KEYS)
    if unknown:
        raise ValueError(f"{entry}: unknown keys: {', '.join(unknown)}")

    task_id = record.get("id")
    if isinstance(task_id, int) and not isinstance(task_id, bool):
        task_id = str(task_id)
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValueError(f"{entry}.id must be a non-empty string")
    task_id = task_id.strip()

    subject = record.get("subject", task_id)
    if not isinstance(subject, str):
        raise ValueError(f"{entry}.subject must be a string")
    description = record.get("description", "")
    if not isinstance(description, str):
        raise ValueError(f"{entry}.description must be a string")
    component = record.get("component")
    if component is not None and not isinstance(component, str):
        raise ValueError(f"{entry}.component must be a string")

    dependencies = _string_list(record.get("dependencies", ()), f"{entry}.dependencies")
    if task_id in dependencies:
        raise ValueError(f"{entry}: task {task_id!r} must not depend on itself")
    if len(set(dependencies)) != len(dependencies):
        raise ValueError(f"{entry}.dependencies contains duplicates")

    return Task(
        id=task_id,
        subject=subject,
        description=description,
        dependencies=dependencies,
        status=_as_enum(TaskStatus, record.get("status", "pending"), f"{entry}.status"),
        complexity=_as_enum(
            TaskComplexity, record.get("complexity", "medium"), f"{entry}.complexity"
        ),
        component=component,
        acceptance_criteria=_string_list(
            record.get("acceptance_criteria", ()), f"{entry}.acceptance_criteria"
        ),
    )


def _string_list(value: object, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ValueError(f"{path} must be a list of strings")
    items: list[str] = []
    for index, item in enumerate(value):
        if isinstance(item, int) and not isinstance(item, bool):
            item = str(item)
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{path}[{index}] must be a non-empty string")
        items.append(item.strip())
    return tuple(items)


def _as_enum(enum_type: type[_E], value: object, path: str) -> _E:
    if not isinstance(value, str):
        raise ValueError(f"{path} must be a string")
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"{path} must be one of: {allowed}") from None


__all__ = ["PlanLoadError", "load_plan", "parse_plan", "plan_to_dict"]
