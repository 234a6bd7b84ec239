"""Filesystem-backed loader for recorded test case definitions."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import yaml

from exceptions import TaskLoadError, TaskValidationError
from test_types import NAVIGATION_ACTIONS, TARGETED_ACTIONS, StepAction, TestCase
from validator import KNOWN_ACTIONS


def _as_set(value: Any) -> Set[str]:
    """Convert value to set of strings."""
    if value is None:
        return set()
    if isinstance(value, (list, set, tuple)):
        return {str(item) for item in value}
    if isinstance(value, str):
        return {value}
    raise TaskLoadError(f"Expected string, list, or set, got {type(value).__name__}")


def _parse_step(raw: Any, index: int, task_id: str) -> StepAction:
    if not isinstance(raw, dict):
        raise TaskValidationError(f"Step {index} must be a mapping", task_id=task_id, field="steps")

    action = StepAction.from_dict(raw)
    if action.type not in KNOWN_ACTIONS:
        raise TaskValidationError(
            f"Step {index} has unknown action '{action.type}'",
            task_id=task_id,
            field="steps",
        )
    if action.requires_target and not action.target:
        raise TaskValidationError(
            f"Step {index} ({action.type}) needs a target selector",
            task_id=task_id,
            field="steps",
        )
    if action.is_navigation and not action.value:
        raise TaskValidationError(f"Step {index} ({action.type}) needs a URL value", task_id=task_id, field="steps")
    return action


def _parse_task(data: Dict[str, Any], fallback_id: str) -> TestCase:
    """Parse a dictionary into a TestCase."""
    if not isinstance(data, dict):
        raise TaskLoadError("Task payload must be a mapping")

    task_id = str(data.get("id") or fallback_id)

    raw_steps = data.get("steps")
    if not raw_steps or not isinstance(raw_steps, list):
        raise TaskValidationError("Task must define a non-empty list of steps", task_id=task_id, field="steps")
    steps = [_parse_step(raw, i, task_id) for i, raw in enumerate(raw_steps, start=1)]

    url = data.get("url") or data.get("start_url")
    if not url and not steps[0].is_navigation:
        raise TaskValidationError(
            "Task needs a 'url' unless its first step navigates",
            task_id=task_id,
            field="url",
        )

    max_adaptations = data.get("max_adaptations")
    if max_adaptations is not None:
        max_adaptations = max(0, int(max_adaptations))

    # Parse priority
    priority = int(data.get("priority", 5))
    if priority < 1:
        priority = 1
    elif priority > 10:
        priority = 10

    return TestCase(
        id=task_id,
        name=str(data.get("name") or task_id),
        url=url,
        objective=str(data.get("objective") or data.get("task") or ""),
        steps=steps,
        tags=_as_set(data.get("tags")),
        skip=bool(data.get("skip", False)),
        skip_reason=data.get("skip_reason"),
        priority=priority,
        max_adaptations=max_adaptations,
    )


def load_task_file(path: Path) -> TestCase:
    """Load a single test case file (YAML or JSON)."""
    try:
        raw = path.read_text(encoding="utf-8")
        if path.suffix.lower() in {".yml", ".yaml"}:
            data = yaml.safe_load(raw)
        else:
            data = json.loads(raw)
        return _parse_task(data, fallback_id=path.stem)
    except (TaskLoadError, TaskValidationError):
        raise
    except Exception as exc:
        raise TaskLoadError(f"Failed to load task file: {exc}", file_path=str(path)) from exc


def discover_tasks(
    tasks_dir: Path,
    only_ids: Optional[Iterable[str]] = None,
    include_tags: Optional[Set[str]] = None,
    exclude_tags: Optional[Set[str]] = None,
    include_skipped: bool = False,
    sort_by_priority: bool = False,
) -> List[TestCase]:
    """
    Discover and load test cases from a directory.

    Args:
        tasks_dir: Directory containing YAML/JSON definitions
        only_ids: If provided, only load cases with these IDs
        include_tags: If provided, only include cases with at least one of these tags
        exclude_tags: If provided, exclude cases with any of these tags
        include_skipped: If True, include cases marked as skip=true
        sort_by_priority: If True, sort cases by priority (1=highest first)

    Returns:
        List of TestCase objects
    """
    tasks_dir = tasks_dir.expanduser().resolve()

    if not tasks_dir.exists():
        raise TaskLoadError(f"Tasks directory does not exist: {tasks_dir}")

    id_filter = {tid for tid in (only_ids or [])}
    found: List[TestCase] = []

    yaml_files = sorted(tasks_dir.glob("*.yaml")) + sorted(tasks_dir.glob("*.yml"))
    json_files = sorted(tasks_dir.glob("*.json"))

    for path in yaml_files + json_files:
        task = load_task_file(path)

        if id_filter and task.id not in id_filter:
            continue
        if task.skip and not include_skipped:
            continue
        if not task.matches_filter(include_tags, exclude_tags):
            continue

        found.append(task)

    if id_filter:
        missing = id_filter - {t.id for t in found}
        if missing:
            raise TaskLoadError(f"Tasks not found: {', '.join(sorted(missing))}")

    if sort_by_priority:
        found.sort(key=lambda t: t.priority)

    return found


def validate_task(data: Dict[str, Any]) -> List[str]:
    """
    Validate test case data without loading.

    Returns list of validation errors (empty if valid).
    """
    errors = []

    if not isinstance(data, dict):
        return ["Task must be a dictionary/mapping"]

    steps = data.get("steps")
    if not steps:
        errors.append("Missing required field: steps")
    elif not isinstance(steps, list):
        errors.append("steps must be a list")
    else:
        for i, step in enumerate(steps, start=1):
            if not isinstance(step, dict):
                errors.append(f"steps[{i}] must be a mapping")
                continue
            action = step.get("action") or step.get("type")
            if action not in KNOWN_ACTIONS:
                errors.append(f"steps[{i}] has unknown action: {action}")
            elif action in TARGETED_ACTIONS and not (step.get("target") or step.get("selector")):
                errors.append(f"steps[{i}] ({action}) needs a target")
            elif action in NAVIGATION_ACTIONS and not step.get("value"):
                errors.append(f"steps[{i}] ({action}) needs a URL value")
            alternatives = step.get("alternatives")
            if alternatives is not None and not isinstance(alternatives, list):
                errors.append(f"steps[{i}].alternatives must be a list")

    url = data.get("url") or data.get("start_url")
    if url is not None and not isinstance(url, str):
        errors.append("url must be a string")

    tags = data.get("tags")
    if tags is not None and not isinstance(tags, (str, list, set)):
        errors.append("tags must be a string or list")

    max_adaptations = data.get("max_adaptations")
    if max_adaptations is not None:
        try:
            if int(max_adaptations) < 0:
                errors.append("max_adaptations cannot be negative")
        except (ValueError, TypeError):
            errors.append("max_adaptations must be an integer")

    priority = data.get("priority")
    if priority is not None:
        try:
            val = int(priority)
            if val < 1 or val > 10:
                errors.append("priority must be between 1 and 10")
        except (ValueError, TypeError):
            errors.append("priority must be an integer")

    return errors
