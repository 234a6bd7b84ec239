"""Unit tests for task_loader module."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from exceptions import TaskLoadError, TaskValidationError
from task_loader import (
    _as_set,
    _parse_task,
    discover_tasks,
    load_task_file,
    validate_task,
)
from test_types import TestCase


class TestAsSetFunction:
    """Tests for _as_set helper function."""

    def test_none_returns_empty_set(self):
        assert _as_set(None) == set()

    def test_string_returns_single_item_set(self):
        assert _as_set("smoke") == {"smoke"}

    def test_list_returns_set(self):
        assert _as_set(["a", "b", "a"]) == {"a", "b"}

    def test_invalid_type_raises_error(self):
        with pytest.raises(TaskLoadError):
            _as_set(42)


class TestParseTask:
    """Tests for _parse_task function."""

    def test_parses_full_definition(self, sample_task_yaml: str):
        case = _parse_task(yaml.safe_load(sample_task_yaml), fallback_id="fallback")

        assert isinstance(case, TestCase)
        assert case.id == "signup"
        assert case.name == "Sign up a new account"
        assert case.url == "https://app.example.com/signup"
        assert case.objective.startswith("Create an account")
        assert len(case.steps) == 4
        assert case.steps[2].alternatives == ["button[name='register']"]
        assert case.tags == {"smoke", "signup"}
        assert case.priority == 1
        assert case.max_adaptations == 2

    def test_fallback_id_and_name(self, sample_task_json):
        del sample_task_json["id"]
        del sample_task_json["name"]
        case = _parse_task(sample_task_json, fallback_id="from-file")
        assert case.id == "from-file"
        assert case.name == "from-file"

    def test_key_aliases(self):
        data = {
            "start_url": "https://example.com",
            "task": "Find the pricing page",
            "steps": [{"type": "click", "selector": "a.pricing"}],
        }
        case = _parse_task(data, fallback_id="pricing")
        assert case.url == "https://example.com"
        assert case.objective == "Find the pricing page"
        assert case.steps[0].target == "a.pricing"

    def test_url_optional_when_first_step_navigates(self):
        data = {"steps": [{"action": "navigate", "value": "https://example.com"}]}
        case = _parse_task(data, fallback_id="nav")
        assert case.url is None
        assert case.steps[0].is_navigation

    def test_missing_url_rejected(self):
        with pytest.raises(TaskValidationError) as exc_info:
            _parse_task({"steps": [{"action": "click", "target": "#a"}]}, fallback_id="t")
        assert exc_info.value.field == "url"

    def test_missing_steps_rejected(self):
        with pytest.raises(TaskValidationError) as exc_info:
            _parse_task({"url": "https://example.com", "steps": []}, fallback_id="t")
        assert exc_info.value.field == "steps"

    def test_unknown_action_rejected(self):
        data = {"url": "https://example.com", "steps": [{"action": "teleport", "target": "#a"}]}
        with pytest.raises(TaskValidationError, match="unknown action"):
            _parse_task(data, fallback_id="t")

    def test_targeted_action_needs_target(self):
        data = {"url": "https://example.com", "steps": [{"action": "click"}]}
        with pytest.raises(TaskValidationError, match="needs a target"):
            _parse_task(data, fallback_id="t")

    def test_navigation_needs_value(self):
        data = {"url": "https://example.com", "steps": [{"action": "goto"}]}
        with pytest.raises(TaskValidationError, match="needs a URL"):
            _parse_task(data, fallback_id="t")

    def test_step_must_be_mapping(self):
        data = {"url": "https://example.com", "steps": ["click #a"]}
        with pytest.raises(TaskValidationError):
            _parse_task(data, fallback_id="t")

    def test_priority_and_budget_clamped(self):
        data = {
            "url": "https://example.com",
            "steps": [{"action": "press", "value": "Enter"}],
            "priority": 40,
            "max_adaptations": -3,
        }
        case = _parse_task(data, fallback_id="t")
        assert case.priority == 10
        assert case.max_adaptations == 0

    def test_non_mapping_rejected(self):
        with pytest.raises(TaskLoadError):
            _parse_task(["not", "a", "mapping"], fallback_id="t")


class TestLoadTaskFile:
    """Tests for load_task_file function."""

    def test_loads_yaml(self, temp_dir: Path, sample_task_yaml: str):
        path = temp_dir / "signup.yaml"
        path.write_text(sample_task_yaml)
        case = load_task_file(path)
        assert case.id == "signup"

    def test_loads_json(self, temp_dir: Path, sample_task_json):
        path = temp_dir / "search.json"
        path.write_text(json.dumps(sample_task_json))
        case = load_task_file(path)
        assert case.id == "search"
        assert case.steps[1].type == "press"
        assert case.steps[1].value == "Enter"

    def test_invalid_json_raises_load_error(self, temp_dir: Path):
        path = temp_dir / "broken.json"
        path.write_text("{broken")
        with pytest.raises(TaskLoadError) as exc_info:
            load_task_file(path)
        assert exc_info.value.file_path == str(path)

    def test_validation_error_propagates(self, temp_dir: Path):
        path = temp_dir / "empty.yaml"
        path.write_text("id: empty\nurl: https://example.com\nsteps: []\n")
        with pytest.raises(TaskValidationError):
            load_task_file(path)


class TestDiscoverTasks:
    """Tests for discover_tasks function."""

    @pytest.fixture
    def tasks_dir(self, temp_dir: Path, sample_task_yaml: str, sample_task_json) -> Path:
        (temp_dir / "signup.yaml").write_text(sample_task_yaml)
        (temp_dir / "search.json").write_text(json.dumps(sample_task_json))
        skipped = dict(sample_task_json, id="flaky", skip=True, skip_reason="quarantined", priority=2)
        (temp_dir / "flaky.json").write_text(json.dumps(skipped))
        return temp_dir

    def test_discovers_all_non_skipped(self, tasks_dir: Path):
        cases = discover_tasks(tasks_dir)
        assert {c.id for c in cases} == {"signup", "search"}

    def test_include_skipped(self, tasks_dir: Path):
        cases = discover_tasks(tasks_dir, include_skipped=True)
        assert {c.id for c in cases} == {"signup", "search", "flaky"}

    def test_only_ids(self, tasks_dir: Path):
        cases = discover_tasks(tasks_dir, only_ids=["search"])
        assert [c.id for c in cases] == ["search"]

    def test_missing_id_raises(self, tasks_dir: Path):
        with pytest.raises(TaskLoadError, match="nope"):
            discover_tasks(tasks_dir, only_ids=["search", "nope"])

    def test_tag_filters(self, tasks_dir: Path):
        assert [c.id for c in discover_tasks(tasks_dir, include_tags={"catalog"})] == ["search"]
        assert [c.id for c in discover_tasks(tasks_dir, exclude_tags={"smoke"})] == ["search"]

    def test_sort_by_priority(self, tasks_dir: Path):
        cases = discover_tasks(tasks_dir, include_skipped=True, sort_by_priority=True)
        assert [c.id for c in cases] == ["signup", "flaky", "search"]

    def test_missing_directory_raises(self, temp_dir: Path):
        with pytest.raises(TaskLoadError):
            discover_tasks(temp_dir / "nowhere")


class TestValidateTask:
    """Tests for validate_task function."""

    def test_valid_task(self, sample_task_json):
        assert validate_task(sample_task_json) == []

    def test_non_mapping(self):
        assert validate_task([]) == ["Task must be a dictionary/mapping"]

    def test_missing_steps(self):
        assert "Missing required field: steps" in validate_task({"url": "https://example.com"})

    def test_step_problems_reported(self):
        errors = validate_task(
            {
                "steps": [
                    {"action": "teleport"},
                    {"action": "click"},
                    {"action": "navigate"},
                    {"action": "click", "target": "#a", "alternatives": "#b"},
                    "click",
                ],
            }
        )
        assert "steps[1] has unknown action: teleport" in errors
        assert "steps[2] (click) needs a target" in errors
        assert "steps[3] (navigate) needs a URL value" in errors
        assert "steps[4].alternatives must be a list" in errors
        assert "steps[5] must be a mapping" in errors

    def test_field_type_problems(self):
        errors = validate_task(
            {
                "url": 5,
                "steps": [{"action": "press", "value": "Enter"}],
                "tags": 3,
                "max_adaptations": -1,
                "priority": "high",
            }
        )
        assert "url must be a string" in errors
        assert "tags must be a string or list" in errors
        assert "max_adaptations cannot be negative" in errors
        assert "priority must be an integer" in errors
