"""Prompts for the step validator and adapter"""
import json

from test_types import PageSnapshot, StepAction

ACTION_REFERENCE = """Available actions (target is a CSS selector unless noted):
- `navigate`: Load a URL given in `value`.
- `click`: Click the element at `target`.
- `fill` / `type`: Replace the contents of the input at `target` with `value`.
- `select`: Choose the option `value` in the <select> at `target`.
- `press`: Press the key in `value`, on `target` if given, else on the page.
- `hover`: Move the cursor over `target`.
- `check`: Tick the checkbox at `target`.
- `wait`: Wait for `target` to become visible, or `value` milliseconds.
- `assert_text`: Check that `value` appears in `target` (or anywhere on the page).
- `assert_visible`: Check that `target` is visible."""


def get_validation_system_prompt() -> str:
    """System prompt for judging one planned step against the live page."""
    return f"""You are a meticulous QA engineer checking whether a recorded browser test step can run on the page as it is right now.

Rules:
- Base the verdict strictly on the page snapshot. Never assume elements that are not listed.
- A step is valid when its target selector (if any) matches a listed, enabled element and the action makes sense for that element.
- Navigation and page-level waits/asserts without a target are valid unless the page clearly shows an error.
- If the target is missing, renamed, hidden or disabled, the step is invalid. Say what changed in `issues`.
- Confidence is your certainty in the verdict, between 0 and 1.

{ACTION_REFERENCE}

Reply with one JSON object and nothing else:
{{"is_valid": true, "confidence": 0.9, "issues": [], "reasoning": "short explanation"}}"""


def get_adaptation_system_prompt() -> str:
    """System prompt for proposing replacement steps."""
    return f"""You are a meticulous QA engineer repairing a recorded browser test step that no longer matches the page.

Rules:
- Propose the smallest sequence of actions that achieves what the original step intended, using only elements listed in the page snapshot.
- Keep the original action type and value when they still make sense; usually only the target selector needs to change.
- Copy selectors exactly as listed. Never invent selectors.
- Do not redo steps that were already completed.
- If the intent cannot be achieved on this page, return an empty `steps` list and explain why.
- Confidence is your certainty that the proposal does what the original step intended, between 0 and 1.

{ACTION_REFERENCE}

Reply with one JSON object and nothing else:
{{"steps": [{{"type": "click", "target": "#submit", "value": null, "description": "Submit the form"}}], "confidence": 0.8, "reason": "The submit button id changed"}}"""


def build_validation_prompt(step: StepAction, snapshot: PageSnapshot, max_elements: int = 60) -> str:
    return f"""Planned step:
{json.dumps(step.to_dict(), indent=2)}

Current page:
{snapshot.summary(limit=max_elements)}

Can the planned step be executed on this page?"""


def build_adaptation_prompt(
    objective: str,
    step: StepAction,
    snapshot: PageSnapshot,
    completed_steps: list[StepAction],
    issues: list[str] | None = None,
    max_elements: int = 60,
) -> str:
    done = "\n".join(f"{i}. {s.describe()}" for i, s in enumerate(completed_steps, 1)) or "(none)"
    problems = "\n".join(f"- {issue}" for issue in issues or []) or "- (not specified)"
    return f"""Test objective: {objective or "(not specified)"}

Completed steps:
{done}

Step that no longer matches the page:
{json.dumps(step.to_dict(), indent=2)}

Problems found:
{problems}

Current page:
{snapshot.summary(limit=max_elements)}

Propose replacement steps."""
