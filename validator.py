"""Step validation and adaptation backends.

The engine only sees the ``StepValidator`` interface: ``validate`` judges a
planned step against a page snapshot and ``adapt`` proposes replacement
steps when it no longer fits. ``LLMStepValidator`` asks an OpenAI-compatible
chat model; ``SnapshotStepValidator`` matches elements locally and needs no
model at all.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from config import AgentConfig
from exceptions import ValidatorError, ValidatorResponseError
from prompts import (
    build_adaptation_prompt,
    build_validation_prompt,
    get_adaptation_system_prompt,
    get_validation_system_prompt,
)
from test_types import PageElement, PageSnapshot, StepAction

KNOWN_ACTIONS = {
    "navigate", "goto", "click", "fill", "type", "select", "press",
    "hover", "check", "wait", "assert_text", "assert_visible",
}

# Selector forms the snapshot generates, so their absence is meaningful
_CHECKABLE_SELECTOR = re.compile(r"""^(#[\w-]+|\[data-testid=["'][^"']+["']\]|\w+\[name=["'][^"']+["']\])$""")

_SELECTOR_NOISE = {
    "a", "button", "input", "select", "textarea", "div", "span", "form", "li", "ul",
    "nth", "of", "type", "child", "has", "text", "data", "testid", "name", "id",
    "class", "role", "aria", "label", "first", "last", "not",
}

_INPUT_TAGS = {"input", "textarea"}


def _clamp(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


@dataclass
class ValidationVerdict:
    is_valid: bool
    confidence: float
    issues: List[str] = field(default_factory=list)
    reasoning: str = ""

    def __post_init__(self) -> None:
        self.confidence = _clamp(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "issues": list(self.issues),
            "reasoning": self.reasoning,
        }


@dataclass
class AdaptationProposal:
    steps: List[StepAction]
    confidence: float
    reason: str = ""

    def __post_init__(self) -> None:
        self.confidence = _clamp(self.confidence)

    @property
    def is_empty(self) -> bool:
        return not self.steps


class StepValidator(ABC):
    """Judge planned steps against live page state and propose fixes."""

    @abstractmethod
    async def validate(self, step: StepAction, snapshot: PageSnapshot) -> ValidationVerdict:
        ...

    @abstractmethod
    async def adapt(
        self,
        objective: str,
        step: StepAction,
        snapshot: PageSnapshot,
        completed_steps: Sequence[StepAction],
        issues: Optional[Sequence[str]] = None,
    ) -> AdaptationProposal:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Text similarity helpers
# ─────────────────────────────────────────────────────────────────────────────

def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", " ", text.lower())
    return " ".join(text.split())


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Fuzzy similarity of two strings in [0, 1]."""
    a_norm, b_norm = normalize_text(a), normalize_text(b)
    if not a_norm or not b_norm:
        return 0.0
    if a_norm == b_norm:
        return 1.0
    if a_norm in b_norm or b_norm in a_norm:
        shorter = min(len(a_norm), len(b_norm))
        longer = max(len(a_norm), len(b_norm))
        return max(0.6, shorter / longer)
    return SequenceMatcher(None, a_norm, b_norm).ratio()


def selector_hint(selector: Optional[str]) -> str:
    """Human words hidden in a selector, e.g. ``#login-btn`` -> ``login btn``."""
    if not selector:
        return ""
    quoted = re.findall(r"""["']([^"']+)["']""", selector)
    if quoted:
        return " ".join(quoted)
    words = [w for w in re.findall(r"[A-Za-z0-9]+", selector) if w.lower() not in _SELECTOR_NOISE]
    return " ".join(words)


def _tag_fits(action: StepAction, element: PageElement) -> bool:
    if action.type in ("fill", "type"):
        return element.tag in _INPUT_TAGS
    if action.type == "select":
        return element.tag == "select"
    if action.type == "check":
        return element.tag == "input" or element.role == "checkbox"
    return True


def rank_candidates(
    step: StepAction,
    snapshot: PageSnapshot,
    exclude: Sequence[str] = (),
) -> List[Tuple[float, PageElement]]:
    """Visible elements ordered by how well they match the step's target."""
    hint = " ".join(filter(None, [selector_hint(step.target), step.description or ""]))
    if not hint.strip():
        return []
    ranked: List[Tuple[float, PageElement]] = []
    for element in snapshot.interactable():
        if element.selector == step.target or element.selector in exclude:
            continue
        score = max(
            similarity(hint, element.text),
            similarity(hint, element.label),
            similarity(hint, selector_hint(element.selector)),
        )
        if not _tag_fits(step, element):
            score *= 0.5
        if score > 0:
            ranked.append((score, element))
    ranked.sort(key=lambda item: item[0], reverse=True)
    return ranked


# ─────────────────────────────────────────────────────────────────────────────
# Local snapshot matcher
# ─────────────────────────────────────────────────────────────────────────────

class SnapshotStepValidator(StepValidator):
    """Deterministic validator working purely from the page snapshot."""

    def __init__(self, min_similarity: float = 0.45, logger: Optional[logging.Logger] = None):
        self.min_similarity = min_similarity
        self.logger = logger or logging.getLogger("validator")

    async def validate(self, step: StepAction, snapshot: PageSnapshot) -> ValidationVerdict:
        if not step.target:
            if step.requires_target:
                return ValidationVerdict(False, 1.0, [f"'{step.type}' needs a target selector"])
            return ValidationVerdict(True, 0.9, reasoning="Page-level action")

        element = snapshot.find(step.target)
        if element is not None:
            if not element.visible:
                return ValidationVerdict(False, 0.9, [f"{step.target} is hidden"])
            if not element.enabled:
                return ValidationVerdict(False, 0.9, [f"{step.target} is disabled"])
            return ValidationVerdict(True, 0.95, reasoning=f"Found <{element.tag}> {element.text[:40]}")

        if _CHECKABLE_SELECTOR.match(step.target):
            return ValidationVerdict(
                False,
                0.8,
                [f"{step.target} is not on the page"],
                reasoning=f"{len(snapshot.elements)} elements captured, none match",
            )
        # Arbitrary CSS cannot be evaluated against the snapshot; let execution decide
        return ValidationVerdict(True, 0.5, reasoning="Selector not verifiable from snapshot")

    def find_alternatives(self, step: StepAction, snapshot: PageSnapshot, limit: int = 3) -> List[str]:
        """Alternative selectors for ``step``: declared ones first, then close matches."""
        declared = [s for s in step.alternatives if s and s != step.target]
        matched: List[str] = []
        for score, element in rank_candidates(step, snapshot, exclude=declared):
            if score < self.min_similarity or len(matched) >= limit:
                break
            matched.append(element.selector)
        return declared + matched

    async def adapt(
        self,
        objective: str,
        step: StepAction,
        snapshot: PageSnapshot,
        completed_steps: Sequence[StepAction],
        issues: Optional[Sequence[str]] = None,
    ) -> AdaptationProposal:
        for alternative in step.alternatives:
            element = snapshot.find(alternative)
            if element is not None and element.enabled:
                return AdaptationProposal(
                    [step.with_target(alternative)],
                    0.9,
                    f"Declared alternative {alternative} is on the page",
                )

        ranked = rank_candidates(step, snapshot)
        if not ranked or ranked[0][0] < self.min_similarity:
            return AdaptationProposal([], 0.0, f"No visible element resembles {step.target}")

        score, best = ranked[0]
        label = best.label or best.text
        self.logger.debug(f"Closest match for {step.target}: {best.selector} ({score:.2f})")
        return AdaptationProposal(
            [step.with_target(best.selector)],
            score,
            f"Closest visible element to {step.target}: {best.selector} '{label[:40]}'",
        )


# ─────────────────────────────────────────────────────────────────────────────
# Chat model backend
# ─────────────────────────────────────────────────────────────────────────────

class LLMStepValidator(StepValidator):
    """Validator backed by an OpenAI-compatible chat completion endpoint."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        client: Optional[AsyncOpenAI] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AgentConfig()
        self.logger = logger or logging.getLogger("validator")
        self.client = client or AsyncOpenAI(
            api_key=self.config.api_key or "not-set",
            base_url=self.config.base_url,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.0, min=1.0, max=10),
        reraise=True,
    )
    async def _call_model(self, system_prompt: str, user_prompt: str) -> str:
        """Call the LLM with retry logic."""
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
            content = response.choices[0].message.content
            if not content:
                raise ValidatorResponseError("Empty response from model")
            return content
        except ValidatorError:
            raise
        except Exception as e:
            raise ValidatorError(f"Model call failed: {e}") from e

    def _parse_json(self, response: str) -> Dict[str, Any]:
        """Parse a JSON object from the model response, tolerating code fences."""
        text = response.strip()
        candidates = [text]
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            candidates.append(text[start : end + 1])
        for candidate in candidates:
            try:
                obj = json.loads(candidate)
            except ValueError:
                continue
            if isinstance(obj, dict):
                return obj
        raise ValidatorResponseError("Model response is not a JSON object", response=response)

    async def validate(self, step: StepAction, snapshot: PageSnapshot) -> ValidationVerdict:
        response = await self._call_model(
            get_validation_system_prompt(),
            build_validation_prompt(step, snapshot, self.config.max_elements),
        )
        data = self._parse_json(response)
        if not isinstance(data.get("is_valid"), bool):
            raise ValidatorResponseError("Verdict is missing a boolean 'is_valid'", response=response)
        issues = data.get("issues") or []
        if isinstance(issues, str):
            issues = [issues]
        return ValidationVerdict(
            is_valid=data["is_valid"],
            confidence=data.get("confidence", 0.0),
            issues=[str(i) for i in issues],
            reasoning=str(data.get("reasoning") or ""),
        )

    async def adapt(
        self,
        objective: str,
        step: StepAction,
        snapshot: PageSnapshot,
        completed_steps: Sequence[StepAction],
        issues: Optional[Sequence[str]] = None,
    ) -> AdaptationProposal:
        response = await self._call_model(
            get_adaptation_system_prompt(),
            build_adaptation_prompt(
                objective,
                step,
                snapshot,
                list(completed_steps),
                list(issues or []),
                self.config.max_elements,
            ),
        )
        data = self._parse_json(response)
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list):
            raise ValidatorResponseError("Proposal is missing a 'steps' list", response=response)

        # Any invalid step rejects the whole proposal
        steps: List[StepAction] = []
        for index, raw in enumerate(raw_steps, start=1):
            if not isinstance(raw, dict):
                raise ValidatorResponseError(f"Proposed step {index} is not an object", response=response)
            action = StepAction.from_dict(raw)
            if action.type not in KNOWN_ACTIONS:
                raise ValidatorResponseError(
                    f"Proposed step {index} has unknown action '{action.type}'", response=response
                )
            if action.requires_target and not action.target:
                raise ValidatorResponseError(f"Proposed step {index} ({action.type}) has no target", response=response)
            if action.is_navigation and not action.value:
                raise ValidatorResponseError(f"Proposed step {index} ({action.type}) has no URL", response=response)
            steps.append(action)
        return AdaptationProposal(
            steps=steps,
            confidence=data.get("confidence", 0.0),
            reason=str(data.get("reason") or ""),
        )


def create_validator(config: Optional[AgentConfig] = None, logger: Optional[logging.Logger] = None) -> StepValidator:
    """Build the validator backend selected by ``config.provider``."""
    config = config or AgentConfig()
    if config.provider == "snapshot":
        return SnapshotStepValidator(logger=logger)
    return LLMStepValidator(config, logger=logger)
