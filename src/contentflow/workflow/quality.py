"""Quality gate evaluation: weighted multi-criterion scoring.

Each criterion of a :class:`QualityGate` is scored by a named validator from
the :class:`CriterionValidatorRegistry`; the gate score is the weighted mean
of the criterion scores.

Built-in validators:
    - ``rule_based``   - start at 100, deduct for short content / missing fields
    - ``ai_score``     - ask the ContentReviewer collaborator for a score
    - ``external_api`` - POST the content to an HTTP scoring service
    - ``human_review`` - provisional score pending a human assessment

Validators receive a :class:`CriterionContext` and return a score (0-100).
They can be synchronous or async.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import httpx

from contentflow.workflow.collaborators import ContentReviewer
from contentflow.workflow.models import (
    CriterionResult,
    QualityCheckResult,
    QualityCriterion,
    QualityGate,
    ValidatorType,
)

logger = logging.getLogger("contentflow.workflow.quality")

DEFAULT_PROVISIONAL_REVIEW_SCORE = 85.0
DEFAULT_EXTERNAL_TIMEOUT = 10.0


# ── Validator Context ────────────────────────────────────────────────────────


@dataclass
class CriterionContext:
    """Runtime context passed to each criterion validator."""

    criterion: QualityCriterion
    content: Any
    content_type: str = ""
    reviewer: ContentReviewer | None = None
    http_client: httpx.AsyncClient | None = None

    @property
    def params(self) -> dict[str, Any]:
        return self.criterion.validator.configuration


# ── Pure Scoring ─────────────────────────────────────────────────────────────


def score_quality_gate(
    gate: QualityGate, scores: Mapping[str, float] | Sequence[float]
) -> QualityCheckResult:
    """Combine per-criterion scores into a gate result.

    ``scores`` is either keyed by criterion name or a sequence aligned with
    ``gate.criteria``; only the positional form tells apart criteria sharing
    a name. Overall score is ``Σ(score·weight) / Σ(weight)``, or 0 when the
    weights sum to zero. Criteria missing from ``scores`` count as 0.
    """
    if isinstance(scores, Mapping):
        scores = [scores.get(c.name, 0.0) for c in gate.criteria]
    total_weight = sum(c.weight for c in gate.criteria)
    weighted = 0.0
    criteria_results: list[CriterionResult] = []
    recommendations: list[str] = []

    for index, criterion in enumerate(gate.criteria):
        score = scores[index] if index < len(scores) else 0.0
        weighted += score * criterion.weight
        passed = score >= criterion.threshold
        criteria_results.append(
            CriterionResult(
                criterion=criterion.name,
                score=score,
                passed=passed,
                details=f"Score: {score:g}, Threshold: {criterion.threshold:g}",
            )
        )
        if not passed:
            recommendations.append(
                f"Improve {criterion.name}: scored {score:g}, needs {criterion.threshold:g}"
            )

    overall = weighted / total_weight if total_weight > 0 else 0.0
    passed = overall >= gate.threshold
    return QualityCheckResult(
        gate_id=gate.id,
        passed=passed,
        score=overall,
        criteria_results=criteria_results,
        recommendations=recommendations,
        requires_human_review=not passed or overall < gate.review_threshold,
    )


# ── Validator Registry ───────────────────────────────────────────────────────


class CriterionValidatorRegistry:
    """Registry mapping validator type names to scoring functions.

    Usage::

        registry = CriterionValidatorRegistry()

        @registry.register("readability")
        def readability(ctx: CriterionContext) -> float:
            ...
    """

    def __init__(self) -> None:
        self._validators: dict[str, Callable] = {}
        self._register_builtin_validators()

    def register(self, name: str) -> Callable[[Callable], Callable]:
        """Decorator to register a validator function under ``name``."""
        def decorator(fn: Callable) -> Callable:
            self._validators[name] = fn
            logger.debug("Registered criterion validator: %s", name)
            return fn
        return decorator

    def register_fn(self, name: str, fn: Callable) -> None:
        self._validators[name] = fn

    def load_plugin(self, module_path: str) -> int:
        """Load validators from a module exposing ``register_validators(registry)``.

        Returns the number of validators the module added.
        """
        before = len(self._validators)
        module = importlib.import_module(module_path)
        if hasattr(module, "register_validators"):
            module.register_validators(self)
        added = len(self._validators) - before
        logger.info("Loaded %d criterion validators from plugin: %s", added, module_path)
        return added

    def get(self, name: str) -> Callable | None:
        return self._validators.get(name)

    def list_validators(self) -> list[str]:
        return sorted(self._validators)

    async def score(self, ctx: CriterionContext) -> tuple[float, str]:
        """Run the criterion's validator. Returns ``(score, error_detail)``.

        A validator that is unknown or raises scores 0 so one broken scorer
        fails its criterion instead of the whole gate evaluation.
        """
        name = ctx.criterion.validator.type
        fn = self._validators.get(name)
        if fn is None:
            return 0.0, f"Unknown validator: '{name}'. Available: {self.list_validators()}"

        try:
            result = fn(ctx)
            if inspect.isawaitable(result):
                result = await result
            return _clamp(float(result)), ""
        except Exception as exc:
            logger.exception(
                "Validator '%s' raised for criterion '%s'", name, ctx.criterion.name
            )
            return 0.0, f"Validator error: {exc}"

    def _register_builtin_validators(self) -> None:
        self.register_fn(ValidatorType.RULE_BASED.value, _validate_rule_based)
        self.register_fn(ValidatorType.AI_SCORE.value, _validate_ai_score)
        self.register_fn(ValidatorType.EXTERNAL_API.value, _validate_external_api)
        self.register_fn(ValidatorType.HUMAN_REVIEW.value, _validate_human_review)


# ── Gate Evaluator ───────────────────────────────────────────────────────────


class QualityGateEvaluator:
    """Holds registered gates and scores content against them."""

    def __init__(
        self,
        validators: CriterionValidatorRegistry | None = None,
        *,
        reviewer: ContentReviewer | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.validators = validators or CriterionValidatorRegistry()
        self.reviewer = reviewer
        self.http_client = http_client
        self._gates: dict[str, QualityGate] = {}

    def register_gate(self, gate: QualityGate) -> None:
        self._gates[gate.id] = gate.model_copy(deep=True)
        logger.info("Registered quality gate '%s' (threshold %g)", gate.id, gate.threshold)

    def get_gate(self, gate_id: str) -> QualityGate | None:
        return self._gates.get(gate_id)

    def list_gates(self) -> list[QualityGate]:
        return list(self._gates.values())

    async def evaluate(
        self,
        gate: QualityGate,
        content: Any,
        *,
        content_type: str = "",
    ) -> QualityCheckResult:
        """Score every criterion concurrently, then combine."""
        contexts = [
            CriterionContext(
                criterion=criterion,
                content=content,
                content_type=content_type or criterion.name,
                reviewer=self.reviewer,
                http_client=self.http_client,
            )
            for criterion in gate.criteria
        ]
        outcomes = await asyncio.gather(*(self.validators.score(ctx) for ctx in contexts))

        result = score_quality_gate(gate, [score for score, _ in outcomes])
        for criterion_result, (_, error) in zip(result.criteria_results, outcomes):
            if error:
                criterion_result.details = error

        logger.info(
            "Quality gate '%s': score %.2f (threshold %g): %s",
            gate.id,
            result.score,
            gate.threshold,
            "passed" if result.passed else "failed",
        )
        return result


# ── Built-in Validators ──────────────────────────────────────────────────────


def _validate_rule_based(ctx: CriterionContext) -> float:
    """Deduct from 100 for rule violations.

    Params:
        min_length: Minimum content length; shorter content loses 20 points.
        required_fields: Keys that must be present and truthy; 10 points each.
    """
    score = 100.0
    content = ctx.content

    min_length = ctx.params.get("min_length")
    if min_length and _content_length(content) < min_length:
        score -= 20

    for name in ctx.params.get("required_fields", []):
        if not isinstance(content, dict) or not content.get(name):
            score -= 10

    return max(0.0, score)


async def _validate_ai_score(ctx: CriterionContext) -> float:
    if ctx.reviewer is None:
        msg = "No content reviewer configured for ai_score validation"
        raise RuntimeError(msg)
    review = await ctx.reviewer.review(ctx.content, ctx.content_type)
    return review.quality_score


async def _validate_external_api(ctx: CriterionContext) -> float:
    """POST the content to a scoring service.

    Params:
        url: Endpoint receiving ``{"criterion", "content"}`` and returning
             ``{"score": <number>}``.
        headers: Optional extra request headers.
        timeout: Request timeout in seconds (default: 10).
    """
    url = ctx.params.get("url")
    if not url:
        msg = "Missing required param 'url'"
        raise ValueError(msg)

    payload = {"criterion": ctx.criterion.name, "content": ctx.content}
    headers = ctx.params.get("headers", {})
    timeout = ctx.params.get("timeout", DEFAULT_EXTERNAL_TIMEOUT)

    if ctx.http_client is not None:
        response = await ctx.http_client.post(url, json=payload, headers=headers, timeout=timeout)
    else:
        async with httpx.AsyncClient() as client:
            response = await client.post(url, json=payload, headers=headers, timeout=timeout)
    response.raise_for_status()
    return float(response.json()["score"])


def _validate_human_review(ctx: CriterionContext) -> float:
    return float(ctx.params.get("provisional_score", DEFAULT_PROVISIONAL_REVIEW_SCORE))


def _content_length(content: Any) -> int:
    if isinstance(content, (str, list, tuple)):
        return len(content)
    if content is None:
        return 0
    return len(json.dumps(content, default=str))


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))
