"""Stage handlers: one per StageType.

Every handler implements ``async run(execution, stage) -> output``. Raising
fails the attempt; :class:`StageExecutionError` subclasses carry a
``retryable`` flag, anything else is treated as retryable by the scheduler.

Handlers that set ``manages_own_timeout`` (human review, approval) apply
``stage.timeout`` themselves and follow their configured terminal action, so
the scheduler does not race them against a timer.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from contentflow.workflow.approval import ApprovalCoordinator, ApprovalResolution
from contentflow.workflow.collaborators import (
    CacheProvider,
    ContentGenerationProvider,
    ContentReviewer,
    DeploymentTarget,
)
from contentflow.workflow.events import EventPublisher, EventType
from contentflow.workflow.exceptions import (
    ApprovalRejectedError,
    HumanReviewTimeoutError,
    QualityGateFailure,
    StageExecutionError,
)
from contentflow.workflow.models import (
    ApprovalConfiguration,
    HumanReviewRecord,
    ReviewDecision,
    StageType,
    WorkflowExecution,
    WorkflowStage,
)
from contentflow.workflow.quality import QualityGateEvaluator
from contentflow.workflow.review import HumanReviewGateway

if TYPE_CHECKING:
    from contentflow.workflow.definitions import WorkflowDefinitionRegistry
    from contentflow.workflow.store import ExecutionStore

logger = logging.getLogger("contentflow.workflow.handlers")

# Estimated cost units charged per completed stage
STAGE_COSTS: dict[StageType, float] = {
    StageType.AI_GENERATION: 5.0,
    StageType.QUALITY_CHECK: 1.0,
    StageType.COMPLIANCE_CHECK: 2.0,
    StageType.DEPLOYMENT: 0.5,
    StageType.HUMAN_REVIEW: 0.0,
    StageType.APPROVAL: 0.0,
}
DEFAULT_STAGE_COST = 1.0

DEFAULT_CACHE_TTL = 3600.0
DEFAULT_MIN_COMPLIANCE_SCORE = 80.0

_REJECTION_CODES = {
    ApprovalResolution.REJECTED: "APPROVAL_REJECTED",
    ApprovalResolution.VETOED: "APPROVAL_VETOED",
    ApprovalResolution.AUTO_REJECTED: "APPROVAL_AUTO_REJECTED",
    ApprovalResolution.EXPIRED: "APPROVAL_EXPIRED",
    ApprovalResolution.ESCALATED: "APPROVAL_ESCALATED",
}


class StageHandler(Protocol):
    """Contract every stage handler implements."""

    async def run(self, execution: WorkflowExecution, stage: WorkflowStage) -> Any:
        ...


@dataclass
class HandlerServices:
    """Shared collaborators handed to the built-in handlers."""

    store: ExecutionStore
    definitions: WorkflowDefinitionRegistry
    publisher: EventPublisher
    quality: QualityGateEvaluator
    reviews: HumanReviewGateway
    approvals: ApprovalCoordinator
    generator: ContentGenerationProvider | None = None
    reviewer: ContentReviewer | None = None
    cache: CacheProvider | None = None
    deployment_target: DeploymentTarget | None = None


# ── Registry ─────────────────────────────────────────────────────────────────


class StageHandlerRegistry:
    """Maps each StageType to its handler.

    ``missing_types()`` lets the orchestrator verify full coverage once at
    construction rather than discovering a gap mid-execution.
    """

    def __init__(self) -> None:
        self._handlers: dict[StageType, StageHandler] = {}

    @classmethod
    def with_defaults(cls, services: HandlerServices) -> StageHandlerRegistry:
        registry = cls()
        registry.register(StageType.AI_GENERATION, GenerationHandler(services))
        registry.register(StageType.QUALITY_CHECK, QualityCheckHandler(services))
        registry.register(StageType.HUMAN_REVIEW, HumanReviewHandler(services))
        registry.register(StageType.COMPLIANCE_CHECK, ComplianceCheckHandler(services))
        registry.register(StageType.APPROVAL, ApprovalHandler(services))
        registry.register(StageType.DEPLOYMENT, DeploymentHandler(services))
        return registry

    def register(self, stage_type: StageType, handler: StageHandler) -> None:
        """Register or replace the handler for a stage type."""
        previous = self._handlers.get(stage_type)
        self._handlers[stage_type] = handler
        if previous is not None:
            logger.info("Replaced handler for stage type '%s'", stage_type.value)

    def get(self, stage_type: StageType) -> StageHandler:
        try:
            return self._handlers[stage_type]
        except KeyError:
            msg = f"No handler registered for stage type '{stage_type.value}'"
            raise LookupError(msg) from None

    def missing_types(self) -> list[StageType]:
        return [t for t in StageType if t not in self._handlers]

    @staticmethod
    def cost_of(handler: StageHandler, stage_type: StageType) -> float:
        cost = getattr(handler, "cost", None)
        if cost is not None:
            return float(cost)
        return STAGE_COSTS.get(stage_type, DEFAULT_STAGE_COST)

    @staticmethod
    def manages_own_timeout(handler: StageHandler) -> bool:
        return bool(getattr(handler, "manages_own_timeout", False))


# ── Built-in Handlers ────────────────────────────────────────────────────────


class _BaseHandler:
    cost: float | None = None
    manages_own_timeout = False

    def __init__(self, services: HandlerServices):
        self.services = services


class GenerationHandler(_BaseHandler):
    """Produce an artifact through the ContentGenerationProvider.

    Results are memoised in the cache (when one is configured) under a key
    derived from the stage id, its configuration and the execution input.

    Config:
        cache: Set to false to bypass the cache.
        cache_ttl: Seconds to keep a cached result (default: 3600).
    """

    cost = STAGE_COSTS[StageType.AI_GENERATION]

    async def run(self, execution: WorkflowExecution, stage: WorkflowStage) -> Any:
        generator = self.services.generator
        if generator is None:
            msg = "No content generation provider configured"
            raise StageExecutionError(msg, stage_id=stage.id, retryable=False)

        cache = self.services.cache if stage.configuration.get("cache", True) else None
        cache_key = _cache_key(stage, execution.input)
        if cache is not None:
            cached = await cache.get(cache_key)
            await self._count_cache(execution, hit=cached is not None)
            if cached is not None:
                logger.debug("Cache hit for stage '%s' (execution %s)", stage.id, execution.id)
                return cached

        output = await generator.generate(stage.configuration, execution.input)

        if cache is not None and output is not None:
            ttl = stage.configuration.get("cache_ttl", DEFAULT_CACHE_TTL)
            await cache.set(cache_key, output, ttl)
        return output

    async def _count_cache(self, execution: WorkflowExecution, *, hit: bool) -> None:
        async with self.services.store.lock(execution.id):
            usage = execution.metrics.resource_usage
            if hit:
                usage.cache_hits += 1
            else:
                usage.cache_misses += 1


class QualityCheckHandler(_BaseHandler):
    """Score an upstream artifact against a registered quality gate.

    Config:
        gate_id: Id of a registered QualityGate (required).
        source_stage_id: Stage whose output is scored (default: first dependency).
    """

    cost = STAGE_COSTS[StageType.QUALITY_CHECK]

    async def run(self, execution: WorkflowExecution, stage: WorkflowStage) -> Any:
        gate_id = stage.configuration.get("gate_id")
        gate = self.services.quality.get_gate(gate_id) if gate_id else None
        if gate is None:
            msg = f"Unknown quality gate: '{gate_id}'"
            raise StageExecutionError(msg, stage_id=stage.id, retryable=False)

        content = _source_output(execution, stage, "source_stage_id")
        result = await self.services.quality.evaluate(
            gate, content, content_type=stage.configuration.get("content_type", "")
        )
        if not result.passed and gate.mandatory:
            raise QualityGateFailure(gate.id, result.score, gate.threshold, stage_id=stage.id)
        return result.model_dump(mode="json")


class HumanReviewHandler(_BaseHandler):
    """Suspend until an external reviewer completes the review.

    Config:
        previous_stage_id: Stage whose output is put up for review
            (default: first dependency).
        reviewers: Reviewer ids included in the notification.
        criteria: Review criteria included in the notification.
        timeout_action: ``fail`` (default) or ``auto_approve``.
        fail_on_rejection: Fail the stage when the reviewer rejects.
    """

    cost = STAGE_COSTS[StageType.HUMAN_REVIEW]
    manages_own_timeout = True

    async def run(self, execution: WorkflowExecution, stage: WorkflowStage) -> HumanReviewRecord:
        config = stage.configuration
        self.services.publisher.publish(
            EventType.HUMAN_REVIEW_REQUIRED,
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            stage_id=stage.id,
            data={
                "content": _source_output(execution, stage, "previous_stage_id"),
                "reviewers": config.get("reviewers", []),
                "criteria": config.get("criteria", []),
                "deadline_seconds": stage.timeout,
            },
        )

        try:
            record = await self.services.reviews.wait_for_review(
                execution.id, stage.id, stage.timeout
            )
        except HumanReviewTimeoutError:
            if config.get("timeout_action", "fail") != "auto_approve":
                raise
            logger.warning(
                "Auto-approving review of stage '%s' after timeout (execution %s)",
                stage.id,
                execution.id,
            )
            record = HumanReviewRecord(
                reviewer_id="system",
                decision=ReviewDecision.APPROVED,
                feedback="Auto-approved after review timeout",
                time_spent=stage.timeout or 0.0,
            )

        if record.decision == ReviewDecision.REJECTED and config.get("fail_on_rejection", False):
            msg = f"Review rejected by {record.reviewer_id}: {record.feedback}"
            raise StageExecutionError(msg, stage_id=stage.id, retryable=False)
        return record


class ComplianceCheckHandler(_BaseHandler):
    """Ask the ContentReviewer whether upstream content is compliant.

    Config:
        content_stage_id: Stage whose output is checked (default: first dependency).
        min_quality_score: Minimum reviewer score to count as compliant (default: 80).
        fail_on_violation: Fail the stage when non-compliant.
    """

    cost = STAGE_COSTS[StageType.COMPLIANCE_CHECK]

    async def run(self, execution: WorkflowExecution, stage: WorkflowStage) -> Any:
        reviewer = self.services.reviewer
        if reviewer is None:
            msg = "No content reviewer configured for compliance checks"
            raise StageExecutionError(msg, stage_id=stage.id, retryable=False)

        config = stage.configuration
        content = _source_output(execution, stage, "content_stage_id")
        review = await reviewer.review(content, "compliance")
        min_score = config.get("min_quality_score", DEFAULT_MIN_COMPLIANCE_SCORE)
        compliant = review.compliant and review.quality_score >= min_score

        if not compliant and config.get("fail_on_violation", False):
            issues = "; ".join(review.issues) or f"score {review.quality_score:g} < {min_score:g}"
            raise StageExecutionError(
                f"Compliance check failed: {issues}", stage_id=stage.id, retryable=False
            )
        return {
            "compliant": compliant,
            "quality_score": review.quality_score,
            "issues": review.issues,
            "recommendations": review.suggestions,
        }


class ApprovalHandler(_BaseHandler):
    """Run a weighted vote among the workflow's approvers.

    The workflow-level ``approval`` configuration applies; a stage may
    override individual fields under ``configuration.approval``.
    """

    cost = STAGE_COSTS[StageType.APPROVAL]
    manages_own_timeout = True

    async def run(self, execution: WorkflowExecution, stage: WorkflowStage) -> Any:
        approval = self._approval_config(execution, stage)
        outcome = await self.services.approvals.request(
            execution.id, execution.workflow_id, stage.id, approval
        )
        if not outcome.approved:
            code = _REJECTION_CODES.get(outcome.resolution, "APPROVAL_REJECTED")
            msg = f"Approval for stage '{stage.id}' ended {outcome.resolution.value}"
            raise ApprovalRejectedError(msg, stage_id=stage.id, code=code)
        return outcome.model_dump(mode="json")

    def _approval_config(
        self, execution: WorkflowExecution, stage: WorkflowStage
    ) -> ApprovalConfiguration:
        definition = self.services.definitions.find(execution.workflow_id)
        base = definition.approval if definition else ApprovalConfiguration()
        overrides = stage.configuration.get("approval")
        if not overrides:
            return base
        return ApprovalConfiguration.model_validate({**base.model_dump(), **overrides})


class DeploymentHandler(_BaseHandler):
    """Publish the finished content through the DeploymentTarget.

    Without a target the stage records the deployment id and the configured
    ``target_url`` only.
    """

    cost = STAGE_COSTS[StageType.DEPLOYMENT]

    async def run(self, execution: WorkflowExecution, stage: WorkflowStage) -> Any:
        target = self.services.deployment_target
        if target is not None:
            return await target.deploy(execution, stage.configuration)
        return {
            "deployed": True,
            "deployment_id": f"deploy_{execution.id}_{int(time.time() * 1000)}",
            "url": stage.configuration.get("target_url"),
        }


# ── Helpers ──────────────────────────────────────────────────────────────────


def _source_output(execution: WorkflowExecution, stage: WorkflowStage, key: str) -> Any:
    """Output of the configured source stage, else the first dependency, else the input."""
    source = stage.configuration.get(key)
    if not source and stage.dependencies:
        source = stage.dependencies[0]
    if not source:
        return execution.input
    return execution.stage_output(source)


def _cache_key(stage: WorkflowStage, execution_input: dict[str, Any]) -> str:
    raw = json.dumps(
        {"stage": stage.id, "config": stage.configuration, "input": execution_input},
        sort_keys=True,
        default=str,
    )
    return f"ai:{stage.id}:{hashlib.sha256(raw.encode()).hexdigest()[:16]}"
