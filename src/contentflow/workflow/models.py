"""Workflow system Pydantic models: definitions and runtime state.

Key exports:
    Definition models: WorkflowDefinition, WorkflowStage, RetryPolicy,
        TriggerDefinition, ApprovalConfiguration, ServiceLevelAgreement
    Runtime state models: WorkflowExecution, StageExecution, ExecutionMetrics,
        ExecutionError, HumanReviewRecord
    Quality models: QualityGate, QualityCriterion, QualityCheckResult
    Enums: StageType, BackoffStrategy, ExecutionStatus, StageStatus,
        ReviewDecision, ApprovalTimeoutAction
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class StageType(str, Enum):
    """All supported workflow stage types."""

    AI_GENERATION = "ai_generation"
    HUMAN_REVIEW = "human_review"
    QUALITY_CHECK = "quality_check"
    COMPLIANCE_CHECK = "compliance_check"
    APPROVAL = "approval"
    DEPLOYMENT = "deployment"


class BackoffStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"
    API = "api"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


class ApprovalTimeoutAction(str, Enum):
    """What happens when an approval deadline passes without a decision."""

    ESCALATE = "escalate"
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    EXTEND = "extend"


class ExecutionStatus(str, Enum):
    """Workflow execution lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StageStatus(str, Enum):
    """Stage execution lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVISION = "needs_revision"


class ValidatorType(str, Enum):
    """Built-in quality criterion validator kinds."""

    AI_SCORE = "ai_score"
    RULE_BASED = "rule_based"
    HUMAN_REVIEW = "human_review"
    EXTERNAL_API = "external_api"


# ── Stage ID validation ──────────────────────────────────────────────────────

STAGE_ID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")


# ── Definition Models ────────────────────────────────────────────────────────


class RetryPolicy(BaseModel):
    """How often a failing stage is retried and how long to wait in between.

    Delays are in seconds; duration strings such as ``"500ms"`` or ``"5s"``
    are accepted.
    """

    max_attempts: int = Field(1, ge=1)
    backoff_strategy: BackoffStrategy = BackoffStrategy.FIXED
    base_delay: float = Field(0.0, ge=0)
    max_delay: float | None = Field(None, ge=0)  # None = uncapped

    @field_validator("base_delay", "max_delay", mode="before")
    @classmethod
    def _parse_delay(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _parse_duration_seconds(v)
        return v


class WorkflowStage(BaseModel):
    """A single stage (DAG node) in a workflow definition."""

    id: str
    name: str = ""
    type: StageType
    configuration: dict[str, Any] = {}
    dependencies: list[str] = []
    timeout: float | None = None  # seconds; None = no timeout
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    fallback: WorkflowStage | None = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _parse_duration_seconds(v)
        return v

    @model_validator(mode="after")
    def validate_stage(self) -> WorkflowStage:
        if not STAGE_ID_PATTERN.match(self.id):
            msg = f"Stage ID '{self.id}' must match pattern {STAGE_ID_PATTERN.pattern}"
            raise ValueError(msg)
        if self.id in self.dependencies:
            msg = f"Stage '{self.id}' cannot depend on itself"
            raise ValueError(msg)
        if not self.name:
            self.name = self.id
        return self


class TriggerCondition(BaseModel):
    """A single predicate on an incoming trigger payload."""

    field: str  # Dotted path into the payload, e.g. "course.level"
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None

    def evaluate(self, payload: dict[str, Any]) -> bool:
        actual = _lookup_path(payload, self.field)
        match self.operator:
            case ConditionOperator.EQUALS:
                return actual == self.value
            case ConditionOperator.NOT_EQUALS:
                return actual != self.value
            case ConditionOperator.GREATER_THAN:
                try:
                    return actual > self.value
                except TypeError:
                    return False
            case ConditionOperator.LESS_THAN:
                try:
                    return actual < self.value
                except TypeError:
                    return False
            case ConditionOperator.CONTAINS:
                if isinstance(actual, (str, list, tuple, set, dict)):
                    return self.value in actual
                return False
        return False


class TriggerDefinition(BaseModel):
    """When a workflow should be started."""

    type: TriggerType = TriggerType.MANUAL
    configuration: dict[str, Any] = {}
    conditions: list[TriggerCondition] = []

    def matches(self, payload: dict[str, Any]) -> bool:
        """Check if an incoming payload satisfies every condition."""
        if self.type not in (TriggerType.EVENT, TriggerType.API):
            return False
        event = self.configuration.get("event")
        if event and payload.get("event") != event:
            return False
        return all(cond.evaluate(payload) for cond in self.conditions)


class ApproverConfig(BaseModel):
    user_id: str
    role: str = ""
    weight: float = Field(1.0, gt=0)
    can_veto: bool = False


class EscalationLevel(BaseModel):
    """Approvers notified once an approval has been waiting ``after`` seconds."""

    after: float
    approvers: list[str] = []
    actions: list[str] = ["notify"]

    @field_validator("after", mode="before")
    @classmethod
    def _parse_after(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _parse_duration_seconds(v)
        return v


class EscalationPolicy(BaseModel):
    levels: list[EscalationLevel] = []
    auto_approve: bool = False
    notification_channels: list[str] = []


class ApprovalConfiguration(BaseModel):
    """Approval rules shared by every approval stage of a workflow."""

    required: bool = True
    approvers: list[ApproverConfig] = []
    required_approvals: float = Field(1.0, gt=0)
    deadline: float = 48 * 3600.0
    escalation: EscalationPolicy = Field(default_factory=EscalationPolicy)
    timeout_action: ApprovalTimeoutAction | None = None
    max_extensions: int = Field(1, ge=0)

    @field_validator("deadline", mode="before")
    @classmethod
    def _parse_deadline(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _parse_duration_seconds(v)
        return v

    @property
    def effective_timeout_action(self) -> ApprovalTimeoutAction:
        if self.timeout_action is not None:
            return self.timeout_action
        if self.escalation.auto_approve:
            return ApprovalTimeoutAction.AUTO_APPROVE
        return ApprovalTimeoutAction.ESCALATE


class ServiceLevelAgreement(BaseModel):
    max_processing_time: float | None = None  # seconds
    quality_threshold: float = 0.0
    availability_target: float = 99.9
    response_time_target: float | None = None


class WorkflowDefinition(BaseModel):
    """Complete workflow definition. Frozen once registered."""

    id: str
    name: str
    description: str = ""
    stages: list[WorkflowStage] = []
    triggers: list[TriggerDefinition] = []
    approval: ApprovalConfiguration = Field(default_factory=ApprovalConfiguration)
    sla: ServiceLevelAgreement = Field(default_factory=ServiceLevelAgreement)

    def get_stage(self, stage_id: str) -> WorkflowStage | None:
        """Look up a stage by ID."""
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def stage_ids(self) -> list[str]:
        return [s.id for s in self.stages]


# ── Quality Models ───────────────────────────────────────────────────────────


class QualityValidator(BaseModel):
    type: str = ValidatorType.RULE_BASED.value
    configuration: dict[str, Any] = {}


class QualityCriterion(BaseModel):
    name: str
    weight: float = Field(ge=0)
    validator: QualityValidator = Field(default_factory=QualityValidator)
    threshold: float = 0.0


class QualityGate(BaseModel):
    """A weighted multi-criterion scoring check."""

    id: str
    name: str = ""
    criteria: list[QualityCriterion] = Field(min_length=1)
    threshold: float
    mandatory: bool = True
    automated_check: bool = True
    review_threshold: float = 90.0


class CriterionResult(BaseModel):
    criterion: str
    score: float
    passed: bool
    details: str = ""


class QualityCheckResult(BaseModel):
    gate_id: str
    passed: bool
    score: float
    criteria_results: list[CriterionResult] = []
    recommendations: list[str] = []
    requires_human_review: bool = False


# ── Runtime State Models ─────────────────────────────────────────────────────


class HumanReviewRecord(BaseModel):
    """Outcome of a human review, supplied by the external review system."""

    reviewer_id: str
    reviewed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    decision: ReviewDecision = ReviewDecision.APPROVED
    feedback: str = ""
    quality_score: float | None = None
    time_spent: float = 0.0  # seconds
    modifications: dict[str, Any] = {}


class ResourceUsage(BaseModel):
    api_calls: int = 0
    tokens_used: int = 0
    cache_hits: int = 0
    cache_misses: int = 0


class ExecutionMetrics(BaseModel):
    total_time: float = 0.0  # seconds
    ai_processing_time: float = 0.0
    human_review_time: float = 0.0
    quality_score: float = 0.0
    cost: float = 0.0
    api_calls: int = 0
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)


class ExecutionError(BaseModel):
    """Structured terminal error attached to a failed execution."""

    code: str
    message: str
    stage_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    recoverable: bool = False
    details: dict[str, Any] = {}


class StageExecution(BaseModel):
    """Runtime state of a single stage within an execution."""

    stage_id: str
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: int = 0
    output: Any = None
    error: str | None = None
    used_fallback: bool = False
    human_review: HumanReviewRecord | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class WorkflowExecution(BaseModel):
    """Runtime state of one workflow run."""

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    input: dict[str, Any] = {}
    output: dict[str, Any] = {}
    stages: list[StageExecution] = []
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    error: ExecutionError | None = None
    cancel_reason: str | None = None

    def get_stage(self, stage_id: str) -> StageExecution | None:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def stage_output(self, stage_id: str) -> Any:
        stage = self.get_stage(stage_id)
        return stage.output if stage else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WorkflowMetrics(BaseModel):
    """Aggregate metrics across every execution the orchestrator has seen."""

    total_executions: int = 0
    success_rate: float = 0.0
    average_processing_time: float = 0.0
    total_cost: float = 0.0
    quality_scores: list[float] = []


# ── Helpers ──────────────────────────────────────────────────────────────────


def _parse_duration_seconds(duration: str) -> float:
    """Parse a duration string like '500ms', '30s', '5m', '2h', '1d' to seconds.

    Raises ValueError on invalid format.
    """
    match = re.match(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><ms|s|m|h|d>"
        raise ValueError(msg)
    value = float(match.group(1))
    unit = match.group(2)
    multipliers = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]


def _lookup_path(payload: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path inside nested dicts. Missing keys yield None."""
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current
