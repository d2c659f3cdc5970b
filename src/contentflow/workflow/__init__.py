"""Workflow engine: DAG execution of content-production stages.

Key exports:
    WorkflowOrchestrator - Façade: register, execute, cancel, query
    WorkflowDefinitionRegistry - Validated, immutable workflow definitions
    DependencyScheduler - Wave-based concurrent stage execution
    StageHandlerRegistry - StageType → handler mapping
    QualityGateEvaluator - Weighted multi-criterion scoring
    HumanReviewGateway, ApprovalCoordinator - Suspension points
    InMemoryExecutionStore, SqliteExecutionStore - Execution storage
    WorkflowDefinition, WorkflowExecution - Definition and runtime models
"""

from contentflow.workflow.approval import (
    ApprovalCoordinator,
    ApprovalOutcome,
    ApprovalResolution,
    ApprovalVote,
)
from contentflow.workflow.collaborators import (
    CacheProvider,
    ContentGenerationProvider,
    ContentReview,
    ContentReviewer,
    DeploymentTarget,
    InMemoryCache,
    MetricsSink,
)
from contentflow.workflow.definitions import WorkflowDefinitionRegistry, find_cycle
from contentflow.workflow.events import (
    EventPublisher,
    EventType,
    NotificationGateway,
    WorkflowEvent,
)
from contentflow.workflow.exceptions import (
    ApprovalRejectedError,
    ConfigurationError,
    ContentflowError,
    DeadlockError,
    ExecutionNotFoundError,
    HumanReviewTimeoutError,
    InvalidExecutionStateError,
    QualityGateFailure,
    StageExecutionError,
    StageTimeoutError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from contentflow.workflow.expressions import ExpressionResolver
from contentflow.workflow.handlers import HandlerServices, StageHandler, StageHandlerRegistry
from contentflow.workflow.models import (
    ApprovalConfiguration,
    ApprovalTimeoutAction,
    ApproverConfig,
    BackoffStrategy,
    ConditionOperator,
    CriterionResult,
    EscalationLevel,
    EscalationPolicy,
    ExecutionError,
    ExecutionMetrics,
    ExecutionStatus,
    HumanReviewRecord,
    QualityCheckResult,
    QualityCriterion,
    QualityGate,
    QualityValidator,
    ResourceUsage,
    RetryPolicy,
    ReviewDecision,
    ServiceLevelAgreement,
    StageExecution,
    StageStatus,
    StageType,
    TriggerCondition,
    TriggerDefinition,
    TriggerType,
    ValidatorType,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowMetrics,
    WorkflowStage,
)
from contentflow.workflow.orchestrator import WorkflowOrchestrator
from contentflow.workflow.quality import (
    CriterionContext,
    CriterionValidatorRegistry,
    QualityGateEvaluator,
    score_quality_gate,
)
from contentflow.workflow.retry import compute_retry_delay, should_retry
from contentflow.workflow.review import HumanReviewGateway
from contentflow.workflow.scheduler import DependencyScheduler
from contentflow.workflow.store import (
    ExecutionStore,
    InMemoryExecutionStore,
    SqliteExecutionStore,
)
from contentflow.workflow.templates import (
    content_quality_gate,
    course_creation_workflow,
    register_builtin_templates,
)

__all__ = [
    # Orchestration
    "DependencyScheduler",
    "WorkflowDefinitionRegistry",
    "WorkflowOrchestrator",
    "find_cycle",
    # Handlers
    "HandlerServices",
    "StageHandler",
    "StageHandlerRegistry",
    "ExpressionResolver",
    # Quality
    "CriterionContext",
    "CriterionValidatorRegistry",
    "QualityGateEvaluator",
    "score_quality_gate",
    # Retry
    "compute_retry_delay",
    "should_retry",
    # Suspension points
    "ApprovalCoordinator",
    "ApprovalOutcome",
    "ApprovalResolution",
    "ApprovalVote",
    "HumanReviewGateway",
    # Storage
    "ExecutionStore",
    "InMemoryExecutionStore",
    "SqliteExecutionStore",
    # Events
    "EventPublisher",
    "EventType",
    "NotificationGateway",
    "WorkflowEvent",
    # Collaborators
    "CacheProvider",
    "ContentGenerationProvider",
    "ContentReview",
    "ContentReviewer",
    "DeploymentTarget",
    "InMemoryCache",
    "MetricsSink",
    # Exceptions
    "ApprovalRejectedError",
    "ConfigurationError",
    "ContentflowError",
    "DeadlockError",
    "ExecutionNotFoundError",
    "HumanReviewTimeoutError",
    "InvalidExecutionStateError",
    "QualityGateFailure",
    "StageExecutionError",
    "StageTimeoutError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
    # Models
    "ApprovalConfiguration",
    "ApprovalTimeoutAction",
    "ApproverConfig",
    "BackoffStrategy",
    "ConditionOperator",
    "CriterionResult",
    "EscalationLevel",
    "EscalationPolicy",
    "ExecutionError",
    "ExecutionMetrics",
    "ExecutionStatus",
    "HumanReviewRecord",
    "QualityCheckResult",
    "QualityCriterion",
    "QualityGate",
    "QualityValidator",
    "ResourceUsage",
    "RetryPolicy",
    "ReviewDecision",
    "ServiceLevelAgreement",
    "StageExecution",
    "StageStatus",
    "StageType",
    "TriggerCondition",
    "TriggerDefinition",
    "TriggerType",
    "ValidatorType",
    "WorkflowDefinition",
    "WorkflowExecution",
    "WorkflowMetrics",
    "WorkflowStage",
    # Templates
    "content_quality_gate",
    "course_creation_workflow",
    "register_builtin_templates",
]
