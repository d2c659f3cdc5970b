"""Exception hierarchy for the workflow engine.

Exception Hierarchy:
    ContentflowError (base)
    ├── ConfigurationError
    ├── WorkflowValidationError      - rejected at registration
    ├── WorkflowNotFoundError
    ├── ExecutionNotFoundError
    ├── InvalidExecutionStateError   - e.g. cancelling a finished execution
    ├── StageExecutionError          - handler failed (retryable by default)
    │   ├── StageTimeoutError
    │   ├── HumanReviewTimeoutError  - non-retryable
    │   ├── QualityGateFailure
    │   └── ApprovalRejectedError    - non-retryable
    └── DeadlockError                - invariant violation, non-recoverable

Every error carries a machine-readable ``code`` and a ``recoverable`` flag
that end up in the ``ExecutionError`` of a failed execution.
"""

from __future__ import annotations

from typing import Any


class ContentflowError(Exception):
    """Base exception for all contentflow errors."""

    code = "CONTENTFLOW_ERROR"
    recoverable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(ContentflowError):
    """Configuration file missing, malformed, or inconsistent."""

    code = "CONFIGURATION_ERROR"


class WorkflowValidationError(ContentflowError):
    """A workflow definition was rejected at registration.

    ``errors`` lists every problem found, not just the first one.
    """

    code = "WORKFLOW_VALIDATION_FAILED"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or [message]
        super().__init__(message, details={"errors": self.errors})


class WorkflowNotFoundError(ContentflowError):
    code = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFoundError(ContentflowError):
    code = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class InvalidExecutionStateError(ContentflowError):
    code = "INVALID_EXECUTION_STATE"


class StageExecutionError(ContentflowError):
    """A stage handler failed.

    ``retryable`` tells the scheduler whether another attempt may succeed.
    Unexpected exceptions raised by handlers are wrapped in this class with
    ``retryable=True``.
    """

    code = "STAGE_EXECUTION_FAILED"
    recoverable = True

    def __init__(
        self,
        message: str,
        *,
        stage_id: str | None = None,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.stage_id = stage_id
        self.retryable = retryable
        super().__init__(message, details=details)


class StageTimeoutError(StageExecutionError):
    code = "STAGE_TIMEOUT"

    def __init__(self, stage_id: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            f"Stage '{stage_id}' exceeded its timeout of {timeout:g}s",
            stage_id=stage_id,
            retryable=True,
        )


class HumanReviewTimeoutError(StageExecutionError):
    code = "HUMAN_REVIEW_TIMEOUT"
    recoverable = False

    def __init__(self, execution_id: str, stage_id: str, timeout: float | None) -> None:
        self.execution_id = execution_id
        super().__init__(
            f"Human review for stage '{stage_id}' timed out after {timeout or 0:g}s",
            stage_id=stage_id,
            retryable=False,
        )


class QualityGateFailure(StageExecutionError):
    """A mandatory quality gate scored under its threshold."""

    code = "QUALITY_GATE_FAILED"

    def __init__(self, gate_id: str, score: float, threshold: float, *, stage_id: str | None = None):
        self.gate_id = gate_id
        self.score = score
        self.threshold = threshold
        super().__init__(
            f"Quality gate '{gate_id}' failed: score {score:.2f} < threshold {threshold:g}",
            stage_id=stage_id,
            retryable=True,
            details={"gate_id": gate_id, "score": score, "threshold": threshold},
        )


class ApprovalRejectedError(StageExecutionError):
    code = "APPROVAL_REJECTED"
    recoverable = False

    def __init__(self, message: str, *, stage_id: str | None = None, code: str | None = None):
        if code:
            self.code = code
        super().__init__(message, stage_id=stage_id, retryable=False)


class DeadlockError(ContentflowError):
    """No stage is ready while stages remain; impossible for an acyclic graph."""

    code = "WORKFLOW_DEADLOCK"
    recoverable = False

    def __init__(self, remaining: list[str]) -> None:
        self.remaining = remaining
        super().__init__(
            f"Workflow deadlock: no stages ready to execute (remaining: {sorted(remaining)})",
            details={"remaining": sorted(remaining)},
        )
