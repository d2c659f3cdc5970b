"""Dependency scheduler: wave-based execution of a workflow's stage graph.

Each wave is the set of remaining stages whose dependencies have all
completed. A wave's stages run concurrently; the next wave is computed only
once every stage of the current one has finished, so dependents always see
the final outputs of their dependencies.

Per stage: attempts are retried per the stage's RetryPolicy (explicit loop),
then the fallback stage runs once. A permanent failure skips every stage that
has not started and propagates to the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from contentflow.workflow.events import EventPublisher, EventType
from contentflow.workflow.exceptions import (
    DeadlockError,
    StageExecutionError,
    StageTimeoutError,
)
from contentflow.workflow.expressions import ExpressionResolver
from contentflow.workflow.handlers import StageHandler, StageHandlerRegistry
from contentflow.workflow.models import (
    ExecutionStatus,
    HumanReviewRecord,
    StageExecution,
    StageStatus,
    StageType,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStage,
)
from contentflow.workflow.retry import compute_retry_delay, should_retry
from contentflow.workflow.store import ExecutionStore

logger = logging.getLogger("contentflow.workflow.scheduler")

# Stage types whose elapsed time counts as human time rather than processing time
_HUMAN_STAGE_TYPES = frozenset({StageType.HUMAN_REVIEW, StageType.APPROVAL})


class DependencyScheduler:
    """Drives one execution through its stage graph until it is exhausted."""

    def __init__(
        self,
        handlers: StageHandlerRegistry,
        store: ExecutionStore,
        publisher: EventPublisher,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._handlers = handlers
        self._store = store
        self._publisher = publisher
        self._sleep = sleep

    async def run(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> None:
        """Run every stage of ``definition`` against ``execution``.

        Returns when all stages completed or the execution was cancelled.

        Raises:
            StageExecutionError: a stage failed permanently.
            DeadlockError: stages remain but none is ready.
        """
        completed = {s.stage_id for s in execution.stages if s.status == StageStatus.COMPLETED}
        remaining = [s for s in definition.stages if s.id not in completed]

        wave = 0
        while remaining:
            if _cancelled(execution):
                logger.info("Execution %s cancelled, no further stages dispatched", execution.id)
                return

            ready = [s for s in remaining if set(s.dependencies) <= completed]
            if not ready:
                await self._skip(execution, remaining)
                raise DeadlockError([s.id for s in remaining])

            wave += 1
            logger.debug(
                "Execution %s wave %d: %s", execution.id, wave, ", ".join(s.id for s in ready)
            )
            results = await asyncio.gather(
                *(self._run_stage(execution, stage) for stage in ready),
                return_exceptions=True,
            )

            if _cancelled(execution):
                logger.info("Execution %s cancelled during wave %d", execution.id, wave)
                return

            failure: BaseException | None = None
            for stage, result in zip(ready, results):
                if isinstance(result, BaseException):
                    failure = failure or result
                else:
                    completed.add(stage.id)
            dispatched = {s.id for s in ready}
            remaining = [s for s in remaining if s.id not in dispatched]

            if failure is not None:
                await self._skip(execution, remaining)
                if isinstance(failure, asyncio.CancelledError):
                    msg = "Stage was cancelled outside of an execution cancel"
                    raise StageExecutionError(msg, retryable=False) from failure
                raise failure

    # ── Stage execution ──────────────────────────────────────────────────────

    async def _run_stage(self, execution: WorkflowExecution, stage: WorkflowStage) -> None:
        handler = self._handlers.get(stage.type)
        record = execution.get_stage(stage.id)
        if record is None:
            msg = f"Execution {execution.id} has no record for stage '{stage.id}'"
            raise StageExecutionError(msg, stage_id=stage.id, retryable=False)

        async with self._store.lock(execution.id):
            record.status = StageStatus.RUNNING
            record.started_at = datetime.now(timezone.utc)
            await self._store.save(execution)
        self._publish(EventType.STAGE_STARTED, execution, stage.id, type=stage.type.value)
        logger.info("Stage '%s' started (execution %s)", stage.id, execution.id)

        policy = stage.retry_policy
        output: Any = None
        error: StageExecutionError | None = None
        used_fallback = False

        while True:
            async with self._store.lock(execution.id):
                record.attempts += 1
            try:
                output = await self._invoke(handler, execution, stage)
                error = None
                break
            except Exception as exc:
                error = _as_stage_error(exc, stage.id)

            if _cancelled(execution):
                break
            if not (error.retryable and should_retry(policy, record.attempts)):
                break

            delay = compute_retry_delay(policy, record.attempts)
            logger.warning(
                "Stage '%s' attempt %d/%d failed: %s (retrying in %.2fs, execution %s)",
                stage.id,
                record.attempts,
                policy.max_attempts,
                error,
                delay,
                execution.id,
            )
            self._publish(
                EventType.STAGE_RETRYING,
                execution,
                stage.id,
                attempt=record.attempts,
                delay=delay,
                error=str(error),
            )
            await self._sleep(delay)
            if _cancelled(execution):
                break

        if error is not None and stage.fallback is not None and not _cancelled(execution):
            fallback = stage.fallback.model_copy(
                update={"id": stage.id, "dependencies": list(stage.dependencies)}
            )
            logger.warning(
                "Stage '%s' exhausted after %d attempts, running fallback '%s' (execution %s)",
                stage.id,
                record.attempts,
                stage.fallback.id,
                execution.id,
            )
            handler = self._handlers.get(fallback.type)
            try:
                output = await self._invoke(handler, execution, fallback)
                error = None
                used_fallback = True
            except Exception as exc:
                error = _as_stage_error(exc, stage.id)

        if error is not None:
            await self._fail_stage(execution, stage, record, error)
            raise error

        await self._complete_stage(execution, stage, handler, record, output, used_fallback)

    async def _invoke(
        self, handler: StageHandler, execution: WorkflowExecution, stage: WorkflowStage
    ) -> Any:
        if stage.configuration:
            resolver = ExpressionResolver.for_execution(execution)
            stage = stage.model_copy(update={"configuration": resolver.resolve(stage.configuration)})
        if stage.timeout is None or StageHandlerRegistry.manages_own_timeout(handler):
            return await handler.run(execution, stage)
        try:
            return await asyncio.wait_for(handler.run(execution, stage), timeout=stage.timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError(stage.id, stage.timeout) from exc

    async def _complete_stage(
        self,
        execution: WorkflowExecution,
        stage: WorkflowStage,
        handler: StageHandler,
        record: StageExecution,
        output: Any,
        used_fallback: bool,
    ) -> None:
        async with self._store.lock(execution.id):
            if execution.is_terminal:
                logger.info(
                    "Ignoring late completion of stage '%s' (execution %s is %s)",
                    stage.id,
                    execution.id,
                    execution.status.value,
                )
                return
            now = datetime.now(timezone.utc)
            elapsed = (now - record.started_at).total_seconds() if record.started_at else 0.0

            metrics = execution.metrics
            if isinstance(output, HumanReviewRecord):
                record.human_review = output
                metrics.human_review_time += output.time_spent or elapsed
                output = output.model_dump(mode="json")
            elif stage.type in _HUMAN_STAGE_TYPES:
                metrics.human_review_time += elapsed
            else:
                metrics.ai_processing_time += elapsed

            metrics.api_calls += 1
            metrics.resource_usage.api_calls += 1
            metrics.cost += StageHandlerRegistry.cost_of(handler, stage.type)
            score = _quality_score(output)
            if score is not None:
                metrics.quality_score = max(metrics.quality_score, score)

            record.status = StageStatus.COMPLETED
            record.completed_at = now
            record.output = output
            record.used_fallback = used_fallback
            record.error = None
            await self._store.save(execution)

        logger.info(
            "Stage '%s' completed in %.2fs after %d attempt(s)%s (execution %s)",
            stage.id,
            elapsed,
            record.attempts,
            " via fallback" if used_fallback else "",
            execution.id,
        )
        self._publish(
            EventType.STAGE_COMPLETED,
            execution,
            stage.id,
            attempts=record.attempts,
            used_fallback=used_fallback,
            duration=elapsed,
        )

    async def _fail_stage(
        self, execution: WorkflowExecution, stage: WorkflowStage, record: StageExecution, error: StageExecutionError
    ) -> None:
        async with self._store.lock(execution.id):
            if execution.is_terminal:
                return
            record.status = StageStatus.FAILED
            record.completed_at = datetime.now(timezone.utc)
            record.error = str(error)
            await self._store.save(execution)
        logger.error(
            "Stage '%s' failed after %d attempt(s): %s (execution %s)",
            stage.id,
            record.attempts,
            error,
            execution.id,
        )
        self._publish(
            EventType.STAGE_FAILED,
            execution,
            stage.id,
            attempts=record.attempts,
            code=error.code,
            error=str(error),
        )

    async def _skip(self, execution: WorkflowExecution, stages: list[WorkflowStage]) -> None:
        if not stages:
            return
        async with self._store.lock(execution.id):
            for stage in stages:
                record = execution.get_stage(stage.id)
                if record is not None and record.status == StageStatus.PENDING:
                    record.status = StageStatus.SKIPPED
            await self._store.save(execution)
        logger.info(
            "Skipped %d stage(s) after failure (execution %s): %s",
            len(stages),
            execution.id,
            ", ".join(s.id for s in stages),
        )

    def _publish(self, event_type: EventType, execution: WorkflowExecution, stage_id: str, **data) -> None:
        self._publisher.publish(
            event_type,
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            stage_id=stage_id,
            data=data,
        )


# ── Helpers ──────────────────────────────────────────────────────────────────


def _cancelled(execution: WorkflowExecution) -> bool:
    return execution.status == ExecutionStatus.CANCELLED


def _as_stage_error(exc: Exception, stage_id: str) -> StageExecutionError:
    """Normalise a handler exception; unknown exceptions are retryable."""
    if isinstance(exc, StageExecutionError):
        if exc.stage_id is None:
            exc.stage_id = stage_id
        return exc
    logger.exception("Stage '%s' raised an unexpected exception", stage_id)
    error = StageExecutionError(
        f"{type(exc).__name__}: {exc}",
        stage_id=stage_id,
        retryable=True,
        details={"exception_type": type(exc).__name__},
    )
    error.__cause__ = exc
    return error


def _quality_score(output: Any) -> float | None:
    if not isinstance(output, dict):
        return None
    for key in ("quality_score", "score"):
        value = output.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None
