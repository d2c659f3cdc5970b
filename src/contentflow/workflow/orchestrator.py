"""Workflow orchestrator: the façade composing registry, scheduler and store.

Key exports:
    WorkflowOrchestrator - register_workflow(), execute_workflow(),
        start_workflow(), cancel_workflow(), get_execution_status(),
        get_execution_history(), complete_human_review(), submit_approval(),
        get_workflow_metrics(), trigger_event().
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

import httpx

from contentflow.workflow.approval import ApprovalCoordinator
from contentflow.workflow.collaborators import (
    CacheProvider,
    ContentGenerationProvider,
    ContentReviewer,
    DeploymentTarget,
    MetricsSink,
)
from contentflow.workflow.definitions import WorkflowDefinitionRegistry
from contentflow.workflow.events import EventPublisher, EventType
from contentflow.workflow.exceptions import (
    ConfigurationError,
    ContentflowError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
)
from contentflow.workflow.handlers import HandlerServices, StageHandlerRegistry
from contentflow.workflow.models import (
    ExecutionError,
    ExecutionStatus,
    HumanReviewRecord,
    QualityGate,
    StageExecution,
    StageStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowMetrics,
)
from contentflow.workflow.quality import CriterionValidatorRegistry, QualityGateEvaluator
from contentflow.workflow.review import HumanReviewGateway
from contentflow.workflow.scheduler import DependencyScheduler
from contentflow.workflow.store import ExecutionStore, InMemoryExecutionStore

logger = logging.getLogger("contentflow.workflow.orchestrator")


class WorkflowOrchestrator:
    """Runs registered workflows and tracks their executions.

    Usage:
        orchestrator = WorkflowOrchestrator(generator=provider, reviewer=reviewer)
        orchestrator.register_quality_gate(gate)
        orchestrator.register_workflow(definition)
        execution = await orchestrator.execute_workflow("course_creation", {"topic": "..."})

    Executions run as background tasks; ``execute_workflow`` awaits the
    terminal state while ``start_workflow`` returns immediately.
    """

    def __init__(
        self,
        *,
        store: ExecutionStore | None = None,
        publisher: EventPublisher | None = None,
        generator: ContentGenerationProvider | None = None,
        reviewer: ContentReviewer | None = None,
        cache: CacheProvider | None = None,
        deployment_target: DeploymentTarget | None = None,
        metrics_sink: MetricsSink | None = None,
        notification_gateways: Iterable[Any] = (),
        validators: CriterionValidatorRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.publisher = publisher or EventPublisher()
        for gateway in notification_gateways:
            self.publisher.add_gateway(gateway)

        self.store: ExecutionStore = store or InMemoryExecutionStore()
        self.definitions = WorkflowDefinitionRegistry(self.publisher)
        self.quality = QualityGateEvaluator(validators, reviewer=reviewer, http_client=http_client)
        self.reviews = HumanReviewGateway()
        self.approvals = ApprovalCoordinator(self.publisher)
        self.services = HandlerServices(
            store=self.store,
            definitions=self.definitions,
            publisher=self.publisher,
            quality=self.quality,
            reviews=self.reviews,
            approvals=self.approvals,
            generator=generator,
            reviewer=reviewer,
            cache=cache,
            deployment_target=deployment_target,
        )
        self.handlers = StageHandlerRegistry.with_defaults(self.services)
        missing = self.handlers.missing_types()
        if missing:
            msg = f"No handlers for stage types: {[t.value for t in missing]}"
            raise ConfigurationError(msg)

        self.scheduler = DependencyScheduler(self.handlers, self.store, self.publisher, sleep=sleep)
        self._metrics_sink = metrics_sink

        # Executions that are not yet terminal (id → live object)
        self._live: dict[str, WorkflowExecution] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Definitions ──────────────────────────────────────────────────────────

    def register_workflow(self, definition: WorkflowDefinition) -> None:
        """Validate and register a definition. Raises WorkflowValidationError."""
        self.definitions.register(definition)

    def register_quality_gate(self, gate: QualityGate) -> None:
        self.quality.register_gate(gate)

    def list_workflows(self) -> list[WorkflowDefinition]:
        return self.definitions.list()

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self.definitions.get(workflow_id)

    # ── Execution ────────────────────────────────────────────────────────────

    async def start_workflow(
        self, workflow_id: str, input_data: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """Create an execution and run it in the background."""
        definition = self.definitions.get(workflow_id)
        execution = WorkflowExecution(
            id=f"exec_{workflow_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
            workflow_id=workflow_id,
            input=dict(input_data or {}),
            stages=[StageExecution(stage_id=s.id) for s in definition.stages],
        )
        await self.store.insert(execution)
        self._live[execution.id] = execution

        task = asyncio.create_task(self._run(execution, definition), name=f"contentflow:{execution.id}")
        self._tasks[execution.id] = task
        logger.info("Started workflow '%s' as execution %s", workflow_id, execution.id)
        return execution

    async def execute_workflow(
        self, workflow_id: str, input_data: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """Run a workflow and return the execution once it is terminal."""
        execution = await self.start_workflow(workflow_id, input_data)
        return await self.wait_for_execution(execution.id)

    async def wait_for_execution(self, execution_id: str) -> WorkflowExecution:
        task = self._tasks.get(execution_id)
        if task is not None:
            # Shielded: a caller giving up must not cancel the run itself
            await asyncio.shield(task)
        execution = await self.get_execution_status(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def trigger_event(self, payload: dict[str, Any]) -> list[WorkflowExecution]:
        """Start every workflow with an event/api trigger matching ``payload``."""
        started = []
        for definition in self.definitions.list():
            if any(trigger.matches(payload) for trigger in definition.triggers):
                input_data = payload.get("input", payload)
                started.append(await self.start_workflow(definition.id, input_data))
        logger.info("Event %s started %d workflow(s)", payload.get("event", "<none>"), len(started))
        return started

    async def cancel_workflow(self, execution_id: str, reason: str = "") -> None:
        """Cancel a pending or running execution.

        Only bookkeeping changes: no further stages are dispatched and pending
        reviews/approvals are released, but in-flight collaborator calls are
        left to finish and their results are discarded.
        """
        execution = await self.get_execution_status(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.is_terminal:
            msg = f"Execution {execution_id} is already {execution.status.value}"
            raise InvalidExecutionStateError(msg)

        async with self.store.lock(execution_id):
            if execution.is_terminal:
                msg = f"Execution {execution_id} is already {execution.status.value}"
                raise InvalidExecutionStateError(msg)
            execution.status = ExecutionStatus.CANCELLED
            execution.cancel_reason = reason
            _finish(execution)
            await self.store.save(execution)

        self.reviews.cancel_execution(execution_id)
        self.approvals.cancel_execution(execution_id)
        logger.info("Cancelled execution %s: %s", execution_id, reason or "no reason given")
        self.publisher.publish(
            EventType.WORKFLOW_CANCELLED,
            workflow_id=execution.workflow_id,
            execution_id=execution_id,
            data={"reason": reason},
        )
        await self._record_metrics(execution)

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get_execution_status(self, execution_id: str) -> WorkflowExecution | None:
        live = self._live.get(execution_id)
        if live is not None:
            return live
        return await self.store.get(execution_id)

    async def get_execution_history(self, limit: int = 10) -> list[WorkflowExecution]:
        """Most recent executions, newest first."""
        history = await self.store.recent(limit)
        return [self._live.get(e.id, e) for e in history]

    async def get_workflow_metrics(self) -> WorkflowMetrics:
        """Aggregate over every execution.

        Success rate is over all executions; time, cost and quality only
        count completed ones.
        """
        executions = await self.store.all()
        completed = [e for e in executions if e.status == ExecutionStatus.COMPLETED]
        total = len(executions)
        return WorkflowMetrics(
            total_executions=total,
            success_rate=len(completed) / total if total else 0.0,
            average_processing_time=(
                sum(e.metrics.total_time for e in completed) / max(len(completed), 1)
            ),
            total_cost=sum(e.metrics.cost for e in completed),
            quality_scores=[e.metrics.quality_score for e in completed],
        )

    # ── External resolutions ─────────────────────────────────────────────────

    def complete_human_review(
        self, execution_id: str, stage_id: str, record: HumanReviewRecord
    ) -> bool:
        """Resume a suspended human-review stage. False when none matches."""
        return self.reviews.complete(execution_id, stage_id, record)

    def submit_approval(
        self,
        execution_id: str,
        stage_id: str,
        approver_id: str,
        approved: bool,
        comment: str = "",
    ) -> bool:
        return self.approvals.submit(execution_id, stage_id, approver_id, approved, comment)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Cancel running executions and wait for their tasks to unwind."""
        for execution_id in list(self._live):
            execution = self._live[execution_id]
            if not execution.is_terminal:
                await self.cancel_workflow(execution_id, "orchestrator shutdown")
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.publisher.drain()

    # ── Internals ────────────────────────────────────────────────────────────

    async def _run(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> None:
        try:
            async with self.store.lock(execution.id):
                if execution.is_terminal:
                    return
                execution.status = ExecutionStatus.RUNNING
                await self.store.save(execution)
            self.publisher.publish(
                EventType.WORKFLOW_STARTED,
                workflow_id=execution.workflow_id,
                execution_id=execution.id,
                data={"input": execution.input},
            )

            try:
                await self.scheduler.run(execution, definition)
            except ContentflowError as exc:
                await self._fail(execution, exc)
            except Exception as exc:
                logger.exception("Execution %s crashed", execution.id)
                await self._fail(execution, exc)
            else:
                await self._complete(execution)
        finally:
            self._tasks.pop(execution.id, None)
            if execution.is_terminal:
                self._live.pop(execution.id, None)
                self.store.release(execution.id)

    async def _complete(self, execution: WorkflowExecution) -> None:
        async with self.store.lock(execution.id):
            if execution.is_terminal:
                return
            execution.status = ExecutionStatus.COMPLETED
            execution.output = {
                s.stage_id: s.output for s in execution.stages if s.status == StageStatus.COMPLETED
            }
            _finish(execution)
            await self.store.save(execution)

        logger.info(
            "Execution %s completed in %.2fs (cost %.2f, quality %.1f)",
            execution.id,
            execution.metrics.total_time,
            execution.metrics.cost,
            execution.metrics.quality_score,
        )
        self.publisher.publish(
            EventType.WORKFLOW_COMPLETED,
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            data={"metrics": execution.metrics.model_dump(mode="json")},
        )
        await self._record_metrics(execution)

    async def _fail(self, execution: WorkflowExecution, exc: Exception) -> None:
        async with self.store.lock(execution.id):
            if execution.is_terminal:
                return
            execution.status = ExecutionStatus.FAILED
            execution.error = _execution_error(exc)
            _finish(execution)
            await self.store.save(execution)

        logger.error(
            "Execution %s failed at stage '%s': %s",
            execution.id,
            execution.error.stage_id,
            execution.error.message,
        )
        self.publisher.publish(
            EventType.WORKFLOW_FAILED,
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            stage_id=execution.error.stage_id,
            data={"code": execution.error.code, "error": execution.error.message},
        )
        await self._record_metrics(execution)

    async def _record_metrics(self, execution: WorkflowExecution) -> None:
        if self._metrics_sink is None:
            return
        try:
            result = self._metrics_sink.record(execution.id, execution.metrics)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Metrics sink failed for execution %s", execution.id)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _finish(execution: WorkflowExecution) -> None:
    execution.completed_at = datetime.now(timezone.utc)
    execution.metrics.total_time = (execution.completed_at - execution.started_at).total_seconds()


def _execution_error(exc: Exception) -> ExecutionError:
    if isinstance(exc, ContentflowError):
        return ExecutionError(
            code=exc.code,
            message=exc.message,
            stage_id=getattr(exc, "stage_id", None),
            recoverable=exc.recoverable,
            details=exc.details,
        )
    return ExecutionError(
        code="INTERNAL_ERROR",
        message=f"{type(exc).__name__}: {exc}",
        recoverable=False,
    )
