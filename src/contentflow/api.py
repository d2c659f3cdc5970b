"""Workflow API: REST endpoints over the orchestrator plus an SSE event stream.

Endpoints:
    Workflows:
    - GET  /workflows                       - List registered workflows
    - POST /workflows                       - Register a workflow definition
    - GET  /workflows/{workflow_id}         - One workflow definition
    - POST /workflows/{workflow_id}/executions - Start an execution (202)

    Executions:
    - GET  /executions                      - Recent executions, newest first
    - GET  /executions/{execution_id}       - Execution status
    - POST /executions/{execution_id}/cancel
    - POST /executions/{execution_id}/stages/{stage_id}/review
    - POST /executions/{execution_id}/stages/{stage_id}/approvals

    Other:
    - POST /events                          - Start workflows whose triggers match
    - GET  /events/stream                   - Live lifecycle events via SSE
    - GET  /metrics                         - Aggregate workflow metrics
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from contentflow.workflow.exceptions import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from contentflow.workflow.models import HumanReviewRecord, WorkflowDefinition

if TYPE_CHECKING:
    from contentflow.workflow.orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])

# Module-level reference (configured at startup)
_orchestrator: "WorkflowOrchestrator | None" = None

_HEARTBEAT_SECONDS = 30.0


def configure(orchestrator: "WorkflowOrchestrator | None") -> None:
    """Configure the router with the orchestrator it serves."""
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("Workflow API configured (orchestrator=%s)", "yes" if orchestrator else "no")


def _require_orchestrator() -> "WorkflowOrchestrator":
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not configured")
    return _orchestrator


# ── Request Bodies ───────────────────────────────────────────────────────────


class ExecutionRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: str = ""


class ApprovalRequest(BaseModel):
    approver_id: str
    approved: bool
    comment: str = ""


# ── Workflows ────────────────────────────────────────────────────────────────


@router.get("/workflows")
async def list_workflows():
    orchestrator = _require_orchestrator()
    return {"workflows": [w.model_dump(mode="json") for w in orchestrator.list_workflows()]}


@router.post("/workflows", status_code=201)
async def register_workflow(definition: WorkflowDefinition):
    orchestrator = _require_orchestrator()
    try:
        orchestrator.register_workflow(definition)
    except WorkflowValidationError as exc:
        raise HTTPException(
            status_code=400, detail={"message": exc.message, "errors": exc.errors}
        ) from exc
    return {"id": definition.id, "registered": True}


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str):
    orchestrator = _require_orchestrator()
    try:
        return orchestrator.get_workflow(workflow_id).model_dump(mode="json")
    except WorkflowNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc


@router.post("/workflows/{workflow_id}/executions", status_code=202)
async def start_execution(workflow_id: str, body: ExecutionRequest | None = None):
    """Start an execution; it runs in the background. Poll /executions/{id}."""
    orchestrator = _require_orchestrator()
    try:
        execution = await orchestrator.start_workflow(workflow_id, body.input if body else {})
    except WorkflowNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    return {"execution_id": execution.id, "status": execution.status.value}


# ── Executions ───────────────────────────────────────────────────────────────


@router.get("/executions")
async def list_executions(limit: int = Query(default=10, ge=1, le=500)):
    orchestrator = _require_orchestrator()
    history = await orchestrator.get_execution_history(limit)
    return {"executions": [e.model_dump(mode="json") for e in history]}


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str):
    orchestrator = _require_orchestrator()
    execution = await orchestrator.get_execution_status(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    return execution.model_dump(mode="json")


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str, body: CancelRequest | None = None):
    orchestrator = _require_orchestrator()
    try:
        await orchestrator.cancel_workflow(execution_id, body.reason if body else "")
    except ExecutionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except InvalidExecutionStateError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return {"execution_id": execution_id, "status": "cancelled"}


@router.post("/executions/{execution_id}/stages/{stage_id}/review")
async def complete_review(execution_id: str, stage_id: str, record: HumanReviewRecord):
    orchestrator = _require_orchestrator()
    if not orchestrator.complete_human_review(execution_id, stage_id, record):
        raise HTTPException(
            status_code=404,
            detail=f"No pending review for stage '{stage_id}' of execution {execution_id}",
        )
    return {"execution_id": execution_id, "stage_id": stage_id, "resumed": True}


@router.post("/executions/{execution_id}/stages/{stage_id}/approvals")
async def submit_approval(execution_id: str, stage_id: str, body: ApprovalRequest):
    orchestrator = _require_orchestrator()
    accepted = orchestrator.submit_approval(
        execution_id, stage_id, body.approver_id, body.approved, body.comment
    )
    if not accepted:
        raise HTTPException(
            status_code=409,
            detail=f"Vote from '{body.approver_id}' not accepted for stage '{stage_id}'",
        )
    return {"execution_id": execution_id, "stage_id": stage_id, "accepted": True}


# ── Events & Metrics ─────────────────────────────────────────────────────────


@router.post("/events", status_code=202)
async def trigger_event(payload: dict[str, Any]):
    orchestrator = _require_orchestrator()
    started = await orchestrator.trigger_event(payload)
    return {"execution_ids": [e.id for e in started]}


async def _sse_generator(orchestrator: "WorkflowOrchestrator", execution_id: str | None):
    queue = orchestrator.publisher.subscribe()
    try:
        yield 'event: connected\ndata: {"status": "connected"}\n\n'
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=_HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield "event: heartbeat\ndata: {}\n\n"
                continue
            if execution_id and event.execution_id != execution_id:
                continue
            yield f"event: {event.event_type.value}\ndata: {event.to_sse_data()}\n\n"
    finally:
        orchestrator.publisher.unsubscribe(queue)


@router.get("/events/stream")
async def stream_events(execution_id: str | None = Query(default=None)):
    """Stream lifecycle events, optionally for one execution only."""
    orchestrator = _require_orchestrator()
    return StreamingResponse(
        _sse_generator(orchestrator, execution_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/metrics")
async def get_metrics():
    orchestrator = _require_orchestrator()
    metrics = await orchestrator.get_workflow_metrics()
    return metrics.model_dump(mode="json")
