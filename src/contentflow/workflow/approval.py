"""Multi-approver voting for approval stages.

An approval request waits on a future that ``submit()`` resolves once the
vote is decided. While waiting, the coordinator wakes for each escalation
level (admitting its approvers) and for the deadline, where the configured
timeout action applies.

Tally rules:
    - any rejection by a veto-capable approver rejects immediately
    - approved once accumulated approval weight >= ``required_approvals``
    - rejected once the weight still obtainable can no longer reach it
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from contentflow.workflow.events import EventPublisher, EventType
from contentflow.workflow.models import (
    ApprovalConfiguration,
    ApprovalTimeoutAction,
    ApproverConfig,
    EscalationLevel,
)

logger = logging.getLogger("contentflow.workflow.approval")


class ApprovalResolution(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    VETOED = "vetoed"
    NOT_REQUIRED = "not_required"
    AUTO_APPROVED = "auto_approved"
    AUTO_REJECTED = "auto_rejected"
    EXPIRED = "expired"
    ESCALATED = "escalated"


_APPROVING = frozenset(
    {ApprovalResolution.APPROVED, ApprovalResolution.NOT_REQUIRED, ApprovalResolution.AUTO_APPROVED}
)


class ApprovalVote(BaseModel):
    approver_id: str
    approved: bool
    comment: str = ""
    weight: float = 1.0
    voted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ApprovalOutcome(BaseModel):
    """Final state of one approval request; becomes the stage output."""

    resolution: ApprovalResolution
    approved: bool
    approved_by: list[str] = []
    comments: list[str] = []
    votes: list[ApprovalVote] = []
    escalation_level: int = 0
    extensions: int = 0


@dataclass
class _ApprovalRequest:
    execution_id: str
    workflow_id: str
    stage_id: str
    config: ApprovalConfiguration
    future: asyncio.Future[ApprovalResolution]
    approvers: dict[str, ApproverConfig] = field(default_factory=dict)
    votes: dict[str, ApprovalVote] = field(default_factory=dict)
    levels: list[EscalationLevel] = field(default_factory=list)
    escalation_level: int = 0
    extensions: int = 0

    @property
    def next_level(self) -> EscalationLevel | None:
        if self.escalation_level < len(self.levels):
            return self.levels[self.escalation_level]
        return None

    @property
    def open_to_anyone(self) -> bool:
        return not self.config.approvers

    def outcome(self, resolution: ApprovalResolution) -> ApprovalOutcome:
        votes = list(self.votes.values())
        return ApprovalOutcome(
            resolution=resolution,
            approved=resolution in _APPROVING,
            approved_by=[v.approver_id for v in votes if v.approved],
            comments=[v.comment for v in votes if v.comment],
            votes=votes,
            escalation_level=self.escalation_level,
            extensions=self.extensions,
        )


class ApprovalCoordinator:
    """Collects votes for outstanding approval stages."""

    def __init__(self, publisher: EventPublisher | None = None):
        self._publisher = publisher
        self._pending: dict[tuple[str, str], _ApprovalRequest] = {}

    def is_pending(self, execution_id: str, stage_id: str) -> bool:
        return (execution_id, stage_id) in self._pending

    async def request(
        self,
        execution_id: str,
        workflow_id: str,
        stage_id: str,
        config: ApprovalConfiguration,
    ) -> ApprovalOutcome:
        """Open a vote and wait until it is decided or the deadline action applies."""
        loop = asyncio.get_running_loop()
        request = _ApprovalRequest(
            execution_id=execution_id,
            workflow_id=workflow_id,
            stage_id=stage_id,
            config=config,
            future=loop.create_future(),
            approvers={a.user_id: a for a in config.approvers},
            levels=sorted(config.escalation.levels, key=lambda lvl: lvl.after),
        )
        if not config.required:
            logger.info("Approval not required for stage '%s' (execution %s)", stage_id, execution_id)
            return request.outcome(ApprovalResolution.NOT_REQUIRED)

        key = (execution_id, stage_id)
        self._pending[key] = request
        self._publish(
            EventType.APPROVAL_REQUIRED,
            request,
            approvers=sorted(request.approvers),
            required_approvals=config.required_approvals,
            deadline_seconds=config.deadline,
        )

        started = loop.time()
        deadline_at = started + config.deadline
        try:
            while True:
                level = request.next_level
                level_at = started + level.after if level is not None else None
                wake_at = min(deadline_at, level_at) if level_at is not None else deadline_at
                try:
                    resolution = await asyncio.wait_for(
                        asyncio.shield(request.future),
                        timeout=max(0.0, wake_at - loop.time()),
                    )
                    return request.outcome(resolution)
                except asyncio.TimeoutError:
                    pass

                if level is not None and level_at <= deadline_at:
                    self._escalate(request, level)
                    continue

                resolution = self._on_deadline(request)
                if resolution is not None:
                    return request.outcome(resolution)
                deadline_at += config.deadline
        finally:
            if self._pending.get(key) is request:
                del self._pending[key]

    def submit(
        self,
        execution_id: str,
        stage_id: str,
        approver_id: str,
        approved: bool,
        comment: str = "",
    ) -> bool:
        """Record a vote. Returns False when no vote is open or the approver is not eligible."""
        request = self._pending.get((execution_id, stage_id))
        if request is None or request.future.done():
            logger.debug("No pending approval for stage '%s' (execution %s)", stage_id, execution_id)
            return False

        approver = request.approvers.get(approver_id)
        if approver is None:
            if not request.open_to_anyone:
                logger.warning(
                    "Ignoring vote from '%s': not an approver of stage '%s' (execution %s)",
                    approver_id,
                    stage_id,
                    execution_id,
                )
                return False
            approver = ApproverConfig(user_id=approver_id)

        request.votes[approver_id] = ApprovalVote(
            approver_id=approver_id,
            approved=approved,
            comment=comment,
            weight=approver.weight,
        )
        logger.info(
            "Approval vote on stage '%s' by %s: %s (execution %s)",
            stage_id,
            approver_id,
            "approve" if approved else "reject",
            execution_id,
        )

        resolution = self._tally(request)
        if resolution is not None:
            request.future.set_result(resolution)
        return True

    def cancel_execution(self, execution_id: str) -> int:
        cancelled = 0
        for key in [k for k in self._pending if k[0] == execution_id]:
            request = self._pending.pop(key)
            if not request.future.done():
                request.future.cancel()
                cancelled += 1
        return cancelled

    # ── Internals ────────────────────────────────────────────────────────────

    def _tally(self, request: _ApprovalRequest) -> ApprovalResolution | None:
        required = request.config.required_approvals
        granted = 0.0
        for vote in request.votes.values():
            if vote.approved:
                granted += vote.weight
            else:
                approver = request.approvers.get(vote.approver_id)
                if approver is not None and approver.can_veto:
                    return ApprovalResolution.VETOED

        if granted >= required:
            return ApprovalResolution.APPROVED
        if request.open_to_anyone:
            return None

        obtainable = sum(
            a.weight for uid, a in request.approvers.items() if uid not in request.votes
        )
        for level in request.levels[request.escalation_level:]:
            obtainable += sum(1.0 for uid in set(level.approvers) if uid not in request.approvers)
        if granted + obtainable < required:
            return ApprovalResolution.REJECTED
        return None

    def _escalate(self, request: _ApprovalRequest, level: EscalationLevel) -> None:
        request.escalation_level += 1
        for user_id in level.approvers:
            request.approvers.setdefault(user_id, ApproverConfig(user_id=user_id, role="escalation"))
        logger.warning(
            "Escalating approval of stage '%s' to level %d: %s (execution %s)",
            request.stage_id,
            request.escalation_level,
            ", ".join(level.approvers) or "no approvers",
            request.execution_id,
        )
        self._publish(
            EventType.APPROVAL_ESCALATED,
            request,
            level=request.escalation_level,
            approvers=list(level.approvers),
            actions=list(level.actions),
            channels=list(request.config.escalation.notification_channels),
        )

    def _on_deadline(self, request: _ApprovalRequest) -> ApprovalResolution | None:
        """Apply the timeout action. None means the deadline was extended."""
        action = request.config.effective_timeout_action
        logger.warning(
            "Approval deadline reached for stage '%s' (execution %s), action: %s",
            request.stage_id,
            request.execution_id,
            action.value,
        )
        match action:
            case ApprovalTimeoutAction.AUTO_APPROVE:
                return ApprovalResolution.AUTO_APPROVED
            case ApprovalTimeoutAction.AUTO_REJECT:
                return ApprovalResolution.AUTO_REJECTED
            case ApprovalTimeoutAction.EXTEND:
                if request.extensions < request.config.max_extensions:
                    request.extensions += 1
                    return None
                return ApprovalResolution.EXPIRED
            case _:
                self._publish(
                    EventType.APPROVAL_ESCALATED,
                    request,
                    level=request.escalation_level,
                    reason="deadline",
                    channels=list(request.config.escalation.notification_channels),
                )
                return ApprovalResolution.ESCALATED

    def _publish(self, event_type: EventType, request: _ApprovalRequest, **data) -> None:
        if self._publisher is None:
            return
        self._publisher.publish(
            event_type,
            workflow_id=request.workflow_id,
            execution_id=request.execution_id,
            stage_id=request.stage_id,
            data=data,
        )
