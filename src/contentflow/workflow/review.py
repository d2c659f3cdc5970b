"""Human review suspension points.

A human-review stage registers a future under ``(execution_id, stage_id)``
and awaits it. ``complete()`` resolves exactly that key; nothing else does.
No thread is held while a review is outstanding.
"""

from __future__ import annotations

import asyncio
import logging

from contentflow.workflow.exceptions import HumanReviewTimeoutError, InvalidExecutionStateError
from contentflow.workflow.models import HumanReviewRecord

logger = logging.getLogger("contentflow.workflow.review")

ReviewKey = tuple[str, str]


class HumanReviewGateway:
    """Tracks outstanding review requests and resolves them."""

    def __init__(self) -> None:
        self._pending: dict[ReviewKey, asyncio.Future[HumanReviewRecord]] = {}

    def is_pending(self, execution_id: str, stage_id: str) -> bool:
        return (execution_id, stage_id) in self._pending

    def pending_reviews(self, execution_id: str | None = None) -> list[ReviewKey]:
        return [
            key for key in self._pending
            if execution_id is None or key[0] == execution_id
        ]

    async def wait_for_review(
        self,
        execution_id: str,
        stage_id: str,
        timeout: float | None = None,
    ) -> HumanReviewRecord:
        """Suspend until the review for this exact key is completed.

        Raises:
            HumanReviewTimeoutError: ``timeout`` seconds elapsed first.
            asyncio.CancelledError: the execution was cancelled.
        """
        key = (execution_id, stage_id)
        if key in self._pending:
            msg = f"Review already pending for stage '{stage_id}' of execution {execution_id}"
            raise InvalidExecutionStateError(msg)

        future: asyncio.Future[HumanReviewRecord] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        logger.info(
            "Waiting for human review of stage '%s' (execution %s, timeout %s)",
            stage_id,
            execution_id,
            f"{timeout:g}s" if timeout else "none",
        )
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Human review of stage '%s' timed out (execution %s)", stage_id, execution_id
            )
            raise HumanReviewTimeoutError(execution_id, stage_id, timeout) from exc
        finally:
            if self._pending.get(key) is future:
                del self._pending[key]

    def complete(self, execution_id: str, stage_id: str, record: HumanReviewRecord) -> bool:
        """Resolve the matching suspension. Returns False if none is outstanding."""
        future = self._pending.get((execution_id, stage_id))
        if future is None or future.done():
            logger.debug(
                "No pending review for stage '%s' (execution %s)", stage_id, execution_id
            )
            return False
        future.set_result(record)
        logger.info(
            "Human review of stage '%s' completed by %s: %s (execution %s)",
            stage_id,
            record.reviewer_id,
            record.decision.value,
            execution_id,
        )
        return True

    def cancel_execution(self, execution_id: str) -> int:
        """Cancel every outstanding review of one execution."""
        cancelled = 0
        for key in self.pending_reviews(execution_id):
            future = self._pending.pop(key)
            if not future.done():
                future.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d pending reviews (execution %s)", cancelled, execution_id)
        return cancelled
