"""Tests for HumanReviewGateway suspension and resume."""

from __future__ import annotations

import asyncio

import pytest

from contentflow.workflow.exceptions import HumanReviewTimeoutError, InvalidExecutionStateError
from contentflow.workflow.models import HumanReviewRecord, ReviewDecision
from contentflow.workflow.review import HumanReviewGateway


def _make_record(reviewer: str = "alice", decision=ReviewDecision.APPROVED) -> HumanReviewRecord:
    return HumanReviewRecord(reviewer_id=reviewer, decision=decision, feedback="looks good")


class TestHumanReviewGateway:
    @pytest.mark.asyncio
    async def test_resolves_only_the_exact_key(self):
        gateway = HumanReviewGateway()
        task_a = asyncio.create_task(gateway.wait_for_review("exec_a", "review"))
        task_b = asyncio.create_task(gateway.wait_for_review("exec_b", "review"))
        await asyncio.sleep(0)
        assert gateway.pending_reviews() == [("exec_a", "review"), ("exec_b", "review")]

        assert gateway.complete("exec_a", "review", _make_record("alice"))
        record = await asyncio.wait_for(task_a, timeout=1)

        assert record.reviewer_id == "alice"
        assert not task_b.done()
        assert gateway.is_pending("exec_b", "review")
        assert not gateway.is_pending("exec_a", "review")

        gateway.complete("exec_b", "review", _make_record("bob"))
        assert (await asyncio.wait_for(task_b, timeout=1)).reviewer_id == "bob"

    @pytest.mark.asyncio
    async def test_complete_without_pending_review(self):
        gateway = HumanReviewGateway()
        assert not gateway.complete("exec_a", "review", _make_record())

    @pytest.mark.asyncio
    async def test_same_stage_other_execution_not_resolved(self):
        gateway = HumanReviewGateway()
        task = asyncio.create_task(gateway.wait_for_review("exec_a", "review"))
        await asyncio.sleep(0)

        assert not gateway.complete("exec_b", "review", _make_record())
        assert not gateway.complete("exec_a", "other_stage", _make_record())
        assert not task.done()

        gateway.cancel_execution("exec_a")
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_timeout(self):
        gateway = HumanReviewGateway()
        with pytest.raises(HumanReviewTimeoutError) as exc_info:
            await gateway.wait_for_review("exec_a", "review", timeout=0.01)
        assert exc_info.value.code == "HUMAN_REVIEW_TIMEOUT"
        assert not exc_info.value.retryable
        assert not gateway.is_pending("exec_a", "review")

    @pytest.mark.asyncio
    async def test_duplicate_wait_rejected(self):
        gateway = HumanReviewGateway()
        task = asyncio.create_task(gateway.wait_for_review("exec_a", "review"))
        await asyncio.sleep(0)

        with pytest.raises(InvalidExecutionStateError):
            await gateway.wait_for_review("exec_a", "review")

        gateway.complete("exec_a", "review", _make_record())
        await task

    @pytest.mark.asyncio
    async def test_cancel_execution_releases_only_that_execution(self):
        gateway = HumanReviewGateway()
        task_a = asyncio.create_task(gateway.wait_for_review("exec_a", "r1"))
        task_a2 = asyncio.create_task(gateway.wait_for_review("exec_a", "r2"))
        task_b = asyncio.create_task(gateway.wait_for_review("exec_b", "r1"))
        await asyncio.sleep(0)

        assert gateway.cancel_execution("exec_a") == 2
        await asyncio.gather(task_a, task_a2, return_exceptions=True)

        assert task_a.cancelled() or isinstance(task_a.exception(), asyncio.CancelledError)
        assert gateway.pending_reviews() == [("exec_b", "r1")]
        gateway.complete("exec_b", "r1", _make_record())
        await task_b
