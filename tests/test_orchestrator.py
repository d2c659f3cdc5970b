"""End-to-end tests for WorkflowOrchestrator with the built-in handlers."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from contentflow.workflow.collaborators import InMemoryCache
from contentflow.workflow.events import EventType
from contentflow.workflow.exceptions import (
    ConfigurationError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    WorkflowNotFoundError,
)
from contentflow.workflow.models import (
    ApprovalConfiguration,
    ApproverConfig,
    ExecutionStatus,
    HumanReviewRecord,
    QualityCriterion,
    QualityGate,
    QualityValidator,
    ReviewDecision,
    RetryPolicy,
    StageStatus,
    StageType,
    TriggerCondition,
    TriggerDefinition,
    TriggerType,
    WorkflowDefinition,
    WorkflowStage,
)
from contentflow.workflow.orchestrator import WorkflowOrchestrator


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _make_gate(threshold: float = 85, mandatory: bool = True) -> QualityGate:
    return QualityGate(
        id="outline_quality",
        name="Outline Quality",
        threshold=threshold,
        mandatory=mandatory,
        criteria=[
            QualityCriterion(
                name="Structure",
                weight=1,
                threshold=90,
                validator=QualityValidator(
                    type="rule_based", configuration={"required_fields": ["title", "objectives"]}
                ),
            ),
            QualityCriterion(
                name="Clarity",
                weight=1,
                threshold=80,
                validator=QualityValidator(type="ai_score"),
            ),
        ],
    )


def _make_pipeline(workflow_id: str = "course", **stage_overrides) -> WorkflowDefinition:
    """generate -> quality -> review -> approve -> deploy"""
    return WorkflowDefinition(
        id=workflow_id,
        name="Course pipeline",
        stages=[
            WorkflowStage(id="generate", type=StageType.AI_GENERATION, configuration={"content_type": "course"}),
            WorkflowStage(
                id="quality",
                type=StageType.QUALITY_CHECK,
                dependencies=["generate"],
                configuration={"gate_id": "outline_quality"},
                retry_policy=stage_overrides.get("quality_retry", RetryPolicy()),
            ),
            WorkflowStage(
                id="review",
                type=StageType.HUMAN_REVIEW,
                dependencies=["quality"],
                configuration={"previous_stage_id": "generate", "reviewers": ["editor"]},
                timeout=stage_overrides.get("review_timeout"),
            ),
            WorkflowStage(id="approve", type=StageType.APPROVAL, dependencies=["review"]),
            WorkflowStage(
                id="deploy",
                type=StageType.DEPLOYMENT,
                dependencies=["approve"],
                configuration={"target_url": "/courses/intro"},
            ),
        ],
        approval=ApprovalConfiguration(
            approvers=[ApproverConfig(user_id="lead", weight=1, can_veto=True)],
            deadline=60,
        ),
    )


def _make_simple(workflow_id: str = "simple", **kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=workflow_id,
        name="Generate and deploy",
        stages=[
            WorkflowStage(id="generate", type=StageType.AI_GENERATION, configuration={"topic": "{{ input.topic }}"}),
            WorkflowStage(id="deploy", type=StageType.DEPLOYMENT, dependencies=["generate"]),
        ],
        **kwargs,
    )


@pytest.fixture
def orchestrator(generator, reviewer, gateway, fake_sleep):
    orch = WorkflowOrchestrator(
        generator=generator,
        reviewer=reviewer,
        notification_gateways=[gateway],
        sleep=fake_sleep,
    )
    orch.register_quality_gate(_make_gate())
    return orch


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_five_stage_pipeline_completes_in_order(self, orchestrator, gateway):
        orchestrator.register_workflow(_make_pipeline())
        execution = await orchestrator.start_workflow("course", {"topic": "Python"})

        await _wait_until(lambda: orchestrator.reviews.is_pending(execution.id, "review"))
        review_event = next(e for e in gateway.events if e.event_type == EventType.HUMAN_REVIEW_REQUIRED)
        assert review_event.data["content"]["title"] == "Intro to Python"
        assert review_event.data["reviewers"] == ["editor"]

        assert orchestrator.complete_human_review(
            execution.id,
            "review",
            HumanReviewRecord(reviewer_id="editor", decision=ReviewDecision.APPROVED, time_spent=120),
        )
        await _wait_until(lambda: orchestrator.approvals.is_pending(execution.id, "approve"))
        assert orchestrator.submit_approval(execution.id, "approve", "lead", True, "ship it")

        result = await asyncio.wait_for(orchestrator.wait_for_execution(execution.id), timeout=2)

        assert result.status == ExecutionStatus.COMPLETED
        assert [s.status for s in result.stages] == [StageStatus.COMPLETED] * 5
        completed_order = [
            e.stage_id for e in gateway.events if e.event_type == EventType.STAGE_COMPLETED
        ]
        assert completed_order == ["generate", "quality", "review", "approve", "deploy"]
        ends = [s.completed_at for s in result.stages]
        assert ends == sorted(ends)

        assert result.output["quality"]["passed"]
        assert result.output["approve"]["approved_by"] == ["lead"]
        assert result.output["deploy"]["url"] == "/courses/intro"
        assert result.get_stage("review").human_review.reviewer_id == "editor"

        metrics = result.metrics
        assert metrics.quality_score == pytest.approx(97.5)
        assert metrics.cost == pytest.approx(5 + 1 + 0.5)
        assert metrics.api_calls == 5
        assert metrics.human_review_time >= 120
        assert gateway.types()[0] == "workflow_registered"
        assert gateway.types()[-1] == "workflow_completed"

    @pytest.mark.asyncio
    async def test_mandatory_gate_failure_fails_execution(self, orchestrator, reviewer, sleeps):
        reviewer.score = 40
        orchestrator.register_workflow(
            _make_pipeline(quality_retry=RetryPolicy(max_attempts=2, base_delay=3))
        )

        execution = await orchestrator.execute_workflow("course", {})

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "QUALITY_GATE_FAILED"
        assert execution.error.stage_id == "quality"
        assert execution.get_stage("quality").attempts == 2
        assert sleeps == [3.0]
        assert execution.get_stage("review").status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_non_mandatory_gate_failure_continues(self, orchestrator, reviewer):
        reviewer.score = 40
        orchestrator.register_quality_gate(_make_gate(mandatory=False))
        definition = WorkflowDefinition(
            id="soft",
            name="Soft gate",
            stages=[
                WorkflowStage(id="generate", type=StageType.AI_GENERATION),
                WorkflowStage(
                    id="quality",
                    type=StageType.QUALITY_CHECK,
                    dependencies=["generate"],
                    configuration={"gate_id": "outline_quality"},
                ),
            ],
        )
        orchestrator.register_workflow(definition)

        execution = await orchestrator.execute_workflow("soft", {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert not execution.output["quality"]["passed"]
        assert execution.output["quality"]["requires_human_review"]

    @pytest.mark.asyncio
    async def test_expressions_resolved_before_dispatch(self, orchestrator, generator):
        orchestrator.register_workflow(_make_simple())

        await orchestrator.execute_workflow("simple", {"topic": "Data science"})

        stage_config, execution_input = generator.calls[0]
        assert stage_config == {"topic": "Data science"}
        assert execution_input == {"topic": "Data science"}


class TestHumanReviewStage:
    @pytest.mark.asyncio
    async def test_timeout_fails_without_retry(self, orchestrator):
        definition = _make_pipeline(review_timeout=0.01)
        definition.stages[2].retry_policy = RetryPolicy(max_attempts=3)
        orchestrator.register_workflow(definition)

        execution = await orchestrator.execute_workflow("course", {})

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "HUMAN_REVIEW_TIMEOUT"
        assert not execution.error.recoverable
        assert execution.get_stage("review").attempts == 1

    @pytest.mark.asyncio
    async def test_timeout_auto_approve(self, orchestrator):
        definition = _make_pipeline(review_timeout=0.01)
        definition.stages[2].configuration["timeout_action"] = "auto_approve"
        definition.approval = ApprovalConfiguration(required=False)
        orchestrator.register_workflow(definition)

        execution = await orchestrator.execute_workflow("course", {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.get_stage("review").human_review.reviewer_id == "system"
        assert execution.output["approve"]["resolution"] == "not_required"

    @pytest.mark.asyncio
    async def test_rejection_fails_when_configured(self, orchestrator):
        definition = _make_pipeline()
        definition.stages[2].configuration["fail_on_rejection"] = True
        orchestrator.register_workflow(definition)
        execution = await orchestrator.start_workflow("course", {})

        await _wait_until(lambda: orchestrator.reviews.is_pending(execution.id, "review"))
        orchestrator.complete_human_review(
            execution.id,
            "review",
            HumanReviewRecord(reviewer_id="editor", decision=ReviewDecision.REJECTED, feedback="off topic"),
        )
        result = await asyncio.wait_for(orchestrator.wait_for_execution(execution.id), timeout=2)

        assert result.status == ExecutionStatus.FAILED
        assert "off topic" in result.error.message


class TestApprovalStage:
    @pytest.mark.asyncio
    async def test_veto_fails_execution(self, orchestrator):
        definition = _make_pipeline()
        definition.stages[2].timeout = 0.01
        definition.stages[2].configuration["timeout_action"] = "auto_approve"
        orchestrator.register_workflow(definition)
        execution = await orchestrator.start_workflow("course", {})

        await _wait_until(lambda: orchestrator.approvals.is_pending(execution.id, "approve"))
        orchestrator.submit_approval(execution.id, "approve", "lead", False, "needs rework")
        result = await asyncio.wait_for(orchestrator.wait_for_execution(execution.id), timeout=2)

        assert result.status == ExecutionStatus.FAILED
        assert result.error.code == "APPROVAL_VETOED"
        assert not result.error.recoverable
        assert result.get_stage("deploy").status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_stage_overrides_workflow_approval(self, orchestrator):
        definition = _make_simple()
        definition.stages.insert(
            1,
            WorkflowStage(
                id="approve",
                type=StageType.APPROVAL,
                dependencies=["generate"],
                configuration={"approval": {"deadline": 0.01, "timeout_action": "auto_approve"}},
            ),
        )
        definition.stages[2].dependencies = ["approve"]
        orchestrator.register_workflow(definition)

        execution = await orchestrator.execute_workflow("simple", {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["approve"]["resolution"] == "auto_approved"


class TestOtherHandlers:
    @pytest.mark.asyncio
    async def test_missing_generator_fails_non_retryable(self, reviewer, fake_sleep, sleeps):
        orchestrator = WorkflowOrchestrator(reviewer=reviewer, sleep=fake_sleep)
        definition = _make_simple()
        definition.stages[0].retry_policy = RetryPolicy(max_attempts=3)
        orchestrator.register_workflow(definition)

        execution = await orchestrator.execute_workflow("simple", {})

        assert execution.status == ExecutionStatus.FAILED
        assert "No content generation provider" in execution.error.message
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_generation_cache(self, generator, fake_sleep):
        orchestrator = WorkflowOrchestrator(generator=generator, cache=InMemoryCache(), sleep=fake_sleep)
        orchestrator.register_workflow(_make_simple())

        first = await orchestrator.execute_workflow("simple", {"topic": "x"})
        second = await orchestrator.execute_workflow("simple", {"topic": "x"})

        assert len(generator.calls) == 1
        assert first.metrics.resource_usage.cache_misses == 1
        assert second.metrics.resource_usage.cache_hits == 1
        assert second.output["generate"] == first.output["generate"]

    @pytest.mark.asyncio
    async def test_compliance_violation(self, generator, reviewer, fake_sleep):
        reviewer.compliant = False
        reviewer.issues = ["Missing accessibility statement"]
        orchestrator = WorkflowOrchestrator(generator=generator, reviewer=reviewer, sleep=fake_sleep)
        definition = WorkflowDefinition(
            id="comply",
            name="Compliance",
            stages=[
                WorkflowStage(id="generate", type=StageType.AI_GENERATION),
                WorkflowStage(
                    id="check",
                    type=StageType.COMPLIANCE_CHECK,
                    dependencies=["generate"],
                    configuration={"fail_on_violation": True},
                ),
            ],
        )
        orchestrator.register_workflow(definition)

        execution = await orchestrator.execute_workflow("comply", {})

        assert execution.status == ExecutionStatus.FAILED
        assert "Missing accessibility statement" in execution.error.message
        assert reviewer.calls[0] == (generator.output, "compliance")

    @pytest.mark.asyncio
    async def test_deployment_target(self, generator, fake_sleep):
        class _Target:
            def __init__(self):
                self.deployed = []

            async def deploy(self, execution, config):
                self.deployed.append(execution.id)
                return {"deployed": True, "url": "https://lms.test/courses/1"}

        target = _Target()
        orchestrator = WorkflowOrchestrator(generator=generator, deployment_target=target, sleep=fake_sleep)
        orchestrator.register_workflow(_make_simple())

        execution = await orchestrator.execute_workflow("simple", {})

        assert target.deployed == [execution.id]
        assert execution.output["deploy"]["url"] == "https://lms.test/courses/1"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_suspended_execution(self, orchestrator, gateway):
        orchestrator.register_workflow(_make_pipeline())
        execution = await orchestrator.start_workflow("course", {})
        await _wait_until(lambda: orchestrator.reviews.is_pending(execution.id, "review"))

        await orchestrator.cancel_workflow(execution.id, "topic withdrawn")
        result = await asyncio.wait_for(orchestrator.wait_for_execution(execution.id), timeout=2)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.cancel_reason == "topic withdrawn"
        assert result.completed_at is not None
        assert not orchestrator.reviews.is_pending(execution.id, "review")
        assert execution.id not in orchestrator.store._locks
        assert result.get_stage("approve").status == StageStatus.PENDING
        assert "workflow_cancelled" in gateway.types()
        assert "workflow_failed" not in gateway.types()

        # A late review is a no-op
        assert not orchestrator.complete_human_review(
            execution.id, "review", HumanReviewRecord(reviewer_id="editor")
        )

    @pytest.mark.asyncio
    async def test_cancel_terminal_execution_rejected(self, orchestrator):
        orchestrator.register_workflow(_make_simple())
        execution = await orchestrator.execute_workflow("simple", {})

        with pytest.raises(InvalidExecutionStateError):
            await orchestrator.cancel_workflow(execution.id)
        assert orchestrator.store._locks == {}

    @pytest.mark.asyncio
    async def test_cancel_unknown_execution(self, orchestrator):
        with pytest.raises(ExecutionNotFoundError):
            await orchestrator.cancel_workflow("exec_missing")

    @pytest.mark.asyncio
    async def test_cancel_during_retry_backoff_stops_retrying(self, gateway):
        calls = []

        class _UnavailableGenerator:
            async def generate(self, stage_config, execution_input):
                calls.append("gen")
                raise ConnectionError("provider unavailable")

        async def _cancelling_sleep(delay):
            for execution in await orchestrator.get_execution_history():
                if not execution.is_terminal:
                    await orchestrator.cancel_workflow(execution.id, "stop")

        orchestrator = WorkflowOrchestrator(
            generator=_UnavailableGenerator(),
            notification_gateways=[gateway],
            sleep=_cancelling_sleep,
        )
        definition = _make_simple()
        definition.stages[0].retry_policy = RetryPolicy(max_attempts=3)
        orchestrator.register_workflow(definition)

        execution = await orchestrator.execute_workflow("simple", {})

        assert calls == ["gen"]
        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.cancel_reason == "stop"
        assert gateway.types().count("stage_retrying") == 1
        assert "workflow_failed" not in gateway.types()


class TestQueries:
    @pytest.mark.asyncio
    async def test_unknown_workflow(self, orchestrator):
        with pytest.raises(WorkflowNotFoundError):
            await orchestrator.execute_workflow("missing", {})

    @pytest.mark.asyncio
    async def test_status_and_history(self, orchestrator):
        orchestrator.register_workflow(_make_simple())
        first = await orchestrator.execute_workflow("simple", {"n": 1})
        second = await orchestrator.execute_workflow("simple", {"n": 2})

        assert (await orchestrator.get_execution_status(first.id)).status == ExecutionStatus.COMPLETED
        assert await orchestrator.get_execution_status("exec_missing") is None

        history = await orchestrator.get_execution_history(limit=10)
        assert [e.id for e in history] == [second.id, first.id]
        assert len(await orchestrator.get_execution_history(limit=1)) == 1
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_workflow_metrics(self, generator, fake_sleep):
        orchestrator = WorkflowOrchestrator(generator=generator, sleep=fake_sleep)
        orchestrator.register_workflow(_make_simple())
        orchestrator.register_workflow(
            WorkflowDefinition(
                id="broken",
                name="Broken",
                stages=[WorkflowStage(id="check", type=StageType.QUALITY_CHECK, configuration={"gate_id": "none"})],
            )
        )

        ok = await orchestrator.execute_workflow("simple", {})
        failed = await orchestrator.execute_workflow("broken", {})
        metrics = await orchestrator.get_workflow_metrics()

        assert failed.status == ExecutionStatus.FAILED
        assert metrics.total_executions == 2
        assert metrics.success_rate == 0.5
        assert metrics.total_cost == pytest.approx(ok.metrics.cost)
        assert metrics.average_processing_time == pytest.approx(ok.metrics.total_time)

    @pytest.mark.asyncio
    async def test_metrics_sink_receives_terminal_metrics(self, generator, fake_sleep):
        sink = MagicMock()
        orchestrator = WorkflowOrchestrator(generator=generator, metrics_sink=sink, sleep=fake_sleep)
        orchestrator.register_workflow(_make_simple())

        execution = await orchestrator.execute_workflow("simple", {})

        sink.record.assert_called_once_with(execution.id, execution.metrics)

    @pytest.mark.asyncio
    async def test_failing_metrics_sink_does_not_fail_execution(self, generator, fake_sleep):
        sink = MagicMock()
        sink.record.side_effect = RuntimeError("sink down")
        orchestrator = WorkflowOrchestrator(generator=generator, metrics_sink=sink, sleep=fake_sleep)
        orchestrator.register_workflow(_make_simple())

        execution = await orchestrator.execute_workflow("simple", {})

        assert execution.status == ExecutionStatus.COMPLETED


class TestTriggers:
    @pytest.mark.asyncio
    async def test_trigger_event_starts_matching_workflows(self, orchestrator):
        orchestrator.register_workflow(
            _make_simple(
                triggers=[
                    TriggerDefinition(
                        type=TriggerType.EVENT,
                        configuration={"event": "course.requested"},
                        conditions=[TriggerCondition(field="level", value="advanced")],
                    )
                ]
            )
        )
        orchestrator.register_workflow(_make_simple("manual_only"))

        started = await orchestrator.trigger_event(
            {"event": "course.requested", "level": "advanced", "input": {"topic": "ML"}}
        )
        assert [e.workflow_id for e in started] == ["simple"]
        result = await orchestrator.wait_for_execution(started[0].id)
        assert result.input == {"topic": "ML"}
        assert result.status == ExecutionStatus.COMPLETED

        assert await orchestrator.trigger_event({"event": "course.requested", "level": "basic"}) == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_executions(self, orchestrator):
        orchestrator.register_workflow(_make_pipeline())
        execution = await orchestrator.start_workflow("course", {})
        await _wait_until(lambda: orchestrator.reviews.is_pending(execution.id, "review"))

        await orchestrator.shutdown()

        status = await orchestrator.get_execution_status(execution.id)
        assert status.status == ExecutionStatus.CANCELLED
        assert status.cancel_reason == "orchestrator shutdown"

    def test_missing_handler_rejected(self, monkeypatch):
        from contentflow.workflow.handlers import StageHandlerRegistry

        monkeypatch.setattr(StageHandlerRegistry, "missing_types", lambda self: [StageType.DEPLOYMENT])
        with pytest.raises(ConfigurationError, match="deployment"):
            WorkflowOrchestrator()
