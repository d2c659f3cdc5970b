"""Built-in workflow and quality gate definitions.

``course_creation`` takes a course from AI-generated outline through quality
scoring, human review, compliance, approval and deployment. It scores against
the ``content_quality`` gate, so register both together via
:func:`register_builtin_templates`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from contentflow.workflow.models import (
    ApprovalConfiguration,
    ApproverConfig,
    BackoffStrategy,
    EscalationLevel,
    EscalationPolicy,
    QualityCriterion,
    QualityGate,
    QualityValidator,
    RetryPolicy,
    ServiceLevelAgreement,
    StageType,
    TriggerDefinition,
    TriggerType,
    WorkflowDefinition,
    WorkflowStage,
)

if TYPE_CHECKING:
    from contentflow.workflow.orchestrator import WorkflowOrchestrator

HOUR = 3600.0


def content_quality_gate() -> QualityGate:
    return QualityGate(
        id="content_quality",
        name="Content Quality Assessment",
        threshold=85,
        mandatory=True,
        criteria=[
            QualityCriterion(
                name="Educational Value",
                weight=30,
                threshold=80,
                validator=QualityValidator(type="ai_score", configuration={"aspect": "educational_value"}),
            ),
            QualityCriterion(
                name="Language Quality",
                weight=25,
                threshold=85,
                validator=QualityValidator(type="ai_score", configuration={"aspect": "language_quality"}),
            ),
            QualityCriterion(
                name="Structure",
                weight=20,
                threshold=90,
                validator=QualityValidator(
                    type="rule_based", configuration={"required_fields": ["title", "objectives"]}
                ),
            ),
            QualityCriterion(
                name="SSG Alignment",
                weight=25,
                threshold=90,
                validator=QualityValidator(type="ai_score", configuration={"aspect": "ssg_compliance"}),
            ),
        ],
    )


def course_creation_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="course_creation",
        name="AI-Powered Course Creation",
        description="Complete workflow for creating courses with AI assistance",
        stages=[
            WorkflowStage(
                id="generate_outline",
                name="Generate Course Outline",
                type=StageType.AI_GENERATION,
                configuration={"content_type": "course"},
                timeout=300,
                retry_policy=RetryPolicy(
                    max_attempts=3,
                    backoff_strategy=BackoffStrategy.EXPONENTIAL,
                    base_delay=5,
                    max_delay=30,
                ),
            ),
            WorkflowStage(
                id="quality_check_outline",
                name="Quality Check Outline",
                type=StageType.QUALITY_CHECK,
                configuration={"gate_id": "content_quality", "source_stage_id": "generate_outline"},
                dependencies=["generate_outline"],
                timeout=60,
                retry_policy=RetryPolicy(max_attempts=2, base_delay=10, max_delay=10),
            ),
            WorkflowStage(
                id="human_review_outline",
                name="Human Review Outline",
                type=StageType.HUMAN_REVIEW,
                configuration={"previous_stage_id": "generate_outline"},
                dependencies=["quality_check_outline"],
                timeout=24 * HOUR,
            ),
            WorkflowStage(
                id="compliance_check",
                name="SSG Compliance Check",
                type=StageType.COMPLIANCE_CHECK,
                configuration={"content_stage_id": "generate_outline", "content_type": "course"},
                dependencies=["human_review_outline"],
                timeout=120,
                retry_policy=RetryPolicy(max_attempts=2, base_delay=5, max_delay=5),
            ),
            WorkflowStage(
                id="final_approval",
                name="Final Approval",
                type=StageType.APPROVAL,
                dependencies=["compliance_check"],
                timeout=48 * HOUR,
            ),
            WorkflowStage(
                id="deploy_course",
                name="Deploy Course",
                type=StageType.DEPLOYMENT,
                configuration={"target_url": "/courses"},
                dependencies=["final_approval"],
                timeout=60,
                retry_policy=RetryPolicy(
                    max_attempts=3,
                    backoff_strategy=BackoffStrategy.LINEAR,
                    base_delay=10,
                    max_delay=30,
                ),
            ),
        ],
        triggers=[
            TriggerDefinition(
                type=TriggerType.API,
                configuration={
                    "event": "course.requested",
                    "endpoint": "/api/workflows/course-creation",
                },
            ),
        ],
        approval=ApprovalConfiguration(
            required=True,
            approvers=[
                ApproverConfig(user_id="instructor", role="instructor", weight=1, can_veto=True),
                ApproverConfig(user_id="admin", role="admin", weight=2, can_veto=True),
            ],
            deadline=48 * HOUR,
            escalation=EscalationPolicy(
                levels=[
                    EscalationLevel(after=24 * HOUR, approvers=["supervisor"], actions=["notify"]),
                    EscalationLevel(after=48 * HOUR, approvers=["director"], actions=["escalate"]),
                ],
                auto_approve=False,
                notification_channels=["email", "slack"],
            ),
        ),
        sla=ServiceLevelAgreement(
            max_processing_time=48 * HOUR,
            quality_threshold=85,
            availability_target=99.9,
            response_time_target=5,
        ),
    )


BUILTIN_QUALITY_GATES = (content_quality_gate,)
BUILTIN_WORKFLOWS = (course_creation_workflow,)


def register_builtin_templates(orchestrator: WorkflowOrchestrator) -> list[str]:
    """Register built-in gates and workflows not already present.

    Returns the ids of the workflows that were registered.
    """
    for make_gate in BUILTIN_QUALITY_GATES:
        gate = make_gate()
        if orchestrator.quality.get_gate(gate.id) is None:
            orchestrator.register_quality_gate(gate)

    registered = []
    for make_workflow in BUILTIN_WORKFLOWS:
        definition = make_workflow()
        if not orchestrator.definitions.has(definition.id):
            orchestrator.register_workflow(definition)
            registered.append(definition.id)
    return registered
