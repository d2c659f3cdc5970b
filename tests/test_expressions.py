"""Tests for {{ expression }} resolution in stage configuration."""

from contentflow.workflow.expressions import ExpressionResolver
from contentflow.workflow.models import StageExecution, StageStatus, WorkflowExecution


def _make_resolver() -> ExpressionResolver:
    execution = WorkflowExecution(
        id="exec_1",
        workflow_id="course",
        input={"topic": "Python", "level": "advanced", "hours": "12"},
        stages=[
            StageExecution(
                stage_id="generate",
                status=StageStatus.COMPLETED,
                output={"title": "Intro", "modules": [{"name": "Basics"}, {"name": "Loops"}]},
            ),
            StageExecution(stage_id="review", status=StageStatus.RUNNING, output={"hidden": True}),
        ],
    )
    return ExpressionResolver.for_execution(execution)


class TestExpressionResolver:
    def test_single_expression_keeps_type(self):
        resolver = _make_resolver()
        assert resolver.resolve("{{ stages.generate.modules }}") == [{"name": "Basics"}, {"name": "Loops"}]
        assert resolver.resolve("{{ stages.generate.modules[1].name }}") == "Loops"

    def test_interpolation(self):
        resolver = _make_resolver()
        assert resolver.resolve("Course on {{ input.topic }} ({{ execution.id }})") == "Course on Python (exec_1)"

    def test_only_completed_stages_visible(self):
        assert _make_resolver().resolve("{{ stages.review.hidden }}") is None

    def test_unknown_paths(self):
        resolver = _make_resolver()
        assert resolver.resolve("{{ input.missing.deeper }}") is None
        assert resolver.resolve("{{ stages.generate.modules[9] }}") is None
        assert resolver.resolve("x{{ input.missing }}y") == "xy"

    def test_filters(self):
        resolver = _make_resolver()
        assert resolver.resolve("{{ input.level | upper }}") == "ADVANCED"
        assert resolver.resolve("{{ input.hours | int }}") == 12
        assert resolver.resolve("{{ input.missing | default }}") == ""
        assert resolver.resolve('{{ stages.generate.title | json }}') == '"Intro"'
        # Unknown filter leaves the value untouched
        assert resolver.resolve("{{ input.topic | shout }}") == "Python"

    def test_comparisons(self):
        resolver = _make_resolver()
        assert resolver.resolve('{{ input.level == "advanced" }}') is True
        assert resolver.resolve("{{ input.level != 'advanced' }}") is False
        assert resolver.resolve("{{ input.missing == null }}") is True

    def test_nested_structures(self):
        resolved = _make_resolver().resolve(
            {"title": "{{ stages.generate.title }}", "tags": ["{{ input.topic | lower }}", 3]}
        )
        assert resolved == {"title": "Intro", "tags": ["python", 3]}

    def test_plain_values_untouched(self):
        resolver = _make_resolver()
        assert resolver.resolve("no braces") == "no braces"
        assert resolver.resolve(42) == 42
        assert resolver.resolve(None) is None
