"""Shared fakes for the contentflow test suite."""

from __future__ import annotations

from typing import Any

import pytest

from contentflow.workflow.collaborators import ContentReview
from contentflow.workflow.events import WorkflowEvent


class FakeGenerator:
    """ContentGenerationProvider returning a fixed artifact."""

    def __init__(self, output: Any = None):
        self.output = output if output is not None else {
            "title": "Intro to Python",
            "objectives": ["variables", "loops"],
            "modules": [{"name": "Basics"}, {"name": "Control flow"}],
        }
        self.calls: list[tuple[dict, dict]] = []

    async def generate(self, stage_config: dict[str, Any], execution_input: dict[str, Any]) -> Any:
        self.calls.append((stage_config, execution_input))
        return self.output


class FakeReviewer:
    """ContentReviewer returning a fixed score."""

    def __init__(self, score: float = 95.0, compliant: bool = True, issues: list[str] | None = None):
        self.score = score
        self.compliant = compliant
        self.issues = issues or []
        self.calls: list[tuple[Any, str]] = []

    async def review(self, content: Any, content_type: str) -> ContentReview:
        self.calls.append((content, content_type))
        return ContentReview(
            quality_score=self.score,
            compliant=self.compliant,
            issues=self.issues,
            suggestions=["Add a summary"],
        )


class RecordingGateway:
    """NotificationGateway keeping every event it receives."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    def notify(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def reviewer() -> FakeReviewer:
    return FakeReviewer()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays passed to the injected scheduler sleep."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep
