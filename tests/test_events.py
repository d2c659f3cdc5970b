"""Tests for EventPublisher fan-out."""

from __future__ import annotations

import json
import logging

import pytest

from contentflow.workflow.events import EventPublisher, EventType, WorkflowEvent


class TestEventPublisher:
    def test_sync_gateways_and_callables(self):
        publisher = EventPublisher()
        received = []

        class _Gateway:
            def notify(self, event):
                received.append(("object", event.event_type))

        publisher.add_gateway(_Gateway())
        publisher.add_gateway(lambda event: received.append(("callable", event.event_type)))

        event = publisher.publish(EventType.WORKFLOW_STARTED, execution_id="exec_1")

        assert event.execution_id == "exec_1"
        assert received == [
            ("object", EventType.WORKFLOW_STARTED),
            ("callable", EventType.WORKFLOW_STARTED),
        ]

    def test_failing_gateway_does_not_raise(self, caplog):
        publisher = EventPublisher()
        received = []

        def _broken(event):
            raise RuntimeError("smtp down")

        publisher.add_gateway(_broken)
        publisher.add_gateway(received.append)

        with caplog.at_level(logging.ERROR, logger="contentflow.workflow.events"):
            publisher.publish(EventType.STAGE_FAILED, stage_id="generate")

        assert len(received) == 1
        assert "failed on stage_failed" in caplog.text

    @pytest.mark.asyncio
    async def test_async_gateway_delivered_on_drain(self, caplog):
        publisher = EventPublisher()
        received = []

        async def _slow(event):
            received.append(event.event_type)

        async def _broken(event):
            raise ConnectionError("sms gateway unreachable")

        publisher.add_gateway(_slow)
        publisher.add_gateway(_broken)

        with caplog.at_level(logging.ERROR, logger="contentflow.workflow.events"):
            publisher.publish(EventType.APPROVAL_REQUIRED)
            await publisher.drain()

        assert received == [EventType.APPROVAL_REQUIRED]
        assert "sms gateway unreachable" in caplog.text

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self):
        publisher = EventPublisher()
        queue = publisher.subscribe()

        publisher.publish(EventType.WORKFLOW_COMPLETED, execution_id="exec_1")
        publisher.unsubscribe(queue)
        publisher.publish(EventType.WORKFLOW_FAILED, execution_id="exec_2")

        assert queue.qsize() == 1
        assert (await queue.get()).execution_id == "exec_1"

    def test_sse_payload_omits_empty_fields(self):
        event = WorkflowEvent(event_type=EventType.STAGE_STARTED, stage_id="generate")
        payload = json.loads(event.to_sse_data())

        assert payload["event_type"] == "stage_started"
        assert payload["stage_id"] == "generate"
        assert "execution_id" not in payload
        assert "data" not in payload
