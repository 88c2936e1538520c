"""
Tests for output event delivery to listeners and per-target channels.
"""

import asyncio
import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from noder.models.workflow import WorkflowEdge
from noder.services.output_dispatcher import OutputDispatcher

OUTPUTS = {"out": {"type": "text", "value": "hello"}, "meta": {"type": "text", "value": "extra"}}
EDGES = [
    WorkflowEdge(source="a", target="b", sourceHandle="out", targetHandle="prompt"),
    WorkflowEdge(source="a", target="c", sourceHandle="out", targetHandle="in"),
    WorkflowEdge(source="a", target="c", sourceHandle="meta", targetHandle="notes"),
    WorkflowEdge(source="x", target="b", sourceHandle="out", targetHandle="prompt"),
]


class TestOutputDispatcher:
    @pytest.mark.asyncio
    async def test_one_event_per_output_per_matching_edge(self):
        dispatcher = OutputDispatcher()

        events = await dispatcher.dispatch("a", OUTPUTS, EDGES)

        assert [(e.target_id, e.source_handle, e.target_handle) for e in events] == [
            ("b", "out", "prompt"),
            ("c", "out", "in"),
            ("c", "meta", "notes"),
        ]
        assert events[0].content == {"type": "text", "value": "hello"}

    @pytest.mark.asyncio
    async def test_event_serializes_with_editor_keys(self):
        events = await OutputDispatcher().dispatch("a", OUTPUTS, EDGES[:1])

        assert events[0].model_dump(by_alias=True) == {
            "sourceId": "a",
            "targetId": "b",
            "sourceHandle": "out",
            "targetHandle": "prompt",
            "content": {"type": "text", "value": "hello"},
        }

    @pytest.mark.asyncio
    async def test_target_listener_and_unsubscribe(self):
        dispatcher = OutputDispatcher()
        for_c = []
        everything = []
        dispatcher.subscribe_target("c", for_c.append)
        unsubscribe = dispatcher.subscribe(everything.append)

        await dispatcher.dispatch("a", OUTPUTS, EDGES)
        unsubscribe()
        await dispatcher.dispatch("a", OUTPUTS, EDGES)

        assert len(everything) == 3
        assert [e.target_handle for e in for_c] == ["in", "notes", "in", "notes"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self):
        dispatcher = OutputDispatcher()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        async def working(event):
            received.append(event.target_id)

        dispatcher.subscribe(broken)
        dispatcher.subscribe(working)

        events = await dispatcher.dispatch("a", OUTPUTS, EDGES[:1])

        assert len(events) == 1
        assert received == ["b"]

    @pytest.mark.asyncio
    async def test_bounded_channel_applies_backpressure(self):
        dispatcher = OutputDispatcher()
        channel = dispatcher.channel("c", maxsize=1)

        task = asyncio.create_task(dispatcher.dispatch("a", OUTPUTS, EDGES))
        await asyncio.sleep(0)
        assert channel.qsize() == 1
        assert not task.done()

        first = await channel.get()
        second = await channel.get()
        events = await task

        assert [first.target_handle, second.target_handle] == ["in", "notes"]
        assert len(events) == 3

    def test_channel_is_created_once(self):
        dispatcher = OutputDispatcher()

        assert dispatcher.channel("b") is dispatcher.channel("b")
