"""
Pushes completed node outputs to whoever listens on the outgoing edges.

Listeners are registered explicitly per dispatcher instance: a global
listener sees every event, a target listener only events addressed to one
downstream node, and a channel is a bounded queue per downstream node. Each
produced output is delivered exactly once per matching edge.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

from noder.models.workflow import NodeContentChanged, NodeOutputs, WorkflowEdge

logger = logging.getLogger(__name__)

Listener = Callable[[NodeContentChanged], Union[None, Awaitable[None]]]


class OutputDispatcher:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._target_listeners: dict[str, list[Listener]] = {}
        self._channels: dict[str, asyncio.Queue[NodeContentChanged]] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Receive every event. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_target(self, target_id: str, listener: Listener) -> Callable[[], None]:
        """Receive events addressed to ``target_id`` only."""
        bucket = self._target_listeners.setdefault(target_id, [])
        bucket.append(listener)

        def unsubscribe() -> None:
            if listener in bucket:
                bucket.remove(listener)

        return unsubscribe

    def channel(self, target_id: str, maxsize: int = 0) -> asyncio.Queue[NodeContentChanged]:
        """Return the bounded event queue for ``target_id``, creating it on first use."""
        queue = self._channels.get(target_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=maxsize)
            self._channels[target_id] = queue
        return queue

    async def dispatch(
        self,
        node_id: str,
        outputs: NodeOutputs,
        edges: list[WorkflowEdge],
    ) -> list[NodeContentChanged]:
        """Publish one ``NodeContentChanged`` per output handle per outgoing edge."""
        events: list[NodeContentChanged] = []
        for handle_id, output in outputs.items():
            for edge in edges:
                if edge.source != node_id or edge.source_handle != handle_id:
                    continue
                event = NodeContentChanged(
                    source_id=node_id,
                    target_id=edge.target,
                    source_handle=edge.source_handle,
                    target_handle=edge.target_handle,
                    content=output,
                )
                await self._deliver(event)
                events.append(event)

        if events:
            logger.debug("Dispatched %d events from node %s", len(events), node_id)
        return events

    async def _deliver(self, event: NodeContentChanged) -> None:
        for listener in [*self._listeners, *self._target_listeners.get(event.target_id, [])]:
            await _notify(listener, event)

        queue = self._channels.get(event.target_id)
        if queue is not None:
            await queue.put(event)


async def _notify(listener: Listener, event: NodeContentChanged) -> None:
    try:
        result: Any = listener(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Output listener failed for %s -> %s", event.source_id, event.target_id)
