"""
Workflow execution engine.

Takes the editor's nodes and edges, orders them into dependency layers,
runs each layer's nodes concurrently, resolves every node's inputs from the
outputs of earlier layers, dispatches it to the executor registered for its
type and returns all outputs.

Key concepts:
- Resume: ``initial_node_outputs`` seeds the output table; seeded nodes are
  skipped as "cached". ``skip_node_ids`` skips nodes outright.
- Errors are caught per node. With ``continue_on_error`` the run keeps going
  and collects them; otherwise the layer that produced the first error is
  the last one executed.
- Uploaded media is cleaned up after the run (success or not) unless
  ``auto_cleanup`` is disabled.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable

from noder.clients.base import ChatClient, RemoteExecutionClient
from noder.errors import CycleError, RunCancelledError
from noder.models.workflow import (
    NodeError,
    NodeOutputs,
    ProgressData,
    WorkflowEdge,
    WorkflowExecutionResult,
    WorkflowNode,
    coerce_edges,
    coerce_nodes,
)
from noder.services.cancellation import CancellationToken
from noder.services.graph import build_dependency_graph, get_node_inputs, topological_layers, upstream_subgraph
from noder.services.node_executors import ExecutionContext, execute_node
from noder.services.output_dispatcher import OutputDispatcher
from noder.services.provider_router import ProviderRouter
from noder.services.schema_cache import SchemaCache
from noder.storage.files import FileLifecycleManager, cleanup_workflow_files

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


async def _call(callback: Callback | None, *args: Any) -> None:
    """Invoke a lifecycle callback that may be sync or async."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _progress(completed: int, total: int) -> ProgressData:
    percentage = int(completed * 100 / total + 0.5) if total else 100
    return ProgressData(completed=completed, total=total, percentage=percentage)


def _node_error(node: WorkflowNode, error: BaseException) -> NodeError:
    return NodeError(
        node_id=node.id,
        node_type=node.type,
        error_type=type(error).__name__,
        message=str(error),
    )


# ---------------------------------------------------------------------------
# Main execution function
# ---------------------------------------------------------------------------


async def execute_workflow(
    nodes: list[WorkflowNode | dict[str, Any]],
    edges: list[WorkflowEdge | dict[str, Any]],
    *,
    client: RemoteExecutionClient | None = None,
    chat_client: ChatClient | None = None,
    on_node_start: Callback | None = None,
    on_node_complete: Callback | None = None,
    on_node_error: Callback | None = None,
    on_node_skip: Callback | None = None,
    on_progress: Callback | None = None,
    auto_cleanup: bool = True,
    initial_node_outputs: dict[str, NodeOutputs] | None = None,
    skip_node_ids: list[str] | set[str] | None = None,
    continue_on_error: bool = False,
    cancel_token: CancellationToken | None = None,
    schema_cache: SchemaCache | None = None,
    router: ProviderRouter | None = None,
    file_manager: FileLifecycleManager | None = None,
    dispatcher: OutputDispatcher | None = None,
    poll_interval: float | None = None,
) -> WorkflowExecutionResult:
    """
    Execute a workflow graph layer by layer.

    Callbacks may be plain functions or coroutines:
    ``on_node_start(node)``, ``on_node_complete(node, outputs)``,
    ``on_node_error(node, error)``, ``on_node_skip(node, reason)`` with
    reason ``"skipped"`` or ``"cached"``, and ``on_progress(ProgressData)``.

    Node failures never raise out of this function; the result carries
    ``success``, the first error message and the partial outputs.
    """
    start_time = time.perf_counter()
    workflow_id = f"workflow-{int(time.time() * 1000)}"
    nodes = coerce_nodes(nodes)
    edges = coerce_edges(edges)

    node_outputs: dict[str, NodeOutputs] = dict(initial_node_outputs or {})
    node_ids = {n.id for n in nodes}
    skip_set = set(skip_node_ids or [])
    total = len(nodes)
    completed_count = sum(1 for node_id in node_outputs if node_id in node_ids)
    skipped_nodes: list[str] = []
    errors: list[NodeError] = []
    run_error: str | None = None

    ctx = ExecutionContext(
        client=client,
        chat_client=chat_client,
        schema_cache=schema_cache if schema_cache is not None else SchemaCache(),
        router=router if router is not None else ProviderRouter(),
        file_manager=file_manager,
        cancel_token=cancel_token,
    )
    if poll_interval is not None:
        ctx.poll_interval = poll_interval
    dispatcher = dispatcher if dispatcher is not None else OutputDispatcher()

    async def execute_single_node(node: WorkflowNode) -> BaseException | None:
        """Run one node; returns the error it failed with, if any."""
        nonlocal completed_count

        if node.id in skip_set:
            skipped_nodes.append(node.id)
            await _call(on_node_skip, node, "skipped")
            return None

        if node.id in node_outputs:
            await _call(on_node_skip, node, "cached")
            return None

        node_start = time.perf_counter()
        try:
            await _call(on_node_start, node)

            inputs = get_node_inputs(node, edges, nodes, node_outputs)
            logger.debug("Node %s (%s) inputs: %s", node.id, node.type, inputs)

            outputs = await execute_node(node, inputs, ctx)
            node_outputs[node.id] = outputs
            logger.debug(
                "Node %s (%s) finished in %dms",
                node.id,
                node.type,
                int((time.perf_counter() - node_start) * 1000),
            )

            await dispatcher.dispatch(node.id, outputs, edges)

            completed_count += 1
            await _call(on_progress, _progress(completed_count, total))
            await _call(on_node_complete, node, outputs)
            return None

        except Exception as e:
            if isinstance(e, RunCancelledError):
                logger.info("Node %s cancelled: %s", node.id, e)
            else:
                logger.exception("Node %s failed: %s: %s", node.id, type(e).__name__, e)
            await _call(on_node_error, node, e)
            return e

    try:
        if completed_count > 0:
            await _call(on_progress, _progress(completed_count, total))

        graph, in_degree, _ = build_dependency_graph(nodes, edges)
        layers = topological_layers(nodes, graph, in_degree)
        logger.info("Executing %d nodes in %d layers", total, len(layers))

        for layer_index, layer in enumerate(layers):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            logger.info("Layer %d/%d: %d nodes", layer_index + 1, len(layers), len(layer))
            results = await asyncio.gather(*(execute_single_node(node) for node in layer))

            layer_errors = [(node, err) for node, err in zip(layer, results) if err is not None]
            if not layer_errors:
                continue

            errors.extend(_node_error(node, err) for node, err in layer_errors)
            cancelled = next((err for _, err in layer_errors if isinstance(err, RunCancelledError)), None)
            if cancelled is not None:
                raise cancelled
            if not continue_on_error:
                first_node, first_err = layer_errors[0]
                logger.info("Stopping workflow after node %s failed", first_node.id)
                raise first_err

    except CycleError as e:
        logger.error("Workflow %s refused: %s", workflow_id, e)
        run_error = str(e)
    except RunCancelledError as e:
        logger.info("Workflow %s cancelled: %s", workflow_id, e)
        run_error = str(e)
    except Exception as e:
        logger.error("Workflow %s failed: %s", workflow_id, e)
        run_error = str(e)

    if auto_cleanup:
        try:
            await cleanup_workflow_files(nodes, client, file_manager)
        except Exception as cleanup_error:
            logger.warning("Cleanup after workflow %s failed: %s", workflow_id, cleanup_error)

    if run_error is None and errors:
        run_error = errors[0].message

    duration_ms = int((time.perf_counter() - start_time) * 1000)
    logger.info(
        "Workflow %s finished in %dms (completed=%d, skipped=%d, errors=%d)",
        workflow_id,
        duration_ms,
        completed_count,
        len(skipped_nodes),
        len(errors),
    )

    return WorkflowExecutionResult(
        success=run_error is None and not errors,
        workflow_id=workflow_id,
        duration_ms=duration_ms,
        node_outputs=node_outputs,
        completed_count=completed_count,
        skipped_nodes=skipped_nodes,
        error=run_error,
        errors=errors,
    )


async def run_single_node(
    node_id: str,
    nodes: list[WorkflowNode | dict[str, Any]],
    edges: list[WorkflowEdge | dict[str, Any]],
    **options: Any,
) -> WorkflowExecutionResult:
    """
    Execute ``node_id`` together with everything upstream of it.

    Raises:
        NotFoundError: If ``node_id`` is not in ``nodes``.
    """
    sub_nodes, sub_edges = upstream_subgraph(node_id, coerce_nodes(nodes), coerce_edges(edges))
    logger.info("Running node %s with %d upstream nodes", node_id, len(sub_nodes) - 1)
    return await execute_workflow(sub_nodes, sub_edges, **options)
