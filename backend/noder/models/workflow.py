"""
Workflow models: the engine's view of an editor graph and of a run's result.

Nodes and edges arrive from the editor with camelCase handle keys; both the
aliased and the snake_case field names are accepted. Output payloads
(``NodeOutputs``) stay plain dicts because they travel back to the editor
unchanged.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# handle id -> {"type": ..., "value": ..., "metadata": {...}, ...}
NodeOutputs = dict[str, Any]


class WorkflowNode(BaseModel):
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


class GraphDependent(BaseModel):
    target_id: str
    source_handle: str | None = None
    target_handle: str | None = None


class ProgressData(BaseModel):
    completed: int
    total: int
    percentage: int


class PollProgress(BaseModel):
    attempts: int
    max_attempts: int
    status: str


class Prediction(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    output: Any = None
    error: str | None = None


class NodeContentChanged(BaseModel):
    """Payload pushed once per produced output per downstream edge."""

    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    target_id: str = Field(alias="targetId")
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")
    content: Any = None


class NodeError(BaseModel):
    node_id: str
    node_type: str | None = None
    error_type: str
    message: str


class WorkflowExecutionResult(BaseModel):
    success: bool
    workflow_id: str
    duration_ms: int
    node_outputs: dict[str, NodeOutputs] = Field(default_factory=dict)
    completed_count: int = 0
    skipped_nodes: list[str] = Field(default_factory=list)
    error: str | None = None
    errors: list[NodeError] = Field(default_factory=list)


def coerce_nodes(nodes: list[WorkflowNode | dict[str, Any]]) -> list[WorkflowNode]:
    return [n if isinstance(n, WorkflowNode) else WorkflowNode.model_validate(n) for n in nodes]


def coerce_edges(edges: list[WorkflowEdge | dict[str, Any]]) -> list[WorkflowEdge]:
    return [e if isinstance(e, WorkflowEdge) else WorkflowEdge.model_validate(e) for e in edges]
