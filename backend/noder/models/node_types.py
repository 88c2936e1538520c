"""
Node type registry: the node kinds the engine knows.

Keys match the editor's node ``type`` strings. Anything outside this set is
still a legal node; it is dispatched to the passthrough handler.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from noder.config import EngineConfig


class NodeType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    UPSCALER = "upscaler"
    MEDIA = "media"
    CHIP = "chip"
    SAVE_MEDIA = "save-media"
    DISPLAY_TEXT = "display-text"
    MARKDOWN = "markdown"
    GROUP = "group"

    @classmethod
    def parse(cls, value: str) -> "NodeType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class DataKind(str, Enum):
    """Semantic kind of a value flowing through a handle."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


MEDIA_KINDS: tuple[DataKind, ...] = (DataKind.TEXT, DataKind.IMAGE, DataKind.VIDEO, DataKind.AUDIO)


class NodeTypeSpec(BaseModel):
    default_model: str | None = None
    output_kind: DataKind | None = None
    poll_max_attempts: int | None = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

NODE_REGISTRY: dict[NodeType, NodeTypeSpec] = {
    # ---- Generation nodes ----
    NodeType.TEXT: NodeTypeSpec(
        default_model="meta/meta-llama-3-70b-instruct",
        output_kind=DataKind.TEXT,
    ),
    NodeType.IMAGE: NodeTypeSpec(
        default_model="black-forest-labs/flux-2-klein-4b",
        output_kind=DataKind.IMAGE,
    ),
    NodeType.UPSCALER: NodeTypeSpec(
        default_model="nightmareai/real-esrgan",
        output_kind=DataKind.IMAGE,
    ),
    NodeType.VIDEO: NodeTypeSpec(
        default_model="minimax/video-01",
        output_kind=DataKind.VIDEO,
        poll_max_attempts=EngineConfig.VIDEO_POLL_MAX_ATTEMPTS,
    ),
    NodeType.AUDIO: NodeTypeSpec(
        default_model="meta/musicgen",
        output_kind=DataKind.AUDIO,
        poll_max_attempts=EngineConfig.AUDIO_POLL_MAX_ATTEMPTS,
    ),

    # ---- Local nodes ----
    NodeType.MEDIA: NodeTypeSpec(),
    NodeType.CHIP: NodeTypeSpec(output_kind=DataKind.TEXT),
    NodeType.SAVE_MEDIA: NodeTypeSpec(output_kind=DataKind.TEXT),
    NodeType.DISPLAY_TEXT: NodeTypeSpec(),
    NodeType.MARKDOWN: NodeTypeSpec(),
    NodeType.GROUP: NodeTypeSpec(),
}


def get_node_spec(node_type: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    parsed = NodeType.parse(node_type)
    if parsed is None:
        return None
    return NODE_REGISTRY.get(parsed)
