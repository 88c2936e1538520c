"""
Per-node-type executors.

Each handler receives the node, its resolved inputs (see
``graph.get_node_inputs``) and the run's ``ExecutionContext`` and returns the
node's outputs keyed by output handle. Handlers are registered against the
closed ``NodeType`` enum; a node whose type is not in the enum is dispatched to
the passthrough handler.

Generation handlers (text/image/upscaler/video/audio) build their request
from the model's schema when it can be fetched and from a fixed set of
fields when it cannot. Input validation errors are raised in both cases.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from noder.clients.base import ChatClient, RemoteExecutionClient
from noder.config import EngineConfig
from noder.errors import ConfigurationError, ProviderError, RunCancelledError, SchemaFetchError, ValidationError
from noder.models.node_types import MEDIA_KINDS, DataKind, NodeType, get_node_spec
from noder.models.workflow import NodeOutputs, PollProgress, WorkflowNode
from noder.services.cancellation import CancellationToken
from noder.services.chips import collect_chip_values, is_chip_payload, replace_chip_placeholders
from noder.services.prediction_poller import run_prediction
from noder.services.provider_router import Provider, ProviderRouter
from noder.services.schema_cache import (
    NormalizedSchema,
    SchemaCache,
    build_provider_input,
    fetch_model_schema,
    get_input_mapping,
)
from noder.storage.files import CacheInfo, FileLifecycleManager, is_cache_valid, should_upload_file

logger = logging.getLogger(__name__)

# kind -> values, in input order
CollectedInputs = dict[str, list[Any]]
Handler = Callable[[WorkflowNode, dict[str, Any], "ExecutionContext"], Awaitable[NodeOutputs]]


@dataclass
class ExecutionContext:
    """Collaborators and settings shared by every node of one run."""

    client: RemoteExecutionClient | None = None
    chat_client: ChatClient | None = None
    schema_cache: SchemaCache = field(default_factory=SchemaCache)
    router: ProviderRouter = field(default_factory=ProviderRouter)
    file_manager: FileLifecycleManager | None = None
    cancel_token: CancellationToken | None = None
    poll_interval: float = EngineConfig.POLL_INTERVAL_SECONDS
    poll_max_attempts: int = EngineConfig.POLL_MAX_ATTEMPTS
    verify_cached_urls: bool = True
    openrouter_key: Callable[[], str] = EngineConfig.get_openrouter_key

    def require_client(self) -> RemoteExecutionClient:
        if self.client is None:
            raise ConfigurationError("No remote execution client configured for this run")
        return self.client


# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

_registry: dict[NodeType, Handler] = {}


def executor(node_type: NodeType):
    """
    Decorator that registers an async executor function for a node type.

    Usage:
        @executor(NodeType.TEXT)
        async def _exec_text(node, inputs, ctx) -> NodeOutputs:
            ...
    """
    def decorator(fn: Handler) -> Handler:
        _registry[node_type] = fn
        return fn
    return decorator


def get_handler(node_type: str) -> Handler:
    """Resolve the handler for a node type string; unknown types get the passthrough."""
    parsed = NodeType.parse(node_type)
    if parsed is None:
        return _exec_passthrough
    return _registry[parsed]


def registered_node_types() -> set[NodeType]:
    return set(_registry)


async def execute_node(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    handler = get_handler(node.type)
    return await handler(node, inputs, ctx)


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------


def collect_inputs_by_type(inputs: dict[str, Any]) -> CollectedInputs:
    """
    Group input values by semantic kind (text/image/video/audio).

    Chip payloads are skipped; they only feed placeholder substitution.
    """
    collected: CollectedInputs = {kind.value: [] for kind in MEDIA_KINDS}

    for data in inputs.values():
        items = data if isinstance(data, list) else [data]
        for item in items:
            if not isinstance(item, dict) or is_chip_payload(item):
                continue
            kind = item.get("type")
            if kind in collected:
                collected[kind].append(item.get("value"))

    return collected


def _first_value(collected: CollectedInputs, kind: str) -> Any:
    values = collected.get(kind) or []
    return values[0] if values and values[0] else ""


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ("" if value is None else str(value))


def _node_label(node: WorkflowNode) -> str:
    return node.data.get("title") or node.type or "Node"


def validate_connected_inputs(
    schema: NormalizedSchema,
    connected: CollectedInputs,
    node: WorkflowNode,
    model_id: str,
) -> None:
    """
    Check connected input kinds and counts against the model's schema.

    Only ``style_reference`` and ``img2img`` image fields count as usable;
    images connected to a model that only has inpainting fields are ignored
    with a warning.

    Raises:
        ValidationError: If a connected kind has no matching field, or more
            values are connected than a non-array field accepts.
    """
    mapping = get_input_mapping(schema)
    usable_image_fields = [f for f in mapping.image if f.role in ("style_reference", "img2img")]
    unsupported: list[str] = []

    if connected.get("image") and not usable_image_fields:
        if any(f.role == "primary" for f in mapping.image):
            logger.warning(
                "Image connected to model %s which only supports inpainting; image will be ignored",
                model_id,
            )
        else:
            unsupported.append("image")
    if connected.get("video") and not mapping.video:
        unsupported.append("video")
    if connected.get("audio") and not mapping.audio:
        unsupported.append("audio")

    if unsupported:
        raise ValidationError(
            f'{_node_label(node)}: model "{model_id}" does not accept {", ".join(unsupported)} inputs.'
        )

    for kind, entries in (
        ("image", usable_image_fields),
        ("video", mapping.video),
        ("audio", mapping.audio),
    ):
        count = len(connected.get(kind) or [])
        if not count or not entries:
            continue
        if count > 1 and not any(entry.is_array for entry in entries):
            raise ValidationError(
                f'{_node_label(node)}: model "{model_id}" accepts a single {kind} input, '
                f"but {count} are connected."
            )


async def _try_fetch_schema(model: str, ctx: ExecutionContext) -> NormalizedSchema | None:
    """Fetch the model schema, or None when the request must use the fallback fields."""
    try:
        return await fetch_model_schema(model, ctx.require_client(), ctx.schema_cache, ctx.cancel_token)
    except SchemaFetchError as e:
        logger.warning("Schema fetch failed for %s, using fallback input: %s", model, e)
        return None


def _resolve_text_fields(
    node: WorkflowNode,
    collected: CollectedInputs,
    chip_values: dict[str, str],
) -> dict[str, Any]:
    """Apply chip substitution to connected text and the node's own prompt fields; returns a node-data copy."""
    if collected["text"]:
        collected["text"] = [replace_chip_placeholders(t, chip_values) for t in collected["text"]]

    data = dict(node.data)
    for key in ("prompt", "negativePrompt", "systemPrompt"):
        if data.get(key):
            data[key] = replace_chip_placeholders(data[key], chip_values)
    return data


def _model_for(node: WorkflowNode, node_type: NodeType) -> str:
    spec = get_node_spec(node_type.value)
    return node.data.get("model") or (spec.default_model if spec else "") or ""


def _poll_budget(node_type: NodeType, ctx: ExecutionContext) -> int:
    spec = get_node_spec(node_type.value)
    if spec and spec.poll_max_attempts:
        return spec.poll_max_attempts
    return ctx.poll_max_attempts


def _poll_logger(node_id: str) -> Callable[[PollProgress], None]:
    def on_progress(progress: PollProgress) -> None:
        logger.info(
            "Node %s polling attempt %d/%d: %s",
            node_id,
            progress.attempts,
            progress.max_attempts,
            progress.status,
        )
    return on_progress


async def _submit(
    node: WorkflowNode,
    node_type: NodeType,
    model: str,
    payload: dict[str, Any],
    ctx: ExecutionContext,
) -> NodeOutputs:
    spec = get_node_spec(node_type.value)
    output_kind = spec.output_kind if spec and spec.output_kind else DataKind.TEXT
    logger.debug("Node %s (%s) request for %s: %s", node.id, node_type.value, model, payload)
    return await run_prediction(
        ctx.require_client(),
        model,
        payload,
        output_kind,
        max_attempts=_poll_budget(node_type, ctx),
        interval=ctx.poll_interval,
        on_progress=_poll_logger(node.id),
        cancel_token=ctx.cancel_token,
    )


# ---------------------------------------------------------------------------
# Generation nodes
# ---------------------------------------------------------------------------


@executor(NodeType.TEXT)
async def _exec_text(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    """Text completion, routed to a chat API or a prediction by model owner."""
    collected = collect_inputs_by_type(inputs)
    chip_values = collect_chip_values(inputs, node.data)

    if collected["video"] or collected["audio"]:
        raise ValidationError("Text: video/audio inputs are not supported for this node.")

    prompt = _first_value(collected, "text") or node.data.get("prompt") or ""
    prompt = _as_text(replace_chip_placeholders(prompt, chip_values))
    if not prompt.strip():
        raise ValidationError("No prompt provided")

    system_prompt = _as_text(replace_chip_placeholders(node.data.get("systemPrompt") or "", chip_values))
    model = _model_for(node, NodeType.TEXT)
    provider = ctx.router.route(model)
    logger.info("Running text node %s via %s (model=%s)", node.id, provider.value, model)

    if provider == Provider.CHAT:
        return await _run_chat_completion(
            model,
            prompt,
            ctx,
            system_prompt=system_prompt,
            image_url=collected["image"][0] if collected["image"] else None,
        )

    if collected["image"]:
        schema = await _try_fetch_schema(model, ctx)
        if schema is not None:
            validate_connected_inputs(schema, collected, node, model)

    payload: dict[str, Any] = {"prompt": prompt}
    if collected["image"]:
        payload["image"] = collected["image"][0]
    if system_prompt.strip():
        payload["system_prompt"] = system_prompt
    if node.data.get("temperature") is not None:
        payload["temperature"] = node.data["temperature"]
    if node.data.get("maxTokens"):
        payload["max_tokens"] = node.data["maxTokens"]

    return await _submit(node, NodeType.TEXT, model, payload, ctx)


async def _run_chat_completion(
    model: str,
    prompt: str,
    ctx: ExecutionContext,
    *,
    system_prompt: str = "",
    image_url: Any = None,
) -> NodeOutputs:
    if ctx.chat_client is None:
        raise ConfigurationError("No chat completion client configured for this run")
    api_key = ctx.openrouter_key()

    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    if image_url:
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        )
    else:
        messages.append({"role": "user", "content": prompt})

    if ctx.cancel_token is not None:
        ctx.cancel_token.raise_if_cancelled()
    response = await ctx.chat_client.chat_completion(api_key=api_key, model=model, messages=messages)

    choices = (response or {}).get("choices") or [{}]
    content = ((choices[0] or {}).get("message") or {}).get("content") or ""
    return {
        "out": {
            "type": DataKind.TEXT.value,
            "value": content,
            "metadata": {"model": model, "provider": Provider.CHAT.value},
        }
    }


@executor(NodeType.IMAGE)
async def _exec_image(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    model = _model_for(node, NodeType.IMAGE)
    collected = collect_inputs_by_type(inputs)
    chip_values = collect_chip_values(inputs, node.data)
    logger.info("Running image node %s (model=%s)", node.id, model)

    schema = await _try_fetch_schema(model, ctx)
    if schema is not None:
        validate_connected_inputs(schema, collected, node, model)
        node_data = _resolve_text_fields(node, collected, chip_values)
        payload = build_provider_input(schema, collected, node_data)
        return await _submit(node, NodeType.IMAGE, model, payload, ctx)

    if collected["video"] or collected["audio"]:
        raise ValidationError("Image Generation: video/audio inputs are not supported for this node.")

    prompt = _first_value(collected, "text") or node.data.get("prompt") or ""
    prompt = _as_text(replace_chip_placeholders(prompt, chip_values))
    if not prompt.strip():
        raise ValidationError("No prompt provided")

    payload = {"prompt": prompt}
    images = collected["image"]
    if len(images) == 1:
        payload["image"] = images[0]
    elif images:
        payload["image_input"] = images

    negative_prompt = _as_text(replace_chip_placeholders(node.data.get("negativePrompt") or "", chip_values))
    if negative_prompt.strip():
        payload["negative_prompt"] = negative_prompt
    for data_key, field_name in (("width", "width"), ("height", "height"), ("numOutputs", "num_outputs")):
        if node.data.get(data_key):
            payload[field_name] = node.data[data_key]

    return await _submit(node, NodeType.IMAGE, model, payload, ctx)


@executor(NodeType.UPSCALER)
async def _exec_upscaler(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    model = _model_for(node, NodeType.UPSCALER)
    collected = collect_inputs_by_type(inputs)

    fallback_image = _as_text(node.data.get("imageUrl")).strip()
    if not collected["image"] and fallback_image:
        collected["image"] = [fallback_image]
    if not collected["image"]:
        raise ValidationError("Upscaler: connect an image or provide an image URL.")

    logger.info("Running upscaler node %s (model=%s)", node.id, model)

    schema = await _try_fetch_schema(model, ctx)
    if schema is not None:
        validate_connected_inputs(schema, collected, node, model)
        payload = build_provider_input(schema, collected, dict(node.data))
        return await _submit(node, NodeType.UPSCALER, model, payload, ctx)

    if collected["video"] or collected["audio"]:
        raise ValidationError("Upscaler: video/audio inputs are not supported for this node.")

    payload: dict[str, Any] = {"image": collected["image"][0]}
    prompt = _as_text(_first_value(collected, "text") or node.data.get("prompt") or "")
    if prompt.strip():
        payload["prompt"] = prompt
    if node.data.get("scale"):
        payload["scale"] = node.data["scale"]

    return await _submit(node, NodeType.UPSCALER, model, payload, ctx)


@executor(NodeType.VIDEO)
async def _exec_video(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    """Video generation and video-to-video models; needs a prompt or a media input."""
    model = _model_for(node, NodeType.VIDEO)
    collected = collect_inputs_by_type(inputs)
    chip_values = collect_chip_values(inputs, node.data)

    fallback_video = _as_text(node.data.get("videoUrl")).strip()
    if not collected["video"] and fallback_video:
        collected["video"] = [fallback_video]
    fallback_image = _as_text(node.data.get("imageUrl")).strip()
    if not collected["image"] and fallback_image:
        collected["image"] = [fallback_image]

    node_data = _resolve_text_fields(node, collected, chip_values)

    has_prompt = bool(collected["text"]) or bool(_as_text(node_data.get("prompt")).strip())
    has_media = bool(collected["image"]) or bool(collected["video"])
    if not has_prompt and not has_media:
        raise ValidationError("Video: provide a prompt or connect a video/image input")

    logger.info("Running video node %s (model=%s)", node.id, model)

    schema = await _try_fetch_schema(model, ctx)
    if schema is not None:
        validate_connected_inputs(schema, collected, node, model)
        payload = build_provider_input(schema, collected, node_data)
        return await _submit(node, NodeType.VIDEO, model, payload, ctx)

    if collected["audio"]:
        raise ValidationError("Video: audio inputs are not supported for this node.")

    payload: dict[str, Any] = {}
    prompt = _as_text(_first_value(collected, "text") or node_data.get("prompt") or "")
    if prompt.strip():
        payload["prompt"] = prompt
    if collected["video"]:
        payload["video"] = collected["video"][0]
    if collected["image"]:
        payload["image"] = collected["image"][0]
    for key in ("duration", "fps"):
        if node.data.get(key):
            payload[key] = node.data[key]

    if not payload:
        raise ValidationError("No valid input for video generation")

    return await _submit(node, NodeType.VIDEO, model, payload, ctx)


@executor(NodeType.AUDIO)
async def _exec_audio(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    collected = collect_inputs_by_type(inputs)
    chip_values = collect_chip_values(inputs, node.data)

    if collected["image"] or collected["video"] or collected["audio"]:
        raise ValidationError("Audio Generation: only text prompt inputs are supported.")

    prompt = _first_value(collected, "text") or node.data.get("prompt") or ""
    prompt = _as_text(replace_chip_placeholders(prompt, chip_values))
    if not prompt.strip():
        raise ValidationError("No prompt provided")

    model = _model_for(node, NodeType.AUDIO)
    logger.info("Running audio node %s (model=%s)", node.id, model)

    payload: dict[str, Any] = {"prompt": prompt}
    if node.data.get("duration"):
        payload["duration"] = node.data["duration"]
    if node.data.get("temperature") is not None:
        payload["temperature"] = node.data["temperature"]

    return await _submit(node, NodeType.AUDIO, model, payload, ctx)


# ---------------------------------------------------------------------------
# Local nodes
# ---------------------------------------------------------------------------


@executor(NodeType.MEDIA)
async def _exec_media(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    """Static asset; emits the remote copy's URL when one exists, else the local path."""
    data = node.data
    media_type = data.get("mediaType") or "image"
    media_path = data.get("mediaPath") or ""

    if ctx.file_manager is not None and should_upload_file(media_path):
        cache_ok = await is_cache_valid(
            CacheInfo.from_node_data(data), media_path, verify_url=ctx.verify_cached_urls
        )
        if not cache_ok:
            url = await ctx.file_manager.ensure_uploaded(
                node.id,
                media_path,
                media_type,
                replaces_file_id=data.get("replicateFileId"),
                cancel_token=ctx.cancel_token,
            )
            info = ctx.file_manager.get_file_info(node.id)
            data["replicateUrl"] = url
            if info is not None:
                data["replicateFileId"] = info.file_id
                data["replicateExpiresAt"] = info.expires_at
            data["uploadedMediaPath"] = media_path

    replicate_url = data.get("replicateUrl") or None
    try:
        kind = DataKind(str(media_type).lower()).value
    except ValueError:
        kind = DataKind.IMAGE.value

    return {
        "out": {
            "type": kind,
            "value": replicate_url or media_path,
            "metadata": {
                "isReplicateUrl": bool(replicate_url),
                "localPath": media_path,
            },
        }
    }


@executor(NodeType.CHIP)
async def _exec_chip(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    content = node.data.get("content") or ""
    chip_id = node.data.get("chipId") or node.id
    logger.debug("Chip node %s output %s=%r", node.id, chip_id, content)
    return {
        "out": {
            "type": DataKind.TEXT.value,
            "value": content,
            "chipId": chip_id,
            "isChip": True,
        }
    }


def _first_connected_value(inputs: dict[str, Any]) -> Any:
    for handle_id, data in inputs.items():
        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, dict) and item.get("value"):
                logger.debug("Save node found input on handle %s", handle_id)
                return item["value"]
    return None


@executor(NodeType.SAVE_MEDIA)
async def _exec_save_media(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    url = _as_text(_first_connected_value(inputs) or node.data.get("url") or "")
    if not url.strip():
        raise ValidationError("No file URL to save. Connect a media output or enter a URL.")

    filename = _as_text(node.data.get("filename")).strip() or None
    folder = _as_text(node.data.get("destinationFolder")).strip() or None
    client = ctx.require_client()

    logger.info("Saving media from %s (filename=%s, folder=%s)", url, filename, folder)
    try:
        saved_path = await client.download_and_save(url.strip(), filename, folder)
    except RunCancelledError:
        raise
    except Exception as e:
        logger.error("Error saving file from %s: %s", url, e)
        raise ProviderError(f"Failed to save file: {e}") from e

    return {
        "success-out": {
            "type": DataKind.TEXT.value,
            "value": saved_path,
            "success": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }


@executor(NodeType.DISPLAY_TEXT)
@executor(NodeType.MARKDOWN)
async def _exec_display(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    return {"received": True}


@executor(NodeType.GROUP)
async def _exec_group(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    return {"passthrough": True}


async def _exec_passthrough(node: WorkflowNode, inputs: dict[str, Any], ctx: ExecutionContext) -> NodeOutputs:
    logger.warning("Unknown node type '%s' on node %s, passing through", node.type, node.id)
    return {"passthrough": True}
