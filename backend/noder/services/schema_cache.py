"""
Model schema normalization and caching.

A provider model publishes an OpenAPI document whose
``components.schemas.Input.properties`` describe the accepted inputs. This
module flattens that document (resolving ``allOf``/``$ref`` wrappers) into a
``NormalizedSchema``, classifies fields by the kind of value they accept
(``get_input_mapping``) and builds a request body from connected values and
node settings (``build_provider_input``).

Schemas are memoized in an explicitly constructed ``SchemaCache`` that the
orchestrator passes down to the node executors.
"""

from __future__ import annotations

import logging
import re
import time
from collections import OrderedDict
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from noder.config import EngineConfig
from noder.errors import RunCancelledError, SchemaFetchError
from noder.services.cancellation import CancellationToken, checkpoint

logger = logging.getLogger(__name__)

DEFAULT_FIELD_ORDER = 999

ImageRole = Literal["style_reference", "img2img", "primary"]
OutputType = Literal["text", "image", "video", "audio", "unknown"]

_URI_FORMATS = {"uri", "data-uri", "binary", "base64"}
_REF_PATTERN = re.compile(r"^#/components/schemas/(.+)$")


# ---------------------------------------------------------------------------
# Normalized models
# ---------------------------------------------------------------------------


class NormalizedInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str | None = None
    format: str | None = None
    description: str | None = None
    default: Any = None
    enum: list[Any] | None = None
    minimum: float | None = None
    maximum: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    max_items: int | None = None
    content_media_type: str | None = None
    items: dict[str, Any] | None = None
    any_of: list[dict[str, Any]] | None = None
    one_of: list[dict[str, Any]] | None = None
    all_of: list[dict[str, Any]] | None = None
    required: bool = False
    order: int = DEFAULT_FIELD_ORDER


class NormalizedOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str | None = None
    format: str | None = None
    items: dict[str, Any] | None = None


class NormalizedSchema(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    inputs: dict[str, NormalizedInput] = Field(default_factory=dict)
    outputs: NormalizedOutput = Field(default_factory=NormalizedOutput)
    required: list[str] = Field(default_factory=list)


class ImageFieldMapping(BaseModel):
    field: str
    is_array: bool = False
    max_items: int | None = None
    role: ImageRole


class MaskFieldMapping(BaseModel):
    field: str
    is_array: bool = False
    max_items: int | None = None


class MediaFieldMapping(BaseModel):
    field: str
    is_array: bool = False


class InputMapping(BaseModel):
    text: list[str] = Field(default_factory=list)
    image: list[ImageFieldMapping] = Field(default_factory=list)
    video: list[MediaFieldMapping] = Field(default_factory=list)
    audio: list[MediaFieldMapping] = Field(default_factory=list)
    mask: list[MaskFieldMapping] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class SchemaCache:
    """
    Memoizes normalized schemas by model id.

    Entries expire ``ttl_seconds`` after insertion; once ``max_entries`` is
    reached the least recently used entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = EngineConfig.SCHEMA_CACHE_TTL_SECONDS,
        max_entries: int = EngineConfig.SCHEMA_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, NormalizedSchema]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, model_id: str) -> bool:
        return self.get(model_id) is not None

    def get(self, model_id: str) -> NormalizedSchema | None:
        entry = self._entries.get(model_id)
        if entry is None:
            return None
        stored_at, schema = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[model_id]
            return None
        self._entries.move_to_end(model_id)
        return schema

    def set(self, model_id: str, schema: NormalizedSchema) -> None:
        self._entries[model_id] = (self._clock(), schema)
        self._entries.move_to_end(model_id)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("[SchemaCache] Evicted %s", evicted)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("[SchemaCache] Cache cleared")


def parse_model_id(model_id: str) -> tuple[str, str]:
    """Split ``owner/name[:version]`` into ``(owner, name)``."""
    owner_and_model = (model_id or "").split(":", 1)[0]
    owner, _, name = owner_and_model.partition("/")
    if not owner or not name:
        raise SchemaFetchError(f"Invalid model ID format: {model_id}")
    return owner, name


async def fetch_model_schema(
    model_id: str,
    client: Any,
    cache: SchemaCache | None = None,
    cancel_token: CancellationToken | None = None,
) -> NormalizedSchema:
    """
    Return the normalized schema for ``model_id``, fetching it on a cache miss.

    Raises:
        SchemaFetchError: If the id is malformed, the fetch fails or the
            model publishes no schema.
    """
    if cache is not None:
        cached = cache.get(model_id)
        if cached is not None:
            logger.debug("[SchemaCache] Using cached schema for %s", model_id)
            return cached

    owner, name = parse_model_id(model_id)
    await checkpoint(cancel_token)

    logger.info("[SchemaCache] Fetching schema for %s/%s", owner, name)
    try:
        openapi_schema = await client.get_model_schema(owner, name)
    except (SchemaFetchError, RunCancelledError):
        raise
    except Exception as exc:
        raise SchemaFetchError(f"Failed to fetch schema for {model_id}: {exc}") from exc

    if not openapi_schema:
        raise SchemaFetchError(f"No schema found for model {model_id}")

    normalized = normalize_schema(openapi_schema, model_id)
    if cache is not None:
        cache.set(model_id, normalized)
    return normalized


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _resolve_ref(ref: Any, all_schemas: dict[str, Any]) -> dict[str, Any] | None:
    if not isinstance(ref, str):
        return None
    match = _REF_PATTERN.match(ref)
    if match and isinstance(all_schemas.get(match.group(1)), dict):
        return all_schemas[match.group(1)]
    return None


def resolve_all_of(prop: dict[str, Any], all_schemas: dict[str, Any]) -> dict[str, Any]:
    """
    Flatten a property's ``allOf`` list into the property itself.

    Keys already present win over keys pulled in from a fragment, so the
    inline declaration overrides the referenced one and earlier fragments
    override later ones.
    """
    all_of = prop.get("allOf")
    if not isinstance(all_of, list):
        return prop

    resolved = {k: v for k, v in prop.items() if k != "allOf"}
    for item in all_of:
        if not isinstance(item, dict):
            continue
        if "$ref" in item:
            fragment = _resolve_ref(item["$ref"], all_schemas)
            if fragment is None:
                logger.debug("[SchemaCache] Unresolvable $ref %s", item["$ref"])
                continue
        else:
            fragment = item
        resolved = {**fragment, **resolved}
    return resolved


def normalize_schema(openapi_schema: dict[str, Any], model_id: str) -> NormalizedSchema:
    """Flatten a model's OpenAPI document into a ``NormalizedSchema``."""
    all_schemas = ((openapi_schema or {}).get("components") or {}).get("schemas") or {}
    input_schema = all_schemas.get("Input")
    output_schema = all_schemas.get("Output")

    if not input_schema:
        logger.warning("[SchemaCache] No input schema found for %s", model_id)
        input_schema = {}

    required = list(input_schema.get("required") or [])
    inputs: dict[str, NormalizedInput] = {}

    for key, raw_prop in (input_schema.get("properties") or {}).items():
        if not isinstance(raw_prop, dict):
            continue
        prop = resolve_all_of(raw_prop, all_schemas)
        if "allOf" in raw_prop:
            logger.debug(
                "[SchemaCache] %s resolved from allOf: type=%s enum=%s",
                key,
                prop.get("type"),
                prop.get("enum"),
            )

        order = raw_prop.get("x-order", prop.get("x-order"))
        default = prop.get("default")
        if default is None:
            default = raw_prop.get("default")

        inputs[key] = NormalizedInput(
            type=prop.get("type"),
            format=prop.get("format"),
            description=prop.get("description") or raw_prop.get("description"),
            default=default,
            enum=prop.get("enum"),
            minimum=prop.get("minimum"),
            maximum=prop.get("maximum"),
            min_length=prop.get("minLength"),
            max_length=prop.get("maxLength"),
            max_items=prop.get("maxItems"),
            content_media_type=prop.get("contentMediaType"),
            items=prop.get("items"),
            any_of=prop.get("anyOf"),
            one_of=prop.get("oneOf"),
            all_of=prop.get("allOf"),
            required=key in required,
            order=order if order else DEFAULT_FIELD_ORDER,
        )

    outputs = NormalizedOutput()
    if isinstance(output_schema, dict):
        outputs = NormalizedOutput(
            type=output_schema.get("type"),
            format=output_schema.get("format"),
            items=output_schema.get("items"),
        )

    return NormalizedSchema(model_id=model_id, inputs=inputs, outputs=outputs, required=required)


# ---------------------------------------------------------------------------
# Field classification
# ---------------------------------------------------------------------------


def _definition(field_def: NormalizedInput | dict[str, Any] | None) -> dict[str, Any]:
    """Return a plain-dict view of a field, using the first typed union variant when untyped."""
    if field_def is None:
        return {}
    if isinstance(field_def, NormalizedInput):
        as_dict = {
            "type": field_def.type,
            "format": field_def.format,
            "contentMediaType": field_def.content_media_type,
            "items": field_def.items,
            "maxItems": field_def.max_items,
            "anyOf": field_def.any_of,
            "oneOf": field_def.one_of,
            "allOf": field_def.all_of,
        }
    else:
        as_dict = dict(field_def)

    if as_dict.get("type"):
        return as_dict
    variants = as_dict.get("anyOf") or as_dict.get("oneOf") or as_dict.get("allOf")
    if not isinstance(variants, list):
        return as_dict
    typed = next((v for v in variants if isinstance(v, dict) and v.get("type")), None)
    return {**as_dict, **typed} if typed else as_dict


def _is_uri_like(definition: dict[str, Any]) -> bool:
    return definition.get("format") in _URI_FORMATS


def _is_media_type(definition: dict[str, Any], prefix: str) -> bool:
    media_type = definition.get("contentMediaType")
    return isinstance(media_type, str) and media_type.startswith(prefix)


def _is_style_reference_name(name: str) -> bool:
    return "style" in name or "reference" in name or "ref_" in name


def _is_image_name(name: str) -> bool:
    return "image" in name or "img" in name or "photo" in name


def get_input_mapping(schema: NormalizedSchema) -> InputMapping:
    """
    Classify each input field by the kind of value it accepts.

    Image fields named like a style/reference slot get the
    ``style_reference`` role; the rest become ``primary`` when the model also
    declares a mask field (inpainting) and ``img2img`` otherwise.
    """
    mapping = InputMapping()
    pending_images: list[dict[str, Any]] = []

    for field_name, field_def in schema.inputs.items():
        resolved = _definition(field_def)
        lower_name = field_name.lower()
        is_array = resolved.get("type") == "array"
        resolved_items = _definition(resolved.get("items")) if is_array else {}

        if resolved.get("type") == "string" and not resolved.get("format"):
            if "prompt" in lower_name or "text" in lower_name or "description" in lower_name:
                mapping.text.append(field_name)

        if "mask" in lower_name:
            mapping.mask.append(
                MaskFieldMapping(
                    field=field_name,
                    is_array=is_array,
                    max_items=resolved_items.get("maxItems") or resolved.get("maxItems"),
                )
            )
            continue

        image_by_media_type = _is_media_type(resolved, "image/") or (
            is_array and _is_media_type(resolved_items, "image/")
        )
        image_by_name = _is_image_name(lower_name) and (
            _is_uri_like(resolved)
            or (is_array and _is_uri_like(resolved_items))
            or resolved.get("type") == "string"
        )
        if image_by_media_type or image_by_name:
            pending_images.append(
                {
                    "field": field_name,
                    "is_array": is_array,
                    "max_items": resolved_items.get("maxItems") or resolved.get("maxItems"),
                    "style": _is_style_reference_name(lower_name),
                }
            )

        if _is_media_type(resolved, "video/") or (_is_uri_like(resolved) and "video" in lower_name):
            mapping.video.append(MediaFieldMapping(field=field_name, is_array=is_array))

        if _is_media_type(resolved, "audio/") or (_is_uri_like(resolved) and "audio" in lower_name):
            mapping.audio.append(MediaFieldMapping(field=field_name, is_array=is_array))

    default_role: ImageRole = "primary" if mapping.mask else "img2img"
    for entry in pending_images:
        mapping.image.append(
            ImageFieldMapping(
                field=entry["field"],
                is_array=entry["is_array"],
                max_items=entry["max_items"],
                role="style_reference" if entry["style"] else default_role,
            )
        )

    return mapping


def get_output_type(schema: NormalizedSchema) -> OutputType:
    """Best-effort output kind; URI outputs are reported as images."""
    output = schema.outputs
    if output.type == "array" and (output.items or {}).get("format") == "uri":
        return "image"
    if output.format == "uri":
        return "image"
    if output.type == "string":
        return "text"
    return "unknown"


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------


def _to_camel_case(value: str) -> str:
    return re.sub(r"_([a-z])", lambda m: m.group(1).upper(), value)


def _node_data_value(node_data: dict[str, Any], field_name: str) -> Any:
    value = node_data.get(field_name)
    if value is not None:
        return value
    camel = _to_camel_case(field_name)
    if camel != field_name:
        return node_data.get(camel)
    return None


def build_provider_input(
    schema: NormalizedSchema,
    connected: dict[str, list[Any]],
    node_data: dict[str, Any],
) -> dict[str, Any]:
    """
    Build a prediction input body.

    Connected values are mapped first (first text input to the first prompt-like
    field, images to the usable image fields, videos and audio to theirs); any
    field still unset takes the node's own setting (snake_case or camelCase
    key) and then the schema default. Inpainting fields (``primary`` images
    and masks) are never filled from connections.
    """
    payload: dict[str, Any] = {}
    mapping = get_input_mapping(schema)
    connected_text = connected.get("text") or []
    connected_images = connected.get("image") or []
    connected_video = connected.get("video") or []
    connected_audio = connected.get("audio") or []

    if connected_text and mapping.text:
        payload[mapping.text[0]] = connected_text[0]

    if node_data.get("prompt") and mapping.text:
        prompt_field = (
            next((f for f in mapping.text if f == "prompt"), None)
            or next((f for f in mapping.text if "prompt" in f and "negative" not in f), None)
            or mapping.text[0]
        )
        payload.setdefault(prompt_field, node_data["prompt"])

    if connected_images:
        for image_field in mapping.image:
            if image_field.role not in ("style_reference", "img2img"):
                continue
            payload[image_field.field] = (
                list(connected_images) if image_field.is_array else connected_images[0]
            )

    if connected_video:
        for video_field in mapping.video:
            payload[video_field.field] = list(connected_video) if video_field.is_array else connected_video[0]

    if connected_audio:
        for audio_field in mapping.audio:
            payload[audio_field.field] = list(connected_audio) if audio_field.is_array else connected_audio[0]

    for field_name, field_def in schema.inputs.items():
        if payload.get(field_name) is not None:
            continue
        node_value = _node_data_value(node_data, field_name)
        if node_value is not None:
            payload[field_name] = node_value
        elif field_def.default is not None:
            payload[field_name] = field_def.default

    return payload
