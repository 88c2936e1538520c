"""
Chip placeholder resolution.

A chip node emits a literal string tagged with ``isChip``/``chipId``. Any text
field of a downstream node may reference it as ``__CHIPID__`` (matched
case-insensitively).
"""

from __future__ import annotations

import re
from typing import Any


def _iter_input_items(inputs: dict[str, Any]):
    for data in inputs.values():
        if isinstance(data, list):
            yield from (item for item in data if isinstance(item, dict))
        elif isinstance(data, dict):
            yield data


def is_chip_payload(item: Any) -> bool:
    return isinstance(item, dict) and bool(item.get("isChip"))


def collect_chip_values(inputs: dict[str, Any], node_data: dict[str, Any] | None = None) -> dict[str, str]:
    """
    Build the ``chipId -> value`` map for one node.

    Values stored on the node (``data.chipValues``) are read first; chip
    payloads arriving on its inputs override them.
    """
    chip_values: dict[str, str] = {}

    stored = (node_data or {}).get("chipValues")
    if isinstance(stored, dict):
        chip_values.update({str(k): "" if v is None else str(v) for k, v in stored.items()})

    for item in _iter_input_items(inputs):
        if is_chip_payload(item) and item.get("chipId"):
            chip_values[str(item["chipId"])] = str(item.get("value") or "")

    return chip_values


def replace_chip_placeholders(text: Any, chip_values: dict[str, str]) -> Any:
    """Substitute every ``__CHIPID__`` occurrence in ``text``; non-strings pass through."""
    if not text or not isinstance(text, str) or not chip_values:
        return text

    result = text
    for chip_id, value in chip_values.items():
        pattern = re.compile(f"__{re.escape(chip_id)}__", re.IGNORECASE)
        result = pattern.sub(lambda _m, v=value: v, result)
    return result
