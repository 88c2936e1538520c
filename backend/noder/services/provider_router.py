"""
Routes text-node models to a backend by the owner part of the model id.

Chat-style owners go through a chat-completion API; job-style owners are
submitted as predictions and polled.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    CHAT = "openrouter"
    JOB = "replicate"


DEFAULT_CHAT_OWNERS: frozenset[str] = frozenset(
    {
        "openai",
        "anthropic",
        "google",
        "meta-llama",
        "mistralai",
        "deepseek",
        "qwen",
        "cohere",
        "perplexity",
        "openrouter",
    }
)

DEFAULT_JOB_OWNERS: frozenset[str] = frozenset(
    {
        "stability-ai",
        "black-forest-labs",
        "nightmareai",
        "lucataco",
        "cjwbw",
        "minimax",
        "fofr",
        "zsxkib",
        "tencentarc",
        "meta",
    }
)


class ProviderRouter:
    """Owner-table routing policy; unknown owners fall back to ``default``."""

    def __init__(
        self,
        chat_owners: Iterable[str] = DEFAULT_CHAT_OWNERS,
        job_owners: Iterable[str] = DEFAULT_JOB_OWNERS,
        default: Provider = Provider.JOB,
    ):
        self.chat_owners = frozenset(o.lower() for o in chat_owners)
        self.job_owners = frozenset(o.lower() for o in job_owners)
        self.default = default

    def route(self, model_id: str) -> Provider:
        owner = (model_id or "").split("/", 1)[0].lower()
        if owner in self.chat_owners:
            return Provider.CHAT
        if owner in self.job_owners:
            return Provider.JOB
        logger.warning(
            "Unknown model owner '%s' for %s, routing to %s", owner, model_id, self.default.value
        )
        return self.default
