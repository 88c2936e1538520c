"""
Engine configuration.

Settings are read from the environment (and a local .env file) once at import
time. Call sites that need a credential go through the ``get_*`` helpers so a
missing key fails with a clear message instead of a 401 from the provider.
"""

import os
from dotenv import load_dotenv
from typing import Optional

from noder.errors import ConfigurationError

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


class EngineConfig:
    """Configuration for the workflow execution engine"""

    # Provider credentials
    REPLICATE_API_TOKEN: Optional[str] = os.getenv("REPLICATE_API_TOKEN")
    OPENROUTER_API_KEY: Optional[str] = os.getenv("OPENROUTER_API_KEY")

    # Provider endpoints
    REPLICATE_BASE_URL: str = os.getenv("REPLICATE_BASE_URL", "https://api.replicate.com/v1")
    OPENROUTER_BASE_URL: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")

    # Polling
    POLL_INTERVAL_SECONDS: float = _env_float("NODER_POLL_INTERVAL_SECONDS", 1.0)
    POLL_MAX_ATTEMPTS: int = _env_int("NODER_POLL_MAX_ATTEMPTS", 120)
    VIDEO_POLL_MAX_ATTEMPTS: int = _env_int("NODER_VIDEO_POLL_MAX_ATTEMPTS", 300)
    AUDIO_POLL_MAX_ATTEMPTS: int = _env_int("NODER_AUDIO_POLL_MAX_ATTEMPTS", 180)

    # HTTP retries (4xx responses are never retried)
    MAX_RETRIES: int = 3
    RETRY_DELAY_SECONDS: float = 1.0
    REQUEST_TIMEOUT_SECONDS: float = 60.0

    # Schema cache
    SCHEMA_CACHE_TTL_SECONDS: float = _env_float("NODER_SCHEMA_CACHE_TTL_SECONDS", 3600.0)
    SCHEMA_CACHE_MAX_ENTRIES: int = _env_int("NODER_SCHEMA_CACHE_MAX_ENTRIES", 256)

    # Remote file links are treated as expired this long before their declared expiry
    FILE_EXPIRY_BUFFER_SECONDS: float = 5 * 60

    # Save-media default destination
    DOWNLOAD_DIR: str = os.getenv(
        "NODER_DOWNLOAD_DIR", os.path.join(os.path.expanduser("~"), "Downloads", "noder")
    )

    # S3-compatible object store (Cloudflare R2)
    R2_ENDPOINT: Optional[str] = os.getenv("R2_ENDPOINT")
    R2_ACCESS_KEY_ID: Optional[str] = os.getenv("R2_ACCESS_KEY_ID")
    R2_SECRET_ACCESS_KEY: Optional[str] = os.getenv("R2_SECRET_ACCESS_KEY")
    R2_BUCKET: str = os.getenv("R2_BUCKET", "noder")
    R2_URL_EXPIRY_SECONDS: int = _env_int("R2_URL_EXPIRY_SECONDS", 3600)

    @classmethod
    def get_replicate_token(cls) -> str:
        """
        Get the Replicate API token.

        Raises:
            ConfigurationError: If the token is not set
        """
        token = (cls.REPLICATE_API_TOKEN or "").strip()
        if not token:
            raise ConfigurationError(
                "REPLICATE_API_TOKEN not found. "
                "Please set it in your environment or .env file."
            )
        return token

    @classmethod
    def get_openrouter_key(cls) -> str:
        """
        Get the OpenRouter API key.

        Raises:
            ConfigurationError: If the key is not set
        """
        key = (cls.OPENROUTER_API_KEY or "").strip()
        if not key:
            raise ConfigurationError(
                "OpenRouter API key not configured. "
                "Set OPENROUTER_API_KEY in your environment or .env file."
            )
        return key
