"""
Replicate HTTP client: predictions, model schemas, the Files API and
downloads of generated outputs.

All calls go through ``_request`` which retries transport errors and 5xx
responses with linear backoff; 4xx responses are raised immediately.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import Any

import httpx

from noder.config import EngineConfig
from noder.errors import NotFoundError, ProviderError, SchemaFetchError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", Path(name).name).strip("._")
    return cleaned or "noder-output"


def _extension_from_url(url: str) -> str:
    path = url.split("?", 1)[0]
    last = path.rsplit("/", 1)[-1]
    if "." not in last:
        return "png"
    extension = re.sub(r"[^A-Za-z0-9]", "", last.rsplit(".", 1)[-1]).lower()
    return extension[:8] or "png"


class ReplicateClient:
    """Async client for the Replicate REST API."""

    def __init__(
        self,
        api_token: str | None = None,
        *,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = EngineConfig.MAX_RETRIES,
        retry_delay: float = EngineConfig.RETRY_DELAY_SECONDS,
        download_dir: str | None = None,
    ):
        self._api_token = api_token
        self.base_url = (base_url or EngineConfig.REPLICATE_BASE_URL).rstrip("/")
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(EngineConfig.REQUEST_TIMEOUT_SECONDS, connect=20.0)
        )
        self._owns_http = http_client is None
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.download_dir = download_dir or EngineConfig.DOWNLOAD_DIR

    async def __aenter__(self) -> "ReplicateClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self._api_token or EngineConfig.get_replicate_token()
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, path: str, *, operation: str, **kwargs) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}

        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._http.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as exc:
                last_error = ProviderError(f"{operation} failed: {exc}")
            else:
                if response.status_code < 400:
                    return response
                detail = response.text[:500]
                error = ProviderError(
                    f"Replicate API error ({response.status_code}): {detail}",
                    status_code=response.status_code,
                )
                if response.status_code < 500:
                    raise error
                last_error = error

            if attempt < self.max_retries:
                logger.warning(
                    "[Replicate API] %s failed (attempt %d/%d), retrying in %.1fs...",
                    operation,
                    attempt,
                    self.max_retries,
                    self.retry_delay * attempt,
                )
                await asyncio.sleep(self.retry_delay * attempt)

        logger.error("[Replicate API] %s failed after %d attempts: %s", operation, self.max_retries, last_error)
        if last_error is None:
            raise ProviderError(f"{operation} was not attempted (max_retries={self.max_retries})")
        raise last_error

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    async def create_prediction(self, model: str, input: dict[str, Any]) -> dict[str, Any]:
        """
        Create a prediction.

        ``model`` may be ``owner/name`` (official model endpoint),
        ``owner/name:version`` or a bare version id (generic endpoint).
        """
        if "/" in model and ":" not in model:
            path = f"/models/{model}/predictions"
            body: dict[str, Any] = {"input": input}
        else:
            path = "/predictions"
            version = model.split(":", 1)[1] if ":" in model else model
            body = {"version": version, "input": input}

        logger.info("Creating prediction at %s", path)
        response = await self._request("POST", path, json=body, operation="replicate_create_prediction")
        return response.json()

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        response = await self._request(
            "GET", f"/predictions/{prediction_id}", operation="replicate_get_prediction"
        )
        return response.json()

    async def cancel_prediction(self, prediction_id: str) -> dict[str, Any]:
        response = await self._request(
            "POST", f"/predictions/{prediction_id}/cancel", operation="replicate_cancel_prediction"
        )
        return response.json()

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def get_model(self, owner: str, name: str) -> dict[str, Any]:
        try:
            response = await self._request("GET", f"/models/{owner}/{name}", operation="replicate_get_model")
        except ProviderError as exc:
            if exc.status_code == 404:
                raise NotFoundError(f"Model {owner}/{name} not found") from exc
            raise
        return response.json()

    async def get_model_schema(self, owner: str, name: str) -> dict[str, Any]:
        model_data = await self.get_model(owner, name)
        schema = ((model_data or {}).get("latest_version") or {}).get("openapi_schema")
        if not schema:
            raise SchemaFetchError(f"No schema found for model {owner}/{name}")
        return schema

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload_file(self, file_path: str, filename: str, content_type: str) -> dict[str, Any]:
        content = await asyncio.to_thread(Path(file_path).read_bytes)
        files = {"content": (filename, content, content_type)}
        response = await self._request(
            "POST",
            "/files",
            files=files,
            data={"metadata": "{}"},
            operation="replicate_upload_file",
        )
        return response.json()

    async def delete_file(self, file_id: str) -> None:
        await self._request("DELETE", f"/files/{file_id}", operation="replicate_delete_file")

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download_and_save(
        self, url: str, filename: str | None = None, folder: str | None = None
    ) -> str:
        # Replicate-hosted file URLs need the API token; CDN output URLs do not
        if url.startswith(self.base_url):
            response = await self._request("GET", url, operation="download_and_save_file")
        else:
            try:
                response = await self._http.get(url, follow_redirects=True)
            except httpx.HTTPError as exc:
                raise ProviderError(f"Failed to download file: {exc}") from exc
            if response.status_code >= 400:
                raise ProviderError(
                    f"Download failed with status: {response.status_code} - {response.text[:200]}",
                    status_code=response.status_code,
                )

        dest_folder = Path(folder or self.download_dir).expanduser()
        if filename:
            file_name = sanitize_filename(filename)
        else:
            file_name = sanitize_filename(f"noder-output-{int(time.time())}.{_extension_from_url(url)}")

        file_path = dest_folder / file_name

        def _write() -> None:
            dest_folder.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(response.content)

        await asyncio.to_thread(_write)
        logger.info("Saved %d bytes to %s", len(response.content), file_path)
        return os.path.abspath(file_path)
