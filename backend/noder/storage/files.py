"""
Lifecycle of local media uploaded to a remote file store.

``FileLifecycleManager`` uploads a node's local file on demand, reuses the
upload while the node's path is unchanged, replaces it when the path changes
and deletes everything it uploaded when asked. Deletes are best-effort:
failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from noder.clients.base import FileStore
from noder.config import EngineConfig
from noder.errors import RunCancelledError, UploadError
from noder.models.workflow import WorkflowNode
from noder.services.cancellation import CancellationToken, checkpoint

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
}

VIDEO_CONTENT_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
}

AUDIO_CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
}


class FileInfo(BaseModel):
    file_id: str
    url: str
    file_path: str
    expires_at: str | None = None


class CacheInfo(BaseModel):
    replicate_url: str | None = None
    replicate_expires_at: str | None = None
    uploaded_media_path: str | None = None

    @classmethod
    def from_node_data(cls, data: dict[str, Any]) -> "CacheInfo":
        return cls(
            replicate_url=data.get("replicateUrl"),
            replicate_expires_at=data.get("replicateExpiresAt"),
            uploaded_media_path=data.get("uploadedMediaPath"),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _extension(file_path: str) -> str:
    name = file_path.lower().rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
    return name.rsplit(".", 1)[-1] if "." in name else ""


def get_content_type(file_path: str, media_type: str) -> str:
    extension = _extension(file_path)

    if media_type == "image" or extension in IMAGE_CONTENT_TYPES:
        return IMAGE_CONTENT_TYPES.get(extension, "image/png")
    if media_type == "video" or extension in VIDEO_CONTENT_TYPES:
        return VIDEO_CONTENT_TYPES.get(extension, "video/mp4")
    if media_type == "audio" or extension in AUDIO_CONTENT_TYPES:
        return AUDIO_CONTENT_TYPES.get(extension, "audio/mpeg")
    return "application/octet-stream"


def should_upload_file(file_path: str | None) -> bool:
    """Local paths need uploading; remote URLs and data URIs are used as-is."""
    if not file_path:
        return False
    return not file_path.startswith(("http://", "https://", "data:"))


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _expires_soon(expires_at: str, now: datetime | None = None) -> bool:
    """True when ``expires_at`` is unparseable or falls inside the expiry buffer."""
    parsed = _parse_timestamp(expires_at)
    if parsed is None:
        return True
    current = now or datetime.now(timezone.utc)
    return (parsed - current).total_seconds() < EngineConfig.FILE_EXPIRY_BUFFER_SECONDS


async def is_url_valid(url: str | None, http_client: httpx.AsyncClient | None = None) -> bool:
    """HEAD-probe ``url``; any transport error counts as invalid."""
    if not url:
        return False

    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
    try:
        response = await client.head(url, follow_redirects=True)
        return 200 <= response.status_code < 300
    except httpx.HTTPError as exc:
        logger.warning("[Files] URL validation failed for %s: %s", url, exc)
        return False
    finally:
        if http_client is None:
            await client.aclose()


async def is_cache_valid(
    cache_info: CacheInfo | dict[str, Any] | None,
    current_path: str | None,
    verify_url: bool = True,
    *,
    http_client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Whether a previously uploaded remote copy can be reused.

    The copy is stale when the local path changed, when it expires within
    the safety buffer or (with ``verify_url``) when the link no longer
    answers a HEAD request.
    """
    if isinstance(cache_info, dict):
        cache_info = CacheInfo.from_node_data(cache_info)
    if cache_info is None or not cache_info.replicate_url:
        logger.debug("[Files] Cache miss: no remote url")
        return False

    if cache_info.uploaded_media_path and cache_info.uploaded_media_path != current_path:
        logger.debug(
            "[Files] Cache miss: media path changed (%s -> %s)",
            cache_info.uploaded_media_path,
            current_path,
        )
        return False

    if cache_info.replicate_expires_at and _expires_soon(cache_info.replicate_expires_at, now):
        logger.debug("[Files] Cache miss: url expired or expiring soon")
        return False

    if verify_url and not await is_url_valid(cache_info.replicate_url, http_client):
        logger.debug("[Files] Cache miss: url no longer accessible")
        return False

    return True


async def _delete_quietly(store: FileStore, file_id: str | None) -> bool:
    if not file_id:
        logger.warning("[Files] No file id provided for deletion")
        return False
    try:
        await store.delete_file(file_id)
    except RunCancelledError:
        raise
    except Exception as exc:
        # Already deleted or expired files fail here too
        logger.warning("[Files] Failed to delete file %s: %s", file_id, exc)
        return False
    logger.info("[Files] Deleted file %s", file_id)
    return True


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class FileLifecycleManager:
    """Tracks remote uploads per node id for one store."""

    def __init__(self, store: FileStore, cancel_token: CancellationToken | None = None):
        self.store = store
        self.cancel_token = cancel_token
        self._uploaded: dict[str, FileInfo] = {}

    async def ensure_uploaded(
        self,
        node_id: str,
        file_path: str,
        media_type: str = "image",
        *,
        replaces_file_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """
        Return a remote URL for ``file_path``, uploading it when needed.

        A cached upload is reused while its path is unchanged and its link is
        outside the expiry buffer. After a new upload, the node's previous
        file is deleted, along with ``replaces_file_id`` (a file recorded on
        the node by an earlier session) when this manager does not track it.

        Raises:
            UploadError: If the store rejects the upload.
            RunCancelledError: If ``cancel_token`` (or the manager's own
                token) has fired.
        """
        token = cancel_token if cancel_token is not None else self.cancel_token
        existing = self._uploaded.get(node_id)
        if (
            existing is not None
            and existing.file_path == file_path
            and not (existing.expires_at and _expires_soon(existing.expires_at))
        ):
            logger.debug("[Files] Using cached upload for node %s", node_id)
            return existing.url

        if not should_upload_file(file_path):
            return file_path

        await checkpoint(token)
        content_type = get_content_type(file_path, media_type)
        filename = os.path.basename(file_path.replace("\\", "/")) or f"upload.{_extension(file_path)}"

        logger.info("[Files] Uploading %s (%s) for node %s", filename, content_type, node_id)
        try:
            response = await self.store.upload_file(file_path, filename, content_type)
        except RunCancelledError:
            raise
        except Exception as exc:
            raise UploadError(f"Failed to upload file: {exc}") from exc

        try:
            info = FileInfo(
                file_id=response["id"],
                url=response["urls"]["get"],
                file_path=file_path,
                expires_at=response.get("expires_at"),
            )
        except (KeyError, TypeError) as exc:
            raise UploadError(f"Upload response is missing {exc}") from exc

        stale_ids: list[str] = []
        if existing is not None and existing.file_id:
            stale_ids.append(existing.file_id)
        if (
            replaces_file_id
            and replaces_file_id != info.file_id
            and replaces_file_id not in stale_ids
            and replaces_file_id not in self.uploaded_file_ids()
        ):
            stale_ids.append(replaces_file_id)
        for file_id in stale_ids:
            await _delete_quietly(self.store, file_id)

        self._uploaded[node_id] = info
        return info.url

    async def cleanup(self, node_id: str, cancel_token: CancellationToken | None = None) -> None:
        info = self._uploaded.get(node_id)
        if info is not None and info.file_id:
            await checkpoint(cancel_token if cancel_token is not None else self.cancel_token)
            await _delete_quietly(self.store, info.file_id)
            self._uploaded.pop(node_id, None)

    async def cleanup_all(self) -> None:
        file_ids = [info.file_id for info in self._uploaded.values() if info.file_id]
        await asyncio.gather(
            *(_delete_quietly(self.store, file_id) for file_id in file_ids),
            return_exceptions=True,
        )
        self._uploaded.clear()

    def get_file_info(self, node_id: str) -> FileInfo | None:
        return self._uploaded.get(node_id)

    def uploaded_file_ids(self) -> set[str]:
        return {info.file_id for info in self._uploaded.values() if info.file_id}


async def cleanup_workflow_files(
    nodes: list[WorkflowNode],
    store: FileStore | None,
    file_manager: FileLifecycleManager | None = None,
) -> None:
    """
    Delete files recorded on media nodes and clear the ids on success.

    Uploads tracked by ``file_manager`` are deleted through it first, so a
    file is never deleted twice.
    """
    if file_manager is not None:
        managed = file_manager.uploaded_file_ids()
        await file_manager.cleanup_all()
        for node in nodes:
            if node.data.get("replicateFileId") in managed:
                node.data["replicateFileId"] = None
                node.data["replicateUrl"] = None

    if store is None:
        return

    targets = [n for n in nodes if n.type == "media" and n.data.get("replicateFileId")]
    if not targets:
        return

    logger.info("[Files] Cleaning up %d uploaded files", len(targets))

    async def _cleanup_node(node: WorkflowNode) -> None:
        if await _delete_quietly(store, node.data["replicateFileId"]):
            node.data["replicateFileId"] = None
            node.data["replicateUrl"] = None

    await asyncio.gather(*(_cleanup_node(n) for n in targets), return_exceptions=True)
    logger.info("[Files] Cleanup complete")
