"""
Tests for remote file lifecycle: upload caching, expiry checks and cleanup.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from fakes import FakeRemoteClient
from noder.errors import CleanupError, RunCancelledError, UploadError
from noder.models.workflow import WorkflowNode
from noder.services.cancellation import CancellationToken
from noder.storage.files import (
    CacheInfo,
    FileLifecycleManager,
    cleanup_workflow_files,
    get_content_type,
    is_cache_valid,
    is_url_valid,
    should_upload_file,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def _http_client(status_code: int) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code)))


class FlakyStore(FakeRemoteClient):
    """Store whose deletes fail for selected ids."""

    def __init__(self, failing: set[str]):
        super().__init__()
        self.failing = failing

    async def delete_file(self, file_id: str) -> None:
        if file_id in self.failing:
            raise CleanupError(f"cannot delete {file_id}")
        await super().delete_file(file_id)


class TestHelpers:
    @pytest.mark.parametrize(
        "path, media_type, expected",
        [
            ("/a/photo.JPG", "image", "image/jpeg"),
            ("C:\\clips\\take.mov", "video", "video/quicktime"),
            ("/music/song.flac", "audio", "audio/flac"),
            ("/no-extension", "video", "video/mp4"),
            ("/a/file.bin", "other", "application/octet-stream"),
        ],
    )
    def test_content_types(self, path, media_type, expected):
        assert get_content_type(path, media_type) == expected

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/local/a.png", True),
            ("relative/a.png", True),
            ("https://cdn.example/a.png", False),
            ("data:image/png;base64,AAAA", False),
            ("", False),
            (None, False),
        ],
    )
    def test_should_upload_file(self, path, expected):
        assert should_upload_file(path) is expected


class TestCacheValidity:
    def _info(self, **overrides) -> CacheInfo:
        values = {
            "replicate_url": "https://files.example/a.png",
            "replicate_expires_at": _iso(NOW + timedelta(hours=1)),
            "uploaded_media_path": "/a.png",
        }
        values.update(overrides)
        return CacheInfo(**values)

    @pytest.mark.asyncio
    async def test_fresh_entry_is_valid(self):
        assert await is_cache_valid(self._info(), "/a.png", verify_url=False, now=NOW) is True

    @pytest.mark.asyncio
    async def test_missing_url(self):
        assert await is_cache_valid(self._info(replicate_url=None), "/a.png", verify_url=False, now=NOW) is False

    @pytest.mark.asyncio
    async def test_changed_path(self):
        assert await is_cache_valid(self._info(), "/b.png", verify_url=False, now=NOW) is False

    @pytest.mark.asyncio
    async def test_expiry_within_buffer(self):
        info = self._info(replicate_expires_at=_iso(NOW + timedelta(minutes=4)))

        assert await is_cache_valid(info, "/a.png", verify_url=False, now=NOW) is False

    @pytest.mark.asyncio
    async def test_expiry_beyond_buffer(self):
        info = self._info(replicate_expires_at=_iso(NOW + timedelta(minutes=6)))

        assert await is_cache_valid(info, "/a.png", verify_url=False, now=NOW) is True

    @pytest.mark.asyncio
    async def test_node_data_dict_is_accepted(self):
        data = {
            "replicateUrl": "https://files.example/a.png",
            "replicateExpiresAt": _iso(NOW + timedelta(hours=1)),
            "uploadedMediaPath": "/a.png",
        }

        assert await is_cache_valid(data, "/a.png", verify_url=False, now=NOW) is True

    @pytest.mark.asyncio
    async def test_url_verification(self):
        async with _http_client(200) as ok, _http_client(404) as gone:
            assert await is_cache_valid(self._info(), "/a.png", http_client=ok, now=NOW) is True
            assert await is_cache_valid(self._info(), "/a.png", http_client=gone, now=NOW) is False

    @pytest.mark.asyncio
    async def test_transport_error_means_invalid(self):
        def raise_error(request):
            raise httpx.ConnectError("unreachable", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(raise_error)) as client:
            assert await is_url_valid("https://files.example/a.png", client) is False


class TestFileLifecycleManager:
    @pytest.mark.asyncio
    async def test_upload_is_reused_for_same_path(self):
        store = FakeRemoteClient()
        manager = FileLifecycleManager(store)

        first = await manager.ensure_uploaded("n1", "/photos/a.png")
        second = await manager.ensure_uploaded("n1", "/photos/a.png")

        assert first == second
        assert len(store.uploaded) == 1
        assert manager.get_file_info("n1").file_id == "file-1"

    @pytest.mark.asyncio
    async def test_changed_path_replaces_previous_upload(self):
        store = FakeRemoteClient()
        manager = FileLifecycleManager(store)

        await manager.ensure_uploaded("n1", "/photos/a.png")
        url = await manager.ensure_uploaded("n1", "/photos/b.png")

        assert url.endswith("file-2")
        assert store.deleted == ["file-1"]
        assert manager.uploaded_file_ids() == {"file-2"}

    @pytest.mark.asyncio
    async def test_remote_paths_are_returned_unchanged(self):
        store = FakeRemoteClient()
        manager = FileLifecycleManager(store)

        assert await manager.ensure_uploaded("n1", "https://cdn.example/a.png") == "https://cdn.example/a.png"
        assert store.uploaded == []

    @pytest.mark.asyncio
    async def test_upload_failure_raises_upload_error(self):
        class RejectingStore(FakeRemoteClient):
            async def upload_file(self, file_path, filename, content_type):
                raise OSError("file vanished")

        manager = FileLifecycleManager(RejectingStore())

        with pytest.raises(UploadError, match="Failed to upload file: file vanished"):
            await manager.ensure_uploaded("n1", "/photos/a.png")

    @pytest.mark.asyncio
    async def test_cleanup_all_is_best_effort(self):
        store = FlakyStore(failing={"file-1"})
        manager = FileLifecycleManager(store)
        await manager.ensure_uploaded("n1", "/a.png")
        await manager.ensure_uploaded("n2", "/b.png")

        await manager.cleanup_all()

        assert store.deleted == ["file-2"]
        assert manager.uploaded_file_ids() == set()

    @pytest.mark.asyncio
    async def test_cleanup_single_node(self):
        store = FakeRemoteClient()
        manager = FileLifecycleManager(store)
        await manager.ensure_uploaded("n1", "/a.png")

        await manager.cleanup("n1")
        await manager.cleanup("n1")

        assert store.deleted == ["file-1"]
        assert manager.get_file_info("n1") is None

    @pytest.mark.asyncio
    async def test_expired_upload_is_replaced(self):
        store = FakeRemoteClient(file_expires_at="2000-01-01T00:00:00Z")
        manager = FileLifecycleManager(store)

        first = await manager.ensure_uploaded("n1", "/photos/a.png")
        second = await manager.ensure_uploaded("n1", "/photos/a.png")

        assert first.endswith("file-1")
        assert second.endswith("file-2")
        assert len(store.uploaded) == 2
        assert store.deleted == ["file-1"]
        assert manager.uploaded_file_ids() == {"file-2"}

    @pytest.mark.asyncio
    async def test_replaced_untracked_file_is_deleted(self):
        store = FakeRemoteClient()
        manager = FileLifecycleManager(store)

        await manager.ensure_uploaded("n1", "/photos/new.png", replaces_file_id="old-file")

        assert store.deleted == ["old-file"]
        assert manager.uploaded_file_ids() == {"file-1"}

    @pytest.mark.asyncio
    async def test_replaced_id_tracked_for_another_node_is_kept(self):
        store = FakeRemoteClient()
        manager = FileLifecycleManager(store)
        await manager.ensure_uploaded("n1", "/photos/a.png")

        await manager.ensure_uploaded("n2", "/photos/b.png", replaces_file_id="file-1")

        assert store.deleted == []
        assert manager.uploaded_file_ids() == {"file-1", "file-2"}

    @pytest.mark.asyncio
    async def test_cancel_token_is_per_call(self):
        store = FakeRemoteClient()
        manager = FileLifecycleManager(store)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RunCancelledError):
            await manager.ensure_uploaded("n1", "/photos/a.png", cancel_token=token)

        assert manager.cancel_token is None
        assert await manager.ensure_uploaded("n1", "/photos/a.png") == "https://api.replicate.com/v1/files/file-1"
        second = await manager.ensure_uploaded("n2", "/photos/b.png", cancel_token=CancellationToken())
        assert second.endswith("file-2")

class TestCleanupWorkflowFiles:
    @pytest.mark.asyncio
    async def test_only_successful_deletes_clear_ids(self):
        store = FlakyStore(failing={"bad"})
        nodes = [
            WorkflowNode(id="a", type="media", data={"replicateFileId": "good", "replicateUrl": "u1"}),
            WorkflowNode(id="b", type="media", data={"replicateFileId": "bad", "replicateUrl": "u2"}),
            WorkflowNode(id="c", type="image", data={"replicateFileId": "ignored"}),
        ]

        await cleanup_workflow_files(nodes, store)

        assert store.deleted == ["good"]
        assert nodes[0].data["replicateFileId"] is None
        assert nodes[1].data["replicateFileId"] == "bad"
        assert nodes[2].data["replicateFileId"] == "ignored"

    @pytest.mark.asyncio
    async def test_without_store_nothing_happens(self):
        node = WorkflowNode(id="a", type="media", data={"replicateFileId": "f"})

        await cleanup_workflow_files([node], None)

        assert node.data["replicateFileId"] == "f"
