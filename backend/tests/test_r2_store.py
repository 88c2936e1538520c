"""
Tests for the R2 file store with an in-memory boto client.
"""

import pytest
from botocore.exceptions import ClientError

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from noder.config import EngineConfig
from noder.errors import CleanupError, ConfigurationError, UploadError
from noder.storage.files import FileLifecycleManager
from noder.storage.r2 import R2FileStore, create_r2_client


class FakeS3:
    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.deleted: list[str] = []

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[Key] = {"bucket": Bucket, "body": Body, "content_type": ContentType}

    def generate_presigned_url(self, method, Params, ExpiresIn):
        return f"https://r2.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"

    def delete_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "DeleteObject")
        self.deleted.append(Key)
        del self.objects[Key]


class TestR2FileStore:
    @pytest.mark.asyncio
    async def test_upload_returns_files_api_shape(self, tmp_path):
        source = tmp_path / "frame.png"
        source.write_bytes(b"png-bytes")
        s3 = FakeS3()
        store = R2FileStore(client=s3, bucket="media", url_expiry_seconds=600)

        result = await store.upload_file(str(source), "frame.png", "image/png")

        key = result["id"]
        assert key.startswith("workflow-uploads/") and key.endswith("/frame.png")
        assert s3.objects[key] == {"bucket": "media", "body": b"png-bytes", "content_type": "image/png"}
        assert result["urls"]["get"] == f"https://r2.test/media/{key}?expires=600"
        assert result["size"] == len(b"png-bytes")
        assert result["expires_at"]

    @pytest.mark.asyncio
    async def test_missing_local_file(self, tmp_path):
        store = R2FileStore(client=FakeS3(), bucket="media")

        with pytest.raises(UploadError, match="Failed to upload missing.png to R2"):
            await store.upload_file(str(tmp_path / "missing.png"), "missing.png", "image/png")

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        source = tmp_path / "a.mp3"
        source.write_bytes(b"id3")
        s3 = FakeS3()
        store = R2FileStore(client=s3, bucket="media")
        key = (await store.upload_file(str(source), "a.mp3", "audio/mpeg"))["id"]

        await store.delete_file(key)

        assert s3.deleted == [key]
        with pytest.raises(CleanupError):
            await store.delete_file(key)

    @pytest.mark.asyncio
    async def test_works_behind_lifecycle_manager(self, tmp_path):
        source = tmp_path / "clip.mp4"
        source.write_bytes(b"mp4")
        s3 = FakeS3()
        manager = FileLifecycleManager(R2FileStore(client=s3, bucket="media"))

        url = await manager.ensure_uploaded("m1", str(source), "video")
        await manager.cleanup_all()

        assert url.startswith("https://r2.test/media/workflow-uploads/")
        assert s3.objects == {}

    def test_missing_configuration(self, monkeypatch):
        monkeypatch.setattr(EngineConfig, "R2_ENDPOINT", None)

        with pytest.raises(ConfigurationError, match="R2_ENDPOINT"):
            create_r2_client()

    def test_client_is_created_lazily(self, monkeypatch):
        monkeypatch.setattr(EngineConfig, "R2_ENDPOINT", "https://account.r2.test")
        monkeypatch.setattr(EngineConfig, "R2_ACCESS_KEY_ID", None)
        store = R2FileStore(bucket="media")

        with pytest.raises(ConfigurationError, match="R2_ACCESS_KEY_ID"):
            store.client
