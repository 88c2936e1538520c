"""
Contracts for the remote collaborators the engine talks to.

The engine only depends on these request/response shapes; the concrete HTTP
clients in this package are one implementation, tests substitute fakes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class FileStore(Protocol):
    async def upload_file(
        self, file_path: str, filename: str, content_type: str
    ) -> dict[str, Any]:
        """Upload a local file.

        Returns ``{"id", "urls": {"get"}, "content_type", "size", "expires_at"}``.
        """
        ...

    async def delete_file(self, file_id: str) -> None: ...


@runtime_checkable
class RemoteExecutionClient(FileStore, Protocol):
    async def create_prediction(self, model: str, input: dict[str, Any]) -> dict[str, Any]:
        """Submit a job. Returns at least ``{"id", "status"}``."""
        ...

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        """Returns ``{"id", "status", "output"?, "error"?}``."""
        ...

    async def get_model_schema(self, owner: str, name: str) -> dict[str, Any]:
        """Returns the model's OpenAPI document (``components.schemas.Input`` ...)."""
        ...

    async def download_and_save(
        self, url: str, filename: str | None = None, folder: str | None = None
    ) -> str:
        """Download ``url`` to disk and return the absolute saved path."""
        ...


@runtime_checkable
class ChatClient(Protocol):
    async def chat_completion(
        self, *, api_key: str, model: str, messages: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Returns ``{"choices": [{"message": {"content": ...}}]}``."""
        ...
