"""
Exception taxonomy for the workflow engine.

Node-level errors (validation, provider) are caught at the node boundary by
the orchestrator; whether they stop a run is decided by ``continue_on_error``.
Upload and cleanup errors are best-effort and never fail a run.
"""

from __future__ import annotations


class NoderError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NoderError):
    """Raised when a required setting (API key, endpoint) is missing."""


class CycleError(NoderError):
    """Raised when the node/edge graph cannot be ordered."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = list(node_ids)
        super().__init__(
            f"Cyclic dependency detected. Cannot execute nodes: {', '.join(self.node_ids)}"
        )


class ValidationError(NoderError):
    """Raised when a node's inputs are missing or unsupported by its model."""


class ProviderError(NoderError):
    """Raised when a remote job fails, is canceled, or a chat call is rejected."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class PredictionTimeoutError(ProviderError):
    """Raised when a prediction exhausts its polling budget."""


class SchemaFetchError(NoderError):
    """Raised when a model schema cannot be fetched or has no input definition."""


class NotFoundError(NoderError):
    """Raised when a referenced node or model does not exist."""


class UploadError(NoderError):
    """Raised when a local file cannot be uploaded to the remote store."""


class CleanupError(NoderError):
    """Raised by a file store when a remote file cannot be deleted."""


class RunCancelledError(NoderError):
    """Raised at a suspension point after the run's cancellation token fired."""
