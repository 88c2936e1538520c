"""
Cooperative cancellation for workflow runs.

A single token is shared by every node of a run and checked at each
suspension point: prediction submission, every poll tick, schema fetch and
file upload/delete.
"""

from __future__ import annotations

import asyncio

from noder.errors import RunCancelledError


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Workflow run was cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or "Workflow run was cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` but wake up and raise as soon as the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


async def checkpoint(token: CancellationToken | None) -> None:
    """Raise if ``token`` has fired; a no-op when the run is not cancellable."""
    if token is not None:
        token.raise_if_cancelled()


async def cancellable_sleep(seconds: float, token: CancellationToken | None) -> None:
    if token is None:
        await asyncio.sleep(seconds)
    else:
        await token.sleep(seconds)
