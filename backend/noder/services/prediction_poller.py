"""
Bounded polling for asynchronous provider jobs ("predictions").

The attempt budget times the poll interval is the effective timeout of a
job; running out of attempts is reported as ``PredictionTimeoutError``
rather than hanging. Every sleep wakes early when the run's cancellation
token fires.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from noder.config import EngineConfig
from noder.errors import PredictionTimeoutError, ProviderError, RunCancelledError
from noder.models.node_types import DataKind
from noder.models.workflow import NodeOutputs, PollProgress, Prediction
from noder.services.cancellation import CancellationToken, cancellable_sleep, checkpoint

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})
PROGRESS_EVERY = 10

ProgressCallback = Callable[[PollProgress], None]


async def poll_prediction(
    client: Any,
    prediction_id: str,
    *,
    max_attempts: int = EngineConfig.POLL_MAX_ATTEMPTS,
    interval: float = EngineConfig.POLL_INTERVAL_SECONDS,
    on_progress: ProgressCallback | None = None,
    cancel_token: CancellationToken | None = None,
) -> Prediction:
    """
    Fetch a prediction until it reaches a terminal status or the budget runs out.

    Returns the last fetched prediction, which is non-terminal on timeout.
    """
    await checkpoint(cancel_token)
    prediction = Prediction.model_validate(await client.get_prediction(prediction_id))
    attempts = 0

    while prediction.status not in TERMINAL_STATUSES and attempts < max_attempts:
        try:
            await cancellable_sleep(interval, cancel_token)
        except RunCancelledError:
            await _cancel_remote(client, prediction_id)
            raise

        prediction = Prediction.model_validate(await client.get_prediction(prediction_id))
        attempts += 1

        if attempts % PROGRESS_EVERY == 0:
            logger.debug(
                "Prediction %s polling attempt %d/%d: %s",
                prediction_id,
                attempts,
                max_attempts,
                prediction.status,
            )
            if on_progress is not None:
                on_progress(PollProgress(attempts=attempts, max_attempts=max_attempts, status=prediction.status))

    return prediction


async def _cancel_remote(client: Any, prediction_id: str) -> None:
    cancel = getattr(client, "cancel_prediction", None)
    if cancel is None:
        return
    try:
        await cancel(prediction_id)
    except Exception as exc:
        logger.warning("Failed to cancel prediction %s: %s", prediction_id, exc)


def handle_prediction_result(
    prediction: Prediction,
    output_type: DataKind | str,
    metadata: dict[str, Any] | None = None,
) -> NodeOutputs:
    """
    Map a finished prediction to ``{"out": {type, value, metadata}}``.

    Raises:
        ProviderError: If the prediction failed, was canceled or returned an
            output that cannot be interpreted as ``output_type``.
        PredictionTimeoutError: If the prediction never reached a terminal status.
    """
    kind = output_type.value if isinstance(output_type, DataKind) else output_type
    is_text = kind == DataKind.TEXT.value

    if prediction.status == "succeeded":
        output = prediction.output
        if isinstance(output, list) and output:
            # Language models stream tokens; media models return one URL per output
            value = "".join(str(part) for part in output) if is_text else output[0]
        elif isinstance(output, str):
            value = output
        elif is_text:
            value = json.dumps(output)
        else:
            raise ProviderError("Unexpected output format")

        return {
            "out": {
                "type": kind,
                "value": value,
                "metadata": {**(metadata or {}), "predictionId": prediction.id},
            }
        }

    if prediction.status == "failed":
        raise ProviderError(prediction.error or "Prediction failed")
    if prediction.status == "canceled":
        raise ProviderError("Prediction was canceled")
    raise PredictionTimeoutError("Prediction timed out")


async def run_prediction(
    client: Any,
    model: str,
    input: dict[str, Any],
    output_type: DataKind | str,
    *,
    max_attempts: int | None = None,
    interval: float = EngineConfig.POLL_INTERVAL_SECONDS,
    on_progress: ProgressCallback | None = None,
    cancel_token: CancellationToken | None = None,
) -> NodeOutputs:
    """Submit a prediction, poll it to completion and map the result."""
    await checkpoint(cancel_token)
    created = await client.create_prediction(model, input)
    prediction_id = created.get("id")
    if not prediction_id:
        raise ProviderError(f"Prediction for {model} was created without an id")

    logger.info("Created prediction %s for %s", prediction_id, model)
    final = await poll_prediction(
        client,
        prediction_id,
        max_attempts=max_attempts or EngineConfig.POLL_MAX_ATTEMPTS,
        interval=interval,
        on_progress=on_progress,
        cancel_token=cancel_token,
    )
    return handle_prediction_result(final, output_type, {"model": model})
