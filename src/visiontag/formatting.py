"""Text rendering of classification results."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from visiontag.ml.image_classifier import ClassificationResult

NO_PREDICTIONS_MESSAGE = "Nothing recognized."
FAILURE_MESSAGE = "Unable to classify image."


def format_prediction(result: ClassificationResult) -> str:
    return f"({result.confidence:.2f}) {result.label}"


def format_predictions(results: Sequence[ClassificationResult], limit: int) -> str:
    """Render the first ``limit`` results as a short multi-line summary.

    An empty result list renders as the generic no-predictions message.
    """
    shown = list(results)[: max(limit, 0)]
    if not shown:
        return NO_PREDICTIONS_MESSAGE
    lines = ["Classification:"]
    lines.extend(f"  {format_prediction(result)}" for result in shown)
    return "\n".join(lines)


def format_failure() -> str:
    return FAILURE_MESSAGE
