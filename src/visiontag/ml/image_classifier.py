"""Image classification: run a MobileNet ONNX session over an uploaded image."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from visiontag.ml.preprocessing import CropMode

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from visiontag.config import Settings
    from visiontag.ml.model_manager import ModelManager
    from visiontag.ml.preprocessing import ImagePreprocessor, Orientation

logger = logging.getLogger(__name__)


class ClassificationError(RuntimeError):
    """The model could not produce predictions for an image."""


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float

    def __post_init__(self) -> None:
        if not self.label.strip():
            raise ValueError("Classification label must not be empty")
        object.__setattr__(self, "confidence", min(max(float(self.confidence), 0.0), 1.0))

    @property
    def confidence_text(self) -> str:
        """Confidence as a percentage string, e.g. ``"87.4%"``."""
        return f"{self.confidence * 100:.1f}%"


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(
        self,
        image_bytes: bytes,
        orientation: Orientation | None = None,
        top_k: int | None = None,
    ) -> list[ClassificationResult]:
        """Classify an image and return ranked tags.

        Args:
            image_bytes: Raw encoded image.
            orientation: Optional orientation tag overriding EXIF data.
            top_k: Number of predictions to return.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return (exp / np.sum(exp)).astype(np.float32)


def top_predictions(scores: NDArray[np.float32], labels: list[str], k: int) -> list[ClassificationResult]:
    """Pair the ``k`` highest scores with their labels, best first."""
    k = min(k, scores.shape[0])
    if k <= 0:
        return []
    # Only the top-k head is sorted.
    head = np.argpartition(-scores, k - 1)[:k]
    ordered = head[np.argsort(-scores[head], kind="stable")]
    return [ClassificationResult(label=labels[i], confidence=float(scores[i])) for i in ordered]


class OnnxImageClassifier:
    """MobileNet-style classifier backed by a shared ONNX InferenceSession."""

    def __init__(
        self,
        settings: Settings,
        model_manager: ModelManager,
        preprocessor: ImagePreprocessor,
    ) -> None:
        self._settings = settings
        self._model_manager = model_manager
        self._preprocessor = preprocessor
        self._spec = model_manager.get_spec(settings.classification_model)
        self._crop_mode = CropMode(settings.crop_mode)

    @property
    def model_name(self) -> str:
        return self._spec.name

    def warm_up(self) -> None:
        """Load the session and labels ahead of the first request."""
        self._model_manager.get_session(self._spec.name)
        self._model_manager.get_labels(self._spec.name)
        logger.info("Warmed up %s", self._spec.name)

    def classify(
        self,
        image_bytes: bytes,
        orientation: Orientation | None = None,
        top_k: int | None = None,
    ) -> list[ClassificationResult]:
        k = top_k if top_k is not None else self._settings.top_k
        tensor = self._preprocessor.prepare(
            image_bytes,
            self._spec.input_size,
            self._crop_mode,
            orientation,
            self._spec.mean,
            self._spec.std,
        )

        try:
            session = self._model_manager.get_session(self._spec.name)
            labels = self._model_manager.get_labels(self._spec.name)
            input_name = session.get_inputs()[0].name
            outputs = session.run(None, {input_name: tensor})
        except Exception as exc:
            logger.exception("Inference failed for %s", self._spec.name)
            raise ClassificationError(f"Inference failed for {self._spec.name}") from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(labels):
            raise ClassificationError(
                f"Model {self._spec.name} produced {scores.shape[0]} scores for {len(labels)} labels",
            )
        if self._spec.apply_softmax:
            scores = softmax(scores)
        if not np.isfinite(scores).all():
            raise ClassificationError(f"Model {self._spec.name} produced non-finite scores")

        results = top_predictions(scores, labels, k)
        logger.debug(
            "Classified image with %s: %s",
            self._spec.name,
            ", ".join(f"{r.label}={r.confidence:.3f}" for r in results),
        )
        return results
