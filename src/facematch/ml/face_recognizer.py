"""ArcFace-style embedding extraction from aligned face crops."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from facematch.errors import DecodeFailureError
from facematch.ml.features import normalize
from facematch.ml.preprocessing import to_tensor_layout
from facematch.ml.tensor import Tensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from facematch.config import Settings
    from facematch.ml.alignment import AlignedFace
    from facematch.ml.model_manager import InferenceEngine

logger = logging.getLogger(__name__)


class FaceRecognizer(Protocol):
    """Protocol for face recognition (embedding) models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def embedding_dim(self) -> int:
        """Return the embedding dimensionality (e.g., 512)."""
        ...

    def extract_feature(self, face: AlignedFace) -> NDArray[np.float32]:
        """Return the L2-normalized embedding of one aligned face."""
        ...


class ArcFaceRecognizer:
    """Turns a 112x112 aligned crop into an L2-normalized embedding."""

    def __init__(
        self,
        engine: InferenceEngine,
        *,
        model_name: str = "arcface",
        embedding_dim: int = 512,
        mean: Sequence[float] = (127.5, 127.5, 127.5),
        std: Sequence[float] = (128.0, 128.0, 128.0),
    ) -> None:
        self._engine = engine
        self._model_name = model_name
        self._embedding_dim = embedding_dim
        self._mean = tuple(mean)
        self._std = tuple(std)

    @classmethod
    def from_settings(cls, engine: InferenceEngine, settings: Settings) -> ArcFaceRecognizer:
        return cls(
            engine,
            model_name=settings.face_recognition_model,
            embedding_dim=settings.embedding_dim,
            mean=settings.recognition_mean,
            std=settings.recognition_std,
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    def extract_feature(self, face: AlignedFace) -> NDArray[np.float32]:
        """Run the recognition model and return a unit-length embedding.

        Raises:
            DecodeFailureError: If the model output is not ``embedding_dim`` values.
            InvalidInputError: If the model produced an all-zero embedding.
        """
        tensor = to_tensor_layout(face.image, self._mean, self._std, normalize=False)
        outputs = self._engine.run(tensor)
        if not outputs:
            raise DecodeFailureError("Recognition model returned no outputs")

        embedding = Tensor.from_array(next(iter(outputs.values())))
        if embedding.size != self._embedding_dim:
            raise DecodeFailureError(
                f"Expected a {self._embedding_dim}-dim embedding, got shape {embedding.shape}"
            )

        feature = normalize(embedding.flatten())
        logger.debug("Extracted %d-dim feature", feature.size)
        return feature
