"""Detection-to-match orchestration.

Chains detection, alignment, embedding extraction and vector search for the
enrollment and recognition flows. Every public method returns an ``Outcome``:
domain failures (``FaceMatchError``) are captured at the stage boundary where
they occur instead of propagating to the caller.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from facematch.errors import FaceMatchError, NoDetectionError, StageCancelledError
from facematch.ml.alignment import align_face
from facematch.ml.preprocessing import decode_base64_image, decode_image
from facematch.outcome import Outcome
from facematch.store.match_protocol import FaceRecord, filter_matches

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import ArrayLike, NDArray

    from facematch.config import Settings
    from facematch.ml.alignment import AlignedFace
    from facematch.ml.face_detector import DetectionCandidate, FaceDetector
    from facematch.ml.face_recognizer import FaceRecognizer
    from facematch.store.match_protocol import MatchResult, VectorStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Recognition:
    """Result of a recognition request: the face used and its matches."""

    face: DetectionCandidate | None
    matches: list[MatchResult]

    @property
    def best(self) -> MatchResult | None:
        return self.matches[0] if self.matches else None


def _checkpoint(cancel: threading.Event | None, stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise StageCancelledError(f"Request cancelled before stage '{stage}'")


class FacePipeline:
    """Runs the detection-to-match pipeline against one vector store."""

    def __init__(
        self,
        detector: FaceDetector,
        recognizer: FaceRecognizer,
        store: VectorStore,
        *,
        alignment_output_size: int = 112,
        similarity_threshold: float = 0.6,
        top_k: int = 5,
        max_image_pixels: int | None = None,
    ) -> None:
        self._detector = detector
        self._recognizer = recognizer
        self._store = store
        self._alignment_output_size = alignment_output_size
        self._similarity_threshold = similarity_threshold
        self._top_k = top_k
        self._max_image_pixels = max_image_pixels

    @classmethod
    def from_settings(
        cls,
        detector: FaceDetector,
        recognizer: FaceRecognizer,
        store: VectorStore,
        settings: Settings,
    ) -> FacePipeline:
        return cls(
            detector,
            recognizer,
            store,
            alignment_output_size=settings.alignment_output_size,
            similarity_threshold=settings.similarity_threshold,
            top_k=settings.top_k,
            max_image_pixels=settings.max_image_pixels,
        )

    # -- Single stages ----------------------------------------------------

    def load_image(self, source: NDArray[np.uint8] | bytes | str) -> Outcome[NDArray[np.uint8]]:
        """Decode raw bytes or base64 text; arrays pass through unchanged."""
        return self._capture("decode", lambda: self._to_image(source))

    def detect_faces(self, image: NDArray[np.uint8]) -> Outcome[list[DetectionCandidate]]:
        """Detect faces. An empty list is a successful result."""
        return self._capture("detect", lambda: self._detector.detect(image))

    def align_face(self, image: NDArray[np.uint8], landmarks: ArrayLike | None) -> Outcome[AlignedFace]:
        return self._capture("align", lambda: align_face(image, landmarks, self._alignment_output_size))

    def extract_feature(self, face: AlignedFace) -> Outcome[NDArray[np.float32]]:
        return self._capture("extract", lambda: self._recognizer.extract_feature(face))

    def search_similar(self, feature: NDArray[np.float32], top_k: int | None = None) -> Outcome[list[MatchResult]]:
        """Nearest stored faces, best first, without threshold filtering."""
        k = top_k or self._top_k
        return self._capture("search", lambda: self._store.search(feature, k))

    # -- Flows --------------------------------------------------------------

    def register(
        self,
        source: NDArray[np.uint8] | bytes | str,
        name: str,
        person_id: str,
        remark: str = "",
        cancel: threading.Event | None = None,
    ) -> Outcome[FaceRecord]:
        """Enroll the most confident face in ``source``.

        Fails with ``NoDetectionError`` when the image contains no face.
        """

        def run() -> FaceRecord:
            _checkpoint(cancel, "decode")
            image = self._to_image(source)
            _checkpoint(cancel, "detect")
            face = self._primary_face(self._detector.detect(image), "registering")
            if face is None:
                raise NoDetectionError("No face detected in the enrollment image")
            _checkpoint(cancel, "align")
            aligned = align_face(image, face.landmarks, self._alignment_output_size)
            _checkpoint(cancel, "extract")
            feature = self._recognizer.extract_feature(aligned)
            _checkpoint(cancel, "store")
            record = FaceRecord(
                face_id=uuid.uuid4().hex,
                person_id=person_id,
                name=name,
                feature=feature,
                remark=remark or "",
                register_time=int(time.time() * 1000),
            )
            self._store.insert(record)
            logger.info("Registered face %s (name=%s, person_id=%s)", record.face_id, name, person_id)
            return record

        return self._capture("register", run)

    def recognize(
        self,
        source: NDArray[np.uint8] | bytes | str,
        threshold: float | None = None,
        top_k: int | None = None,
        cancel: threading.Event | None = None,
    ) -> Outcome[Recognition]:
        """Match the most confident face in ``source`` against stored faces.

        An image without faces yields an empty ``Recognition``, not an error.
        """
        min_similarity = self._similarity_threshold if threshold is None else threshold
        k = top_k or self._top_k

        def run() -> Recognition:
            _checkpoint(cancel, "decode")
            image = self._to_image(source)
            _checkpoint(cancel, "detect")
            face = self._primary_face(self._detector.detect(image), "recognizing")
            if face is None:
                return Recognition(face=None, matches=[])
            _checkpoint(cancel, "align")
            aligned = align_face(image, face.landmarks, self._alignment_output_size)
            _checkpoint(cancel, "extract")
            feature = self._recognizer.extract_feature(aligned)
            _checkpoint(cancel, "search")
            matches = filter_matches(self._store.search(feature, k), min_similarity)
            logger.info("Recognition found %d matches (threshold=%.2f)", len(matches), min_similarity)
            return Recognition(face=face, matches=matches)

        return self._capture("recognize", run)

    # -- Administration -------------------------------------------------------

    def delete_face(self, face_id: str) -> Outcome[None]:
        return self._capture("delete_face", lambda: self._store.delete_face(face_id))

    def delete_person(self, person_id: str) -> Outcome[None]:
        return self._capture("delete_person", lambda: self._store.delete_person(person_id))

    def query_by_person(self, person_id: str) -> Outcome[list[FaceRecord]]:
        return self._capture("query", lambda: self._store.query_by_person(person_id))

    def query_by_name(self, name: str) -> Outcome[list[FaceRecord]]:
        return self._capture("query", lambda: self._store.query_by_name(name))

    def list_faces(self, limit: int = 100) -> Outcome[list[FaceRecord]]:
        return self._capture("query", lambda: self._store.list_faces(limit))

    def reset(self) -> Outcome[None]:
        return self._capture("reset", self._store.reset)

    # -- Internal -------------------------------------------------------------

    def _to_image(self, source: NDArray[np.uint8] | bytes | str) -> NDArray[np.uint8]:
        if isinstance(source, np.ndarray):
            return source
        if isinstance(source, str):
            return decode_base64_image(source, self._max_image_pixels)
        return decode_image(source, self._max_image_pixels)

    @staticmethod
    def _primary_face(faces: list[DetectionCandidate], action: str) -> DetectionCandidate | None:
        if not faces:
            logger.info("No face detected while %s", action)
            return None
        if len(faces) > 1:
            logger.warning("Detected %d faces while %s, using the most confident", len(faces), action)
        return faces[0]

    @staticmethod
    def _capture(stage: str, func: Callable[[], T]) -> Outcome[T]:
        try:
            return Outcome.success(func())
        except FaceMatchError as exc:
            logger.warning("Stage '%s' failed: %s", stage, exc)
            return Outcome.failure(exc)
