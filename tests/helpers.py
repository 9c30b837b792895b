"""Test doubles shared by the test modules."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

from facematch.errors import TransportFailureError
from facematch.ml.alignment import CANONICAL_TEMPLATE
from facematch.ml.face_detector import DetectionCandidate
from facematch.store.match_protocol import FaceRecord, MatchResult

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facematch.ml.alignment import AlignedFace


class FakeEngine:
    """Inference engine returning canned outputs and recording its inputs."""

    def __init__(self, outputs: dict[str, NDArray[np.float32]]) -> None:
        self.outputs = outputs
        self.inputs: list[NDArray[np.float32]] = []

    def run(self, tensor: NDArray[np.float32]) -> dict[str, NDArray[np.float32]]:
        self.inputs.append(tensor)
        return self.outputs


class FakeDetector:
    model_name = "fake_detector"

    def __init__(self, faces: list[DetectionCandidate] | None = None) -> None:
        self.faces = faces or []
        self.calls = 0

    def detect(self, image: NDArray[np.uint8]) -> list[DetectionCandidate]:
        self.calls += 1
        return list(self.faces)


class FakeRecognizer:
    model_name = "fake_recognizer"

    def __init__(self, feature: NDArray[np.float32]) -> None:
        self.feature = feature
        self.faces: list[AlignedFace] = []

    @property
    def embedding_dim(self) -> int:
        return int(self.feature.size)

    def extract_feature(self, face: AlignedFace) -> NDArray[np.float32]:
        self.faces.append(face)
        return self.feature


class InMemoryStore:
    """VectorStore keeping records in a dict, ranking by cosine score."""

    def __init__(self, fail: bool = False) -> None:
        self.records: dict[str, FaceRecord] = {}
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise TransportFailureError("store unavailable")

    def insert(self, record: FaceRecord) -> None:
        self._check()
        self.records[record.face_id] = record

    def search(self, feature: NDArray[np.float32], top_k: int) -> list[MatchResult]:
        self._check()
        scored = [
            MatchResult(record=r, similarity=(float(np.dot(r.feature, feature)) + 1.0) / 2.0)
            for r in self.records.values()
            if r.feature is not None
        ]
        scored.sort(key=lambda m: m.similarity, reverse=True)
        return scored[:top_k]

    def delete_face(self, face_id: str) -> None:
        self._check()
        self.records.pop(face_id, None)

    def delete_person(self, person_id: str) -> None:
        self._check()
        self.records = {k: r for k, r in self.records.items() if r.person_id != person_id}

    def query_by_person(self, person_id: str) -> list[FaceRecord]:
        self._check()
        return [r for r in self.records.values() if r.person_id == person_id]

    def query_by_name(self, name: str) -> list[FaceRecord]:
        self._check()
        return [r for r in self.records.values() if r.name == name]

    def list_faces(self, limit: int) -> list[FaceRecord]:
        self._check()
        return list(self.records.values())[:limit]

    def reset(self) -> None:
        self._check()
        self.records.clear()

    def close(self) -> None:
        pass


def unit(values: list[float]) -> NDArray[np.float32]:
    arr = np.asarray(values, dtype=np.float64)
    return (arr / np.linalg.norm(arr)).astype(np.float32)


def template_face(offset: tuple[float, float] = (100.0, 80.0), score: float = 0.9) -> DetectionCandidate:
    """A candidate whose landmarks are the canonical template, shifted."""
    landmarks = CANONICAL_TEMPLATE + np.asarray(offset)
    x, y = offset
    return DetectionCandidate(bbox=(x + 20, y + 30, x + 92, y + 110), score=score, landmarks=landmarks, stride=16)


def png_bytes(width: int = 320, height: int = 240, value: int = 128) -> bytes:
    image = np.full((height, width, 3), value, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()
