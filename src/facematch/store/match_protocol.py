"""Records, match results and the contract of the external vector store."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


class MetricType(StrEnum):
    COSINE = "COSINE"
    IP = "IP"
    L2 = "L2"


@dataclass(frozen=True)
class FaceRecord:
    """One enrolled face. ``feature`` is None on records read back by query."""

    face_id: str
    person_id: str
    name: str
    feature: NDArray[np.float32] | None = None
    remark: str = ""
    register_time: int = 0


@dataclass(frozen=True)
class MatchResult:
    """A stored face returned by a similarity search."""

    record: FaceRecord
    similarity: float


def score_to_similarity(score: float, metric: MetricType) -> float:
    """Convert a raw vector-store score into a similarity where larger is closer.

    COSINE scores in [-1, 1] map to [0, 1]; IP is returned as-is (vectors are
    unit-normalized); L2 distances map through ``1 / (1 + d)``.
    """
    if metric is MetricType.COSINE:
        return (score + 1.0) / 2.0
    if metric is MetricType.IP:
        return score
    if metric is MetricType.L2:
        return 1.0 / (1.0 + score)
    raise ValueError(f"Unsupported metric: {metric}")


def filter_matches(matches: list[MatchResult], threshold: float) -> list[MatchResult]:
    """Drop matches below ``threshold``, keeping the store's ranking."""
    return [m for m in matches if m.similarity >= threshold]


class VectorStore(Protocol):
    """Request/response contract used by the pipeline.

    Implementations surface any remote failure as ``TransportFailureError``
    and never retry.
    """

    def insert(self, record: FaceRecord) -> None: ...

    def search(self, feature: NDArray[np.float32], top_k: int) -> list[MatchResult]: ...

    def delete_face(self, face_id: str) -> None: ...

    def delete_person(self, person_id: str) -> None: ...

    def query_by_person(self, person_id: str) -> list[FaceRecord]: ...

    def query_by_name(self, name: str) -> list[FaceRecord]: ...

    def list_faces(self, limit: int) -> list[FaceRecord]: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...
