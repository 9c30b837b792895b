"""Greedy non-maximum suppression over detection candidates."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from facematch.ml.face_detector import BBox, DetectionCandidate

DEFAULT_IOU_THRESHOLD: float = 0.4


def iou(box_a: BBox, box_b: BBox) -> float:
    """Intersection over union of two (x1, y1, x2, y2) boxes."""
    x1 = max(box_a[0], box_b[0])
    y1 = max(box_a[1], box_b[1])
    x2 = min(box_a[2], box_b[2])
    y2 = min(box_a[3], box_b[3])

    intersection = max(0.0, x2 - x1) * max(0.0, y2 - y1)
    area_a = (box_a[2] - box_a[0]) * (box_a[3] - box_a[1])
    area_b = (box_b[2] - box_b[0]) * (box_b[3] - box_b[1])
    union = area_a + area_b - intersection
    return intersection / union if union > 0 else 0.0


def non_max_suppression(
    candidates: Sequence[DetectionCandidate],
    iou_threshold: float = DEFAULT_IOU_THRESHOLD,
) -> list[DetectionCandidate]:
    """Keep the highest-scoring candidate of every overlapping cluster.

    Ties keep their input order. The result is ordered by descending score.
    """
    ordered = sorted(candidates, key=lambda c: c.score, reverse=True)
    suppressed = [False] * len(ordered)
    keep: list[DetectionCandidate] = []

    for i, current in enumerate(ordered):
        if suppressed[i]:
            continue
        keep.append(current)
        for j in range(i + 1, len(ordered)):
            if not suppressed[j] and iou(current.bbox, ordered[j].bbox) > iou_threshold:
                suppressed[j] = True

    return keep
