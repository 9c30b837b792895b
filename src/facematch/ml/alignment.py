"""Five-point face alignment onto the ArcFace reference template."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from facematch.errors import InvalidInputError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

TEMPLATE_SIZE: int = 112

# Eye centres, nose tip and mouth corners in a 112x112 crop.
CANONICAL_TEMPLATE: NDArray[np.float64] = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float64,
)
CANONICAL_TEMPLATE.setflags(write=False)


@dataclass(frozen=True)
class SimilarityTransform:
    """Rotation + uniform scale + translation, as a 2x3 affine matrix."""

    matrix: NDArray[np.float64]
    scale: float
    theta: float

    @property
    def translation(self) -> tuple[float, float]:
        return float(self.matrix[0, 2]), float(self.matrix[1, 2])

    def apply(self, points: ArrayLike) -> NDArray[np.float64]:
        """Transform an (N, 2) array of points."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return pts @ self.matrix[:, :2].T + self.matrix[:, 2]


@dataclass(frozen=True)
class AlignedFace:
    """Normalized face crop and the transform that produced it."""

    image: NDArray[np.uint8]
    transform: SimilarityTransform

    @property
    def size(self) -> int:
        return int(self.image.shape[0])


def template_for_size(output_size: int) -> NDArray[np.float64]:
    """Return the canonical template scaled to an ``output_size`` square crop."""
    if output_size == TEMPLATE_SIZE:
        return CANONICAL_TEMPLATE
    return CANONICAL_TEMPLATE * (output_size / TEMPLATE_SIZE)


def _as_points(points: ArrayLike, label: str) -> NDArray[np.float64]:
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim != 2 or arr.shape != (5, 2):
        count = arr.shape[0] if arr.ndim >= 1 else 0
        raise InvalidInputError(f"{label} must contain exactly 5 (x, y) points, got {count}")
    return arr


def estimate_similarity_transform(src: ArrayLike, dst: ArrayLike = CANONICAL_TEMPLATE) -> SimilarityTransform:
    """Least-squares similarity transform mapping ``src`` points onto ``dst``.

    Closed form over centred point sets: the rotation angle is
    ``atan2(sumB, sumA)`` and the scale ``hypot(sumA, sumB) / (n * srcVar)``.
    The translation is chosen so the source centroid lands on the
    destination centroid. All arithmetic is float64.

    Raises:
        InvalidInputError: If either set is not five points, or the source
            points all coincide.
    """
    src_pts = _as_points(src, "Source landmarks")
    dst_pts = _as_points(dst, "Destination landmarks")
    n = src_pts.shape[0]

    src_center = src_pts.mean(axis=0)
    dst_center = dst_pts.mean(axis=0)
    src_c = src_pts - src_center
    dst_c = dst_pts - dst_center

    src_var = float(np.sum(src_c**2)) / n
    if src_var <= 0.0:
        raise InvalidInputError("Source landmarks are degenerate (zero variance)")

    sum_a = float(np.sum(dst_c[:, 0] * src_c[:, 0] + dst_c[:, 1] * src_c[:, 1]))
    sum_b = float(np.sum(dst_c[:, 1] * src_c[:, 0] - dst_c[:, 0] * src_c[:, 1]))

    scale = math.sqrt(sum_a * sum_a + sum_b * sum_b) / (src_var * n)
    theta = math.atan2(sum_b, sum_a)
    cos_t = math.cos(theta)
    sin_t = math.sin(theta)

    m00 = scale * cos_t
    m01 = -scale * sin_t
    m10 = scale * sin_t
    m11 = scale * cos_t
    tx = dst_center[0] - m00 * src_center[0] - m01 * src_center[1]
    ty = dst_center[1] - m10 * src_center[0] - m11 * src_center[1]

    matrix = np.array([[m00, m01, tx], [m10, m11, ty]], dtype=np.float64)
    return SimilarityTransform(matrix=matrix, scale=scale, theta=theta)


def align_face(
    image: NDArray[np.uint8],
    landmarks: ArrayLike | None,
    output_size: int = TEMPLATE_SIZE,
) -> AlignedFace:
    """Warp ``image`` so the five ``landmarks`` land on the canonical template.

    Raises:
        InvalidInputError: If ``landmarks`` is missing or not five points.
    """
    if landmarks is None:
        raise InvalidInputError("Face has no landmarks, cannot align")

    transform = estimate_similarity_transform(landmarks, template_for_size(output_size))
    aligned = cv2.warpAffine(
        image,
        transform.matrix,
        (output_size, output_size),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )
    logger.debug("Aligned face (scale=%.4f, theta=%.4f)", transform.scale, transform.theta)
    return AlignedFace(image=aligned, transform=transform)
