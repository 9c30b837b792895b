"""SCRFD face detection: anchor tables, per-stride decoding and NMS.

The detector runs a single forward pass over a letterboxed canvas and decodes
the ``score_<stride>``, ``bbox_<stride>`` and ``kps_<stride>`` heads into
candidates in original-image coordinates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Protocol

import numpy as np

from facematch.errors import DecodeFailureError
from facematch.ml.preprocessing import letterbox_resize, to_tensor_layout, unmap
from facematch.ml.suppression import DEFAULT_IOU_THRESHOLD, non_max_suppression
from facematch.ml.tensor import Tensor

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from numpy.typing import NDArray

    from facematch.config import Settings
    from facematch.ml.model_manager import InferenceEngine
    from facematch.ml.preprocessing import ResizeContext

logger = logging.getLogger(__name__)

BBox = tuple[float, float, float, float]
ScoreActivation = Literal["auto", "sigmoid", "none"]

DEFAULT_STRIDES: tuple[int, ...] = (8, 16, 32)
NUM_ANCHORS: int = 2
NUM_LANDMARKS: int = 5
ACTIVATION_SAMPLE_SIZE: int = 100


@dataclass(frozen=True)
class DetectionCandidate:
    """A detected face in original-image pixel coordinates."""

    bbox: BBox
    score: float
    landmarks: NDArray[np.float64] | None
    stride: int

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[DetectionCandidate]:
        """Detect faces in an image.

        Args:
            image: HxWx3 BGR uint8 array.

        Returns:
            Detections after NMS, highest score first.
        """
        ...


@dataclass(frozen=True)
class AnchorTable:
    """Anchor centres per stride for a fixed square input size."""

    input_size: int
    num_anchors: int
    centers: Mapping[int, NDArray[np.float32]] = field(repr=False)

    @classmethod
    def build(
        cls,
        input_size: int,
        strides: Sequence[int] = DEFAULT_STRIDES,
        num_anchors: int = NUM_ANCHORS,
    ) -> AnchorTable:
        centers: dict[int, NDArray[np.float32]] = {}
        for stride in strides:
            feature_size = input_size // stride
            # Row-major grid (i = row, j = column); each cell repeats its centre per anchor.
            rows, cols = np.mgrid[:feature_size, :feature_size]
            grid = np.stack(((cols + 0.5) * stride, (rows + 0.5) * stride), axis=-1).reshape(-1, 2)
            table = np.repeat(grid, num_anchors, axis=0).astype(np.float32)
            table.setflags(write=False)
            centers[stride] = table
        return cls(input_size=input_size, num_anchors=num_anchors, centers=centers)

    @property
    def strides(self) -> tuple[int, ...]:
        return tuple(self.centers)

    def feature_size(self, stride: int) -> int:
        return self.input_size // stride


def _sigmoid(values: NDArray[np.float32]) -> NDArray[np.float32]:
    return (1.0 / (1.0 + np.exp(-values.astype(np.float64)))).astype(np.float32)


def needs_sigmoid(scores: NDArray[np.float32], activation: ScoreActivation = "auto") -> bool:
    """Decide whether raw scores are logits.

    ``auto`` inspects the first 100 values and treats the whole array as
    logits if any sample falls outside [0, 1].
    """
    if activation == "sigmoid":
        return True
    if activation == "none":
        return False
    sample = scores[:ACTIVATION_SAMPLE_SIZE]
    return bool(sample.size and (sample.min() < 0.0 or sample.max() > 1.0))


def decode_stride(
    scores: Tensor,
    bboxes: Tensor,
    landmarks: Tensor | None,
    stride: int,
    anchors: AnchorTable,
    ctx: ResizeContext,
    confidence_threshold: float,
    activation: ScoreActivation = "auto",
) -> list[DetectionCandidate]:
    """Decode one stride's heads into candidates in original-image space."""
    centers = anchors.centers[stride]
    input_size = anchors.input_size

    score_flat = scores.flatten()
    bbox_flat = bboxes.flatten()
    kps_flat = landmarks.flatten() if landmarks is not None else None

    feature_size = anchors.feature_size(stride)
    count = min(score_flat.size, feature_size * feature_size * anchors.num_anchors, len(centers))
    # Decoding stops at the first anchor without a full set of box distances.
    count = min(count, bbox_flat.size // 4)

    probs = score_flat[:count]
    if needs_sigmoid(score_flat, activation):
        probs = _sigmoid(probs)

    candidates: list[DetectionCandidate] = []
    for i in np.flatnonzero(probs >= confidence_threshold):
        cx = float(centers[i, 0])
        cy = float(centers[i, 1])
        d0, d1, d2, d3 = (float(v) * stride for v in bbox_flat[i * 4 : i * 4 + 4])
        x1, y1, x2, y2 = cx - d0, cy - d1, cx + d2, cy + d3

        width = x2 - x1
        height = y2 - y1
        if width <= 0 or height <= 0 or width > 2 * input_size or height > 2 * input_size:
            continue

        x1, y1, x2, y2 = (min(max(v, 0.0), float(input_size)) for v in (x1, y1, x2, y2))
        if x2 <= x1 or y2 <= y1:
            # Entirely outside the canvas.
            continue
        ox1, oy1 = unmap(x1, y1, ctx)
        ox2, oy2 = unmap(x2, y2, ctx)

        points = None
        if kps_flat is not None and (i + 1) * NUM_LANDMARKS * 2 <= kps_flat.size:
            offsets = kps_flat[i * 10 : i * 10 + 10].astype(np.float64).reshape(NUM_LANDMARKS, 2)
            points = np.array(
                [unmap(cx + dx * stride, cy + dy * stride, ctx) for dx, dy in offsets],
                dtype=np.float64,
            )

        candidates.append(
            DetectionCandidate(
                bbox=(ox1, oy1, ox2, oy2),
                score=float(probs[i]),
                landmarks=points,
                stride=stride,
            )
        )

    logger.debug("stride=%d: %d anchors scanned, %d candidates", stride, count, len(candidates))
    return candidates


def select_stride_outputs(
    outputs: Mapping[str, NDArray[np.float32]],
    strides: Sequence[int],
) -> dict[int, tuple[Tensor, Tensor, Tensor | None]]:
    """Pick the score/bbox/kps tensors of every stride.

    Outputs are looked up by name first (``score_8``...). Models exported
    without those names are read positionally as
    ``[scores..., bboxes..., kps...]``.
    """
    positional = list(outputs.values())
    n = len(strides)
    selected: dict[int, tuple[Tensor, Tensor, Tensor | None]] = {}

    for idx, stride in enumerate(strides):
        score = outputs.get(f"score_{stride}")
        bbox = outputs.get(f"bbox_{stride}")
        kps = outputs.get(f"kps_{stride}")

        if score is None or bbox is None:
            if len(positional) < idx + n + 1:
                raise DecodeFailureError(
                    f"Detector returned {len(positional)} outputs, cannot locate heads for stride {stride}"
                )
            score = positional[idx]
            bbox = positional[idx + n]
            kps = positional[idx + 2 * n] if len(positional) > idx + 2 * n else None

        selected[stride] = (
            Tensor.from_array(score),
            Tensor.from_array(bbox),
            Tensor.from_array(kps) if kps is not None else None,
        )
    return selected


class ScrfdDetector:
    """Face detector for SCRFD-style ONNX exports with 5-point landmarks."""

    def __init__(
        self,
        engine: InferenceEngine,
        anchors: AnchorTable,
        *,
        model_name: str = "scrfd",
        confidence_threshold: float = 0.5,
        iou_threshold: float = DEFAULT_IOU_THRESHOLD,
        activation: ScoreActivation = "auto",
        mean: Sequence[float] = (127.5, 127.5, 127.5),
        std: Sequence[float] = (128.0, 128.0, 128.0),
        pad_value: int = 114,
    ) -> None:
        self._engine = engine
        self._anchors = anchors
        self._model_name = model_name
        self._confidence_threshold = confidence_threshold
        self._iou_threshold = iou_threshold
        self._activation = activation
        self._mean = tuple(mean)
        self._std = tuple(std)
        self._pad_value = pad_value

    @classmethod
    def from_settings(cls, engine: InferenceEngine, settings: Settings) -> ScrfdDetector:
        anchors = AnchorTable.build(
            settings.detection_input_size,
            strides=settings.detection_strides,
            num_anchors=settings.num_anchors,
        )
        return cls(
            engine,
            anchors,
            model_name=settings.face_detection_model,
            confidence_threshold=settings.detection_confidence,
            iou_threshold=settings.nms_iou_threshold,
            activation=settings.score_activation,
            mean=settings.detection_mean,
            std=settings.detection_std,
            pad_value=settings.letterbox_pad_value,
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def anchors(self) -> AnchorTable:
        return self._anchors

    def decode(
        self,
        outputs: Mapping[str, NDArray[np.float32]],
        ctx: ResizeContext,
    ) -> list[DetectionCandidate]:
        """Decode raw detector outputs into candidates, before NMS."""
        candidates: list[DetectionCandidate] = []
        for stride, (scores, bboxes, kps) in select_stride_outputs(outputs, self._anchors.strides).items():
            candidates.extend(
                decode_stride(
                    scores,
                    bboxes,
                    kps,
                    stride,
                    self._anchors,
                    ctx,
                    self._confidence_threshold,
                    self._activation,
                )
            )
        return candidates

    def detect(self, image: NDArray[np.uint8]) -> list[DetectionCandidate]:
        """Detect faces in a BGR image.

        Returns:
            Candidates after NMS, highest score first. Empty when no face is found.
        """
        canvas, ctx = letterbox_resize(image, self._anchors.input_size, self._pad_value)
        tensor = to_tensor_layout(canvas, self._mean, self._std, normalize=False)
        outputs = self._engine.run(tensor)

        candidates = self.decode(outputs, ctx)
        if not candidates:
            logger.debug("No face candidates above %.2f", self._confidence_threshold)
            return []

        faces = non_max_suppression(candidates, self._iou_threshold)
        logger.debug("%d candidates -> %d faces after NMS", len(candidates), len(faces))
        return faces
