"""Error taxonomy for the detection-to-match pipeline."""

from __future__ import annotations


class FaceMatchError(Exception):
    """Base class for every failure raised by FaceMatch."""


class InvalidInputError(FaceMatchError, ValueError):
    """Bad caller input: landmark count, feature dimension, zero-norm vector."""


class DecodeFailureError(FaceMatchError, ValueError):
    """Image bytes could not be decoded, or a model returned an unexpected shape."""


class NoDetectionError(FaceMatchError, LookupError):
    """No face survived detection where one is required (enrollment)."""


class TransportFailureError(FaceMatchError, RuntimeError):
    """The vector store was unreachable or rejected the request."""


class ModelLoadFailureError(FaceMatchError, RuntimeError):
    """An ONNX model could not be downloaded or loaded."""


class StageCancelledError(FaceMatchError):
    """The request was cancelled before the next pipeline stage started."""
