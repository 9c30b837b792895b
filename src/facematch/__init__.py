"""FaceMatch: face detection, alignment and recognition service."""

__version__ = "0.1.0"
