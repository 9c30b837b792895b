"""Pydantic request/response schemas for the FaceMatch API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Landmark(BaseModel):
    """One facial keypoint in original-image pixels."""

    x: float
    y: float


class DetectedFace(BaseModel):
    """A single detected face with bounding box, score and landmarks."""

    x1: float = Field(description="Left edge in pixels")
    y1: float = Field(description="Top edge in pixels")
    x2: float = Field(description="Right edge in pixels")
    y2: float = Field(description="Bottom edge in pixels")
    score: float = Field(description="Detection confidence (0.0-1.0)")
    landmarks: list[Landmark] = Field(
        default_factory=list,
        description="Left eye, right eye, nose tip, left and right mouth corner",
    )


class RegisterRequest(BaseModel):
    """Enroll a face from a base64-encoded image."""

    name: str = Field(min_length=1, max_length=128)
    person_id: str = Field(min_length=1, max_length=64)
    image_base64: str = Field(min_length=1)
    remark: str = Field(default="", max_length=256)


class RegisterResponse(BaseModel):
    face_id: str
    person_id: str
    name: str


class RecognizeRequest(BaseModel):
    """Recognize a face from a base64-encoded image."""

    image_base64: str = Field(min_length=1)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int | None = Field(default=None, ge=1, le=100)


class FaceMatch(BaseModel):
    """A stored face that matched the query."""

    face_id: str
    person_id: str
    name: str
    remark: str
    similarity: float = Field(description="Similarity (0.0-1.0), higher is closer")


class RecognizeResponse(BaseModel):
    face: DetectedFace | None = None
    matches: list[FaceMatch]


class FaceRecordOut(BaseModel):
    """A stored face without its feature vector."""

    face_id: str
    person_id: str
    name: str
    remark: str
    register_time: int = Field(description="Enrollment time, epoch milliseconds")


class FaceListResponse(BaseModel):
    faces: list[FaceRecordOut]


class OperationResponse(BaseModel):
    success: bool = True
    detail: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'face_detection' or 'face_recognition'")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
