"""API route definitions."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, UploadFile, status

from facematch.api.middleware import verify_api_key
from facematch.api.schemas import (
    DetectedFace,
    ErrorResponse,
    FaceListResponse,
    FaceMatch,
    FaceRecordOut,
    HealthResponse,
    Landmark,
    ModelInfo,
    ModelsResponse,
    OperationResponse,
    RecognizeRequest,
    RecognizeResponse,
    RegisterRequest,
    RegisterResponse,
)
from facematch.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from facematch.config import Settings
    from facematch.ml.face_detector import DetectionCandidate
    from facematch.ml.inference import InferencePool
    from facematch.ml.model_manager import OnnxModelManager
    from facematch.pipeline import FacePipeline, Recognition
    from facematch.store.match_protocol import FaceRecord

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> FacePipeline:
    pipeline: FacePipeline = request.app.state.pipeline
    return pipeline


async def _read_upload(request: Request, file: UploadFile) -> bytes:
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    limit = _get_settings(request).max_file_size
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {limit} byte limit",
        )
    return data


def _face_out(face: DetectionCandidate) -> DetectedFace:
    x1, y1, x2, y2 = face.bbox
    landmarks = [] if face.landmarks is None else [Landmark(x=float(x), y=float(y)) for x, y in face.landmarks]
    return DetectedFace(x1=x1, y1=y1, x2=x2, y2=y2, score=face.score, landmarks=landmarks)


def _record_out(record: FaceRecord) -> FaceRecordOut:
    return FaceRecordOut(
        face_id=record.face_id,
        person_id=record.person_id,
        name=record.name,
        remark=record.remark,
        register_time=record.register_time,
    )


def _recognition_out(recognition: Recognition) -> RecognizeResponse:
    return RecognizeResponse(
        face=_face_out(recognition.face) if recognition.face is not None else None,
        matches=[
            FaceMatch(
                face_id=m.record.face_id,
                person_id=m.record.person_id,
                name=m.record.name,
                remark=m.record.remark,
                similarity=m.similarity,
            )
            for m in recognition.matches
        ],
    )


def _detect_job(pipeline: FacePipeline, data: bytes) -> list[DetectionCandidate]:
    image = pipeline.load_image(data).unwrap()
    return pipeline.detect_faces(image).unwrap()


async def _register(request: Request, source: bytes | str, name: str, person_id: str, remark: str) -> RegisterResponse:
    pipeline = _get_pipeline(request)
    cancel = threading.Event()
    outcome = await _get_inference_pool(request).run(
        pipeline.register, source, name, person_id, remark, cancel, cancel=cancel
    )
    record = outcome.unwrap()
    return RegisterResponse(face_id=record.face_id, person_id=record.person_id, name=record.name)


async def _recognize(
    request: Request, source: bytes | str, threshold: float | None, top_k: int | None
) -> RecognizeResponse:
    pipeline = _get_pipeline(request)
    cancel = threading.Event()
    outcome = await _get_inference_pool(request).run(
        pipeline.recognize, source, threshold, top_k, cancel, cancel=cancel
    )
    return _recognition_out(outcome.unwrap())


@router.post(
    "/detect-faces",
    response_model=list[DetectedFace],
    responses=_ERROR_RESPONSES,
    summary="Detect faces in an image",
)
async def detect_faces(request: Request, file: UploadFile) -> list[DetectedFace]:
    """Detect faces in an uploaded image, highest confidence first."""
    data = await _read_upload(request, file)
    faces = await _get_inference_pool(request).run(_detect_job, _get_pipeline(request), data)
    return [_face_out(face) for face in faces]


@router.post(
    "/faces/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Register a face from a base64 image",
)
async def register_face(request: Request, body: RegisterRequest) -> RegisterResponse:
    return await _register(request, body.image_base64, body.name, body.person_id, body.remark)


@router.post(
    "/faces/register/upload",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Register a face from an uploaded image",
)
async def register_face_upload(
    request: Request,
    file: UploadFile,
    name: Annotated[str, Form(min_length=1, max_length=128)],
    person_id: Annotated[str, Form(min_length=1, max_length=64)],
    remark: Annotated[str, Form(max_length=256)] = "",
) -> RegisterResponse:
    data = await _read_upload(request, file)
    return await _register(request, data, name, person_id, remark)


@router.post(
    "/faces/recognize",
    response_model=RecognizeResponse,
    responses=_ERROR_RESPONSES,
    summary="Recognize a face from a base64 image",
)
async def recognize_face(request: Request, body: RecognizeRequest) -> RecognizeResponse:
    return await _recognize(request, body.image_base64, body.threshold, body.top_k)


@router.post(
    "/faces/recognize/upload",
    response_model=RecognizeResponse,
    responses=_ERROR_RESPONSES,
    summary="Recognize a face from an uploaded image",
)
async def recognize_face_upload(
    request: Request,
    file: UploadFile,
    threshold: Annotated[float | None, Form(ge=0.0, le=1.0)] = None,
    top_k: Annotated[int | None, Form(ge=1, le=100)] = None,
) -> RecognizeResponse:
    data = await _read_upload(request, file)
    return await _recognize(request, data, threshold, top_k)


@router.get(
    "/faces",
    response_model=FaceListResponse,
    responses=_ERROR_RESPONSES,
    summary="List stored faces",
)
async def list_faces(
    request: Request,
    person_id: str | None = None,
    name: str | None = None,
    limit: Annotated[int, Query(ge=1, le=16_384)] = 100,
) -> FaceListResponse:
    """List faces, filtered by person_id or name when given."""
    pipeline = _get_pipeline(request)
    pool = _get_inference_pool(request)
    if person_id:
        outcome = await pool.run(pipeline.query_by_person, person_id)
    elif name:
        outcome = await pool.run(pipeline.query_by_name, name)
    else:
        outcome = await pool.run(pipeline.list_faces, limit)
    return FaceListResponse(faces=[_record_out(r) for r in outcome.unwrap()])


@router.get(
    "/persons/{person_id}/faces",
    response_model=FaceListResponse,
    responses=_ERROR_RESPONSES,
    summary="List the faces of one person",
)
async def person_faces(request: Request, person_id: str) -> FaceListResponse:
    outcome = await _get_inference_pool(request).run(_get_pipeline(request).query_by_person, person_id)
    return FaceListResponse(faces=[_record_out(r) for r in outcome.unwrap()])


@router.delete(
    "/persons/{person_id}/faces",
    response_model=OperationResponse,
    responses=_ERROR_RESPONSES,
    summary="Delete all faces of one person",
)
async def delete_person_faces(request: Request, person_id: str) -> OperationResponse:
    outcome = await _get_inference_pool(request).run(_get_pipeline(request).delete_person, person_id)
    outcome.unwrap()
    return OperationResponse(detail=f"Faces of person {person_id} deleted")


@router.delete(
    "/faces/{face_id}",
    response_model=OperationResponse,
    responses=_ERROR_RESPONSES,
    summary="Delete one face",
)
async def delete_face(request: Request, face_id: str) -> OperationResponse:
    outcome = await _get_inference_pool(request).run(_get_pipeline(request).delete_face, face_id)
    outcome.unwrap()
    return OperationResponse(detail=f"Face {face_id} deleted")


@router.post(
    "/faces/reset",
    response_model=OperationResponse,
    responses=_ERROR_RESPONSES,
    summary="Drop and recreate the face collection",
)
async def reset_faces(request: Request) -> OperationResponse:
    outcome = await _get_inference_pool(request).run(_get_pipeline(request).reset)
    outcome.unwrap()
    return OperationResponse(detail="Face collection reset")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager: OnnxModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and which ones are active."""
    settings = _get_settings(request)
    active_models = {settings.face_detection_model, settings.face_recognition_model}
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status="active" if spec.name in active_models else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
