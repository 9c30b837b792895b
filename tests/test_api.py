"""Tests for the FaceMatch HTTP API."""

from __future__ import annotations

import base64
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI, status
from helpers import FakeDetector, FakeRecognizer, InMemoryStore, png_bytes, template_face, unit

from facematch.api.middleware import status_for_error
from facematch.config import get_settings
from facematch.errors import (
    DecodeFailureError,
    FaceMatchError,
    InvalidInputError,
    NoDetectionError,
    StageCancelledError,
    TransportFailureError,
)
from facematch.main import create_app
from facematch.ml.inference import InferencePool
from facematch.ml.model_manager import OnnxModelManager
from facematch.pipeline import FacePipeline
from facematch.store.match_protocol import FaceRecord


def _init_app_state(
    app: FastAPI,
    detector: FakeDetector,
    store: InMemoryStore,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = OnnxModelManager(settings)
    app.state.pipeline = FacePipeline.from_settings(
        detector, FakeRecognizer(unit([1.0, 0.0, 0.0, 0.0])), store, settings
    )


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def detector() -> FakeDetector:
    return FakeDetector([template_face()])


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def app(detector: FakeDetector, store: InMemoryStore) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, detector, store)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


def _upload(data: bytes | None = None) -> dict[str, tuple[str, bytes, str]]:
    return {"file": ("face.png", png_bytes() if data is None else data, "image/png")}


def _record(face_id: str, person_id: str, name: str, values: list[float]) -> FaceRecord:
    return FaceRecord(face_id=face_id, person_id=person_id, name=name, feature=unit(values), register_time=7)


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == []
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self, detector: FakeDetector, store: InMemoryStore) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, detector, store, FACEMATCH_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestModelsEndpoint:
    async def test_lists_registry_with_active_flags(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = {m["name"]: m for m in response.json()["models"]}
        assert models["scrfd_10g_kps"]["status"] == "active"
        assert models["w600k_r50"]["status"] == "active"
        assert models["auraface_v1"]["status"] == "available"
        assert models["scrfd_10g_kps"]["task"] == "face_detection"


class TestAuthentication:
    async def test_no_key_configured_allows_all(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_key_required(self, detector: FakeDetector, store: InMemoryStore) -> None:
        auth_app = create_app()
        _init_app_state(auth_app, detector, store, FACEMATCH_API_KEY="secret")
        async for ac in _make_client(auth_app):
            missing = await ac.get("/api/v1/health")
            wrong = await ac.get("/api/v1/health", headers={"Authorization": "Bearer nope"})
            right = await ac.get("/api/v1/health", headers={"Authorization": "Bearer secret"})

            assert missing.status_code == status.HTTP_401_UNAUTHORIZED
            assert missing.headers["www-authenticate"] == "Bearer"
            assert wrong.status_code == status.HTTP_401_UNAUTHORIZED
            assert right.status_code == status.HTTP_200_OK


class TestDetectFacesEndpoint:
    async def test_returns_faces_with_landmarks(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/detect-faces", files=_upload())

        assert response.status_code == status.HTTP_200_OK
        faces = response.json()
        assert len(faces) == 1
        assert faces[0]["score"] == pytest.approx(0.9)
        assert len(faces[0]["landmarks"]) == 5

    async def test_no_faces_is_empty_list(self, client: httpx.AsyncClient, detector: FakeDetector) -> None:
        detector.faces = []
        response = await client.post("/api/v1/detect-faces", files=_upload())
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == []

    async def test_undecodable_image(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/detect-faces", files=_upload(b"garbage"))
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_empty_upload(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/detect-faces", files=_upload(b""))
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "Uploaded file is empty"

    async def test_oversized_upload(self, detector: FakeDetector, store: InMemoryStore) -> None:
        small_app = create_app()
        _init_app_state(small_app, detector, store, FACEMATCH_MAX_FILE_SIZE="100")
        async for ac in _make_client(small_app):
            response = await ac.post("/api/v1/detect-faces", files=_upload())
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_missing_file(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/detect-faces")
        assert response.status_code == 422


class TestRegisterEndpoints:
    async def test_register_upload(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        response = await client.post(
            "/api/v1/faces/register/upload",
            files=_upload(),
            data={"name": "Ada", "person_id": "p1", "remark": "front"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        body = response.json()
        assert body["name"] == "Ada"
        assert body["person_id"] == "p1"
        assert store.records[body["face_id"]].remark == "front"

    async def test_register_base64(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        payload = {
            "name": "Ada",
            "person_id": "p1",
            "image_base64": base64.b64encode(png_bytes()).decode(),
        }
        response = await client.post("/api/v1/faces/register", json=payload)

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["face_id"] in store.records

    async def test_register_without_face(self, client: httpx.AsyncClient, detector: FakeDetector) -> None:
        detector.faces = []
        response = await client.post(
            "/api/v1/faces/register/upload", files=_upload(), data={"name": "Ada", "person_id": "p1"}
        )
        assert response.status_code == 422
        assert "No face" in response.json()["detail"]

    async def test_register_store_unavailable(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        store.fail = True
        response = await client.post(
            "/api/v1/faces/register/upload", files=_upload(), data={"name": "Ada", "person_id": "p1"}
        )
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

    async def test_register_requires_name(self, client: httpx.AsyncClient) -> None:
        payload = {"name": "", "person_id": "p1", "image_base64": "abc"}
        response = await client.post("/api/v1/faces/register", json=payload)
        assert response.status_code == 422


class TestRecognizeEndpoints:
    async def test_recognize_upload(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        store.insert(_record("f1", "p1", "Ada", [1.0, 0.0, 0.0, 0.0]))
        store.insert(_record("f2", "p2", "Bob", [0.0, 1.0, 0.0, 0.0]))

        response = await client.post("/api/v1/faces/recognize/upload", files=_upload())

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["face"] is not None
        assert [m["face_id"] for m in body["matches"]] == ["f1"]
        assert body["matches"][0]["similarity"] == pytest.approx(1.0)

    async def test_recognize_base64_with_threshold(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        store.insert(_record("f2", "p2", "Bob", [0.0, 1.0, 0.0, 0.0]))
        payload = {"image_base64": base64.b64encode(png_bytes()).decode(), "threshold": 0.5}

        response = await client.post("/api/v1/faces/recognize", json=payload)

        assert response.status_code == status.HTTP_200_OK
        assert [m["name"] for m in response.json()["matches"]] == ["Bob"]

    async def test_recognize_without_face(self, client: httpx.AsyncClient, detector: FakeDetector) -> None:
        detector.faces = []
        response = await client.post("/api/v1/faces/recognize/upload", files=_upload())

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"face": None, "matches": []}

    async def test_invalid_base64(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/faces/recognize", json={"image_base64": "%%%"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestFaceAdministration:
    @pytest.fixture(autouse=True)
    def _seed(self, store: InMemoryStore) -> None:
        store.insert(_record("f1", "p1", "Ada", [1.0, 0.0, 0.0, 0.0]))
        store.insert(_record("f2", "p1", "Ada", [0.9, 0.1, 0.0, 0.0]))
        store.insert(_record("f3", "p2", "Bob", [0.0, 1.0, 0.0, 0.0]))

    async def test_list_faces(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/faces", params={"limit": 2})
        assert response.status_code == status.HTTP_200_OK
        faces = response.json()["faces"]
        assert len(faces) == 2
        assert "feature" not in faces[0]
        assert faces[0]["register_time"] == 7

    async def test_list_by_name(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/faces", params={"name": "Bob"})
        assert [f["face_id"] for f in response.json()["faces"]] == ["f3"]

    async def test_person_faces(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/persons/p1/faces")
        assert {f["face_id"] for f in response.json()["faces"]} == {"f1", "f2"}

    async def test_delete_face(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        response = await client.delete("/api/v1/faces/f1")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is True
        assert "f1" not in store.records

    async def test_delete_person(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        response = await client.delete("/api/v1/persons/p1/faces")
        assert response.status_code == status.HTTP_200_OK
        assert set(store.records) == {"f3"}

    async def test_reset(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        response = await client.post("/api/v1/faces/reset")
        assert response.status_code == status.HTTP_200_OK
        assert store.records == {}

    async def test_store_unavailable(self, client: httpx.AsyncClient, store: InMemoryStore) -> None:
        store.fail = True
        response = await client.get("/api/v1/faces")
        assert response.status_code == status.HTTP_502_BAD_GATEWAY


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (InvalidInputError("x"), 422),
            (DecodeFailureError("x"), 400),
            (NoDetectionError("x"), 422),
            (TransportFailureError("x"), 502),
            (StageCancelledError("x"), 499),
            (FaceMatchError("x"), 500),
        ],
    )
    def test_status_for_error(self, error: FaceMatchError, code: int) -> None:
        assert status_for_error(error) == code
