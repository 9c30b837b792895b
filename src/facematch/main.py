"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from facematch.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facematch import __version__
from facematch.api.middleware import register_error_handlers
from facematch.api.routes import router
from facematch.config import get_settings
from facematch.ml.face_detector import ScrfdDetector
from facematch.ml.face_recognizer import ArcFaceRecognizer
from facematch.ml.inference import InferencePool
from facematch.ml.model_manager import OnnxModelManager
from facematch.pipeline import FacePipeline
from facematch.store.milvus_store import MilvusVectorStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def build_pipeline(settings: Settings, models: OnnxModelManager) -> tuple[FacePipeline, MilvusVectorStore]:
    """Load both models and connect the vector store.

    Any ``ModelLoadFailureError`` or ``TransportFailureError`` raised here
    aborts startup.
    """
    detector = ScrfdDetector.from_settings(models.load_engine(settings.face_detection_model), settings)
    recognizer = ArcFaceRecognizer.from_settings(models.load_engine(settings.face_recognition_model), settings)

    store = MilvusVectorStore(settings)
    store.ensure_collection()
    return FacePipeline.from_settings(detector, recognizer, store, settings), store


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger.info(
        "FaceMatch %s starting on %s (detector=%s, recognizer=%s, collection=%s, slots=%d)",
        __version__,
        settings.device,
        settings.face_detection_model,
        settings.face_recognition_model,
        settings.milvus_collection,
        settings.max_concurrent,
    )

    models = OnnxModelManager(settings)
    pipeline, store = build_pipeline(settings, models)
    pool = InferencePool(settings)

    app.state.settings = settings
    app.state.model_manager = models
    app.state.pipeline = pipeline
    app.state.inference_pool = pool
    logger.info("FaceMatch ready")

    yield

    pool.shutdown()
    store.close()
    models.shutdown()
    logger.info("FaceMatch stopped")


def create_app() -> FastAPI:
    """Build the FastAPI application; state is filled in by ``lifespan``."""
    application = FastAPI(
        title="FaceMatch",
        description="Face enrollment and recognition over ONNX models and Milvus",
        version=__version__,
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()
