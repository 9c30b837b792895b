"""Environment-based configuration for FaceMatch."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from facematch.store.match_protocol import MetricType


class Settings(BaseSettings):
    """Application settings loaded from FACEMATCH_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEMATCH_",
        case_sensitive=False,
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    models_dir: str = "models"
    face_detection_model: str = "scrfd_10g_kps"
    face_recognition_model: str = "w600k_r50"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=4, ge=0)
    inter_op_threads: int = Field(default=4, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=10_485_760, ge=1)

    # Detection
    detection_input_size: int = Field(default=640, ge=32)
    detection_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    nms_iou_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    detection_strides: tuple[int, ...] = (8, 16, 32)
    num_anchors: int = Field(default=2, ge=1)
    score_activation: Literal["auto", "sigmoid", "none"] = "auto"
    detection_mean: tuple[float, float, float] = (127.5, 127.5, 127.5)
    detection_std: tuple[float, float, float] = (128.0, 128.0, 128.0)
    letterbox_pad_value: int = Field(default=114, ge=0, le=255)

    # Alignment / recognition
    alignment_output_size: int = Field(default=112, ge=16)
    recognition_mean: tuple[float, float, float] = (127.5, 127.5, 127.5)
    recognition_std: tuple[float, float, float] = (128.0, 128.0, 128.0)
    embedding_dim: int = Field(default=512, ge=1)

    # Matching
    similarity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    top_k: int = Field(default=5, ge=1)

    # Milvus
    milvus_host: str = "localhost"
    milvus_port: int = 19530
    milvus_user: str = "root"
    milvus_password: str = "Milvus"
    milvus_collection: str = "face_vectors"
    milvus_metric: MetricType = MetricType.COSINE
    milvus_index_type: str = "IVF_FLAT"
    milvus_nlist: int = Field(default=1024, ge=1)
    milvus_nprobe: int = Field(default=10, ge=1)
    milvus_timeout: float = Field(default=10.0, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
