"""Model manager: locate, download and load ONNX models.

Models are resolved from the local models directory first and fetched from
the HuggingFace Hub when missing. Sessions are created once at startup and
shared read-only by every request.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import ExecutionMode, GraphOptimizationLevel, InferenceSession, SessionOptions

from facematch.errors import ModelLoadFailureError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from facematch.config import Settings

logger = logging.getLogger(__name__)

Provider = str | tuple[str, dict[str, object]]


class InferenceEngine(Protocol):
    """Black-box forward pass: one input tensor in, named tensors out."""

    def run(self, tensor: NDArray[np.float32]) -> dict[str, NDArray[np.float32]]:
        """Run the model and return outputs keyed by name, in model order."""
        ...


class OnnxEngine:
    """``InferenceEngine`` backed by an onnxruntime session."""

    def __init__(self, name: str, session: InferenceSession) -> None:
        self.name = name
        self._session = session
        self._input_name = session.get_inputs()[0].name
        self._output_names = [output.name for output in session.get_outputs()]

    @property
    def output_names(self) -> list[str]:
        return list(self._output_names)

    def run(self, tensor: NDArray[np.float32]) -> dict[str, NDArray[np.float32]]:
        results = self._session.run(self._output_names, {self._input_name: tensor})
        return dict(zip(self._output_names, results, strict=True))


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    FACE_RECOGNITION = "face_recognition"


@dataclass(frozen=True)
class ModelSpec:
    """Where a model lives on the Hub and what it is for."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    task: ModelTask
    license: str


INSIGHTFACE_REPO = "public-data/insightface"
INSIGHTFACE_LICENSE = "Non-commercial (InsightFace)"


def _insightface_pack(name: str, pack: str, filename: str, task: ModelTask) -> ModelSpec:
    """Spec for a model shipped inside one of the InsightFace ``buffalo_*`` packs."""
    return ModelSpec(
        name=name,
        repo_id=INSIGHTFACE_REPO,
        filename=filename,
        subfolder=f"models/{pack}",
        task=task,
        license=INSIGHTFACE_LICENSE,
    )


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        _insightface_pack("scrfd_10g_kps", "buffalo_l", "det_10g.onnx", ModelTask.FACE_DETECTION),
        _insightface_pack("scrfd_2.5g_kps", "buffalo_m", "det_2.5g.onnx", ModelTask.FACE_DETECTION),
        _insightface_pack("w600k_r50", "buffalo_l", "w600k_r50.onnx", ModelTask.FACE_RECOGNITION),
        ModelSpec(
            name="auraface_v1",
            repo_id="fal/AuraFace-v1",
            filename="glintr100.onnx",
            subfolder=None,
            task=ModelTask.FACE_RECOGNITION,
            license="Apache-2.0",
        ),
    )
}


def build_providers(settings: Settings) -> list[Provider]:
    """Execution providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    options = SessionOptions()
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    options.enable_mem_pattern = True
    options.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself.
        options.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return options


class OnnxModelManager:
    """Resolves model files and creates cached ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._models_dir = Path(settings.models_dir)
        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._resolved: dict[str, Path] = {}

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model path, downloading from HuggingFace if needed.

        Raises:
            ModelLoadFailureError: If the model is unknown or the download fails.
        """
        spec = _lookup(model_name)

        known = self._resolved.get(model_name)
        if known is not None and known.exists():
            return known

        local = next((p for p in self._local_candidates(spec) if p.exists()), None)
        if local is not None:
            logger.info("Using local model %s at %s", model_name, local)
            self._resolved[model_name] = local
            return local

        logger.info("Fetching %s from %s", model_name, spec.repo_id)
        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
            path = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ModelLoadFailureError(f"Could not download model '{model_name}': {exc}") from exc

        logger.info("Stored %s at %s", model_name, path)
        self._resolved[model_name] = path
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the session for ``model_name``, loading it on first use."""
        with self._lock:
            session = self._sessions.get(model_name)
        if session is not None:
            return session

        model_path = self.ensure_downloaded(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:  # noqa: BLE001 - onnxruntime raises pybind-specific types
            raise ModelLoadFailureError(f"Could not load model '{model_name}': {exc}") from exc

        with self._lock:
            # A concurrent caller may have won the race.
            session = self._sessions.setdefault(model_name, session)
        logger.info(
            "Loaded %s (inputs=%s, outputs=%s)",
            model_name,
            [i.name for i in session.get_inputs()],
            [o.name for o in session.get_outputs()],
        )
        return session

    def load_engine(self, model_name: str) -> OnnxEngine:
        """Load ``model_name`` and wrap it as an ``InferenceEngine``."""
        return OnnxEngine(model_name, self.get_session(model_name))

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def shutdown(self) -> None:
        """Drop every loaded session."""
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
        logger.info("Released %d model sessions", count)

    def _local_candidates(self, spec: ModelSpec) -> list[Path]:
        candidates = [self._models_dir / spec.filename]
        if spec.subfolder:
            candidates.append(self._models_dir / spec.subfolder / spec.filename)
        return candidates


def _lookup(model_name: str) -> ModelSpec:
    spec = MODEL_REGISTRY.get(model_name)
    if spec is None:
        raise ModelLoadFailureError(f"Unknown model: {model_name}")
    return spec
