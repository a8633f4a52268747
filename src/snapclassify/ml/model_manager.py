"""Model manager: download, load, and cache the pretrained ONNX classifier.

Handles downloading model and label files from HuggingFace, creating the ONNX
InferenceSession once, and wrapping it in an immutable ``ClassifierModel``
handle that is shared read-only by every request.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from snapclassify.errors import InferenceError, ModelLoadError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snapclassify.config import Settings
    from snapclassify.ml.preprocessing import ModelInputBuffer

logger = logging.getLogger(__name__)

_SYNSET_PREFIX = re.compile(r"^n\d{8}\s+")

# Placeholder repo: operators publish the ONNX model-zoo files and synset.txt
# here, point SNAPCLASSIFY_MODEL_REPO_ID at their own copy, or drop the files
# into models_dir.
DEFAULT_MODEL_REPO = "snapclassify/imagenet-models"


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class TensorLayout(StrEnum):
    NCHW = "NCHW"
    NHWC = "NHWC"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    input_size: int
    layout: TensorLayout
    scale: float
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    outputs_logits: bool
    license: str


_IMAGENET_MEAN = (0.485, 0.456, 0.406)
_IMAGENET_STD = (0.229, 0.224, 0.225)

MODEL_REGISTRY: dict[str, ModelSpec] = {
    "resnet50_v1": ModelSpec(
        name="resnet50_v1",
        repo_id=DEFAULT_MODEL_REPO,
        filename="resnet50-v1-7.onnx",
        labels_filename="synset.txt",
        subfolder=None,
        input_size=224,
        layout=TensorLayout.NCHW,
        scale=1 / 255,
        mean=_IMAGENET_MEAN,
        std=_IMAGENET_STD,
        outputs_logits=True,
        license="Apache-2.0",
    ),
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id=DEFAULT_MODEL_REPO,
        filename="mobilenetv2-12.onnx",
        labels_filename="synset.txt",
        subfolder=None,
        input_size=224,
        layout=TensorLayout.NCHW,
        scale=1 / 255,
        mean=_IMAGENET_MEAN,
        std=_IMAGENET_STD,
        outputs_logits=True,
        license="Apache-2.0",
    ),
    "efficientnet_lite4": ModelSpec(
        name="efficientnet_lite4",
        repo_id=DEFAULT_MODEL_REPO,
        filename="efficientnet-lite4-11.onnx",
        labels_filename="synset.txt",
        subfolder=None,
        input_size=224,
        layout=TensorLayout.NHWC,
        scale=1.0,
        mean=(127.0, 127.0, 127.0),
        std=(128.0, 128.0, 128.0),
        outputs_logits=False,
        license="Apache-2.0",
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise ModelLoadError(f"Unknown model: {model_name}") from None


def read_labels(path: Path) -> list[str]:
    """Read one label per line, dropping a leading WordNet id such as ``n01440764``."""
    labels = []
    for line in path.read_text(encoding="utf-8").splitlines():
        label = _SYNSET_PREFIX.sub("", line.strip())
        if label:
            labels.append(label)
    if not labels:
        raise ModelLoadError(f"Label file {path} is empty")
    return labels


def softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(scores - np.max(scores))
    return shifted / shifted.sum()


# ---------------------------------------------------------------------------
# Model handle
# ---------------------------------------------------------------------------


class ClassifierModel:
    """A loaded classifier: an ONNX session plus its label list.

    Instances are never mutated after construction, so one handle can serve
    sequential requests from any thread.
    """

    def __init__(self, spec: ModelSpec, session: InferenceSession, labels: list[str]) -> None:
        self._spec = spec
        self._session = session
        self._labels = tuple(labels)
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def input_size(self) -> tuple[int, int]:
        return self._spec.input_size, self._spec.input_size

    def predict(self, buffer: ModelInputBuffer) -> tuple[str, dict[str, float]]:
        """Run one forward pass.

        Args:
            buffer: Normalized input whose size matches ``input_size``.

        Returns:
            The top label and a label -> probability mapping over all classes.

        Raises:
            InferenceError: If the buffer does not fit the model or the runtime fails.
        """
        if (buffer.width, buffer.height) != self.input_size:
            raise InferenceError(
                f"Model {self.model_name} expects {self.input_size[0]}x{self.input_size[1]} input, "
                f"got {buffer.width}x{buffer.height}"
            )

        tensor = self._to_tensor(buffer)
        try:
            outputs = self._session.run(None, {self._input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Inference failed for {self.model_name}: {exc}") from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size != len(self._labels):
            raise InferenceError(f"Model returned {scores.size} scores for {len(self._labels)} labels")

        probabilities = softmax(scores) if self._spec.outputs_logits else scores
        top = int(np.argmax(probabilities))

        # Some ImageNet labels repeat ("crane"); keep the highest score per label.
        label_probs: dict[str, float] = {}
        for label, probability in zip(self._labels, probabilities.tolist(), strict=True):
            if probability > label_probs.get(label, -1.0):
                label_probs[label] = probability
        return self._labels[top], label_probs

    def _to_tensor(self, buffer: ModelInputBuffer) -> NDArray[np.float32]:
        spec = self._spec
        pixels = buffer.rgb().astype(np.float32) * spec.scale
        pixels = (pixels - np.asarray(spec.mean, dtype=np.float32)) / np.asarray(spec.std, dtype=np.float32)
        if spec.layout is TensorLayout.NCHW:
            pixels = np.transpose(pixels, (2, 0, 1))
        return np.expand_dims(pixels, axis=0).astype(np.float32)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads model artifacts and loads each classifier at most once."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._models: dict[str, ClassifierModel] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, downloading it from HuggingFace if missing.

        Raises:
            ModelLoadError: If the model is unknown or the file cannot be fetched.
        """
        spec = get_spec(model_name)

        cached = self._model_paths.get(model_name)
        if cached is not None and cached.exists():
            return cached

        path = self._fetch(spec, spec.filename)
        self._model_paths[model_name] = path
        return path

    def load(self, model_name: str) -> ClassifierModel:
        """Return the cached classifier, loading it on first use.

        Raises:
            ModelLoadError: If the model is unknown or any artifact fails to load.
        """
        with self._lock:
            cached = self._models.get(model_name)
            if cached is not None:
                return cached

        try:
            model = self._create_model(get_spec(model_name))
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model '{model_name}': {exc}") from exc

        with self._lock:
            # Double-check: another thread may have loaded it meanwhile.
            existing = self._models.get(model_name)
            if existing is not None:
                return existing
            self._models[model_name] = model
            logger.info("Loaded %s (%d labels)", model_name, len(model.labels))
            return model

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._models.keys())

    def shutdown(self) -> None:
        """Drop all loaded models."""
        with self._lock:
            self._models.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _create_model(self, spec: ModelSpec) -> ClassifierModel:
        model_path = self.ensure_downloaded(spec.name)
        labels = read_labels(self._fetch(spec, spec.labels_filename))
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        self._log_providers(spec.name, session.get_providers())

        num_classes = session.get_outputs()[0].shape[-1]
        if isinstance(num_classes, int) and num_classes != len(labels):
            raise ModelLoadError(f"Model {spec.name} has {num_classes} outputs but {len(labels)} labels")
        return ClassifierModel(spec, session, labels)

    def _fetch(self, spec: ModelSpec, filename: str) -> Path:
        """Return a model artifact from models_dir, downloading it only when absent."""
        local = self._models_dir / spec.subfolder / filename if spec.subfolder else self._models_dir / filename
        if local.is_file():
            logger.debug("Using local %s", local)
            return local

        repo_id = self._settings.model_repo_id or spec.repo_id
        try:
            path = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelLoadError(
                f"Cannot fetch {filename} from {repo_id}: {exc}. "
                f"Place it in {self._models_dir} or set SNAPCLASSIFY_MODEL_REPO_ID"
            ) from exc
        logger.info("Downloaded %s from %s to %s", filename, repo_id, path)
        return path

    def _log_providers(self, model_name: str, active: list[str]) -> None:
        preferred = self._provider_names[0]
        logger.info("Session for %s uses %s", model_name, active)
        if preferred not in active:
            logger.warning(
                "%s is unavailable for device=%s; %s falls back to %s",
                preferred,
                self._settings.device,
                model_name,
                active,
            )

    @property
    def _provider_names(self) -> list[str]:
        return [p if isinstance(p, str) else p[0] for p in self._providers]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        """Execution providers in preference order; CPU always comes last."""
        providers: list[str | tuple[str, dict[str, object]]] = []
        if self._settings.device == "cuda":
            cuda_options: dict[str, object] = {
                "device_id": 0,
                "gpu_mem_limit": self._settings.gpu_mem_limit,
                "arena_extend_strategy": "kSameAsRequested",
            }
            providers.append(("CUDAExecutionProvider", cuda_options))
        elif self._settings.device == "openvino":
            providers.append(("OpenVINOExecutionProvider", {"device_type": "CPU"}))
        providers.append("CPUExecutionProvider")
        return providers

    def _build_session_options(self) -> SessionOptions:
        # One image per request: run graph nodes sequentially and reuse buffers.
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        opts.graph_optimization_level = (
            GraphOptimizationLevel.ORT_DISABLE_ALL
            if self._settings.device == "openvino"
            else GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        return opts


def load_model_or_none(manager: OnnxModelManager, model_name: str) -> ClassifierModel | None:
    """Load the startup model; on failure log it and leave the handle unset."""
    try:
        return manager.load(model_name)
    except ModelLoadError:
        logger.exception("Model %s could not be loaded; classification disabled", model_name)
        return None
