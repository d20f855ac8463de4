"""Model inference service contract and the SAM implementation backed by transformers."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import numpy as np

from .errors import InferenceError, ModelUnavailable
from .logger import append_session_log, setup_logger

inference_logger = setup_logger('inference')


@dataclass(frozen=True, eq=False)
class Embedding:
    """Opaque image embedding, valid only for the image whose key it carries."""

    image_key: str
    original_size: tuple[int, int]
    reshaped_size: tuple[int, int]
    tensors: Any = field(default=None, repr=False)

    @property
    def reshaped_height(self) -> int:
        return int(self.reshaped_size[0])

    @property
    def reshaped_width(self) -> int:
        return int(self.reshaped_size[1])


@runtime_checkable
class InferenceService(Protocol):
    def load(self) -> None:
        ...

    def embed(self, image: np.ndarray, image_key: str) -> Embedding:
        ...

    def decode(
        self,
        embedding: Embedding,
        points: np.ndarray,
        labels: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        ...


def pick_device(requested: Optional[str] = None) -> str:
    """Return ``requested`` or the best available torch device."""
    import torch

    if requested:
        return requested
    if torch.cuda.is_available():
        return "cuda"
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return "mps"
    return "cpu"


class SamInferenceService:
    """Segment Anything encoder/decoder pair loaded from the Hugging Face hub.

    ``load`` is idempotent and single-flight: concurrent callers block on one
    initialisation, and a failed initialisation can be retried by calling
    ``load`` again.
    """

    def __init__(self, model_id: str, device: Optional[str] = None) -> None:
        self.model_id = model_id
        self._requested_device = device
        self._device: Optional[str] = None
        self._model = None
        self._processor = None
        self._load_lock = threading.Lock()
        self._eval_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None and self._processor is not None

    @property
    def device(self) -> Optional[str]:
        return self._device

    def load(self) -> None:
        if self.loaded:
            return
        with self._load_lock:
            if self.loaded:
                return
            try:
                # local import to avoid startup cost
                from transformers import SamModel, SamProcessor

                device = pick_device(self._requested_device)
                inference_logger.info(f"loading {self.model_id} on {device}")
                processor = SamProcessor.from_pretrained(self.model_id)
                model = SamModel.from_pretrained(self.model_id).to(device)
                model.eval()
            except Exception as exc:
                append_session_log(f"[inference] load failed: {exc}")
                raise ModelUnavailable(f"could not load {self.model_id}: {exc}") from exc
            self._processor = processor
            self._model = model
            self._device = device
            append_session_log(f"[inference] loaded {self.model_id} on {device}")

    def _require_loaded(self) -> None:
        if not self.loaded:
            raise ModelUnavailable("inference service is not loaded")

    def embed(self, image: np.ndarray, image_key: str) -> Embedding:
        self._require_loaded()
        import torch

        rgb = np.ascontiguousarray(np.asarray(image)[..., :3])
        try:
            with self._eval_lock, torch.no_grad():
                inputs = self._processor(images=rgb, return_tensors="pt")
                pixel_values = inputs["pixel_values"].to(self._device)
                image_embeddings = self._model.get_image_embeddings(pixel_values)
        except Exception as exc:
            raise InferenceError(f"embedding failed: {exc}") from exc
        original_sizes = inputs["original_sizes"].cpu()
        reshaped_sizes = inputs["reshaped_input_sizes"].cpu()
        original = tuple(int(v) for v in original_sizes[0].tolist())
        reshaped = tuple(int(v) for v in reshaped_sizes[0].tolist())
        return Embedding(
            image_key=image_key,
            original_size=original,
            reshaped_size=reshaped,
            tensors={
                "image_embeddings": image_embeddings,
                "original_sizes": original_sizes,
                "reshaped_input_sizes": reshaped_sizes,
            },
        )

    def decode(
        self,
        embedding: Embedding,
        points: np.ndarray,
        labels: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        self._require_loaded()
        import torch

        tensors = embedding.tensors or {}
        count = int(points.shape[0])
        try:
            input_points = torch.as_tensor(points, dtype=torch.float32).reshape(1, 1, count, 2)
            input_labels = torch.as_tensor(labels, dtype=torch.int64).reshape(1, 1, count)
            with self._eval_lock, torch.no_grad():
                outputs = self._model(
                    image_embeddings=tensors["image_embeddings"],
                    input_points=input_points.to(self._device),
                    input_labels=input_labels.to(self._device),
                    multimask_output=True,
                )
            masks = self._processor.image_processor.post_process_masks(
                outputs.pred_masks.cpu(),
                tensors["original_sizes"],
                tensors["reshaped_input_sizes"],
            )
        except Exception as exc:
            raise InferenceError(f"decode failed: {exc}") from exc
        # first image, first prompt batch -> (candidates, H, W)
        candidates = np.asarray(masks[0][0].numpy(), dtype=bool)
        scores = outputs.iou_scores[0, 0].detach().cpu().numpy().astype(np.float32)
        return candidates, scores
