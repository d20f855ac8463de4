"""Turns an embedding plus a prompt snapshot into candidate masks and scores."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from .errors import InferenceError, ModelUnavailable, PreconditionViolation
from .inference import Embedding, InferenceService
from .prompts import PointPrompt


@dataclass(frozen=True, eq=False)
class DecodeResult:
    masks: np.ndarray = field(repr=False)
    scores: np.ndarray

    def __post_init__(self) -> None:
        masks = np.asarray(self.masks)
        if masks.ndim == 2:
            masks = masks[None]
        if masks.ndim != 3:
            raise InferenceError(f"expected (candidates, H, W) masks, got shape {masks.shape}")
        scores = np.asarray(self.scores, dtype=np.float32).reshape(-1)
        if masks.shape[0] != scores.shape[0]:
            raise InferenceError(
                f"decoder returned {masks.shape[0]} masks but {scores.shape[0]} scores"
            )
        object.__setattr__(self, "masks", np.ascontiguousarray(masks > 0))
        object.__setattr__(self, "scores", scores)

    @property
    def count(self) -> int:
        return int(self.scores.shape[0])

    @property
    def height(self) -> int:
        return int(self.masks.shape[1])

    @property
    def width(self) -> int:
        return int(self.masks.shape[2])


def prompt_arrays(
    prompts: Sequence[PointPrompt],
    reshaped_size: tuple[int, int],
) -> tuple[np.ndarray, np.ndarray]:
    """Scale normalised prompts to the model input grid and split out labels."""
    height, width = reshaped_size
    points = np.asarray([[p.x * width, p.y * height] for p in prompts], dtype=np.float32)
    labels = np.asarray([p.label for p in prompts], dtype=np.int64)
    return points.reshape(-1, 2), labels


class DecodeInvoker:
    def __init__(self, service: InferenceService) -> None:
        self._service = service

    def decode(
        self,
        embedding: Optional[Embedding],
        prompts: Sequence[PointPrompt],
    ) -> DecodeResult:
        if embedding is None:
            raise PreconditionViolation("no embedding to decode against")
        if not prompts:
            raise PreconditionViolation("decode needs at least one point")
        points, labels = prompt_arrays(prompts, embedding.reshaped_size)
        try:
            masks, scores = self._service.decode(embedding, points, labels)
        except (InferenceError, ModelUnavailable):
            raise
        except Exception as exc:
            raise InferenceError(f"decode failed: {exc}") from exc
        return DecodeResult(masks=masks, scores=scores)
