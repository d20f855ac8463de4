"""Best-mask selection and pixel compositing: overlay, cutout, local-average erase."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from .decoder import DecodeResult
from .errors import PreconditionViolation
from .imaging import encode_png

HIGHLIGHT_COLOR = (0, 114, 189, 153)

# (dy, dx) samples averaged by the eraser
ERASE_OFFSETS = (
    (0, -2),
    (0, -1),
    (0, 1),
    (0, 2),
    (-2, 0),
    (-1, 0),
    (1, 0),
    (2, 0),
)
ERASE_MARGIN = 3


@dataclass(frozen=True, eq=False)
class MaskOverlay:
    width: int
    height: int
    selected: np.ndarray = field(repr=False)
    score: float = 0.0
    index: int = 0

    @property
    def pixel_count(self) -> int:
        return int(np.count_nonzero(self.selected))


def best_mask_index(scores: Sequence[float]) -> int:
    """Index of the highest score; the first one wins ties."""
    arr = np.asarray(scores, dtype=np.float64).reshape(-1)
    if arr.size == 0:
        raise PreconditionViolation("no candidate scores to choose from")
    # np.argmax returns the first occurrence of the maximum
    return int(np.argmax(arr))


def select_overlay(result: DecodeResult) -> MaskOverlay:
    index = best_mask_index(result.scores)
    selected = np.ascontiguousarray(result.masks[index])
    return MaskOverlay(
        width=result.width,
        height=result.height,
        selected=selected,
        score=float(result.scores[index]),
        index=index,
    )


def render_overlay(overlay: MaskOverlay, color: Sequence[int] = HIGHLIGHT_COLOR) -> np.ndarray:
    rgba = np.zeros((overlay.height, overlay.width, 4), dtype=np.uint8)
    rgba[overlay.selected] = np.asarray(color, dtype=np.uint8)
    return rgba


def _check_shape(image: np.ndarray, mask: np.ndarray) -> None:
    if image.shape[:2] != mask.shape[:2]:
        raise PreconditionViolation(
            f"mask shape {mask.shape[:2]} does not match image shape {image.shape[:2]}"
        )


def cutout(image: np.ndarray, overlay: MaskOverlay) -> np.ndarray:
    """Return an RGBA copy of ``image`` that is fully transparent outside the overlay."""
    image = np.asarray(image, dtype=np.uint8)
    _check_shape(image, overlay.selected)
    rgba = np.zeros((*image.shape[:2], 4), dtype=np.uint8)
    selected = overlay.selected
    rgba[selected, :3] = image[selected, :3]
    if image.shape[-1] == 4:
        rgba[selected, 3] = image[selected, 3]
    else:
        rgba[selected, 3] = 255
    return rgba


def export_cutout(image: np.ndarray, overlay: MaskOverlay) -> bytes:
    return encode_png(cutout(image, overlay))


def erase_by_local_average(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Fill masked pixels with the mean of eight axis-aligned neighbours.

    Samples come from the unedited input, so the result does not depend on
    scan order. Pixels closer than three to the border keep their value,
    as does the alpha channel.
    """
    source = np.asarray(image, dtype=np.uint8)
    mask = np.asarray(mask) > 0
    _check_shape(source, mask)
    result = source.copy()
    height, width = mask.shape
    if height <= 2 * ERASE_MARGIN or width <= 2 * ERASE_MARGIN:
        return result

    inner = np.zeros_like(mask)
    inner[ERASE_MARGIN:height - ERASE_MARGIN, ERASE_MARGIN:width - ERASE_MARGIN] = True
    ys, xs = np.nonzero(mask & inner)
    if ys.size == 0:
        return result

    colors = source[..., :3].astype(np.uint32)
    total = np.zeros((ys.size, 3), dtype=np.uint32)
    for dy, dx in ERASE_OFFSETS:
        total += colors[ys + dy, xs + dx]
    result[ys, xs, :3] = np.rint(total / len(ERASE_OFFSETS)).astype(np.uint8)
    return result


def brush_centroid(marked: np.ndarray) -> tuple[float, float]:
    """Centre of the painted pixels of a brush bitmap, as image fractions (x, y)."""
    marked = np.asarray(marked)
    if marked.ndim == 3:
        marked = marked[..., 0]
    ys, xs = np.nonzero(marked > 0)
    if ys.size == 0:
        raise PreconditionViolation("mark an area first")
    height, width = marked.shape
    return float(xs.mean()) / max(width, 1), float(ys.mean()) / max(height, 1)


class UndoHistory:
    """LIFO stack of raster snapshots."""

    def __init__(self) -> None:
        self._stack: list[np.ndarray] = []

    def __len__(self) -> int:
        return len(self._stack)

    def push(self, raster: np.ndarray) -> None:
        self._stack.append(np.array(raster, copy=True))

    def pop(self) -> np.ndarray:
        if not self._stack:
            raise PreconditionViolation("nothing to undo")
        return self._stack.pop()

    def clear(self) -> None:
        self._stack.clear()
