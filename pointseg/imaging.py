"""Image decoding, normalization and PNG encoding helpers."""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import numpy as np
from imageio import v2 as imageio

ImageSource = Union[np.ndarray, bytes, bytearray, str, Path]

SUPPORTED_IMAGE_EXTS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".tif",
    ".tiff",
    ".bmp",
    ".gif",
    ".webp",
}


@dataclass(frozen=True, eq=False)
class ImageHandle:
    """An 8-bit HxWx3 or HxWx4 raster plus a content key identifying it."""

    pixels: np.ndarray = field(repr=False)
    key: str

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def size(self) -> tuple[int, int]:
        return self.height, self.width

    @property
    def has_alpha(self) -> bool:
        return self.pixels.shape[-1] == 4


def _ensure_spatial_last(array: np.ndarray) -> np.ndarray:
    if array.ndim == 3 and array.shape[0] in (1, 3, 4) and array.shape[-1] not in (1, 3, 4):
        return np.moveaxis(array, 0, -1)
    return array


def _normalize_uint8(array: np.ndarray) -> np.ndarray:
    array = np.asarray(array)
    if array.dtype == np.uint8:
        return array
    if array.dtype == np.bool_:
        return array.astype(np.uint8) * 255
    array = array.astype(np.float32)
    array -= array.min()
    maxv = array.max()
    if maxv > 0:
        array /= maxv
    array = np.clip(array * 255.0, 0, 255).astype(np.uint8)
    return array


def _to_color(array: np.ndarray) -> np.ndarray:
    if array.ndim == 2:
        return np.repeat(array[..., None], 3, axis=-1)
    if array.ndim != 3:
        raise ValueError(f"expected a 2D or 3D image, got shape {array.shape}")
    channels = array.shape[-1]
    if channels == 1:
        return np.repeat(array, 3, axis=-1)
    if channels == 2:
        # promote 2-channel images to 3 for PNG compatibility
        rgb = np.zeros((*array.shape[:-1], 3), dtype=array.dtype)
        rgb[..., :2] = array
        return rgb
    if channels > 4:
        return array[..., :3]
    return array


def _read_bytes(data: bytes) -> np.ndarray:
    return imageio.imread(io.BytesIO(data))


def decode_data_url(url: str) -> bytes:
    """Return the payload of a ``data:`` URL (base64 or percent-free plain text)."""
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:"):
        raise ValueError("not a data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid base64 payload: {exc}") from exc
    return payload.encode("latin-1")


def load_image(source: ImageSource) -> np.ndarray:
    """Load ``source`` as a contiguous ``uint8`` HxWx3 or HxWx4 array.

    ``source`` may be an array, raw encoded bytes, a ``data:`` URL or a file path.
    """
    if isinstance(source, np.ndarray):
        arr = source
    elif isinstance(source, (bytes, bytearray)):
        arr = _read_bytes(bytes(source))
    elif isinstance(source, str) and source.startswith("data:"):
        arr = _read_bytes(decode_data_url(source))
    else:
        path = Path(source).expanduser()
        if not path.is_file():
            raise FileNotFoundError(path)
        arr = imageio.imread(path)
    arr = _ensure_spatial_last(np.asarray(arr))
    arr = _normalize_uint8(arr)
    arr = _to_color(arr)
    return np.ascontiguousarray(arr, dtype=np.uint8)


def image_key(pixels: np.ndarray) -> str:
    digest = hashlib.sha1()
    digest.update(repr(pixels.shape).encode("ascii"))
    digest.update(np.ascontiguousarray(pixels).tobytes())
    return digest.hexdigest()


def make_handle(source: ImageSource) -> ImageHandle:
    pixels = np.array(load_image(source), copy=True)
    pixels.setflags(write=False)
    return ImageHandle(pixels=pixels, key=image_key(pixels))


def encode_png(array: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    imageio.imwrite(buffer, np.ascontiguousarray(array), format="png")
    return buffer.getvalue()


def encode_data_url(array: np.ndarray) -> str:
    data = base64.b64encode(encode_png(array)).decode("ascii")
    return f"data:image/png;base64,{data}"
