"""Point prompts and the ordered prompt accumulator."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

import numpy as np

from .errors import PreconditionViolation


class Polarity(enum.IntEnum):
    """Prompt label passed to the decoder: 1 includes a region, 0 excludes it."""

    NEGATIVE = 0
    POSITIVE = 1

    @classmethod
    def coerce(cls, value: Any) -> "Polarity":
        if isinstance(value, Polarity):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"positive", "pos", "include", "1", "true"}:
                return cls.POSITIVE
            if lowered in {"negative", "neg", "exclude", "0", "false"}:
                return cls.NEGATIVE
            raise ValueError(f"unknown polarity {value!r}")
        if isinstance(value, bool):
            return cls.POSITIVE if value else cls.NEGATIVE
        return cls(int(value))


def _clamp_unit(value: float) -> float:
    value = float(value)
    if not np.isfinite(value):
        raise ValueError("prompt coordinates must be finite")
    return min(max(value, 0.0), 1.0)


@dataclass(frozen=True)
class PointPrompt:
    """A click in image-fraction coordinates (0..1 on both axes)."""

    x: float
    y: float
    polarity: Polarity = Polarity.POSITIVE

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", _clamp_unit(self.x))
        object.__setattr__(self, "y", _clamp_unit(self.y))
        object.__setattr__(self, "polarity", Polarity.coerce(self.polarity))

    @property
    def label(self) -> int:
        return int(self.polarity)

    def to_protocol(self) -> dict[str, Any]:
        return {"point": [self.x, self.y], "label": self.label}

    @classmethod
    def from_protocol(cls, payload: Any) -> "PointPrompt":
        try:
            x, y = payload["point"]
            label = payload["label"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed point payload: {payload!r}") from exc
        return cls(float(x), float(y), Polarity.coerce(label))


class PromptAccumulator:
    """Ordered click history for the current image.

    Multi-mask mode switches on with the second prompt. A hover preview holds
    a single transient prompt that the next preview or click replaces; once a
    click is committed, previews are refused until the history is cleared.
    """

    def __init__(self) -> None:
        self._points: list[PointPrompt] = []
        self._multi_mask = False
        self._transient = False

    def __len__(self) -> int:
        return len(self._points)

    def __bool__(self) -> bool:
        return bool(self._points)

    @property
    def multi_mask(self) -> bool:
        return self._multi_mask

    @property
    def transient(self) -> bool:
        """True while the only prompt is a hover preview."""
        return self._transient

    def add(self, point: PointPrompt) -> None:
        if self._transient:
            self._points = []
            self._transient = False
        self._points.append(point)
        if len(self._points) >= 2:
            self._multi_mask = True

    def replace_latest(self, point: PointPrompt) -> None:
        if self._points and not self._transient:
            raise PreconditionViolation("hover preview is disabled once a point is placed")
        self._points = [point]
        self._transient = True

    def clear(self) -> None:
        self._points = []
        self._multi_mask = False
        self._transient = False

    def snapshot(self) -> tuple[PointPrompt, ...]:
        return tuple(self._points)

    def to_protocol(self) -> list[dict[str, Any]]:
        return [point.to_protocol() for point in self._points]
