"""Runtime settings for pointseg, read from ``POINTSEG_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

DEFAULT_MODEL_ID = "Zigeng/SlimSAM-uniform-77"
DEFAULT_LOG_FILE = Path.home() / ".pointseg" / "logs" / "session.log"


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_path(name: str, default: Optional[Path]) -> Optional[Path]:
    value = os.environ.get(name)
    if value is None:
        return default
    value = value.strip()
    if not value or value.lower() in {"none", "off"}:
        return None
    return Path(value).expanduser()


@dataclass(frozen=True)
class Settings:
    model_id: str = DEFAULT_MODEL_ID
    device: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[Path] = DEFAULT_LOG_FILE
    job_timeout: float = 120.0
    host: str = "0.0.0.0"
    port: int = 8000

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-``None`` override applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


def load_settings() -> Settings:
    device = os.environ.get("POINTSEG_DEVICE") or None
    return Settings(
        model_id=os.environ.get("POINTSEG_MODEL_ID") or DEFAULT_MODEL_ID,
        device=device.strip().lower() if device else None,
        log_level=(os.environ.get("POINTSEG_LOG_LEVEL") or "INFO").upper(),
        log_file=_env_path("POINTSEG_LOG_FILE", DEFAULT_LOG_FILE),
        job_timeout=_env_float("POINTSEG_JOB_TIMEOUT", 120.0),
        host=os.environ.get("POINTSEG_HOST") or "0.0.0.0",
        port=_env_int("POINTSEG_PORT", 8000),
    )
