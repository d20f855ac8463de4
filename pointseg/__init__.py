"""Point-prompted interactive image segmentation.

This package provides a Segment Anything session engine (embed once, decode
per click) with a background job worker, mask compositing helpers for
overlays, cutouts and object erasing, and a FastAPI server around it.

Usage:
    # Run as web server
    python -m pointseg --port 8000

    # Or from Python
    from pointseg import SegmentSession, SamInferenceService
    session = SegmentSession(SamInferenceService("Zigeng/SlimSAM-uniform-77"))
    session.load_image("photo.png")
    session.wait()
    session.add_point(0.5, 0.5)
    session.wait()
"""

from .errors import (
    PointsegError,
    ModelUnavailable,
    InferenceError,
    ProtocolViolation,
    PreconditionViolation,
    StaleResult,
)
from .config import Settings, load_settings
from .prompts import Polarity, PointPrompt, PromptAccumulator
from .inference import Embedding, InferenceService, SamInferenceService
from .embedding import EmbeddingCache
from .decoder import DecodeInvoker, DecodeResult
from .compositor import MaskOverlay, UndoHistory, best_mask_index, erase_by_local_average
from .worker import ClientMessage, JobWorker, WorkerMessage
from .session import SegmentSession, SessionManager, SessionState, SessionStatus
from .app import create_app, run_server
from .cli import main, parse_args

__version__ = "0.1.0"

__all__ = [
    # Errors
    "PointsegError",
    "ModelUnavailable",
    "InferenceError",
    "ProtocolViolation",
    "PreconditionViolation",
    "StaleResult",
    # Configuration
    "Settings",
    "load_settings",
    # Prompts and inference
    "Polarity",
    "PointPrompt",
    "PromptAccumulator",
    "Embedding",
    "InferenceService",
    "SamInferenceService",
    "EmbeddingCache",
    "DecodeInvoker",
    "DecodeResult",
    # Compositing
    "MaskOverlay",
    "UndoHistory",
    "best_mask_index",
    "erase_by_local_average",
    # Worker and session
    "ClientMessage",
    "JobWorker",
    "WorkerMessage",
    "SegmentSession",
    "SessionManager",
    "SessionState",
    "SessionStatus",
    # App and CLI
    "create_app",
    "run_server",
    "main",
    "parse_args",
]
