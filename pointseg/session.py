"""Interactive segmentation session: state machine over the job worker."""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

from . import compositor
from .decoder import DecodeResult
from .errors import ModelUnavailable, PreconditionViolation, ProtocolViolation
from .imaging import ImageHandle, ImageSource, make_handle
from .inference import Embedding, InferenceService
from .logger import append_session_log, setup_logger
from .prompts import Polarity, PointPrompt, PromptAccumulator
from .worker import (
    DECODE,
    DECODE_RESULT,
    ERROR,
    PHASE_DONE,
    READY,
    SEGMENT,
    SEGMENT_RESULT,
    ClientMessage,
    JobWorker,
    WorkerMessage,
)

session_logger = setup_logger('session')


class SessionState(str, enum.Enum):
    IDLE = "idle"
    ENCODING = "encoding"
    ENCODED = "encoded"
    DECODING = "decoding"
    ERROR = "error"


@dataclass(frozen=True)
class SessionStatus:
    """Read-only view of a session for rendering layers."""

    state: SessionState
    message: str
    error_message: Optional[str]
    prompt_count: int
    multi_mask: bool
    score: Optional[float]
    model_ready: bool
    can_undo: bool
    width: Optional[int]
    height: Optional[int]
    version: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "message": self.message,
            "errorMessage": self.error_message,
            "promptCount": self.prompt_count,
            "multiMask": self.multi_mask,
            "score": self.score,
            "modelReady": self.model_ready,
            "canUndo": self.can_undo,
            "width": self.width,
            "height": self.height,
            "version": self.version,
        }


class SegmentSession:
    """One image, its embedding, the clicks on it and the resulting mask.

    All methods must be called from a single controlling thread. Model work
    is handed to a :class:`JobWorker`; results are applied when the controller
    calls :meth:`process_messages` or :meth:`wait`.

    Points added while a decode is running are kept, and once that decode
    returns a single follow-up decode runs on the prompts as they are then.
    """

    def __init__(
        self,
        service: InferenceService,
        *,
        worker: Optional[JobWorker] = None,
        worker_factory: Optional[Callable[[InferenceService], JobWorker]] = None,
    ) -> None:
        self._service = service
        self._worker_factory = worker_factory or JobWorker
        self._worker = worker if worker is not None else self._worker_factory(service)
        self._worker.start()

        self.state = SessionState.IDLE
        self.image: Optional[ImageHandle] = None
        self.embedding: Optional[Embedding] = None
        self.prompts = PromptAccumulator()
        self.last_result: Optional[DecodeResult] = None
        self.overlay: Optional[compositor.MaskOverlay] = None
        self.history = compositor.UndoHistory()
        self.error_message: Optional[str] = None
        self.message = "Ready"
        self.version = 0
        self.model_ready = False
        self._model_unavailable = False
        self._decode_dirty = False
        self._erase_pending = False
        self._prompt_epoch = 0
        self._inflight_epoch = 0
        # bumped for every worker failure applied to this session
        self.error_count = 0
        self.last_error_kind: Optional[str] = None

    # ------------------------------------------------------------------ views

    @property
    def worker(self) -> JobWorker:
        return self._worker

    @property
    def multi_mask(self) -> bool:
        return self.prompts.multi_mask

    @property
    def original_size(self) -> Optional[tuple[int, int]]:
        return self.embedding.original_size if self.embedding is not None else None

    @property
    def reshaped_size(self) -> Optional[tuple[int, int]]:
        return self.embedding.reshaped_size if self.embedding is not None else None

    @property
    def last_masks(self) -> Optional[np.ndarray]:
        return self.last_result.masks if self.last_result is not None else None

    @property
    def last_scores(self) -> Optional[np.ndarray]:
        return self.last_result.scores if self.last_result is not None else None

    @property
    def model_unavailable(self) -> bool:
        return self._model_unavailable

    @property
    def busy(self) -> bool:
        return self.state in (SessionState.ENCODING, SessionState.DECODING)

    @property
    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self.state,
            message=self.message,
            error_message=self.error_message,
            prompt_count=len(self.prompts),
            multi_mask=self.prompts.multi_mask,
            score=self.overlay.score if self.overlay is not None else None,
            model_ready=self.model_ready,
            can_undo=len(self.history) > 0,
            width=self.image.width if self.image is not None else None,
            height=self.image.height if self.image is not None else None,
            version=self.version,
        )

    def render_overlay(self) -> Optional[np.ndarray]:
        if self.overlay is None:
            return None
        return compositor.render_overlay(self.overlay)

    # ------------------------------------------------------------- user input

    def load_image(self, source: ImageSource) -> None:
        self._check_model()
        handle = source if isinstance(source, ImageHandle) else make_handle(source)
        if (
            self.state == SessionState.ENCODING
            and self.image is not None
            and self.image.key == handle.key
        ):
            # already being embedded
            return
        self.history.clear()
        self._begin_image(handle)

    def add_point(self, x: float, y: float, polarity: Any = Polarity.POSITIVE) -> None:
        self._check_model()
        point = PointPrompt(x, y, Polarity.coerce(polarity))
        if self.state == SessionState.ENCODED:
            self.prompts.add(point)
            self._start_decode()
        elif self.state == SessionState.DECODING:
            self.prompts.add(point)
            self._decode_dirty = True
        else:
            raise PreconditionViolation(f"cannot add points while {self.state.value}")

    def preview_point(self, x: float, y: float) -> None:
        """Hover preview: decode a single transient point."""
        self._check_model()
        point = PointPrompt(x, y, Polarity.POSITIVE)
        if self.state == SessionState.ENCODED:
            self.prompts.replace_latest(point)
            self._start_decode()
        elif self.state == SessionState.DECODING:
            self.prompts.replace_latest(point)
            self._decode_dirty = True
        else:
            raise PreconditionViolation(f"cannot preview points while {self.state.value}")

    def decode(self) -> None:
        """Request a decode of the current prompts."""
        self._check_model()
        if self.state != SessionState.ENCODED:
            raise PreconditionViolation(f"decode requires an encoded image, session is {self.state.value}")
        if self.embedding is None:
            raise PreconditionViolation("no embedding to decode against")
        if not self.prompts:
            raise PreconditionViolation("decode needs at least one point")
        self._start_decode()

    def clear_points(self) -> None:
        self.prompts.clear()
        self._prompt_epoch += 1
        self._decode_dirty = False
        self._erase_pending = False
        self.last_result = None
        self.overlay = None

    def reset(self) -> None:
        self.version += 1
        self.clear_points()
        self.history.clear()
        self.image = None
        self.embedding = None
        self.error_message = None
        self._model_unavailable = False
        self.state = SessionState.IDLE
        self.message = "Ready"
        if self._worker.terminated or not self._worker.alive:
            session_logger.warning("restarting background worker")
            self._worker.stop(timeout=0)
            self._worker = self._worker_factory(self._service)
            self._worker.start()
            self.model_ready = False
        else:
            self._worker.send(ClientMessage.reset(self.version))
        append_session_log(f"[session] reset -> v{self.version}")

    def export_cutout(self) -> bytes:
        if self.overlay is None or self.image is None:
            raise PreconditionViolation("no mask selected to cut out")
        return compositor.export_cutout(self.image.pixels, self.overlay)

    def erase_marked_area(self, marked: Optional[np.ndarray] = None) -> None:
        """Erase the selected object from the image.

        Without ``marked`` the current overlay is erased right away. With a
        brush bitmap the object under the centre of the painted pixels is
        decoded first and erased when that decode completes.
        """
        if marked is None:
            if self.state != SessionState.ENCODED:
                raise PreconditionViolation(f"cannot erase while {self.state.value}")
            if self.overlay is None:
                raise PreconditionViolation("no mask selected to erase")
            self._apply_erase(self.overlay.selected)
            return
        self._check_model()
        if self.state != SessionState.ENCODED or self.image is None:
            raise PreconditionViolation(f"cannot erase while {self.state.value}")
        marked = np.asarray(marked)
        if marked.shape[:2] != self.image.size:
            raise PreconditionViolation(
                f"brush shape {marked.shape[:2]} does not match image shape {self.image.size}"
            )
        x, y = compositor.brush_centroid(marked)
        self.clear_points()
        self.prompts.add(PointPrompt(x, y, Polarity.POSITIVE))
        self._erase_pending = True
        self.message = "Processing..."
        self._start_decode()

    def undo(self) -> None:
        pixels = self.history.pop()
        self._begin_image(make_handle(pixels))
        append_session_log(f"[session] undo -> v{self.version} ({len(self.history)} left)")

    # ---------------------------------------------------------- worker results

    def process_messages(self, timeout: float = 0.0) -> int:
        """Apply any finished worker results; wait up to ``timeout`` for the first one."""
        handled = 0
        message = self._worker.poll(timeout)
        while message is not None:
            self._apply(message)
            handled += 1
            message = self._worker.poll(0)
        return handled

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Apply results until no encode/decode is outstanding; ``False`` on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        self.process_messages(0)
        while self.busy:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            message = self._worker.poll(remaining)
            if message is None:
                if self._worker.terminated:
                    break
                continue
            self._apply(message)
        self.process_messages(0)
        return not self.busy

    def close(self) -> None:
        self._worker.stop()

    def __enter__(self) -> "SegmentSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # --------------------------------------------------------------- internals

    def _check_model(self) -> None:
        if self._model_unavailable:
            raise ModelUnavailable(self.error_message or "segmentation model unavailable; reset to retry")

    def _send(self, message: ClientMessage) -> None:
        try:
            self._worker.send(message)
        except ProtocolViolation as exc:
            self.state = SessionState.ERROR
            self.error_message = str(exc)
            self.message = "Background worker stopped; reset to restart it"
            raise

    def _begin_image(self, handle: ImageHandle) -> None:
        self.version += 1
        self.clear_points()
        self.embedding = None
        self.error_message = None
        self.image = handle
        self.state = SessionState.ENCODING
        self.message = "Extracting image embedding..."
        append_session_log(f"[session] encode {handle.key[:12]} {handle.width}x{handle.height} v{self.version}")
        self._send(ClientMessage.segment(handle, self.version))

    def _start_decode(self) -> None:
        self.state = SessionState.DECODING
        self._decode_dirty = False
        self._inflight_epoch = self._prompt_epoch
        self._send(ClientMessage.decode(self.prompts.to_protocol(), self.version))

    def _finish_decode(self) -> None:
        if self._decode_dirty and self.prompts and self.embedding is not None:
            self._start_decode()
        else:
            self._decode_dirty = False
            self.state = SessionState.ENCODED

    def _apply_erase(self, mask: np.ndarray) -> None:
        if self.image is None:
            raise PreconditionViolation("no image loaded")
        edited = compositor.erase_by_local_average(self.image.pixels, mask)
        self.history.push(self.image.pixels)
        self._begin_image(make_handle(edited))

    def _apply(self, message: WorkerMessage) -> None:
        if message.kind == READY:
            self.model_ready = True
            if self.state == SessionState.IDLE:
                self.message = "Ready"
            session_logger.info("inference service ready")
            return
        if message.kind == ERROR:
            self._apply_error(message)
            return
        if message.version != self.version:
            session_logger.info(f"discarding stale {message.kind} for v{message.version} (live v{self.version})")
            return
        if message.kind == SEGMENT_RESULT:
            self._apply_segment(message)
        elif message.kind == DECODE_RESULT:
            self._apply_decode(message)

    def _apply_segment(self, message: WorkerMessage) -> None:
        if self.state != SessionState.ENCODING:
            return
        if message.phase != PHASE_DONE:
            self.message = "Extracting image embedding..."
            return
        embedding = message.embedding
        if embedding is None or self.image is None or embedding.image_key != self.image.key:
            session_logger.warning("embedding does not belong to the live image; discarding")
            return
        self.embedding = embedding
        self.state = SessionState.ENCODED
        self.message = "Embedding extracted!"

    def _apply_decode(self, message: WorkerMessage) -> None:
        if self.state != SessionState.DECODING:
            return
        result = message.result
        if self._inflight_epoch != self._prompt_epoch or result is None:
            # prompts were cleared while this decode was running
            self._finish_decode()
            return
        overlay = compositor.select_overlay(result)
        self.last_result = result
        self.overlay = overlay
        self.error_message = None
        self.message = f"Segment score: {overlay.score:.2f}"
        if self._erase_pending:
            self._erase_pending = False
            self._apply_erase(overlay.selected)
            self.message = "Processing complete. Mark another area to erase."
            return
        self._finish_decode()

    def _apply_error(self, message: WorkerMessage) -> None:
        kind = message.error_kind
        text = message.error_message or "unknown error"
        if kind == ProtocolViolation.kind:
            # the worker thread is gone whatever version it was serving
            self.last_error_kind = kind
            self.error_count += 1
            self.state = SessionState.ERROR
            self.error_message = text
            self.message = "Background worker stopped; reset to restart it"
            session_logger.error(f"worker terminated: {text}")
            return
        if message.version != self.version:
            session_logger.info(f"discarding stale {kind} for v{message.version}")
            return
        self.last_error_kind = kind
        if kind == ModelUnavailable.kind:
            self.error_count += 1
            self._model_unavailable = True
            self.model_ready = False
            self.state = SessionState.ERROR
            self.error_message = text
            self.message = "Error loading model"
            session_logger.error(f"model unavailable: {text}")
            return
        if message.request == SEGMENT and self.state == SessionState.ENCODING:
            self.error_count += 1
            self.state = SessionState.ERROR
            self.error_message = text
            self.message = "Error processing image"
            session_logger.error(f"embedding failed: {text}")
        elif message.request == DECODE and self.state == SessionState.DECODING:
            self.error_count += 1
            self._erase_pending = False
            self._decode_dirty = False
            self.state = SessionState.ENCODED
            self.error_message = text
            self.message = "Decode failed; click again to retry"
            session_logger.error(f"decode failed: {text}")


class SessionManager:
    """Owns the single live session and serialises access to it."""

    def __init__(self, factory: Callable[[], SegmentSession]) -> None:
        self._factory = factory
        self._session: Optional[SegmentSession] = None
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def get(self) -> SegmentSession:
        with self._lock:
            if self._session is None:
                self._session = self._factory()
            return self._session

    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None
