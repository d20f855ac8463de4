"""Background job worker: runs embed/decode work off the interactive thread.

The worker consumes :class:`ClientMessage` objects strictly in arrival order
on a single thread and answers with :class:`WorkerMessage` objects on an
outbox queue. Every job message carries the sender's session version, and
every answer echoes it so the sender can drop results for superseded images.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from .decoder import DecodeInvoker, DecodeResult
from .embedding import EmbeddingCache
from .errors import (
    InferenceError,
    ModelUnavailable,
    PointsegError,
    PreconditionViolation,
    ProtocolViolation,
)
from .imaging import ImageHandle, make_handle
from .inference import Embedding, InferenceService
from .logger import append_session_log, setup_logger
from .prompts import PointPrompt

worker_logger = setup_logger('worker')

RESET = "reset"
SEGMENT = "segment"
DECODE = "decode"
CLIENT_KINDS = (RESET, SEGMENT, DECODE)

READY = "ready"
SEGMENT_RESULT = "segment_result"
DECODE_RESULT = "decode_result"
ERROR = "error"

PHASE_START = "start"
PHASE_DONE = "done"

_STOP = object()


@dataclass(frozen=True)
class ClientMessage:
    kind: str
    data: Any = field(default=None, repr=False)
    version: int = 0

    @classmethod
    def reset(cls, version: int = 0) -> "ClientMessage":
        return cls(RESET, None, version)

    @classmethod
    def segment(cls, image: Any, version: int = 0) -> "ClientMessage":
        return cls(SEGMENT, image, version)

    @classmethod
    def decode(cls, points: list[dict[str, Any]], version: int = 0) -> "ClientMessage":
        return cls(DECODE, list(points), version)


@dataclass(frozen=True)
class WorkerMessage:
    kind: str
    data: Any = field(default=None, repr=False)
    version: int = 0

    @property
    def phase(self) -> Optional[str]:
        if self.kind == SEGMENT_RESULT:
            return self.data.get("phase")
        return None

    @property
    def embedding(self) -> Optional[Embedding]:
        if self.kind == SEGMENT_RESULT:
            return self.data.get("embedding")
        return None

    @property
    def result(self) -> Optional[DecodeResult]:
        if self.kind == DECODE_RESULT:
            return self.data
        return None

    @property
    def error_kind(self) -> Optional[str]:
        if self.kind == ERROR:
            return self.data.get("error_kind")
        return None

    @property
    def error_message(self) -> Optional[str]:
        if self.kind == ERROR:
            return self.data.get("message")
        return None

    @property
    def request(self) -> Optional[str]:
        if self.kind == ERROR:
            return self.data.get("request")
        return None


class JobWorker:
    """Single-consumer job queue around one inference service handle."""

    def __init__(self, service: InferenceService, *, name: str = "PointsegJobWorker") -> None:
        self._service = service
        self._name = name
        self._inbox: queue.Queue = queue.Queue()
        self._outbox: queue.Queue = queue.Queue()
        self._cache = EmbeddingCache(service)
        self._decoder = DecodeInvoker(service)
        self._image: Optional[ImageHandle] = None
        self._ready = False
        self._init_error: Optional[str] = None
        self._terminated = False
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._terminated

    @property
    def terminated(self) -> bool:
        return self._terminated

    def start(self) -> "JobWorker":
        with self._start_lock:
            if self._terminated:
                raise ProtocolViolation("worker was terminated and cannot be restarted")
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
                self._thread.start()
        return self

    def send(self, message: ClientMessage) -> None:
        if self._terminated:
            raise ProtocolViolation("worker has terminated")
        if self._thread is None:
            self.start()
        self._inbox.put(message)

    def poll(self, timeout: Optional[float] = None) -> Optional[WorkerMessage]:
        """Return the next outbox message, or ``None`` if none arrives in ``timeout``."""
        try:
            if timeout is not None and timeout <= 0:
                return self._outbox.get_nowait()
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[WorkerMessage]:
        messages = []
        while True:
            message = self.poll(0)
            if message is None:
                return messages
            messages.append(message)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._inbox.put(_STOP)
        thread.join(timeout)

    def _emit(self, kind: str, data: Any = None, version: int = 0) -> None:
        self._outbox.put(WorkerMessage(kind, data, version))

    def _emit_error(self, exc: BaseException, message: Any) -> None:
        kind = exc.kind if isinstance(exc, PointsegError) else InferenceError.kind
        request = getattr(message, "kind", None)
        version = getattr(message, "version", 0)
        append_session_log(f"[worker] {request} v{version} failed: {kind}: {exc}")
        self._emit(ERROR, {"error_kind": kind, "message": str(exc), "request": request}, version)

    def _run(self) -> None:
        while True:
            message = self._inbox.get()
            if message is _STOP:
                return
            try:
                self._handle(message)
            except ProtocolViolation as exc:
                worker_logger.error(f"terminating worker: {exc}")
                self._terminated = True
                self._emit_error(exc, message)
                return
            except PointsegError as exc:
                self._emit_error(exc, message)
            except Exception as exc:
                worker_logger.exception(f"unexpected failure handling {message.kind!r}")
                self._emit_error(InferenceError(f"{type(exc).__name__}: {exc}"), message)

    def _ensure_ready(self, message: ClientMessage) -> bool:
        if self._ready:
            return True
        if self._init_error is not None:
            return False
        try:
            self._service.load()
        except Exception as exc:
            self._init_error = str(exc)
            error = exc if isinstance(exc, ModelUnavailable) else ModelUnavailable(str(exc))
            worker_logger.error(f"inference service failed to initialise: {exc}")
            self._emit_error(error, message)
            return False
        self._ready = True
        self._emit(READY)
        return True

    def _handle(self, message: Any) -> None:
        if not isinstance(message, ClientMessage) or message.kind not in CLIENT_KINDS:
            kind = getattr(message, "kind", type(message).__name__)
            raise ProtocolViolation(f"Unknown message type: {kind}")
        failed_before = self._init_error is not None
        if message.kind == RESET and failed_before:
            # reset is the user-initiated retry after a failed initialisation
            self._init_error = None
            self._reset_state()
            return
        if failed_before:
            self._emit_error(ModelUnavailable(self._init_error), message)
            return
        if not self._ensure_ready(message):
            return
        if message.kind == RESET:
            self._reset_state()
        elif message.kind == SEGMENT:
            self._segment(message)
        else:
            self._decode(message)

    def _reset_state(self) -> None:
        self._cache.invalidate()
        self._image = None

    def _segment(self, message: ClientMessage) -> None:
        self._emit(SEGMENT_RESULT, {"phase": PHASE_START}, message.version)
        data = message.data
        if isinstance(data, ImageHandle):
            image = data
        else:
            try:
                image = make_handle(data)
            except (OSError, ValueError, TypeError) as exc:
                raise InferenceError(f"could not read image: {exc}") from exc
        embedding = self._cache.compute(image)
        self._image = image
        self._emit(SEGMENT_RESULT, {"phase": PHASE_DONE, "embedding": embedding}, message.version)

    def _decode(self, message: ClientMessage) -> None:
        if not isinstance(message.data, (list, tuple)):
            raise ProtocolViolation("decode expects a list of points")
        try:
            prompts = [PointPrompt.from_protocol(item) for item in message.data]
        except ValueError as exc:
            raise ProtocolViolation(str(exc)) from exc
        embedding = self._cache.current
        if embedding is None or self._image is None:
            raise PreconditionViolation("decode requested before an image was segmented")
        result = self._decoder.decode(embedding, prompts)
        self._emit(DECODE_RESULT, result, message.version)
