"""Single-embedding cache with single-flight compute and generation-based invalidation."""

from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Optional

from .errors import InferenceError, ModelUnavailable, StaleResult
from .imaging import ImageHandle
from .inference import Embedding, InferenceService
from .logger import setup_logger

embedding_logger = setup_logger('embedding')


class EmbeddingCache:
    """Holds the embedding of the one image currently loaded.

    A second ``compute`` for an image that is already being embedded joins
    the pending computation instead of calling the service again. Any
    ``compute`` for a different image, or ``invalidate``, bumps the
    generation; completions from an older generation are dropped and their
    callers get :class:`StaleResult`.
    """

    def __init__(self, service: InferenceService) -> None:
        self._service = service
        self._lock = threading.Lock()
        self._generation = 0
        self._embedding: Optional[Embedding] = None
        self._pending_key: Optional[str] = None
        self._pending: Optional[Future] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current(self) -> Optional[Embedding]:
        return self._embedding

    def is_valid_for(self, image: ImageHandle) -> bool:
        embedding = self._embedding
        return embedding is not None and embedding.image_key == image.key

    def invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._embedding = None
            self._pending_key = None
            self._pending = None

    def compute(self, image: ImageHandle) -> Embedding:
        with self._lock:
            if self._embedding is not None and self._embedding.image_key == image.key:
                return self._embedding
            if self._pending is not None and self._pending_key == image.key:
                future = self._pending
                owner = False
            else:
                if self._pending is not None or self._embedding is not None:
                    embedding_logger.info("new image supersedes the previous embedding")
                self._generation += 1
                self._embedding = None
                future = Future()
                self._pending = future
                self._pending_key = image.key
                owner = True
            generation = self._generation
        if not owner:
            return future.result()
        return self._run(image, future, generation)

    def _run(self, image: ImageHandle, future: Future, generation: int) -> Embedding:
        try:
            embedding = self._service.embed(image.pixels, image.key)
        except Exception as exc:
            if isinstance(exc, (InferenceError, ModelUnavailable)):
                error = exc
            else:
                error = InferenceError(f"embedding failed: {exc}")
            if self._finish(future, generation, error=error):
                raise StaleResult("embedding failed after its image was replaced") from exc
            if error is exc:
                raise
            raise error from exc
        stale = self._finish(future, generation, embedding=embedding)
        if stale:
            raise StaleResult("embedding finished after its image was replaced")
        return embedding

    def _finish(
        self,
        future: Future,
        generation: int,
        *,
        embedding: Optional[Embedding] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        with self._lock:
            stale = generation != self._generation
            if self._pending is future:
                self._pending = None
                self._pending_key = None
            if not stale and embedding is not None:
                self._embedding = embedding
        if stale:
            embedding_logger.info("discarding stale embedding result")
            future.set_exception(StaleResult("embedding finished after its image was replaced"))
        elif error is not None:
            future.set_exception(error)
        else:
            future.set_result(embedding)
        return stale
