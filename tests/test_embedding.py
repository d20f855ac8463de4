import threading

import numpy as np
import pytest

from conftest import WAIT, FakeInferenceService
from pointseg.embedding import EmbeddingCache
from pointseg.errors import InferenceError, StaleResult
from pointseg.imaging import make_handle


def test_compute_caches_per_image(fake_service, image):
    cache = EmbeddingCache(fake_service)
    handle = make_handle(image)
    first = cache.compute(handle)
    second = cache.compute(handle)
    assert first is second
    assert fake_service.embedded_keys == [handle.key]
    assert cache.is_valid_for(handle)
    assert first.original_size == image.shape[:2]


def test_concurrent_compute_is_single_flight(image):
    gate = threading.Event()
    service = FakeInferenceService(embed_gate=gate)
    cache = EmbeddingCache(service)
    handle = make_handle(image)
    results = []

    def worker():
        results.append(cache.compute(handle))

    threads = [threading.Thread(target=worker) for _ in range(3)]
    threads[0].start()
    assert service.embed_started.wait(WAIT)
    for thread in threads[1:]:
        thread.start()
    gate.set()
    for thread in threads:
        thread.join(WAIT)
    assert len(results) == 3
    assert results[0] is results[1] is results[2]
    assert len(service.embedded_keys) == 1


def test_new_image_invalidates_previous(fake_service, image, other_image):
    cache = EmbeddingCache(fake_service)
    first = make_handle(image)
    second = make_handle(other_image)
    cache.compute(first)
    generation = cache.generation
    cache.compute(second)
    assert cache.generation == generation + 1
    assert not cache.is_valid_for(first)
    assert cache.is_valid_for(second)


def test_stale_completion_is_discarded(image, other_image):
    gate = threading.Event()
    service = FakeInferenceService(embed_gate=gate)
    cache = EmbeddingCache(service)
    outcome = {}

    def slow():
        try:
            outcome["result"] = cache.compute(make_handle(image))
        except StaleResult as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=slow)
    thread.start()
    assert service.embed_started.wait(WAIT)
    cache.invalidate()
    gate.set()
    thread.join(WAIT)
    assert isinstance(outcome.get("error"), StaleResult)
    assert cache.current is None


def test_embed_failure_propagates_and_allows_retry(image):
    service = FakeInferenceService(fail_embed=True)
    cache = EmbeddingCache(service)
    handle = make_handle(image)
    with pytest.raises(InferenceError):
        cache.compute(handle)
    assert cache.current is None
    service.fail_embed = False
    assert cache.compute(handle).image_key == handle.key


def test_unexpected_embed_error_is_wrapped(image):
    class Broken(FakeInferenceService):
        def embed(self, image, image_key):
            raise RuntimeError("cuda out of memory")

    cache = EmbeddingCache(Broken())
    with pytest.raises(InferenceError, match="cuda out of memory"):
        cache.compute(make_handle(image))


def test_image_key_tracks_content(image):
    a = make_handle(image)
    b = make_handle(image.copy())
    edited = image.copy()
    edited[0, 0, 0] ^= 1
    c = make_handle(edited)
    assert a.key == b.key
    assert a.key != c.key
    assert not a.pixels.flags.writeable
    assert image.flags.writeable
    assert np.array_equal(a.pixels, image)
