import threading

import numpy as np
import pytest

from pointseg.errors import InferenceError, ModelUnavailable
from pointseg.inference import Embedding
from pointseg.logger import configure_session_log

# generous upper bound for worker round-trips; fakes answer immediately
WAIT = 5.0


def default_masks(height, width):
    """Two candidates: top half and left half."""
    top = np.zeros((height, width), dtype=bool)
    top[: height // 2] = True
    left = np.zeros((height, width), dtype=bool)
    left[:, : width // 2] = True
    return np.stack([top, left])


class FakeInferenceService:
    """In-process stand-in for the SAM service.

    Embeddings just record the image size. Decodes return ``mask_factory(h, w)``
    with ``scores``. ``embed_gate``/``decode_gate`` block the call until set.
    """

    def __init__(
        self,
        scores=(0.3, 0.8),
        mask_factory=default_masks,
        fail_load=False,
        fail_embed=False,
        fail_decode=False,
        embed_gate=None,
        decode_gate=None,
    ):
        self.scores = scores
        self.mask_factory = mask_factory
        self.fail_load = fail_load
        self.fail_embed = fail_embed
        self.fail_decode = fail_decode
        self.embed_gate = embed_gate
        self.decode_gate = decode_gate
        self.load_calls = 0
        self.embedded_keys = []
        self.decode_calls = []
        self.embed_started = threading.Event()
        self.decode_started = threading.Event()

    def load(self):
        self.load_calls += 1
        if self.fail_load:
            raise ModelUnavailable("weights not found")

    def embed(self, image, image_key):
        self.embedded_keys.append(image_key)
        self.embed_started.set()
        if self.embed_gate is not None:
            self.embed_gate.wait(WAIT)
        if self.fail_embed:
            raise InferenceError("encoder exploded")
        height, width = image.shape[:2]
        return Embedding(
            image_key=image_key,
            original_size=(height, width),
            reshaped_size=(height, width),
            tensors={"pixels": image},
        )

    def decode(self, embedding, points, labels):
        self.decode_calls.append((np.array(points), np.array(labels)))
        self.decode_started.set()
        if self.decode_gate is not None:
            self.decode_gate.wait(WAIT)
        if self.fail_decode:
            raise InferenceError("decoder exploded")
        height, width = embedding.original_size
        return self.mask_factory(height, width), np.asarray(self.scores, dtype=np.float32)


@pytest.fixture(autouse=True)
def _no_session_log():
    configure_session_log(None)
    yield
    configure_session_log(None)


@pytest.fixture
def fake_service():
    return FakeInferenceService()


@pytest.fixture
def image():
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(16, 20, 3), dtype=np.uint8)


@pytest.fixture
def other_image():
    rng = np.random.default_rng(1)
    return rng.integers(0, 256, size=(12, 12, 3), dtype=np.uint8)


@pytest.fixture
def make_session():
    from pointseg.session import SegmentSession

    sessions = []

    def _make(service):
        session = SegmentSession(service)
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.close()


@pytest.fixture
def session(make_session, fake_service):
    return make_session(fake_service)


@pytest.fixture
def encoded_session(session, image):
    session.load_image(image)
    assert session.wait(WAIT)
    return session
