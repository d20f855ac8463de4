import threading
import time

import numpy as np
import pytest

from conftest import WAIT, FakeInferenceService
from pointseg.errors import ModelUnavailable, PreconditionViolation
from pointseg.imaging import make_handle
from pointseg.prompts import PointPrompt
from pointseg.session import SessionManager, SessionState
from pointseg.worker import ClientMessage


def test_click_selects_highest_scoring_mask(encoded_session, image):
    session = encoded_session
    assert session.state is SessionState.ENCODED
    assert session.message == "Embedding extracted!"
    assert session.model_ready
    assert session.original_size == image.shape[:2]

    session.add_point(0.25, 0.5)
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert session.last_masks.shape == (2, 16, 20)
    assert session.overlay.index == 1
    assert session.overlay.score == pytest.approx(0.8)
    assert session.message == "Segment score: 0.80"

    rgba = session.render_overlay()
    assert rgba.shape == (16, 20, 4)
    assert rgba[0, 0, 3] == 153
    assert rgba[0, 15, 3] == 0


def test_points_require_an_encoded_image(session, fake_service):
    with pytest.raises(PreconditionViolation):
        session.add_point(0.5, 0.5)
    with pytest.raises(PreconditionViolation):
        session.preview_point(0.5, 0.5)
    with pytest.raises(PreconditionViolation):
        session.decode()
    assert fake_service.decode_calls == []


def test_decode_without_prompts_is_refused(encoded_session, fake_service):
    with pytest.raises(PreconditionViolation):
        encoded_session.decode()
    assert encoded_session.state is SessionState.ENCODED
    assert fake_service.decode_calls == []


def test_decode_while_decoding_is_refused(make_session, image):
    gate = threading.Event()
    service = FakeInferenceService(decode_gate=gate)
    session = make_session(service)
    session.load_image(image)
    assert session.wait(WAIT)
    session.add_point(0.5, 0.5)
    assert service.decode_started.wait(WAIT)
    with pytest.raises(PreconditionViolation):
        session.decode()
    gate.set()
    assert session.wait(WAIT)
    assert len(service.decode_calls) == 1
    assert session.overlay is not None


def test_second_point_enables_multi_mask(encoded_session, fake_service):
    session = encoded_session
    session.preview_point(0.1, 0.1)
    assert session.wait(WAIT)
    session.preview_point(0.2, 0.2)
    assert session.wait(WAIT)
    assert len(session.prompts) == 1 and not session.multi_mask

    session.add_point(0.3, 0.3)
    assert session.wait(WAIT)
    assert session.prompts.snapshot() == (PointPrompt(0.3, 0.3),)
    assert not session.multi_mask
    with pytest.raises(PreconditionViolation):
        session.preview_point(0.4, 0.4)

    session.add_point(0.6, 0.6, 0)
    assert session.wait(WAIT)
    assert session.multi_mask
    points, labels = fake_service.decode_calls[-1]
    assert labels.tolist() == [1, 0]


def test_preview_after_click_keeps_the_click(encoded_session, fake_service):
    session = encoded_session
    session.add_point(0.1, 0.1)
    assert session.wait(WAIT)
    with pytest.raises(PreconditionViolation):
        session.preview_point(0.7, 0.7)
    assert session.prompts.snapshot() == (PointPrompt(0.1, 0.1),)
    assert len(fake_service.decode_calls) == 1
    assert session.overlay is not None


def test_clear_points_keeps_embedding(encoded_session, fake_service):
    session = encoded_session
    session.add_point(0.5, 0.5)
    session.add_point(0.6, 0.6)
    assert session.wait(WAIT)
    session.clear_points()
    assert session.overlay is None
    assert len(session.prompts) == 0
    assert not session.multi_mask
    assert session.embedding is not None
    session.add_point(0.2, 0.2)
    assert session.wait(WAIT)
    assert len(fake_service.embedded_keys) == 1


def test_reset_returns_to_idle(encoded_session):
    session = encoded_session
    session.add_point(0.5, 0.5)
    assert session.wait(WAIT)
    version = session.version
    session.reset()
    assert session.state is SessionState.IDLE
    assert session.version == version + 1
    assert session.image is None and session.embedding is None
    assert session.overlay is None
    assert session.message == "Ready"


def test_loading_same_image_while_encoding_is_ignored(make_session, image):
    gate = threading.Event()
    service = FakeInferenceService(embed_gate=gate)
    session = make_session(service)
    session.load_image(image)
    version = session.version
    session.load_image(image.copy())
    assert session.version == version
    gate.set()
    assert session.wait(WAIT)
    assert len(service.embedded_keys) == 1


def test_newer_image_wins_over_stale_embedding(make_session, image, other_image):
    gate = threading.Event()
    service = FakeInferenceService(embed_gate=gate)
    session = make_session(service)
    session.load_image(image)
    assert service.embed_started.wait(WAIT)
    session.load_image(other_image)
    gate.set()
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert session.embedding.image_key == make_handle(other_image).key
    assert session.original_size == other_image.shape[:2]


def test_points_during_decode_trigger_one_follow_up(make_session, image):
    gate = threading.Event()
    service = FakeInferenceService(decode_gate=gate)
    session = make_session(service)
    session.load_image(image)
    assert session.wait(WAIT)

    session.add_point(0.1, 0.1)
    assert service.decode_started.wait(WAIT)
    session.add_point(0.2, 0.2)
    session.add_point(0.3, 0.3, 0)
    assert session.state is SessionState.DECODING
    gate.set()
    assert session.wait(WAIT)
    assert len(service.decode_calls) == 2
    assert service.decode_calls[1][1].tolist() == [1, 1, 0]
    assert session.overlay is not None


def test_clear_during_decode_discards_result(make_session, image):
    gate = threading.Event()
    service = FakeInferenceService(decode_gate=gate)
    session = make_session(service)
    session.load_image(image)
    assert session.wait(WAIT)
    session.add_point(0.5, 0.5)
    assert service.decode_started.wait(WAIT)
    session.clear_points()
    gate.set()
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert session.overlay is None


def test_reset_during_decode_discards_late_result(make_session, image, other_image):
    gate = threading.Event()
    service = FakeInferenceService(decode_gate=gate)
    session = make_session(service)
    session.load_image(image)
    assert session.wait(WAIT)
    session.add_point(0.5, 0.5)
    assert service.decode_started.wait(WAIT)

    session.reset()
    session.load_image(other_image)
    gate.set()
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert session.overlay is None
    assert session.last_masks is None
    assert len(session.prompts) == 0
    assert session.embedding.image_key == make_handle(other_image).key


def test_model_unavailable_blocks_until_reset(make_session, image):
    service = FakeInferenceService(fail_load=True)
    session = make_session(service)
    session.load_image(image)
    assert session.wait(WAIT)
    assert session.state is SessionState.ERROR
    assert session.model_unavailable
    assert session.message == "Error loading model"
    with pytest.raises(ModelUnavailable):
        session.load_image(image)
    with pytest.raises(ModelUnavailable):
        session.add_point(0.5, 0.5)

    service.fail_load = False
    session.reset()
    session.load_image(image)
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert session.model_ready


def test_stale_model_error_is_ignored_after_reset(make_session, image):
    service = FakeInferenceService(fail_load=True)
    session = make_session(service)
    session.load_image(image)
    deadline = time.monotonic() + WAIT
    while session.worker._outbox.empty() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not session.worker._outbox.empty()

    service.fail_load = False
    session.reset()
    session.load_image(image)
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert not session.model_unavailable
    assert session.model_ready
    assert session.error_count == 0


def test_embed_failure_enters_error_state(make_session, image):
    service = FakeInferenceService(fail_embed=True)
    session = make_session(service)
    session.load_image(image)
    assert session.wait(WAIT)
    assert session.state is SessionState.ERROR
    assert session.message == "Error processing image"
    assert "encoder exploded" in session.error_message
    service.fail_embed = False
    session.load_image(image)
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED


def test_decode_failure_returns_to_encoded(make_session, image):
    service = FakeInferenceService(fail_decode=True)
    session = make_session(service)
    session.load_image(image)
    assert session.wait(WAIT)
    session.add_point(0.5, 0.5)
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert session.overlay is None
    assert "decoder exploded" in session.error_message

    service.fail_decode = False
    session.add_point(0.5, 0.5)
    assert session.wait(WAIT)
    assert session.overlay is not None
    assert session.error_message is None


def test_terminated_worker_is_replaced_on_reset(encoded_session, image):
    session = encoded_session
    old_worker = session.worker
    old_worker.send(ClientMessage("bogus"))
    session.process_messages(WAIT)
    assert session.state is SessionState.ERROR
    old_worker._thread.join(WAIT)

    session.reset()
    assert session.worker is not old_worker
    session.load_image(image)
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED


def test_export_cutout(encoded_session):
    session = encoded_session
    with pytest.raises(PreconditionViolation):
        session.export_cutout()
    session.add_point(0.25, 0.5)
    assert session.wait(WAIT)
    data = session.export_cutout()
    assert data.startswith(b"\x89PNG")


def test_erase_overlay_and_undo(encoded_session, image, fake_service):
    session = encoded_session
    original_key = session.image.key
    session.add_point(0.25, 0.5)
    assert session.wait(WAIT)
    version = session.version

    session.erase_marked_area()
    assert session.version == version + 1
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    assert session.status.can_undo
    assert session.overlay is None
    edited = session.image.pixels
    # the erased object is the left half; right of it and the border band are untouched
    assert np.array_equal(edited[:, 10:], image[:, 10:])
    assert np.array_equal(edited[:3], image[:3])
    assert not np.array_equal(edited[3:13, 3:10], image[3:13, 3:10])
    assert session.embedding.image_key == session.image.key != original_key

    session.undo()
    assert session.wait(WAIT)
    assert session.image.key == original_key
    assert np.array_equal(session.image.pixels, image)
    assert not session.status.can_undo
    with pytest.raises(PreconditionViolation):
        session.undo()


def test_erase_without_selection(encoded_session):
    with pytest.raises(PreconditionViolation):
        encoded_session.erase_marked_area()


def test_erase_with_brush_decodes_centroid(encoded_session, fake_service, image):
    session = encoded_session
    marked = np.zeros((16, 20), dtype=np.uint8)
    marked[6:11, 3:8] = 255
    session.erase_marked_area(marked)
    assert session.wait(WAIT)
    assert session.state is SessionState.ENCODED
    points, labels = fake_service.decode_calls[-1]
    assert labels.tolist() == [1]
    assert points[0].tolist() == pytest.approx([5.0, 8.0])
    assert session.status.can_undo
    assert not np.array_equal(session.image.pixels, image)

    with pytest.raises(PreconditionViolation):
        session.erase_marked_area(np.ones((4, 4), dtype=np.uint8))


def test_status_as_dict(encoded_session):
    payload = encoded_session.status.as_dict()
    assert payload["state"] == "encoded"
    assert payload["width"] == 20 and payload["height"] == 16
    assert payload["promptCount"] == 0
    assert payload["multiMask"] is False
    assert payload["score"] is None


def test_session_manager_reuses_and_closes(fake_service):
    from pointseg.session import SegmentSession

    created = []

    def factory():
        session = SegmentSession(fake_service)
        created.append(session)
        return session

    manager = SessionManager(factory)
    assert manager.get() is manager.get()
    manager.close()
    second = manager.get()
    assert len(created) == 2 and second is created[1]
    manager.close()
