"""Exception types raised by the pointseg session engine."""

from __future__ import annotations


class PointsegError(Exception):
    """Base class for all pointseg errors."""

    kind = "error"


class ModelUnavailable(PointsegError):
    """The inference service could not be initialised."""

    kind = "model_unavailable"


class InferenceError(PointsegError):
    """An embed or decode call failed inside the inference service."""

    kind = "inference_error"


class ProtocolViolation(PointsegError):
    """A malformed or unknown job message reached the background worker."""

    kind = "protocol_violation"


class PreconditionViolation(PointsegError):
    """An operation was requested in a state that does not allow it."""

    kind = "precondition_violation"


class StaleResult(PointsegError):
    """A computation finished after the state it was started for was invalidated."""

    kind = "stale_result"


ERROR_KINDS: dict[str, type[PointsegError]] = {
    cls.kind: cls
    for cls in (ModelUnavailable, InferenceError, ProtocolViolation, PreconditionViolation, StaleResult)
}


def error_from_kind(kind: str, message: str) -> PointsegError:
    """Rebuild an exception from the ``kind`` tag carried by a worker error message."""
    cls = ERROR_KINDS.get(kind, PointsegError)
    return cls(message)
