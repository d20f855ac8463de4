"""FastAPI application factory and server launcher for the pointseg session API."""

from __future__ import annotations

import base64
import binascii
import time
from pathlib import Path
from typing import Any, Mapping, Optional

import numpy as np
from fastapi.responses import JSONResponse, Response

from .config import Settings, load_settings
from .errors import (
    InferenceError,
    ModelUnavailable,
    PointsegError,
    PreconditionViolation,
    ProtocolViolation,
    error_from_kind,
)
from .imaging import SUPPORTED_IMAGE_EXTS, encode_data_url
from .inference import InferenceService, SamInferenceService
from .logger import append_session_log, configure_session_log, setup_logger
from .session import SegmentSession, SessionManager

app_logger = setup_logger('app')

_STATUS_CODES = {
    PreconditionViolation: 409,
    ModelUnavailable: 503,
    InferenceError: 502,
    ProtocolViolation: 500,
}


def _error_payload(exc: BaseException) -> tuple[dict[str, object], int]:
    for cls, code in _STATUS_CODES.items():
        if isinstance(exc, cls):
            return {"error": str(exc), "kind": cls.kind}, code
    if isinstance(exc, PointsegError):
        return {"error": str(exc), "kind": exc.kind}, 500
    if isinstance(exc, FileNotFoundError):
        return {"error": "file_not_found"}, 404
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return {"error": str(exc)}, 400
    return {"error": f"{type(exc).__name__}: {exc}"}, 500


def _decode_brush_mask(payload: Mapping[str, Any]) -> Optional[np.ndarray]:
    mask_b64 = payload.get("mask")
    if mask_b64 is None:
        return None
    try:
        width = int(payload.get("width"))
        height = int(payload.get("height"))
    except (TypeError, ValueError) as exc:
        raise ValueError("width and height required with mask") from exc
    if width <= 0 or height <= 0:
        raise ValueError("invalid mask shape")
    try:
        raw = base64.b64decode(mask_b64)
    except (binascii.Error, TypeError) as exc:
        raise ValueError(f"decode failed: {exc}") from exc
    arr = np.frombuffer(raw, dtype=np.uint8)
    if arr.size != width * height:
        raise ValueError("mask size mismatch")
    return arr.reshape((height, width))


def _image_source(payload: Mapping[str, Any]) -> Any:
    data_url = payload.get("imageDataUrl")
    if isinstance(data_url, str) and data_url:
        return data_url
    path_value = payload.get("path")
    if isinstance(path_value, str) and path_value:
        path = Path(path_value).expanduser().resolve()
        if path.suffix.lower() not in SUPPORTED_IMAGE_EXTS:
            raise ValueError(f"unsupported image type {path.suffix!r}")
        return path
    raise ValueError("imageDataUrl or path required")


def create_app(
    settings: Optional[Settings] = None,
    *,
    service: Optional[InferenceService] = None,
    manager: Optional[SessionManager] = None,
) -> "Any":
    """Create and configure the FastAPI application."""
    from contextlib import asynccontextmanager
    from fastapi import FastAPI
    from fastapi.middleware.cors import CORSMiddleware

    settings = settings or load_settings()
    configure_session_log(settings.log_file)
    if manager is None:
        if service is None:
            service = SamInferenceService(settings.model_id, device=settings.device)
        manager = SessionManager(lambda: SegmentSession(service))
    timeout = settings.job_timeout

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        manager.close()

    app = FastAPI(title="pointseg", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.manager = manager

    def _status(session: SegmentSession) -> JSONResponse:
        return JSONResponse(session.status.as_dict())

    def _run(action, *, settle: bool = True) -> JSONResponse:
        t_start = time.perf_counter()
        with manager.lock:
            session = manager.get()
            settled = True
            errors_before = session.error_count
            try:
                action(session)
                if settle:
                    settled = session.wait(timeout)
                else:
                    session.process_messages(0)
            except Exception as exc:
                body, code = _error_payload(exc)
                if code >= 500:
                    app_logger.exception(f"{getattr(action, '__name__', 'action')} failed")
                append_session_log(f"[api] error {code}: {body.get('error')}")
                body["status"] = session.status.as_dict()
                return JSONResponse(body, status_code=code)
            app_logger.debug(f"[perf] {(time.perf_counter() - t_start) * 1000:.0f}ms")
            if session.error_count > errors_before:
                error = error_from_kind(session.last_error_kind, session.error_message or "")
                body, code = _error_payload(error)
                body["status"] = session.status.as_dict()
                return JSONResponse(body, status_code=code)
            if not settled:
                # still running; the client polls /api/status
                return JSONResponse(session.status.as_dict(), status_code=202)
            return _status(session)

    @app.get("/health", response_class=JSONResponse)
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/api/status", response_class=JSONResponse)
    def api_status() -> JSONResponse:
        return _run(lambda session: None, settle=False)

    @app.post("/api/load_image", response_class=JSONResponse)
    def api_load_image(payload: dict) -> JSONResponse:
        def load(session: SegmentSession) -> None:
            session.load_image(_image_source(payload))

        return _run(load)

    @app.post("/api/points", response_class=JSONResponse)
    def api_points(payload: dict) -> JSONResponse:
        def add(session: SegmentSession) -> None:
            session.add_point(float(payload["x"]), float(payload["y"]), payload.get("label", 1))

        return _run(add)

    @app.post("/api/preview", response_class=JSONResponse)
    def api_preview(payload: dict) -> JSONResponse:
        def preview(session: SegmentSession) -> None:
            session.preview_point(float(payload["x"]), float(payload["y"]))

        return _run(preview)

    @app.post("/api/clear_points", response_class=JSONResponse)
    def api_clear_points() -> JSONResponse:
        return _run(lambda session: session.clear_points(), settle=False)

    @app.post("/api/reset", response_class=JSONResponse)
    def api_reset() -> JSONResponse:
        return _run(lambda session: session.reset(), settle=False)

    @app.post("/api/undo", response_class=JSONResponse)
    def api_undo() -> JSONResponse:
        return _run(lambda session: session.undo())

    @app.post("/api/erase", response_class=JSONResponse)
    def api_erase(payload: Optional[dict] = None) -> JSONResponse:
        def erase(session: SegmentSession) -> None:
            session.erase_marked_area(_decode_brush_mask(payload or {}))

        return _run(erase)

    @app.get("/api/overlay", response_class=JSONResponse)
    def api_overlay() -> JSONResponse:
        with manager.lock:
            session = manager.get()
            session.process_messages(0)
            overlay = session.overlay
            if overlay is None:
                return JSONResponse({"overlayDataUrl": None, "score": None})
            return JSONResponse(
                {
                    "overlayDataUrl": encode_data_url(session.render_overlay()),
                    "score": overlay.score,
                    "width": overlay.width,
                    "height": overlay.height,
                }
            )

    @app.get("/api/cutout")
    def api_cutout() -> Response:
        with manager.lock:
            session = manager.get()
            session.process_messages(0)
            try:
                data = session.export_cutout()
            except PointsegError as exc:
                body, code = _error_payload(exc)
                return JSONResponse(body, status_code=code)
        return Response(
            content=data,
            media_type="image/png",
            headers={"Content-Disposition": 'attachment; filename="cut-image.png"'},
        )

    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    ssl_cert: str | None = None,
    ssl_key: str | None = None,
    reload: bool = False,
    settings: Optional[Settings] = None,
) -> None:
    """Run the FastAPI server."""
    import uvicorn

    settings = settings or load_settings()
    app_logger.info(f"serving pointseg on {host}:{port} (model {settings.model_id})")
    if reload:
        # reload needs an import string; settings then come from the environment
        uvicorn.run(
            "pointseg.app:create_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            reload_dirs=[str(Path(__file__).resolve().parent)],
            ssl_certfile=ssl_cert,
            ssl_keyfile=ssl_key,
            log_level=settings.log_level.lower(),
        )
        return
    uvicorn.run(
        create_app(settings),
        host=host,
        port=port,
        ssl_certfile=ssl_cert,
        ssl_keyfile=ssl_key,
        log_level=settings.log_level.lower(),
    )
