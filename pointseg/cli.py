"""Command-line interface for the pointseg server."""

from __future__ import annotations

import argparse
import os


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Point-prompted image segmentation server")
    parser.add_argument(
        "--host",
        default=None,
        help="Server host (default: POINTSEG_HOST or 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Server port (default: POINTSEG_PORT or 8000)",
    )
    parser.add_argument(
        "--ssl-cert",
        default=None,
        help="Path to SSL certificate for HTTPS",
    )
    parser.add_argument(
        "--ssl-key",
        default=None,
        help="Path to SSL private key for HTTPS",
    )
    parser.add_argument(
        "--reload",
        dest="reload",
        action="store_true",
        default=False,
        help="Enable uvicorn auto-reload (development only).",
    )
    parser.add_argument(
        "--no-reload",
        dest="reload",
        action="store_false",
        help="Disable uvicorn auto-reload.",
    )
    parser.add_argument(
        "--model-id",
        default=None,
        help="Hugging Face id of the SAM checkpoint to load",
    )
    parser.add_argument(
        "--device",
        default=None,
        help="torch device for inference (default: best available)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level for the pointseg loggers",
    )
    return parser.parse_args(argv)


_ENV_OVERRIDES = {
    "model_id": "POINTSEG_MODEL_ID",
    "device": "POINTSEG_DEVICE",
    "log_level": "POINTSEG_LOG_LEVEL",
}


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the pointseg server."""
    args = parse_args(argv)

    # Import here to speed up --help
    from .app import run_server
    from .config import load_settings
    from .logger import setup_logger

    overrides = {
        "model_id": args.model_id,
        "device": args.device,
        "log_level": args.log_level,
        "host": args.host,
        "port": args.port,
    }
    if args.reload:
        # the reloader rebuilds the app in a fresh process from the environment
        for key, env_name in _ENV_OVERRIDES.items():
            if overrides[key] is not None:
                os.environ[env_name] = str(overrides[key])
    settings = load_settings().with_overrides(**overrides)
    setup_logger("app", settings.log_level)

    run_server(
        host=settings.host,
        port=settings.port,
        ssl_cert=args.ssl_cert,
        ssl_key=args.ssl_key,
        reload=args.reload,
        settings=settings,
    )
