"""Entrypoint for the draft gateway HTTP server."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from draft_gateway import __version__
from draft_gateway.config import load_settings
from draft_gateway.logging_utils import configure_logging


def run_entrypoint() -> None:
    """Run the HTTP server with settings from the environment."""
    _run_http()


def _run_http() -> None:
    settings = load_settings()
    configure_logging()
    from draft_gateway.transport.http_server import create_http_app

    import uvicorn

    logging.info("Initializing draft gateway v%s", __version__)
    logging.info("Log file configured at: %s", settings.logging.file)
    app = create_http_app()
    # Plain JSON over HTTP; no websocket endpoints.
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
