"""
Development entry point.

Runs the ASGI app under uvicorn with settings from the environment:

    live-call-server

Production deployments point uvicorn (or gunicorn with uvicorn workers)
at server.asgi:app directly.
"""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "server.asgi:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
        reload=os.environ.get("ENV", "dev") == "dev",  # Dev mode only
    )


if __name__ == "__main__":
    main()
