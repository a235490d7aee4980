"""ASGI entrypoint for evescope.

This file exists solely to avoid import-time side effects in api.main.
Use this in uvicorn/gunicorn:  api.asgi:app
"""

from __future__ import annotations

from api.main import build_app

app = build_app()
