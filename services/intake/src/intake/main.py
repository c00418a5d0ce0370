"""ASGI entry point: ``uvicorn intake.main:app``."""

from .app import create_app

app = create_app()
