"""
FastAPI application entry point for the template storage service.
"""

from __future__ import annotations

from fastapi import FastAPI

from template_storage.config import get_settings
from template_storage.routes import router


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Template Storage", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
