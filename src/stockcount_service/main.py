"""ASGI entrypoint for running the service."""
from __future__ import annotations

import asyncio

import uvicorn

from .config import get_settings
from .management import init_database


def run() -> None:
    """Create missing tables, then serve ``stockcount_service.api:app``."""

    settings = get_settings()
    asyncio.run(init_database())
    uvicorn.run(
        "stockcount_service.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
