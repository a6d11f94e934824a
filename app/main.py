from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.request_cache import build_default_cache
from services.series_builder import build_default_builder
from storage.raw_series import build_default_source


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    cache = build_default_cache()
    cache.start_sweeper()
    try:
        yield
    finally:
        await cache.aclose()
        build_default_builder.cache_clear()
        build_default_source.cache_clear()
        build_default_cache.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Derived Weather Metrics",
        description="Derived sensor catalogs and series computed from raw weather data.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
