"""FastAPI application factory for the SpecPilot API server."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from specpilot import __version__
from specpilot.config import Config
from specpilot.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(config: Config | None = None, runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Two modes:
    - With a prebuilt runtime: used as-is and left open (tests, embedding)
    - Otherwise: the runtime is built from config in the lifespan and
      shut down with the app
    """
    resolved_config = config or (runtime.config if runtime else Config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            yield
            return
        try:
            built = await build_runtime(resolved_config)
        except Exception as e:
            logger.error("Failed to initialize runtime: %s", e)
            raise
        app.state.runtime = built
        yield
        await built.shutdown()

    app = FastAPI(
        title="SpecPilot",
        description="Staged requirements assistant backed by an LLM orchestration core",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = resolved_config
    if runtime is not None:
        app.state.runtime = runtime

    # CORS: local only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:*", "http://127.0.0.1:*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from specpilot.api.routes import router

    app.include_router(router)

    return app
