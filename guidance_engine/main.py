"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from guidance_engine import __version__
from guidance_engine.api import get_versions, guidance_error_handler, router as guidance_router
from guidance_engine.config import get_settings
from guidance_engine.errors import GuidanceError
from guidance_engine.graph.loader import DefinitionLoader
from guidance_engine.storage import get_table_stats, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting %s...", settings.app_name)

    init_db()
    logger.info("Database ready: %s", get_table_stats())

    if settings.definitions_dir:
        definitions = DefinitionLoader(settings.definitions_dir).load_directory()
        seeded = get_versions().seed_definitions(definitions)
        logger.info("Seeded %d scripts from %s", len(seeded), settings.definitions_dir)

    yield

    logger.info("Shutting down...")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Versioned guidance scripts executed step by step against collected answers",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )

    # CORS middleware - configurable via CORS_ORIGINS env var
    cors_origins = settings.cors_origins.split(",") if settings.cors_origins != "*" else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(GuidanceError, guidance_error_handler)
    app.include_router(guidance_router)  # /guidance

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": __version__,
            "endpoints": {
                "scripts": "/guidance/scripts/* - Script definitions, versions and publishing",
                "runs": "/guidance/runs/* - Run answers and advancing",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
