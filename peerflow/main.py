"""peerflow FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from peerflow.config import get_settings
from peerflow.database import close_db, create_schema, init_db, unit_of_work
from peerflow.logging_config import configure_logging, get_logger
from peerflow.registry import get_registry
from peerflow.template_loader import load_template_dir

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: init DB, load templates on startup, cleanup on shutdown."""
    settings = get_settings()
    configure_logging(level=settings.log_level, log_format=settings.log_format)

    logger.info("starting_database_init")
    await init_db()
    await create_schema()

    async with unit_of_work() as session:
        await load_template_dir(session, settings.template_dir)
        registry = get_registry()
        await registry.load(session)
    logger.info("templates_registered", template_ids=registry.ids())

    logger.info("application_started")
    yield

    logger.info("shutting_down")
    await close_db()
    logger.info("shutdown_complete")


def create_app() -> FastAPI:
    from peerflow.api import router

    app = FastAPI(
        title="peerflow",
        description="Template-driven progression engine for peer review and journal clubs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "peerflow"}

    return app


app = create_app()
