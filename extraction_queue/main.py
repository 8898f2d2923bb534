from fastapi import FastAPI

from extraction_queue.api import health, tasks, webhook_events
from extraction_queue.core.config import get_settings
from extraction_queue.core.logging import setup_logging


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    app = FastAPI(title="Extraction Queue", version="0.1.0")

    # Routers
    app.include_router(health.router, tags=["health"])
    app.include_router(tasks.router, prefix="/extraction-tasks", tags=["extraction-tasks"])
    app.include_router(webhook_events.router, prefix="/webhook-events", tags=["webhook-events"])

    return app


app = create_app()


def run_server() -> None:
    """Serve the operator API with uvicorn on ``PORT``."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "extraction_queue.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
