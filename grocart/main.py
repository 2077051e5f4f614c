"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from grocart.api.routes import queue, search, stores
from grocart.config import settings
from grocart.db.session import init_models
from grocart.logging_config import setup_logging
from grocart.services import build_services
from grocart.worker.scheduler import setup_scheduler

setup_logging()
logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting MyGroCart price service...")

    await init_models()

    services = build_services()
    app.state.services = services
    mode = await services.start()
    logger.info(f"Job queue running in {mode} mode")

    scheduler = setup_scheduler(services.task_runner)
    scheduler.start()
    logger.info("Scheduler started")

    yield

    logger.info("Shutting down...")
    scheduler.shutdown()
    await services.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="MyGroCart Price Service",
    description="On-demand grocery store discovery, price scraping and caching",
    version=APP_VERSION,
    lifespan=lifespan,
)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(search.router)
app.include_router(stores.router)
app.include_router(queue.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    services = getattr(app.state, "services", None)
    return {
        "status": "healthy",
        "queue_mode": services.job_queue.mode if services else "uninitialized",
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(status_code=204)


if __name__ == "__main__":
    uvicorn.run(
        "grocart.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
