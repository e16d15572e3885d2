"""Operations API and application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.ingest.errors import NotFoundError
from pricewatch.logging_config import setup_logging
from pricewatch.worker.runtime import ScrapeRuntime, build_runtime

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


async def _default_runtime() -> ScrapeRuntime:
    from pricewatch.db.session import AsyncSessionLocal, init_models

    await init_models()
    return build_runtime(AsyncSessionLocal)


def create_app(
    runtime_factory: Optional[Callable[[], ScrapeRuntime]] = None,
    registry: Optional[CollectorRegistry] = None,
) -> FastAPI:
    """
    Build the operations API.

    Args:
        runtime_factory: Returns the engine runtime to serve. Defaults to one
            wired to the configured database, with tables created on startup.
        registry: Prometheus registry for HTTP metrics (default registry if None)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting pricewatch scrape engine...")
        if runtime_factory is None:
            runtime = await _default_runtime()
        else:
            runtime = runtime_factory()
        app.state.runtime = runtime

        await runtime.start()

        yield

        logger.info("Shutting down...")
        await runtime.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="pricewatch",
        description="Marketplace price scrape orchestration",
        version=VERSION,
        lifespan=lifespan,
    )

    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/metrics", "/health"],
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
        registry=registry,
    )
    instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        runtime: ScrapeRuntime = request.app.state.runtime
        return {
            "status": "healthy",
            "engine_running": runtime.running,
            "engine_error": runtime.last_error,
        }

    @app.get("/stats")
    async def stats(request: Request):
        """Scheduler, queue and page pool statistics."""
        runtime: ScrapeRuntime = request.app.state.runtime
        return await runtime.stats()

    @app.post("/items/{item_id}/scrape", status_code=status.HTTP_202_ACCEPTED)
    async def scrape_item(item_id: int, request: Request):
        """Queue an immediate scrape of one tracked item."""
        runtime: ScrapeRuntime = request.app.state.runtime
        try:
            job = await runtime.scheduler.scrape_now(item_id)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        return {"status": "queued", "job": job.name, "priority": job.priority}

    return app


def run() -> None:
    setup_logging()
    metrics.app_info.info({"version": VERSION})
    uvicorn.run(
        create_app(),
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
