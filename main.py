#!/usr/bin/env python3
"""
PR Preview Orchestrator

Builds and runs a disposable container for every pull request of a connected
GitHub repository, and tears it down when the pull request closes.
"""

import logging
import signal
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.errors import Forbidden, NotFound, PreviewError, QuotaExceeded, SignatureInvalid, format_limit
from config.settings import settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    import asyncio
    from app.broadcaster import StatusBroadcaster
    from app.container_engine import ContainerEngine
    from app.database import init_db
    from app.orchestrator import PreviewOrchestrator
    from app.ports import PortAllocator
    from app.quota import QuotaGuard
    from app.source import SourceFetcher
    from app.tasks.container_events import container_events_loop

    logger.info("Starting PR Preview Orchestrator")
    await init_db()

    broadcaster = StatusBroadcaster()
    engine = ContainerEngine()
    orchestrator = PreviewOrchestrator(
        engine=engine,
        fetcher=SourceFetcher(),
        broadcaster=broadcaster,
        quota=QuotaGuard(),
        ports=PortAllocator(),
    )
    app.state.broadcaster = broadcaster
    app.state.orchestrator = orchestrator

    await orchestrator.recover()

    container_events_task = asyncio.create_task(container_events_loop(orchestrator))
    logger.info("PR Preview Orchestrator started successfully")

    yield

    container_events_task.cancel()
    try:
        await container_events_task
    except asyncio.CancelledError:
        pass

    logger.info("Shutting down PR Preview Orchestrator")
    await broadcaster.close()
    engine.close()
    logger.info("PR Preview Orchestrator stopped")


def add_exception_handlers(app: FastAPI):
    """Map the orchestrator's error taxonomy onto HTTP responses."""

    @app.exception_handler(QuotaExceeded)
    async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
        return JSONResponse(status_code=429, content={
            "detail": str(exc),
            "code": exc.code,
            "resource": exc.resource,
            "limit": format_limit(exc.limit),
            "tier": exc.tier,
        })

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(Forbidden)
    async def forbidden_handler(request: Request, exc: Forbidden):
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(SignatureInvalid)
    async def signature_invalid_handler(request: Request, exc: SignatureInvalid):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(PreviewError)
    async def preview_error_handler(request: Request, exc: PreviewError):
        logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})


def handle_signal(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    sys.exit(0)


app = FastAPI(
    title="PR Preview Orchestrator",
    description="Per-pull-request preview deployments",
    version="1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_url,
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

add_exception_handlers(app)

from app.api import router
app.include_router(router)

app.router.lifespan_context = lifespan


def main():
    """Main application entry point"""
    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        access_log=True
    )


if __name__ == "__main__":
    main()
