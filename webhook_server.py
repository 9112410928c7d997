"""
Settlement API server.

FastAPI application exposing the on-ramp, off-ramp, settlement query and
gateway webhook routes. The lifespan creates tables, wires the orchestrator
and runs the settlement scheduler for the life of the worker.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Config
from handlers.gateway_webhook import router as gateway_webhook_router
from handlers.offramp_routes import router as offramp_router
from handlers.onramp_routes import router as onramp_router
from handlers.settlement_routes import router as settlement_router
from jobs.settlement_scheduler import SettlementScheduler
from services.settlement_errors import SettlementError

logger = logging.getLogger(__name__)


def create_app(orchestrator=None, run_scheduler: Optional[bool] = None, create_schema: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator: pre-built SettlementOrchestrator (tests); built from Config when None
        run_scheduler: start the settlement scheduler, defaults to Config.SCHEDULER_ENABLED
        create_schema: create missing tables on startup
    """
    run_scheduler = Config.SCHEDULER_ENABLED if run_scheduler is None else run_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🔧 Worker {os.getpid()} starting...")
        owns_orchestrator = orchestrator is None
        if owns_orchestrator:
            from database import create_tables, dispose_engine
            from services.settlement_orchestrator import build_settlement_orchestrator
            if create_schema:
                await create_tables()
            app.state.orchestrator = build_settlement_orchestrator()
        else:
            app.state.orchestrator = orchestrator

        scheduler = None
        if run_scheduler:
            scheduler = SettlementScheduler(app.state.orchestrator)
            scheduler.start()

        logger.info(f"✅ Worker {os.getpid()} initialized successfully")
        yield

        logger.info(f"🔄 Worker {os.getpid()} shutting down...")
        if scheduler is not None:
            scheduler.shutdown()
        if owns_orchestrator:
            await app.state.orchestrator.close()
            await dispose_engine()

    app = FastAPI(
        title="Ramp Settlement Service",
        description="Fiat/token on-ramp and off-ramp settlement API",
        lifespan=lifespan,
    )
    if orchestrator is not None:
        # Available before lifespan runs (e.g. ASGI transports that skip it)
        app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Clients built against the /api/* paths keep working
    @app.middleware("http")
    async def strip_api_prefix(request: Request, call_next):
        if request.scope["path"].startswith("/api/"):
            request.scope["path"] = request.scope["path"][4:]
        elif request.scope["path"] == "/api":
            request.scope["path"] = "/"
        return await call_next(request)

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        if exc.http_status >= 500:
            logger.error(f"❌ SETTLEMENT_ERROR: {request.method} {request.url.path} {exc.code}: {exc.message}")
        else:
            logger.info(f"⚠️ SETTLEMENT_REJECTED: {request.method} {request.url.path} {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error_code": "VALIDATION_ERROR", "error": str(exc.errors()), "retryable": False},
        )

    app.include_router(onramp_router)
    app.include_router(offramp_router)
    app.include_router(settlement_router)
    app.include_router(gateway_webhook_router)
    return app
