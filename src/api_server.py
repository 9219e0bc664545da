"""
FastAPI API Server.

REST API for the voice-intake-to-quote pipeline: transcription, extraction,
draft quote materialization, stage tracking and quote line items.

Start with:
    uvicorn src.api_server:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.intakes import router as intakes_router
from src.api.middleware import RequestIdMiddleware
from src.api.quotes import router as quotes_router
from src.errors import PipelineError
from src.logging_config import get_logger, setup_logging
from src.services.rate_limiter import get_rate_limiter

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle hooks."""
    logger.info("api_server_starting")
    yield
    await get_rate_limiter().close()
    logger.info("api_server_stopping")


app = FastAPI(
    title="Voice Quote Service API",
    description="Turns recorded job walkthroughs into priced draft quotes",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware (order matters: outermost first)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("pipeline_error", path=request.url.path, code=exc.code, status=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "code": "internal_error"},
    )


# Routers
app.include_router(intakes_router)
app.include_router(quotes_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "voice-quote-service"}


@app.get("/", tags=["System"])
async def root() -> dict[str, str]:
    """API root."""
    return {
        "service": "Voice Quote Service",
        "version": "0.1.0",
        "docs": "/docs",
    }
