"""
API Router: Voice Intake Pipeline Endpoints.

One POST endpoint per pipeline stage. Each is authenticated, rate limited
per user where it calls a paid provider, and answers ``{"success": ...}``;
failures are rendered by the ``PipelineError`` handler in the app.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from src.api.auth import get_current_user
from src.db import DatabaseClient, get_db
from src.logging_config import get_logger
from src.schemas.intake import (
    CreateDraftRequest,
    ExtractRequest,
    ExtractResponse,
    TranscribeRequest,
    TranscribeResponse,
    UpdateStageRequest,
)
from src.schemas.quote import ReviewBlocked
from src.services.data_extraction import extract_intake
from src.services.quote_materializer import materialize_quote
from src.services.rate_limiter import Endpoint, RateLimiter, get_rate_limiter
from src.services.stage_tracking import update_intake_stage
from src.services.transcription import transcribe_intake

logger = get_logger(__name__)
router = APIRouter(prefix="/intakes", tags=["Intakes"])


@router.post("/transcribe", response_model=TranscribeResponse)
async def transcribe(
    body: TranscribeRequest,
    user_id: str = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TranscribeResponse:
    """Transcribe the recorded audio of a captured intake."""
    await limiter.enforce(user_id, Endpoint.TRANSCRIBE)
    return await transcribe_intake(body.intake_id, user_id, db=db)


@router.post("/extract", response_model=ExtractResponse)
async def extract(
    body: ExtractRequest,
    user_id: str = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> ExtractResponse:
    """Extract (or re-gate with corrections) the structured quote data for an intake."""
    await limiter.enforce(user_id, Endpoint.EXTRACT)
    return await extract_intake(
        body.intake_id,
        user_id,
        user_corrections_json=body.user_corrections_json,
        trace_id=body.trace_id,
        db=db,
    )


@router.post("/create-draft-quote")
async def create_draft_quote(
    body: CreateDraftRequest,
    user_id: str = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> Any:
    """Materialize the draft quote; replays are safe."""
    await limiter.enforce(user_id, Endpoint.CREATE_DRAFT)
    result = await materialize_quote(body.intake_id, user_id, trace_id=body.trace_id, db=db)
    if isinstance(result, ReviewBlocked):
        return JSONResponse(status_code=400, content=result.model_dump(mode="json"))
    return result.model_dump(mode="json")


@router.post("/stage")
async def update_stage(
    body: UpdateStageRequest,
    user_id: str = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    """Record a client-side progress marker for an intake."""
    return await update_intake_stage(
        body.intake_id,
        body.stage,
        user_id,
        trace_id=body.trace_id,
        last_error=body.last_error,
        db=db,
    )
