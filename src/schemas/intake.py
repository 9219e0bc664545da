"""
Data models for voice intakes and the stage request/response envelopes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class IntakeStatus(str, Enum):
    CAPTURED = "captured"
    TRANSCRIBED = "transcribed"
    EXTRACTED = "extracted"
    NEEDS_USER_REVIEW = "needs_user_review"
    QUOTE_CREATED = "quote_created"


class IntakeStage(str, Enum):
    """Progress markers shown to the client while a stage runs."""

    DRAFT_STARTED = "draft_started"
    DRAFT_DONE = "draft_done"
    FAILED = "failed"


class VoiceIntake(BaseModel):
    """One row of ``voice_intakes``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    org_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: IntakeStatus = IntakeStatus.CAPTURED
    stage: Optional[str] = None
    audio_storage_path: Optional[str] = None
    audio_duration_seconds: Optional[int] = None
    transcript_text: Optional[str] = None
    transcript_language: Optional[str] = None
    extraction_json: Optional[dict[str, Any]] = None
    user_corrections_json: Optional[dict[str, Any]] = None
    missing_fields: list[dict[str, Any]] = Field(default_factory=list)
    assumptions: list[dict[str, Any]] = Field(default_factory=list)
    created_quote_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "VoiceIntake":
        data = dict(row)
        data["missing_fields"] = data.get("missing_fields") or []
        data["assumptions"] = data.get("assumptions") or []
        return cls.model_validate(data)


class TranscribeRequest(BaseModel):
    intake_id: str


class TranscribeResponse(BaseModel):
    success: bool = True
    intake_id: str
    transcript: str
    language: Optional[str] = None
    duration: int = 0
    warnings: list[str] = Field(default_factory=list)


class ExtractRequest(BaseModel):
    intake_id: str
    user_corrections_json: Optional[dict[str, Any]] = None
    trace_id: Optional[str] = None


class QualitySummary(BaseModel):
    overall_confidence: float
    missing_fields_count: int
    required_missing_count: int
    assumptions_count: int
    has_low_confidence_labour: bool


class ExtractResponse(BaseModel):
    success: bool = True
    intake_id: str
    status: IntakeStatus
    requires_review: bool
    review_reason: Optional[str] = None
    extracted_data: dict[str, Any]
    quality_summary: QualitySummary
    performance: dict[str, Any] = Field(default_factory=dict)


class CreateDraftRequest(BaseModel):
    intake_id: str
    trace_id: Optional[str] = None


class UpdateStageRequest(BaseModel):
    intake_id: str
    stage: str
    trace_id: Optional[str] = None
    last_error: Optional[str] = None
