"""
Data models for the canonical extraction record.

The record is stored as ``voice_intakes.extraction_json``. Every field a user
may later correct is wrapped in ``Confident`` so the confidence travels with
the value through merges. An absent value is ``value=None, confidence=0.0``;
a present value always carries its own confidence.
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

T = TypeVar("T")

DEFAULT_FIELD_CONFIDENCE = 0.85


def clamp_unit(value: Any, fallback: float = 0.0) -> float:
    """Coerce ``value`` to a float in [0, 1], using ``fallback`` when unusable."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if math.isnan(number):
        return fallback
    return max(0.0, min(1.0, number))


class Confident(BaseModel, Generic[T]):
    """A value paired with a confidence score in [0, 1]."""

    value: Optional[T] = None
    confidence: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def _wrap_bare_values(cls, data: Any) -> Any:
        # Older rows stored bare scalars instead of wrapped values
        if isinstance(data, (dict, BaseModel)):
            return data
        if data is None:
            return {"value": None, "confidence": 0.0}
        return {"value": data, "confidence": DEFAULT_FIELD_CONFIDENCE}

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp_unit(v)

    @property
    def present(self) -> bool:
        return self.value is not None


class Severity(str, Enum):
    REQUIRED = "required"
    WARNING = "warning"


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class JobInfo(BaseModel):
    title: Optional[str] = None
    summary: Optional[str] = None
    site_address: Optional[str] = None
    scope_of_work: list[str] = Field(default_factory=list)
    estimated_days_min: Optional[float] = None
    estimated_days_max: Optional[float] = None
    job_date: Optional[str] = None

    @field_validator("scope_of_work", mode="before")
    @classmethod
    def _drop_empty_scope(cls, v: Any) -> list[str]:
        if not v:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(item).strip() for item in v if item is not None and str(item).strip()]


class LabourEntry(BaseModel):
    description: str = ""
    hours: Confident[float] = Field(default_factory=Confident[float])
    days: Confident[float] = Field(default_factory=Confident[float])
    people: Confident[float] = Field(default_factory=Confident[float])
    note: Optional[str] = None


class MaterialItem(BaseModel):
    description: str = ""
    quantity: Confident[float] = Field(default_factory=Confident[float])
    unit: Confident[str] = Field(default_factory=Confident[str])
    unit_price_cents: Optional[int] = None
    estimated_cost_cents: Optional[int] = None
    needs_pricing: bool = True
    # True when unit_price_cents already includes the org's materials markup
    markup_applied: bool = False
    catalog_item_id: Optional[str] = None
    catalog_match_confidence: Optional[float] = None
    notes: Optional[str] = None


class TravelFee(BaseModel):
    is_time: Optional[bool] = None
    hours: Confident[float] = Field(default_factory=Confident[float])
    fee_cents: Optional[int] = None


class MaterialsPickup(BaseModel):
    enabled: bool = False
    minutes: Optional[float] = None


class Fees(BaseModel):
    travel: TravelFee = Field(default_factory=TravelFee)
    materials_pickup: Optional[MaterialsPickup] = None
    callout_fee_cents: Optional[int] = None


class Quality(BaseModel):
    overall_confidence: float = DEFAULT_FIELD_CONFIDENCE
    requires_user_confirmation: bool = False
    user_confirmed: bool = False
    user_confirmed_at: Optional[datetime] = None
    ambiguous_fields: list[str] = Field(default_factory=list)
    critical_fields_below_threshold: list[str] = Field(default_factory=list)

    @field_validator("overall_confidence", mode="before")
    @classmethod
    def _sanitize(cls, v: Any) -> float:
        # Stored rows may carry null, strings or NaN; the gate re-checks and logs
        return clamp_unit(v, fallback=0.5)


class MissingField(BaseModel):
    field: str
    reason: str
    severity: Severity = Severity.WARNING


class Assumption(BaseModel):
    field: str
    assumption: str = ""
    confidence: float = 0.0
    source: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp_unit(v)


class TimeSection(BaseModel):
    labour_entries: list[LabourEntry] = Field(default_factory=list)


class MaterialsSection(BaseModel):
    items: list[MaterialItem] = Field(default_factory=list)


class ExtractionRecord(BaseModel):
    """Normalized, confidence-annotated structured data derived from a transcript."""

    model_config = ConfigDict(extra="ignore")

    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    job: JobInfo = Field(default_factory=JobInfo)
    time: TimeSection = Field(default_factory=TimeSection)
    materials: MaterialsSection = Field(default_factory=MaterialsSection)
    fees: Fees = Field(default_factory=Fees)
    quality: Quality = Field(default_factory=Quality)
    missing_fields: list[MissingField] = Field(default_factory=list)
    assumptions: list[Assumption] = Field(default_factory=list)
    pricing_defaults_used: Optional[dict[str, Any]] = None
    pricing_used: Optional[dict[str, Any]] = None

    @field_validator("customer", "job", "time", "materials", "fees", "quality", mode="before")
    @classmethod
    def _null_sections(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def labour_entries(self) -> list[LabourEntry]:
        return self.time.labour_entries

    @property
    def material_items(self) -> list[MaterialItem]:
        return self.materials.items

    def has_required_missing(self) -> bool:
        return any(mf.severity == Severity.REQUIRED for mf in self.missing_fields)

    def to_json(self) -> dict[str, Any]:
        """Serialize for a jsonb column."""
        return self.model_dump(mode="json")
