"""
Data models for quote line items and materialization results.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

PLACEHOLDER_MARKER = "Placeholder"


class LineItemType(str, Enum):
    LABOUR = "labour"
    MATERIALS = "materials"
    FEE = "fee"


class QuoteLineItem(BaseModel):
    item_type: LineItemType
    description: str
    quantity: float
    unit: str
    unit_price_cents: int
    line_total_cents: int
    position: int = 0
    notes: Optional[str] = None
    catalog_item_id: Optional[str] = None
    is_needs_review: bool = False

    @property
    def is_placeholder(self) -> bool:
        return bool(self.notes) and PLACEHOLDER_MARKER in self.notes

    def to_row(self, quote_id: str, org_id: str | None) -> dict[str, Any]:
        row = self.model_dump(mode="json")
        row["quote_id"] = quote_id
        row["org_id"] = org_id
        row["is_placeholder"] = self.is_placeholder
        return row


class NewLineItem(BaseModel):
    """Manually added line item; the total is always derived."""

    item_type: LineItemType
    description: str
    quantity: float = Field(default=1, gt=0)
    unit: str = "item"
    unit_price_cents: int = Field(default=0, ge=0)
    notes: Optional[str] = None
    catalog_item_id: Optional[str] = None


class QuoteTotals(BaseModel):
    labour_cents: int = 0
    materials_cents: int = 0
    fees_cents: int = 0
    subtotal_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0
    tax_inclusive: bool = False


class ReviewBlocked(BaseModel):
    """Materialization refused until the user reviews the extraction."""

    success: bool = False
    requires_review: bool = True
    reason: str
    missing_fields: list[dict[str, Any]] = Field(default_factory=list)
    assumptions: list[dict[str, Any]] = Field(default_factory=list)
    message: str


class MaterializationResult(BaseModel):
    success: bool = True
    quote_id: str
    intake_id: str
    idempotent_replay: bool = False
    requires_review: bool = False
    line_items_count: int = 0
    readable_items_count: int = 0
    warnings: list[str] = Field(default_factory=list)
    pricing_used: dict[str, Any] = Field(default_factory=dict)
    totals: Optional[QuoteTotals] = None
