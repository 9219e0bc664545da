"""
Data models for the effective pricing profile of a user/organization.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class PricingProfile(BaseModel):
    """Read-only snapshot returned by ``get_effective_pricing_profile``."""

    model_config = ConfigDict(extra="ignore")

    profile_id: Optional[str] = None
    org_id: Optional[str] = None
    user_id: Optional[str] = None
    hourly_rate_cents: int = 0
    callout_fee_cents: int = 0
    travel_rate_cents: Optional[int] = None
    travel_is_time: bool = True
    materials_markup_percent: float = 0.0
    default_tax_rate: float = 0.0
    default_currency: str = "AUD"
    default_payment_terms: Optional[str] = None
    workday_hours_default: float = 8.0
    bunnings_run_enabled: bool = False
    bunnings_run_minutes_default: int = 30
    org_name: Optional[str] = None
    org_tax_inclusive: bool = False
    region_code: str = Field(default="AU", description="Resolved from the organization's country")

    def minimal_context(self) -> dict[str, Any]:
        """The subset of the profile the extraction prompt is allowed to see."""
        return {
            "hourly_rate_cents": self.hourly_rate_cents,
            "materials_markup_percent": self.materials_markup_percent,
            "tax_rate_percent": self.default_tax_rate,
            "currency": self.default_currency,
            "callout_fee_cents": self.callout_fee_cents or None,
            "travel_hourly_rate_cents": self.travel_rate_cents or None,
            "region_code": self.region_code,
        }

    def snapshot(self) -> dict[str, Any]:
        """Audit copy written to ``extraction_json.pricing_used`` at materialization."""
        return {
            "hourly_rate_cents": self.hourly_rate_cents,
            "materials_markup_percent": self.materials_markup_percent,
            "tax_rate_percent": self.default_tax_rate,
            "currency": self.default_currency,
            "travel_rate_cents": self.travel_rate_cents,
            "travel_is_time": self.travel_is_time,
            "callout_fee_cents": self.callout_fee_cents,
            "workday_hours_default": self.workday_hours_default,
        }
