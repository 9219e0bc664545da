"""
Pricing Profile Resolver.

Fetches the effective billing configuration for a user. The profile is a
read-only snapshot; every downstream stage consumes it, none mutates it.
"""

from __future__ import annotations

from src.config import get_settings
from src.db import DatabaseClient, get_db
from src.errors import InvalidPricingProfile, PricingProfileMissing
from src.logging_config import get_logger
from src.schemas.pricing import PricingProfile

logger = get_logger(__name__)


async def get_pricing_profile(user_id: str, db: DatabaseClient | None = None) -> PricingProfile:
    """
    Return the effective pricing profile for ``user_id``.

    The organization's country code becomes ``region_code`` (falling back to
    the configured default) so catalog matching can be region-aware.

    Raises:
        PricingProfileMissing: no profile is configured for the user.
    """
    db = db or get_db()

    data = await db.get_effective_pricing_profile(user_id)
    if not data:
        logger.error("pricing_profile_missing", user_id=user_id)
        raise PricingProfileMissing(
            "No pricing profile found. Set your hourly rate and markup in Settings."
        )

    profile = PricingProfile.model_validate(data)

    region = None
    if profile.org_id:
        region = await db.get_org_country_code(profile.org_id)
    profile.region_code = region or get_settings().default_region_code

    logger.debug(
        "pricing_profile_resolved",
        user_id=user_id,
        org_id=profile.org_id,
        hourly_rate_cents=profile.hourly_rate_cents,
        markup_percent=profile.materials_markup_percent,
        region_code=profile.region_code,
    )
    return profile


def ensure_billable(profile: PricingProfile) -> PricingProfile:
    """
    Reject profiles that cannot price labour.

    Raises:
        InvalidPricingProfile: hourly rate is zero or negative.
    """
    if not profile.hourly_rate_cents or profile.hourly_rate_cents <= 0:
        logger.error("pricing_profile_invalid", org_id=profile.org_id, hourly_rate_cents=profile.hourly_rate_cents)
        raise InvalidPricingProfile(
            "Your hourly rate is not set. Update your pricing profile in Settings before creating quotes."
        )
    if profile.workday_hours_default <= 0:
        raise InvalidPricingProfile("Workday hours must be greater than zero in your pricing profile.")
    return profile
