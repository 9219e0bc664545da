"""
Quality Gate.

Decides whether an extraction may proceed to quoting automatically or must
wait for a human. The checks run in a fixed priority order and the first
match wins; an explicit user confirmation outranks every automated signal.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from src.config import get_settings
from src.logging_config import get_logger
from src.schemas.extraction import ExtractionRecord, LabourEntry, Severity
from src.schemas.intake import IntakeStatus

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.5


class ReviewReason(str, Enum):
    USER_CONFIRMED = "user_confirmed"
    REQUIRED_FIELDS_MISSING = "required_fields_missing"
    CRITICAL_FIELDS_LOW_CONFIDENCE = "critical_fields_low_confidence"
    LOW_CONFIDENCE_LABOUR = "low_confidence_labour"
    LOW_OVERALL_CONFIDENCE = "low_overall_confidence"
    PASSED = "passed"


@dataclass
class GateDecision:
    status: IntakeStatus
    reason: ReviewReason
    overall_confidence: float
    has_low_confidence_labour: bool

    @property
    def requires_review(self) -> bool:
        return self.status == IntakeStatus.NEEDS_USER_REVIEW


def sanitize_confidence(value: Any, intake_id: str = "") -> float:
    """
    Coerce a stored confidence to a float in [0, 1].

    Missing, non-numeric, blank or NaN values become 0.5 (logged); numbers
    outside the range are clamped.
    """
    number: float | None = None
    if isinstance(value, bool):
        number = None
    elif isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            number = None

    if number is None or math.isnan(number):
        logger.warning("confidence_default_applied", intake_id=intake_id, previous=repr(value), applied=FALLBACK_CONFIDENCE)
        return FALLBACK_CONFIDENCE
    return max(0.0, min(1.0, number))


def is_weak_labour(entry: LabourEntry, floor: float) -> bool:
    """A present-but-weak hours or days signal; confidence 0 means absent, not weak."""
    for wrapped in (entry.hours, entry.days):
        if 0 < wrapped.confidence < floor:
            return True
    return False


def has_low_confidence_labour(record: ExtractionRecord, floor: float | None = None) -> bool:
    floor = get_settings().labour_confidence_floor if floor is None else floor
    return any(is_weak_labour(entry, floor) for entry in record.labour_entries)


def apply_quality_gate(
    record: ExtractionRecord,
    corrections_supplied: bool,
    intake_id: str = "",
    now: datetime | None = None,
) -> GateDecision:
    """
    Evaluate the gate and write the outcome into ``record.quality``.

    Order:
        1. corrections supplied in this call → extracted, user_confirmed
        2. any required missing field → review
        3. critical fields below threshold (reserved) → review
        4. any labour hours/days confidence in (0, floor) → review
        5. overall confidence below the review threshold → review
        6. otherwise → extracted
    """
    settings = get_settings()
    quality = record.quality

    confidence = sanitize_confidence(quality.overall_confidence, intake_id)
    quality.overall_confidence = confidence
    weak_labour = has_low_confidence_labour(record, settings.labour_confidence_floor)

    if corrections_supplied:
        reason = ReviewReason.USER_CONFIRMED
        quality.user_confirmed = True
        quality.user_confirmed_at = now or datetime.now(timezone.utc)
    elif any(mf.severity == Severity.REQUIRED for mf in record.missing_fields):
        reason = ReviewReason.REQUIRED_FIELDS_MISSING
    elif quality.critical_fields_below_threshold:
        reason = ReviewReason.CRITICAL_FIELDS_LOW_CONFIDENCE
    elif weak_labour:
        reason = ReviewReason.LOW_CONFIDENCE_LABOUR
    elif confidence < settings.review_confidence_threshold:
        reason = ReviewReason.LOW_OVERALL_CONFIDENCE
    else:
        reason = ReviewReason.PASSED

    needs_review = reason not in (ReviewReason.USER_CONFIRMED, ReviewReason.PASSED)
    quality.requires_user_confirmation = needs_review
    status = IntakeStatus.NEEDS_USER_REVIEW if needs_review else IntakeStatus.EXTRACTED

    logger.info(
        "quality_gate_decided",
        intake_id=intake_id,
        status=status.value,
        reason=reason.value,
        overall_confidence=confidence,
        has_low_confidence_labour=weak_labour,
    )
    return GateDecision(
        status=status,
        reason=reason,
        overall_confidence=confidence,
        has_low_confidence_labour=weak_labour,
    )
