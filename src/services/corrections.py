"""
Correction Merger.

Applies a user's corrections to a stored extraction record without calling
the model again. Corrections name fields as ``{entity}_{index}_{field}``
(``labour_2_hours``, ``material_0_quantity``) or ``travel_hours``, either
grouped the way the review screen posts them::

    {
        "labour_overrides": {"labour_0_hours": 6},
        "materials_overrides": {"material_1_quantity": 4},
        "travel_overrides": {"travel_hours": 1},
        "confirmed_assumptions": ["customer"]
    }

or as flat top-level keys. Every corrected field gets confidence 1.0.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional

from pydantic import ValidationError

from src.logging_config import get_logger
from src.schemas.extraction import ExtractionRecord

logger = get_logger(__name__)

USER_CONFIDENCE = 1.0

OVERRIDE_GROUPS = ("labour_overrides", "materials_overrides", "travel_overrides")
CONFIRMED_ASSUMPTIONS_KEY = "confirmed_assumptions"


class CorrectionEntity(str, Enum):
    LABOUR = "labour"
    MATERIAL = "material"
    TRAVEL = "travel"


ENTITY_FIELDS: dict[CorrectionEntity, frozenset[str]] = {
    CorrectionEntity.LABOUR: frozenset({"hours", "days", "people"}),
    CorrectionEntity.MATERIAL: frozenset({"quantity", "unit"}),
    CorrectionEntity.TRAVEL: frozenset({"hours"}),
}

_INDEXED_KEY = re.compile(r"^(labour|material)_(\d+)_([a-z]+)$")
_TRAVEL_KEY = re.compile(r"^travel_([a-z]+)$")


@dataclass(frozen=True)
class CorrectionKey:
    entity: CorrectionEntity
    field: str
    index: Optional[int] = None

    @classmethod
    def parse(cls, key: str) -> "CorrectionKey | None":
        """Parse a correction key; None when it names nothing correctable."""
        match = _INDEXED_KEY.match(key)
        if match:
            entity = CorrectionEntity(match.group(1))
            index, field = int(match.group(2)), match.group(3)
        else:
            match = _TRAVEL_KEY.match(key)
            if not match:
                return None
            entity, index, field = CorrectionEntity.TRAVEL, None, match.group(1)

        if field not in ENTITY_FIELDS[entity]:
            return None
        return cls(entity=entity, field=field, index=index)


def iter_overrides(corrections: dict[str, Any]) -> Iterator[tuple[str, Any]]:
    """Yield every ``(key, value)`` override, grouped or flat."""
    for group in OVERRIDE_GROUPS:
        overrides = corrections.get(group)
        if isinstance(overrides, dict):
            yield from overrides.items()
    for key, value in corrections.items():
        if key in OVERRIDE_GROUPS or key == CONFIRMED_ASSUMPTIONS_KEY:
            continue
        yield key, value


def _target(record: ExtractionRecord, key: CorrectionKey) -> Any:
    if key.entity == CorrectionEntity.TRAVEL:
        return record.fees.travel
    entries = record.labour_entries if key.entity == CorrectionEntity.LABOUR else record.material_items
    if key.index is None or key.index >= len(entries):
        return None
    return entries[key.index]


def _confirmed_fields(corrections: dict[str, Any] | None, intake_id: str) -> set[str]:
    """Field names from the ``confirmed_assumptions`` list; anything but a list of strings is ignored."""
    value = (corrections or {}).get(CONFIRMED_ASSUMPTIONS_KEY)
    if value is None:
        return set()
    if not isinstance(value, list):
        logger.warning("confirmed_assumptions_invalid", intake_id=intake_id, value_type=type(value).__name__)
        return set()
    skipped = sum(1 for entry in value if not isinstance(entry, str))
    if skipped:
        logger.warning("confirmed_assumptions_entries_skipped", intake_id=intake_id, skipped=skipped)
    return {entry for entry in value if isinstance(entry, str)}


def merge_corrections(record: ExtractionRecord, corrections: dict[str, Any], intake_id: str = "") -> ExtractionRecord:
    """
    Return a copy of ``record`` with ``corrections`` applied.

    Unknown keys and out-of-range indexes are logged and ignored. The
    overall confidence is recomputed from the merged record.
    """
    merged = record.model_copy(deep=True)
    applied = 0

    for raw_key, value in iter_overrides(corrections or {}):
        key = CorrectionKey.parse(raw_key)
        if key is None:
            logger.warning("correction_key_ignored", intake_id=intake_id, key=raw_key)
            continue
        target = _target(merged, key)
        if target is None:
            logger.warning("correction_target_missing", intake_id=intake_id, key=raw_key)
            continue
        wrapped_type = type(getattr(target, key.field))
        try:
            corrected = wrapped_type.model_validate({"value": value, "confidence": USER_CONFIDENCE})
        except ValidationError:
            logger.warning("correction_value_invalid", intake_id=intake_id, key=raw_key, value=repr(value))
            continue
        setattr(target, key.field, corrected)
        applied += 1

    confirmed = _confirmed_fields(corrections, intake_id)
    for assumption in merged.assumptions:
        if assumption.field in confirmed:
            assumption.confidence = USER_CONFIDENCE

    merged.quality.overall_confidence = recompute_overall_confidence(merged)

    logger.info(
        "corrections_merged",
        intake_id=intake_id,
        overrides_applied=applied,
        assumptions_confirmed=len(confirmed),
        overall_confidence=merged.quality.overall_confidence,
    )
    return merged


def _present_confidences(record: ExtractionRecord) -> Iterator[float]:
    for entry in record.labour_entries:
        for wrapped in (entry.hours, entry.days, entry.people):
            if wrapped.present:
                yield wrapped.confidence
    for item in record.material_items:
        for wrapped in (item.quantity, item.unit):
            if wrapped.present:
                yield wrapped.confidence
    if record.fees.travel.hours.present:
        yield record.fees.travel.hours.confidence


def recompute_overall_confidence(record: ExtractionRecord) -> float:
    """Unweighted mean of present field confidences and all assumption confidences; 0 when empty."""
    signals = list(_present_confidences(record))
    signals.extend(a.confidence for a in record.assumptions)
    if not signals:
        return 0.0
    return sum(signals) / len(signals)
