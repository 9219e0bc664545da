"""
Catalog Matching & Pricing.

Prices extracted material lines from the organization's material catalog.
Each description is first tried against the org's alias table (exact, then
longest contained alias); whatever is left goes to the fuzzy catalog-matching
procedure in one batch. A matched item with a typical price range is priced
at the marked-up midpoint of that range.

A failing catalog lookup is never fatal: the materials simply stay flagged
``needs_pricing`` and pricing becomes a manual follow-up.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from src.db import DatabaseClient
from src.errors import PersistenceError
from src.logging_config import get_logger
from src.schemas.extraction import Confident, MaterialItem
from src.services.money import apply_markup, round_cents, to_number

logger = get_logger(__name__)

FILLER_TOKENS = frozenset({
    "materials", "material", "timber", "wood", "board", "boards",
    "sheet", "sheets", "pack", "packs", "bottle", "can", "cans",
})

# Matches at or above this are shown as plain "From catalog"
HIGH_MATCH_CONFIDENCE = 0.8


@dataclass
class CatalogMatch:
    catalog_item_id: str
    unit: Optional[str]
    typical_low_price_cents: Optional[int]
    typical_high_price_cents: Optional[int]
    match_confidence: Optional[float]
    matched_alias: Optional[str] = None

    @property
    def has_price_range(self) -> bool:
        return bool(self.typical_low_price_cents) and bool(self.typical_high_price_cents)


def normalize_material_text(text: str | None) -> str:
    """
    Normalize a description for alias comparison.

    Must stay identical for alias insertion and lookup.
    """
    if not text or not isinstance(text, str):
        return ""

    normalized = text.lower().strip().replace("&", "and")
    normalized = re.sub(r"[^\w\s]", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()

    words = [w for w in normalized.split(" ") if w not in FILLER_TOKENS]
    if words:
        normalized = " ".join(words)

    normalized = re.sub(r"\bmetres?\b", "metre", normalized)
    normalized = re.sub(r"\bm\b", "metre", normalized)
    return normalized.strip()


def _match_from_alias_row(row: dict[str, Any]) -> CatalogMatch | None:
    item = row.get("material_catalog_items") or {}
    if not item.get("id"):
        return None
    return CatalogMatch(
        catalog_item_id=item["id"],
        unit=item.get("unit"),
        typical_low_price_cents=item.get("typical_low_price_cents"),
        typical_high_price_cents=item.get("typical_high_price_cents"),
        match_confidence=1.0,
        matched_alias=row.get("alias_text"),
    )


def pick_contained_alias(normalized: str, aliases: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Longest alias appearing as a whole-word sequence in ``normalized``; ties go to lowest priority."""
    candidates = []
    for alias in aliases:
        alias_norm = alias.get("normalized_alias")
        if not alias_norm:
            continue
        if re.search(rf"\b{re.escape(alias_norm)}\b", normalized):
            candidates.append(alias)
    if not candidates:
        return None
    candidates.sort(key=lambda a: (-len(a["normalized_alias"]), a.get("priority") or 0))
    return candidates[0]


async def match_alias(org_id: str, description: str, db: DatabaseClient) -> CatalogMatch | None:
    normalized = normalize_material_text(description)
    if not normalized:
        return None

    exact = await db.find_alias_exact(org_id, normalized)
    if exact:
        return _match_from_alias_row(exact)

    aliases = await db.list_aliases(org_id)
    contained = pick_contained_alias(normalized, aliases)
    if contained:
        return _match_from_alias_row(contained)
    return None


def provenance_note(match: CatalogMatch) -> str | None:
    """Human-readable description of where a catalog price came from."""
    if match.matched_alias:
        return f"Matched by alias: {match.matched_alias}"
    if match.match_confidence is None:
        return None
    if match.match_confidence >= HIGH_MATCH_CONFIDENCE:
        return "From catalog"
    return f"Matched from catalog ({round(match.match_confidence * 100)}% confidence)"


def price_material(
    raw: dict[str, Any],
    match: CatalogMatch | None,
    markup_percent: float,
    field_confidence: float,
) -> MaterialItem:
    """Build a priced ``MaterialItem`` from a raw model line and its catalog match."""
    quantity = to_number(raw.get("quantity"))
    unit = (match.unit if match and match.unit else None) or raw.get("unit")
    notes = raw.get("notes") or None

    item = MaterialItem(
        description=str(raw.get("description") or "").strip(),
        quantity=Confident[float](value=quantity, confidence=field_confidence if quantity is not None else 0.0),
        unit=Confident[str](value=unit, confidence=field_confidence if unit else 0.0),
        needs_pricing=True,
        notes=notes,
    )
    if not match:
        return item

    item.catalog_item_id = match.catalog_item_id
    item.catalog_match_confidence = match.match_confidence

    if match.has_price_range:
        midpoint = round_cents((match.typical_low_price_cents + match.typical_high_price_cents) / 2)
        item.unit_price_cents = apply_markup(midpoint, markup_percent)
        item.markup_applied = True
        if quantity is not None:
            item.estimated_cost_cents = round_cents(item.unit_price_cents * quantity)
            item.needs_pricing = False

    provenance = provenance_note(match)
    if provenance:
        item.notes = f"{provenance} - {notes}" if notes else provenance
    return item


async def match_and_price_materials(
    raw_materials: list[dict[str, Any]],
    org_id: str | None,
    region_code: str,
    markup_percent: float,
    db: DatabaseClient,
    field_confidence: float = 0.85,
) -> list[MaterialItem]:
    """
    Price every raw material line, preserving order.

    Args:
        raw_materials: ``materials.items`` exactly as the model returned them.
        org_id: Catalog owner; without one nothing can be matched.
        region_code: Region the fuzzy matcher prices against.
        markup_percent: Org materials markup applied to catalog midpoints.
    """
    if not raw_materials:
        return []

    matches: list[CatalogMatch | None] = [None] * len(raw_materials)

    if org_id:
        for idx, raw in enumerate(raw_materials):
            matches[idx] = await match_alias(org_id, str(raw.get("description") or ""), db)

        pending = [idx for idx, m in enumerate(matches) if m is None]
        if pending:
            lookup = [
                {
                    "description": raw_materials[idx].get("description") or "",
                    "unit": raw_materials[idx].get("unit"),
                    "quantity": to_number(raw_materials[idx].get("quantity")),
                }
                for idx in pending
            ]
            try:
                results = await db.match_catalog_items(org_id, region_code, lookup)
            except PersistenceError as e:
                logger.error("catalog_match_failed", org_id=org_id, error=str(e), materials=len(lookup))
                results = []

            for position, idx in enumerate(pending):
                row = results[position] if position < len(results) else None
                if row and row.get("catalog_item_id"):
                    matches[idx] = CatalogMatch(
                        catalog_item_id=row["catalog_item_id"],
                        unit=row.get("unit"),
                        typical_low_price_cents=row.get("typical_low_price_cents"),
                        typical_high_price_cents=row.get("typical_high_price_cents"),
                        match_confidence=to_number(row.get("match_confidence")),
                    )
    else:
        logger.warning("catalog_match_skipped_no_org", materials=len(raw_materials))

    priced = [
        price_material(raw, match, markup_percent, field_confidence)
        for raw, match in zip(raw_materials, matches)
    ]

    logger.info(
        "catalog_pricing_complete",
        materials=len(priced),
        matched=sum(1 for m in matches if m),
        needs_pricing=sum(1 for p in priced if p.needs_pricing),
    )
    return priced
