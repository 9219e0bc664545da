"""
Quote Materializer.

Converts a gated extraction record into a persisted draft quote with priced
line items. The work runs under an exclusive lock on the intake row, and an
intake whose quote already has line items is replayed, not rebuilt, so the
stage can be called any number of times for the same intake.

Line items are synthesized in a fixed order (labour, materials, travel,
materials pickup, callout). When that yields nothing, items are derived from
the scope of work, and as a last resort a placeholder labour/materials pair
is emitted. A quote is never left without line items.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from src.db import DatabaseClient, get_db
from src.errors import IntakeNotFound, MissingInput, PersistenceError
from src.logging_config import bind_intake, get_logger
from src.schemas.extraction import ExtractionRecord, Severity
from src.schemas.intake import IntakeStage, IntakeStatus, VoiceIntake
from src.schemas.pricing import PricingProfile
from src.schemas.quote import (
    LineItemType,
    MaterializationResult,
    QuoteLineItem,
    QuoteTotals,
    ReviewBlocked,
)
from src.services.customers import resolve_customer
from src.services.line_items import insert_line_items
from src.services.money import apply_markup, format_cents, round_cents
from src.services.pricing_profile import ensure_billable, get_pricing_profile
from src.services.quality_gate import has_low_confidence_labour

logger = get_logger(__name__)

DEFAULT_TRAVEL_HOURS = 0.5
WORKDAYS_PER_WEEK = 5

SCOPE_HOURS = re.compile(r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?)\b", re.IGNORECASE)
SCOPE_DAYS = re.compile(r"(\d+(?:\.\d+)?)\s*(?:days?)\b", re.IGNORECASE)
SCOPE_WEEKS = re.compile(r"(\d+(?:\.\d+)?)\s*(?:weeks?|wks?)\b", re.IGNORECASE)

LABOUR_PLACEHOLDER_NOTE = "Placeholder - please update with actual labour estimate"
MATERIALS_PLACEHOLDER_NOTE = "Placeholder - please add actual materials and pricing"
NEEDS_PRICING_NOTE = "Needs pricing"
REPLAY_WARNING = "Quote already created from this voice intake"


@dataclass
class LineItemBuilder:
    """Ordered accumulator for synthesized line items; position follows insertion order."""

    items: list[QuoteLineItem] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add(
        self,
        item_type: LineItemType,
        description: str,
        quantity: float,
        unit: str,
        unit_price_cents: int,
        notes: Optional[str] = None,
        catalog_item_id: Optional[str] = None,
        is_needs_review: bool = False,
    ) -> QuoteLineItem:
        item = QuoteLineItem(
            item_type=item_type,
            description=description,
            quantity=quantity,
            unit=unit,
            unit_price_cents=unit_price_cents,
            line_total_cents=round_cents(quantity * unit_price_cents),
            position=len(self.items),
            notes=notes,
            catalog_item_id=catalog_item_id,
            is_needs_review=is_needs_review,
        )
        self.items.append(item)
        return item

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def is_empty(self) -> bool:
        return not self.items


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _join_notes(*parts: Optional[str]) -> Optional[str]:
    kept = [p for p in parts if p]
    return " - ".join(kept) if kept else None


# ── Synthesis steps ──────────────────────────────────────────────


def _add_labour(builder: LineItemBuilder, record: ExtractionRecord, profile: PricingProfile) -> None:
    for entry in record.labour_entries:
        hours = entry.hours.value
        days = entry.days.value
        people = entry.people.value if entry.people.value and entry.people.value > 0 else 1

        if (not hours or hours <= 0) and days and days > 0:
            hours = days * profile.workday_hours_default
            logger.info("labour_days_converted", description=entry.description, days=days, hours=hours)

        if not hours or hours <= 0:
            builder.warn(f'Labour entry "{entry.description}" has no hours, skipping')
            continue

        builder.add(
            LineItemType.LABOUR,
            entry.description or "Labour",
            quantity=hours * people,
            unit="hours",
            unit_price_cents=profile.hourly_rate_cents,
            notes=entry.note,
        )


def _add_materials(builder: LineItemBuilder, record: ExtractionRecord, profile: PricingProfile) -> None:
    markup = profile.materials_markup_percent or 0
    for material in record.material_items:
        quantity = material.quantity.value
        if quantity is None or quantity <= 0:
            quantity = 1
            builder.warn(f'Material "{material.description}" had no quantity, defaulted to 1')
        unit = material.unit.value or "unit"

        if material.unit_price_cents and material.unit_price_cents > 0:
            if material.markup_applied:
                unit_price = material.unit_price_cents
                notes = material.notes
            else:
                unit_price = apply_markup(material.unit_price_cents, markup)
                notes = _join_notes(f"Base: {format_cents(material.unit_price_cents)}, Markup: {markup}%", material.notes)
            needs_review = False
        elif material.estimated_cost_cents and material.estimated_cost_cents > 0:
            unit_price = apply_markup(material.estimated_cost_cents, markup)
            notes = _join_notes(
                f"Base estimate: {format_cents(material.estimated_cost_cents)}, Markup: {markup}%", material.notes
            )
            needs_review = False
        else:
            unit_price = 0
            notes = _join_notes(NEEDS_PRICING_NOTE, material.notes)
            needs_review = True
            builder.warn(f'Material "{material.description}" needs pricing')

        builder.add(
            LineItemType.MATERIALS,
            material.description or "Materials",
            quantity=quantity,
            unit=unit,
            unit_price_cents=unit_price,
            notes=notes,
            catalog_item_id=material.catalog_item_id,
            is_needs_review=needs_review,
        )


def _add_travel(builder: LineItemBuilder, record: ExtractionRecord, profile: PricingProfile) -> None:
    travel = record.fees.travel
    is_time = travel.is_time if travel.is_time is not None else profile.travel_is_time

    if is_time:
        hours = travel.hours.value
        if not hours or hours <= 0:
            hours = DEFAULT_TRAVEL_HOURS
            builder.warn(f"Travel time not specified, defaulted to {DEFAULT_TRAVEL_HOURS} hours")
        rate = profile.travel_rate_cents or profile.hourly_rate_cents
        builder.add(LineItemType.FEE, "Travel time", hours, "hours", rate, notes="Travel to job site")
        return

    fee = profile.travel_rate_cents or travel.fee_cents or 0
    if fee > 0:
        builder.add(LineItemType.FEE, "Travel fee", 1, "trip", fee, notes="Fixed travel charge")


def _add_materials_pickup(builder: LineItemBuilder, record: ExtractionRecord, profile: PricingProfile) -> None:
    pickup = record.fees.materials_pickup
    if not (profile.bunnings_run_enabled and pickup and pickup.enabled):
        return
    minutes = pickup.minutes or profile.bunnings_run_minutes_default
    if not minutes or minutes <= 0:
        return
    builder.add(
        LineItemType.FEE,
        "Materials pickup",
        minutes / 60,
        "hours",
        profile.hourly_rate_cents,
        notes="Time to pick up and supply materials",
    )


def _add_callout(builder: LineItemBuilder, record: ExtractionRecord, profile: PricingProfile) -> None:
    fee = record.fees.callout_fee_cents or profile.callout_fee_cents
    if fee and fee > 0:
        builder.add(LineItemType.FEE, "Callout fee", 1, "service", fee)


def _scope_duration(text: str, profile: PricingProfile) -> tuple[float, str] | None:
    """Hours and a human label for the first duration phrase in a scope item."""
    for pattern, unit, factor in (
        (SCOPE_HOURS, "hours", 1),
        (SCOPE_DAYS, "days", profile.workday_hours_default),
        (SCOPE_WEEKS, "weeks", WORKDAYS_PER_WEEK * profile.workday_hours_default),
    ):
        match = pattern.search(text)
        if match:
            amount = float(match.group(1))
            return amount * factor, f"{match.group(1)} {unit}"
    return None


def _add_scope_fallback(builder: LineItemBuilder, record: ExtractionRecord, profile: PricingProfile) -> None:
    for scope_item in record.job.scope_of_work:
        description = scope_item.strip()
        if not description:
            continue

        duration = _scope_duration(description, profile)
        if duration and duration[0] > 0:
            hours, label = duration
            builder.add(
                LineItemType.LABOUR,
                description,
                hours,
                "hours",
                profile.hourly_rate_cents,
                notes=f"Needs review - extracted {label} from scope",
                is_needs_review=True,
            )
            builder.warn(f'Created labour item from scope: "{description}" with {_format_number(hours)}hrs extracted from text')
        else:
            builder.add(
                LineItemType.MATERIALS,
                description,
                1,
                "item",
                0,
                notes="Needs review - from scope, pricing required",
                is_needs_review=True,
            )
            builder.warn(f'Created material/scope item from scope: "{description}" - pricing required')


def _add_placeholders(builder: LineItemBuilder, profile: PricingProfile) -> None:
    builder.add(
        LineItemType.LABOUR,
        "Labour (needs estimation)",
        1,
        "hours",
        profile.hourly_rate_cents,
        notes=LABOUR_PLACEHOLDER_NOTE,
    )
    builder.add(
        LineItemType.MATERIALS,
        "Materials (needs pricing)",
        1,
        "item",
        0,
        notes=MATERIALS_PLACEHOLDER_NOTE,
    )
    builder.warn("Created placeholder labour and materials items - nothing could be derived from the extraction")
    logger.warning("placeholder_line_items_created", reason="no_line_items_or_scope")


def synthesize_line_items(record: ExtractionRecord, profile: PricingProfile) -> LineItemBuilder:
    """
    Build the quote's line items from ``record``. Pure: no I/O.

    Always returns at least one item.
    """
    builder = LineItemBuilder()
    _add_labour(builder, record, profile)
    _add_materials(builder, record, profile)
    _add_travel(builder, record, profile)
    _add_materials_pickup(builder, record, profile)
    _add_callout(builder, record, profile)

    if builder.is_empty:
        logger.info("line_items_scope_fallback", scope_items=len(record.job.scope_of_work))
        _add_scope_fallback(builder, record, profile)

    if builder.is_empty:
        _add_placeholders(builder, profile)

    return builder


def compute_totals(items: list[QuoteLineItem], profile: PricingProfile) -> QuoteTotals:
    """Subtotals by item type plus tax at the profile's default rate."""
    labour = sum(i.line_total_cents for i in items if i.item_type == LineItemType.LABOUR)
    materials = sum(i.line_total_cents for i in items if i.item_type == LineItemType.MATERIALS)
    fees = sum(i.line_total_cents for i in items if i.item_type == LineItemType.FEE)
    subtotal = labour + materials + fees
    rate = (profile.default_tax_rate or 0) / 100

    if profile.org_tax_inclusive:
        tax = round_cents(subtotal - subtotal / (1 + rate)) if rate else 0
        total = subtotal
    else:
        tax = round_cents(subtotal * rate)
        total = subtotal + tax

    return QuoteTotals(
        labour_cents=labour,
        materials_cents=materials,
        fees_cents=fees,
        subtotal_cents=subtotal,
        tax_cents=tax,
        total_cents=total,
        tax_inclusive=profile.org_tax_inclusive,
    )


# ── Persistence flow ─────────────────────────────────────────────


async def resolve_catalog_prices(record: ExtractionRecord, db: DatabaseClient) -> ExtractionRecord:
    """Fill unit prices for catalog-matched materials that were left unpriced."""
    for material in record.material_items:
        if not material.catalog_item_id or (material.unit_price_cents and material.unit_price_cents > 0):
            continue
        catalog_item = await db.get_catalog_item(material.catalog_item_id)
        if not catalog_item:
            continue
        if catalog_item.get("unit_price_cents"):
            material.unit_price_cents = catalog_item["unit_price_cents"]
        elif catalog_item.get("typical_low_price_cents") and catalog_item.get("typical_high_price_cents"):
            material.unit_price_cents = round_cents(
                (catalog_item["typical_low_price_cents"] + catalog_item["typical_high_price_cents"]) / 2
            )
        else:
            continue
        material.markup_applied = False
        logger.info(
            "catalog_price_resolved",
            description=material.description,
            catalog_item_id=material.catalog_item_id,
            unit_price_cents=material.unit_price_cents,
        )
    return record


def review_block(record: ExtractionRecord, corrections_supplied: bool) -> ReviewBlocked | None:
    """Refuse materialization of an unconfirmed record with required gaps or weak labour."""
    if record.quality.user_confirmed or corrections_supplied:
        return None

    assumptions = [a.model_dump(mode="json") for a in record.assumptions]
    required = [mf for mf in record.missing_fields if mf.severity == Severity.REQUIRED]
    if required:
        return ReviewBlocked(
            reason="required_fields_missing",
            missing_fields=[mf.model_dump(mode="json") for mf in required],
            assumptions=assumptions,
            message="Cannot create quote - required fields are missing. Please review and provide missing information.",
        )
    if has_low_confidence_labour(record):
        return ReviewBlocked(
            reason="low_confidence_labour",
            missing_fields=[mf.model_dump(mode="json") for mf in record.missing_fields],
            assumptions=assumptions,
            message="Cannot create quote - labour estimates are too uncertain. Please review and confirm hours.",
        )
    return None


def timeline_description(record: ExtractionRecord) -> str | None:
    low, high = record.job.estimated_days_min, record.job.estimated_days_max
    if low and high:
        if low == high:
            return f"{_format_number(low)} {'day' if low == 1 else 'days'}"
        return f"{_format_number(low)}-{_format_number(high)} days"
    if high:
        return f"{_format_number(high)} {'day' if high == 1 else 'days'}"
    return None


def quote_fields(record: ExtractionRecord, profile: PricingProfile, customer_id: str) -> dict[str, Any]:
    """Columns shared by a new quote and an updated quote shell."""
    site_address = (record.job.site_address or "").strip() or None
    description = record.job.summary or ""
    if site_address:
        description = f"Site: {site_address}\n\n{description}" if description else f"Site: {site_address}"

    return {
        "customer_id": customer_id,
        "title": record.job.title or "Voice Quote",
        "description": description,
        "site_address": site_address,
        "timeline_description": timeline_description(record),
        "scope_of_work": record.job.scope_of_work,
        "currency": profile.default_currency,
        "default_tax_rate": profile.default_tax_rate,
        "tax_inclusive": profile.org_tax_inclusive,
        "terms_and_conditions": profile.default_payment_terms or None,
    }


def pricing_summary(profile: PricingProfile) -> dict[str, Any]:
    return {
        "hourly_rate": format_cents(profile.hourly_rate_cents),
        "materials_markup": f"{profile.materials_markup_percent}%",
        "tax_rate": f"{profile.default_tax_rate}%",
        "currency": profile.default_currency,
        "travel_rate": format_cents(profile.travel_rate_cents) if profile.travel_rate_cents else "Same as hourly",
        "travel_is_time": profile.travel_is_time,
    }


async def _replay_if_materialized(intake: VoiceIntake, db: DatabaseClient) -> MaterializationResult | None:
    if not intake.created_quote_id:
        return None

    count = await db.count_line_items(intake.created_quote_id)
    if count is None:
        raise PersistenceError("Could not verify existing line items for this intake's quote")
    if count == 0:
        return None

    quote = await db.get_quote(intake.created_quote_id)
    if not quote:
        raise PersistenceError("Existing quote not found")

    logger.info("materialization_replayed", quote_id=quote["id"], line_items=count)
    return MaterializationResult(
        quote_id=quote["id"],
        intake_id=intake.id,
        idempotent_replay=True,
        requires_review=intake.status == IntakeStatus.NEEDS_USER_REVIEW,
        line_items_count=count,
        readable_items_count=count,
        warnings=[REPLAY_WARNING],
        pricing_used=(intake.extraction_json or {}).get("pricing_used") or {},
    )


async def _check_readable(quote_id: str, inserted: int, db: DatabaseClient) -> int:
    readable = await db.count_line_items(quote_id)
    if readable is None:
        logger.error("line_items_postcondition_check_failed", quote_id=quote_id, inserted=inserted)
        return 0
    if readable == 0 and inserted > 0:
        logger.error("line_items_unreadable", quote_id=quote_id, inserted=inserted, readable=readable)
    elif readable != inserted:
        logger.warning("line_items_count_mismatch", quote_id=quote_id, inserted=inserted, readable=readable)
    return readable


async def materialize_quote(
    intake_id: str,
    user_id: str,
    trace_id: str | None = None,
    db: DatabaseClient | None = None,
) -> Union[MaterializationResult, ReviewBlocked]:
    """
    Create (or complete) the draft quote for an intake.

    Returns:
        ``MaterializationResult`` on success or replay, ``ReviewBlocked``
        when the extraction must be reviewed first.

    Raises:
        IntakeNotFound, MissingInput, PricingProfileMissing,
        InvalidPricingProfile, PersistenceError.
    """
    if not intake_id:
        raise MissingInput("Missing intake_id")
    db = db or get_db()
    bind_intake(intake_id)

    row = await db.lock_intake_for_quote_creation(intake_id, user_id)
    if not row:
        raise IntakeNotFound("Voice intake not found or could not be locked")
    intake = VoiceIntake.from_row(row)
    logger.info("materialization_lock_acquired", user_id=user_id, client_trace_id=trace_id)

    replay = await _replay_if_materialized(intake, db)
    if replay:
        return replay

    if not intake.extraction_json:
        raise MissingInput("No extraction data found for this voice intake")
    record = ExtractionRecord.model_validate(intake.extraction_json)

    blocked = review_block(record, intake.user_corrections_json is not None)
    if blocked:
        logger.info("materialization_blocked", reason=blocked.reason)
        return blocked

    await db.update_intake(intake_id, {"stage": IntakeStage.DRAFT_STARTED.value})
    try:
        return await _materialize(intake, record, user_id, db)
    except Exception as e:
        logger.error("materialization_failed", error=str(e), error_type=type(e).__name__)
        try:
            await db.update_intake(intake_id, {"stage": IntakeStage.FAILED.value, "error_message": str(e)})
        except PersistenceError as stage_error:
            logger.error("stage_update_failed", stage=IntakeStage.FAILED.value, error=str(stage_error))
        raise


async def _materialize(
    intake: VoiceIntake,
    record: ExtractionRecord,
    user_id: str,
    db: DatabaseClient,
) -> MaterializationResult:
    started = time.monotonic()
    needs_review = not record.quality.user_confirmed and record.quality.requires_user_confirmation

    profile = ensure_billable(await get_pricing_profile(user_id, db))
    customer_id = await resolve_customer(intake.customer_id, record.customer, profile.org_id, db)
    fields = quote_fields(record, profile, customer_id)

    if intake.created_quote_id:
        logger.info("quote_shell_updated", quote_id=intake.created_quote_id)
        quote = await db.update_quote(intake.created_quote_id, fields)
    else:
        quote_number = await db.generate_quote_number(profile.org_id)
        quote = await db.create_quote({
            **fields,
            "org_id": profile.org_id,
            "quote_number": quote_number,
            "status": "draft",
            "source": "voice",
        })
        logger.info("quote_created", quote_id=quote["id"], quote_number=quote_number)

    # Link before line items so a failed insert is retried against this shell
    await db.update_intake(intake.id, {"created_quote_id": quote["id"], "customer_id": customer_id})

    record = await resolve_catalog_prices(record, db)
    builder = synthesize_line_items(record, profile)
    await insert_line_items(quote["id"], profile.org_id, builder.items, db)
    readable = await _check_readable(quote["id"], len(builder.items), db)

    record.pricing_used = profile.snapshot()
    final_status = IntakeStatus.NEEDS_USER_REVIEW if needs_review else IntakeStatus.QUOTE_CREATED
    await db.update_intake(
        intake.id,
        {
            "created_quote_id": quote["id"],
            "customer_id": customer_id,
            "status": final_status.value,
            "stage": IntakeStage.DRAFT_DONE.value,
            "extraction_json": record.to_json(),
        },
    )

    logger.info(
        "materialization_complete",
        quote_id=quote["id"],
        status=final_status.value,
        line_items=len(builder.items),
        readable=readable,
        warnings=len(builder.warnings),
        duration_ms=round((time.monotonic() - started) * 1000),
    )

    return MaterializationResult(
        quote_id=quote["id"],
        intake_id=intake.id,
        idempotent_replay=False,
        requires_review=needs_review,
        line_items_count=len(builder.items),
        readable_items_count=readable,
        warnings=builder.warnings,
        pricing_used=pricing_summary(profile),
        totals=compute_totals(builder.items, profile),
    )
