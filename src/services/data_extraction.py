"""
Data Extraction Service.

Turns a transcript into the canonical ``ExtractionRecord``. The model is
asked for raw facts only (what was said, never prices or quality metadata);
everything derived (confidence wrappers, catalog prices, the deterministic
confidence score, missing fields and the review decision) is computed here.

When the caller supplies corrections for an intake that already has an
extraction, the model is not contacted at all: corrections are merged into
the stored record and the gate honours the user's confirmation.
"""

from __future__ import annotations

import json
import re
import time
from datetime import date
from typing import Any, Optional

from src.config import get_settings
from src.db import DatabaseClient, get_db
from src.errors import IntakeNotFound, InvalidState, MissingInput, ProviderError, UnrepairableExtraction
from src.logging_config import bind_intake, get_logger
from src.schemas.extraction import (
    Assumption,
    ExtractionRecord,
    MissingField,
    Severity,
)
from src.schemas.intake import (
    ExtractResponse,
    IntakeStatus,
    QualitySummary,
    VoiceIntake,
)
from src.schemas.pricing import PricingProfile
from src.services.catalog_pricing import match_and_price_materials
from src.services.corrections import merge_corrections
from src.services.money import to_cents, to_number
from src.services.openai_client import TextGenerationClient
from src.services.pricing_profile import get_pricing_profile
from src.services.quality_gate import apply_quality_gate

logger = get_logger(__name__)

# Base score before deterministic penalties
BASE_CONFIDENCE = 0.85
TITLE_PENALTY = 0.15
SCOPE_PENALTY = 0.10
LABOUR_PENALTY = 0.10
MATERIALS_PENALTY = 0.10
ADDRESS_PENALTY = 0.05

LABOUR_WORDS = re.compile(r"\b(hour|hours|day|days|week|weeks)\b")
MATERIAL_WORDS = re.compile(r"\b(buy|supply|purchase|material|materials|timber|paint|sheet)\b")

PLACEHOLDER_TITLE = "processing job"

# The extraction prompt. The model reports what was said; it never prices,
# matches catalog items, or grades its own output.
PROMPT_LINES = [
    "You are an expert trade quoting assistant.",
    "Extract only what the user said. Do not invent pricing. Do not invent catalog items.",
    "Return only valid JSON. No markdown. No comments. No extra keys.",
    "Use null for unknown values. Never output NaN. Never output Infinity.",
    "Do not perform catalog matching. Do not output catalog_item_id.",
    "Do not output unit_price_cents. Do not output estimated_cost_cents.",
    "Do not output pricing_defaults_used. Do not output missing_fields severity. Do not output quality critical lists.",
    "Keep content short. Use concise strings.",
    "",
    "EXTRACTION RULES:",
    "1. VAGUE DURATIONS: couple hours equals 2 hours, few days equals 3 days",
    "2. VAGUE QUANTITIES: couple equals 2, few equals 3, some equals 5",
    "3. RANGES: three or four days store min 3 max 4 use max for estimates",
    "4. UNIT NORMALIZATION: metres meters m lm all equal m, square metres sqm m2 all equal sqm",
    "5. Extract all scope of work tasks as separate items in array",
    "6. JOB TITLE: a concise 3-6 word name for the main work from the first sentences,",
    "   e.g. 'Need new kitchen cabinets installed' becomes 'Kitchen cabinet installation'.",
    "   Always return a title.",
    "",
    "Return ONLY this exact JSON structure:",
    "{",
    '  "customer": { "name": string|null, "email": string|null, "phone": string|null },',
    '  "job": {',
    '    "title": string,',
    '    "summary": string|null,',
    '    "site_address": string|null,',
    '    "estimated_days_min": number|null,',
    '    "estimated_days_max": number|null,',
    '    "job_date": string|null,',
    '    "scope_of_work": string[]',
    "  },",
    '  "time": {',
    '    "labour_entries": [',
    '      { "description": string, "hours": number|null, "days": number|null, "people": number|null, "note": string|null }',
    "    ]",
    "  },",
    '  "materials": {',
    '    "items": [',
    '      { "description": string, "quantity": number|null, "unit": string|null, "notes": string|null }',
    "    ]",
    "  },",
    '  "fees": {',
    '    "travel_hours": number|null,',
    '    "materials_supply_hours": number|null,',
    '    "callout_fee_cents": number|null',
    "  },",
    '  "assumptions": [',
    '    { "field": string, "assumption": string, "confidence": number|null, "source": string|null }',
    "  ]",
    "}",
]

EXTRACTION_PROMPT = "\n".join(PROMPT_LINES)

REPAIR_SYSTEM_PROMPT = "You convert invalid JSON into valid JSON. Output only valid JSON."
REPAIR_USER_PROMPT = (
    "Fix this so it becomes valid JSON. Do not change keys or structure. "
    "Replace NaN or Infinity with null. Remove trailing commas. Output only JSON.\n\n{raw}"
)


def build_extraction_prompt(
    transcript: str,
    profile: PricingProfile,
    existing_customer: dict[str, Any] | None = None,
) -> str:
    """Build the user message: transcript, minimal pricing context, and the bound customer if any."""
    message = (
        f"Transcript:\n{transcript}\n\n"
        f"Pricing Defaults:\n{json.dumps(profile.minimal_context())}"
    )
    if existing_customer:
        known = {
            "name": existing_customer.get("name"),
            "email": existing_customer.get("email") or None,
            "phone": existing_customer.get("phone") or None,
        }
        message += (
            "\n\nIMPORTANT: Customer is already selected. DO NOT extract customer information. "
            f"Use these details:\n{json.dumps(known)}\n\n"
            "Focus ONLY on extracting job details, materials, and time estimates."
        )
    return message


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} in JSON")


def parse_json_object(raw: str) -> dict[str, Any]:
    """Strict parse: NaN/Infinity and non-object payloads are errors."""
    parsed = json.loads(raw, parse_constant=_reject_constant)
    if not isinstance(parsed, dict):
        raise ValueError("expected a JSON object")
    return parsed


async def parse_or_repair(raw: str, llm: TextGenerationClient, intake_id: str = "") -> dict[str, Any]:
    """
    Parse the model output, asking the model once to reformat it if needed.

    Raises:
        UnrepairableExtraction: neither the output nor its repair parses.
    """
    try:
        return parse_json_object(raw)
    except ValueError as parse_error:
        logger.warning(
            "json_repair_attempted",
            intake_id=intake_id,
            error=str(parse_error),
            content_length=len(raw),
            head=raw[:200],
            tail=raw[-200:],
        )
        try:
            repaired = await llm.complete_json(
                REPAIR_SYSTEM_PROMPT,
                REPAIR_USER_PROMPT.format(raw=raw),
                temperature=0.0,
                max_tokens=llm.settings.repair_max_tokens,
            )
            result = parse_json_object(repaired)
        except (ValueError, ProviderError) as repair_error:
            logger.error("json_repair_failed", intake_id=intake_id, error=str(repair_error), head=raw[:200])
            raise UnrepairableExtraction(
                f"Model returned invalid JSON and repair failed: {parse_error}"
            ) from repair_error

        logger.info("json_repair_succeeded", intake_id=intake_id)
        return result


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def generate_fallback_title(raw: dict[str, Any], transcript: str, today: date | None = None) -> str:
    """
    Title for a job the model left untitled.

    First scope item, else the opening sentence when it is 10-100 chars,
    else the first labour description, else the first material, else a
    dated generic title.
    """
    scope = [s for s in (_text(item) for item in _list(_section(raw, "job").get("scope_of_work"))) if s]
    if scope:
        return scope[0][:60]

    sentences = [s.strip() for s in re.split(r"[.!?]+", transcript or "") if s.strip()]
    if sentences and 10 <= len(sentences[0]) <= 100:
        return sentences[0][:60]

    labour = _list(_section(raw, "time").get("labour_entries"))
    if labour and isinstance(labour[0], dict) and _text(labour[0].get("description")):
        return _text(labour[0]["description"])[:60]

    materials = _list(_section(raw, "materials").get("items"))
    if materials and isinstance(materials[0], dict) and _text(materials[0].get("description")):
        return f"Supply {_text(materials[0]['description'])[:50]}"

    today = today or date.today()
    return f"Voice Quote {today.strftime('%d/%m/%Y')}"


def _wrap(value: Any, confidence: float) -> dict[str, Any]:
    if value is None:
        return {"value": None, "confidence": 0.0}
    return {"value": value, "confidence": confidence}


def normalize_extraction(
    raw: dict[str, Any],
    profile: PricingProfile,
    transcript: str,
    field_confidence: float | None = None,
) -> ExtractionRecord:
    """
    Build the canonical record from the model's raw JSON.

    Correctable scalars are wrapped at ``field_confidence``; absent ones get
    confidence 0. Materials are left empty here because they are priced
    against the catalog separately.
    """
    conf = get_settings().default_field_confidence if field_confidence is None else field_confidence
    job = _section(raw, "job")
    fees = _section(raw, "fees")
    customer = _section(raw, "customer")

    title = _text(job.get("title"))
    if not title or title.lower() == PLACEHOLDER_TITLE:
        title = generate_fallback_title(raw, transcript) if transcript else None
        logger.info("fallback_title_generated", title=title)

    labour_entries = []
    for entry in _list(_section(raw, "time").get("labour_entries")):
        if not isinstance(entry, dict):
            continue
        labour_entries.append({
            "description": _text(entry.get("description")) or "",
            "hours": _wrap(to_number(entry.get("hours")), conf),
            "days": _wrap(to_number(entry.get("days")), conf),
            "people": _wrap(to_number(entry.get("people")), conf),
            "note": _text(entry.get("note")),
        })

    supply_hours = to_number(fees.get("materials_supply_hours"))
    materials_pickup = None
    if supply_hours and supply_hours > 0:
        materials_pickup = {"enabled": True, "minutes": supply_hours * 60}

    assumptions = []
    for item in _list(raw.get("assumptions")):
        if isinstance(item, dict) and _text(item.get("field")):
            assumptions.append({
                "field": _text(item.get("field")),
                "assumption": _text(item.get("assumption")) or "",
                "confidence": to_number(item.get("confidence")) or 0.0,
                "source": _text(item.get("source")),
            })

    callout = to_cents(fees.get("callout_fee_cents"))

    return ExtractionRecord.model_validate({
        "customer": {
            "name": _text(customer.get("name")),
            "email": _text(customer.get("email")),
            "phone": _text(customer.get("phone")),
        },
        "job": {
            "title": title,
            "summary": _text(job.get("summary")),
            "site_address": _text(job.get("site_address")),
            "estimated_days_min": to_number(job.get("estimated_days_min")),
            "estimated_days_max": to_number(job.get("estimated_days_max")),
            "job_date": _text(job.get("job_date")),
            "scope_of_work": _list(job.get("scope_of_work")),
        },
        "time": {"labour_entries": labour_entries},
        "materials": {"items": []},
        "fees": {
            "travel": {"hours": _wrap(to_number(fees.get("travel_hours")), conf)},
            "materials_pickup": materials_pickup,
            "callout_fee_cents": callout if callout and callout > 0 else None,
        },
        "pricing_defaults_used": {
            "hourly_rate_cents": profile.hourly_rate_cents,
            "materials_markup_percent": profile.materials_markup_percent,
            "tax_rate_percent": profile.default_tax_rate,
            "currency": profile.default_currency,
        },
        "assumptions": assumptions,
        "missing_fields": [],
        "quality": {"overall_confidence": conf},
    })


def compute_deterministic_confidence(record: ExtractionRecord, transcript: str) -> float:
    """
    Score the extraction from its structure and the transcript alone.

    Starts at 0.85 and subtracts for a missing title, empty scope, labour or
    materials vocabulary in the transcript with nothing extracted, and a
    missing site address. Clamped to [0, 1].
    """
    confidence = BASE_CONFIDENCE
    text = (transcript or "").lower()

    if not record.job.title:
        confidence -= TITLE_PENALTY
    if not record.job.scope_of_work:
        confidence -= SCOPE_PENALTY
    if not record.labour_entries and LABOUR_WORDS.search(text):
        confidence -= LABOUR_PENALTY
    if not record.material_items and MATERIAL_WORDS.search(text):
        confidence -= MATERIALS_PENALTY
    if not record.job.site_address:
        confidence -= ADDRESS_PENALTY

    return max(0.0, min(1.0, confidence))


def generate_missing_fields(record: ExtractionRecord) -> list[MissingField]:
    """Rule-based missing-field list; only a record with no work at all is ``required``."""
    missing: list[MissingField] = []

    has_no_content = not record.job.scope_of_work and not record.job.summary
    has_no_work_data = (
        not record.labour_entries
        and not record.material_items
        and not record.fees.travel.hours.value
        and not record.fees.callout_fee_cents
    )
    if has_no_content and has_no_work_data and not record.job.title:
        missing.append(MissingField(
            field="work_description", reason="No work description at all", severity=Severity.REQUIRED
        ))

    if not record.customer.name:
        missing.append(MissingField(field="customer_name", reason="Customer name not provided"))
    if not record.job.site_address:
        missing.append(MissingField(field="site_address", reason="Site address not provided"))

    for idx, entry in enumerate(record.labour_entries):
        if not entry.hours.value and not entry.days.value:
            missing.append(MissingField(field=f"labour_entry_{idx}_time", reason="Labour time not specified"))

    unpriced = sum(1 for item in record.material_items if item.needs_pricing)
    if unpriced:
        missing.append(MissingField(field="materials_pricing", reason=f"{unpriced} materials need pricing"))

    return missing


def _apply_known_customer(record: ExtractionRecord, customer: dict[str, Any]) -> None:
    record.customer.name = customer.get("name")
    record.customer.email = customer.get("email") or None
    record.customer.phone = customer.get("phone") or None
    record.assumptions.append(Assumption(
        field="customer",
        assumption=f"Customer pre-selected: {customer.get('name')}",
        confidence=1.0,
        source="user_selection",
    ))


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)


async def extract_intake(
    intake_id: str,
    user_id: str,
    user_corrections_json: dict[str, Any] | None = None,
    trace_id: str | None = None,
    db: DatabaseClient | None = None,
    llm: TextGenerationClient | None = None,
) -> ExtractResponse:
    """
    Run the extraction stage for one intake.

    Fresh extraction needs status ``transcribed`` (or ``needs_user_review``
    for a re-run). With corrections, the stored extraction is merged instead
    and the status must be ``extracted`` or ``needs_user_review``.

    Raises:
        IntakeNotFound, InvalidState, MissingInput, PricingProfileMissing,
        ProviderError, UnrepairableExtraction, PersistenceError.
    """
    db = db or get_db()
    started = time.monotonic()
    bind_intake(intake_id)
    performance: dict[str, Any] = {}

    row = await db.get_intake(intake_id, user_id)
    if not row:
        raise IntakeNotFound("Voice intake not found")
    intake = VoiceIntake.from_row(row)

    if intake.status == IntakeStatus.QUOTE_CREATED:
        raise InvalidState("A quote has already been created from this intake")

    corrections_supplied = user_corrections_json is not None

    logger.info(
        "extraction_started",
        user_id=user_id,
        client_trace_id=trace_id,
        status=intake.status.value,
        corrections=corrections_supplied,
    )

    if corrections_supplied and intake.extraction_json:
        if intake.status not in (IntakeStatus.EXTRACTED, IntakeStatus.NEEDS_USER_REVIEW):
            raise InvalidState(f"Cannot apply corrections to an intake with status: {intake.status.value}")
        stored = ExtractionRecord.model_validate(intake.extraction_json)
        record = merge_corrections(stored, user_corrections_json, intake_id)
    else:
        if corrections_supplied:
            # Nothing to merge into; the corrections are stored but a fresh extraction runs
            logger.warning("corrections_ignored_no_extraction", intake_id=intake_id, status=intake.status.value)
        if intake.status not in (IntakeStatus.TRANSCRIBED, IntakeStatus.NEEDS_USER_REVIEW):
            raise InvalidState(f"Voice intake is not ready for extraction (status: {intake.status.value})")
        if not intake.transcript_text:
            raise MissingInput("No transcript available for extraction")
        record = await _extract_fresh(intake, user_id, db, llm or TextGenerationClient(), performance)

    decision = apply_quality_gate(record, corrections_supplied, intake_id)
    settings = get_settings()

    await db.update_intake(
        intake_id,
        {
            "extraction_json": record.to_json(),
            "extraction_model": settings.extraction_model,
            "extraction_confidence": decision.overall_confidence,
            "missing_fields": [mf.model_dump(mode="json") for mf in record.missing_fields],
            "assumptions": [a.model_dump(mode="json") for a in record.assumptions],
            "status": decision.status.value,
            "user_corrections_json": user_corrections_json,
        },
    )

    performance["total_duration_ms"] = _elapsed_ms(started)
    logger.info(
        "extraction_complete",
        status=decision.status.value,
        reason=decision.reason.value,
        overall_confidence=decision.overall_confidence,
        missing_fields=len(record.missing_fields),
        duration_ms=performance["total_duration_ms"],
    )

    return ExtractResponse(
        intake_id=intake_id,
        status=decision.status,
        requires_review=decision.requires_review,
        review_reason=decision.reason.value if decision.requires_review else None,
        extracted_data=record.to_json(),
        quality_summary=QualitySummary(
            overall_confidence=decision.overall_confidence,
            missing_fields_count=len(record.missing_fields),
            required_missing_count=sum(1 for mf in record.missing_fields if mf.severity == Severity.REQUIRED),
            assumptions_count=len(record.assumptions),
            has_low_confidence_labour=decision.has_low_confidence_labour,
        ),
        performance=performance,
    )


async def _extract_fresh(
    intake: VoiceIntake,
    user_id: str,
    db: DatabaseClient,
    llm: TextGenerationClient,
    performance: dict[str, Any],
) -> ExtractionRecord:
    existing_customer = None
    if intake.customer_id:
        existing_customer = await db.get_customer(intake.customer_id)
        if not existing_customer:
            logger.warning("preselected_customer_missing", customer_id=intake.customer_id)

    profile = await get_pricing_profile(user_id, db)
    transcript = intake.transcript_text or ""

    llm_started = time.monotonic()
    content = await llm.complete_json(
        EXTRACTION_PROMPT,
        build_extraction_prompt(transcript, profile, existing_customer),
        temperature=0.0,
    )
    raw = await parse_or_repair(content, llm, intake.id)
    performance["gpt_duration_ms"] = _elapsed_ms(llm_started)

    post_started = time.monotonic()
    record = normalize_extraction(raw, profile, transcript)
    if existing_customer:
        _apply_known_customer(record, existing_customer)

    catalog_started = time.monotonic()
    record.materials.items = await match_and_price_materials(
        [item for item in _list(_section(raw, "materials").get("items")) if isinstance(item, dict)],
        profile.org_id,
        profile.region_code,
        profile.materials_markup_percent,
        db,
        field_confidence=get_settings().default_field_confidence,
    )
    performance["catalog_match_ms"] = _elapsed_ms(catalog_started)

    record.quality.overall_confidence = compute_deterministic_confidence(record, transcript)
    record.missing_fields = generate_missing_fields(record)
    performance["post_process_ms"] = _elapsed_ms(post_started)
    return record
