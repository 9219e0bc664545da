"""Unit tests for the extraction stage.

Tests cover:
- Strict JSON parsing and the single repair attempt
- Normalization into confidence-wrapped fields
- Deterministic confidence scoring and missing-field rules
- Fallback job titles
- The full stage: fresh extraction, corrections re-run, pre-selected customer
"""

import json
from datetime import date
from unittest.mock import patch

import pytest

from src.errors import InvalidState, MissingInput, ProviderError, UnrepairableExtraction
from src.schemas.extraction import ExtractionRecord, Severity
from src.services.data_extraction import (
    compute_deterministic_confidence,
    extract_intake,
    generate_fallback_title,
    generate_missing_fields,
    normalize_extraction,
    parse_json_object,
    parse_or_repair,
)

USER_ID = "user-1"

DECK_TRANSCRIPT = (
    "Replace the back deck at 12 Smith Street for Jane. "
    "Two of us for six hours, and we need ten metres of treated pine."
)


def _model_output(**overrides) -> dict:
    output = {
        "customer": {"name": "Jane Citizen", "email": None, "phone": None},
        "job": {
            "title": "Back deck replacement",
            "summary": "Replace the rear deck boards",
            "site_address": "12 Smith Street",
            "estimated_days_min": None,
            "estimated_days_max": None,
            "job_date": None,
            "scope_of_work": ["Remove old boards", "Lay new decking"],
        },
        "time": {"labour_entries": [{"description": "Deck work", "hours": 6, "days": None, "people": 2, "note": None}]},
        "materials": {"items": [{"description": "Treated pine", "quantity": 10, "unit": "m", "notes": None}]},
        "fees": {"travel_hours": None, "materials_supply_hours": None, "callout_fee_cents": None},
        "assumptions": [],
    }
    output.update(overrides)
    return output


@pytest.fixture
def pine_alias() -> dict:
    """Exact alias row joined to its catalog item."""
    return {
        "alias_text": "treated pine",
        "normalized_alias": "treated pine",
        "priority": 0,
        "material_catalog_items": {
            "id": "cat-pine",
            "unit": "m",
            "typical_low_price_cents": 1000,
            "typical_high_price_cents": 1400,
        },
    }


# ── Parsing ──────────────────────────────────────────────────────


def test_parse_json_object_rejects_nan() -> None:
    with pytest.raises(ValueError):
        parse_json_object('{"hours": NaN}')


def test_parse_json_object_rejects_arrays() -> None:
    with pytest.raises(ValueError):
        parse_json_object("[1, 2]")


@pytest.mark.asyncio
async def test_parse_or_repair_returns_valid_json_without_model_call(fake_llm) -> None:
    llm = fake_llm()

    assert await parse_or_repair('{"a": 1}', llm) == {"a": 1}
    assert llm.calls == []


@pytest.mark.asyncio
async def test_parse_or_repair_repairs_once(fake_llm) -> None:
    """NaN output is sent back once for reformatting."""
    llm = fake_llm(['{"hours": null}'])

    result = await parse_or_repair('{"hours": NaN}', llm)

    assert result == {"hours": None}
    assert len(llm.calls) == 1
    assert "NaN" in llm.calls[0]["user"]


@pytest.mark.asyncio
async def test_parse_or_repair_gives_up_after_failed_repair(fake_llm) -> None:
    llm = fake_llm(["still {not json"])

    with pytest.raises(UnrepairableExtraction):
        await parse_or_repair("{broken", llm)


@pytest.mark.asyncio
async def test_parse_or_repair_provider_failure_is_unrepairable(fake_llm) -> None:
    llm = fake_llm([ProviderError("timeout")])

    with pytest.raises(UnrepairableExtraction):
        await parse_or_repair("{broken", llm)


# ── Normalization ────────────────────────────────────────────────


def test_normalize_wraps_present_values_and_zeroes_absent(profile) -> None:
    """Stated values carry the default confidence; absent ones carry zero."""
    record = normalize_extraction(_model_output(), profile, DECK_TRANSCRIPT, field_confidence=0.85)

    entry = record.labour_entries[0]
    assert entry.hours.value == 6
    assert entry.hours.confidence == 0.85
    assert entry.people.value == 2
    assert entry.days.value is None
    assert entry.days.confidence == 0.0
    assert record.fees.travel.hours.confidence == 0.0
    assert record.material_items == []
    assert record.pricing_defaults_used["hourly_rate_cents"] == 10000


def test_normalize_maps_supply_hours_and_callout(profile) -> None:
    output = _model_output(fees={"travel_hours": "1.5", "materials_supply_hours": 0.5, "callout_fee_cents": 8000})

    record = normalize_extraction(output, profile, DECK_TRANSCRIPT)

    assert record.fees.travel.hours.value == 1.5
    assert record.fees.materials_pickup.enabled is True
    assert record.fees.materials_pickup.minutes == 30
    assert record.fees.callout_fee_cents == 8000


def test_normalize_replaces_placeholder_title(profile) -> None:
    """The model's "Processing job" stand-in is never kept."""
    output = _model_output(job={"title": "Processing job", "scope_of_work": ["Patch plaster ceiling"]})

    record = normalize_extraction(output, profile, "Patch the ceiling please")

    assert record.job.title == "Patch plaster ceiling"


# ── Confidence and missing fields ────────────────────────────────


def test_deterministic_confidence_full_record(profile) -> None:
    record = normalize_extraction(_model_output(), profile, DECK_TRANSCRIPT)
    record.materials.items = ExtractionRecord.model_validate(
        {"materials": {"items": [{"description": "Treated pine"}]}}
    ).material_items

    assert compute_deterministic_confidence(record, DECK_TRANSCRIPT) == pytest.approx(0.85)


def test_deterministic_confidence_penalties_stack() -> None:
    """Missing scope, unextracted labour talk and no address each cost points."""
    record = ExtractionRecord.model_validate({"job": {"title": "Yard cleanup"}})

    confidence = compute_deterministic_confidence(record, "Sort out the yard, maybe a few days")

    assert confidence == pytest.approx(0.60)


def test_deterministic_confidence_material_words() -> None:
    record = ExtractionRecord.model_validate({"job": {"scope_of_work": ["Paint fence"], "site_address": "1 Rd"}})

    confidence = compute_deterministic_confidence(record, "We will supply the paint")

    assert confidence == pytest.approx(0.85 - 0.15 - 0.10)


def test_missing_fields_empty_record_is_required() -> None:
    missing = generate_missing_fields(ExtractionRecord())

    required = [mf for mf in missing if mf.severity == Severity.REQUIRED]
    assert [mf.field for mf in required] == ["work_description"]
    assert {mf.field for mf in missing} >= {"customer_name", "site_address"}


def test_missing_fields_warn_on_untimed_labour_and_unpriced_materials() -> None:
    record = ExtractionRecord.model_validate({
        "customer": {"name": "Jane"},
        "job": {"title": "Fence", "site_address": "1 Rd"},
        "time": {"labour_entries": [{"description": "Build fence"}]},
        "materials": {"items": [{"description": "Palings", "needs_pricing": True}]},
    })

    missing = generate_missing_fields(record)

    assert [mf.field for mf in missing] == ["labour_entry_0_time", "materials_pricing"]
    assert all(mf.severity == Severity.WARNING for mf in missing)


# ── Fallback title ───────────────────────────────────────────────


def test_fallback_title_prefers_scope() -> None:
    raw = {"job": {"scope_of_work": ["Install kitchen cabinets"]}}

    assert generate_fallback_title(raw, "Hello there everyone") == "Install kitchen cabinets"


def test_fallback_title_uses_opening_sentence() -> None:
    title = generate_fallback_title({}, "Need the gutters cleaned. Also the roof.")

    assert title == "Need the gutters cleaned"


def test_fallback_title_uses_material() -> None:
    raw = {"materials": {"items": [{"description": "Colorbond sheets"}]}}

    assert generate_fallback_title(raw, "Hi") == "Supply Colorbond sheets"


def test_fallback_title_is_dated_when_nothing_else() -> None:
    assert generate_fallback_title({}, "", today=date(2026, 3, 5)) == "Voice Quote 05/03/2026"


# ── Stage ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_extract_intake_fresh_extraction_passes_gate(fake_db, add_intake, fake_llm, pine_alias) -> None:
    """A complete transcript is priced from the catalog and marked extracted."""
    add_intake(status="transcribed", transcript_text=DECK_TRANSCRIPT)
    fake_db.aliases.append(pine_alias)
    llm = fake_llm([json.dumps(_model_output())])

    result = await extract_intake("intake-1", USER_ID, db=fake_db, llm=llm)

    assert result.status.value == "extracted"
    assert result.requires_review is False
    assert result.review_reason is None
    material = result.extracted_data["materials"]["items"][0]
    assert material["catalog_item_id"] == "cat-pine"
    assert material["unit_price_cents"] == 1380
    assert material["estimated_cost_cents"] == 13800
    assert material["needs_pricing"] is False
    assert material["markup_applied"] is True
    assert result.quality_summary.overall_confidence == pytest.approx(0.85)
    assert {"gpt_duration_ms", "catalog_match_ms", "post_process_ms", "total_duration_ms"} <= set(result.performance)

    stored = fake_db.intakes["intake-1"]
    assert stored["status"] == "extracted"
    assert stored["extraction_json"]["job"]["title"] == "Back deck replacement"
    assert stored["user_corrections_json"] is None


@pytest.mark.asyncio
async def test_extract_intake_low_confidence_needs_review(fake_db, add_intake, fake_llm) -> None:
    transcript = "Sort out the yard, maybe a few days"
    add_intake(status="transcribed", transcript_text=transcript)
    output = _model_output(
        customer={},
        job={"title": "Yard cleanup"},
        time={"labour_entries": []},
        materials={"items": []},
    )
    llm = fake_llm([json.dumps(output)])

    result = await extract_intake("intake-1", USER_ID, db=fake_db, llm=llm)

    assert result.status.value == "needs_user_review"
    assert result.review_reason == "low_overall_confidence"
    assert fake_db.intakes["intake-1"]["extraction_json"]["quality"]["requires_user_confirmation"] is True


@pytest.mark.asyncio
async def test_extract_intake_corrections_skip_the_model(fake_db, add_intake, fake_llm, profile) -> None:
    """Corrections merge into the stored record and confirm it."""
    stored = normalize_extraction(_model_output(), profile, DECK_TRANSCRIPT, field_confidence=0.4)
    add_intake(status="needs_user_review", transcript_text=DECK_TRANSCRIPT, extraction_json=stored.to_json())
    llm = fake_llm()
    corrections = {"labour_overrides": {"labour_0_hours": 7}}

    result = await extract_intake("intake-1", USER_ID, user_corrections_json=corrections, db=fake_db, llm=llm)

    assert llm.calls == []
    assert result.status.value == "extracted"
    entry = result.extracted_data["time"]["labour_entries"][0]
    assert entry["hours"] == {"value": 7.0, "confidence": 1.0}
    assert result.extracted_data["quality"]["user_confirmed"] is True
    assert fake_db.intakes["intake-1"]["user_corrections_json"] == corrections


@pytest.mark.asyncio
async def test_extract_intake_corrections_rejected_for_unextracted_status(fake_db, add_intake, profile) -> None:
    stored = normalize_extraction(_model_output(), profile, DECK_TRANSCRIPT)
    add_intake(status="transcribed", transcript_text=DECK_TRANSCRIPT, extraction_json=stored.to_json())

    with pytest.raises(InvalidState):
        await extract_intake("intake-1", USER_ID, user_corrections_json={}, db=fake_db)


@pytest.mark.asyncio
async def test_extract_intake_corrections_without_extraction_are_logged(fake_db, add_intake, fake_llm) -> None:
    """Corrections sent before any extraction fall through to a fresh run with a warning."""
    add_intake(status="transcribed", transcript_text=DECK_TRANSCRIPT)
    llm = fake_llm([json.dumps(_model_output())])
    corrections = {"labour_overrides": {"labour_0_hours": 9}}

    with patch("src.services.data_extraction.logger") as mock_logger:
        result = await extract_intake("intake-1", USER_ID, user_corrections_json=corrections, db=fake_db, llm=llm)

    mock_logger.warning.assert_any_call("corrections_ignored_no_extraction", intake_id="intake-1", status="transcribed")
    assert len(llm.calls) == 1
    assert result.extracted_data["time"]["labour_entries"][0]["hours"]["value"] == 6


@pytest.mark.asyncio
async def test_extract_intake_rejects_created_quote(fake_db, add_intake) -> None:
    add_intake(status="quote_created", transcript_text=DECK_TRANSCRIPT)

    with pytest.raises(InvalidState):
        await extract_intake("intake-1", USER_ID, db=fake_db)


@pytest.mark.asyncio
async def test_extract_intake_requires_transcript(fake_db, add_intake, fake_llm) -> None:
    add_intake(status="transcribed", transcript_text=None)

    with pytest.raises(MissingInput):
        await extract_intake("intake-1", USER_ID, db=fake_db, llm=fake_llm())


@pytest.mark.asyncio
async def test_extract_intake_uses_preselected_customer(fake_db, add_intake, fake_llm) -> None:
    """A bound customer overrides whatever the model heard."""
    fake_db.customers["cust-9"] = {"id": "cust-9", "org_id": "org-1", "name": "Jane Smith", "email": "jane@example.com"}
    add_intake(status="transcribed", transcript_text=DECK_TRANSCRIPT, customer_id="cust-9")
    llm = fake_llm([json.dumps(_model_output(customer={"name": "Somebody Else"}))])

    result = await extract_intake("intake-1", USER_ID, db=fake_db, llm=llm)

    assert "Customer is already selected" in llm.calls[0]["user"]
    assert result.extracted_data["customer"]["name"] == "Jane Smith"
    assumption = result.extracted_data["assumptions"][-1]
    assert assumption["source"] == "user_selection"
    assert assumption["confidence"] == 1.0


@pytest.mark.asyncio
async def test_extract_intake_catalog_failure_leaves_materials_unpriced(fake_db, add_intake, fake_llm) -> None:
    """A failing catalog lookup is not fatal."""
    add_intake(status="transcribed", transcript_text=DECK_TRANSCRIPT)
    fake_db.fail_catalog_match = True
    llm = fake_llm([json.dumps(_model_output())])

    result = await extract_intake("intake-1", USER_ID, db=fake_db, llm=llm)

    material = result.extracted_data["materials"]["items"][0]
    assert material["needs_pricing"] is True
    assert material["unit_price_cents"] is None
    assert "materials_pricing" in [mf["field"] for mf in result.extracted_data["missing_fields"]]
