"""Unit tests for line-item persistence and customer resolution.

Tests cover:
- Placeholder eviction when real items arrive
- Manual item append with derived totals and positions
- Quotes in another organization are invisible
- Customer resolution order
"""

import pytest

from src.errors import QuoteNotFound
from src.schemas.extraction import CustomerInfo
from src.schemas.quote import LineItemType, NewLineItem, QuoteLineItem
from src.services.customers import resolve_customer
from src.services.line_items import add_line_item, insert_line_items, list_line_items


def _item(description: str, notes: str | None = None, position: int = 0) -> QuoteLineItem:
    return QuoteLineItem(
        item_type=LineItemType.LABOUR,
        description=description,
        quantity=1,
        unit="hours",
        unit_price_cents=9500,
        line_total_cents=9500,
        position=position,
        notes=notes,
    )


@pytest.fixture
def placeholder_quote(fake_db):
    """A quote holding the two fallback placeholders."""
    fake_db.quotes["quote-1"] = {"id": "quote-1", "org_id": "org-1"}
    fake_db.line_items.extend([
        {"id": "p1", "quote_id": "quote-1", "position": 0, "notes": "Placeholder - please update with actual labour estimate"},
        {"id": "p2", "quote_id": "quote-1", "position": 1, "notes": "Placeholder - please add actual materials and pricing"},
    ])
    return fake_db


@pytest.mark.asyncio
async def test_real_item_evicts_placeholders(placeholder_quote) -> None:
    """Placeholders and real items never coexist."""
    await insert_line_items("quote-1", "org-1", [_item("Hang doors")], placeholder_quote)

    rows = await placeholder_quote.list_line_items("quote-1")
    assert [r["description"] for r in rows] == ["Hang doors"]
    assert rows[0]["is_placeholder"] is False
    assert rows[0]["org_id"] == "org-1"


@pytest.mark.asyncio
async def test_placeholder_batch_keeps_existing_rows(placeholder_quote) -> None:
    await insert_line_items("quote-1", "org-1", [_item("Labour (needs estimation)", notes="Placeholder - x")], placeholder_quote)

    assert len(await placeholder_quote.list_line_items("quote-1")) == 3


@pytest.mark.asyncio
async def test_insert_nothing_is_a_no_op(fake_db) -> None:
    assert await insert_line_items("quote-1", "org-1", [], fake_db) == []


@pytest.mark.asyncio
async def test_add_line_item_appends_after_existing(fake_db) -> None:
    fake_db.quotes["quote-1"] = {"id": "quote-1", "org_id": "org-1"}
    fake_db.line_items.extend([
        {"id": "a", "quote_id": "quote-1", "position": 0, "notes": None},
        {"id": "b", "quote_id": "quote-1", "position": 3, "notes": None},
    ])
    new_item = NewLineItem(item_type=LineItemType.MATERIALS, description="Hinges", quantity=3, unit="each",
                           unit_price_cents=1255)

    row = await add_line_item("quote-1", new_item, "user-1", fake_db)

    assert row["position"] == 4
    assert row["line_total_cents"] == 3765
    assert row["quote_id"] == "quote-1"


@pytest.mark.asyncio
async def test_add_line_item_replaces_placeholders(placeholder_quote) -> None:
    new_item = NewLineItem(item_type=LineItemType.LABOUR, description="Install", quantity=2, unit="hours",
                           unit_price_cents=9000)

    await add_line_item("quote-1", new_item, "user-1", placeholder_quote)

    rows = await placeholder_quote.list_line_items("quote-1")
    assert [r["description"] for r in rows] == ["Install"]


@pytest.mark.asyncio
async def test_add_line_item_unknown_quote(fake_db) -> None:
    with pytest.raises(QuoteNotFound):
        await add_line_item("nope", NewLineItem(item_type=LineItemType.FEE, description="Skip bin"), "user-1", fake_db)


@pytest.mark.asyncio
async def test_other_organization_cannot_read_or_append(placeholder_quote) -> None:
    """A user outside the quote's organization sees it as missing."""
    placeholder_quote.user_orgs["user-2"] = "org-2"

    with pytest.raises(QuoteNotFound):
        await list_line_items("quote-1", "user-2", placeholder_quote)
    with pytest.raises(QuoteNotFound):
        await add_line_item(
            "quote-1", NewLineItem(item_type=LineItemType.FEE, description="Skip bin"), "user-2", placeholder_quote
        )

    assert len(await placeholder_quote.list_line_items("quote-1")) == 2


@pytest.mark.asyncio
async def test_user_without_organization_is_refused(placeholder_quote) -> None:
    with pytest.raises(QuoteNotFound):
        await list_line_items("quote-1", "user-unknown", placeholder_quote)


@pytest.mark.asyncio
async def test_resolve_customer_prefers_bound_id(fake_db) -> None:
    assert await resolve_customer("cust-1", CustomerInfo(name="Other"), "org-1", fake_db) == "cust-1"
    assert fake_db.customers == {}


@pytest.mark.asyncio
async def test_resolve_customer_matches_email_then_name(fake_db) -> None:
    fake_db.customers["c-email"] = {"id": "c-email", "org_id": "org-1", "name": "J. Smith", "email": "j@example.com"}
    fake_db.customers["c-name"] = {"id": "c-name", "org_id": "org-1", "name": "Jane Smith", "email": None}

    by_email = await resolve_customer(None, CustomerInfo(name="Jane Smith", email="j@example.com"), "org-1", fake_db)
    by_name = await resolve_customer(None, CustomerInfo(name="jane smith"), "org-1", fake_db)

    assert by_email == "c-email"
    assert by_name == "c-name"


@pytest.mark.asyncio
async def test_resolve_customer_creates_named_or_placeholder(fake_db) -> None:
    named = await resolve_customer(None, CustomerInfo(name="New Person", phone="0400"), "org-1", fake_db)
    nameless = await resolve_customer(None, CustomerInfo(), "org-1", fake_db)

    assert fake_db.customers[named]["name"] == "New Person"
    assert fake_db.customers[named]["phone"] == "0400"
    assert fake_db.customers[nameless]["name"] is None
