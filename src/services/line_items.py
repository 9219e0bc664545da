"""
Line-item persistence for quotes.

Every insert goes through ``insert_line_items``: as soon as a batch carries
one real (non-placeholder) item, the quote's persisted placeholders are
removed first, so placeholders and real items never coexist.
"""

from __future__ import annotations

from typing import Any

from src.db import DatabaseClient, get_db
from src.errors import QuoteNotFound
from src.logging_config import get_logger
from src.schemas.quote import PLACEHOLDER_MARKER, NewLineItem, QuoteLineItem
from src.services.money import round_cents

logger = get_logger(__name__)


async def evict_placeholders(quote_id: str, db: DatabaseClient) -> int:
    deleted = await db.delete_line_items_matching(quote_id, PLACEHOLDER_MARKER)
    if deleted:
        logger.info("placeholders_evicted", quote_id=quote_id, deleted=deleted)
    return deleted


async def insert_line_items(
    quote_id: str,
    org_id: str | None,
    items: list[QuoteLineItem],
    db: DatabaseClient | None = None,
) -> list[dict[str, Any]]:
    """
    Persist ``items`` for ``quote_id`` and return the inserted rows.

    Raises:
        PersistenceError: the delete or the insert failed.
    """
    db = db or get_db()
    if not items:
        return []

    if any(not item.is_placeholder for item in items):
        await evict_placeholders(quote_id, db)

    rows = [item.to_row(quote_id, org_id) for item in items]
    inserted = await db.insert_line_items(rows)

    logger.info(
        "line_items_inserted",
        quote_id=quote_id,
        requested=len(rows),
        returned=len(inserted),
        placeholders=sum(1 for item in items if item.is_placeholder),
        needs_review=sum(1 for item in items if item.is_needs_review),
    )
    return inserted


async def _owned_quote(quote_id: str, user_id: str, db: DatabaseClient) -> dict[str, Any]:
    """
    Fetch ``quote_id`` if it belongs to the caller's organization.

    A quote in another organization is reported as missing.

    Raises:
        QuoteNotFound: the quote does not exist or is not visible to ``user_id``.
    """
    quote = await db.get_quote(quote_id)
    org_id = await db.get_user_org_id(user_id)
    if not quote or org_id is None or quote.get("org_id") != org_id:
        logger.warning("quote_access_denied", quote_id=quote_id, user_id=user_id, found=bool(quote))
        raise QuoteNotFound(f"Quote {quote_id} not found")
    return quote


async def list_line_items(quote_id: str, user_id: str, db: DatabaseClient | None = None) -> list[dict[str, Any]]:
    db = db or get_db()
    await _owned_quote(quote_id, user_id, db)
    return await db.list_line_items(quote_id)


async def add_line_item(
    quote_id: str,
    item: NewLineItem,
    user_id: str,
    db: DatabaseClient | None = None,
) -> dict[str, Any]:
    """
    Append a manually entered item after the quote's existing items.

    Raises:
        QuoteNotFound: the quote does not exist or belongs to another organization.
    """
    db = db or get_db()
    quote = await _owned_quote(quote_id, user_id, db)

    existing = await db.list_line_items(quote_id)
    position = max((row.get("position") or 0 for row in existing), default=-1) + 1

    line = QuoteLineItem(
        item_type=item.item_type,
        description=item.description,
        quantity=item.quantity,
        unit=item.unit,
        unit_price_cents=item.unit_price_cents,
        line_total_cents=round_cents(item.quantity * item.unit_price_cents),
        position=position,
        notes=item.notes,
        catalog_item_id=item.catalog_item_id,
    )
    inserted = await insert_line_items(quote_id, quote.get("org_id"), [line], db)
    return inserted[0] if inserted else line.to_row(quote_id, quote.get("org_id"))
