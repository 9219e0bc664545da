"""
API Router: Quote Line Items.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from src.api.auth import get_current_user
from src.db import DatabaseClient, get_db
from src.schemas.quote import NewLineItem
from src.services.line_items import add_line_item, list_line_items

router = APIRouter(prefix="/quotes", tags=["Quotes"])


@router.get("/{quote_id}/line-items")
async def get_line_items(
    quote_id: str,
    user_id: str = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    """Line items of a quote in document order."""
    items = await list_line_items(quote_id, user_id, db=db)
    return {"success": True, "quote_id": quote_id, "line_items": items, "count": len(items)}


@router.post("/{quote_id}/line-items", status_code=201)
async def create_line_item(
    quote_id: str,
    body: NewLineItem,
    user_id: str = Depends(get_current_user),
    db: DatabaseClient = Depends(get_db),
) -> dict[str, Any]:
    """Append a line item; existing placeholders are removed when a real item arrives."""
    row = await add_line_item(quote_id, body, user_id, db=db)
    return {"success": True, "quote_id": quote_id, "line_item": row}
