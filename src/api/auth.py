"""
Bearer-token authentication for the stage endpoints.
"""

from __future__ import annotations

from fastapi import Depends, Header

from src.db import DatabaseClient, get_db
from src.errors import Unauthorized
from src.logging_config import get_logger

logger = get_logger(__name__)


async def get_current_user(
    authorization: str | None = Header(default=None),
    db: DatabaseClient = Depends(get_db),
) -> str:
    """Resolve the calling user's id from ``Authorization: Bearer <jwt>``."""
    if not authorization:
        raise Unauthorized("Missing authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Malformed authorization header")

    user_id = await db.get_user_id_for_token(token.strip())
    if not user_id:
        logger.warning("auth_rejected")
        raise Unauthorized("Unauthorized")
    return user_id
