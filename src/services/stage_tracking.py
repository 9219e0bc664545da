"""
Client-visible progress markers for an intake.
"""

from __future__ import annotations

from typing import Any

from src.db import DatabaseClient, get_db
from src.errors import IntakeNotFound, MissingInput
from src.logging_config import get_logger

logger = get_logger(__name__)


async def update_intake_stage(
    intake_id: str,
    stage: str,
    user_id: str,
    trace_id: str | None = None,
    last_error: str | None = None,
    db: DatabaseClient | None = None,
) -> dict[str, Any]:
    """
    Record ``stage`` on an intake owned by ``user_id``.

    Raises:
        MissingInput: intake id or stage is empty.
        IntakeNotFound: the intake does not exist or belongs to another user.
    """
    if not intake_id or not stage:
        raise MissingInput("intake_id and stage are required")
    db = db or get_db()

    if not await db.get_intake(intake_id, user_id):
        raise IntakeNotFound("Voice intake not found or access denied")

    updates: dict[str, Any] = {"stage": stage}
    if trace_id:
        updates["trace_id"] = trace_id
    if last_error:
        updates["last_error"] = last_error

    await db.update_intake(intake_id, updates)
    logger.info("intake_stage_updated", intake_id=intake_id, stage=stage, last_error=last_error)
    return {"success": True, "intake_id": intake_id, "stage": stage}
