"""
Customer resolution for new quotes.

A quote always gets a customer: the one bound to the intake, an existing
org customer matched by email then name, a newly created one, or as a last
resort a nameless placeholder the user can fill in later.
"""

from __future__ import annotations

from src.db import DatabaseClient
from src.logging_config import get_logger
from src.schemas.extraction import CustomerInfo

logger = get_logger(__name__)


async def resolve_customer(
    bound_customer_id: str | None,
    customer: CustomerInfo,
    org_id: str | None,
    db: DatabaseClient,
) -> str:
    """
    Return the customer id to attach to the quote.

    Raises:
        PersistenceError: creating a customer failed.
    """
    if bound_customer_id:
        return bound_customer_id

    if org_id and customer.email:
        found = await db.find_customer(org_id, email=customer.email)
        if found:
            logger.info("customer_matched", by="email", customer_id=found)
            return found

    if org_id and customer.name:
        found = await db.find_customer(org_id, name=customer.name)
        if found:
            logger.info("customer_matched", by="name", customer_id=found)
            return found

    if customer.name:
        created = await db.create_customer(org_id, customer.name, customer.email, customer.phone)
        logger.info("customer_created", customer_id=created)
        return created

    created = await db.create_customer(org_id, None)
    logger.warning("placeholder_customer_created", customer_id=created, org_id=org_id)
    return created
