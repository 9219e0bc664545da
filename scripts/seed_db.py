"""
Database Seeding Script.

Populates a development organization with a pricing profile, a few material
catalog items and their aliases so the pipeline can price a quote end to end.

Usage:
    python scripts/seed_db.py <org_id> <user_id>
"""

import argparse
import asyncio
import os
import sys

# Add project root to path so we can import src
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from src.db import CATALOG_ALIASES, CATALOG_ITEMS, get_db
from src.logging_config import setup_logging, get_logger
from src.services.catalog_pricing import normalize_material_text

setup_logging()
logger = get_logger(__name__)

PRICING_PROFILE = {
    "hourly_rate_cents": 9500,
    "callout_fee_cents": 0,
    "travel_rate_cents": None,
    "travel_is_time": True,
    "materials_markup_percent": 15,
    "default_tax_rate": 10,
    "default_currency": "AUD",
    "default_payment_terms": "Payment due within 14 days",
    "workday_hours_default": 8,
    "bunnings_run_enabled": True,
    "bunnings_run_minutes_default": 30,
}

SAMPLE_CATALOG = [
    {
        "name": "Treated pine 90x45 H3",
        "unit": "m",
        "typical_low_price_cents": 650,
        "typical_high_price_cents": 850,
        "aliases": ["treated pine", "pine framing", "90 by 45"],
    },
    {
        "name": "Plasterboard 10mm 2400x1200",
        "unit": "sheet",
        "typical_low_price_cents": 1800,
        "typical_high_price_cents": 2400,
        "aliases": ["plasterboard", "gyprock", "gyprock sheets"],
    },
    {
        "name": "Exterior acrylic paint 10L",
        "unit": "can",
        "typical_low_price_cents": 14000,
        "typical_high_price_cents": 19000,
        "aliases": ["exterior paint", "acrylic paint"],
    },
]


async def seed(org_id: str, user_id: str) -> None:
    db = get_db()

    logger.info("Seeding database...", org_id=org_id)

    existing = db.client.table("pricing_profiles").select("id").eq("user_id", user_id).execute()
    if existing.data:
        logger.info("Skipping pricing profile (already exists)", user_id=user_id)
    else:
        db.client.table("pricing_profiles").insert({**PRICING_PROFILE, "org_id": org_id, "user_id": user_id}).execute()
        logger.info("Created pricing profile", user_id=user_id)

    for entry in SAMPLE_CATALOG:
        item = {k: v for k, v in entry.items() if k != "aliases"}
        found = db.client.table(CATALOG_ITEMS).select("id").eq("org_id", org_id).eq("name", item["name"]).execute()

        if found.data:
            item_id = found.data[0]["id"]
            logger.info(f"Skipping {item['name']} (already exists)")
        else:
            result = db.client.table(CATALOG_ITEMS).insert({**item, "org_id": org_id}).execute()
            if not result.data:
                logger.error(f"Failed to create {item['name']}")
                continue
            item_id = result.data[0]["id"]
            logger.info(f"Created {item['name']}", id=item_id)

        for priority, alias in enumerate(entry["aliases"]):
            db.client.table(CATALOG_ALIASES).upsert(
                {
                    "org_id": org_id,
                    "alias_text": alias,
                    "normalized_alias": normalize_material_text(alias),
                    "canonical_catalog_item_id": item_id,
                    "priority": priority,
                },
                on_conflict="org_id,normalized_alias",
            ).execute()

    logger.info("Seeding complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed development pricing and catalog data")
    parser.add_argument("org_id", help="Organization UUID")
    parser.add_argument("user_id", help="User UUID owning the pricing profile")
    args = parser.parse_args()

    asyncio.run(seed(args.org_id, args.user_id))
