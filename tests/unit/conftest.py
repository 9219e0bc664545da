"""Shared fixtures: in-memory stand-ins for the database and provider clients."""

from __future__ import annotations

import copy
import itertools
from typing import Any, Callable

import pytest

from src.config import get_settings
from src.errors import PersistenceError
from src.schemas.pricing import PricingProfile
from src.services.openai_client import Transcription

USER_ID = "user-1"
ORG_ID = "org-1"


class FakeDatabase:
    """Implements the ``DatabaseClient`` surface the pipeline uses, backed by dicts."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.intakes: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, dict[str, Any]] = {}
        self.quotes: dict[str, dict[str, Any]] = {}
        self.line_items: list[dict[str, Any]] = []
        self.aliases: list[dict[str, Any]] = []
        self.catalog_items: dict[str, dict[str, Any]] = {}
        self.catalog_matches: list[dict[str, Any]] = []
        self.catalog_requests: list[list[dict[str, Any]]] = []
        self.fail_catalog_match = False
        self.pricing_profile: dict[str, Any] | None = None
        self.org_country: str | None = "AU"
        self.audio: dict[str, bytes] = {}
        self.tokens: dict[str, str] = {}
        self.user_orgs: dict[str, str] = {"user-1": "org-1"}
        self.rate_limit_result: dict[str, Any] = {"allowed": True}
        self.rate_limit_calls: list[tuple[str, str, int, int]] = []
        self.lock_calls = 0
        self.intake_updates: list[tuple[str, dict[str, Any]]] = []

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    async def get_user_id_for_token(self, jwt: str) -> str | None:
        return self.tokens.get(jwt)

    async def get_user_org_id(self, user_id: str) -> str | None:
        return self.user_orgs.get(user_id)

    async def get_intake(self, intake_id: str, user_id: str) -> dict[str, Any] | None:
        row = self.intakes.get(intake_id)
        if not row or row.get("user_id") != user_id:
            return None
        return copy.deepcopy(row)

    async def update_intake(self, intake_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        if intake_id not in self.intakes:
            return None
        self.intake_updates.append((intake_id, copy.deepcopy(updates)))
        self.intakes[intake_id].update(copy.deepcopy(updates))
        return copy.deepcopy(self.intakes[intake_id])

    async def lock_intake_for_quote_creation(self, intake_id: str, user_id: str) -> dict[str, Any] | None:
        self.lock_calls += 1
        return await self.get_intake(intake_id, user_id)

    async def download_audio(self, storage_path: str) -> bytes | None:
        return self.audio.get(storage_path)

    async def get_effective_pricing_profile(self, user_id: str) -> dict[str, Any] | None:
        return copy.deepcopy(self.pricing_profile)

    async def get_org_country_code(self, org_id: str) -> str | None:
        return self.org_country

    async def find_alias_exact(self, org_id: str, normalized: str) -> dict[str, Any] | None:
        for alias in self.aliases:
            if alias["normalized_alias"] == normalized:
                return alias
        return None

    async def list_aliases(self, org_id: str) -> list[dict[str, Any]]:
        return list(self.aliases)

    async def match_catalog_items(
        self, org_id: str, region_code: str, materials: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        self.catalog_requests.append(materials)
        if self.fail_catalog_match:
            raise PersistenceError("catalog procedure unavailable")
        return self.catalog_matches[: len(materials)]

    async def get_catalog_item(self, catalog_item_id: str) -> dict[str, Any] | None:
        return self.catalog_items.get(catalog_item_id)

    async def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        return self.customers.get(customer_id)

    async def find_customer(self, org_id: str, *, email: str | None = None, name: str | None = None) -> str | None:
        for customer in self.customers.values():
            if customer.get("org_id") != org_id:
                continue
            if email and customer.get("email") == email:
                return customer["id"]
            if not email and name and (customer.get("name") or "").lower() == name.lower():
                return customer["id"]
        return None

    async def create_customer(
        self, org_id: str | None, name: str | None, email: str | None = None, phone: str | None = None
    ) -> str:
        customer_id = self._new_id("customer")
        self.customers[customer_id] = {"id": customer_id, "org_id": org_id, "name": name, "email": email, "phone": phone}
        return customer_id

    async def generate_quote_number(self, org_id: str | None) -> str:
        return f"Q-{len(self.quotes) + 1:04d}"

    async def create_quote(self, payload: dict[str, Any]) -> dict[str, Any]:
        quote_id = self._new_id("quote")
        self.quotes[quote_id] = {"id": quote_id, **payload}
        return dict(self.quotes[quote_id])

    async def update_quote(self, quote_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        if quote_id not in self.quotes:
            raise PersistenceError(f"Quote {quote_id} not found for update")
        self.quotes[quote_id].update(updates)
        return dict(self.quotes[quote_id])

    async def get_quote(self, quote_id: str) -> dict[str, Any] | None:
        quote = self.quotes.get(quote_id)
        return dict(quote) if quote else None

    async def insert_line_items(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        inserted = []
        for row in rows:
            stored = {"id": self._new_id("item"), **row}
            self.line_items.append(stored)
            inserted.append(dict(stored))
        return inserted

    async def count_line_items(self, quote_id: str) -> int | None:
        return sum(1 for row in self.line_items if row["quote_id"] == quote_id)

    async def list_line_items(self, quote_id: str) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self.line_items if row["quote_id"] == quote_id]
        return sorted(rows, key=lambda r: r.get("position") or 0)

    async def delete_line_items_matching(self, quote_id: str, notes_pattern: str) -> int:
        keep = [
            row for row in self.line_items
            if not (row["quote_id"] == quote_id and notes_pattern in (row.get("notes") or ""))
        ]
        deleted = len(self.line_items) - len(keep)
        self.line_items = keep
        return deleted

    async def check_rate_limit(
        self, user_id: str, endpoint: str, max_calls: int, window_minutes: int
    ) -> dict[str, Any]:
        self.rate_limit_calls.append((user_id, endpoint, max_calls, window_minutes))
        return dict(self.rate_limit_result)


class FakeTextGeneration:
    """Returns queued raw responses in order and records every prompt."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.settings = get_settings()
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt, "temperature": temperature})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeSpeechToText:
    def __init__(self, text: str = "", duration: float = 0.0, language: str = "en") -> None:
        self.settings = get_settings()
        self.result = Transcription(text=text, language=language, duration_seconds=duration)
        self.calls = 0

    async def transcribe(self, audio: bytes, filename: str = "audio.webm") -> Transcription:
        self.calls += 1
        return self.result


@pytest.fixture
def profile_row() -> dict[str, Any]:
    """Pricing profile as returned by the effective-profile procedure."""
    return {
        "profile_id": "profile-1",
        "org_id": ORG_ID,
        "user_id": USER_ID,
        "hourly_rate_cents": 10000,
        "callout_fee_cents": 0,
        "travel_rate_cents": None,
        "travel_is_time": False,
        "materials_markup_percent": 15,
        "default_tax_rate": 10,
        "default_currency": "AUD",
        "default_payment_terms": "14 days",
        "workday_hours_default": 8,
        "bunnings_run_enabled": False,
        "bunnings_run_minutes_default": 30,
        "org_name": "Acme Carpentry",
        "org_tax_inclusive": False,
    }


@pytest.fixture
def profile(profile_row: dict[str, Any]) -> PricingProfile:
    return PricingProfile.model_validate(profile_row)


@pytest.fixture
def fake_db(profile_row: dict[str, Any]) -> FakeDatabase:
    db = FakeDatabase()
    db.pricing_profile = profile_row
    return db


@pytest.fixture
def add_intake(fake_db: FakeDatabase) -> Callable[..., dict[str, Any]]:
    """Factory that stores an intake row in the fake database."""

    def _add(intake_id: str = "intake-1", **fields: Any) -> dict[str, Any]:
        row = {
            "id": intake_id,
            "user_id": USER_ID,
            "org_id": ORG_ID,
            "customer_id": None,
            "status": "captured",
            "audio_storage_path": f"{USER_ID}/{intake_id}.webm",
            "transcript_text": None,
            "extraction_json": None,
            "user_corrections_json": None,
            "created_quote_id": None,
        }
        row.update(fields)
        fake_db.intakes[intake_id] = row
        return row

    return _add


@pytest.fixture
def fake_llm() -> Callable[..., FakeTextGeneration]:
    return FakeTextGeneration


@pytest.fixture
def fake_stt() -> Callable[..., FakeSpeechToText]:
    return FakeSpeechToText
