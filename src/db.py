"""
Supabase Database Client.

Provides a singleton instance of the Supabase client and typed helper methods
for every read/write the quoting pipeline performs. Stored procedures
(pricing profile resolution, intake locking, catalog matching, rate limiting,
quote numbering) live in the database and are reached through ``rpc``.

Lookups that find nothing return ``None``; failed writes raise
``PersistenceError`` so a stage never continues on a half-applied change.
"""

from __future__ import annotations

from typing import Any, Optional

from supabase import Client, create_client

from src.config import get_settings
from src.errors import PersistenceError
from src.logging_config import get_logger

logger = get_logger(__name__)

USERS = "users"
INTAKES = "voice_intakes"
CUSTOMERS = "customers"
QUOTES = "quotes"
LINE_ITEMS = "quote_line_items"
CATALOG_ITEMS = "material_catalog_items"
CATALOG_ALIASES = "material_catalog_aliases"

_ALIAS_SELECT = (
    "id, alias_text, normalized_alias, priority, canonical_catalog_item_id, "
    "material_catalog_items!material_catalog_aliases_canonical_catalog_item_id_fkey "
    "(id, name, unit, unit_price_cents, typical_low_price_cents, typical_high_price_cents)"
)


class DatabaseClient:
    """Wrapper around the official Supabase Python client."""

    _instance: Optional[DatabaseClient] = None
    _client: Client

    def __new__(cls) -> DatabaseClient:
        """Singleton pattern to ensure only one client instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            settings = get_settings()

            if not settings.supabase_url or not settings.supabase_service_key:
                logger.warning(
                    "Supabase credentials missing. Database operations will fail.",
                    url=bool(settings.supabase_url),
                    key=bool(settings.supabase_service_key),
                )

            try:
                cls._instance._client = create_client(
                    settings.supabase_url,
                    settings.supabase_service_key,
                )
                logger.info("Supabase client initialized", url=settings.supabase_url)
            except Exception as e:
                cls._instance = None
                logger.error("Failed to initialize Supabase client", error=str(e))
                raise

        return cls._instance

    @property
    def client(self) -> Client:
        """Access the raw Supabase client."""
        return self._client

    # -- Auth --

    async def get_user_id_for_token(self, jwt: str) -> str | None:
        """Resolve a user id from a bearer token, or None if invalid."""
        try:
            response = self.client.auth.get_user(jwt)
        except Exception as e:
            logger.warning("token_verification_failed", error=str(e))
            return None
        if response is None or response.user is None:
            return None
        return response.user.id

    async def get_user_org_id(self, user_id: str) -> str | None:
        """Organization the user belongs to, or None."""
        try:
            response = self.client.table(USERS).select("org_id").eq("id", user_id).maybe_single().execute()
        except Exception as e:
            logger.warning("Error fetching user organization", user_id=user_id, error=str(e))
            return None
        if response and response.data:
            return response.data.get("org_id")
        return None

    # -- Intakes --

    async def get_intake(self, intake_id: str, user_id: str) -> dict[str, Any] | None:
        """Fetch an intake owned by ``user_id``."""
        try:
            response = (
                self.client.table(INTAKES)
                .select("*")
                .eq("id", intake_id)
                .eq("user_id", user_id)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.error("Error fetching intake", intake_id=intake_id, error=str(e))
            return None
        return response.data if response else None

    async def update_intake(self, intake_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        """Apply ``updates`` to an intake row."""
        try:
            response = self.client.table(INTAKES).update(updates).eq("id", intake_id).execute()
        except Exception as e:
            logger.error("Error updating intake", intake_id=intake_id, fields=list(updates), error=str(e))
            raise PersistenceError(f"Failed to update intake: {e}") from e
        if response.data:
            return response.data[0]
        return None

    async def lock_intake_for_quote_creation(self, intake_id: str, user_id: str) -> dict[str, Any] | None:
        """
        Take the exclusive row lock for materialization and return the locked row.

        The stored procedure runs ``SELECT ... FOR UPDATE`` so concurrent
        materializations of the same intake serialize on it.
        """
        try:
            response = self.client.rpc(
                "lock_voice_intake_for_quote_creation",
                {"p_intake_id": intake_id, "p_user_id": user_id},
            ).execute()
        except Exception as e:
            logger.error("Error locking intake", intake_id=intake_id, error=str(e))
            return None
        rows = response.data or []
        if isinstance(rows, dict):
            return rows
        return rows[0] if rows else None

    async def download_audio(self, storage_path: str) -> bytes | None:
        """Download the recorded audio for an intake."""
        settings = get_settings()
        try:
            return self.client.storage.from_(settings.audio_bucket).download(storage_path)
        except Exception as e:
            logger.error("Error downloading audio", path=storage_path, error=str(e))
            return None

    # -- Pricing --

    async def get_effective_pricing_profile(self, user_id: str) -> dict[str, Any] | None:
        """Resolve the pricing profile in effect for a user (user override, else org default)."""
        try:
            response = self.client.rpc("get_effective_pricing_profile", {"p_user_id": user_id}).execute()
        except Exception as e:
            logger.error("Error fetching pricing profile", user_id=user_id, error=str(e))
            return None
        data = response.data
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    async def get_org_country_code(self, org_id: str) -> str | None:
        try:
            response = (
                self.client.table("organizations")
                .select("country_code")
                .eq("id", org_id)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.warning("Error fetching organization", org_id=org_id, error=str(e))
            return None
        if response and response.data:
            return response.data.get("country_code")
        return None

    # -- Catalog --

    async def find_alias_exact(self, org_id: str, normalized: str) -> dict[str, Any] | None:
        try:
            response = (
                self.client.table(CATALOG_ALIASES)
                .select(_ALIAS_SELECT)
                .eq("org_id", org_id)
                .eq("normalized_alias", normalized)
                .order("priority")
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning("Error matching alias", org_id=org_id, error=str(e))
            return None
        return response.data[0] if response.data else None

    async def list_aliases(self, org_id: str) -> list[dict[str, Any]]:
        try:
            response = (
                self.client.table(CATALOG_ALIASES)
                .select(_ALIAS_SELECT)
                .eq("org_id", org_id)
                .order("priority")
                .execute()
            )
        except Exception as e:
            logger.warning("Error listing aliases", org_id=org_id, error=str(e))
            return []
        return response.data or []

    async def match_catalog_items(
        self, org_id: str, region_code: str, materials: list[dict[str, Any]]
    ) -> list[dict[str, Any] | None]:
        """
        Fuzzy-match material descriptions against the org catalog.

        Returns one entry per input material, ``None`` where nothing matched.
        Raises ``PersistenceError`` when the lookup itself fails.
        """
        try:
            response = self.client.rpc(
                "match_catalog_items_for_quote_materials",
                {"p_org_id": org_id, "p_region_code": region_code, "p_materials": materials},
            ).execute()
        except Exception as e:
            raise PersistenceError(f"Catalog matching failed: {e}") from e
        return list(response.data or [])

    async def get_catalog_item(self, catalog_item_id: str) -> dict[str, Any] | None:
        try:
            response = (
                self.client.table(CATALOG_ITEMS)
                .select("id, unit_price_cents, typical_low_price_cents, typical_high_price_cents")
                .eq("id", catalog_item_id)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.warning("Error fetching catalog item", catalog_item_id=catalog_item_id, error=str(e))
            return None
        return response.data if response else None

    # -- Customers --

    async def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        try:
            response = (
                self.client.table(CUSTOMERS)
                .select("id, name, email, phone")
                .eq("id", customer_id)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.warning("Error fetching customer", customer_id=customer_id, error=str(e))
            return None
        return response.data if response else None

    async def find_customer(self, org_id: str, *, email: str | None = None, name: str | None = None) -> str | None:
        """Return the id of an org customer matching ``email`` exactly or ``name`` case-insensitively."""
        query = self.client.table(CUSTOMERS).select("id").eq("org_id", org_id)
        if email:
            query = query.eq("email", email)
        elif name:
            query = query.ilike("name", name)
        else:
            return None
        try:
            response = query.limit(1).execute()
        except Exception as e:
            logger.warning("Error matching customer", org_id=org_id, error=str(e))
            return None
        return response.data[0]["id"] if response.data else None

    async def create_customer(
        self,
        org_id: str | None,
        name: str | None,
        email: str | None = None,
        phone: str | None = None,
    ) -> str:
        payload = {"org_id": org_id, "name": name, "email": email, "phone": phone}
        try:
            response = self.client.table(CUSTOMERS).insert(payload).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to create customer: {e}") from e
        if not response.data:
            raise PersistenceError("Failed to create customer: no row returned")
        return response.data[0]["id"]

    # -- Quotes --

    async def generate_quote_number(self, org_id: str | None) -> str:
        try:
            response = self.client.rpc("generate_quote_number", {"p_org_id": org_id}).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to generate quote number: {e}") from e
        if not response.data:
            raise PersistenceError("Failed to generate quote number")
        return str(response.data)

    async def create_quote(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.table(QUOTES).insert(payload).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to create quote: {e}") from e
        if not response.data:
            raise PersistenceError("Failed to create quote: no row returned")
        return response.data[0]

    async def update_quote(self, quote_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.table(QUOTES).update(updates).eq("id", quote_id).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to update quote shell: {e}") from e
        if not response.data:
            raise PersistenceError(f"Quote {quote_id} not found for update")
        return response.data[0]

    async def get_quote(self, quote_id: str) -> dict[str, Any] | None:
        try:
            response = self.client.table(QUOTES).select("*").eq("id", quote_id).maybe_single().execute()
        except Exception as e:
            logger.error("Error fetching quote", quote_id=quote_id, error=str(e))
            return None
        return response.data if response else None

    # -- Line items --

    async def insert_line_items(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        try:
            response = self.client.table(LINE_ITEMS).insert(rows).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to create line items: {e}") from e
        return response.data or []

    async def count_line_items(self, quote_id: str) -> int | None:
        """Count readable line items for a quote; None when the count query fails."""
        try:
            response = (
                self.client.table(LINE_ITEMS)
                .select("id", count="exact", head=True)
                .eq("quote_id", quote_id)
                .execute()
            )
        except Exception as e:
            logger.error("Error counting line items", quote_id=quote_id, error=str(e))
            return None
        return response.count or 0

    async def list_line_items(self, quote_id: str) -> list[dict[str, Any]]:
        try:
            response = (
                self.client.table(LINE_ITEMS)
                .select("*")
                .eq("quote_id", quote_id)
                .order("position")
                .order("created_at")
                .execute()
            )
        except Exception as e:
            logger.error("Error listing line items", quote_id=quote_id, error=str(e))
            return []
        return response.data or []

    async def delete_line_items_matching(self, quote_id: str, notes_pattern: str) -> int:
        """Delete line items whose notes contain ``notes_pattern``; returns the number deleted."""
        try:
            response = (
                self.client.table(LINE_ITEMS)
                .delete(count="exact")
                .eq("quote_id", quote_id)
                .like("notes", f"%{notes_pattern}%")
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to delete placeholder items: {e}") from e
        if response.count is not None:
            return response.count
        return len(response.data or [])

    # -- Rate limiting --

    async def check_rate_limit(
        self, user_id: str, endpoint: str, max_calls: int, window_minutes: int
    ) -> dict[str, Any]:
        response = self.client.rpc(
            "check_rate_limit",
            {
                "p_user_id": user_id,
                "p_endpoint": endpoint,
                "p_max_calls": max_calls,
                "p_window_minutes": window_minutes,
            },
        ).execute()
        return response.data or {"allowed": True}


# Global accessor
def get_db() -> DatabaseClient:
    return DatabaseClient()
