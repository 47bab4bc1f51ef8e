"""
Business profile and catalog sources.

- Profile: one row of the Supabase `business_info` table, read through the
  PostgREST HTTP API.
- Catalog: inventory items from the Clover REST API.

Both are read once per call by the context bootstrap.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from src.callrelay.config import get_config

logger = structlog.get_logger(__name__)

DEFAULT_BUSINESS_NAME = "Our Business"
HTTP_TIMEOUT_SECONDS = 10.0


class ProfileUnavailable(Exception):
    """The business profile could not be loaded."""
    pass


@dataclass(frozen=True)
class CatalogItem:
    """One product offered by the business."""
    name: str
    price_cents: Optional[int] = None

    @property
    def display_price(self) -> str:
        if self.price_cents is None:
            return ""
        return f"${self.price_cents / 100:.2f}"

    def describe(self) -> str:
        price = self.display_price
        return f"{self.name} ({price})" if price else self.name

    @classmethod
    def from_clover(cls, element: Dict[str, Any]) -> Optional["CatalogItem"]:
        name = str(element.get("name") or "").strip()
        if not name:
            return None
        price = element.get("price")
        try:
            price_cents = int(price) if price is not None else None
        except (TypeError, ValueError):
            price_cents = None
        return cls(name=name, price_cents=price_cents)


@dataclass
class BusinessProfile:
    """What the assistant knows about the business it answers for."""
    name: str = DEFAULT_BUSINESS_NAME
    description: str = ""
    hours: str = ""
    contact_info: str = ""
    greetings: str = ""
    catalog: List[CatalogItem] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BusinessProfile":
        def _text(key: str) -> str:
            value = row.get(key)
            return str(value).strip() if value is not None else ""

        return cls(
            name=_text("business_name") or DEFAULT_BUSINESS_NAME,
            description=_text("description"),
            hours=_text("hours"),
            contact_info=_text("contact_info"),
            greetings=_text("greetings"),
        )


class ProfileStore(Protocol):
    async def load(self) -> BusinessProfile: ...


class SupabaseProfileClient:
    """Reads the business profile row from Supabase (PostgREST)."""

    def __init__(self, config: Optional[Any] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_config()
        self._transport = transport

    async def fetch(self) -> BusinessProfile:
        """
        Fetch the first profile row.

        Raises:
            ProfileUnavailable: missing credentials, HTTP failure or empty table
        """
        if not self.config.supabase_url or not self.config.supabase_key:
            raise ProfileUnavailable("Supabase URL or key is missing")

        url = f"{self.config.supabase_url}/rest/v1/{self.config.supabase_profile_table}"
        headers = {
            "apikey": self.config.supabase_key,
            "Authorization": f"Bearer {self.config.supabase_key}",
            "Accept": "application/json",
        }

        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS, transport=self._transport) as client:
            try:
                response = await client.get(url, params={"select": "*", "limit": 1}, headers=headers)
                response.raise_for_status()
                rows = response.json()
            except httpx.HTTPStatusError as e:
                raise ProfileUnavailable(f"Supabase returned {e.response.status_code}") from e
            except (httpx.HTTPError, ValueError) as e:
                raise ProfileUnavailable(f"Supabase request failed: {e}") from e

        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise ProfileUnavailable("No business profile row found")

        return BusinessProfile.from_row(rows[0])


class CloverCatalogClient:
    """Lists inventory items from Clover. Any failure yields an empty catalog."""

    def __init__(self, config: Optional[Any] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_config()
        self._transport = transport

    async def list_items(self) -> List[CatalogItem]:
        if not self.config.clover_api_key or not self.config.clover_merchant_id:
            logger.warning("Clover API credentials missing, catalog disabled")
            return []

        url = f"{self.config.clover_api_url}/v3/merchants/{self.config.clover_merchant_id}/items"
        headers = {
            "Authorization": f"Bearer {self.config.clover_api_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS, transport=self._transport) as client:
            try:
                response = await client.get(
                    url,
                    params={"limit": self.config.clover_item_limit},
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error("Error fetching products from Clover", error=str(e))
                return []

        elements = data.get("elements") if isinstance(data, dict) else None
        items = []
        for element in elements or []:
            if not isinstance(element, dict) or element.get("hidden"):
                continue
            item = CatalogItem.from_clover(element)
            if item is not None:
                items.append(item)

        logger.info("Clover catalog loaded", items=len(items))
        return items


class BusinessProfileStore:
    """Profile and catalog, fetched concurrently."""

    def __init__(
        self,
        profiles: Optional[SupabaseProfileClient] = None,
        catalog: Optional[CloverCatalogClient] = None,
        config: Optional[Any] = None,
    ):
        config = config or get_config()
        self._profiles = profiles or SupabaseProfileClient(config)
        self._catalog = catalog or CloverCatalogClient(config)

    async def load(self) -> BusinessProfile:
        profile, items = await asyncio.gather(
            self._profiles.fetch(),
            self._catalog.list_items(),
        )
        profile.catalog = items
        return profile
