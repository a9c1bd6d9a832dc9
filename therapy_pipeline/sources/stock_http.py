"""HTTP pharmacy stock source.

Expects a search endpoint returning a JSON list of items:

    GET {STOCK_API_URL}/search?q=amoxicillin
    [{"drug_id": "D001", "generic": "Amoxicillin", "brand": "Mox",
      "strength": "500mg", "formulation": "tablet", "quantity": 120,
      "location": "Main Pharmacy", "price": 45.0}, ...]
"""

import logging

import requests

from ..config import Config
from ..drug_classes import shares_class
from ..models import StockItem, StockResult
from .base import StockSource

logger = logging.getLogger(__name__)


def _text(data: dict, *keys: str, default: str = "") -> str:
    """First non-empty value among keys; must be a string."""
    for key in keys:
        value = data.get(key)
        if value in (None, ""):
            continue
        if not isinstance(value, str):
            raise ValueError(f"Stock field {key!r} is not a string: {value!r}")
        return value
    return default


def parse_stock_item(data: dict) -> StockItem:
    """Parse one search result.

    Raises:
        ValueError: if the item is not an object, a text field is not a
            string, or quantity or price are not numeric
    """
    if not isinstance(data, dict):
        raise ValueError(f"Stock item is not an object: {data!r}")

    try:
        quantity = int(data.get("quantity", data.get("quantity_available", 0)) or 0)
        price = float(data["price"]) if data.get("price") is not None else None
    except TypeError as e:
        raise ValueError(f"Non-numeric stock quantity or price: {e}")

    drug_id = data.get("drug_id") or data.get("id") or ""
    if not isinstance(drug_id, (str, int)):
        raise ValueError(f"Stock field 'drug_id' is not a string: {drug_id!r}")

    return StockItem(
        drug_id=str(drug_id),
        generic=_text(data, "generic", "inn"),
        brand=_text(data, "brand"),
        strength=_text(data, "strength"),
        formulation=_text(data, "formulation", default="tablet"),
        quantity=quantity,
        location=_text(data, "location", default="Main Pharmacy"),
        price=price,
    )


class HTTPStockSource(StockSource):
    """Stock source backed by a pharmacy inventory API."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        """Initialize stock client.

        Args:
            base_url: Inventory API base URL. Uses config if None.
            timeout: Request timeout in seconds.
        """
        base_url = base_url or Config.STOCK_API_URL
        if not base_url:
            raise ValueError("STOCK_API_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or Config.STOCK_TIMEOUT_SECONDS
        self.session = requests.Session()

    def search(self, query: str) -> list[StockItem]:
        """Search inventory by generic or brand name."""
        try:
            response = self.session.get(
                f"{self.base_url}/search",
                params={"q": query},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            logger.error(f"Stock request failed: {e}")
            raise

        if not isinstance(data, list):
            raise ValueError(f"Unexpected stock response for {query!r}: {type(data).__name__}")
        return [parse_stock_item(item) for item in data]

    def _matches(self, item: StockItem, name: str) -> bool:
        query = name.strip().lower()
        return query in (item.generic.lower(), item.brand.lower())

    def check_availability(self, generic_name: str, strength: str | None = None) -> StockResult:
        results = self.search(generic_name)
        wanted = "".join((strength or "").lower().split())

        items = tuple(
            item for item in results
            if self._matches(item, generic_name)
            and item.quantity > 0
            and (not wanted or "".join(item.strength.lower().split()) == wanted)
        )
        alternatives = tuple(
            item for item in results
            if item.quantity > 0
            and not self._matches(item, generic_name)
            and shares_class(item.generic, generic_name)
        )
        return StockResult(available=bool(items), items=items, alternatives=alternatives)

    def find_nearest_with_stock(self, generic_name: str) -> str | None:
        in_stock = [
            item for item in self.search(generic_name)
            if self._matches(item, generic_name) and item.quantity > 0
        ]
        if not in_stock:
            return None
        return max(in_stock, key=lambda item: item.quantity).location
