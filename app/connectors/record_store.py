"""
Record Store Connector

Typed CRUD access to the canonical entity store (Directus-style REST API).
Source of truth for customers, subscriptions, evaluations, coupons, entity
mappings, sync history and webhook logs.

HTTP errors are passed through unwrapped as httpx.HTTPStatusError; callers
decide whether a failure aborts or is collected.
"""
import json
from typing import Any, Dict, List, Optional

import httpx

from app.config import RecordStoreConfig
from app.connectors.base import BaseConnector
from app.models.entities import Collections, ID_PREFIXES
from app.utils.helpers import generate_local_id, utcnow_iso
from app.utils.logger import log


class RecordStoreClient(BaseConnector):
    """
    Client for the record store REST API

    Generic operations: list, get, create, update, delete.
    Domain helpers are thin filters over the generic operations.
    """

    DEFAULT_SORT = "-created_at"

    def __init__(self, config: RecordStoreConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            "record_store",
            config.base_url,
            timeout=config.timeout,
            transport=transport
        )
        self.token = config.token

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for record store requests"""
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json"
        }

    async def test_connection(self) -> Dict[str, Any]:
        """Ping the record store"""
        try:
            response = await self._request("GET", "/server/ping")
            response.raise_for_status()
            return {"success": True}
        except httpx.HTTPError as e:
            log.error(f"Record store connection test failed: {str(e)}")
            return {"success": False, "error": str(e)}

    # ── Generic CRUD ─────────────────────────────────────

    async def list(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        List items in a collection

        Args:
            collection: Collection name
            filter: Directus filter object, e.g. {"email": {"_eq": "a@x.com"}}
            sort: Sort expression (defaults to newest first)
            limit: Max rows (defaults to all rows)

        Returns:
            List of item dicts
        """
        params: Dict[str, Any] = {
            "sort": sort or self.DEFAULT_SORT,
            "limit": -1 if limit is None else limit
        }
        if filter:
            params["filter"] = json.dumps(filter)

        response = await self._request("GET", f"/items/{collection}", params=params)
        response.raise_for_status()
        return response.json().get("data") or []

    async def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch one item by id; None if it does not exist

        Directus answers 403 rather than 404 for an id it has no row for.
        """
        response = await self._request("GET", f"/items/{collection}/{item_id}")
        if response.status_code in (403, 404):
            return None
        response.raise_for_status()
        return response.json().get("data")

    async def create(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an item

        An id is generated locally when the payload has none, so creation
        never depends on a database sequence.
        """
        payload = dict(data)
        if not payload.get("id"):
            payload["id"] = generate_local_id(ID_PREFIXES.get(collection, "rec"))
        payload.setdefault("created_at", utcnow_iso())

        response = await self._request("POST", f"/items/{collection}", json=payload)
        response.raise_for_status()
        return response.json().get("data") or payload

    async def update(self, collection: str, item_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Patch an item"""
        response = await self._request("PATCH", f"/items/{collection}/{item_id}", json=data)
        response.raise_for_status()
        return response.json().get("data") or {"id": item_id, **data}

    async def delete(self, collection: str, item_id: str) -> bool:
        """Delete an item"""
        response = await self._request("DELETE", f"/items/{collection}/{item_id}")
        response.raise_for_status()
        return True

    # ── Customers ────────────────────────────────────────

    async def get_customers(self, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self.list(Collections.CUSTOMERS, filter)

    async def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        return await self.get(Collections.CUSTOMERS, customer_id)

    async def find_customers_by_email(self, email: str) -> List[Dict[str, Any]]:
        return await self.list(Collections.CUSTOMERS, {"email": {"_eq": email}})

    async def find_customers_by_payments_id(self, payments_customer_id: str) -> List[Dict[str, Any]]:
        return await self.list(Collections.CUSTOMERS, {"payments_customer_id": {"_eq": payments_customer_id}})

    async def create_customer(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.create(Collections.CUSTOMERS, data)

    async def update_customer(self, customer_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.update(Collections.CUSTOMERS, customer_id, data)

    # ── Subscriptions ────────────────────────────────────

    async def get_subscriptions(self, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self.list(Collections.SUBSCRIPTIONS, filter)

    async def get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        return await self.get(Collections.SUBSCRIPTIONS, subscription_id)

    async def find_subscriptions_by_payments_id(self, payments_subscription_id: str) -> List[Dict[str, Any]]:
        return await self.list(
            Collections.SUBSCRIPTIONS,
            {"payments_subscription_id": {"_eq": payments_subscription_id}}
        )

    async def create_subscription(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.create(Collections.SUBSCRIPTIONS, data)

    async def update_subscription(self, subscription_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.update(Collections.SUBSCRIPTIONS, subscription_id, data)

    # ── Evaluations ──────────────────────────────────────

    async def get_evaluations(self, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self.list(Collections.EVALUATIONS, filter)

    async def get_evaluation(self, evaluation_id: str) -> Optional[Dict[str, Any]]:
        return await self.get(Collections.EVALUATIONS, evaluation_id)

    async def create_evaluation(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.create(Collections.EVALUATIONS, data)

    async def update_evaluation(self, evaluation_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.update(Collections.EVALUATIONS, evaluation_id, data)

    # ── Coupons ──────────────────────────────────────────

    async def get_coupons(self, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self.list(Collections.COUPONS, filter)

    async def find_coupon_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        coupons = await self.list(Collections.COUPONS, {"code": {"_eq": code}}, limit=1)
        return coupons[0] if coupons else None
