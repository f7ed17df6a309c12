"""
Commerce Connector

Client for the storefront's Admin REST API (Shopify).
Source of truth for products, storefront customers, orders and discount codes.
"""
from typing import Any, Dict, List, Optional

import httpx

from app.config import CommerceConfig
from app.connectors.base import BaseConnector, CouponCreationError, ProviderError
from app.utils.logger import log


class CommerceClient(BaseConnector):
    """
    Connector for the Shopify Admin API

    One request per call; paginated reads follow the Link header.
    """

    PAGE_LIMIT = 250

    def __init__(self, config: CommerceConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize commerce connector

        Args:
            config: Shop domain, access token and API version
            transport: Optional httpx transport (used by tests)
        """
        self.shop_domain = config.shop_domain.replace('https://', '').replace('http://', '').rstrip('/')
        self.access_token = config.access_token
        self.api_version = config.api_version
        super().__init__(
            "commerce",
            f"https://{self.shop_domain}/admin/api/{config.api_version}",
            timeout=config.timeout,
            transport=transport
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Shopify API requests"""
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json"
        }

    async def _call(
        self,
        method: str,
        path: str,
        context: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None
    ) -> Dict[str, Any]:
        response = await self._request(method, path, params=params, json=json)
        self._raise_for_status(response, context)
        if not response.content:
            return {}
        return response.json()

    async def _get_paginated(self, path: str, key: str, params: Optional[Dict[str, Any]] = None) -> List[Dict]:
        """Fetch every page of a list endpoint"""
        items: List[Dict] = []
        url: Optional[str] = path
        page_params = {"limit": self.PAGE_LIMIT, **(params or {})}

        while url:
            response = await self._request("GET", url, params=page_params)
            self._raise_for_status(response, f"list {key}")
            items.extend(response.json().get(key, []))

            url = self._get_next_page_url(response.headers.get("Link"))
            # The next-page URL carries its own page_info cursor
            page_params = None

        return items

    async def test_connection(self) -> Dict[str, Any]:
        """Fetch shop info to verify the credentials"""
        try:
            data = await self._call("GET", "/shop.json", "test connection")
            shop = data.get("shop", {})
            log.info(f"Connected to commerce shop: {shop.get('name')}")
            return {"success": True, "shop": shop}
        except (ProviderError, httpx.HTTPError) as e:
            log.error(f"Error connecting to commerce shop: {str(e)}")
            return {"success": False, "error": str(e)}

    # ── Catalogue / customers / orders ───────────────────

    async def get_products(self, params: Optional[Dict[str, Any]] = None) -> List[Dict]:
        return await self._get_paginated("/products.json", "products", params)

    async def get_product(self, product_id: str) -> Dict:
        data = await self._call("GET", f"/products/{product_id}.json", "get product")
        return data.get("product", {})

    async def get_customers(self, params: Optional[Dict[str, Any]] = None) -> List[Dict]:
        return await self._get_paginated("/customers.json", "customers", params)

    async def get_customer(self, customer_id: str) -> Dict:
        data = await self._call("GET", f"/customers/{customer_id}.json", "get customer")
        return data.get("customer", {})

    async def get_orders(self, params: Optional[Dict[str, Any]] = None) -> List[Dict]:
        return await self._get_paginated("/orders.json", "orders", {"status": "any", **(params or {})})

    async def get_order(self, order_id: str) -> Dict:
        data = await self._call("GET", f"/orders/{order_id}.json", "get order")
        return data.get("order", {})

    # ── Price rules / discount codes ─────────────────────

    async def create_price_rule(self, price_rule: Dict[str, Any]) -> Dict:
        data = await self._call("POST", "/price_rules.json", "create price rule", json={"price_rule": price_rule})
        return data.get("price_rule", {})

    async def get_price_rules(self) -> List[Dict]:
        return await self._get_paginated("/price_rules.json", "price_rules")

    async def update_price_rule(self, price_rule_id: str, updates: Dict[str, Any]) -> Dict:
        data = await self._call(
            "PUT",
            f"/price_rules/{price_rule_id}.json",
            "update price rule",
            json={"price_rule": {"id": price_rule_id, **updates}}
        )
        return data.get("price_rule", {})

    async def delete_price_rule(self, price_rule_id: str) -> bool:
        await self._call("DELETE", f"/price_rules/{price_rule_id}.json", "delete price rule")
        return True

    async def create_discount_code(self, price_rule_id: str, code: str) -> Dict:
        data = await self._call(
            "POST",
            f"/price_rules/{price_rule_id}/discount_codes.json",
            "create discount code",
            json={"discount_code": {"code": code}}
        )
        return data.get("discount_code", {})

    async def get_discount_codes(self, price_rule_id: str) -> List[Dict]:
        return await self._get_paginated(f"/price_rules/{price_rule_id}/discount_codes.json", "discount_codes")

    async def lookup_discount_code(self, code: str) -> Optional[Dict]:
        """Find a discount code by its code; None when the shop does not know it"""
        response = await self._request("GET", "/discount_codes/lookup.json", params={"code": code})
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "lookup discount code")
        return response.json().get("discount_code")

    async def create_coupon(
        self,
        title: str,
        code: str,
        value: float,
        value_type: str = "fixed_amount",
        usage_limit: Optional[int] = None,
        once_per_customer: bool = True,
        starts_at: Optional[str] = None,
        ends_at: Optional[str] = None
    ) -> Dict[str, Dict]:
        """
        Create a price rule and bind a discount code to it

        If the discount code cannot be created the price rule is deleted
        again. When that delete fails too, CouponCreationError carries the
        orphaned price rule id.

        Returns:
            Dict with price_rule and discount_code
        """
        price_rule_body: Dict[str, Any] = {
            "title": title,
            "target_type": "line_item",
            "target_selection": "all",
            "allocation_method": "across",
            "value_type": value_type,
            "value": f"-{value}",
            "customer_selection": "all",
            "once_per_customer": once_per_customer,
            "starts_at": starts_at,
        }
        if usage_limit is not None:
            price_rule_body["usage_limit"] = usage_limit
        if ends_at:
            price_rule_body["ends_at"] = ends_at

        price_rule = await self.create_price_rule(price_rule_body)
        price_rule_id = str(price_rule["id"])

        try:
            discount_code = await self.create_discount_code(price_rule_id, code)
        except (ProviderError, httpx.HTTPError) as e:
            log.warning(f"Discount code {code} failed, removing price rule {price_rule_id}")
            try:
                await self.delete_price_rule(price_rule_id)
            except (ProviderError, httpx.HTTPError) as cleanup_error:
                log.error(f"Could not remove price rule {price_rule_id}: {str(cleanup_error)}")
                raise CouponCreationError(
                    f"discount code {code} failed ({e}); price rule {price_rule_id} left behind",
                    price_rule_id=price_rule_id,
                    status_code=getattr(e, "status_code", None),
                    body=getattr(e, "body", None)
                ) from e
            raise

        log.info(f"Created commerce coupon {code} (price rule {price_rule_id})")
        return {"price_rule": price_rule, "discount_code": discount_code}

    # ── Webhooks ─────────────────────────────────────────

    async def create_webhook(self, topic: str, address: str) -> Dict:
        data = await self._call(
            "POST",
            "/webhooks.json",
            "create webhook",
            json={"webhook": {"topic": topic, "address": address, "format": "json"}}
        )
        return data.get("webhook", {})

    async def get_webhooks(self) -> List[Dict]:
        data = await self._call("GET", "/webhooks.json", "list webhooks")
        return data.get("webhooks", [])
