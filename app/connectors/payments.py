"""
Payments Connector

Thin async wrapper over stripe-python. Source of truth for payment-side
customers, subscriptions and payment links.

The stripe SDK is synchronous, so every call runs in a worker thread to keep
the event loop free.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import stripe
from stripe import StripeClient

from app.config import PaymentsConfig
from app.connectors.base import ConnectorError, ProviderError
from app.utils.logger import log


def _to_dict(obj: Any) -> Dict[str, Any]:
    """Plain JSON dict from a StripeObject"""
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


class PaymentsClient:
    """
    Connector for the payments provider (Stripe)

    Built from an explicit PaymentsConfig; the API key follows the
    configured mode (test or live).
    """

    source_name = "payments"

    def __init__(self, config: PaymentsConfig, client: Optional[StripeClient] = None):
        self.config = config
        if client is None and config.api_key:
            client = StripeClient(config.api_key)
        self._stripe = client

    @property
    def _client(self) -> StripeClient:
        if self._stripe is None:
            raise ConnectorError(f"payments api key for mode '{self.config.mode}' is not configured")
        return self._stripe

    async def _call(self, context: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            message = f"payments {context} failed: {e.user_message or str(e)}"
            log.error(message)
            raise ProviderError(message, status_code=e.http_status, body=e.json_body) from e

    async def test_connection(self) -> Dict[str, Any]:
        try:
            await self._call("test connection", self._client.balance.retrieve)
            return {"success": True, "mode": self.config.mode}
        except ProviderError as e:
            return {"success": False, "error": str(e)}

    async def list_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        """All subscriptions (any status) for one payments customer"""

        def _list():
            page = self._client.subscriptions.list(
                params={"customer": customer_id, "status": "all", "limit": 100}
            )
            return [_to_dict(sub) for sub in page.auto_paging_iter()]

        return await self._call("list subscriptions", _list)

    async def list_recent_subscriptions(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent subscriptions across all customers"""

        def _list():
            page = self._client.subscriptions.list(params={"status": "all", "limit": limit})
            return [_to_dict(sub) for sub in page.data]

        return await self._call("list recent subscriptions", _list)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sub = await self._call("retrieve subscription", self._client.subscriptions.retrieve, subscription_id)
        return _to_dict(sub)

    async def create_payment_link(
        self,
        price_id: str,
        plan: str,
        quantity: int = 1,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        params = {
            "line_items": [{"price": price_id, "quantity": quantity}],
            "metadata": {"plan": plan, **(metadata or {})},
        }
        link = await self._call("create payment link", self._client.payment_links.create, params=params)
        log.info(f"Created payment link for plan {plan}")
        return _to_dict(link)

    async def update_payment_link(self, link_id: str, active: bool) -> Dict[str, Any]:
        link = await self._call(
            "update payment link",
            self._client.payment_links.update,
            link_id,
            params={"active": active}
        )
        return _to_dict(link)

    def construct_event(self, payload: str, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event

        Raises:
            ValueError: payload is not valid JSON
            stripe.SignatureVerificationError: signature mismatch
        """
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _to_dict(event)
