"""
Webhook receivers for the payments provider and the storefront
"""
import base64
import hashlib
import hmac
import json
from typing import Optional

import stripe
from fastapi import APIRouter, Header, HTTPException, Request

from app.config import commerce_config, get_settings, payments_config
from app.connectors.base import ProviderError
from app.connectors.commerce import CommerceClient
from app.connectors.payments import PaymentsClient
from app.services.webhook_service import build_commerce_handler, build_payments_handler
from app.utils.logger import log

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

COMMERCE_TOPICS = (
    "products/create",
    "products/update",
    "customers/create",
    "customers/update",
    "orders/create",
    "orders/updated",
)


def verify_commerce_webhook(data: bytes, hmac_header: str, secret: str) -> bool:
    """Check the storefront's base64 HMAC-SHA256 signature of the raw body"""
    computed_hmac = base64.b64encode(
        hmac.new(secret.encode(), data, hashlib.sha256).digest()
    ).decode()
    return hmac.compare_digest(computed_hmac, hmac_header)


@router.post("/payments")
async def payments_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None)
):
    """Signed payments provider events"""
    config = payments_config()
    if not config.webhook_secret:
        raise HTTPException(status_code=500, detail="Payments webhook secret not configured")

    body = await request.body()
    try:
        event = PaymentsClient(config).construct_event(body.decode("utf-8"), stripe_signature or "")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        log.warning("Rejected payments webhook with an invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        return await build_payments_handler().process_event(event)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/commerce")
async def commerce_webhook(
    request: Request,
    x_shopify_topic: Optional[str] = Header(None),
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    x_shopify_webhook_id: Optional[str] = Header(None)
):
    """Storefront topic deliveries"""
    body = await request.body()

    secret = get_settings().commerce_webhook_secret
    if secret:
        if not x_shopify_hmac_sha256 or not verify_commerce_webhook(body, x_shopify_hmac_sha256, secret):
            log.warning(f"Rejected commerce webhook {x_shopify_topic} with an invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if not x_shopify_topic:
        raise HTTPException(status_code=400, detail="Missing X-Shopify-Topic header")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        return await build_commerce_handler().process_webhook(x_shopify_topic, payload, x_shopify_webhook_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/commerce/register")
async def register_commerce_webhooks(address: str):
    """
    Subscribe the storefront to every handled topic.

    Example: POST /webhooks/commerce/register?address=https://crm.example.com/webhooks/commerce
    """
    config = commerce_config()
    if not config.shop_domain or not config.access_token:
        raise HTTPException(status_code=400, detail="Commerce shop is not configured")

    client = CommerceClient(config)
    existing = {(w.get("topic"), w.get("address")) for w in await client.get_webhooks()}

    registered, errors = [], []
    for topic in COMMERCE_TOPICS:
        if (topic, address) in existing:
            continue
        try:
            webhook = await client.create_webhook(topic, address)
            registered.append({"topic": topic, "id": webhook.get("id")})
        except ProviderError as e:
            errors.append(f"{topic}: {str(e)}")

    return {"registered": registered, "errors": errors}
