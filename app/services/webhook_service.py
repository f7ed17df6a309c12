"""
Webhook Ingestion Handlers

Every delivery is logged by its external event id before anything else
happens. A delivery whose log row is already processed returns "duplicate"
with no effects; otherwise the event is dispatched and the row marked
processed, or the error recorded and re-raised so the provider retries.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

from app.config import Settings, get_settings, payments_config, record_store_config
from app.connectors.payments import PaymentsClient
from app.connectors.record_store import RecordStoreClient
from app.models.entities import Collections, WebhookLog
from app.services.commerce_sync_service import CommerceSyncService
from app.services.payments_sync_service import PaymentsSyncService
from app.services.trade_in_service import TradeInWorkflow, build_trade_in_workflow
from app.utils.helpers import utcnow_iso
from app.utils.logger import log


class WebhookLogBook:
    """Lookup-or-insert of webhook log rows for one provider collection"""

    def __init__(self, store: RecordStoreClient, collection: str):
        self.store = store
        self.collection = collection

    async def find(self, event_id: str) -> Optional[Dict]:
        rows = await self.store.list(self.collection, {"external_event_id": {"_eq": event_id}}, limit=1)
        return rows[0] if rows else None

    async def record(self, event_id: str, event_type: str, payload: Dict[str, Any]) -> Dict:
        existing = await self.find(event_id)
        if existing:
            return existing
        entry = WebhookLog(
            external_event_id=event_id,
            type=event_type,
            payload=payload,
            received_at=utcnow_iso(),
        )
        return await self.store.create(self.collection, entry.to_record())

    async def mark_processed(self, row_id: str) -> Dict:
        return await self.store.update(self.collection, row_id, {
            "processed": True,
            "processed_at": utcnow_iso(),
            "error": None,
        })

    async def mark_failed(self, row_id: str, error: str) -> Dict:
        return await self.store.update(self.collection, row_id, {"processed": False, "error": error})


async def _process_once(
    log_book: WebhookLogBook,
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    handler: Callable[[], Awaitable[Any]]
) -> Dict[str, Any]:
    row = await log_book.record(event_id, event_type, payload)
    if row.get("processed"):
        log.info(f"Webhook {event_type} {event_id} already processed, skipping")
        return {"status": "duplicate", "event_id": event_id}

    try:
        result = await handler()
    except Exception as e:
        log.error(f"Webhook {event_type} {event_id} failed: {str(e)}")
        await log_book.mark_failed(row["id"], str(e))
        raise

    await log_book.mark_processed(row["id"])
    return {"status": "processed", "event_id": event_id, "result": result}


class CommerceWebhookHandler:
    """Storefront webhook topics"""

    def __init__(self, store: RecordStoreClient, commerce_sync: CommerceSyncService, trade_in: TradeInWorkflow):
        self.log_book = WebhookLogBook(store, Collections.COMMERCE_WEBHOOKS)
        self.commerce_sync = commerce_sync
        self.trade_in = trade_in

    async def process_webhook(
        self,
        topic: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Handle one storefront delivery

        Without a webhook id header the event id falls back to
        <topic>:<resource id>:<updated_at>.
        """
        event_id = event_id or f"{topic}:{payload.get('id')}:{payload.get('updated_at', '')}"
        return await _process_once(
            self.log_book, event_id, topic, payload,
            lambda: self._dispatch(topic, payload, event_id)
        )

    async def _dispatch(self, topic: str, payload: Dict[str, Any], event_id: str) -> Any:
        if topic in ("products/create", "products/update"):
            row = await self.commerce_sync.upsert_product(payload)
            return {"product": row["id"]}

        if topic in ("customers/create", "customers/update"):
            row = await self.commerce_sync.upsert_customer(payload)
            return {"customer": row["id"]}

        if topic == "orders/create":
            redemptions = []
            for discount in payload.get("discount_codes") or []:
                code = discount.get("code")
                if code:
                    redemptions.append(await self.trade_in.redeem_code(code, event_id=event_id))
            return {"redemptions": redemptions}

        if topic == "orders/updated":
            log.info(f"Order {payload.get('id')} updated")
            return None

        log.warning(f"Unhandled commerce webhook topic: {topic}")
        return None


class PaymentsWebhookHandler:
    """Payments provider event types"""

    def __init__(self, store: RecordStoreClient, payments_sync: PaymentsSyncService):
        self.log_book = WebhookLogBook(store, Collections.PAYMENTS_WEBHOOKS)
        self.payments_sync = payments_sync

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValueError("payments event is missing id or type")
        return await _process_once(
            self.log_book, event_id, event_type, event,
            lambda: self._dispatch(event_type, (event.get("data") or {}).get("object") or {})
        )

    async def _dispatch(self, event_type: str, obj: Dict[str, Any]) -> Any:
        if event_type == "checkout.session.completed":
            subscription = await self.payments_sync.handle_checkout_completed(obj)
            return {"subscription": subscription["id"] if subscription else None}

        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            await self.payments_sync.handle_subscription_updated(obj)
            return None

        if event_type == "customer.subscription.deleted":
            await self.payments_sync.handle_subscription_deleted(obj)
            return None

        if event_type == "invoice.payment_succeeded":
            await self.payments_sync.handle_invoice_paid(obj)
            return None

        if event_type == "invoice.payment_failed":
            await self.payments_sync.handle_invoice_failed(obj)
            return None

        log.info(f"Unhandled payments event type: {event_type}")
        return None


def build_commerce_handler(settings: Optional[Settings] = None) -> CommerceWebhookHandler:
    settings = settings or get_settings()
    store = RecordStoreClient(record_store_config(settings))
    return CommerceWebhookHandler(
        store,
        CommerceSyncService(store),
        build_trade_in_workflow(settings),
    )


def build_payments_handler(settings: Optional[Settings] = None) -> PaymentsWebhookHandler:
    settings = settings or get_settings()
    store = RecordStoreClient(record_store_config(settings))
    return PaymentsWebhookHandler(store, PaymentsSyncService(store, PaymentsClient(payments_config(settings))))
