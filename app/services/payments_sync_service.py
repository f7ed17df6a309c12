"""
Payments mirror sync

Keeps the payments_subscriptions mirror, local subscriptions and each
customer's subscription_status in line with the payments provider. Also owns
the provider configuration records kept in the record store.
"""
from typing import Any, Dict, List, Optional

from app.connectors.payments import PaymentsClient
from app.connectors.record_store import RecordStoreClient
from app.models.entities import Collections, Customer, EntityType, SubscriptionPlan, SubscriptionStatus
from app.models.plans import plan_for_amount
from app.services.entity_mapping_service import EntityMappingStore
from app.services.subscription_service import SubscriptionService, local_status_for
from app.utils.helpers import normalize_email, parse_datetime, utcnow_iso
from app.utils.logger import log

ACTIVE_PROVIDER_STATUSES = ("active", "trialing")


def _ts(value: Any) -> Optional[str]:
    dt = parse_datetime(value)
    return dt.isoformat() if dt else None


def _id_of(value: Any) -> Optional[str]:
    """Expanded objects carry their id; bare references are the id"""
    if isinstance(value, dict):
        return value.get("id")
    return value


class PaymentsConfigService:
    """Active payments configuration stored in the record store"""

    def __init__(self, store: RecordStoreClient):
        self.store = store

    async def get_config(self) -> Optional[Dict]:
        rows = await self.store.list(Collections.PAYMENTS_CONFIG, {"active": {"_eq": True}}, limit=1)
        return rows[0] if rows else None

    async def save_config(self, config: Dict[str, Any]) -> Dict:
        """Deactivate the current configuration, then insert the new one as active"""
        active_rows = await self.store.list(Collections.PAYMENTS_CONFIG, {"active": {"_eq": True}})
        for row in active_rows:
            await self.store.update(Collections.PAYMENTS_CONFIG, row["id"], {"active": False})

        payload = {key: value for key, value in config.items() if key != "id"}
        payload["active"] = True
        saved = await self.store.create(Collections.PAYMENTS_CONFIG, payload)
        log.info(f"Saved payments config {saved['id']} (mode {saved.get('mode')})")
        return saved


class PaymentsSyncService:

    def __init__(
        self,
        store: RecordStoreClient,
        payments: PaymentsClient,
        mappings: Optional[EntityMappingStore] = None,
        subscriptions: Optional[SubscriptionService] = None
    ):
        self.store = store
        self.payments = payments
        self.mappings = mappings or EntityMappingStore(store)
        self.subscriptions = subscriptions or SubscriptionService(store)

    # ── Mirror ───────────────────────────────────────────

    async def upsert_mirror(self, sub: Dict[str, Any]) -> Dict:
        """Write the payments-side snapshot of one subscription"""
        items = (sub.get("items") or {}).get("data") or []
        first = items[0] if items else {}
        price = first.get("price") or {}
        recurring = price.get("recurring") or {}
        unit_amount = price.get("unit_amount")

        snapshot = {
            "payments_subscription_id": sub["id"],
            "payments_customer_id": _id_of(sub.get("customer")),
            "status": sub.get("status"),
            "current_period_start": _ts(sub.get("current_period_start") or first.get("current_period_start")),
            "current_period_end": _ts(sub.get("current_period_end") or first.get("current_period_end")),
            "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
            "price_id": price.get("id"),
            "amount": unit_amount / 100 if unit_amount is not None else None,
            "currency": price.get("currency"),
            "interval": recurring.get("interval"),
            "synced_at": utcnow_iso(),
        }

        existing = await self.store.list(
            Collections.PAYMENTS_SUBSCRIPTIONS,
            {"payments_subscription_id": {"_eq": sub["id"]}},
            limit=1,
        )
        if existing:
            return await self.store.update(Collections.PAYMENTS_SUBSCRIPTIONS, existing[0]["id"], snapshot)
        return await self.store.create(Collections.PAYMENTS_SUBSCRIPTIONS, snapshot)

    async def sync_subscription_status(self, payments_customer_id: str) -> str:
        """
        Pull every subscription of a payments customer, refresh the mirror and
        set subscription_status on the matching local customers.

        Returns:
            "active" when any subscription is active or trialing, else "inactive"
        """
        subs = await self.payments.list_subscriptions(payments_customer_id)
        for sub in subs:
            await self.upsert_mirror(sub)

        any_active = any(sub.get("status") in ACTIVE_PROVIDER_STATUSES for sub in subs)
        status = SubscriptionStatus.ACTIVE.value if any_active else SubscriptionStatus.INACTIVE.value
        await self._set_customer_status(payments_customer_id, status)
        return status

    async def sync_recent(self, limit: int = 100) -> Dict[str, Any]:
        """Mirror the most recent subscriptions; per-item failures are collected"""
        synced = 0
        errors: List[str] = []
        for sub in await self.payments.list_recent_subscriptions(limit):
            try:
                await self.upsert_mirror(sub)
                synced += 1
            except Exception as e:
                log.error(f"Error mirroring payments subscription {sub.get('id')}: {str(e)}")
                errors.append(f"subscription {sub.get('id')}: {str(e)}")
        return {"synced": synced, "errors": errors}

    # ── Payment links ────────────────────────────────────

    async def create_payment_link(self, price_id: str, plan: str, quantity: int = 1) -> Dict:
        link = await self.payments.create_payment_link(price_id, plan, quantity)
        return await self.store.create(Collections.PAYMENTS_PAYMENT_LINKS, {
            "payments_link_id": link["id"],
            "url": link.get("url"),
            "plan": plan,
            "price_id": price_id,
            "active": link.get("active", True),
        })

    async def set_payment_link_active(self, payments_link_id: str, active: bool) -> Dict:
        link = await self.payments.update_payment_link(payments_link_id, active)
        rows = await self.store.list(
            Collections.PAYMENTS_PAYMENT_LINKS,
            {"payments_link_id": {"_eq": payments_link_id}},
            limit=1,
        )
        if rows:
            return await self.store.update(Collections.PAYMENTS_PAYMENT_LINKS, rows[0]["id"], {"active": link.get("active", active)})
        return link

    # ── Event handlers ───────────────────────────────────

    async def handle_checkout_completed(self, session: Dict[str, Any]) -> Optional[Dict]:
        """
        New checkout: upsert the customer by email and open a subscription
        priced from the plan table.
        """
        details = session.get("customer_details") or {}
        email = normalize_email(session.get("customer_email") or details.get("email"))
        if not email:
            log.warning(f"Checkout session {session.get('id')} has no customer email, skipping")
            return None

        payments_customer_id = _id_of(session.get("customer"))
        payments_subscription_id = _id_of(session.get("subscription"))
        metadata = session.get("metadata") or {}
        interval = metadata.get("interval") or "month"
        plan = metadata.get("plan")
        if plan not in {p.value for p in SubscriptionPlan}:
            amount = (session.get("amount_total") or 0) / 100
            plan = plan_for_amount(amount, interval)

        customer = await self._upsert_customer(email, details.get("name"), payments_customer_id)
        await self.mappings.upsert_mapping(EntityType.CUSTOMER.value, customer["id"], payments_id=payments_customer_id)

        if payments_subscription_id:
            existing = await self.store.find_subscriptions_by_payments_id(payments_subscription_id)
            if existing:
                log.info(f"Subscription {payments_subscription_id} already recorded locally")
                return existing[0]

        subscription = await self.subscriptions.create_subscription(
            customer["id"],
            plan,
            interval=interval,
            method="card",
            payments_subscription_id=payments_subscription_id,
        )
        await self.mappings.upsert_mapping(
            EntityType.SUBSCRIPTION.value,
            subscription["id"],
            payments_id=payments_subscription_id,
        )
        return subscription

    async def handle_subscription_updated(self, sub: Dict[str, Any]) -> None:
        await self.upsert_mirror(sub)
        target = local_status_for(sub.get("status"))
        for local in await self.store.find_subscriptions_by_payments_id(sub["id"]):
            await self.subscriptions.apply_provider_status(local, target)
        await self._refresh_customer_status_from_mirror(_id_of(sub.get("customer")))

    async def handle_subscription_deleted(self, sub: Dict[str, Any]) -> None:
        await self.upsert_mirror(sub)
        for local in await self.store.find_subscriptions_by_payments_id(sub["id"]):
            await self.subscriptions.apply_provider_status(local, SubscriptionStatus.CANCELLED.value)
        await self._set_customer_status(_id_of(sub.get("customer")), SubscriptionStatus.CANCELLED.value)

    async def handle_invoice_paid(self, invoice: Dict[str, Any]) -> None:
        payments_subscription_id = _id_of(invoice.get("subscription"))
        if not payments_subscription_id:
            return
        paid_at = (invoice.get("status_transitions") or {}).get("paid_at") or invoice.get("created")
        last_payment = _ts(paid_at) or utcnow_iso()

        for local in await self.store.find_subscriptions_by_payments_id(payments_subscription_id):
            billing = {**(local.get("billing") or {}), "last_payment": last_payment}
            local = await self.store.update_subscription(local["id"], {"billing": billing})
            if local.get("status") == SubscriptionStatus.PAUSED.value:
                await self.subscriptions.apply_provider_status(local, SubscriptionStatus.ACTIVE.value)
                await self._set_customer_status(_id_of(invoice.get("customer")), SubscriptionStatus.ACTIVE.value)

    async def handle_invoice_failed(self, invoice: Dict[str, Any]) -> None:
        payments_subscription_id = _id_of(invoice.get("subscription"))
        if not payments_subscription_id:
            return
        for local in await self.store.find_subscriptions_by_payments_id(payments_subscription_id):
            await self.subscriptions.apply_provider_status(local, SubscriptionStatus.PAUSED.value)
        await self._set_customer_status(_id_of(invoice.get("customer")), SubscriptionStatus.PAUSED.value)

    # ── Helpers ──────────────────────────────────────────

    async def _upsert_customer(self, email: str, name: Optional[str], payments_customer_id: Optional[str]) -> Dict:
        matches = await self.store.find_customers_by_email(email)
        if matches:
            customer = matches[0]
            updates: Dict[str, Any] = {"subscription_status": SubscriptionStatus.ACTIVE.value}
            if payments_customer_id:
                updates["payments_customer_id"] = payments_customer_id
            return await self.store.update_customer(customer["id"], updates)

        first_name, _, last_name = (name or "").partition(" ")
        customer = Customer(
            email=email,
            first_name=first_name or None,
            last_name=last_name or None,
            payments_customer_id=payments_customer_id,
            subscription_status=SubscriptionStatus.ACTIVE.value,
        )
        created = await self.store.create_customer(customer.to_record())
        log.info(f"Created customer {created['id']} from checkout ({email})")
        return created

    async def _set_customer_status(self, payments_customer_id: Optional[str], status: str) -> None:
        if not payments_customer_id:
            return
        for customer in await self.store.find_customers_by_payments_id(payments_customer_id):
            if customer.get("subscription_status") != status:
                await self.store.update_customer(customer["id"], {"subscription_status": status})

    async def _refresh_customer_status_from_mirror(self, payments_customer_id: Optional[str]) -> None:
        if not payments_customer_id:
            return
        mirrors = await self.store.list(
            Collections.PAYMENTS_SUBSCRIPTIONS,
            {"payments_customer_id": {"_eq": payments_customer_id}},
        )
        any_active = any(row.get("status") in ACTIVE_PROVIDER_STATUSES for row in mirrors)
        status = SubscriptionStatus.ACTIVE.value if any_active else SubscriptionStatus.INACTIVE.value
        await self._set_customer_status(payments_customer_id, status)
