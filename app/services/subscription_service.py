"""
Subscription lifecycle

Creates local subscriptions from the versioned plan table and applies status
changes. Pricing and entitlements are copied at creation and never rewritten
when the plan table changes.
"""
from typing import Dict, Optional

from app.connectors.record_store import RecordStoreClient
from app.models.entities import (
    Billing,
    Pricing,
    Services,
    Subscription,
    SubscriptionStatus,
)
from app.models.plans import PLAN_PRICE_VERSION, plan_entitlements, plan_price
from app.services.exceptions import InvalidTransitionError, NotFoundError
from app.utils.helpers import utcnow_iso
from app.utils.logger import log

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.ACTIVE.value: {SubscriptionStatus.PAUSED.value, SubscriptionStatus.CANCELLED.value},
    SubscriptionStatus.PAUSED.value: {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value},
    SubscriptionStatus.INACTIVE.value: {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value},
    SubscriptionStatus.CANCELLED.value: set(),
}

# Payments-side subscription status -> local status
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAUSED.value,
    "unpaid": SubscriptionStatus.PAUSED.value,
    "paused": SubscriptionStatus.PAUSED.value,
    "canceled": SubscriptionStatus.CANCELLED.value,
    "incomplete": SubscriptionStatus.INACTIVE.value,
    "incomplete_expired": SubscriptionStatus.INACTIVE.value,
}


def local_status_for(provider_status: Optional[str]) -> str:
    return PROVIDER_STATUS_MAP.get(provider_status or "", SubscriptionStatus.INACTIVE.value)


class SubscriptionService:

    def __init__(self, store: RecordStoreClient):
        self.store = store

    async def create_subscription(
        self,
        customer_id: str,
        plan: str,
        interval: str = "month",
        method: Optional[str] = None,
        payments_subscription_id: Optional[str] = None
    ) -> Dict:
        """Create an active subscription pinned to the current plan prices"""
        entitlements = plan_entitlements(plan)
        subscription = Subscription(
            customer_id=customer_id,
            plan=plan,
            pricing=Pricing(
                amount=plan_price(plan, interval),
                interval=interval,
                version=PLAN_PRICE_VERSION,
            ),
            billing=Billing(method=method),
            services=Services(**entitlements),
            start_date=utcnow_iso(),
            payments_subscription_id=payments_subscription_id,
        )
        row = await self.store.create_subscription(subscription.to_record())
        log.info(f"Created {plan}/{interval} subscription {row['id']} for customer {customer_id}")
        return row

    async def change_status(self, subscription_id: str, status: str) -> Dict:
        """
        Operator-driven status change

        Raises:
            NotFoundError: unknown subscription
            InvalidTransitionError: move not allowed from the current status
        """
        target = SubscriptionStatus(status).value
        subscription = await self.store.get_subscription(subscription_id)
        if not subscription:
            raise NotFoundError("subscription", subscription_id)

        current = subscription.get("status") or SubscriptionStatus.ACTIVE.value
        if current == target:
            return subscription
        if target not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError("subscription", subscription_id, current, target)

        return await self.store.update_subscription(subscription_id, self._status_updates(target))

    async def apply_provider_status(self, subscription: Dict, status: str) -> Dict:
        """
        Mirror a status reported by the payments provider

        The provider is authoritative for billing state, so this skips the
        operator transition table. A cancelled subscription stays cancelled.
        """
        target = SubscriptionStatus(status).value
        current = subscription.get("status")
        if current == target:
            return subscription
        if current == SubscriptionStatus.CANCELLED.value:
            log.warning(f"Ignoring {target} for cancelled subscription {subscription['id']}")
            return subscription
        return await self.store.update_subscription(subscription["id"], self._status_updates(target))

    @staticmethod
    def _status_updates(target: str) -> Dict:
        updates: Dict = {"status": target}
        if target == SubscriptionStatus.PAUSED.value:
            updates["paused_at"] = utcnow_iso()
        elif target == SubscriptionStatus.CANCELLED.value:
            updates["cancelled_at"] = utcnow_iso()
        return updates
