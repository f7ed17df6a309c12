"""
Reconciliation Engine

Detects and repairs divergence between local customers, their entity
mappings and the two providers. Batch-oriented: each item is handled on its
own and failures are collected in `errors` instead of aborting the batch.

Runs are single-flight per sync type inside this process; an overlapping
call raises SyncInProgressError.
"""
import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.config import (
    Settings,
    commerce_config,
    get_settings,
    payments_config,
    record_store_config,
)
from app.connectors.commerce import CommerceClient
from app.connectors.payments import PaymentsClient
from app.connectors.record_store import RecordStoreClient
from app.models.entities import Collections, EntityType, SyncService, SyncType
from app.services.commerce_sync_service import CommerceSyncService
from app.services.entity_mapping_service import STALE_AFTER_DAYS, EntityMappingStore
from app.services.exceptions import SyncInProgressError
from app.services.payments_sync_service import PaymentsSyncService
from app.services.sync_history_service import SyncHistoryService
from app.utils.helpers import normalize_email, parse_datetime
from app.utils.logger import log

# External ids a survivor inherits from the customers merged into it
MERGED_ID_FIELDS = ("payments_customer_id", "commerce_customer_id")

# Child collections whose customer_id follows a merge
CUSTOMER_CHILD_COLLECTIONS = (Collections.SUBSCRIPTIONS, Collections.EVALUATIONS, Collections.COUPONS)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_sync_locks: Dict[str, asyncio.Lock] = {}


@asynccontextmanager
async def single_flight(sync_type: str):
    """Hold the process-wide lock for a sync type, or fail immediately"""
    lock = _sync_locks.setdefault(sync_type, asyncio.Lock())
    if lock.locked():
        log.warning(f"{sync_type} requested while another run is in progress")
        raise SyncInProgressError(sync_type)
    async with lock:
        yield


def is_sync_running(sync_type: str) -> bool:
    lock = _sync_locks.get(sync_type)
    return bool(lock and lock.locked())


class ReconciliationEngine:
    """
    Conflict detection, conflict repair and sync runs over explicit clients

    The payments and commerce clients are optional; a branch whose client is
    missing reports a configuration error instead of running.
    """

    def __init__(
        self,
        store: RecordStoreClient,
        payments: Optional[PaymentsClient] = None,
        commerce: Optional[CommerceClient] = None,
        stale_after_days: int = STALE_AFTER_DAYS
    ):
        self.store = store
        self.payments = payments
        self.commerce = commerce
        self.mappings = EntityMappingStore(store, stale_after_days)
        self.history = SyncHistoryService(store)
        self.payments_sync = PaymentsSyncService(store, payments, self.mappings) if payments else None
        self.commerce_sync = CommerceSyncService(store, commerce, self.mappings)

    # ── Detection ────────────────────────────────────────

    async def check_for_conflicts(self) -> Dict[str, List[Dict]]:
        """
        Read-only scan of the record store

        Returns:
            duplicate_emails: customers sharing an email (case-insensitive)
            missing_mappings: customers with external ids but no mapping
            stale_data: mappings not refreshed within the staleness window
        """
        customers = await self.store.get_customers()

        by_email: "OrderedDict[str, List[str]]" = OrderedDict()
        for customer in customers:
            email = normalize_email(customer.get("email"))
            if email:
                by_email.setdefault(email, []).append(customer["id"])
        duplicate_emails = [
            {"email": email, "customer_ids": ids}
            for email, ids in by_email.items()
            if len(ids) > 1
        ]

        customer_mappings = await self.mappings.list_mappings(EntityType.CUSTOMER.value)
        mapped_ids = {m.get("local_id") for m in customer_mappings}
        missing_mappings = [
            {
                "customer_id": customer["id"],
                "payments_customer_id": customer.get("payments_customer_id"),
                "commerce_customer_id": customer.get("commerce_customer_id"),
            }
            for customer in customers
            if (customer.get("payments_customer_id") or customer.get("commerce_customer_id"))
            and customer["id"] not in mapped_ids
        ]

        stale_data = [
            {
                "mapping_id": mapping["id"],
                "entity_type": mapping.get("entity_type"),
                "local_id": mapping.get("local_id"),
                "last_synced": mapping.get("last_synced"),
            }
            for mapping in await self.mappings.list_stale()
        ]

        log.info(
            f"Conflict check: {len(duplicate_emails)} duplicate emails, "
            f"{len(missing_mappings)} missing mappings, {len(stale_data)} stale mappings"
        )
        return {
            "duplicate_emails": duplicate_emails,
            "missing_mappings": missing_mappings,
            "stale_data": stale_data,
        }

    # ── Repair ───────────────────────────────────────────

    async def resolve_conflicts(self) -> Dict[str, Any]:
        """
        Repair everything check_for_conflicts reports

        Safe to re-run: a second pass over a repaired store finds nothing
        left to merge or map.
        """
        conflicts = await self.check_for_conflicts()
        result: Dict[str, Any] = {
            "merged_duplicates": 0,
            "created_mappings": 0,
            "refreshed_stale": 0,
            "errors": [],
        }

        for duplicate in conflicts["duplicate_emails"]:
            try:
                if await self.merge_customers(duplicate["customer_ids"]):
                    result["merged_duplicates"] += 1
            except Exception as e:
                log.error(f"Error merging customers for {duplicate['email']}: {str(e)}")
                result["errors"].append(f"email {duplicate['email']}: {str(e)}")

        for missing in conflicts["missing_mappings"]:
            customer_id = missing["customer_id"]
            try:
                customer = await self.store.get_customer(customer_id)
                if not customer:
                    # merged away above
                    continue
                await self.mappings.upsert_mapping(
                    EntityType.CUSTOMER.value,
                    customer_id,
                    payments_id=customer.get("payments_customer_id"),
                    commerce_id=customer.get("commerce_customer_id"),
                )
                result["created_mappings"] += 1
            except Exception as e:
                log.error(f"Error creating mapping for customer {customer_id}: {str(e)}")
                result["errors"].append(f"customer {customer_id}: {str(e)}")

        stale_customers = [
            item for item in conflicts["stale_data"]
            if item.get("entity_type") == EntityType.CUSTOMER.value
        ]
        if stale_customers:
            try:
                await self.sync_customers()
                result["refreshed_stale"] = len(stale_customers)
            except Exception as e:
                log.error(f"Error refreshing stale customer mappings: {str(e)}")
                result["errors"].append(f"stale customers: {str(e)}")

        log.info(
            f"Resolved conflicts: {result['merged_duplicates']} merged, "
            f"{result['created_mappings']} mappings, {result['refreshed_stale']} refreshed, "
            f"{len(result['errors'])} errors"
        )
        return result

    async def merge_customers(self, customer_ids: List[str]) -> Optional[Dict]:
        """
        Collapse duplicate customers into the most recently created one

        Ties on created_at go to the larger id. The losers' subscriptions,
        evaluations and coupons move to the survivor and the losers are
        deleted; only then are the external ids the survivor lacked copied
        onto it, so one external id never sits on two live customers.

        Returns:
            The survivor row, or None when fewer than two customers remain
        """
        rows = []
        for customer_id in customer_ids:
            row = await self.store.get_customer(customer_id)
            if row:
                rows.append(row)
        if len(rows) < 2:
            return None

        rows.sort(
            key=lambda row: (parse_datetime(row.get("created_at")) or _EPOCH, str(row["id"])),
            reverse=True,
        )
        survivor, losers = rows[0], rows[1:]

        inherited: Dict[str, Any] = {}
        for loser in losers:
            for field in MERGED_ID_FIELDS:
                if not survivor.get(field) and not inherited.get(field) and loser.get(field):
                    inherited[field] = loser[field]

        for loser in losers:
            await self._reassign_children(loser["id"], survivor["id"])
            await self.store.delete(Collections.CUSTOMERS, loser["id"])
            log.info(f"Merged customer {loser['id']} into {survivor['id']}")

        # losers are gone before their external ids land on the survivor
        if inherited:
            survivor = await self.store.update_customer(survivor["id"], inherited)
            survivor = {**survivor, **inherited}

        await self.mappings.upsert_mapping(
            EntityType.CUSTOMER.value,
            survivor["id"],
            payments_id=survivor.get("payments_customer_id"),
            commerce_id=survivor.get("commerce_customer_id"),
        )
        return survivor

    async def _reassign_children(self, from_customer_id: str, to_customer_id: str) -> None:
        for collection in CUSTOMER_CHILD_COLLECTIONS:
            children = await self.store.list(collection, {"customer_id": {"_eq": from_customer_id}})
            for child in children:
                await self.store.update(collection, child["id"], {"customer_id": to_customer_id})

    # ── Sync runs ────────────────────────────────────────

    async def sync_customers(self) -> Dict[str, Any]:
        """
        Partial sync over every local customer: refresh payments subscription
        status where a payments id exists and refresh the customer mapping.
        """
        async with single_flight(SyncType.PARTIAL_SYNC.value):
            async with self.history.track(SyncService.ALL.value, SyncType.PARTIAL_SYNC.value) as run:
                synced = 0
                errors: List[str] = []

                for customer in await self.store.get_customers():
                    customer_id = customer["id"]
                    payments_id = customer.get("payments_customer_id")
                    try:
                        if payments_id and self.payments_sync:
                            await self.payments_sync.sync_subscription_status(payments_id)
                        await self.mappings.upsert_mapping(
                            EntityType.CUSTOMER.value,
                            customer_id,
                            payments_id=payments_id,
                            commerce_id=customer.get("commerce_customer_id"),
                        )
                        synced += 1
                    except Exception as e:
                        log.error(f"Error syncing customer {customer_id}: {str(e)}")
                        errors.append(f"customer {customer_id}: {str(e)}")

                run.details = {"synced": synced, "errors": errors}

        log.info(f"Customer sync complete: {synced} synced, {len(errors)} errors")
        return {"synced": synced, "errors": errors}

    async def run_full_sync(self) -> Dict[str, Dict[str, Any]]:
        """
        Customers, payments and commerce in turn

        Each branch is isolated: a failing branch records its error and the
        others still run. The history row fails only when the run itself
        cannot complete.
        """
        async with single_flight(SyncType.FULL_SYNC.value):
            async with self.history.track(SyncService.ALL.value, SyncType.FULL_SYNC.value) as run:
                log.info("Starting full sync")
                result = {
                    "customers": await self._branch("customers", self.sync_customers),
                    "payments": await self._branch("payments", self._sync_payments),
                    "commerce": await self._branch("commerce", self._sync_commerce),
                }
                run.details = result

        log.info("Full sync complete")
        return result

    async def _branch(self, name: str, fn) -> Dict[str, Any]:
        try:
            return await fn()
        except Exception as e:
            log.error(f"Full sync {name} branch failed: {str(e)}")
            return {"synced": 0, "errors": [str(e)]}

    async def _sync_payments(self) -> Dict[str, Any]:
        if self.payments_sync is None:
            raise RuntimeError("payments client is not configured")
        return await self.payments_sync.sync_recent()

    async def _sync_commerce(self) -> Dict[str, Any]:
        if self.commerce is None:
            raise RuntimeError("commerce client is not configured")
        return await self.commerce_sync.run_full_pull()


def build_engine(settings: Optional[Settings] = None) -> ReconciliationEngine:
    """Fresh clients from current settings; called once per run"""
    settings = settings or get_settings()
    store = RecordStoreClient(record_store_config(settings))

    pay_config = payments_config(settings)
    payments = PaymentsClient(pay_config) if pay_config.api_key else None

    shop_config = commerce_config(settings)
    commerce = CommerceClient(shop_config) if shop_config.shop_domain and shop_config.access_token else None

    return ReconciliationEngine(store, payments, commerce, settings.stale_after_days)
