"""
Reconciliation engine tests.

Guards against:
1. Merges picking the wrong survivor or losing external ids
2. Resolve not being repeatable
3. Duplicate mapping rows
4. Staleness window drift
5. A failing provider branch aborting the whole full sync
6. Overlapping runs of the same sync type
"""
import asyncio
from datetime import timedelta

import pytest

from app.models.entities import Collections
from app.services.entity_mapping_service import EntityMappingStore
from app.services.exceptions import SyncInProgressError
from app.services.reconciliation_service import ReconciliationEngine, is_sync_running
from app.utils.helpers import utcnow

from conftest import FakePaymentsClient, _run


def _iso_days_ago(days):
    return (utcnow() - timedelta(days=days)).isoformat()


def _seed_duplicates(store):
    store.seed(Collections.CUSTOMERS, {
        "id": "1",
        "email": " A@Example.com",
        "payments_customer_id": "pay_9",
        "created_at": "2024-01-01T00:00:00+00:00",
    })
    store.seed(Collections.CUSTOMERS, {
        "id": "2",
        "email": "a@example.com",
        "created_at": "2024-02-01T00:00:00+00:00",
    })


# ---------------------------------------------------------------------------
# Conflict detection
# ---------------------------------------------------------------------------

def test_duplicate_emails_grouped_case_insensitively(store):
    _seed_duplicates(store)
    store.seed(Collections.CUSTOMERS, {"id": "3", "email": "b@example.com"})

    conflicts = _run(ReconciliationEngine(store).check_for_conflicts())

    assert len(conflicts["duplicate_emails"]) == 1
    duplicate = conflicts["duplicate_emails"][0]
    assert duplicate["email"] == "a@example.com"
    assert sorted(duplicate["customer_ids"]) == ["1", "2"]


def test_missing_mapping_only_for_customers_with_external_ids(store):
    store.seed(Collections.CUSTOMERS, {"id": "c1", "email": "x@example.com", "commerce_customer_id": "shop_1"})
    store.seed(Collections.CUSTOMERS, {"id": "c2", "email": "y@example.com"})

    conflicts = _run(ReconciliationEngine(store).check_for_conflicts())

    assert [m["customer_id"] for m in conflicts["missing_mappings"]] == ["c1"]


def test_check_for_conflicts_does_not_write(store):
    _seed_duplicates(store)
    _run(ReconciliationEngine(store).check_for_conflicts())

    assert all(op == "list" for op, _ in store.calls)


def test_stale_after_eight_days_not_six(store):
    store.seed(Collections.ENTITY_MAPPINGS, {
        "id": "old", "entity_type": "customer", "local_id": "c1", "last_synced": _iso_days_ago(8),
    })
    store.seed(Collections.ENTITY_MAPPINGS, {
        "id": "fresh", "entity_type": "customer", "local_id": "c2", "last_synced": _iso_days_ago(6),
    })

    conflicts = _run(ReconciliationEngine(store).check_for_conflicts())

    assert [s["mapping_id"] for s in conflicts["stale_data"]] == ["old"]


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def test_merge_keeps_most_recent_and_inherits_payments_id(store):
    _seed_duplicates(store)

    result = _run(ReconciliationEngine(store).resolve_conflicts())

    assert result["merged_duplicates"] == 1
    assert result["errors"] == []
    customers = store.rows(Collections.CUSTOMERS)
    assert len(customers) == 1
    assert customers[0]["id"] == "2"
    assert customers[0]["payments_customer_id"] == "pay_9"

    mapping = _run(EntityMappingStore(store).get_mapping("customer", "2"))
    assert mapping["payments_id"] == "pay_9"


def test_merge_tie_goes_to_larger_id(store):
    stamp = "2024-03-01T00:00:00+00:00"
    store.seed(Collections.CUSTOMERS, {"id": "cust_a", "email": "t@example.com", "created_at": stamp})
    store.seed(Collections.CUSTOMERS, {
        "id": "cust_b", "email": "t@example.com", "created_at": stamp, "commerce_customer_id": "shop_7",
    })

    survivor = _run(ReconciliationEngine(store).merge_customers(["cust_a", "cust_b"]))

    assert survivor["id"] == "cust_b"
    assert [c["id"] for c in store.rows(Collections.CUSTOMERS)] == ["cust_b"]


def test_merge_survivor_keeps_its_own_ids(store):
    store.seed(Collections.CUSTOMERS, {
        "id": "old", "email": "k@example.com", "payments_customer_id": "pay_old",
        "created_at": "2024-01-01T00:00:00+00:00",
    })
    store.seed(Collections.CUSTOMERS, {
        "id": "new", "email": "k@example.com", "payments_customer_id": "pay_new",
        "created_at": "2024-05-01T00:00:00+00:00",
    })

    survivor = _run(ReconciliationEngine(store).merge_customers(["old", "new"]))

    assert survivor["payments_customer_id"] == "pay_new"


def test_merge_moves_children_to_survivor(store):
    _seed_duplicates(store)
    store.seed(Collections.SUBSCRIPTIONS, {"id": "s1", "customer_id": "1"})
    store.seed(Collections.EVALUATIONS, {"id": "e1", "customer_id": "1"})
    store.seed(Collections.COUPONS, {"id": "k1", "code": "TRADEIN-X-1", "customer_id": "1"})

    _run(ReconciliationEngine(store).resolve_conflicts())

    for collection in (Collections.SUBSCRIPTIONS, Collections.EVALUATIONS, Collections.COUPONS):
        assert [row["customer_id"] for row in store.rows(collection)] == ["2"]


def test_merge_failure_is_collected(store):
    _seed_duplicates(store)
    store.fail("delete", Collections.CUSTOMERS)

    result = _run(ReconciliationEngine(store).resolve_conflicts())

    assert result["merged_duplicates"] == 0
    assert len(result["errors"]) == 1
    assert result["errors"][0].startswith("email a@example.com:")


def test_failed_loser_delete_leaves_survivor_ids_untouched(store):
    _seed_duplicates(store)
    store.fail("delete", Collections.CUSTOMERS)

    _run(ReconciliationEngine(store).resolve_conflicts())

    customers = {c["id"]: c for c in store.rows(Collections.CUSTOMERS)}
    assert customers["1"]["payments_customer_id"] == "pay_9"
    assert "payments_customer_id" not in customers["2"]


# ---------------------------------------------------------------------------
# Resolve
# ---------------------------------------------------------------------------

def test_resolve_is_idempotent(store):
    _seed_duplicates(store)
    store.seed(Collections.CUSTOMERS, {"id": "c9", "email": "z@example.com", "commerce_customer_id": "shop_9"})
    engine = ReconciliationEngine(store)

    first = _run(engine.resolve_conflicts())
    snapshot = {c: store.rows(c) for c in (Collections.CUSTOMERS, Collections.ENTITY_MAPPINGS)}
    second = _run(engine.resolve_conflicts())

    assert first["merged_duplicates"] == 1
    assert first["created_mappings"] == 1
    assert second == {"merged_duplicates": 0, "created_mappings": 0, "refreshed_stale": 0, "errors": []}
    assert store.rows(Collections.CUSTOMERS) == snapshot[Collections.CUSTOMERS]
    assert len(store.rows(Collections.ENTITY_MAPPINGS)) == len(snapshot[Collections.ENTITY_MAPPINGS])


def test_missing_mapping_is_created_once(store):
    store.seed(Collections.CUSTOMERS, {
        "id": "c1", "email": "m@example.com", "payments_customer_id": "pay_1", "commerce_customer_id": "shop_1",
    })
    engine = ReconciliationEngine(store)

    result = _run(engine.resolve_conflicts())

    assert result["created_mappings"] == 1
    mappings = store.rows(Collections.ENTITY_MAPPINGS)
    assert len(mappings) == 1
    assert mappings[0]["payments_id"] == "pay_1"
    assert mappings[0]["commerce_id"] == "shop_1"
    assert _run(engine.check_for_conflicts())["missing_mappings"] == []


def test_stale_customer_mappings_refreshed_by_one_customer_sync(store):
    store.seed(Collections.CUSTOMERS, {"id": "c1", "email": "s1@example.com"})
    store.seed(Collections.CUSTOMERS, {"id": "c2", "email": "s2@example.com"})
    for customer_id in ("c1", "c2"):
        store.seed(Collections.ENTITY_MAPPINGS, {
            "entity_type": "customer", "local_id": customer_id, "last_synced": _iso_days_ago(10),
        })

    result = _run(ReconciliationEngine(store).resolve_conflicts())

    assert result["refreshed_stale"] == 2
    history = store.rows(Collections.SYNC_HISTORY)
    assert [h["type"] for h in history] == ["partial_sync"]
    assert _run(EntityMappingStore(store).list_stale()) == []


# ---------------------------------------------------------------------------
# Mapping store
# ---------------------------------------------------------------------------

def test_upsert_mapping_keeps_one_row_per_entity(store):
    mappings = EntityMappingStore(store)

    _run(mappings.upsert_mapping("customer", "c1", payments_id="pay_1"))
    _run(mappings.upsert_mapping("customer", "c1", commerce_id="shop_1"))

    rows = store.rows(Collections.ENTITY_MAPPINGS)
    assert len(rows) == 1
    assert rows[0]["payments_id"] == "pay_1"
    assert rows[0]["commerce_id"] == "shop_1"


def test_same_local_id_different_entity_types_are_separate(store):
    mappings = EntityMappingStore(store)

    _run(mappings.upsert_mapping("customer", "x1", payments_id="pay_1"))
    _run(mappings.upsert_mapping("product", "x1", commerce_id="prod_1"))

    assert len(store.rows(Collections.ENTITY_MAPPINGS)) == 2


# ---------------------------------------------------------------------------
# Sync runs
# ---------------------------------------------------------------------------

def test_sync_customers_refreshes_subscription_status(store):
    store.seed(Collections.CUSTOMERS, {"id": "c1", "email": "p@example.com", "payments_customer_id": "pay_1"})
    store.seed(Collections.CUSTOMERS, {"id": "c2", "email": "q@example.com", "payments_customer_id": "pay_2"})
    store.seed(Collections.CUSTOMERS, {"id": "c3", "email": "r@example.com"})
    payments = FakePaymentsClient({
        "pay_1": [{"id": "sub_1", "customer": "pay_1", "status": "trialing", "items": {"data": []}}],
        "pay_2": [{"id": "sub_2", "customer": "pay_2", "status": "canceled", "items": {"data": []}}],
    })

    result = _run(ReconciliationEngine(store, payments=payments).sync_customers())

    assert result == {"synced": 3, "errors": []}
    statuses = {c["id"]: c.get("subscription_status") for c in store.rows(Collections.CUSTOMERS)}
    assert statuses == {"c1": "active", "c2": "inactive", "c3": None}
    assert len(store.rows(Collections.PAYMENTS_SUBSCRIPTIONS)) == 2
    assert len(store.rows(Collections.ENTITY_MAPPINGS)) == 3

    history = store.rows(Collections.SYNC_HISTORY)
    assert history[0]["status"] == "completed"
    assert history[0]["details"]["synced"] == 3


def test_sync_customers_collects_per_customer_errors(store, provider_error):
    store.seed(Collections.CUSTOMERS, {"id": "c1", "email": "p@example.com", "payments_customer_id": "pay_1"})
    store.seed(Collections.CUSTOMERS, {"id": "c2", "email": "q@example.com"})
    payments = FakePaymentsClient()
    payments.error = provider_error("payments unavailable", 503)

    result = _run(ReconciliationEngine(store, payments=payments).sync_customers())

    assert result["synced"] == 1
    assert result["errors"] == ["customer c1: payments unavailable"]


def test_full_sync_with_commerce_failure_completes(store, payments, commerce, provider_error):
    store.seed(Collections.CUSTOMERS, {"id": "c1", "email": "p@example.com"})
    commerce.list_error = provider_error("commerce down", 503)

    result = _run(ReconciliationEngine(store, payments=payments, commerce=commerce).run_full_sync())

    assert result["customers"] == {"synced": 1, "errors": []}
    assert result["payments"] == {"synced": 0, "errors": []}
    assert result["commerce"]["synced"] == 0
    assert result["commerce"]["errors"] == ["commerce down"]

    full = [h for h in store.rows(Collections.SYNC_HISTORY) if h["type"] == "full_sync"]
    assert len(full) == 1
    assert full[0]["status"] == "completed"
    assert full[0]["details"]["commerce"]["errors"] == ["commerce down"]
    assert full[0]["completed_at"]


def test_full_sync_reports_unconfigured_providers(store):
    result = _run(ReconciliationEngine(store).run_full_sync())

    assert result["payments"]["errors"] == ["payments client is not configured"]
    assert result["commerce"]["errors"] == ["commerce client is not configured"]


def test_full_sync_history_failed_when_run_cannot_start(store):
    store.fail("create", Collections.SYNC_HISTORY)

    with pytest.raises(RuntimeError):
        _run(ReconciliationEngine(store).run_full_sync())

    assert not is_sync_running("full_sync")


def test_full_sync_pulls_commerce_catalogue(store, payments, commerce):
    commerce.products = [{"id": 11, "title": "Pillow", "variants": [{"price": "40.00"}]}]
    commerce.customers = [{"id": 21, "email": "Shop@Example.com", "first_name": "Sam"}]

    result = _run(ReconciliationEngine(store, payments=payments, commerce=commerce).run_full_sync())

    assert result["commerce"] == {"synced": 2, "errors": []}
    assert store.rows(Collections.COMMERCE_PRODUCTS)[0]["price"] == "40.00"
    local = store.rows(Collections.CUSTOMERS)
    assert local[0]["email"] == "shop@example.com"
    assert local[0]["commerce_customer_id"] == "21"


class SlowPayments(FakePaymentsClient):

    async def list_subscriptions(self, customer_id):
        await asyncio.sleep(0.05)
        return await super().list_subscriptions(customer_id)


def test_overlapping_full_sync_is_rejected(store):
    store.seed(Collections.CUSTOMERS, {"id": "c1", "email": "p@example.com", "payments_customer_id": "pay_1"})
    engine = ReconciliationEngine(store, payments=SlowPayments())

    async def scenario():
        first = asyncio.create_task(engine.run_full_sync())
        await asyncio.sleep(0.01)
        assert is_sync_running("full_sync")
        with pytest.raises(SyncInProgressError):
            await engine.run_full_sync()
        return await first

    result = _run(scenario())

    assert result["customers"]["synced"] == 1
    assert not is_sync_running("full_sync")
    assert len([h for h in store.rows(Collections.SYNC_HISTORY) if h["type"] == "full_sync"]) == 1
