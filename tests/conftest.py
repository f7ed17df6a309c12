"""
Shared test doubles.

The in-memory record store subclasses the real client and replaces only the
five generic operations, so every domain helper runs its real code.
"""
import asyncio
import concurrent.futures
import copy
from typing import Any, Dict, List, Optional

import pytest

from app.config import RecordStoreConfig
from app.connectors.base import ProviderError
from app.connectors.record_store import RecordStoreClient
from app.models.entities import ID_PREFIXES
from app.utils.helpers import generate_local_id, utcnow_iso


def _run(coro):
    """Run an async call from a sync test, even inside a running loop."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _matches(row: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    if not filter:
        return True
    for field, condition in filter.items():
        if field == "_and":
            if not all(_matches(row, sub) for sub in condition):
                return False
            continue
        value = row.get(field)
        for op, expected in condition.items():
            if op == "_eq" and value != expected:
                return False
            if op == "_neq" and value == expected:
                return False
            if op == "_lt" and not (value is not None and value < expected):
                return False
            if op == "_gt" and not (value is not None and value > expected):
                return False
            if op == "_in" and value not in expected:
                return False
            if op == "_null" and (value is None) != bool(expected):
                return False
            if op == "_nnull" and (value is not None) != bool(expected):
                return False
    return True


class InMemoryRecordStore(RecordStoreClient):
    """Directus-style collections kept in dicts"""

    def __init__(self):
        super().__init__(RecordStoreConfig(base_url="http://records.test", token="test"))
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.failures: Dict[tuple, Exception] = {}
        self.calls: List[tuple] = []

    def fail(self, op: str, collection: str, error: Optional[Exception] = None):
        self.failures[(op, collection)] = error or RuntimeError(f"{op} {collection} unavailable")

    def _check(self, op: str, collection: str):
        self.calls.append((op, collection))
        if (op, collection) in self.failures:
            raise self.failures[(op, collection)]

    def rows(self, collection: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.collections.get(collection, {}).values()]

    def seed(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row.setdefault("id", generate_local_id(ID_PREFIXES.get(collection, "rec")))
        row.setdefault("created_at", utcnow_iso())
        self.collections.setdefault(collection, {})[row["id"]] = row
        return copy.deepcopy(row)

    async def list(self, collection, filter=None, sort=None, limit=None):
        self._check("list", collection)
        rows = [row for row in self.rows(collection) if _matches(row, filter)]
        sort = sort or self.DEFAULT_SORT
        field = sort.lstrip("-")
        present = [row for row in rows if row.get(field) is not None]
        missing = [row for row in rows if row.get(field) is None]
        present.sort(key=lambda row: row[field], reverse=sort.startswith("-"))
        rows = present + missing
        if limit is not None and limit >= 0:
            rows = rows[:limit]
        return rows

    async def get(self, collection, item_id):
        self._check("get", collection)
        row = self.collections.get(collection, {}).get(item_id)
        return copy.deepcopy(row) if row else None

    async def create(self, collection, data):
        self._check("create", collection)
        return self.seed(collection, data)

    async def update(self, collection, item_id, data):
        self._check("update", collection)
        row = self.collections.get(collection, {}).get(item_id)
        if row is None:
            raise KeyError(f"{collection} {item_id} not found")
        row.update(copy.deepcopy(data))
        return copy.deepcopy(row)

    async def delete(self, collection, item_id):
        self._check("delete", collection)
        self.collections.get(collection, {}).pop(item_id, None)
        return True


class FakePaymentsClient:
    """Payments provider double keyed by customer id"""

    def __init__(self, subscriptions: Optional[Dict[str, List[Dict]]] = None):
        self.subscriptions = subscriptions or {}
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    async def list_subscriptions(self, customer_id):
        self.calls.append(customer_id)
        if self.error:
            raise self.error
        return copy.deepcopy(self.subscriptions.get(customer_id, []))

    async def list_recent_subscriptions(self, limit=100):
        if self.error:
            raise self.error
        subs = [sub for subs in self.subscriptions.values() for sub in subs]
        return copy.deepcopy(subs[:limit])


class FakeCommerceClient:
    """Storefront double for coupons and catalogue pulls"""

    def __init__(self):
        self.coupons: List[Dict] = []
        self.coupon_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.products: List[Dict] = []
        self.customers: List[Dict] = []
        self._next_id = 1000

    async def create_coupon(self, title, code, value, **kwargs):
        if self.coupon_error:
            raise self.coupon_error
        self._next_id += 1
        result = {
            "price_rule": {"id": self._next_id, "title": title, "value": f"-{value}"},
            "discount_code": {"id": self._next_id + 5000, "code": code},
        }
        self.coupons.append({"title": title, "code": code, "value": value, **kwargs})
        return result

    async def get_products(self, params=None):
        if self.list_error:
            raise self.list_error
        return copy.deepcopy(self.products)

    async def get_customers(self, params=None):
        if self.list_error:
            raise self.list_error
        return copy.deepcopy(self.customers)


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def payments():
    return FakePaymentsClient()


@pytest.fixture
def commerce():
    return FakeCommerceClient()


@pytest.fixture
def provider_error():
    def _make(message="storefront rejected the request", status_code=422):
        return ProviderError(message, status_code=status_code, body={"errors": message})
    return _make


@pytest.fixture
def run():
    return _run
