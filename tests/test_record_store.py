"""
Record store client tests against a mocked HTTP transport.
"""
import json
import re

import httpx
import pytest

from app.config import RecordStoreConfig
from app.connectors.record_store import RecordStoreClient

from conftest import _run


def _client(handler):
    config = RecordStoreConfig(base_url="http://records.test/", token="tok_123")
    return RecordStoreClient(config, transport=httpx.MockTransport(handler))


def test_list_sends_filter_sort_and_unbounded_limit():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "cust_1"}]})

    rows = _run(_client(handler).find_customers_by_email("a@example.com"))

    assert rows == [{"id": "cust_1"}]
    request = seen[0]
    assert request.url.path == "/items/customers"
    assert request.headers["Authorization"] == "Bearer tok_123"
    assert request.url.params["sort"] == "-created_at"
    assert request.url.params["limit"] == "-1"
    assert json.loads(request.url.params["filter"]) == {"email": {"_eq": "a@example.com"}}


def test_get_missing_returns_none():
    client = _client(lambda request: httpx.Response(404, json={"errors": [{"message": "not found"}]}))

    assert _run(client.get_customer("cust_x")) is None


def test_get_forbidden_item_returns_none():
    client = _client(lambda request: httpx.Response(403, json={"errors": [{"message": "forbidden"}]}))

    assert _run(client.get_customer("cust_deleted")) is None


def test_create_generates_prefixed_id():
    sent = []

    def handler(request):
        body = json.loads(request.content)
        sent.append(body)
        return httpx.Response(200, json={"data": body})

    row = _run(_client(handler).create_customer({"email": "a@example.com"}))

    assert re.fullmatch(r"cust_\d{13}_[0-9a-z]{9}", row["id"])
    assert row["created_at"]
    assert sent[0]["email"] == "a@example.com"


def test_create_keeps_supplied_id():
    client = _client(lambda request: httpx.Response(200, json={"data": json.loads(request.content)}))

    row = _run(client.create_evaluation({"id": "eval_fixed", "customer_id": "c1"}))

    assert row["id"] == "eval_fixed"


def test_update_patches_item():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": {"id": "sub_1", "status": "paused"}})

    row = _run(_client(handler).update_subscription("sub_1", {"status": "paused"}))

    assert seen[0].method == "PATCH"
    assert seen[0].url.path == "/items/subscriptions/sub_1"
    assert row["status"] == "paused"


def test_errors_propagate_unwrapped():
    client = _client(lambda request: httpx.Response(503, json={"errors": [{"message": "down"}]}))

    with pytest.raises(httpx.HTTPStatusError):
        _run(client.get_customers())
    with pytest.raises(httpx.HTTPStatusError):
        _run(client.delete("customers", "cust_1"))
