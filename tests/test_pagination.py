"""
Tests for PaginatedCollector: cursor following, the page ceiling, and what
happens to already-collected records when a later page fails.
"""
import dataclasses

import httpx

from app.connectors.fetcher import CredentialGate, FetchRequest, RateLimitedFetcher
from app.connectors.pagination import PaginatedCollector, ParsedPage
from app.services.idempotent_writer import IdempotentWriter
from app.sync.types import EntityType, FetchedRecord
from app.utils.retry import FetchErrorKind, RetryPolicy

from tests.conftest import SleepRecorder, mock_client, run

BASE = "https://vendor.example/orders"


def parse_page(response: httpx.Response, request: FetchRequest) -> ParsedPage:
    body = response.json()
    if "orders" not in body:
        raise ValueError("no orders list")
    page = ParsedPage(records=[
        FetchedRecord(EntityType.ORDERS, (order_id,), {"shopify_order_id": order_id})
        for order_id in body["orders"]
    ])
    if body.get("next"):
        page.next_request = dataclasses.replace(request, url=body["next"])
    return page


def pages_handler(pages):
    """Serve pages[i] at ?page=i, each linking to the next; (status, body) tuples are served raw"""
    def handler(request):
        index = int(request.url.params.get("page", "0"))
        page = pages[index]
        if isinstance(page, tuple):
            status, text = page
            return httpx.Response(status, text=text)
        body = {"orders": page}
        if index + 1 < len(pages):
            body["next"] = f"{BASE}?page={index + 1}"
        return httpx.Response(200, json=body)
    return handler


def _collector(handler, max_pages=10):
    fetcher = RateLimitedFetcher(
        mock_client(handler),
        policy=RetryPolicy(max_attempts=2, base_delay=1.0, max_delay=1.0),
        gate=CredentialGate(4),
        sleep=SleepRecorder(),
    )
    return PaginatedCollector(fetcher, parse_page, max_pages=max_pages)


def test_follows_cursor_until_exhausted():
    handler = pages_handler([[1, 2], [3, 4], [5]])
    result = run(_collector(handler).collect(FetchRequest(url=f"{BASE}?page=0")))

    assert [r.natural_key[0] for r in result.records] == [1, 2, 3, 4, 5]
    assert result.pages_fetched == 3
    assert result.complete


def test_page_ceiling_stops_endless_cursor():
    """A cursor that always points onward stops at max_pages, flagged truncated"""
    def handler(request):
        index = int(request.url.params.get("page", "0"))
        return httpx.Response(200, json={"orders": [index], "next": f"{BASE}?page={index + 1}"})

    result = run(_collector(handler, max_pages=10).collect(FetchRequest(url=f"{BASE}?page=0")))

    assert result.pages_fetched == 10
    assert len(result.records) == 10
    assert result.truncated
    assert result.error is None
    assert not result.complete


def test_failed_page_keeps_earlier_records():
    handler = pages_handler([[1, 2], (404, "gone")])
    result = run(_collector(handler).collect(FetchRequest(url=f"{BASE}?page=0")))

    assert [r.natural_key[0] for r in result.records] == [1, 2]
    assert result.error.kind == FetchErrorKind.PERMANENT
    assert result.pages_fetched == 1
    assert not result.complete


def test_rate_limited_page_after_retries_is_partial():
    handler = pages_handler([[1], (429, "")])
    result = run(_collector(handler).collect(FetchRequest(url=f"{BASE}?page=0")))

    assert len(result.records) == 1
    assert result.error.gave_up_rate_limited


def test_unparseable_page_is_a_decode_error():
    handler = pages_handler([[1], (200, '{"unexpected": true}')])
    result = run(_collector(handler).collect(FetchRequest(url=f"{BASE}?page=0")))

    assert len(result.records) == 1
    assert len(result.decode_errors) == 1
    assert result.error is None


def test_iter_records_is_lazy():
    handler = pages_handler([[1, 2], [3]])
    calls = []

    def counting_handler(request):
        calls.append(request.url)
        return handler(request)

    async def first_record():
        async for record in _collector(counting_handler).iter_records(FetchRequest(url=f"{BASE}?page=0")):
            return record

    record = run(first_record())

    assert record.natural_key == (1,)
    assert len(calls) == 1


def test_overlapping_pages_store_each_record_once(store, shopify_connection):
    """[A, B] then [B, C] leaves {A, B, C}"""
    handler = pages_handler([[101, 102], [102, 103]])
    result = run(_collector(handler).collect(FetchRequest(url=f"{BASE}?page=0")))

    outcome = IdempotentWriter(store, batch_size=50).upsert_batch(shopify_connection.id, result.records)

    stored = {row["shopify_order_id"] for row in store.fetch_rows(shopify_connection.id, EntityType.ORDERS)}
    assert stored == {101, 102, 103}
    assert outcome.duplicates == 1
    assert outcome.inserted == 3


def test_wrongly_shaped_body_is_a_decode_error():
    """A parser tripping over a list body stops the walk without losing earlier pages"""
    def lenient_parser(response, request):
        body = response.json()
        page = ParsedPage(records=[
            FetchedRecord(EntityType.ORDERS, (order_id,), {"shopify_order_id": order_id})
            for order_id in body.get("orders", [])
        ])
        if body.get("next"):
            page.next_request = dataclasses.replace(request, url=body["next"])
        return page

    def handler(request):
        if request.url.params.get("page") == "1":
            return httpx.Response(200, json=["not", "an", "object"])
        return httpx.Response(200, json={"orders": [1], "next": f"{BASE}?page=1"})

    collector = _collector(handler)
    collector.parse_page = lenient_parser
    result = run(collector.collect(FetchRequest(url=f"{BASE}?page=0")))

    assert [r.natural_key[0] for r in result.records] == [1]
    assert len(result.decode_errors) == 1
    assert result.error is None
