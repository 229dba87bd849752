"""
Decoding of vendor payloads into FetchedRecords.

Shopify: REST orders and flattened GraphQL bulk JSONL (children carry
__parentId). Meta: insights rows at ad and account level, and Graph API
error classification.
"""
from datetime import date, datetime

import httpx
import pytest

from app.connectors.fetcher import CredentialGate
from app.connectors.meta_ads import ACCOUNT_LEVEL_AD_ID, MetaAdsConnector, decode_insight_row
from app.connectors.shopify import ShopifyConnector, decode_bulk_line, decode_rest_order
from app.sync.types import ConnectionState, EntityType, Granularity
from app.utils.helpers import gid_type, parse_gid, parse_timestamp
from app.utils.retry import FetchErrorKind

from tests.conftest import SleepRecorder, mock_client, run


class TestHelpers:

    def test_gid_parsing(self):
        assert parse_gid("gid://shopify/Order/450789469") == 450789469
        assert parse_gid("gid://shopify/ProductVariant/7?inventory_item_id=1") == 7
        assert parse_gid(12) == 12
        assert parse_gid(None) is None
        assert gid_type("gid://shopify/LineItem/1") == "LineItem"
        assert gid_type("12") is None

    def test_timestamps_normalized_to_naive_utc(self):
        assert parse_timestamp("2026-03-01T10:00:00+11:00") == datetime(2026, 2, 28, 23, 0)
        assert parse_timestamp("2026-03-01T10:00:00+0000") == datetime(2026, 3, 1, 10, 0)
        assert parse_timestamp(None) is None


class TestShopifyDecoding:

    def test_rest_order_with_line_items(self):
        records = decode_rest_order({
            "id": 1001,
            "order_number": 1,
            "total_price": "45.50",
            "customer": {"id": 77, "email": "c@example.com"},
            "created_at": "2026-03-01T10:00:00+11:00",
            "tags": "vip, wholesale",
            "line_items": [
                {"id": 5001, "product_id": 9, "quantity": 2, "price": "20.00"},
                {"id": 5002, "product_id": 10, "price": "5.50"},
            ],
        })

        order, *items = records
        assert order.entity_type == EntityType.ORDERS
        assert order.natural_key == (1001,)
        assert order.data["customer_id"] == 77
        assert order.data["email"] == "c@example.com"
        assert order.data["tags"] == ["vip", "wholesale"]
        assert order.data["created_at"] == datetime(2026, 2, 28, 23, 0)
        assert [i.natural_key for i in items] == [(1001, 5001), (1001, 5002)]
        assert items[1].data["quantity"] == 1

    def test_bulk_order_line(self):
        [record] = decode_bulk_line({
            "id": "gid://shopify/Order/1001",
            "name": "#1001",
            "displayFinancialStatus": "PARTIALLY_REFUNDED",
            "totalPriceSet": {"shopMoney": {"amount": "99.95", "currencyCode": "AUD"}},
            "customer": {"id": "gid://shopify/Customer/77"},
        })

        assert record.entity_type == EntityType.ORDERS
        assert record.data["shopify_order_id"] == 1001
        assert record.data["order_number"] == 1001
        assert record.data["financial_status"] == "partially_refunded"
        assert record.data["currency"] == "AUD"
        assert record.data["total_price"] == 99.95
        assert record.data["customer_id"] == 77

    def test_bulk_child_line_routes_to_parent_order(self):
        [record] = decode_bulk_line({
            "id": "gid://shopify/LineItem/5001",
            "sku": "SKU-1",
            "quantity": 3,
            "originalUnitPriceSet": {"shopMoney": {"amount": "12.00"}},
            "__parentId": "gid://shopify/Order/1001",
        })

        assert record.entity_type == EntityType.LINE_ITEMS
        assert record.natural_key == (1001, 5001)
        assert record.data["price"] == 12.0

    def test_line_item_without_order_parent_is_rejected(self):
        with pytest.raises(ValueError):
            decode_bulk_line({"id": "gid://shopify/LineItem/5001", "__parentId": "gid://shopify/Product/1"})

    def test_customer_and_product_lines(self):
        [customer] = decode_bulk_line({
            "id": "gid://shopify/Customer/77",
            "numberOfOrders": "4",
            "amountSpent": {"amount": "120.00"},
            "defaultAddress": {"city": "Sydney", "country": "Australia"},
        })
        [product] = decode_bulk_line({"id": "gid://shopify/Product/9", "status": "ACTIVE"})

        assert customer.data["orders_count"] == 4
        assert customer.data["total_spent"] == 120.0
        assert customer.data["default_address_city"] == "Sydney"
        assert product.entity_type == EntityType.PRODUCTS
        assert product.data["status"] == "active"

    def test_variant_children_are_ignored(self):
        assert decode_bulk_line({"id": "gid://shopify/ProductVariant/3", "__parentId": "gid://shopify/Product/9"}) == []

    def test_unknown_object_is_rejected(self):
        with pytest.raises(ValueError):
            decode_bulk_line({"id": "gid://shopify/Fulfillment/1"})
        with pytest.raises(ValueError):
            decode_bulk_line({"no_id": True})

    def test_graphql_throttle_in_200_body_is_rate_limited(self):
        connector = ShopifyConnector(
            ConnectionState(id=1, platform="shopify", account_ref="s.myshopify.com", credential_handle="t"),
            mock_client(lambda request: httpx.Response(200)),
        )
        request = httpx.Request("POST", connector.graphql_url)

        throttled = httpx.Response(
            200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}, request=request
        )
        broken = httpx.Response(200, json={"errors": [{"message": "Field 'x' doesn't exist"}]}, request=request)
        fine = httpx.Response(200, json={"data": {"node": None}}, request=request)

        assert connector.classify_response(throttled) == FetchErrorKind.RATE_LIMITED
        assert connector.classify_response(broken) == FetchErrorKind.PERMANENT
        assert connector.classify_response(fine) is None


class TestMetaDecoding:

    def test_ad_level_row_is_granular(self):
        record = decode_insight_row({
            "ad_id": "23850001",
            "campaign_id": "c1",
            "date_start": "2026-03-01",
            "spend": "12.34",
            "impressions": "1000",
            "clicks": "25",
            "actions": [{"action_type": "link_click", "value": "25"}, {"action_type": "purchase", "value": "3"}],
            "action_values": [{"action_type": "purchase", "value": "150.00"}],
        }, "ad")

        assert record.granularity == Granularity.GRANULAR
        assert record.natural_key == ("23850001", date(2026, 3, 1))
        assert record.slot_date == date(2026, 3, 1)
        assert record.data["spend"] == 12.34
        assert record.data["purchases"] == 3
        assert record.data["purchase_value"] == 150.0

    def test_account_level_row_is_aggregate(self):
        record = decode_insight_row({"account_id": "123", "date_start": "2026-03-01", "spend": "99"}, "account")

        assert record.granularity == Granularity.AGGREGATE
        assert record.data["ad_id"] == ACCOUNT_LEVEL_AD_ID
        assert record.data["purchases"] == 0

    def test_row_without_date_is_rejected(self):
        with pytest.raises(KeyError):
            decode_insight_row({"ad_id": "1"}, "ad")

    def test_graph_error_codes(self):
        connector = MetaAdsConnector(
            ConnectionState(id=1, platform="meta", account_ref="123", credential_handle="t"),
            mock_client(lambda request: httpx.Response(200)),
        )

        def classify(status, error):
            return connector.classify_response(httpx.Response(status, json={"error": error}))

        assert connector.account_id == "act_123"
        assert classify(400, {"code": 17, "message": "User request limit reached"}) == FetchErrorKind.RATE_LIMITED
        assert classify(400, {"code": 100, "message": "(#4) Too many calls"}) == FetchErrorKind.RATE_LIMITED
        assert classify(500, {"code": 2, "message": "Service temporarily unavailable"}) == FetchErrorKind.TRANSIENT_NETWORK
        assert classify(400, {"code": 190, "message": "Invalid OAuth access token"}) is None
        assert classify(200, {"code": 100, "message": "Invalid parameter"}) == FetchErrorKind.PERMANENT


# ────────────────────────────────────────────
# QUICK SYNC PAGES WITH MALFORMED ENTRIES
# ────────────────────────────────────────────


def _collect(connector_cls, account_ref, body, settings):
    connection = ConnectionState(id=1, platform=connector_cls.platform, account_ref=account_ref, credential_handle="t")
    connector = connector_cls(
        connection,
        mock_client(lambda request: httpx.Response(200, json=body)),
        settings=settings,
        gate=CredentialGate(4),
        sleep=SleepRecorder(),
    )
    [request] = connector.quick_sync_requests(datetime(2026, 3, 1), datetime(2026, 3, 4))[:1]
    return run(connector.collector().collect(request))


def test_shopify_page_with_malformed_orders_keeps_the_rest(settings):
    result = _collect(ShopifyConnector, "s.myshopify.com", {"orders": [
        {"id": 1},
        {"id": 2, "customer": "x", "line_items": "none"},
        "not-an-order",
        {"id": 3, "line_items": [{"id": 31}, "not-a-line-item"]},
    ]}, settings)

    orders = [r for r in result.records if r.entity_type == EntityType.ORDERS]
    assert [r.natural_key for r in orders] == [(1,), (2,)]
    assert orders[1].data["customer_id"] is None
    assert len(result.decode_errors) == 2
    assert result.error is None
    assert result.complete


def test_meta_page_with_malformed_rows_keeps_the_rest(settings):
    result = _collect(MetaAdsConnector, "123", {"data": [
        {"ad_id": "a1", "date_start": "2026-03-01", "actions": 5},
        "not-a-row",
        {"ad_id": "a2", "date_start": "2026-03-02", "action_values": "x"},
    ]}, settings)

    assert [r.natural_key[0] for r in result.records] == ["a1", "a2"]
    assert result.records[0].data["purchases"] == 0
    assert len(result.decode_errors) == 1
    assert result.complete
