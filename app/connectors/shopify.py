"""
Shopify Connector

Quick sync reads recent orders from the Admin REST API (cursor in the Link
header). The historical import runs GraphQL bulk operations for orders
(with nested line items), customers and products and streams the JSONL
result file.
"""
import dataclasses
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from app.connectors.base import BulkExportClient, PlatformConnector
from app.connectors.fetcher import FetchRequest
from app.connectors.pagination import ParsedPage
from app.sync.errors import BulkSubmitError
from app.sync.types import (
    BulkJobStatus,
    DecodeFailure,
    EntityType,
    FetchedRecord,
    RemoteJobStatus,
)
from app.utils.helpers import gid_type, parse_gid, parse_timestamp, to_float, to_int
from app.utils.logger import log
from app.utils.retry import FetchErrorKind


ORDERS_BULK_QUERY = """
{
  orders {
    edges {
      node {
        id
        name
        email
        createdAt
        updatedAt
        processedAt
        cancelledAt
        tags
        displayFinancialStatus
        displayFulfillmentStatus
        totalPriceSet { shopMoney { amount currencyCode } }
        subtotalPriceSet { shopMoney { amount } }
        totalTaxSet { shopMoney { amount } }
        totalDiscountsSet { shopMoney { amount } }
        customer { id }
        lineItems {
          edges {
            node {
              id
              sku
              title
              variantTitle
              quantity
              originalUnitPriceSet { shopMoney { amount } }
              product { id }
              variant { id }
            }
          }
        }
      }
    }
  }
}
"""

CUSTOMERS_BULK_QUERY = """
{
  customers {
    edges {
      node {
        id
        email
        firstName
        lastName
        phone
        state
        tags
        numberOfOrders
        amountSpent { amount }
        defaultAddress { city province country zip }
        createdAt
        updatedAt
      }
    }
  }
}
"""

PRODUCTS_BULK_QUERY = """
{
  products {
    edges {
      node {
        id
        title
        handle
        vendor
        productType
        status
        tags
        totalInventory
        createdAt
        updatedAt
      }
    }
  }
}
"""

BULK_QUERIES = {
    EntityType.ORDERS: ORDERS_BULK_QUERY,
    EntityType.CUSTOMERS: CUSTOMERS_BULK_QUERY,
    EntityType.PRODUCTS: PRODUCTS_BULK_QUERY,
}

BULK_RUN_MUTATION = """
mutation bulkOperationRunQuery($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""

BULK_STATUS_QUERY = """
query bulkOperationStatus($id: ID!) {
  node(id: $id) {
    ... on BulkOperation {
      id
      status
      errorCode
      objectCount
      url
      partialDataUrl
    }
  }
}
"""

# Shopify BulkOperationStatus -> local job status
BULK_STATUS_MAP = {
    "CREATED": BulkJobStatus.CREATED,
    "RUNNING": BulkJobStatus.RUNNING,
    "CANCELING": BulkJobStatus.RUNNING,
    "COMPLETED": BulkJobStatus.COMPLETED,
    "CANCELED": BulkJobStatus.CANCELED,
    "FAILED": BulkJobStatus.FAILED,
    "EXPIRED": BulkJobStatus.FAILED,
}

# Child rows in bulk output that have no table of their own
IGNORED_CHILD_TYPES = {"ProductVariant"}


def _obj(value: Any) -> Dict[str, Any]:
    """Nested object field, or {} when the vendor sent null or another type"""
    return value if isinstance(value, dict) else {}


def _money(money_set: Any) -> Optional[float]:
    return to_float(_obj(_obj(money_set).get("shopMoney")).get("amount"))


def _status(value: Optional[str]) -> Optional[str]:
    """GraphQL enums (PARTIALLY_PAID) to REST casing (partially_paid)"""
    return value.lower() if isinstance(value, str) and value else None


def _tags(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        return value
    return [t.strip() for t in str(value).split(",") if t.strip()]


def _order_record(data: Dict[str, Any]) -> FetchedRecord:
    return FetchedRecord(
        entity_type=EntityType.ORDERS,
        natural_key=(data["shopify_order_id"],),
        data=data,
    )


def _line_item_record(data: Dict[str, Any]) -> FetchedRecord:
    return FetchedRecord(
        entity_type=EntityType.LINE_ITEMS,
        natural_key=(data["shopify_order_id"], data["line_item_id"]),
        data=data,
    )


def decode_rest_order(order: Dict[str, Any]) -> List[FetchedRecord]:
    """One REST order -> the order record plus one record per line item"""
    order_id = int(order["id"])
    customer = _obj(order.get("customer"))

    records = [_order_record({
        "shopify_order_id": order_id,
        "order_number": to_int(order.get("order_number")),
        "name": order.get("name"),
        "email": order.get("email") or customer.get("email"),
        "customer_id": to_int(customer.get("id")),
        "financial_status": order.get("financial_status"),
        "fulfillment_status": order.get("fulfillment_status"),
        "currency": order.get("currency"),
        "total_price": to_float(order.get("total_price")),
        "subtotal_price": to_float(order.get("subtotal_price")),
        "total_tax": to_float(order.get("total_tax")),
        "total_discounts": to_float(order.get("total_discounts"), 0.0),
        "tags": _tags(order.get("tags")),
        "created_at": parse_timestamp(order.get("created_at")),
        "updated_at": parse_timestamp(order.get("updated_at")),
        "processed_at": parse_timestamp(order.get("processed_at")),
        "cancelled_at": parse_timestamp(order.get("cancelled_at")),
    })]

    line_items = order.get("line_items")
    for item in line_items if isinstance(line_items, list) else []:
        records.append(_line_item_record({
            "shopify_order_id": order_id,
            "line_item_id": int(item["id"]),
            "product_id": to_int(item.get("product_id")),
            "variant_id": to_int(item.get("variant_id")),
            "sku": item.get("sku"),
            "title": item.get("title"),
            "variant_title": item.get("variant_title"),
            "quantity": to_int(item.get("quantity"), 1),
            "price": to_float(item.get("price")),
        }))

    return records


def decode_bulk_line(payload: Dict[str, Any]) -> List[FetchedRecord]:
    """
    Decode one JSONL object from a bulk operation result.

    Bulk output is flattened: nested connections (an order's lineItems)
    become separate lines carrying `__parentId`. The resource type is read
    from the object's global id.
    """
    resource = gid_type(payload.get("id"))

    if resource == "Order":
        total = _obj(payload.get("totalPriceSet"))
        name = payload.get("name")
        digits = name.lstrip("#") if isinstance(name, str) else ""
        return [_order_record({
            "shopify_order_id": parse_gid(payload["id"]),
            "order_number": int(digits) if digits.isdigit() else None,
            "name": payload.get("name"),
            "email": payload.get("email"),
            "customer_id": parse_gid(_obj(payload.get("customer")).get("id")),
            "financial_status": _status(payload.get("displayFinancialStatus")),
            "fulfillment_status": _status(payload.get("displayFulfillmentStatus")),
            "currency": _obj(total.get("shopMoney")).get("currencyCode"),
            "total_price": _money(total),
            "subtotal_price": _money(payload.get("subtotalPriceSet")),
            "total_tax": _money(payload.get("totalTaxSet")),
            "total_discounts": _money(payload.get("totalDiscountsSet")) or 0.0,
            "tags": _tags(payload.get("tags")),
            "created_at": parse_timestamp(payload.get("createdAt")),
            "updated_at": parse_timestamp(payload.get("updatedAt")),
            "processed_at": parse_timestamp(payload.get("processedAt")),
            "cancelled_at": parse_timestamp(payload.get("cancelledAt")),
        })]

    if resource == "LineItem":
        parent = payload.get("__parentId")
        if gid_type(parent) != "Order":
            raise ValueError(f"Line item {payload.get('id')} has no parent order")
        return [_line_item_record({
            "shopify_order_id": parse_gid(parent),
            "line_item_id": parse_gid(payload["id"]),
            "product_id": parse_gid(_obj(payload.get("product")).get("id")),
            "variant_id": parse_gid(_obj(payload.get("variant")).get("id")),
            "sku": payload.get("sku"),
            "title": payload.get("title"),
            "variant_title": payload.get("variantTitle"),
            "quantity": to_int(payload.get("quantity"), 1),
            "price": _money(payload.get("originalUnitPriceSet")),
        })]

    if resource == "Customer":
        address = _obj(payload.get("defaultAddress"))
        customer_id = parse_gid(payload["id"])
        return [FetchedRecord(
            entity_type=EntityType.CUSTOMERS,
            natural_key=(customer_id,),
            data={
                "shopify_customer_id": customer_id,
                "email": payload.get("email"),
                "first_name": payload.get("firstName"),
                "last_name": payload.get("lastName"),
                "phone": payload.get("phone"),
                "state": _status(payload.get("state")),
                "tags": _tags(payload.get("tags")),
                "orders_count": to_int(payload.get("numberOfOrders"), 0),
                "total_spent": to_float(_obj(payload.get("amountSpent")).get("amount"), 0.0),
                "default_address_city": address.get("city"),
                "default_address_province": address.get("province"),
                "default_address_country": address.get("country"),
                "default_address_zip": address.get("zip"),
                "created_at": parse_timestamp(payload.get("createdAt")),
                "updated_at": parse_timestamp(payload.get("updatedAt")),
            },
        )]

    if resource == "Product":
        product_id = parse_gid(payload["id"])
        return [FetchedRecord(
            entity_type=EntityType.PRODUCTS,
            natural_key=(product_id,),
            data={
                "shopify_product_id": product_id,
                "title": payload.get("title"),
                "handle": payload.get("handle"),
                "vendor": payload.get("vendor"),
                "product_type": payload.get("productType"),
                "status": _status(payload.get("status")),
                "tags": _tags(payload.get("tags")),
                "total_inventory": to_int(payload.get("totalInventory")),
                "created_at": parse_timestamp(payload.get("createdAt")),
                "updated_at": parse_timestamp(payload.get("updatedAt")),
            },
        )]

    if resource in IGNORED_CHILD_TYPES:
        return []

    raise ValueError(f"Unrecognized bulk object id: {payload.get('id')!r}")


class ShopifyConnector(PlatformConnector):
    """
    Connector for the Shopify Admin API

    `account_ref` is the shop domain (your-store.myshopify.com) and the
    credential handle is the Admin API access token.
    """

    platform = "shopify"

    @property
    def shop(self) -> str:
        return self.connection.account_ref.replace("https://", "").replace("http://", "").rstrip("/")

    @property
    def base_url(self) -> str:
        return f"https://{self.shop}/admin/api/{self.settings.shopify_api_version}"

    @property
    def graphql_url(self) -> str:
        return f"{self.base_url}/graphql.json"

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Shopify API requests"""
        return {
            "X-Shopify-Access-Token": self.credential,
            "Content-Type": "application/json"
        }

    def classify_response(self, response: httpx.Response) -> Optional[FetchErrorKind]:
        """
        GraphQL reports throttling and query errors inside a 200 body:
        {"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}
        """
        if response.status_code != 200 or not response.request.url.path.endswith("graphql.json"):
            return None
        try:
            body = response.json()
        except ValueError:
            return FetchErrorKind.PERMANENT

        errors = body.get("errors") if isinstance(body, dict) else None
        if not errors:
            return None
        codes = {(e.get("extensions") or {}).get("code") for e in errors if isinstance(e, dict)}
        if "THROTTLED" in codes:
            return FetchErrorKind.RATE_LIMITED
        return FetchErrorKind.PERMANENT

    def quick_sync_requests(self, since: datetime, until: datetime) -> List[FetchRequest]:
        return [FetchRequest(
            url=f"{self.base_url}/orders.json",
            params={
                "status": "any",  # open, closed and cancelled
                "created_at_min": since.isoformat(),
                "created_at_max": until.isoformat(),
                "limit": 250  # Max per page
            },
            headers=self._get_headers(),
            credential=self.credential,
            label="shopify orders.json",
        )]

    def parse_page(self, response: httpx.Response, request: FetchRequest) -> ParsedPage:
        data = response.json()
        orders = data.get("orders") if isinstance(data, dict) else None
        if not isinstance(orders, list):
            raise ValueError("Response has no orders list")

        page = ParsedPage()
        for order in orders:
            try:
                page.records.extend(decode_rest_order(order))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                order_ref = order.get("id") if isinstance(order, dict) else order
                log.warning(f"Skipping undecodable Shopify order {order_ref}: {e}")
                page.decode_errors.append(DecodeFailure(source=f"order:{order_ref}", message=str(e)))

        # Cursor is carried in the Link header: <url?page_info=...>; rel="next"
        next_url = response.links.get("next", {}).get("url")
        if next_url:
            # page_info URLs carry every filter already
            page.next_request = dataclasses.replace(request, url=next_url, params=None)
        return page

    def bulk_entity_types(self) -> List[EntityType]:
        # Line items arrive as children of the orders export
        return [EntityType.ORDERS, EntityType.CUSTOMERS, EntityType.PRODUCTS]

    def bulk_client(self) -> "ShopifyBulkClient":
        return ShopifyBulkClient(self)


class ShopifyBulkClient(BulkExportClient):
    """GraphQL bulk operations (several may run concurrently per shop since 2026-01)"""

    def __init__(self, connector: ShopifyConnector):
        self.connector = connector

    def _graphql(self, query: str, variables: Dict[str, Any], label: str, idempotent: bool = True) -> FetchRequest:
        return FetchRequest(
            url=self.connector.graphql_url,
            method="POST",
            json={"query": query, "variables": variables},
            headers=self.connector._get_headers(),
            credential=self.connector.credential,
            idempotent=idempotent,
            label=label,
        )

    async def submit(self, entity_type: EntityType) -> RemoteJobStatus:
        query = BULK_QUERIES.get(entity_type)
        if query is None:
            raise BulkSubmitError(f"Shopify has no bulk export for {entity_type.value}")

        # Starting an export is not safe to repeat, so it is attempted once
        result = await self.connector.fetcher.fetch(self._graphql(
            BULK_RUN_MUTATION, {"query": query}, f"bulk submit {entity_type.value}", idempotent=False
        ))
        if not result.ok:
            raise BulkSubmitError(f"Bulk {entity_type.value} export request failed: {result.error.message}")

        payload = ((result.json() or {}).get("data") or {}).get("bulkOperationRunQuery") or {}
        user_errors = payload.get("userErrors") or []
        operation = payload.get("bulkOperation")
        if user_errors or not operation:
            raise BulkSubmitError(f"Shopify refused bulk {entity_type.value} export: {user_errors}")

        log.info(f"Started Shopify bulk {entity_type.value} export {operation['id']}")
        return RemoteJobStatus(
            job_id=operation["id"],
            status=BULK_STATUS_MAP.get(operation.get("status"), BulkJobStatus.CREATED),
        )

    async def get_status(self, remote_job_id: str) -> RemoteJobStatus:
        result = await self.connector.fetcher.fetch(self._graphql(
            BULK_STATUS_QUERY, {"id": remote_job_id}, "bulk status"
        ))
        if not result.ok:
            raise result.error

        node = ((result.json() or {}).get("data") or {}).get("node")
        if not node:
            return RemoteJobStatus(job_id=remote_job_id, status=BulkJobStatus.FAILED, error_code="NOT_FOUND")

        return RemoteJobStatus(
            job_id=remote_job_id,
            status=BULK_STATUS_MAP.get(node.get("status"), BulkJobStatus.RUNNING),
            result_url=node.get("url"),
            error_code=node.get("errorCode"),
            object_count=to_int(node.get("objectCount")),
        )

    async def iter_result_lines(self, status: RemoteJobStatus) -> AsyncIterator[str]:
        """Stream the JSONL result file; a completed export with no objects has no url"""
        if not status.result_url:
            return
        request = FetchRequest(url=status.result_url, label="bulk result download")
        async for line in self.connector.fetcher.stream_lines(request):
            yield line

    def decode_line(self, entity_type: EntityType, payload: Dict[str, Any]) -> List[FetchedRecord]:
        return decode_bulk_line(payload)
