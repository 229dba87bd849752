"""
Shopify Data Models

Stores data pulled from the Shopify Admin API by the quick sync (REST
orders) and the historical import (GraphQL bulk operations). Every table is
keyed by the remote id scoped to the connection, so re-syncs update rows in
place.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, BigInteger, ForeignKey, Numeric, UniqueConstraint
from datetime import datetime

from app.models.base import Base


class ShopifyOrder(Base):
    """
    Shopify orders

    Synced from GET /admin/api/{version}/orders.json and bulk `orders` exports
    """
    __tablename__ = "shopify_orders"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False, index=True)

    # Shopify IDs
    shopify_order_id = Column(BigInteger, index=True, nullable=False)  # Shopify's order ID
    order_number = Column(Integer, index=True, nullable=True)  # Human-readable order number
    name = Column(String, nullable=True)  # "#1001"

    # Customer
    customer_id = Column(BigInteger, index=True, nullable=True)  # Shopify customer ID
    email = Column(String, index=True, nullable=True)

    # Order status
    financial_status = Column(String, index=True, nullable=True)  # paid, pending, refunded, partially_refunded
    fulfillment_status = Column(String, index=True, nullable=True)  # fulfilled, partial, null

    # Amounts (all in store currency)
    currency = Column(String, nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)
    subtotal_price = Column(Numeric(12, 2), nullable=True)
    total_tax = Column(Numeric(12, 2), nullable=True)
    total_discounts = Column(Numeric(12, 2), default=0)

    # Tags (for segmentation)
    tags = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, index=True)  # When order was placed
    updated_at = Column(DateTime, index=True)  # When order was last modified
    processed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Sync metadata
    synced_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('connection_id', 'shopify_order_id', name='uq_shopify_orders_connection_order'),
    )


class ShopifyLineItem(Base):
    """
    Order line items

    Nested under the order in REST; separate JSONL lines (with __parentId)
    in bulk exports.
    """
    __tablename__ = "shopify_line_items"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False, index=True)

    shopify_order_id = Column(BigInteger, index=True, nullable=False)
    line_item_id = Column(BigInteger, nullable=False)

    product_id = Column(BigInteger, index=True, nullable=True)
    variant_id = Column(BigInteger, nullable=True)
    sku = Column(String, index=True, nullable=True)

    title = Column(String, nullable=True)
    variant_title = Column(String, nullable=True)
    quantity = Column(Integer, default=1)
    price = Column(Numeric(12, 2), nullable=True)  # Unit price

    synced_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('connection_id', 'shopify_order_id', 'line_item_id', name='uq_shopify_line_items_connection_order_item'),
    )


class ShopifyCustomer(Base):
    """Shopify customers (bulk `customers` export)"""
    __tablename__ = "shopify_customers"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False, index=True)

    # Shopify ID
    shopify_customer_id = Column(BigInteger, index=True, nullable=False)

    # Customer info
    email = Column(String, index=True, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    state = Column(String, nullable=True)  # enabled, disabled, invited, declined
    tags = Column(JSON, nullable=True)

    # Customer metrics
    orders_count = Column(Integer, default=0)
    total_spent = Column(Numeric(12, 2), default=0)

    # Location (from default address)
    default_address_city = Column(String, nullable=True)
    default_address_province = Column(String, nullable=True)
    default_address_country = Column(String, nullable=True)
    default_address_zip = Column(String, nullable=True)

    # Timestamps
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime, index=True)

    synced_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('connection_id', 'shopify_customer_id', name='uq_shopify_customers_connection_customer'),
    )


class ShopifyProduct(Base):
    """Shopify products catalog (bulk `products` export)"""
    __tablename__ = "shopify_products"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False, index=True)

    # Shopify IDs
    shopify_product_id = Column(BigInteger, index=True, nullable=False)
    handle = Column(String, index=True, nullable=True)  # URL-friendly identifier

    # Product info
    title = Column(String, nullable=True)
    vendor = Column(String, index=True, nullable=True)
    product_type = Column(String, index=True, nullable=True)
    status = Column(String, index=True, nullable=True)  # active, archived, draft
    tags = Column(JSON, nullable=True)
    total_inventory = Column(Integer, nullable=True)

    # Timestamps
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime, index=True)

    synced_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('connection_id', 'shopify_product_id', name='uq_shopify_products_connection_product'),
    )
