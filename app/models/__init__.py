"""Database models for the platform sync engine"""

from app.models.connection import (
    PlatformConnection,
    BulkJobRecord
)

from app.models.shopify import (
    ShopifyOrder,
    ShopifyLineItem,
    ShopifyCustomer,
    ShopifyProduct
)

from app.models.ad_insights import AdDailyInsight

__all__ = [
    # Connections
    "PlatformConnection",
    "BulkJobRecord",

    # Shopify
    "ShopifyOrder",
    "ShopifyLineItem",
    "ShopifyCustomer",
    "ShopifyProduct",

    # Meta
    "AdDailyInsight",
]
