"""Platform connectors for the sync engine"""

from app.connectors.base import BulkExportClient, PlatformConnector
from app.connectors.meta_ads import MetaAdsConnector
from app.connectors.shopify import ShopifyConnector

CONNECTORS = {
    ShopifyConnector.platform: ShopifyConnector,
    MetaAdsConnector.platform: MetaAdsConnector,
}


def build_connector(connection, client, **kwargs) -> PlatformConnector:
    """Instantiate the connector for a connection's platform"""
    try:
        connector_cls = CONNECTORS[connection.platform]
    except KeyError:
        raise ValueError(f"Unsupported platform: {connection.platform}")
    return connector_cls(connection, client, **kwargs)


__all__ = [
    "BulkExportClient",
    "PlatformConnector",
    "ShopifyConnector",
    "MetaAdsConnector",
    "CONNECTORS",
    "build_connector",
]
