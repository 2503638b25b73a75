"""
Client modules for external services.

- ShopifyClient: Shopify Admin GraphQL API
"""
from catalog_reconciliation.clients.shopify_client import (
    ShopifyAPIError,
    ShopifyClient,
    ShopifyThrottledError,
    ShopifyUserError,
)

__all__ = ["ShopifyClient", "ShopifyAPIError", "ShopifyThrottledError", "ShopifyUserError"]
