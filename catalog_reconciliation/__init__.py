"""
Catalog Reconciliation Engine.

Reconciles a supplier CSV feed against the live Shopify catalog, classifies
matches, field mismatches, missing and orphaned records, and optionally
drives remediation calls against the store.

Usage:
    catalog-reconciliation audit --csv ShopifyProductImport.csv
    catalog-reconciliation audit --csv ShopifyClearanceImport.csv --bulk --use-cache
    catalog-reconciliation audit --csv ShopifyProductImport.csv --fix --kind price --kind inventory
    catalog-reconciliation cache-status
"""
__version__ = "1.0.0"
__author__ = "Catalog Team"
