"""
Storefront order ingestion and normalization pipeline.

This package pulls orders from several Shopify storefronts in bounded,
resumable runs, lands every raw record in a Postgres staging table, and
folds staged records into normalized customers, orders and order items
with effective-dated cost allocation.
"""
