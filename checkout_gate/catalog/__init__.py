"""
Catalog Package

Keeps the set of restricted SKUs (every product and variant in the
restricted category) loaded from the storefront GraphQL API.
"""
