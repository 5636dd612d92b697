"""Seed data applied when the database is initialized."""

from metered_billing.database.seeds.products import DEFAULT_PRODUCTS

__all__ = ["DEFAULT_PRODUCTS"]
