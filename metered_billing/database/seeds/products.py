"""Default subscription products.

The zero-price tier is what new users receive through the default
subscription assignment, looked up by name.
"""

from decimal import Decimal

DEFAULT_PRODUCTS = [
    {
        "name": "Free",
        "description": "Try image generation at no cost",
        "monthly_image_limit": 5,
        "monthly_cost_limit": Decimal("1.50"),
        "daily_image_limit": None,
        "bonus_credits": 0,
        "price_cents": 0,
        "overage_price_cents": 0,
        "is_active": True,
    },
]
