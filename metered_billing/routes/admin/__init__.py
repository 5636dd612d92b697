"""Admin routes module."""

from fastapi import APIRouter

from metered_billing.routes.admin import costs, financials, products, users

router = APIRouter(prefix="/admin", tags=["admin"])

router.include_router(products.router, prefix="/products", tags=["admin-products"])
router.include_router(users.router, prefix="/users", tags=["admin-users"])
router.include_router(costs.router, prefix="/costs", tags=["admin-costs"])
router.include_router(financials.router, prefix="/financials", tags=["admin-financials"])
