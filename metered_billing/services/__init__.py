"""Service modules for the billing API."""

from metered_billing.services.billing_events import process_event, verify_event
from metered_billing.services.generation import GenerationRequest, run_generation
from metered_billing.services.pricing import CostEstimator, get_cost_estimator
from metered_billing.services.quota import QuotaDecision, can_generate
from metered_billing.services.reconciliation import CostReconciler, ReconcileResult

__all__ = [
    "CostEstimator",
    "CostReconciler",
    "GenerationRequest",
    "QuotaDecision",
    "ReconcileResult",
    "can_generate",
    "get_cost_estimator",
    "process_event",
    "run_generation",
    "verify_event",
]
