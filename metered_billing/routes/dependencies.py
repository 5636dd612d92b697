"""Shared route dependencies."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.database import get_db
from metered_billing.services.generation import GenerationAdapter
from metered_billing.services.reconciliation import ComputeTimeFetcher
from metered_billing.services.replicate_client import ReplicateClient

# Shared database session dependency type alias
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_generation_adapter() -> GenerationAdapter:
    """Provider used for new generations. Overridden in tests."""
    return ReplicateClient()


def get_compute_time_fetcher() -> ComputeTimeFetcher:
    """Provider lookup used by cost reconciliation. Overridden in tests."""
    return ReplicateClient()


Adapter = Annotated[GenerationAdapter, Depends(get_generation_adapter)]
Fetcher = Annotated[ComputeTimeFetcher, Depends(get_compute_time_fetcher)]
