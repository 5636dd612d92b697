"""Generation and platform cost models."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _generate_uuid


class Generation(Base):
    """One successful generation request and its charge-time cost."""

    __tablename__ = "generations"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)

    # Request shape, kept so costs can be recalculated from stored parameters
    parameters: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)
    width: Mapped[int | None] = mapped_column(Integer)
    height: Mapped[int | None] = mapped_column(Integer)
    num_outputs: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    output_urls: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)

    # Provider tracking (NULL for untracked runs, which reconciliation skips)
    external_job_id: Mapped[str | None] = mapped_column(String(255), index=True)
    predict_time: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    used_own_key: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Lookups that returned no compute time; capped so they stop taking batch slots
    reconcile_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Catalog estimate used for quota accounting
    cost: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=Decimal(0), nullable=False)
    # Duration-based cost from reconciliation, informational only
    actual_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 6))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )


class PlatformCost(Base):
    """What a generation cost us at the provider, estimated then reconciled."""

    __tablename__ = "platform_costs"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    generation_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("generations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    external_job_id: Mapped[str | None] = mapped_column(String(255), index=True)
    model: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    estimated_cost: Mapped[Decimal] = mapped_column(Numeric(14, 6), nullable=False)
    actual_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 6))
    compute_time_seconds: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    cost_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
