"""API request/response models for the offer HTTP surface.

Thin envelopes around the domain models: the consolidation report and
fulfillment plans are returned as-is, with a summary block for
allocation runs.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from .models import AllocationRequest, FulfillmentPlan

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    code: str
    message: str
    detail: str | None = None


class HealthResponse(BaseModel):
    status: str = "ok"
    store_backend: str
    offer_count: int
    version: str


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


class AllocationRequestBody(BaseModel):
    """JSON body for POST /api/data/allocate."""

    requests: list[AllocationRequest] = Field(default_factory=list)


class AllocationSummary(BaseModel):
    total_requests: int = 0
    satisfied: int = 0
    manual_processing: int = 0
    total_cost: float = 0.0

    @classmethod
    def from_plans(cls, plans: list[FulfillmentPlan]) -> AllocationSummary:
        return cls(
            total_requests=len(plans),
            satisfied=sum(1 for p in plans if p.is_satisfied),
            manual_processing=sum(1 for p in plans if p.requires_manual_processing),
            total_cost=round(sum(p.total_cost or 0.0 for p in plans), 2),
        )


class AllocationResponse(BaseModel):
    plans: list[FulfillmentPlan]
    summary: AllocationSummary

    @classmethod
    def from_plans(cls, plans: list[FulfillmentPlan]) -> AllocationResponse:
        return cls(plans=plans, summary=AllocationSummary.from_plans(plans))
