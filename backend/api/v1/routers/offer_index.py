"""
Offer Index Router — change-event intake for index maintenance.

Writers of merchant offer data post a job here on every create, update or
delete; the job is deduplicated and queued for the worker pool.
"""

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from api.deps import get_current_user, get_redis
from workers.offer_index import enqueue_offer_index_job, idempotency_key, parse_job

router = APIRouter(prefix="/api/v1/offer-index", tags=["offer-index"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class CashbackChangedRequest(BaseModel):
    type: Literal["CASHBACK_CHANGED"]
    cashback_configuration_id: str = Field(..., min_length=1, max_length=64)


class ExclusiveChangedRequest(BaseModel):
    type: Literal["EXCLUSIVE_CHANGED"]
    exclusive_offer_id: str = Field(..., min_length=1, max_length=64)


class LoyaltyChangedRequest(BaseModel):
    type: Literal["LOYALTY_CHANGED"]
    merchant_id: str = Field(..., min_length=1, max_length=64)


class UserCustomerTypesChangedRequest(BaseModel):
    type: Literal["USER_CUSTOMER_TYPES_CHANGED"]
    user_id: str = Field(..., min_length=1, max_length=64)


class FullRebuildRequest(BaseModel):
    type: Literal["FULL_REBUILD"]
    reason: str = Field(..., min_length=1, max_length=255)


OfferIndexJobRequest = Annotated[
    CashbackChangedRequest
    | ExclusiveChangedRequest
    | LoyaltyChangedRequest
    | UserCustomerTypesChangedRequest
    | FullRebuildRequest,
    Field(discriminator="type"),
]


class EnqueueResponse(BaseModel):
    idempotency_key: str
    enqueued: bool


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/jobs", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    body: OfferIndexJobRequest,
    redis=Depends(get_redis),
    user: dict = Depends(get_current_user),
):
    """Queue an index recompute. ``enqueued`` is False when deduplicated or queueing is off."""
    job = parse_job(body.model_dump())
    enqueued = await enqueue_offer_index_job(job, redis=redis)
    return {"idempotency_key": idempotency_key(job), "enqueued": enqueued}
