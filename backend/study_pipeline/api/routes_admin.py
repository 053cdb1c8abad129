"""Administrative routes for the study pipeline."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from study_pipeline.api.dependencies import get_rate_limiter
from study_pipeline.core.metrics import metrics_response
from study_pipeline.models.dto import QuotaResponse
from study_pipeline.quota.limiter import RateLimiter

router = APIRouter()


@router.get("/quota/{user_id}", response_model=QuotaResponse, summary="Today's generation quota for a user")
async def get_quota(user_id: str, limiter: RateLimiter = Depends(get_rate_limiter)) -> QuotaResponse:
    status = await limiter.usage(user_id)
    return QuotaResponse(user_id=user_id, **status.to_dict())


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
