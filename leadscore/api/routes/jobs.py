"""
Job Routes — submit an analysis, cancel it, fetch its result.
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from typing import Dict, Any
import logging

from leadscore.api.deps import get_account_id, get_services
from leadscore.core.limiter import limiter, SUBMIT_LIMIT, CANCEL_LIMIT, RESULT_LIMIT
from leadscore.services.factory import Services
from leadscore.services.job_types import JobType

logger = logging.getLogger(__name__)
router = APIRouter()


class SubmitRequest(BaseModel):
    subject_id: str = Field(min_length=1, max_length=64)
    business_profile_id: str
    job_type: JobType = JobType.LIGHT


class SubmitResponse(BaseModel):
    job_id: str
    status: str
    progress_url: str
    websocket_url: str


class CancelResponse(BaseModel):
    job_id: str
    status: str


@router.post("/jobs", response_model=SubmitResponse, status_code=202)
@limiter.limit(SUBMIT_LIMIT)
async def submit_job(
    request: Request,
    body: SubmitRequest,
    account_id: str = Depends(get_account_id),
    services: Services = Depends(get_services),
):
    """
    Validate, create the job and enqueue it. Credits are reserved
    later, by the pipeline.
    """
    job = await services.job_service.submit(
        account_id, body.subject_id, body.job_type.value, body.business_profile_id
    )
    return SubmitResponse(
        job_id=job.job_id,
        status=job.status.value,
        progress_url=f"/api/jobs/{job.job_id}/progress",
        websocket_url=f"/api/ws/jobs/{job.job_id}",
    )


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
@limiter.limit(CANCEL_LIMIT)
async def cancel_job(
    request: Request,
    job_id: str,
    account_id: str = Depends(get_account_id),
    services: Services = Depends(get_services),
):
    status = await services.job_service.cancel(job_id, account_id)
    return CancelResponse(job_id=job_id, status=status.value)


@router.get("/jobs/{job_id}/result")
@limiter.limit(RESULT_LIMIT)
async def get_job_result(
    request: Request,
    job_id: str,
    account_id: str = Depends(get_account_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """200 with the result, 425 while the job is still running."""
    return await services.job_service.get_result(job_id, account_id)
