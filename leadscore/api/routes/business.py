"""
Business Profile Routes — the scoring context leads are evaluated against.
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from typing import Dict, Any

from leadscore.api.deps import get_account_id, get_services
from leadscore.core.errors import NotFoundError
from leadscore.core.limiter import limiter, STATUS_LIMIT
from leadscore.services.factory import Services

router = APIRouter()


class BusinessProfileRequest(BaseModel):
    business_name: str = Field(min_length=1, max_length=200)
    business_one_liner: str = ""
    target_audience: str = ""
    context: Dict[str, Any] = {}


@router.post("/business-profiles", status_code=201)
async def create_business_profile(
    body: BusinessProfileRequest,
    account_id: str = Depends(get_account_id),
    services: Services = Depends(get_services),
):
    business_profile_id = await services.businesses.create_profile(
        account_id,
        body.business_name,
        business_one_liner=body.business_one_liner,
        target_audience=body.target_audience,
        context=body.context,
    )
    return {"business_profile_id": business_profile_id}


@router.get("/business-profiles/{business_profile_id}")
@limiter.limit(STATUS_LIMIT)
async def get_business_profile(
    request: Request,
    business_profile_id: str,
    account_id: str = Depends(get_account_id),
    services: Services = Depends(get_services),
):
    profile = await services.businesses.get_profile(business_profile_id, account_id)
    if profile is None:
        raise NotFoundError(f"Business profile {business_profile_id} not found")
    return profile
