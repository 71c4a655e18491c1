from fastapi import Header, HTTPException, Request

from leadscore.services.factory import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_account_id(x_account_id: str = Header(default="")) -> str:
    """Caller identity. Authentication happens upstream; we only need the id."""
    account_id = x_account_id.strip()
    if not account_id:
        raise HTTPException(status_code=401, detail="X-Account-Id header is required")
    return account_id
