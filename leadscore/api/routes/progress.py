"""
Progress Routes — snapshot polling and WebSocket live updates.
"""
import asyncio

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from typing import Dict, Any, Optional
import logging

from leadscore.api.deps import get_account_id, get_services
from leadscore.core.errors import PipelineError
from leadscore.core.limiter import limiter, STATUS_LIMIT
from leadscore.services.factory import Services
from leadscore.services.progress import snapshot_view

logger = logging.getLogger(__name__)
router = APIRouter()

WS_NOT_FOUND = 4404
WS_UNAUTHORIZED = 4401


class ProgressResponse(BaseModel):
    job_id: str
    subject_id: str
    job_type: str
    status: str
    progress: int
    current_step: str
    seq: int
    started_at: str
    updated_at: str
    expires_at: str
    completed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


@router.get("/jobs/{job_id}/progress", response_model=ProgressResponse)
@limiter.limit(STATUS_LIMIT)
async def get_job_progress(
    request: Request,
    job_id: str,
    account_id: str = Depends(get_account_id),
    services: Services = Depends(get_services),
):
    snapshot = await services.job_service.get_progress(job_id, account_id)
    return snapshot_view(snapshot)


async def _forward_events(websocket: WebSocket, events) -> None:
    async for event in events:
        await websocket.send_json(event)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/jobs/{job_id}")
async def websocket_progress(websocket: WebSocket, job_id: str):
    """
    Real-time progress. Sends a ``ready`` event with the current snapshot,
    then every change until the job finishes. Reconnecting is always safe.

    The client's disconnect is watched alongside the event stream, so a
    closed socket releases its subscription without waiting for the next event.
    """
    await websocket.accept()
    account_id = websocket.headers.get("X-Account-Id") or websocket.query_params.get("account_id")
    if not account_id:
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    services: Services = websocket.app.state.services
    logger.info(f"WebSocket connected for job {job_id}")
    try:
        events = await services.job_service.subscribe_progress(job_id, account_id)
    except PipelineError as e:
        await websocket.send_json({"type": "error", **e.to_dict()})
        await websocket.close(code=WS_NOT_FOUND)
        return

    forward = asyncio.create_task(_forward_events(websocket, events))
    disconnect = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({forward, disconnect}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (forward, disconnect):
            task.cancel()
        await asyncio.gather(forward, disconnect, return_exceptions=True)
        await events.aclose()

    if disconnect in done or isinstance(forward.exception(), WebSocketDisconnect):
        logger.info(f"WebSocket disconnected for job {job_id}")
        return

    error = forward.exception()
    if isinstance(error, PipelineError):
        await websocket.send_json({"type": "error", **error.to_dict()})
        await websocket.close(code=WS_NOT_FOUND)
        return
    if error is not None:
        raise error

    await websocket.close()
