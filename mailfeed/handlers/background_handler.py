"""FastAPI handlers for background processing control and status."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from mailfeed.background.supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/background", tags=["background"])


class StartRequest(BaseModel):
    force: bool = False


class CommandResponse(BaseModel):
    success: bool
    message: str


def get_supervisor(request: Request) -> ServiceSupervisor:
    return request.app.state.supervisor


@router.get("/status")
async def get_status(supervisor: ServiceSupervisor = Depends(get_supervisor)):
    """Point-in-time status of the background service."""
    return supervisor.status_snapshot().to_dict()


@router.post("/start", response_model=CommandResponse)
async def start_processing(body: Optional[StartRequest] = None, supervisor: ServiceSupervisor = Depends(get_supervisor)):
    result = await supervisor.start(force=body.force if body else False)
    return result.to_dict()


@router.post("/stop", response_model=CommandResponse)
async def stop_processing(supervisor: ServiceSupervisor = Depends(get_supervisor)):
    result = await supervisor.stop()
    return result.to_dict()


@router.post("/restart", response_model=CommandResponse)
async def restart_processing(supervisor: ServiceSupervisor = Depends(get_supervisor)):
    result = await supervisor.restart()
    return result.to_dict()


@router.post("/process/{account_id}", response_model=CommandResponse)
async def process_account(account_id: str, supervisor: ServiceSupervisor = Depends(get_supervisor)):
    """Run one account now, or as soon as a worker slot frees up."""
    if supervisor.repository.get_account(account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")
    result = await supervisor.process(account_id)
    return result.to_dict()


@router.post("/process-all", response_model=CommandResponse)
async def process_all_accounts(supervisor: ServiceSupervisor = Depends(get_supervisor)):
    result = await supervisor.process_all()
    return result.to_dict()
