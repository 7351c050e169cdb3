"""Sync endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from notesync.api.dependencies import SchedulerDep, ServiceDep
from notesync.api.exceptions import status_for_code
from notesync.api.models import DownloadRequest, MediaResponse, StatusResponse, SyncRequest, SyncResponse
from notesync.core.models import SyncResult

logger = logging.getLogger(__name__)

router = APIRouter()


def _respond(result: SyncResult) -> JSONResponse:
    """Serialize a SyncResult; failures carry the mapped HTTP status."""
    body = SyncResponse(**result.to_dict())
    return JSONResponse(status_code=status_for_code(result.error), content=body.model_dump(mode="json"))


@router.post("", response_model=SyncResponse)
async def run_sync(service: ServiceDep, request: SyncRequest | None = None):
    """Run a full sync: upload, download, merge or nothing, as needed."""
    strategy = request.strategy if request else service.config.sync.strategy
    return _respond(await service.coordinator.sync(strategy=strategy))


@router.post("/upload", response_model=SyncResponse)
async def upload(service: ServiceDep):
    """Replace the remote snapshot with the local state."""
    return _respond(await service.coordinator.upload())


@router.post("/download", response_model=SyncResponse)
async def download(service: ServiceDep, request: DownloadRequest | None = None):
    """Import the remote snapshot into the local store."""
    strategy = request.strategy if request else service.config.sync.strategy
    return _respond(await service.coordinator.download(strategy=strategy))


@router.get("/status", response_model=StatusResponse)
async def get_status(service: ServiceDep, scheduler: SchedulerDep):
    """Current sync state, metadata and encryption status."""
    status = await service.coordinator.status()
    return StatusResponse(
        **status,
        scheduler_running=bool(scheduler and scheduler.is_running),
        next_auto_sync=scheduler.next_run_time if scheduler else None,
    )


@router.post("/media", response_model=MediaResponse)
async def reconcile_media(service: ServiceDep):
    """Reconcile media attachments without a snapshot sync."""
    result = await service.coordinator.reconcile_media()
    body = MediaResponse(**result.to_dict())
    return JSONResponse(status_code=status_for_code(result.error), content=body.model_dump(mode="json"))
