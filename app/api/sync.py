"""
Connection sync endpoints
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from app.services.connection_sync import ConnectionSyncController, get_sync_controller
from app.sync.errors import (
    ConnectionGoneError,
    ConnectionNotFoundError,
    QuickSyncError,
    SyncAlreadyRunningError,
)
from app.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])


class ConnectionCreate(BaseModel):
    platform: str  # shopify, meta
    account_ref: str  # shop domain or ad account id
    credential_handle: str
    brand_id: Optional[str] = None


@router.post("/connections", status_code=201)
def create_connection(
    body: ConnectionCreate,
    controller: ConnectionSyncController = Depends(get_sync_controller),
):
    """Register an authorized integration (status NOT_STARTED)"""
    from app.connectors import CONNECTORS
    if body.platform not in CONNECTORS:
        raise HTTPException(status_code=400, detail=f"Unsupported platform: {body.platform}")

    connection = controller.store.create_connection(
        platform=body.platform,
        account_ref=body.account_ref,
        credential_handle=body.credential_handle,
        brand_id=body.brand_id,
    )
    return {
        "connection_id": connection.id,
        "platform": connection.platform,
        "status": connection.sync_status.value,
    }


@router.post("/connections/{connection_id}/start", status_code=202)
async def start_sync(
    connection_id: int,
    background_tasks: BackgroundTasks,
    controller: ConnectionSyncController = Depends(get_sync_controller),
):
    """
    Run quick sync now and the historical import in the background.

    Returns as soon as quick sync finishes. Check progress at
    GET /sync/connections/{connection_id}/status
    """
    try:
        handle = await controller.start_sync(connection_id, background_tasks=background_tasks)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConnectionGoneError as e:
        raise HTTPException(status_code=410, detail=str(e))
    except QuickSyncError as e:
        log.error(f"Quick sync failed for connection {connection_id}: {e}")
        raise HTTPException(
            status_code=502,
            detail={"error": str(e), "upstream_status": e.status_code},
        )

    return {
        **handle.to_dict(),
        "message": "Quick sync complete; historical import started in background",
        "check_progress": f"/sync/connections/{connection_id}/status",
    }


@router.get("/connections/{connection_id}/status")
def get_sync_status(
    connection_id: int,
    controller: ConnectionSyncController = Depends(get_sync_controller),
):
    """Read-only progress poll"""
    try:
        return controller.get_sync_status(connection_id)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/connections/{connection_id}/jobs")
def list_bulk_jobs(
    connection_id: int,
    controller: ConnectionSyncController = Depends(get_sync_controller),
):
    """Bulk export audit trail for a connection"""
    try:
        jobs = controller.list_jobs(connection_id)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"connection_id": connection_id, "jobs": jobs, "total": len(jobs)}


@router.post("/bulk/resume", status_code=202)
async def resume_bulk_imports(
    background_tasks: BackgroundTasks,
    controller: ConnectionSyncController = Depends(get_sync_controller),
):
    """Resume historical imports left BULK_IMPORTING by a restart (runs in background)"""
    background_tasks.add_task(controller.resume_orphaned_imports)
    return {"message": "Resume of orphaned bulk imports started in background"}


@router.post("/refresh", status_code=202)
async def refresh_connections(
    background_tasks: BackgroundTasks,
    controller: ConnectionSyncController = Depends(get_sync_controller),
):
    """Re-sync the trailing window of every completed connection (runs in background)"""
    background_tasks.add_task(controller.refresh_connections)
    return {"message": "Refresh of completed connections started in background"}
