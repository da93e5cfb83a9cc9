"""
Sync HTTP routes.

Every route needs the X-User-Id header set by the gateway that
authenticated the caller. Bodies are read as raw JSON and handed to
SyncService, which validates them.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from expense_sync.models.validation import ValidationIssue
from expense_sync.orchestrator import SyncService
from expense_sync.validation import RequestValidationError


router = APIRouter(prefix="/sync", tags=["sync"])


def get_service(request: Request) -> SyncService:
    return request.app.state.service


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """The authenticated user, as forwarded by the gateway."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise RequestValidationError([
            ValidationIssue(
                field="body",
                issue_type="invalid_json",
                message="Request body must be valid JSON",
            )
        ])


@router.get("/status")
async def sync_status(
    device_id: str = Query(..., alias="deviceId", min_length=1),
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    status = await service.device_status(user_id, device_id)
    return status.to_response()


@router.get("/changes")
async def sync_changes(
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    since: Optional[datetime] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    response = await service.pull_changes(user_id, device_id=device_id, since=since)
    return response.to_response()


@router.post("/push")
async def sync_push(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    body = await read_json_body(request)
    result = await service.push(user_id, body)
    return result.to_response()


@router.post("/resolve-conflicts")
async def resolve_conflicts(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    body = await read_json_body(request)
    result = await service.resolve_conflicts(user_id, body)
    return result.to_response()


@router.post("/register-device")
async def register_device(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    body = await read_json_body(request)
    device = await service.register_device(user_id, body)
    return {
        "success": True,
        "message": "Device registered successfully",
        "deviceId": device.device_id,
    }


@router.get("/devices")
async def list_devices(
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    devices = await service.list_devices(user_id)
    return {"devices": [device.to_response() for device in devices]}


@router.delete("/devices/{device_id}")
async def deactivate_device(
    device_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    device = await service.deactivate_device(user_id, device_id)
    return {"success": True, "device": device.to_response()}


@router.post("/tombstones/purge")
async def purge_tombstones(
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    purged = await service.purge_tombstones(user_id)
    return {"success": True, "purged": purged}
