"""Machine-id routes -- read, backup/restore, reset, override, bindings."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from kiro_accounts.api.routes.accounts import get_services
from kiro_accounts.core.machine_guid import MachineIdSnapshot, generate_machine_id

router = APIRouter()


class CustomIdRequest(BaseModel):
    machine_id: str


class RestoreRequest(BaseModel):
    machine_guid: Optional[str] = None


class BindRequest(BaseModel):
    account_id: str
    machine_id: Optional[str] = None


@router.get("")
async def get_machine_id(request: Request):
    return get_services(request).binder.record()


@router.post("/backup", response_model=MachineIdSnapshot)
async def backup_machine_id(request: Request):
    return get_services(request).binder.backup()


@router.get("/backup")
async def get_backup(request: Request):
    snapshot = get_services(request).binder.get_backup()
    if snapshot is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": {"message": "No machine id backup saved", "code": "NOT_FOUND"}},
        )
    return snapshot


@router.post("/restore")
async def restore_machine_id(body: RestoreRequest, request: Request):
    snapshot = None
    if body.machine_guid:
        snapshot = MachineIdSnapshot(
            machine_guid=body.machine_guid,
            backed_up_at=datetime.now(timezone.utc).isoformat(),
        )
    return {"machine_id": get_services(request).binder.restore(snapshot)}


@router.post("/reset")
async def reset_machine_id(request: Request):
    return {"machine_id": get_services(request).binder.reset()}


@router.post("/custom")
async def set_custom_machine_id(body: CustomIdRequest, request: Request):
    return {"machine_id": get_services(request).binder.set_custom(body.machine_id)}


@router.post("/generate")
async def generate():
    """A fresh id for the caller to review; nothing is written."""
    return {"machine_id": generate_machine_id()}


@router.post("/clear-override")
async def clear_override(request: Request):
    return {"cleared": get_services(request).binder.clear_override()}


@router.get("/bindings")
async def list_bindings(request: Request):
    return {"bindings": get_services(request).binder.bindings()}


@router.post("/bindings")
async def bind(body: BindRequest, request: Request):
    """Bind a machine id (default: the current one) to an account."""
    services = get_services(request)
    services.store.get(body.account_id)
    machine_id = body.machine_id or services.binder.current()
    changed = services.binder.bind(body.account_id, machine_id)
    return {"account_id": body.account_id, "machine_id": machine_id.lower(), "changed": changed}


@router.delete("/bindings/{account_id}")
async def unbind(account_id: str, request: Request):
    return {"account_id": account_id, "released": get_services(request).binder.unbind(account_id)}
