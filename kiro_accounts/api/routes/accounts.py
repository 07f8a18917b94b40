"""Account routes -- CRUD, refresh/verify/sync, import/export, switch."""

import time
from typing import Any, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from kiro_accounts.core.database import Account, AccountStatus, Credentials, ProviderKind
from kiro_accounts.core.store import ImportReport
from kiro_accounts.services import Services

router = APIRouter()


# --- Pydantic v2 request/response models ---


class AccountResponse(BaseModel):
    """Account data for API responses. Tokens are never included."""

    id: str
    provider: str
    display_name: str = ""
    email: Optional[str] = None
    status: str
    bound_machine_id: Optional[str] = None
    auth_method: Optional[str] = None
    token_fingerprint: str
    expires_at: int
    last_verified_at: Optional[int] = None
    subscription_type: Optional[str] = None
    usage_current: Optional[float] = None
    usage_limit: Optional[float] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Computed fields
    is_expired: bool = False
    expires_in_seconds: int = 0


class CredentialsBody(BaseModel):
    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: int = 0
    extra: dict[str, Any] = {}


class AccountCreateRequest(BaseModel):
    id: Optional[str] = None
    provider: ProviderKind
    display_name: str = ""
    email: Optional[str] = None
    credentials: CredentialsBody
    status: AccountStatus = AccountStatus.ACTIVE
    bound_machine_id: Optional[str] = None


class AccountPatchRequest(BaseModel):
    display_name: Optional[str] = None
    email: Optional[str] = None
    status: Optional[AccountStatus] = None
    bound_machine_id: Optional[str] = None


class DeleteManyRequest(BaseModel):
    ids: list[str]


class ExportRequest(BaseModel):
    ids: Optional[list[str]] = None
    redact: Optional[bool] = None


class ImportRequest(BaseModel):
    document: dict[str, Any]
    overwrite: bool = False


# --- Helpers ---


def get_services(request: Request) -> Services:
    """Get the service container from app state."""
    return request.app.state.services


def account_to_response(account: Account) -> AccountResponse:
    """Convert an Account to an API response with computed fields."""
    now = int(time.time())
    creds = account.credentials
    return AccountResponse(
        id=account.id,
        provider=account.provider.value,
        display_name=account.display_name,
        email=account.email,
        status=account.status.value,
        bound_machine_id=account.bound_machine_id,
        auth_method=creds.extra.get("auth_method"),
        token_fingerprint=creds.fingerprint(),
        expires_at=creds.expires_at,
        last_verified_at=account.last_verified_at,
        subscription_type=account.subscription_type,
        usage_current=account.usage_current,
        usage_limit=account.usage_limit,
        last_error=account.last_error,
        created_at=account.created_at,
        updated_at=account.updated_at,
        is_expired=now >= creds.expires_at,
        expires_in_seconds=max(0, creds.expires_at - now),
    )


# --- Routes ---


@router.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(request: Request):
    store = get_services(request).store
    return [account_to_response(a) for a in store.list_accounts()]


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, request: Request):
    return account_to_response(get_services(request).store.get(account_id))


@router.post("/accounts", response_model=AccountResponse, status_code=201)
async def create_account(body: AccountCreateRequest, request: Request):
    """Add an account from already-issued credentials."""
    account = Account(
        id=body.id or "",
        provider=body.provider,
        display_name=body.display_name,
        email=body.email,
        credentials=Credentials(**body.credentials.model_dump()),
        status=body.status,
        bound_machine_id=body.bound_machine_id,
    )
    return account_to_response(get_services(request).store.add(account))


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
async def update_account(account_id: str, body: AccountPatchRequest, request: Request):
    patch = body.model_dump(exclude_unset=True)
    if not patch:
        raise ValueError("No fields to update")
    return account_to_response(get_services(request).store.update(account_id, patch))


@router.delete("/accounts/{account_id}")
async def delete_account(account_id: str, request: Request):
    get_services(request).store.delete(account_id)
    return {"deleted": account_id}


@router.post("/accounts/delete")
async def delete_accounts(body: DeleteManyRequest, request: Request):
    return {"deleted": get_services(request).store.delete_many(body.ids)}


@router.post("/accounts/{account_id}/refresh", response_model=AccountResponse)
async def refresh_account(account_id: str, request: Request, force: bool = False):
    account = await get_services(request).store.refresh(account_id, force=force)
    return account_to_response(account)


@router.post("/accounts/{account_id}/verify", response_model=AccountResponse)
async def verify_account(account_id: str, request: Request):
    return account_to_response(await get_services(request).store.verify(account_id))


@router.post("/accounts/{account_id}/sync", response_model=AccountResponse)
async def sync_account(account_id: str, request: Request):
    return account_to_response(await get_services(request).store.sync(account_id))


@router.post("/accounts/{account_id}/switch")
async def switch_account(account_id: str, request: Request):
    return await get_services(request).switcher.switch(account_id)


@router.post("/accounts/export")
async def export_accounts(body: ExportRequest, request: Request):
    return get_services(request).store.export_accounts(body.ids, redact=body.redact)


@router.post("/accounts/import", response_model=ImportReport)
async def import_accounts(body: ImportRequest, request: Request):
    return get_services(request).store.import_accounts(body.document, overwrite=body.overwrite)
