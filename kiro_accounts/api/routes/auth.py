"""Auth routes -- login handshake, IDE session (current/logout)."""

import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from kiro_accounts.api.routes.accounts import account_to_response, get_services
from kiro_accounts.core.auth_state import get_supported_providers
from kiro_accounts.core.database import ProviderKind
from kiro_accounts.errors import ParseError

logger = logging.getLogger(__name__)

router = APIRouter()


class LoginRequest(BaseModel):
    provider: str
    start_url: Optional[str] = None
    region: Optional[str] = None
    token: Optional[Any] = None
    source: Optional[str] = None
    redirect_uri: Optional[str] = None
    display_name: Optional[str] = None
    open_browser: bool = True
    bind_machine: bool = False


class CompleteRequest(BaseModel):
    url: Optional[str] = None
    correlation_token: Optional[str] = None
    payload: Optional[dict[str, Any]] = None


def _track(request: Request, coro) -> asyncio.Task:
    """Run a login completion in the background, logging how it ended."""
    tasks: set = request.app.state.background
    task = asyncio.create_task(coro)
    tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("Background login ended with error: %s", exc)

    task.add_done_callback(_done)
    return task


@router.get("/providers")
async def list_providers():
    return {"providers": get_supported_providers()}


@router.post("/login")
async def begin_login(body: LoginRequest, request: Request):
    """Start a login.

    Browser logins return the authorize URL and complete when the redirect
    arrives. Device logins return the user code and poll in the background.
    Imports complete before returning.
    """
    services = get_services(request)
    params = body.model_dump(exclude_none=True, exclude={"provider"})
    pending = await services.auth_state.begin_login(body.provider, params)

    if pending.provider == ProviderKind.DIRECT_IMPORT:
        account = await services.auth_state.complete_login(pending.correlation_token)
        return {"pending": pending.public_view(include_token=True), "account": account_to_response(account)}
    if pending.provider == ProviderKind.IDENTITY_CENTER:
        _track(request, services.auth_state.complete_login(pending.correlation_token))
    return {"pending": pending.public_view(include_token=True)}


@router.post("/complete")
async def complete_login(body: CompleteRequest, request: Request):
    target = body.url or body.correlation_token
    if not target:
        raise ParseError("Provide a callback url or a correlation token")
    account = await get_services(request).auth_state.complete_login(target, body.payload)
    return account_to_response(account)


@router.post("/cancel")
async def cancel_login(request: Request):
    return {"cancelled": get_services(request).auth_state.cancel_login()}


@router.get("/pending")
async def get_pending(request: Request):
    pending = get_services(request).auth_state.current_pending()
    if pending is None:
        return {"status": "none"}
    return pending.public_view()


@router.get("/current")
async def current_account(request: Request):
    """The stored account the IDE is currently signed in with."""
    account = get_services(request).switcher.current()
    return {"account": account_to_response(account) if account else None}


@router.post("/logout")
async def logout(request: Request):
    return get_services(request).switcher.logout()
