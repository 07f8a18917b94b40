"""Instance routes -- relaunch IPC target for second application instances."""

import os

from fastapi import APIRouter, Request
from pydantic import BaseModel

from kiro_accounts import __version__
from kiro_accounts.api.routes.accounts import account_to_response, get_services

router = APIRouter()


class RelaunchRequest(BaseModel):
    argv: list[str]


@router.post("/relaunch")
async def relaunch(body: RelaunchRequest, request: Request):
    """Take a second instance's argv; a callback URL in it completes the login."""
    account = await get_services(request).router.handle_relaunch(body.argv)
    return {
        "handled": account is not None,
        "account": account_to_response(account) if account else None,
    }


@router.get("/ping")
async def ping():
    return {"pid": os.getpid(), "version": __version__}
