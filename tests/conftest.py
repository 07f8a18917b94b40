"""Shared fixtures for kiro_accounts tests."""

import asyncio
import time
from pathlib import Path
from typing import Callable, Optional

import pytest

from kiro_accounts.config import Settings
from kiro_accounts.core.auth_state import AuthState
from kiro_accounts.core.database import (
    Account,
    AccountStatus,
    Credentials,
    Database,
    ProviderKind,
)
from kiro_accounts.core.machine_guid import MachineGuidBinder, OverrideFileSource
from kiro_accounts.core.store import AccountStore
from kiro_accounts.errors import ProviderError
from kiro_accounts.providers.base import AuthorizationHandle, ProfileInfo, ProviderClient
from kiro_accounts.services import Services

FACTORY_MACHINE_ID = "11111111-2222-4333-8444-555555555555"


def run(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


def callback_url(token: str, code: str = "auth-code") -> str:
    return f"kiro://kiro.kiroAgent/authenticate-success?code={code}&state={token}"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(ProviderClient):
    """In-memory provider client with hooks to inject failures and races."""

    def __init__(self, settings: Settings, kind: ProviderKind):
        super().__init__(settings)
        self.kind = kind
        self.calls: list[str] = []
        self.begin_error: Optional[Exception] = None
        self.refresh_result = None
        self.verify_result = AccountStatus.ACTIVE
        self.profile = ProfileInfo(
            email="user@example.com",
            display_name="Example User",
            subscription_type="KIRO FREE",
            usage_current=5.0,
            usage_limit=50.0,
        )
        # Called in the middle of finish()/refresh() to simulate a race
        self.during_finish: Optional[Callable[[], None]] = None
        self.during_refresh: Optional[Callable[[], None]] = None

    async def begin(self, params: dict, correlation_token: str) -> AuthorizationHandle:
        self.calls.append("begin")
        if self.begin_error is not None:
            raise self.begin_error
        return AuthorizationHandle(
            kind=self.kind,
            correlation_token=correlation_token,
            authorize_url=f"https://auth.example.test/login?state={correlation_token}",
            user_code="ABCD-EFGH" if self.kind == ProviderKind.IDENTITY_CENTER else None,
            params=dict(params),
        )

    async def finish(self, handle, callback_payload) -> Credentials:
        self.calls.append("finish")
        if self.during_finish is not None:
            self.during_finish()
            await asyncio.sleep(0)
        payload = callback_payload or {}
        if payload.get("error"):
            raise ProviderError(self.name, payload["error"])
        return Credentials(
            access_token=f"access-{handle.correlation_token[:8]}",
            refresh_token="refresh-original",
            expires_at=int(time.time()) + 3600,
            extra={"auth_method": "social", "idp": "Google"},
        )

    async def refresh(self, credentials: Credentials) -> Credentials:
        self.calls.append("refresh")
        if self.during_refresh is not None:
            self.during_refresh()
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        if self.refresh_result is not None:
            return self.refresh_result
        return Credentials(
            access_token="access-refreshed",
            refresh_token="refresh-rotated",
            expires_at=int(time.time()) + 7200,
            extra=dict(credentials.extra),
        )

    async def verify(self, credentials: Credentials) -> AccountStatus:
        self.calls.append("verify")
        return self.verify_result

    async def fetch_profile(self, credentials: Credentials) -> ProfileInfo:
        self.calls.append("fetch_profile")
        return self.profile


def make_account(
    account_id: str = "acct-1",
    *,
    provider: ProviderKind = ProviderKind.SOCIAL_LOGIN,
    access_token: str = "access-1",
    expires_in: int = 3600,
    email: Optional[str] = "alice@example.com",
    status: AccountStatus = AccountStatus.ACTIVE,
    bound_machine_id: Optional[str] = None,
) -> Account:
    return Account(
        id=account_id,
        provider=provider,
        display_name="",
        email=email,
        credentials=Credentials(
            access_token=access_token,
            refresh_token="refresh-1",
            expires_at=int(time.time()) + expires_in,
            extra={"auth_method": "social", "idp": "Github"},
        ),
        status=status,
        bound_machine_id=bound_machine_id,
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        ide_token_path=tmp_path / "sso" / "kiro-auth-token.json",
        idc_poll_interval=1,
        idc_max_wait=60,
    )


@pytest.fixture
def machine_source(settings: Settings) -> OverrideFileSource:
    return OverrideFileSource(
        settings.machine_id_override_path, system_reader=lambda: FACTORY_MACHINE_ID
    )


@pytest.fixture
def db(settings: Settings):
    database = Database(str(settings.db_path))
    yield database
    database.close()


@pytest.fixture
def binder(db, machine_source, settings) -> MachineGuidBinder:
    return MachineGuidBinder(db, machine_source, settings.machine_id_backup_path)


@pytest.fixture
def providers(settings) -> dict:
    return {kind: FakeProvider(settings, kind) for kind in ProviderKind}


@pytest.fixture
def store(db, binder, providers, settings) -> AccountStore:
    return AccountStore(db, binder, providers, settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_state(providers, settings, clock) -> AuthState:
    return AuthState(providers, settings, clock=clock)


@pytest.fixture
def services(settings, machine_source):
    """Fully wired container with fake provider clients."""
    svc = Services(settings, machine_source=machine_source, focus=lambda: None)
    svc.providers.update({kind: FakeProvider(settings, kind) for kind in ProviderKind})
    yield svc
    svc.close()
