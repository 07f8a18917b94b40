"""Single-slot login state machine.

Lifecycle of the one in-flight login:

    begin_login()     slot reserved (STARTING) -> provider.begin() -> PENDING
    complete_login()  correlation check -> PENDING -> EXCHANGING
                      -> provider.finish() -> COMPLETED (slot cleared)
    cancel_login()    any live state -> CANCELLED (slot cleared)
    (lazy)            PENDING past expires_at -> EXPIRED (slot cleared)

The slot is guarded by a threading.Lock held only while the slot is read
or written, never across a provider call. Whoever moves the slot out of
EXCHANGING first wins: a cancel that lands while the exchange is running
discards the exchange result, and a completion that lands first makes the
later cancel a no-op.

The optional ``sink`` receives each completed Account and the login's
params (normally to persist it through AccountStore) before the completion channel resolves, so waiters only
ever see persisted accounts.
"""

import asyncio
import concurrent.futures
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union
from urllib.parse import parse_qs, urlsplit

from kiro_accounts.config import Settings
from kiro_accounts.core.database import Account, AccountStatus, ProviderKind
from kiro_accounts.core.store import account_from_credentials
from kiro_accounts.errors import (
    AlreadyPending,
    CorrelationMismatch,
    Expired,
    InvalidFormat,
    LoginCancelled,
    NoPendingLogin,
    ParseError,
    ProviderError,
)
from kiro_accounts.providers.base import AuthorizationHandle, ProviderClient

logger = logging.getLogger(__name__)

CORRELATION_KEY = "state"


class LoginStatus(str, Enum):
    STARTING = "starting"
    PENDING = "pending"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# name shown to users -> (provider kind, default begin() params)
SUPPORTED_PROVIDERS: dict[str, tuple[ProviderKind, dict]] = {
    "Google": (ProviderKind.SOCIAL_LOGIN, {"idp": "Google"}),
    "Github": (ProviderKind.SOCIAL_LOGIN, {"idp": "Github"}),
    "BuilderId": (ProviderKind.IDENTITY_CENTER, {}),
    "Enterprise": (ProviderKind.IDENTITY_CENTER, {}),
    "Import": (ProviderKind.DIRECT_IMPORT, {}),
}


def get_supported_providers() -> list[str]:
    """
    >>> get_supported_providers()
    ['Google', 'Github', 'BuilderId', 'Enterprise', 'Import']
    """
    return list(SUPPORTED_PROVIDERS)


def resolve_provider(name: Union[str, ProviderKind]) -> tuple[ProviderKind, dict]:
    """Map a provider kind or a user-facing provider name to (kind, params).

    >>> resolve_provider("github")
    (<ProviderKind.SOCIAL_LOGIN: 'social'>, {'idp': 'Github'})
    >>> resolve_provider("identity_center")[0].value
    'identity_center'
    """
    if isinstance(name, ProviderKind):
        return name, {}
    for label, (kind, params) in SUPPORTED_PROVIDERS.items():
        if label.lower() == name.lower():
            return kind, dict(params)
    try:
        return ProviderKind(name), {}
    except ValueError:
        raise InvalidFormat(f"Unknown provider: {name}")


def parse_callback_url(url: str, scheme: str) -> tuple[str, dict]:
    """Split a callback URL into (correlation token, query payload).

    >>> parse_callback_url("kiro://kiro.kiroAgent/authenticate-success?code=c1&state=s1", "kiro")
    ('s1', {'code': 'c1', 'state': 's1'})
    >>> parse_callback_url("https://evil.example/?state=s1", "kiro")
    Traceback (most recent call last):
    ...
    kiro_accounts.errors.ParseError: Callback URL must use the kiro:// scheme
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise ParseError(f"Malformed callback URL: {exc}")
    if parts.scheme.lower() != scheme.lower():
        raise ParseError(f"Callback URL must use the {scheme}:// scheme")
    payload = {k: v[0] for k, v in parse_qs(parts.query).items() if v}
    token = payload.get(CORRELATION_KEY)
    if not token:
        raise ParseError("Callback URL carries no correlation token")
    return token, payload


@dataclass
class PendingLogin:
    """The one in-flight login handshake.

    ``future`` is the completion channel: it resolves to the Account on
    success, or to the error that ended the login.
    """

    correlation_token: str
    provider: ProviderKind
    created_at: float
    expires_at: float
    params: dict = field(default_factory=dict)
    status: LoginStatus = LoginStatus.STARTING
    handle: Optional[AuthorizationHandle] = None
    future: concurrent.futures.Future = field(default_factory=concurrent.futures.Future, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, repr=False)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def public_view(self, *, include_token: bool = False) -> dict:
        """Status fields for display.

        The correlation token, and the authorize URL that carries it, are
        only included for the caller that began the login. Everyone else
        gets a short fingerprint.
        """
        view = {
            "correlation_fingerprint": "…" + self.correlation_token[-6:],
            "provider": self.provider.value,
            "status": self.status.value,
            "created_at": int(self.created_at),
            "expires_at": int(self.expires_at),
        }
        if self.handle is not None:
            view.update(self.handle.public_view())
        if include_token:
            view["correlation_token"] = self.correlation_token
        else:
            view.pop("authorize_url", None)
        return view

    async def wait(self, timeout: Optional[float] = None) -> Account:
        """Wait for the login to finish; raises whatever ended it."""
        # shield: a timed-out waiter must not cancel the shared future
        return await asyncio.wait_for(asyncio.shield(asyncio.wrap_future(self.future)), timeout)


class AuthState:
    """Owns the pending-login slot and correlates callbacks to it."""

    def __init__(
        self,
        providers: dict[ProviderKind, ProviderClient],
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        sink: Optional[Callable[[Account, dict], Account]] = None,
    ):
        self.providers = providers
        self.settings = settings
        self._clock = clock
        self._sink = sink
        self._lock = threading.Lock()
        self._pending: Optional[PendingLogin] = None
        # Last login reaped by expiry, so a late callback still reports Expired
        self._expired: Optional[PendingLogin] = None

    # -- slot helpers (call with self._lock held) ---------------------------

    def _reap_locked(self, now: float) -> None:
        pending = self._pending
        if pending and pending.status == LoginStatus.PENDING and pending.is_expired(now):
            logger.info("Pending %s login expired", pending.provider.value)
            self._end_locked(pending, LoginStatus.EXPIRED, Expired("Login request expired"))
            self._expired = pending

    def _end_locked(self, pending: PendingLogin, status: LoginStatus, error: Exception) -> None:
        pending.status = status
        if self._pending is pending:
            self._pending = None
        if not pending.future.done():
            pending.future.set_exception(error)

    # -- public operations ---------------------------------------------------

    def current_pending(self) -> Optional[PendingLogin]:
        with self._lock:
            self._reap_locked(self._clock())
            return self._pending

    async def begin_login(
        self, provider: Union[str, ProviderKind], params: Optional[dict] = None
    ) -> PendingLogin:
        """Start a login. Raises AlreadyPending while another is live."""
        kind, defaults = resolve_provider(provider)
        merged = {**defaults, **(params or {})}
        now = self._clock()
        with self._lock:
            self._reap_locked(now)
            if self._pending is not None:
                raise AlreadyPending(
                    f"A {self._pending.provider.value} login is already in progress"
                )
            pending = PendingLogin(
                correlation_token=secrets.token_urlsafe(32),
                provider=kind,
                created_at=now,
                expires_at=now + self.settings.pending_login_timeout,
                params=merged,
            )
            self._pending = pending

        try:
            handle = await self.providers[kind].begin(merged, pending.correlation_token)
        except asyncio.CancelledError:
            with self._lock:
                self._end_locked(pending, LoginStatus.FAILED, LoginCancelled("Login aborted"))
            raise
        except Exception as exc:
            with self._lock:
                self._end_locked(pending, LoginStatus.FAILED, exc)
            raise

        with self._lock:
            if pending.status != LoginStatus.STARTING:
                raise LoginCancelled("Login was cancelled while starting")
            pending.handle = handle
            pending.status = LoginStatus.PENDING
        logger.info("Started %s login", kind.value)
        return pending

    def _claim(self, token: str) -> PendingLogin:
        """Check-then-act on the slot: validate the token and mark EXCHANGING."""
        now = self._clock()
        with self._lock:
            pending = self._pending
            if pending is None:
                expired = self._expired
                if expired and secrets.compare_digest(
                    expired.correlation_token.encode(), token.encode()
                ):
                    raise Expired("Login request expired")
                raise NoPendingLogin("No login is waiting for a callback")
            if not secrets.compare_digest(pending.correlation_token.encode(), token.encode()):
                logger.warning("Rejected callback with mismatched correlation token")
                raise CorrelationMismatch("Callback does not match the pending login")
            if pending.status != LoginStatus.PENDING:
                raise NoPendingLogin(f"Pending login is already {pending.status.value}")
            if pending.is_expired(now):
                self._end_locked(pending, LoginStatus.EXPIRED, Expired("Login request expired"))
                self._expired = pending
                raise Expired("Login request expired")
            pending.status = LoginStatus.EXCHANGING
            return pending

    async def complete_login(
        self, token_or_url: str, payload: Optional[dict] = None
    ) -> Account:
        """Correlate a callback (URL or bare token) and finish the exchange.

        Returns the new Account. Without a sink it is unsaved and the caller
        stores it; with one, the sink's result (the stored account) is returned.
        """
        if not isinstance(token_or_url, str) or not token_or_url.strip():
            raise ParseError("Empty callback")
        if "://" in token_or_url:
            token, url_payload = parse_callback_url(token_or_url, self.settings.url_scheme)
            payload = {**url_payload, **(payload or {})}
        else:
            token, payload = token_or_url.strip(), dict(payload or {})

        pending = self._claim(token)
        pending._loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(self._exchange(pending, payload))
        with self._lock:
            cancelled = pending.status == LoginStatus.CANCELLED
            pending._task = task
        if cancelled:
            task.cancel()

        try:
            account = await task
        except asyncio.CancelledError:
            with self._lock:
                was_cancelled = pending.status == LoginStatus.CANCELLED
                if pending.status == LoginStatus.EXCHANGING:
                    self._end_locked(pending, LoginStatus.FAILED, LoginCancelled("Login aborted"))
            if was_cancelled:
                raise LoginCancelled("Login was cancelled")
            raise
        except Exception as exc:
            with self._lock:
                if pending.status == LoginStatus.EXCHANGING:
                    self._end_locked(pending, LoginStatus.FAILED, exc)
                    cancelled = False
                else:
                    cancelled = True
            if cancelled:
                raise LoginCancelled("Login was cancelled") from exc
            logger.warning("%s login failed: %s", pending.provider.value, exc)
            raise

        with self._lock:
            if pending.status != LoginStatus.EXCHANGING:
                logger.info("Discarding %s login result after cancel", pending.provider.value)
                raise LoginCancelled("Login was cancelled")
            pending.status = LoginStatus.COMPLETED
            self._pending = None

        # shield: once the slot is COMPLETED the waiters must always hear back
        return await asyncio.shield(self._finalize(pending, account))

    async def _finalize(self, pending: PendingLogin, account: Account) -> Account:
        if self._sink is not None:
            try:
                # The sink writes to disk, so it runs on a worker thread
                account = await asyncio.to_thread(self._sink, account, pending.params)
            except Exception as exc:
                pending.status = LoginStatus.FAILED
                pending.future.set_exception(exc)
                raise
        pending.future.set_result(account)
        logger.info("Completed %s login for account %s", pending.provider.value, account.id)
        return account

    async def _exchange(self, pending: PendingLogin, payload: dict) -> Account:
        client = self.providers[pending.provider]
        credentials = await client.finish(pending.handle, payload)
        status = AccountStatus.ACTIVE
        if pending.provider == ProviderKind.DIRECT_IMPORT:
            status = await client.verify(credentials)

        email = display_name = None
        profile = None
        if status == AccountStatus.ACTIVE:
            try:
                profile = await client.fetch_profile(credentials)
            except ProviderError as exc:
                logger.warning("Profile lookup after login failed: %s", exc)
        if profile is not None:
            email, display_name = profile.email, profile.display_name

        account = account_from_credentials(
            pending.provider,
            credentials,
            status=status,
            display_name=pending.params.get("display_name") or display_name or "",
            email=email,
        )
        if profile is not None:
            account = account.model_copy(update={
                "subscription_type": profile.subscription_type,
                "usage_current": profile.usage_current,
                "usage_limit": profile.usage_limit,
            })
        return account

    def cancel_login(self) -> bool:
        """Abort the live login. Returns False if there was none.

        Safe to call from any thread; an exchange in progress is cancelled
        on its own event loop.
        """
        with self._lock:
            pending = self._pending
            if pending is None:
                return False
            self._end_locked(pending, LoginStatus.CANCELLED, LoginCancelled("Login was cancelled"))
            task, loop = pending._task, pending._loop
        if task is not None and loop is not None and not task.done():
            loop.call_soon_threadsafe(task.cancel)
        logger.info("Cancelled %s login", pending.provider.value)
        return True

    async def login(
        self,
        provider: Union[str, ProviderKind],
        params: Optional[dict] = None,
        *,
        on_started: Optional[Callable[[PendingLogin], None]] = None,
    ) -> Account:
        """begin + complete in one call.

        Browser flows wait for the callback to arrive through the deep-link
        router; device and import flows complete directly.
        """
        pending = await self.begin_login(provider, params)
        if on_started is not None:
            on_started(pending)
        if pending.provider == ProviderKind.SOCIAL_LOGIN:
            remaining = max(0.0, pending.expires_at - self._clock())
            try:
                return await pending.wait(timeout=remaining)
            except asyncio.TimeoutError:
                raise Expired("No callback arrived before the login expired")
        return await self.complete_login(pending.correlation_token)
