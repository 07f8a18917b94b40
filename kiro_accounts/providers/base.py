"""Shared provider-client contract.

Every provider kind implements the same four coroutines:

    begin(params, correlation_token) -> AuthorizationHandle
    finish(handle, callback_payload)  -> Credentials
    refresh(credentials)              -> Credentials
    verify(credentials)               -> AccountStatus

plus ``fetch_profile`` used by account sync. The set of kinds is closed
(ProviderKind); ``build_provider_clients`` constructs exactly one client
per kind.
"""

import base64
import hashlib
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import httpx

from kiro_accounts.core.database import AccountStatus, Credentials, ProviderKind
from kiro_accounts.errors import ProviderError

if TYPE_CHECKING:
    from kiro_accounts.config import Settings

logger = logging.getLogger(__name__)

USAGE_PATH = "/getUsageLimits"
DEFAULT_TIMEOUT = 30.0


def generate_pkce() -> tuple[str, str]:
    """Generate PKCE verifier and challenge.

    >>> v, c = generate_pkce()
    >>> len(v) > 20
    True
    >>> '=' not in c
    True
    """
    verifier = secrets.token_urlsafe(32)
    challenge = base64.urlsafe_b64encode(
        hashlib.sha256(verifier.encode()).digest()
    ).rstrip(b"=").decode()
    return verifier, challenge


@dataclass
class AuthorizationHandle:
    """What ``begin`` hands back: enough to finish the exchange later.

    ``authorize_url`` is set for browser flows, ``user_code`` and
    ``verification_uri`` for device flows. ``state`` is private to the
    client that created the handle.
    """

    kind: ProviderKind
    correlation_token: str
    authorize_url: Optional[str] = None
    user_code: Optional[str] = None
    verification_uri: Optional[str] = None
    interval: int = 5
    expires_in: Optional[int] = None
    params: dict[str, Any] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)

    def public_view(self) -> dict:
        """Fields safe to show the user (no verifiers, secrets or tokens)."""
        return {
            "provider": self.kind.value,
            "authorize_url": self.authorize_url,
            "user_code": self.user_code,
            "verification_uri": self.verification_uri,
            "expires_in": self.expires_in,
        }


@dataclass
class ProfileInfo:
    """Provider-side view of an account, refreshed by sync."""

    email: Optional[str] = None
    display_name: Optional[str] = None
    subscription_type: Optional[str] = None
    usage_current: Optional[float] = None
    usage_limit: Optional[float] = None


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map an unsuccessful HTTP status to a ProviderError.

    >>> error_for_status("social", 503).retriable
    True
    >>> error_for_status("social", 401).retriable
    False
    """
    retriable = status_code == 429 or status_code >= 500
    snippet = body[:200] if body else ""
    message = f"HTTP {status_code}" + (f": {snippet}" if snippet else "")
    return ProviderError(provider, message, retriable=retriable, status_code=status_code)


def parse_json_body(provider: str, resp: httpx.Response) -> dict:
    """Decode a JSON object body; anything else is a provider error."""
    try:
        data = resp.json()
    except ValueError as exc:
        raise ProviderError(provider, f"Malformed JSON response: {exc}")
    if not isinstance(data, dict):
        raise ProviderError(provider, "Malformed JSON response: expected an object")
    return data


def expires_at_from(expires_in: Any, default: int = 3600) -> int:
    """Absolute expiry (UNIX seconds) from an ``expiresIn`` value.

    >>> expires_at_from(60) - int(time.time()) in (59, 60)
    True
    >>> expires_at_from("junk") - int(time.time()) in (3599, 3600)
    True
    """
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = default
    return int(time.time()) + seconds


class ProviderClient(ABC):
    """Base class for the three provider kinds."""

    kind: ProviderKind

    def __init__(
        self,
        settings: "Settings",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport

    @property
    def name(self) -> str:
        return self.kind.value

    def _client(self, timeout: float = DEFAULT_TIMEOUT) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue a request, turning transport failures into retriable errors."""
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError(self.name, f"Timeout calling {url}", retriable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(self.name, f"Network error: {exc}", retriable=True) from exc

    # -- contract ------------------------------------------------------

    @abstractmethod
    async def begin(self, params: dict, correlation_token: str) -> AuthorizationHandle:
        ...

    @abstractmethod
    async def finish(
        self, handle: AuthorizationHandle, callback_payload: Optional[dict]
    ) -> Credentials:
        ...

    @abstractmethod
    async def refresh(self, credentials: Credentials) -> Credentials:
        ...

    async def verify(self, credentials: Credentials) -> AccountStatus:
        """Probe the usage endpoint to check the token is still accepted."""
        status, _ = await self._probe_usage(credentials)
        return status

    async def fetch_profile(self, credentials: Credentials) -> ProfileInfo:
        status, profile = await self._probe_usage(credentials)
        if status != AccountStatus.ACTIVE:
            raise ProviderError(self.name, f"Token rejected ({status.value})")
        return profile

    # -- shared usage probe ---------------------------------------------

    async def _probe_usage(self, credentials: Credentials) -> tuple[AccountStatus, ProfileInfo]:
        if not credentials.access_token:
            return AccountStatus.INVALID, ProfileInfo()
        if credentials.is_expired:
            return AccountStatus.EXPIRED, ProfileInfo()

        params = {"origin": "AI_EDITOR", "resourceType": "AGENTIC_REQUEST"}
        profile_arn = credentials.extra.get("profile_arn")
        if profile_arn:
            params["profileArn"] = profile_arn

        async with self._client(timeout=15.0) as client:
            resp = await self._send(
                client,
                "GET",
                self.settings.usage_endpoint.rstrip("/") + USAGE_PATH,
                params=params,
                headers={"Authorization": f"Bearer {credentials.access_token}"},
            )
        if resp.status_code in (401, 403):
            logger.info(
                "%s token %s rejected (HTTP %d)",
                self.name, credentials.fingerprint(), resp.status_code,
            )
            return AccountStatus.INVALID, ProfileInfo()
        if resp.status_code != 200:
            raise error_for_status(self.name, resp.status_code, resp.text)
        return AccountStatus.ACTIVE, parse_usage(parse_json_body(self.name, resp))


def parse_usage(data: dict) -> ProfileInfo:
    """Extract profile and credit usage from a usage-limits response.

    >>> p = parse_usage({
    ...     "userInfo": {"email": "a@b.c"},
    ...     "subscriptionInfo": {"subscriptionTitle": "KIRO PRO"},
    ...     "usageBreakdownList": [{"currentUsage": 12, "usageLimit": 1000}],
    ... })
    >>> (p.email, p.subscription_type, p.usage_current, p.usage_limit)
    ('a@b.c', 'KIRO PRO', 12.0, 1000.0)
    """
    user = data.get("userInfo") or {}
    sub = data.get("subscriptionInfo") or {}
    profile = ProfileInfo(
        email=user.get("email"),
        display_name=user.get("displayName") or user.get("email"),
        subscription_type=sub.get("subscriptionTitle") or sub.get("type"),
    )
    breakdown = data.get("usageBreakdownList") or []
    if breakdown and isinstance(breakdown[0], dict):
        first = breakdown[0]
        try:
            profile.usage_current = float(first.get("currentUsage", 0) or 0)
            profile.usage_limit = float(first.get("usageLimit", 0) or 0)
        except (TypeError, ValueError):
            pass
    return profile


def build_provider_clients(
    settings: "Settings",
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[ProviderKind, ProviderClient]:
    """One client per provider kind.

    >>> from kiro_accounts.config import Settings
    >>> sorted(k.value for k in build_provider_clients(Settings()))
    ['direct_import', 'identity_center', 'social']
    """
    from kiro_accounts.providers.direct_import import DirectImportClient
    from kiro_accounts.providers.identity_center import IdentityCenterClient
    from kiro_accounts.providers.social import SocialLoginClient

    clients: dict[ProviderKind, ProviderClient] = {
        ProviderKind.SOCIAL_LOGIN: SocialLoginClient(settings, transport=transport),
        ProviderKind.IDENTITY_CENTER: IdentityCenterClient(settings, transport=transport),
        ProviderKind.DIRECT_IMPORT: DirectImportClient(settings, transport=transport),
    }
    missing = set(ProviderKind) - set(clients)
    if missing:
        raise RuntimeError(f"No provider client for {sorted(k.value for k in missing)}")
    return clients
