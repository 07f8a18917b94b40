"""AWS IAM Identity Center (Builder ID / enterprise SSO) device flow.

1. begin(): register a public OIDC client, start device authorization,
   open the verification page for the user
2. finish(): poll the token endpoint until the user approves or denies,
   bounded by ``idc_max_wait``
3. refresh(): refresh_token grant with the registered client credentials
"""

import asyncio
import logging
import time
import webbrowser
from typing import Optional

import httpx

from kiro_accounts.core.database import Credentials, ProviderKind
from kiro_accounts.errors import Expired, ProviderError
from kiro_accounts.providers.base import (
    AuthorizationHandle,
    ProviderClient,
    error_for_status,
    expires_at_from,
    parse_json_body,
)

logger = logging.getLogger(__name__)

BUILDER_ID_START_URL = "https://view.awsapps.com/start"
CLIENT_NAME = "Kiro Account Manager"
SCOPES = [
    "codewhisperer:completions",
    "codewhisperer:analysis",
    "codewhisperer:conversations",
]
DEVICE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
SLOW_DOWN_STEP = 5


def oidc_endpoint(region: str) -> str:
    """
    >>> oidc_endpoint("eu-west-1")
    'https://oidc.eu-west-1.amazonaws.com'
    """
    return f"https://oidc.{region}.amazonaws.com"


def credentials_from_oidc(data: dict, extra: dict, previous: Optional[Credentials] = None) -> Credentials:
    access_token = data.get("accessToken")
    if not access_token:
        raise ProviderError(ProviderKind.IDENTITY_CENTER.value, "Token response has no accessToken")
    return Credentials(
        access_token=access_token,
        refresh_token=data.get("refreshToken") or (previous.refresh_token if previous else None),
        expires_at=expires_at_from(data.get("expiresIn")),
        extra=extra,
    )


async def refresh_oidc_token(
    client: httpx.AsyncClient, credentials: Credentials, *, provider: str
) -> Credentials:
    """refresh_token grant against the account's OIDC region.

    Shared with direct imports of identity-center sessions.
    """
    extra = credentials.extra
    client_id = extra.get("client_id")
    client_secret = extra.get("client_secret")
    if not credentials.refresh_token:
        raise ProviderError(provider, "Account has no refresh token")
    if not client_id or not client_secret:
        raise ProviderError(provider, "Missing OIDC client registration for refresh")
    region = extra.get("region") or "us-east-1"
    try:
        resp = await client.post(
            f"{oidc_endpoint(region)}/token",
            json={
                "clientId": client_id,
                "clientSecret": client_secret,
                "grantType": "refresh_token",
                "refreshToken": credentials.refresh_token,
            },
        )
    except httpx.TimeoutException as exc:
        raise ProviderError(provider, "Timeout during token refresh", retriable=True) from exc
    except httpx.TransportError as exc:
        raise ProviderError(provider, f"Network error: {exc}", retriable=True) from exc
    if resp.status_code != 200:
        raise error_for_status(provider, resp.status_code, resp.text)
    data = parse_json_body(provider, resp)
    return credentials_from_oidc(data, dict(extra), previous=credentials)


class IdentityCenterClient(ProviderClient):
    """Device-authorization flow against AWS SSO OIDC (JSON bodies)."""

    kind = ProviderKind.IDENTITY_CENTER
    open_browser = staticmethod(webbrowser.open)

    def __init__(self, settings, *, transport=None, sleep=asyncio.sleep):
        super().__init__(settings, transport=transport)
        self._sleep = sleep

    async def _post_json(self, client: httpx.AsyncClient, url: str, body: dict) -> httpx.Response:
        return await self._send(client, "POST", url, json=body)

    async def begin(self, params: dict, correlation_token: str) -> AuthorizationHandle:
        start_url = params.get("start_url") or BUILDER_ID_START_URL
        region = params.get("region") or self.settings.idc_region
        base = oidc_endpoint(region)

        async with self._client() as client:
            resp = await self._post_json(
                client,
                f"{base}/client/register",
                {"clientName": CLIENT_NAME, "clientType": "public", "scopes": SCOPES},
            )
            if resp.status_code != 200:
                raise error_for_status(self.name, resp.status_code, resp.text)
            registration = parse_json_body(self.name, resp)
            client_id = registration.get("clientId")
            client_secret = registration.get("clientSecret")
            if not client_id or not client_secret:
                raise ProviderError(self.name, "Client registration returned no credentials")

            resp = await self._post_json(
                client,
                f"{base}/device_authorization",
                {"clientId": client_id, "clientSecret": client_secret, "startUrl": start_url},
            )
            if resp.status_code != 200:
                raise error_for_status(self.name, resp.status_code, resp.text)
            device = parse_json_body(self.name, resp)

        device_code = device.get("deviceCode")
        user_code = device.get("userCode")
        if not device_code or not user_code:
            raise ProviderError(self.name, "Device authorization returned no device code")
        verification_uri = device.get("verificationUriComplete") or device.get("verificationUri")

        if params.get("open_browser", True) and verification_uri:
            self.open_browser(verification_uri)
            logger.info("Opened browser for identity-center device login")

        try:
            interval = max(1, int(device.get("interval", self.settings.idc_poll_interval)))
        except (TypeError, ValueError):
            interval = self.settings.idc_poll_interval

        return AuthorizationHandle(
            kind=self.kind,
            correlation_token=correlation_token,
            user_code=user_code,
            verification_uri=verification_uri,
            interval=interval,
            expires_in=device.get("expiresIn"),
            params={
                "start_url": start_url,
                "region": region,
                "login_option": "builderid" if start_url == BUILDER_ID_START_URL else "enterprise",
            },
            state={
                "client_id": client_id,
                "client_secret": client_secret,
                "client_secret_expires_at": registration.get("clientSecretExpiresAt"),
                "device_code": device_code,
            },
        )

    async def finish(
        self, handle: AuthorizationHandle, callback_payload: Optional[dict]
    ) -> Credentials:
        """Poll until the user completes or denies, within idc_max_wait."""
        region = handle.params["region"]
        body = {
            "clientId": handle.state["client_id"],
            "clientSecret": handle.state["client_secret"],
            "grantType": DEVICE_GRANT,
            "deviceCode": handle.state["device_code"],
        }
        interval = handle.interval
        waited = 0
        started = time.monotonic()

        async with self._client() as client:
            while waited < self.settings.idc_max_wait:
                try:
                    resp = await self._post_json(client, f"{oidc_endpoint(region)}/token", body)
                except ProviderError as exc:
                    logger.warning("Device token poll failed (will retry): %s", exc)
                    await self._sleep(interval)
                    waited += interval
                    continue

                if resp.status_code == 200:
                    data = parse_json_body(self.name, resp)
                    logger.info(
                        "Identity-center login approved after %.0fs", time.monotonic() - started
                    )
                    return credentials_from_oidc(
                        data,
                        {
                            "auth_method": "IdC",
                            "region": region,
                            "start_url": handle.params["start_url"],
                            "client_id": handle.state["client_id"],
                            "client_secret": handle.state["client_secret"],
                            "client_secret_expires_at": handle.state.get("client_secret_expires_at"),
                        },
                    )

                error = ""
                if resp.status_code == 400:
                    try:
                        error = parse_json_body(self.name, resp).get("error", "")
                    except ProviderError:
                        error = ""

                if error == "authorization_pending":
                    pass
                elif error == "slow_down":
                    interval += SLOW_DOWN_STEP
                elif error == "access_denied":
                    raise ProviderError(self.name, "User denied the authorization request")
                elif error == "expired_token":
                    raise Expired("Device code expired before the user approved it")
                elif resp.status_code == 429 or resp.status_code >= 500:
                    logger.warning("Device token poll HTTP %d (will retry)", resp.status_code)
                else:
                    raise error_for_status(self.name, resp.status_code, resp.text)

                await self._sleep(interval)
                waited += interval

        raise ProviderError(
            self.name,
            f"Device login not completed within {self.settings.idc_max_wait}s",
            retriable=True,
        )

    async def refresh(self, credentials: Credentials) -> Credentials:
        async with self._client() as client:
            return await refresh_oidc_token(client, credentials, provider=self.name)
