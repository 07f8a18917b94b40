"""Social login (Google / Github) through the Kiro auth service.

Authorization-code flow with PKCE:
1. begin() builds the login URL carrying the correlation token as
   ``state`` and the kiro:// redirect, and opens the browser
2. The redirect comes back through the deep-link router
3. finish() trades the ``code`` from the callback for tokens

Token exchange, refresh and user lookup go to the web portal as
rpc-v2-cbor operations (see cbor_rpc.py).
"""

import logging
import webbrowser
from typing import Optional
from urllib.parse import urlencode

from kiro_accounts.core.database import Credentials, ProviderKind
from kiro_accounts.errors import InvalidFormat, ProviderError
from kiro_accounts.providers.base import (
    AuthorizationHandle,
    ProfileInfo,
    ProviderClient,
    expires_at_from,
    generate_pkce,
)
from kiro_accounts.providers.cbor_rpc import call_operation

logger = logging.getLogger(__name__)

SOCIAL_IDPS = ("Google", "Github")
DEFAULT_EXPIRES_IN = 3600


def normalize_idp(idp: Optional[str]) -> str:
    """Canonical identity-provider name.

    >>> normalize_idp("github")
    'Github'
    >>> normalize_idp(None)
    'Google'
    >>> normalize_idp("facebook")
    Traceback (most recent call last):
    ...
    kiro_accounts.errors.InvalidFormat: Unsupported social provider: facebook
    """
    if not idp:
        return SOCIAL_IDPS[0]
    for known in SOCIAL_IDPS:
        if known.lower() == idp.lower():
            return known
    raise InvalidFormat(f"Unsupported social provider: {idp}")


def credentials_from_token_response(
    provider: str, data: dict, *, idp: str, previous: Optional[Credentials] = None
) -> Credentials:
    """Normalize a token map into Credentials.

    A response without a refresh token keeps the previous one (no rotation).
    """
    access_token = data.get("accessToken")
    if not access_token or not isinstance(access_token, str):
        raise ProviderError(provider, "Token response has no accessToken")
    extra = dict(previous.extra) if previous else {}
    extra["auth_method"] = "social"
    extra["idp"] = idp
    if data.get("profileArn"):
        extra["profile_arn"] = data["profileArn"]
    refresh_token = data.get("refreshToken") or (previous.refresh_token if previous else None)
    return Credentials(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at_from(data.get("expiresIn"), DEFAULT_EXPIRES_IN),
        extra=extra,
    )


class SocialLoginClient(ProviderClient):
    """Authorization-code exchange with CBOR-encoded token calls."""

    kind = ProviderKind.SOCIAL_LOGIN
    open_browser = staticmethod(webbrowser.open)

    async def begin(self, params: dict, correlation_token: str) -> AuthorizationHandle:
        idp = normalize_idp(params.get("idp"))
        verifier, challenge = generate_pkce()
        redirect_uri = params.get("redirect_uri") or self.settings.redirect_uri
        query = {
            "idp": idp,
            "redirect_uri": redirect_uri,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": correlation_token,
        }
        authorize_url = f"{self.settings.social_auth_endpoint.rstrip('/')}/login?{urlencode(query)}"

        if params.get("open_browser", True):
            self.open_browser(authorize_url)
            logger.info("Opened browser for %s login", idp)

        return AuthorizationHandle(
            kind=self.kind,
            correlation_token=correlation_token,
            authorize_url=authorize_url,
            params={"idp": idp},
            state={"code_verifier": verifier, "redirect_uri": redirect_uri},
        )

    async def finish(
        self, handle: AuthorizationHandle, callback_payload: Optional[dict]
    ) -> Credentials:
        payload = callback_payload or {}
        error = payload.get("error")
        if error:
            desc = payload.get("error_description", "")
            raise ProviderError(self.name, f"{error}: {desc}" if desc else error)
        code = payload.get("code")
        if not code:
            raise InvalidFormat("Callback carries no authorization code")

        idp = handle.params.get("idp", SOCIAL_IDPS[0])
        async with self._client() as client:
            data = await call_operation(
                client,
                self.settings.web_portal_endpoint,
                "ExchangeToken",
                {
                    "code": code,
                    "codeVerifier": handle.state["code_verifier"],
                    "redirectUri": handle.state["redirect_uri"],
                    "idp": idp,
                },
                provider=self.name,
            )
        creds = credentials_from_token_response(self.name, data, idp=idp)
        logger.info("Token exchange successful for %s login (%s)", idp, creds.fingerprint())
        return creds

    async def refresh(self, credentials: Credentials) -> Credentials:
        if not credentials.refresh_token:
            raise ProviderError(self.name, "Account has no refresh token")
        async with self._client() as client:
            data = await call_operation(
                client,
                self.settings.web_portal_endpoint,
                "RefreshToken",
                {"refreshToken": credentials.refresh_token},
                provider=self.name,
            )
        return credentials_from_token_response(
            self.name,
            data,
            idp=credentials.extra.get("idp", SOCIAL_IDPS[0]),
            previous=credentials,
        )

    async def fetch_profile(self, credentials: Credentials) -> ProfileInfo:
        profile = await super().fetch_profile(credentials)
        async with self._client(timeout=15.0) as client:
            try:
                info = await call_operation(
                    client,
                    self.settings.web_portal_endpoint,
                    "GetUserInfo",
                    {},
                    provider=self.name,
                    access_token=credentials.access_token,
                )
            except ProviderError as exc:
                logger.warning("User info lookup failed: %s", exc)
                return profile
        profile.email = info.get("email") or profile.email
        profile.display_name = info.get("displayName") or profile.display_name or profile.email
        return profile
