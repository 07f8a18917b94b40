"""Direct import of an externally issued Kiro session.

No interactive step: begin() validates and normalizes the supplied token
document (dict, JSON text, or the IDE's own session file) and finish()
hands the normalized credentials back. The login machinery still runs
verify() on them before the account can be Active.

Refresh follows the session's original auth method: the social
``/refreshToken`` endpoint (JSON) or the identity-center OIDC grant.
"""

import logging
from pathlib import Path
from typing import Optional

from kiro_accounts.core.database import Credentials, ProviderKind
from kiro_accounts.errors import InvalidFormat, ProviderError
from kiro_accounts.providers.base import (
    AuthorizationHandle,
    ProviderClient,
    error_for_status,
    parse_json_body,
)
from kiro_accounts.providers.identity_center import refresh_oidc_token
from kiro_accounts.providers.local_token import (
    attach_client_registration,
    credentials_from_document,
    load_token_document,
    read_local_token,
)
from kiro_accounts.providers.social import credentials_from_token_response

logger = logging.getLogger(__name__)


class DirectImportClient(ProviderClient):
    """Validates tokens handed over by the caller or read from the IDE."""

    kind = ProviderKind.DIRECT_IMPORT

    def normalize(self, params: dict) -> Credentials:
        """Credentials from ``params["token"]`` or, with ``source="local"``,
        from the IDE session file."""
        if params.get("source") == "local":
            path = Path(params.get("path") or self.settings.ide_token_path)
            creds = read_local_token(path)
            if creds is None:
                raise InvalidFormat(f"No usable Kiro session found at {path}")
            return creds

        token = params.get("token")
        if token is None:
            raise InvalidFormat("Direct import needs a token document")
        creds = credentials_from_document(load_token_document(token))
        cache_dir = params.get("cache_dir") or Path(self.settings.ide_token_path).parent
        return attach_client_registration(creds, Path(cache_dir))

    async def begin(self, params: dict, correlation_token: str) -> AuthorizationHandle:
        creds = self.normalize(params)
        logger.info("Validated imported %s session (%s)",
                    creds.extra.get("auth_method"), creds.fingerprint())
        return AuthorizationHandle(
            kind=self.kind,
            correlation_token=correlation_token,
            params={"source": params.get("source", "document")},
            state={"credentials": creds},
        )

    async def finish(
        self, handle: AuthorizationHandle, callback_payload: Optional[dict]
    ) -> Credentials:
        creds = handle.state.get("credentials")
        if not isinstance(creds, Credentials):
            raise InvalidFormat("Import handle carries no credentials")
        return creds

    async def refresh(self, credentials: Credentials) -> Credentials:
        if not credentials.refresh_token:
            raise ProviderError(self.name, "Imported session has no refresh token")
        auth_method = credentials.extra.get("auth_method", "social")
        async with self._client() as client:
            if auth_method == "IdC":
                return await refresh_oidc_token(client, credentials, provider=self.name)

            resp = await self._send(
                client,
                "POST",
                f"{self.settings.social_auth_endpoint.rstrip('/')}/refreshToken",
                json={"refreshToken": credentials.refresh_token},
            )
            if resp.status_code != 200:
                raise error_for_status(self.name, resp.status_code, resp.text)
            data = parse_json_body(self.name, resp)
        return credentials_from_token_response(
            self.name,
            data,
            idp=credentials.extra.get("idp", "Google"),
            previous=credentials,
        )
