"""Smithy rpc-v2-cbor calls against the Kiro web portal.

Request and response bodies are CBOR maps. A response that does not
decode to a map is a provider error, never an exception escaping as a
crash.

>>> decode_body("social", encode_body({"accessToken": "t", "expiresIn": 3600}))
{'accessToken': 't', 'expiresIn': 3600}
>>> decode_body("social", b"\\xff\\x00")
Traceback (most recent call last):
...
kiro_accounts.errors.ProviderError: social: Malformed CBOR response
"""

import logging
from typing import Optional

import cbor2
import httpx

from kiro_accounts.errors import ProviderError
from kiro_accounts.providers.base import error_for_status

logger = logging.getLogger(__name__)

CBOR_CONTENT_TYPE = "application/cbor"
SMITHY_PROTOCOL = "rpc-v2-cbor"


def encode_body(data: dict) -> bytes:
    return cbor2.dumps(data)


def decode_body(provider: str, raw: bytes) -> dict:
    """Decode a CBOR map; malformed or non-map payloads raise ProviderError."""
    try:
        data = cbor2.loads(raw)
    except (cbor2.CBORDecodeError, ValueError, EOFError, TypeError) as exc:
        logger.debug("CBOR decode failed for %s: %s", provider, exc)
        raise ProviderError(provider, "Malformed CBOR response") from None
    if not isinstance(data, dict):
        raise ProviderError(provider, "Malformed CBOR response")
    return data


def _error_message(provider: str, resp: httpx.Response) -> str:
    """Best-effort message from a CBOR error body (``__type``/``message``)."""
    try:
        body = decode_body(provider, resp.content) if resp.content else {}
    except ProviderError:
        return resp.text[:200] if resp.content else ""
    kind = str(body.get("__type", "")).rsplit("#", 1)[-1]
    message = body.get("message") or body.get("Message") or ""
    return f"{kind}: {message}".strip(": ")


async def call_operation(
    client: httpx.AsyncClient,
    endpoint: str,
    operation: str,
    body: dict,
    *,
    provider: str,
    access_token: Optional[str] = None,
) -> dict:
    """POST one rpc-v2-cbor operation and return the decoded response map."""
    headers = {
        "Content-Type": CBOR_CONTENT_TYPE,
        "Accept": CBOR_CONTENT_TYPE,
        "smithy-protocol": SMITHY_PROTOCOL,
    }
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"

    url = f"{endpoint.rstrip('/')}/{operation}"
    try:
        resp = await client.post(url, content=encode_body(body), headers=headers)
    except httpx.TimeoutException as exc:
        raise ProviderError(provider, f"Timeout calling {operation}", retriable=True) from exc
    except httpx.TransportError as exc:
        raise ProviderError(provider, f"Network error: {exc}", retriable=True) from exc

    if resp.status_code != 200:
        logger.warning("%s %s HTTP %d", provider, operation, resp.status_code)
        raise error_for_status(provider, resp.status_code, _error_message(provider, resp))
    return decode_body(provider, resp.content)
