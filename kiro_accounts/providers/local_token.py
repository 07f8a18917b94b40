"""Read and write the Kiro IDE's own session file.

The IDE keeps its session in ``~/.aws/sso/cache/kiro-auth-token.json``:

    {"accessToken": "...", "refreshToken": "...",
     "expiresAt": "2025-06-01T12:00:00.000Z", "authMethod": "social",
     "provider": "Github", "profileArn": "...", "region": "us-east-1",
     "clientIdHash": "..."}

Identity-center sessions also have ``<clientIdHash>.json`` next to it with
the OIDC client registration (clientId / clientSecret).
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from kiro_accounts.core.database import Credentials
from kiro_accounts.errors import InvalidFormat
from kiro_accounts.file_helpers import read_json, write_json_atomic

logger = logging.getLogger(__name__)


def parse_expires_at(value) -> int:
    """UNIX seconds from an ISO-8601 string, epoch seconds or epoch ms.

    >>> parse_expires_at("2030-01-01T00:00:00.000Z")
    1893456000
    >>> parse_expires_at(1893456000000)
    1893456000
    >>> parse_expires_at("soon")
    Traceback (most recent call last):
    ...
    kiro_accounts.errors.InvalidFormat: Unreadable expiresAt: 'soon'
    """
    if isinstance(value, bool):
        raise InvalidFormat(f"Unreadable expiresAt: {value!r}")
    if isinstance(value, (int, float)):
        # Millisecond timestamps are 13 digits
        return int(value // 1000) if value > 10_000_000_000 else int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidFormat(f"Unreadable expiresAt: {value!r}")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    raise InvalidFormat(f"Unreadable expiresAt: {value!r}")


def format_expires_at(expires_at: int) -> str:
    """
    >>> format_expires_at(1893456000)
    '2030-01-01T00:00:00.000Z'
    """
    dt = datetime.fromtimestamp(expires_at, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def load_token_document(source: Union[dict, str, bytes]) -> dict:
    """Accept a token document as a dict or JSON text."""
    if isinstance(source, dict):
        return source
    try:
        data = json.loads(source)
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as exc:
        raise InvalidFormat(f"Token document is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise InvalidFormat("Token document must be a JSON object")
    return data


def credentials_from_document(doc: dict) -> Credentials:
    """Validate and normalize an IDE-style token document.

    >>> c = credentials_from_document({"accessToken": "at", "refreshToken": "rt",
    ...     "expiresAt": "2030-01-01T00:00:00Z", "authMethod": "IdC", "region": "eu-west-1"})
    >>> c.extra["auth_method"], c.extra["region"], c.expires_at
    ('IdC', 'eu-west-1', 1893456000)
    >>> credentials_from_document({"refreshToken": "rt"})
    Traceback (most recent call last):
    ...
    kiro_accounts.errors.InvalidFormat: Token document has no accessToken
    """
    access_token = doc.get("accessToken")
    if not access_token or not isinstance(access_token, str):
        raise InvalidFormat("Token document has no accessToken")
    refresh_token = doc.get("refreshToken")
    if refresh_token is not None and not isinstance(refresh_token, str):
        raise InvalidFormat("refreshToken must be a string")
    if "expiresAt" not in doc:
        raise InvalidFormat("Token document has no expiresAt")

    auth_method = str(doc.get("authMethod") or "social")
    if auth_method.lower() == "idc":
        auth_method = "IdC"
    elif auth_method.lower() == "social":
        auth_method = "social"
    else:
        raise InvalidFormat(f"Unknown authMethod: {auth_method}")

    extra = {"auth_method": auth_method}
    for key, target in (
        ("provider", "idp"),
        ("profileArn", "profile_arn"),
        ("region", "region"),
        ("clientIdHash", "client_id_hash"),
        ("clientId", "client_id"),
        ("clientSecret", "client_secret"),
        ("startUrl", "start_url"),
    ):
        if doc.get(key):
            extra[target] = doc[key]

    return Credentials(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=parse_expires_at(doc["expiresAt"]),
        extra=extra,
    )


def document_from_credentials(credentials: Credentials) -> dict:
    """Inverse of credentials_from_document, for writing the IDE session."""
    extra = credentials.extra
    doc = {
        "accessToken": credentials.access_token,
        "refreshToken": credentials.refresh_token,
        "expiresAt": format_expires_at(credentials.expires_at),
        "authMethod": extra.get("auth_method", "social"),
        "provider": extra.get("idp") or ("BuilderId" if extra.get("auth_method") == "IdC" else "Google"),
    }
    for key, source in (
        ("profileArn", "profile_arn"),
        ("region", "region"),
        ("clientIdHash", "client_id_hash"),
        ("startUrl", "start_url"),
    ):
        if extra.get(source):
            doc[key] = extra[source]
    return doc


def attach_client_registration(credentials: Credentials, cache_dir: Path) -> Credentials:
    """Fill client id/secret from ``<clientIdHash>.json`` if the doc lacked them."""
    extra = credentials.extra
    if extra.get("client_id") or not extra.get("client_id_hash"):
        return credentials
    reg = read_json(Path(cache_dir) / f"{extra['client_id_hash']}.json")
    if not reg:
        logger.debug("No client registration found for hash %s", extra["client_id_hash"])
        return credentials
    merged = dict(extra)
    if reg.get("clientId"):
        merged["client_id"] = reg["clientId"]
    if reg.get("clientSecret"):
        merged["client_secret"] = reg["clientSecret"]
    return credentials.model_copy(update={"extra": merged})


def read_local_token(path: Path) -> Optional[Credentials]:
    """Credentials from the IDE session file, or None if absent/unusable."""
    doc = read_json(path)
    if doc is None:
        return None
    try:
        creds = credentials_from_document(doc)
    except InvalidFormat as exc:
        logger.warning("IDE session file %s is unusable: %s", path, exc)
        return None
    return attach_client_registration(creds, Path(path).parent)


def write_local_token(path: Path, credentials: Credentials) -> float:
    """Replace the IDE session file atomically. Returns the new mtime."""
    return write_json_atomic(
        path, document_from_credentials(credentials), prefix=".kiro-auth-token_tmp_"
    )
