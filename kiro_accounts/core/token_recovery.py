"""Crash-safe persistence of refreshed tokens.

Refresh tokens may rotate: once the provider has handed out a new pair,
the old refresh token is dead. If the database write that should store
the new pair fails, the tokens are written to a recovery file
(``<data_dir>/.token_recovery.json``) so they survive a crash. On next
startup, apply_token_recovery() reads it and patches the account.
"""

import logging
import time
from pathlib import Path

from kiro_accounts.core.database import AccountStatus, Credentials, Database
from kiro_accounts.errors import KiroAccountsError
from kiro_accounts.file_helpers import read_json, safe_remove, write_json_atomic

logger = logging.getLogger(__name__)

# Recovery files older than this are ignored
STALE_AFTER = 3600


def write_token_recovery(path: Path, account_id: str, credentials: Credentials) -> bool:
    """Write tokens to the recovery file after a database update failure.

    Returns True on success, False on failure.
    """
    recovery_data = {
        "account_id": account_id,
        "access_token": credentials.access_token,
        "refresh_token": credentials.refresh_token,
        "expires_at": credentials.expires_at,
        "extra": credentials.extra,
        "written_at": int(time.time()),
    }
    try:
        write_json_atomic(path, recovery_data, prefix=".token_recovery_tmp_")
    except OSError as exc:
        logger.error("Failed to write token recovery file: %s", exc)
        return False
    logger.warning(
        "Wrote token recovery file for account %s (DB update failed)", account_id
    )
    return True


def apply_token_recovery(db: Database, path: Path) -> bool:
    """Apply the recovery file to the database if it exists, then delete it.

    Returns True if recovery was applied.
    """
    data = read_json(path)
    if data is None:
        return False

    account_id = data.get("account_id")
    access_token = data.get("access_token")
    if not account_id or not access_token:
        logger.warning("Token recovery file is incomplete, removing")
        safe_remove(path)
        return False

    written_at = data.get("written_at", 0)
    if time.time() - written_at > STALE_AFTER:
        logger.warning(
            "Token recovery file is stale (%ds old), removing",
            int(time.time() - written_at),
        )
        safe_remove(path)
        return False

    if db.get_account(account_id) is None:
        logger.warning(
            "Token recovery: account %s not found, removing recovery file", account_id
        )
        safe_remove(path)
        return False

    updates = {
        "access_token": access_token,
        "status": AccountStatus.ACTIVE,
        "last_verified_at": int(time.time()),
        "last_error": None,
    }
    if data.get("refresh_token"):
        updates["refresh_token"] = data["refresh_token"]
    if data.get("expires_at"):
        updates["expires_at"] = int(data["expires_at"])
    if isinstance(data.get("extra"), dict):
        updates["credential_extra"] = data["extra"]
    try:
        db.update_account(account_id, **updates)
    except KiroAccountsError as exc:
        logger.error("Failed to apply token recovery for account %s: %s", account_id, exc)
        return False

    logger.info("Applied token recovery for account %s", account_id)
    safe_remove(path)
    return True
