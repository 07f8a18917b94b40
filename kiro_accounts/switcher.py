"""Make a stored account the one the local Kiro IDE signs in with.

Switching writes the account's tokens into the IDE's session file
(``~/.aws/sso/cache/kiro-auth-token.json``) and, for accounts bound to a
machine id, points the system machine id at the bound value. The machine
id the host had before the first switch is kept as a backup so logout can
put it back.
"""

import logging
from pathlib import Path
from typing import Optional

from kiro_accounts.config import Settings
from kiro_accounts.core.database import Account, AccountStatus
from kiro_accounts.core.machine_guid import MachineGuidBinder
from kiro_accounts.core.store import AccountStore
from kiro_accounts.errors import AccountNotFound, InvalidFormat, ProviderError, StoreIOError
from kiro_accounts.file_helpers import read_json, safe_remove
from kiro_accounts.providers.local_token import write_local_token

logger = logging.getLogger(__name__)


def resolve_account(account_ref: str, store: AccountStore) -> Account:
    """Resolve an id, a unique id prefix, or an email to one account."""
    ref = (account_ref or "").strip()
    if not ref:
        raise AccountNotFound("No account given")

    accounts = store.list_accounts()
    if "@" in ref:
        matches = [a for a in accounts if (a.email or "").lower() == ref.lower()]
    else:
        matches = [a for a in accounts if a.id == ref] or [
            a for a in accounts if a.id.startswith(ref)
        ]
    if not matches:
        raise AccountNotFound(f"No account matches {ref!r}")
    if len(matches) > 1:
        raise InvalidFormat(
            f"{ref!r} matches {len(matches)} accounts; use the full id"
        )
    return matches[0]


class AccountSwitcher:
    def __init__(self, store: AccountStore, binder: MachineGuidBinder, settings: Settings):
        self.store = store
        self.binder = binder
        self.settings = settings

    @property
    def token_path(self) -> Path:
        return Path(self.settings.ide_token_path)

    async def switch(self, account_id: str) -> dict:
        account = self.store.get(account_id)
        if account.status == AccountStatus.INVALID or not account.credentials.access_token:
            raise InvalidFormat(f"Account {account_id} has no usable token; log in again")

        if account.credentials.expires_within(self.settings.refresh_grace_seconds):
            try:
                account = await self.store.refresh(account_id)
            except ProviderError as exc:
                logger.warning("Pre-switch token refresh failed: %s", exc)
                if account.credentials.is_expired:
                    raise

        try:
            write_local_token(self.token_path, account.credentials)
        except OSError as exc:
            raise StoreIOError(f"Cannot write IDE session file: {exc}") from exc

        machine_id = account.bound_machine_id
        if machine_id:
            if self.binder.get_backup() is None:
                self.binder.backup()
            if self.binder.current() != machine_id:
                self.binder.set_custom(machine_id)

        logger.info("Switched IDE session to account %s", account_id)
        return {
            "account_id": account_id,
            "token_path": str(self.token_path),
            "machine_id": machine_id,
        }

    def current(self) -> Optional[Account]:
        """The stored account whose tokens are in the IDE session file."""
        doc = read_json(self.token_path)
        if not doc:
            return None
        access_token = doc.get("accessToken")
        refresh_token = doc.get("refreshToken")
        accounts = self.store.list_accounts()
        # The IDE may have refreshed on its own, so fall back to the refresh token
        for account in accounts:
            if access_token and account.credentials.access_token == access_token:
                return account
        for account in accounts:
            if refresh_token and account.credentials.refresh_token == refresh_token:
                return account
        return None

    def logout(self) -> dict:
        """Remove the IDE session and put back the backed-up machine id."""
        removed = safe_remove(self.token_path)
        restored = None
        if self.binder.get_backup() is not None:
            restored = self.binder.restore()
        logger.info("Logged out of IDE session (token removed: %s)", removed)
        return {"token_removed": removed, "restored_machine_id": restored}
