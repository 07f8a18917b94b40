"""AccountStore: the durable collection of accounts.

Every mutation goes through a SQLite write transaction before the call
returns. Provider calls (refresh, verify, sync) run with no lock held:
the account is read, the provider is called, and the result is written
back with a compare-and-swap on the access token that was read, so a
concurrent delete or refresh is detected instead of overwritten.
"""

import asyncio
import concurrent.futures
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from kiro_accounts.config import Settings
from kiro_accounts.core.database import (
    Account,
    AccountStatus,
    Credentials,
    Database,
    ProviderKind,
)
from kiro_accounts.core.machine_guid import MachineGuidBinder
from kiro_accounts.core.token_recovery import write_token_recovery
from kiro_accounts.errors import (
    AccountNotFound,
    GuidConflict,
    InvalidFormat,
    KiroAccountsError,
    StoreIOError,
)
from kiro_accounts.providers.base import ProviderClient

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1
_UPDATE_ATTEMPTS = 3

# Fields a caller may change through update()
_PATCHABLE = frozenset(
    {"display_name", "email", "status", "subscription_type", "credentials", "last_error"}
)


def new_account_id() -> str:
    """
    >>> len(new_account_id())
    32
    """
    return uuid.uuid4().hex


class ImportReport(BaseModel):
    """Outcome of import_accounts(), one entry per input record."""

    imported: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)


def _changed_columns(before: Account, after: Account) -> dict:
    """Database columns for the fields update() may touch."""
    cols = {
        "display_name": after.display_name,
        "email": after.email,
        "status": after.status,
        "subscription_type": after.subscription_type,
        "last_error": after.last_error,
    }
    if after.credentials != before.credentials:
        cols.update(
            access_token=after.credentials.access_token,
            refresh_token=after.credentials.refresh_token,
            expires_at=after.credentials.expires_at,
            credential_extra=after.credentials.extra,
        )
    return cols


def _export_record(account: Account, redact: bool) -> dict:
    record = account.model_dump(mode="json", exclude={"credentials": {"is_expired"}})
    if redact:
        record["credentials"]["access_token"] = None
        record["credentials"]["refresh_token"] = None
        extra = record["credentials"].get("extra") or {}
        extra.pop("client_secret", None)
        record["credentials"]["extra"] = extra
    return record


def _import_record(raw: Any) -> Account:
    """Validate one exported record. Redacted tokens import as Invalid."""
    if not isinstance(raw, dict):
        raise InvalidFormat("Account record must be an object")
    record = dict(raw)
    creds = record.get("credentials") or {}
    if not isinstance(creds, dict):
        raise InvalidFormat("Account credentials must be an object")
    creds = dict(creds)
    redacted = not creds.get("access_token")
    creds["access_token"] = creds.get("access_token") or ""
    creds.pop("is_expired", None)
    record["credentials"] = creds
    if redacted:
        record["status"] = AccountStatus.INVALID.value
    record.setdefault("id", "")
    if not record["id"]:
        record["id"] = new_account_id()
    try:
        return Account.model_validate(record)
    except ValidationError as exc:
        raise InvalidFormat(f"Invalid account record: {exc.errors()[0]['msg']}")
    except (TypeError, ValueError) as exc:
        raise InvalidFormat(f"Invalid account record: {exc}")


class AccountStore:
    """Owns account CRUD, credential freshness and import/export.

    The SQLite writer lock is the store's exclusive lock; it is held only
    for the length of one transaction.
    """

    def __init__(
        self,
        db: Database,
        binder: MachineGuidBinder,
        providers: dict[ProviderKind, ProviderClient],
        settings: Settings,
    ):
        self.db = db
        self.binder = binder
        self.providers = providers
        self.settings = settings
        # account id -> refresh in flight; the lock only guards the dict
        self._refreshing: dict[str, concurrent.futures.Future] = {}
        self._refreshing_lock = threading.Lock()

    def _provider(self, account: Account) -> ProviderClient:
        return self.providers[account.provider]

    # -- reads -------------------------------------------------------------

    def list_accounts(self, ids: Optional[list[str]] = None) -> list[Account]:
        return self.db.list_accounts(ids)

    def get(self, account_id: str) -> Account:
        account = self.db.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    # -- CRUD --------------------------------------------------------------

    def add(self, account: Account) -> Account:
        """Persist a new account, generating an id if it has none.

        A ``bound_machine_id`` on the incoming account is bound after the
        insert; if that id belongs to someone else the insert is undone
        and GuidConflict raised.
        """
        if not account.id:
            account = account.model_copy(update={"id": new_account_id()})
        machine_id = account.bound_machine_id
        if machine_id:
            owner = self.binder.bound_account_for(machine_id)
            if owner is not None:
                raise GuidConflict(f"Machine id {machine_id} is already bound to account {owner}")

        stored = self.db.insert_account(account)
        if machine_id:
            try:
                self.binder.bind(stored.id, machine_id)
            except KiroAccountsError:
                self.db.delete_accounts([stored.id])
                raise
            stored = self.get(stored.id)
        logger.info("Added %s account %s", stored.provider.value, stored.id)
        return stored

    def update(self, account_id: str, patch: dict) -> Account:
        """Apply a partial update.

        ``bound_machine_id`` in the patch binds (or, with None, unbinds)
        through the binder; other keys must be patchable fields.
        """
        patch = dict(patch)
        binding_change = "bound_machine_id" in patch
        machine_id = patch.pop("bound_machine_id", None)
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise InvalidFormat(f"Fields cannot be updated: {sorted(unknown)}")

        for _ in range(_UPDATE_ATTEMPTS if patch else 0):
            current = self.get(account_id)
            merged = current.model_dump(exclude={"credentials": {"is_expired"}})
            for key, value in patch.items():
                if key == "credentials" and isinstance(value, dict):
                    merged["credentials"] = {**merged["credentials"], **value}
                else:
                    merged[key] = value
            try:
                updated = Account.model_validate(merged)
            except ValidationError as exc:
                raise InvalidFormat(f"Invalid update: {exc.errors()[0]['msg']}")
            if self.db.update_account(
                account_id,
                expect_access_token=current.credentials.access_token,
                **_changed_columns(current, updated),
            ):
                break
        else:
            if patch:
                raise StoreIOError(f"Account {account_id} kept changing; update abandoned")
            self.get(account_id)

        if binding_change:
            if machine_id:
                self.binder.bind(account_id, machine_id)
            else:
                self.binder.unbind(account_id)
        return self.get(account_id)

    def rename(self, account_id: str, display_name: str) -> Account:
        return self.update(account_id, {"display_name": display_name})

    def delete(self, account_id: str) -> None:
        """Unbind then remove. Raises AccountNotFound for unknown ids."""
        self.get(account_id)
        self.binder.unbind(account_id)
        if self.db.delete_accounts([account_id]) == 0:
            raise AccountNotFound(f"Account {account_id} not found")
        logger.info("Deleted account %s", account_id)

    def delete_many(self, account_ids: list[str]) -> int:
        """Remove several accounts in one transaction. Unknown ids are ignored."""
        for account_id in account_ids:
            self.binder.unbind(account_id)
        removed = self.db.delete_accounts(list(account_ids))
        logger.info("Deleted %d of %d accounts", removed, len(account_ids))
        return removed

    # -- machine-id helpers ------------------------------------------------

    def bind_current_machine(self, account_id: str) -> str:
        """Bind the system's current machine id to an account."""
        self.get(account_id)
        machine_id = self.binder.current()
        self.binder.bind(account_id, machine_id)
        return machine_id

    # -- provider-backed operations ---------------------------------------

    async def refresh(self, account_id: str, *, force: bool = False) -> Account:
        """Exchange the refresh token for a new access token.

        A token valid past the grace window is left alone unless
        ``force``. A failed exchange leaves the stored record as it was.
        Concurrent refreshes of one account share a single exchange, so a
        rotated refresh token is never spent twice.
        """
        with self._refreshing_lock:
            running = self._refreshing.get(account_id)
            if running is None:
                mine = concurrent.futures.Future()
                self._refreshing[account_id] = mine
        if running is not None:
            logger.debug("Account %s refresh already running, joining it", account_id)
            return await asyncio.shield(asyncio.wrap_future(running))

        try:
            account = await self._refresh_once(account_id, force)
        except Exception as exc:
            mine.set_exception(exc)
            raise
        else:
            mine.set_result(account)
            return account
        finally:
            with self._refreshing_lock:
                self._refreshing.pop(account_id, None)
            if not mine.done():
                mine.cancel()

    async def _refresh_once(self, account_id: str, force: bool) -> Account:
        account = self.get(account_id)
        old = account.credentials
        if not force and not old.expires_within(self.settings.refresh_grace_seconds):
            logger.debug("Account %s token still fresh, refresh skipped", account_id)
            return account

        new = await self._provider(account).refresh(old)

        try:
            swapped = self.db.update_account(
                account_id,
                expect_access_token=old.access_token,
                access_token=new.access_token,
                refresh_token=new.refresh_token,
                expires_at=new.expires_at,
                credential_extra=new.extra,
                status=AccountStatus.ACTIVE,
                last_error=None,
            )
        except StoreIOError:
            write_token_recovery(self.settings.token_recovery_path, account_id, new)
            raise

        if not swapped:
            current = self.db.get_account(account_id)
            if current is None:
                raise AccountNotFound(f"Account {account_id} was deleted during refresh")
            logger.warning(
                "Account %s changed during refresh; keeping stored token %s",
                account_id, current.credentials.fingerprint(),
            )
            return current

        logger.info("Refreshed account %s (%s)", account_id, new.fingerprint())
        return self.get(account_id)

    async def verify(self, account_id: str) -> Account:
        """Probe the provider. Only status and last_verified_at change."""
        account = self.get(account_id)
        status = await self._provider(account).verify(account.credentials)
        swapped = self.db.update_account(
            account_id,
            expect_access_token=account.credentials.access_token,
            status=status,
            last_verified_at=int(time.time()),
        )
        if not swapped:
            return self.get(account_id)
        logger.info("Verified account %s: %s", account_id, status.value)
        return self.get(account_id)

    async def sync(self, account_id: str) -> Account:
        """Re-fetch status and profile from the provider. Tokens are untouched."""
        account = self.get(account_id)
        client = self._provider(account)
        status = await client.verify(account.credentials)
        updates: dict[str, Any] = {
            "status": status,
            "last_verified_at": int(time.time()),
        }
        if status == AccountStatus.ACTIVE:
            profile = await client.fetch_profile(account.credentials)
            updates.update(
                email=profile.email or account.email,
                subscription_type=profile.subscription_type,
                usage_current=profile.usage_current,
                usage_limit=profile.usage_limit,
                last_error=None,
            )
            if not account.display_name and profile.display_name:
                updates["display_name"] = profile.display_name
        self.db.update_account(
            account_id, expect_access_token=account.credentials.access_token, **updates
        )
        return self.get(account_id)

    # -- import / export ---------------------------------------------------

    def export_accounts(
        self, ids: Optional[list[str]] = None, *, redact: Optional[bool] = None
    ) -> dict:
        """Serialize accounts (all, or a subset) into an export document."""
        if redact is None:
            redact = self.settings.export_redact
        accounts = self.db.list_accounts(ids)
        return {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "redacted": redact,
            "accounts": [_export_record(a, redact) for a in accounts],
        }

    def import_accounts(
        self, document: Union[dict, str, bytes], *, overwrite: bool = False
    ) -> ImportReport:
        """Merge an export document into the store by id.

        Existing ids are replaced only with ``overwrite``; otherwise they
        are skipped and reported. Bad records are reported, not fatal.
        """
        if not isinstance(document, dict):
            try:
                document = json.loads(document)
            except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as exc:
                raise InvalidFormat(f"Import document is not valid JSON: {exc}")
        if not isinstance(document, dict) or not isinstance(document.get("accounts"), list):
            raise InvalidFormat("Import document must contain an 'accounts' list")
        version = document.get("version", EXPORT_VERSION)
        if version != EXPORT_VERSION:
            raise InvalidFormat(f"Unsupported export version: {version}")

        report = ImportReport()
        for index, raw in enumerate(document["accounts"]):
            try:
                account = _import_record(raw)
            except InvalidFormat as exc:
                report.errors.append({"index": index, "error": exc.message})
                continue

            machine_id = account.bound_machine_id
            account = account.model_copy(update={"bound_machine_id": None})
            if self.db.get_account(account.id) is not None:
                if not overwrite:
                    report.skipped.append(account.id)
                    continue
                self.db.replace_account(account)
                report.updated.append(account.id)
            else:
                self.db.insert_account(account)
                report.imported.append(account.id)

            if machine_id:
                try:
                    self.binder.bind(account.id, machine_id)
                except (GuidConflict, InvalidFormat) as exc:
                    report.errors.append({"index": index, "id": account.id, "error": exc.message})

        logger.info(
            "Import: %d new, %d updated, %d skipped, %d errors",
            len(report.imported), len(report.updated), len(report.skipped), len(report.errors),
        )
        return report


def account_from_credentials(
    provider: ProviderKind,
    credentials: Credentials,
    *,
    status: AccountStatus = AccountStatus.ACTIVE,
    display_name: str = "",
    email: Optional[str] = None,
) -> Account:
    """A fresh, unsaved Account with a new id."""
    return Account(
        id=new_account_id(),
        provider=provider,
        display_name=display_name or email or "",
        email=email,
        credentials=credentials,
        status=status,
        last_verified_at=int(time.time()),
    )
