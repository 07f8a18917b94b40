"""SQLite persistence for accounts, machine-id bindings and settings.

3 tables:
- accounts:          one row per stored identity (tokens included)
- machine_bindings:  machine id <-> account id, 1:1 in both directions
- settings:          small key/value records (captured factory machine id)

``Account.bound_machine_id`` is never stored on the account row; it is read
through the bindings table so both sides of the binding come from one
record. WAL mode for concurrent reads, single writer lock for atomic writes.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel, Field, computed_field, model_validator

from kiro_accounts.errors import (
    AccountNotFound,
    DuplicateAccount,
    GuidConflict,
    StoreIOError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic v2 Models
# ---------------------------------------------------------------------------


class ProviderKind(str, Enum):
    """The closed set of identity providers."""

    SOCIAL_LOGIN = "social"
    IDENTITY_CENTER = "identity_center"
    DIRECT_IMPORT = "direct_import"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    INVALID = "invalid"


class Credentials(BaseModel):
    """Normalized token set produced by every provider client.

    ``extra`` holds provider-specific refresh material (OIDC client id and
    secret, region, profile ARN, auth method).

    >>> Credentials(access_token="a", expires_at=0).is_expired
    True
    >>> Credentials(access_token="a", expires_at=9999999999).expires_within(300)
    False
    """

    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: int = 0
    extra: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def is_expired(self) -> bool:
        return int(time.time()) >= self.expires_at

    def expires_within(self, seconds: int, now: Optional[float] = None) -> bool:
        """True if the token is expired or will be within ``seconds``."""
        now = time.time() if now is None else now
        return now > self.expires_at - seconds

    def fingerprint(self) -> str:
        """Short, log-safe token identifier.

        >>> Credentials(access_token="aoaAAAAAGh1234567890").fingerprint()
        '…567890'
        >>> Credentials().fingerprint()
        '<empty>'
        """
        if not self.access_token:
            return "<empty>"
        return "…" + self.access_token[-6:]


class Account(BaseModel):
    """Pydantic v2 model for a stored identity."""

    id: str
    provider: ProviderKind
    display_name: str = ""
    email: Optional[str] = None
    credentials: Credentials = Field(default_factory=Credentials)
    bound_machine_id: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    last_verified_at: Optional[int] = None
    subscription_type: Optional[str] = None
    usage_current: Optional[float] = None
    usage_limit: Optional[float] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @model_validator(mode="after")
    def _active_requires_token(self) -> "Account":
        if self.status == AccountStatus.ACTIVE and not self.credentials.access_token:
            raise ValueError("an active account must carry a non-empty access token")
        return self


# ---------------------------------------------------------------------------
# Schema SQL
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    display_name TEXT NOT NULL DEFAULT '',
    email TEXT,
    access_token TEXT NOT NULL DEFAULT '',
    refresh_token TEXT,
    expires_at INTEGER NOT NULL DEFAULT 0,
    credential_extra TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    last_verified_at INTEGER,
    subscription_type TEXT,
    usage_current REAL,
    usage_limit REAL,
    last_error TEXT,
    created_at TEXT,
    updated_at TEXT,
    CHECK (status != 'active' OR access_token != '')
);

-- One row per binding. PRIMARY KEY and UNIQUE make the binding 1:1;
-- deleting an account drops its binding with it.
CREATE TABLE IF NOT EXISTS machine_bindings (
    machine_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL UNIQUE REFERENCES accounts(id) ON DELETE CASCADE,
    bound_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_accounts_provider ON accounts(provider);
CREATE INDEX IF NOT EXISTS idx_accounts_email ON accounts(email);
"""

_ACCOUNT_SELECT = """
SELECT a.*, b.machine_id AS bound_machine_id
FROM accounts a
LEFT JOIN machine_bindings b ON b.account_id = a.id
"""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_account(row: sqlite3.Row) -> Account:
    extra: dict = {}
    if row["credential_extra"]:
        try:
            parsed = json.loads(row["credential_extra"])
            if isinstance(parsed, dict):
                extra = parsed
        except (json.JSONDecodeError, TypeError):
            logger.warning("Account %s has unreadable credential metadata", row["id"])
    return Account(
        id=row["id"],
        provider=ProviderKind(row["provider"]),
        display_name=row["display_name"] or "",
        email=row["email"],
        credentials=Credentials(
            access_token=row["access_token"] or "",
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"] or 0,
            extra=extra,
        ),
        bound_machine_id=row["bound_machine_id"],
        status=AccountStatus(row["status"]),
        last_verified_at=row["last_verified_at"],
        subscription_type=row["subscription_type"],
        usage_current=row["usage_current"],
        usage_limit=row["usage_limit"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _account_columns(account: Account) -> dict:
    creds = account.credentials
    return {
        "id": account.id,
        "provider": account.provider.value,
        "display_name": account.display_name,
        "email": account.email,
        "access_token": creds.access_token,
        "refresh_token": creds.refresh_token,
        "expires_at": creds.expires_at,
        "credential_extra": json.dumps(creds.extra) if creds.extra else None,
        "status": account.status.value,
        "last_verified_at": account.last_verified_at,
        "subscription_type": account.subscription_type,
        "usage_current": account.usage_current,
        "usage_limit": account.usage_limit,
        "last_error": account.last_error,
    }


def _default_db_path() -> str:
    """Return default database path: ~/.kiro-accounts/accounts.db"""
    return str(Path.home() / ".kiro-accounts" / "accounts.db")


class Database:
    """SQLite database manager with WAL mode and thread-safe writes.

    >>> db = Database(":memory:")
    >>> db.db_path
    ':memory:'
    >>> db.list_accounts()
    []
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = _default_db_path()

        self.db_path = str(db_path)
        self._write_lock = threading.Lock()
        self._local = threading.local()

        # Create parent dir + file if needed (skip for :memory:)
        if self.db_path != ":memory:" and not Path(self.db_path).exists():
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            Path(self.db_path).touch()

        self._init_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA synchronous=FULL")
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        """Exclusive write transaction: commit on success, rollback on error.

        Driver failures surface as StoreIOError after the rollback, so a
        failed write is never half-visible.
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                raise
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreIOError(f"Database write failed: {exc}") from exc
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._get_connection()
        except sqlite3.Error as exc:
            raise StoreIOError(f"Database read failed: {exc}") from exc

    def _init_schema(self) -> None:
        conn = self._get_connection()
        with self._write_lock:
            conn.executescript(SCHEMA_SQL)
            conn.executescript(INDEXES_SQL)
            conn.commit()

    def close(self) -> None:
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None

    # ==================================================================
    # Account CRUD
    # ==================================================================

    def insert_account(self, account: Account) -> Account:
        """Insert a new account row. Raises DuplicateAccount on id clash.

        >>> db = Database(":memory:")
        >>> a = Account(id="a1", provider="social", credentials=Credentials(access_token="t"))
        >>> db.insert_account(a).id
        'a1'
        >>> db.insert_account(a)
        Traceback (most recent call last):
        ...
        kiro_accounts.errors.DuplicateAccount: Account a1 already exists
        """
        cols = _account_columns(account)
        now = _utcnow()
        cols["created_at"] = account.created_at or now
        cols["updated_at"] = now
        names = ", ".join(cols)
        marks = ", ".join("?" for _ in cols)
        try:
            with self._writer() as conn:
                conn.execute(
                    f"INSERT INTO accounts ({names}) VALUES ({marks})",
                    list(cols.values()),
                )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc) or "PRIMARY KEY" in str(exc):
                raise DuplicateAccount(f"Account {account.id} already exists")
            raise StoreIOError(f"Account {account.id} rejected: {exc}") from exc
        return self.get_account(account.id)

    def replace_account(self, account: Account) -> Account:
        """Overwrite every stored field of an existing account.

        Bindings are left alone; they are managed through bind()/unbind().
        """
        cols = _account_columns(account)
        account_id = cols.pop("id")
        cols["updated_at"] = _utcnow()
        set_clause = ", ".join(f"{k} = ?" for k in cols)
        try:
            with self._writer() as conn:
                cursor = conn.execute(
                    f"UPDATE accounts SET {set_clause} WHERE id = ?",
                    list(cols.values()) + [account_id],
                )
                if cursor.rowcount == 0:
                    raise AccountNotFound(f"Account {account_id} not found")
        except sqlite3.IntegrityError as exc:
            raise StoreIOError(f"Account {account_id} rejected: {exc}") from exc
        return self.get_account(account_id)

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get an account by ID.

        >>> db = Database(":memory:")
        >>> db.get_account("missing") is None
        True
        """
        with self._reader() as conn:
            row = conn.execute(
                _ACCOUNT_SELECT + " WHERE a.id = ?", (account_id,)
            ).fetchone()
            return _row_to_account(row) if row else None

    def list_accounts(self, ids: Optional[list[str]] = None) -> list[Account]:
        """List accounts (optionally a subset) in creation order.

        One SELECT, so the result is a consistent snapshot even while
        another thread is writing.
        """
        with self._reader() as conn:
            if ids is None:
                rows = conn.execute(
                    _ACCOUNT_SELECT + " ORDER BY a.created_at ASC, a.id ASC"
                ).fetchall()
            else:
                if not ids:
                    return []
                marks = ", ".join("?" for _ in ids)
                rows = conn.execute(
                    _ACCOUNT_SELECT
                    + f" WHERE a.id IN ({marks}) ORDER BY a.created_at ASC, a.id ASC",
                    list(ids),
                ).fetchall()
            return [_row_to_account(r) for r in rows]

    # Whitelist of columns allowed in update_account
    _ACCOUNT_UPDATE_COLS = frozenset(
        {
            "display_name",
            "email",
            "access_token",
            "refresh_token",
            "expires_at",
            "credential_extra",
            "status",
            "last_verified_at",
            "subscription_type",
            "usage_current",
            "usage_limit",
            "last_error",
        }
    )

    def update_account(
        self,
        account_id: str,
        *,
        expect_access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> bool:
        """Update columns of an account by ID.

        With ``expect_access_token`` the update only applies while the
        stored access token still equals that value (compare-and-swap);
        returns False when the row is gone or the token moved on.

        >>> db = Database(":memory:")
        >>> _ = db.insert_account(Account(id="u1", provider="social",
        ...     credentials=Credentials(access_token="tok")))
        >>> db.update_account("u1", display_name="Test User")
        True
        >>> db.update_account("u1", expect_access_token="other", access_token="x")
        False
        """
        if not kwargs:
            return False

        invalid_cols = set(kwargs.keys()) - self._ACCOUNT_UPDATE_COLS
        if invalid_cols:
            raise ValueError(f"Invalid columns for account update: {invalid_cols}")

        for key in ("status",):
            if isinstance(kwargs.get(key), Enum):
                kwargs[key] = kwargs[key].value
        if isinstance(kwargs.get("credential_extra"), dict):
            kwargs["credential_extra"] = json.dumps(kwargs["credential_extra"])

        kwargs["updated_at"] = _utcnow()
        set_clause = ", ".join(f"{k} = ?" for k in kwargs.keys())
        values = list(kwargs.values()) + [account_id]
        where = "WHERE id = ?"
        if expect_access_token is not None:
            where += " AND access_token = ?"
            values.append(expect_access_token)

        try:
            with self._writer() as conn:
                cursor = conn.execute(
                    f"UPDATE accounts SET {set_clause} {where}", values
                )
                return cursor.rowcount > 0
        except sqlite3.IntegrityError as exc:
            raise StoreIOError(f"Account {account_id} update rejected: {exc}") from exc

    def delete_accounts(self, account_ids: list[str]) -> int:
        """Hard-delete accounts in one transaction. Returns rows removed."""
        if not account_ids:
            return 0
        marks = ", ".join("?" for _ in account_ids)
        with self._writer() as conn:
            conn.execute(
                f"DELETE FROM machine_bindings WHERE account_id IN ({marks})",
                list(account_ids),
            )
            cursor = conn.execute(
                f"DELETE FROM accounts WHERE id IN ({marks})", list(account_ids)
            )
            return cursor.rowcount

    # ==================================================================
    # Machine-id bindings
    # ==================================================================

    def bind_machine_id(self, account_id: str, machine_id: str) -> bool:
        """Bind ``machine_id`` to ``account_id``.

        Returns False when the exact binding already exists (no-op),
        True when a binding was written. An account already bound to a
        different machine id is re-bound to the new one.
        Raises GuidConflict if the machine id belongs to another account,
        AccountNotFound if the account does not exist.
        """
        with self._writer() as conn:
            exists = conn.execute(
                "SELECT 1 FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
            if not exists:
                raise AccountNotFound(f"Account {account_id} not found")
            row = conn.execute(
                "SELECT account_id FROM machine_bindings WHERE machine_id = ?",
                (machine_id,),
            ).fetchone()
            if row is not None:
                if row["account_id"] == account_id:
                    return False
                raise GuidConflict(
                    f"Machine id {machine_id} is already bound to account "
                    f"{row['account_id']}"
                )
            conn.execute(
                "DELETE FROM machine_bindings WHERE account_id = ?", (account_id,)
            )
            conn.execute(
                "INSERT INTO machine_bindings (machine_id, account_id, bound_at) "
                "VALUES (?, ?, ?)",
                (machine_id, account_id, _utcnow()),
            )
            return True

    def unbind_account(self, account_id: str) -> Optional[str]:
        """Remove the account's binding. Returns the machine id it held."""
        with self._writer() as conn:
            row = conn.execute(
                "SELECT machine_id FROM machine_bindings WHERE account_id = ?",
                (account_id,),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "DELETE FROM machine_bindings WHERE account_id = ?", (account_id,)
            )
            return row["machine_id"]

    def account_for_machine_id(self, machine_id: str) -> Optional[str]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT account_id FROM machine_bindings WHERE machine_id = ?",
                (machine_id,),
            ).fetchone()
            return row["account_id"] if row else None

    def machine_id_for_account(self, account_id: str) -> Optional[str]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT machine_id FROM machine_bindings WHERE account_id = ?",
                (account_id,),
            ).fetchone()
            return row["machine_id"] if row else None

    def list_bindings(self) -> dict[str, str]:
        """All bindings as {account_id: machine_id}."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT account_id, machine_id FROM machine_bindings ORDER BY bound_at"
            ).fetchall()
            return {r["account_id"]: r["machine_id"] for r in rows}

    # ==================================================================
    # Settings
    # ==================================================================

    def get_setting(self, key: str) -> Optional[str]:
        """
        >>> db = Database(":memory:")
        >>> db.get_setting("nope") is None
        True
        """
        with self._reader() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def set_setting(self, key: str, value: str, *, only_if_missing: bool = False) -> bool:
        """Store a setting. With ``only_if_missing`` an existing value wins.

        Returns True if the value was written.
        """
        with self._writer() as conn:
            if only_if_missing:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO settings (key, value, updated_at) "
                    "VALUES (?, ?, ?)",
                    (key, value, _utcnow()),
                )
            else:
                cursor = conn.execute(
                    "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                    "updated_at = excluded.updated_at",
                    (key, value, _utcnow()),
                )
            return cursor.rowcount > 0
