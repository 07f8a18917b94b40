"""System machine id: read, back up, restore, reset, override, and bind
to accounts.

The machine id lives in the host's identity store:
- Windows: HKLM\\SOFTWARE\\Microsoft\\Cryptography\\MachineGuid
- macOS/Linux: the platform UUID cannot be rewritten, so an override file
  (``<data_dir>/machine-guid``) takes precedence over the factory value
  read from ``ioreg`` or ``/etc/machine-id``

Bindings (machine id <-> account id, 1:1) are persisted in the database's
``machine_bindings`` table; the factory value is captured once into the
settings table the first time the id is read.
"""

import logging
import re
import socket
import subprocess
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError

from kiro_accounts.core.database import Database
from kiro_accounts.errors import InvalidFormat, StoreIOError
from kiro_accounts.file_helpers import read_json, safe_remove, write_json_atomic

logger = logging.getLogger(__name__)

GUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
ORIGINAL_BACKUP_KEY = "machine_id.original"
_REGISTRY_PATH = r"SOFTWARE\Microsoft\Cryptography"


def normalize_machine_id(value: str) -> str:
    """Validate GUID format and return it lower-cased.

    >>> normalize_machine_id("  ABCDEF01-2345-6789-ABCD-EF0123456789 ")
    'abcdef01-2345-6789-abcd-ef0123456789'
    >>> normalize_machine_id("not-a-guid")
    Traceback (most recent call last):
    ...
    kiro_accounts.errors.InvalidFormat: Machine id must be a GUID (8-4-4-4-12 hex): 'not-a-guid'
    """
    if not isinstance(value, str) or not GUID_RE.match(value.strip()):
        raise InvalidFormat(f"Machine id must be a GUID (8-4-4-4-12 hex): {value!r}")
    return value.strip().lower()


def generate_machine_id() -> str:
    """
    >>> bool(GUID_RE.match(generate_machine_id()))
    True
    """
    return str(uuid.uuid4())


def machine_id_from_hex(raw: str) -> Optional[str]:
    """Format a bare 32-hex id (``/etc/machine-id``) as a GUID.

    >>> machine_id_from_hex("0123456789abcdef0123456789abcdef")
    '01234567-89ab-cdef-0123-456789abcdef'
    >>> machine_id_from_hex("short") is None
    True
    """
    raw = raw.strip().lower().replace("-", "")
    if not re.fullmatch(r"[0-9a-f]{32}", raw):
        return None
    return f"{raw[:8]}-{raw[8:12]}-{raw[12:16]}-{raw[16:20]}-{raw[20:]}"


def read_platform_machine_id() -> Optional[str]:
    """Factory machine id of a non-Windows host, or None."""
    if sys.platform == "darwin":
        try:
            result = subprocess.run(
                ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                capture_output=True, text=True, timeout=5,
            )
            match = re.search(r'"IOPlatformUUID"\s*=\s*"([0-9A-Fa-f-]+)"', result.stdout)
            if match:
                return match.group(1).lower()
        except (subprocess.SubprocessError, OSError) as exc:
            logger.debug("ioreg read failed: %s", exc)
        return None
    for candidate in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
        try:
            value = machine_id_from_hex(Path(candidate).read_text(encoding="utf-8"))
        except OSError:
            continue
        if value:
            return value
    return None


# ---------------------------------------------------------------------------
# Identity sources
# ---------------------------------------------------------------------------


class MachineIdSource:
    """Where the system machine id is read from and written to."""

    name = "abstract"

    def read(self) -> Optional[str]:
        raise NotImplementedError

    def write(self, machine_id: str) -> None:
        raise NotImplementedError

    def clear_override(self) -> bool:
        """Drop any override and fall back to the factory value."""
        return False


class WindowsRegistrySource(MachineIdSource):
    """MachineGuid under HKLM. Writing requires an elevated process."""

    name = "windows-registry"

    def read(self) -> Optional[str]:
        import winreg

        try:
            with winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE, _REGISTRY_PATH, 0,
                winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
            ) as key:
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
                return str(value).lower()
        except OSError as exc:
            raise StoreIOError(f"Cannot read MachineGuid: {exc}") from exc

    def write(self, machine_id: str) -> None:
        import winreg

        try:
            with winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE, _REGISTRY_PATH, 0,
                winreg.KEY_SET_VALUE | winreg.KEY_WOW64_64KEY,
            ) as key:
                winreg.SetValueEx(key, "MachineGuid", 0, winreg.REG_SZ, machine_id)
        except PermissionError as exc:
            raise StoreIOError("Writing MachineGuid requires administrator rights") from exc
        except OSError as exc:
            raise StoreIOError(f"Cannot write MachineGuid: {exc}") from exc


class OverrideFileSource(MachineIdSource):
    """Override file on top of a read-only platform id."""

    name = "override-file"

    def __init__(
        self,
        override_path: Path,
        system_reader: Callable[[], Optional[str]] = read_platform_machine_id,
    ):
        self.override_path = Path(override_path)
        self._system_reader = system_reader

    def read(self) -> Optional[str]:
        data = read_json(self.override_path)
        if data and data.get("machine_guid"):
            try:
                return normalize_machine_id(data["machine_guid"])
            except InvalidFormat:
                logger.warning("Ignoring malformed machine id override at %s", self.override_path)
        return self._system_reader()

    def write(self, machine_id: str) -> None:
        try:
            write_json_atomic(
                self.override_path,
                {"machine_guid": machine_id, "written_at": datetime.now(timezone.utc).isoformat()},
                prefix=".machine-guid_tmp_",
            )
        except OSError as exc:
            raise StoreIOError(f"Cannot write machine id override: {exc}") from exc

    def clear_override(self) -> bool:
        return safe_remove(self.override_path)


def default_source(override_path: Path) -> MachineIdSource:
    if sys.platform == "win32":
        return WindowsRegistrySource()
    return OverrideFileSource(override_path)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class MachineIdSnapshot(BaseModel):
    """A saved machine id, as written by backup()."""

    machine_guid: str
    backed_up_at: str
    computer_name: Optional[str] = None


class MachineIdRecord(BaseModel):
    current_id: str
    original_backup: Optional[str] = None
    bound_account_id: Optional[str] = None


class MachineGuidBinder:
    """Owns the system machine id and its account bindings.

    The lock serializes read-modify-write sequences on the system id
    (reset, restore, set_custom); binding writes rely on the database
    transaction.
    """

    def __init__(self, db: Database, source: MachineIdSource, backup_path: Path):
        self.db = db
        self.source = source
        self.backup_path = Path(backup_path)
        self._lock = threading.Lock()

    # -- system id -------------------------------------------------------

    def _read_current(self) -> str:
        value = self.source.read()
        if value is None:
            # Hosts without a readable platform id get a generated one,
            # persisted so it stays stable across runs.
            value = generate_machine_id()
            logger.warning("No platform machine id available; generated %s", value)
            self.source.write(value)
        value = normalize_machine_id(value)
        if self.db.set_setting(ORIGINAL_BACKUP_KEY, value, only_if_missing=True):
            logger.info("Captured original machine id %s", value)
        return value

    def current(self) -> str:
        with self._lock:
            return self._read_current()

    def record(self) -> MachineIdRecord:
        with self._lock:
            current = self._read_current()
        return MachineIdRecord(
            current_id=current,
            original_backup=self.db.get_setting(ORIGINAL_BACKUP_KEY),
            bound_account_id=self.db.account_for_machine_id(current),
        )

    def original_backup(self) -> Optional[str]:
        return self.db.get_setting(ORIGINAL_BACKUP_KEY)

    def backup(self) -> MachineIdSnapshot:
        """Save the current id to the backup file, replacing any older one."""
        with self._lock:
            snapshot = MachineIdSnapshot(
                machine_guid=self._read_current(),
                backed_up_at=datetime.now(timezone.utc).isoformat(),
                computer_name=socket.gethostname(),
            )
            try:
                write_json_atomic(self.backup_path, snapshot.model_dump(), prefix=".guid-backup_tmp_")
            except OSError as exc:
                raise StoreIOError(f"Cannot write machine id backup: {exc}") from exc
        logger.info("Backed up machine id %s", snapshot.machine_guid)
        return snapshot

    def get_backup(self) -> Optional[MachineIdSnapshot]:
        data = read_json(self.backup_path)
        if data is None:
            return None
        try:
            return MachineIdSnapshot.model_validate(data)
        except ValidationError:
            logger.warning("Machine id backup at %s is malformed", self.backup_path)
            return None

    def restore(self, snapshot: Optional[MachineIdSnapshot] = None) -> str:
        """Write a saved id back as the system id.

        Without an explicit snapshot, uses the backup file, then the
        captured original value.
        """
        if snapshot is not None:
            target = snapshot.machine_guid
        else:
            saved = self.get_backup()
            target = saved.machine_guid if saved else self.original_backup()
        if not target:
            raise StoreIOError("No machine id backup to restore")
        target = normalize_machine_id(target)
        with self._lock:
            self.source.write(target)
        logger.info("Restored machine id %s", target)
        return target

    def reset(self) -> str:
        """Replace the system id with a fresh one.

        The new id differs from the previous value and from every bound id.
        """
        with self._lock:
            previous = self._read_current()
            taken = set(self.db.list_bindings().values()) | {previous}
            new_id = generate_machine_id()
            while new_id in taken:
                new_id = generate_machine_id()
            self.source.write(new_id)
        logger.info("Reset machine id (previous %s)", previous)
        return new_id

    def set_custom(self, machine_id: str) -> str:
        value = normalize_machine_id(machine_id)
        with self._lock:
            self._read_current()
            self.source.write(value)
        logger.info("Set custom machine id %s", value)
        return value

    def clear_override(self) -> bool:
        with self._lock:
            return self.source.clear_override()

    # -- bindings --------------------------------------------------------

    def bind(self, account_id: str, machine_id: str) -> bool:
        """Bind a machine id to an account.

        Idempotent for the same pair (returns False). Raises GuidConflict
        when the id belongs to another account.
        """
        value = normalize_machine_id(machine_id)
        changed = self.db.bind_machine_id(account_id, value)
        if changed:
            logger.info("Bound machine id %s to account %s", value, account_id)
        return changed

    def unbind(self, account_id: str) -> Optional[str]:
        released = self.db.unbind_account(account_id)
        if released:
            logger.info("Unbound machine id %s from account %s", released, account_id)
        return released

    def bound_account_for(self, machine_id: str) -> Optional[str]:
        try:
            value = normalize_machine_id(machine_id)
        except InvalidFormat:
            return None
        return self.db.account_for_machine_id(value)

    def bound_machine_for(self, account_id: str) -> Optional[str]:
        return self.db.machine_id_for_account(account_id)

    def bindings(self) -> dict[str, str]:
        return self.db.list_bindings()
