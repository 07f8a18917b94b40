"""Wiring: one explicit handle per shared resource.

Both the CLI and the API build a Services container and pass it (or its
members) to every operation; nothing is reached through module globals.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from kiro_accounts.config import Settings
from kiro_accounts.core.auth_state import AuthState
from kiro_accounts.core.database import Account, Database
from kiro_accounts.core.deep_link import DeepLinkRouter
from kiro_accounts.core.machine_guid import MachineGuidBinder, MachineIdSource, default_source
from kiro_accounts.core.store import AccountStore
from kiro_accounts.core.token_recovery import apply_token_recovery
from kiro_accounts.errors import GuidConflict
from kiro_accounts.providers import build_provider_clients
from kiro_accounts.switcher import AccountSwitcher

logger = logging.getLogger(__name__)


def _log_focus_request() -> None:
    logger.info("Relaunch received: main window should come to the foreground")


class Services:
    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        machine_source: Optional[MachineIdSource] = None,
        clock: Callable[[], float] = time.time,
        focus: Optional[Callable[[], None]] = None,
    ):
        self.settings = settings
        self.db = Database(str(settings.db_path))
        self.binder = MachineGuidBinder(
            self.db,
            machine_source or default_source(settings.machine_id_override_path),
            settings.machine_id_backup_path,
        )
        self.providers = build_provider_clients(settings, transport=transport)
        self.store = AccountStore(self.db, self.binder, self.providers, settings)
        self.auth_state = AuthState(
            self.providers, settings, clock=clock, sink=self.persist_login
        )
        self.router = DeepLinkRouter(self.auth_state, focus=focus or _log_focus_request)
        self.switcher = AccountSwitcher(self.store, self.binder, settings)

    def persist_login(self, account: Account, params: dict) -> Account:
        """Store a freshly logged-in account, binding the current machine id
        when the login asked for it."""
        stored = self.store.add(account)
        if params.get("bind_machine"):
            try:
                self.store.bind_current_machine(stored.id)
            except GuidConflict as exc:
                logger.warning("Account %s stored unbound: %s", stored.id, exc)
            stored = self.store.get(stored.id)
        return stored

    def recover(self) -> bool:
        """Apply a token recovery file left by a failed refresh write."""
        return apply_token_recovery(self.db, self.settings.token_recovery_path)

    def close(self) -> None:
        self.auth_state.cancel_login()
        self.db.close()
