"""Tests for switching the IDE session between stored accounts."""

import json

import pytest

from kiro_accounts.core.database import AccountStatus, ProviderKind
from kiro_accounts.errors import AccountNotFound, InvalidFormat, ProviderError
from kiro_accounts.switcher import AccountSwitcher, resolve_account

from conftest import FACTORY_MACHINE_ID, make_account, run

BOUND_ID = "dddddddd-1111-4222-8333-444444444444"


@pytest.fixture
def switcher(store, binder, settings):
    return AccountSwitcher(store, binder, settings)


def test_switch_writes_ide_session(switcher, store, settings):
    store.add(make_account("a1"))
    result = run(switcher.switch("a1"))
    doc = json.loads(settings.ide_token_path.read_text())
    assert doc["accessToken"] == "access-1"
    assert doc["refreshToken"] == "refresh-1"
    assert doc["authMethod"] == "social"
    assert result["machine_id"] is None


def test_switch_bound_account_sets_machine_id(switcher, store, binder):
    store.add(make_account("a1", bound_machine_id=BOUND_ID))
    result = run(switcher.switch("a1"))
    assert result["machine_id"] == BOUND_ID
    assert binder.current() == BOUND_ID
    assert binder.get_backup().machine_guid == FACTORY_MACHINE_ID


def test_backup_is_kept_across_switches(switcher, store, binder):
    other = "eeeeeeee-1111-4222-8333-444444444444"
    store.add(make_account("a1", bound_machine_id=BOUND_ID))
    store.add(make_account("a2", access_token="t2", bound_machine_id=other))
    run(switcher.switch("a1"))
    run(switcher.switch("a2"))
    assert binder.current() == other
    assert binder.get_backup().machine_guid == FACTORY_MACHINE_ID


def test_switch_refreshes_expiring_token(switcher, store, settings):
    store.add(make_account("a1", expires_in=30))
    run(switcher.switch("a1"))
    doc = json.loads(settings.ide_token_path.read_text())
    assert doc["accessToken"] == "access-refreshed"


def test_switch_uses_stored_token_if_refresh_fails_before_expiry(switcher, store, providers, settings):
    store.add(make_account("a1", expires_in=30))
    providers[ProviderKind.SOCIAL_LOGIN].refresh_result = ProviderError("social", "HTTP 503")
    run(switcher.switch("a1"))
    assert json.loads(settings.ide_token_path.read_text())["accessToken"] == "access-1"


def test_switch_expired_token_with_failed_refresh(switcher, store, providers, settings):
    store.add(make_account("a1", expires_in=-30, status=AccountStatus.EXPIRED))
    providers[ProviderKind.SOCIAL_LOGIN].refresh_result = ProviderError("social", "HTTP 401")
    with pytest.raises(ProviderError):
        run(switcher.switch("a1"))
    assert not settings.ide_token_path.exists()


def test_switch_invalid_account(switcher, store):
    store.add(make_account("a1", status=AccountStatus.INVALID))
    with pytest.raises(InvalidFormat):
        run(switcher.switch("a1"))


def test_current_matches_ide_session(switcher, store):
    store.add(make_account("a1"))
    store.add(make_account("a2", access_token="t2"))
    assert switcher.current() is None
    run(switcher.switch("a2"))
    assert switcher.current().id == "a2"


def test_logout_removes_session_and_restores_machine_id(switcher, store, binder, settings):
    store.add(make_account("a1", bound_machine_id=BOUND_ID))
    run(switcher.switch("a1"))
    result = switcher.logout()
    assert result == {"token_removed": True, "restored_machine_id": FACTORY_MACHINE_ID}
    assert not settings.ide_token_path.exists()
    assert binder.current() == FACTORY_MACHINE_ID


def test_logout_without_session(switcher):
    assert switcher.logout() == {"token_removed": False, "restored_machine_id": None}


# ---------------------------------------------------------------------------
# resolve_account
# ---------------------------------------------------------------------------


def test_resolve_by_id_prefix_and_email(store):
    store.add(make_account("abc111", email="alice@example.com"))
    store.add(make_account("abc222", access_token="t2", email="bob@example.com"))
    assert resolve_account("abc111", store).id == "abc111"
    assert resolve_account("abc2", store).id == "abc222"
    assert resolve_account("BOB@example.com", store).id == "abc222"


def test_resolve_ambiguous_prefix(store):
    store.add(make_account("abc111"))
    store.add(make_account("abc222", access_token="t2"))
    with pytest.raises(InvalidFormat):
        resolve_account("abc", store)


def test_resolve_unknown(store):
    with pytest.raises(AccountNotFound):
        resolve_account("zzz", store)
    with pytest.raises(AccountNotFound):
        resolve_account("", store)
