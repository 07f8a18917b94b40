"""Tests for the kiro-accounts CLI."""

import json

import pytest
from click.testing import CliRunner

from kiro_accounts import cli
from kiro_accounts.cli import main
from kiro_accounts.core.machine_guid import GUID_RE

from conftest import FACTORY_MACHINE_ID, callback_url, make_account, run


@pytest.fixture
def invoke(services, settings, monkeypatch):
    monkeypatch.setenv("KIRO_ACCOUNTS_DATA_DIR", str(settings.data_dir))
    monkeypatch.setenv("KIRO_ACCOUNTS_IDE_TOKEN_PATH", str(settings.ide_token_path))
    runner = CliRunner()

    def _invoke(*args, **kwargs):
        return runner.invoke(main, list(args), obj={"services": services}, **kwargs)

    return _invoke


def test_help(invoke):
    result = invoke("--help")
    assert result.exit_code == 0
    for group in ("accounts", "login", "machine-id", "switch", "serve", "open-url"):
        assert group in result.output


def test_accounts_list_empty(invoke):
    result = invoke("accounts", "list")
    assert result.exit_code == 0
    assert "No accounts stored" in result.output


def test_accounts_list(invoke, services):
    services.store.add(make_account("acct-1"))
    result = invoke("accounts", "list")
    assert result.exit_code == 0
    assert "acct-1" in result.output


def test_accounts_rename_by_prefix(invoke, services):
    services.store.add(make_account("acct-1"))
    result = invoke("accounts", "rename", "acct", "Work")
    assert result.exit_code == 0, result.output
    assert services.store.get("acct-1").display_name == "Work"


def test_accounts_delete(invoke, services):
    services.store.add(make_account("acct-1"))
    result = invoke("accounts", "delete", "acct-1", "--yes")
    assert result.exit_code == 0
    assert services.store.list_accounts() == []


def test_accounts_delete_unknown(invoke):
    result = invoke("accounts", "delete", "ghost", "--yes")
    assert result.exit_code == 1
    assert "NOT_FOUND" in result.output


def test_accounts_refresh(invoke, services):
    services.store.add(make_account("acct-1"))
    result = invoke("accounts", "refresh", "acct-1", "--force")
    assert result.exit_code == 0, result.output
    assert services.store.get("acct-1").credentials.access_token == "access-refreshed"


def test_accounts_export_import(invoke, services, tmp_path):
    services.store.add(make_account("acct-1"))
    result = invoke("accounts", "export", "--full")
    assert result.exit_code == 0
    doc = json.loads(result.output)
    assert doc["accounts"][0]["credentials"]["access_token"] == "access-1"

    services.store.delete("acct-1")
    path = tmp_path / "export.json"
    path.write_text(json.dumps(doc))
    result = invoke("accounts", "import", str(path))
    assert result.exit_code == 0
    assert "Imported 1" in result.output
    assert services.store.get("acct-1").credentials.access_token == "access-1"


def test_machine_id_show(invoke):
    result = invoke("machine-id", "show")
    assert result.exit_code == 0
    assert FACTORY_MACHINE_ID in result.output


def test_machine_id_set_and_restore(invoke, services):
    custom = "12345678-1234-4234-8234-123456789abc"
    assert invoke("machine-id", "backup").exit_code == 0
    assert invoke("machine-id", "set", custom).exit_code == 0
    assert services.binder.current() == custom
    assert invoke("machine-id", "restore").exit_code == 0
    assert services.binder.current() == FACTORY_MACHINE_ID


def test_machine_id_set_invalid(invoke):
    result = invoke("machine-id", "set", "not-a-guid")
    assert result.exit_code == 1
    assert "INVALID_FORMAT" in result.output


def test_machine_id_generate(invoke):
    result = invoke("machine-id", "generate")
    assert GUID_RE.match(result.output.strip())


def test_machine_id_bind_current(invoke, services):
    services.store.add(make_account("acct-1"))
    result = invoke("machine-id", "bind", "acct-1")
    assert result.exit_code == 0
    assert services.binder.bindings() == {"acct-1": FACTORY_MACHINE_ID}
    assert invoke("machine-id", "unbind", "acct-1").exit_code == 0
    assert services.binder.bindings() == {}


def test_login_import_file(invoke, services, tmp_path):
    path = tmp_path / "token.json"
    path.write_text(json.dumps({"accessToken": "x", "expiresAt": "2030-01-01T00:00:00Z"}))
    result = invoke("login", "import", str(path))
    assert result.exit_code == 0, result.output
    assert "Imported" in result.output
    assert len(services.store.list_accounts()) == 1


def test_login_import_needs_source(invoke):
    result = invoke("login", "import")
    assert result.exit_code == 2


def test_login_status_without_server(invoke):
    result = invoke("login", "status")
    assert result.exit_code == 0
    assert "No running instance" in result.output


def test_switch_and_logout(invoke, services, settings):
    services.store.add(make_account("acct-1"))
    result = invoke("switch", "acct-1")
    assert result.exit_code == 0, result.output
    assert json.loads(settings.ide_token_path.read_text())["accessToken"] == "access-1"

    result = invoke("current")
    assert "acct-1" in result.output

    result = invoke("logout")
    assert result.exit_code == 0
    assert not settings.ide_token_path.exists()


def test_open_url_without_running_instance(invoke, services):
    pending = run(services.auth_state.begin_login("Google"))
    result = invoke("open-url", "--", callback_url(pending.correlation_token))
    assert result.exit_code == 1
    assert "No running instance holds a pending login" in result.output
    assert services.store.list_accounts() == []


def test_open_url_forwards_to_running_instance(invoke, monkeypatch):
    seen = {}

    def fake_forward(argv, settings):
        seen["argv"] = argv
        return True

    monkeypatch.setattr(cli, "forward_to_running_instance", fake_forward)
    result = invoke("open-url", "--", callback_url("abc"))
    assert result.exit_code == 0
    assert "Delivered to the running instance" in result.output
    assert seen["argv"][-1] == callback_url("abc")


def test_open_url_without_url(invoke):
    result = invoke("open-url", "--minimized")
    assert result.exit_code == 0
    assert "No kiro:// URL" in result.output
