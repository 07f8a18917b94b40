"""Tests for relaunch forwarding to a running primary instance."""

import json
import os

import httpx
import pytest

from kiro_accounts import single_instance
from kiro_accounts.single_instance import (
    RELAUNCH_PATH,
    forward_to_running_instance,
    read_instance,
    remove_instance_file,
    write_instance_file,
)

OTHER_PID = 999_999


def _write_other_instance(settings, port=8765, pid=OTHER_PID):
    settings.instance_file.parent.mkdir(parents=True, exist_ok=True)
    settings.instance_file.write_text(json.dumps({"pid": pid, "port": port, "started_at": 0}))


@pytest.fixture
def alive(monkeypatch):
    monkeypatch.setattr(single_instance, "_pid_alive", lambda pid: True)


def test_own_instance_file_is_not_a_target(settings):
    write_instance_file(settings.instance_file, 8765)
    data = json.loads(settings.instance_file.read_text())
    assert data["pid"] == os.getpid()
    assert read_instance(settings.instance_file) is None


def test_remove_instance_file_only_removes_own(settings):
    _write_other_instance(settings)
    remove_instance_file(settings.instance_file)
    assert settings.instance_file.exists()

    write_instance_file(settings.instance_file, 8765)
    remove_instance_file(settings.instance_file)
    assert not settings.instance_file.exists()


def test_no_instance_means_no_forward(settings):
    assert forward_to_running_instance(["app", "kiro://cb?state=x"], settings) is False


def test_dead_instance_file_is_removed(settings, monkeypatch):
    _write_other_instance(settings)
    monkeypatch.setattr(single_instance, "_pid_alive", lambda pid: False)
    assert read_instance(settings.instance_file) is None
    assert not settings.instance_file.exists()


def test_malformed_instance_file_is_removed(settings):
    settings.instance_file.parent.mkdir(parents=True, exist_ok=True)
    settings.instance_file.write_text(json.dumps({"pid": "abc"}))
    assert read_instance(settings.instance_file) is None
    assert not settings.instance_file.exists()


def test_forward_posts_argv(settings, alive):
    _write_other_instance(settings, port=9100)
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"handled": True})

    argv = ["kiro-accounts", "open-url", "--", "kiro://cb?state=x"]
    assert forward_to_running_instance(argv, settings, transport=httpx.MockTransport(handler))
    assert seen["url"] == f"http://127.0.0.1:9100{RELAUNCH_PATH}"
    assert seen["body"] == {"argv": argv}


def test_forward_counts_rejected_delivery_as_handled(settings, alive):
    _write_other_instance(settings)
    transport = httpx.MockTransport(lambda r: httpx.Response(403, json={"error": {}}))
    assert forward_to_running_instance(["app"], settings, transport=transport) is True


def test_unreachable_instance_falls_back(settings, alive):
    _write_other_instance(settings)

    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert not forward_to_running_instance(["app"], settings, transport=httpx.MockTransport(handler))
    assert not settings.instance_file.exists()


def test_register_url_scheme_is_windows_only(monkeypatch):
    monkeypatch.setattr(single_instance.sys, "platform", "linux")
    assert single_instance.register_url_scheme("/usr/bin/kiro-accounts") is False
