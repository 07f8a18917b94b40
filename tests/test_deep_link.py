"""Tests for the deep-link router and the loopback callback listener."""

import json

import httpx
import pytest

from kiro_accounts.core.auth_state import LoginStatus
from kiro_accounts.core.callback_server import CallbackServer
from kiro_accounts.core.deep_link import (
    DeepLinkRouter,
    decode_event_payload,
    extract_url_from_args,
)
from kiro_accounts.core.database import ProviderKind
from kiro_accounts.errors import CorrelationMismatch, NoPendingLogin

from conftest import callback_url, run


@pytest.fixture
def focus_calls():
    return []


@pytest.fixture
def router(auth_state, focus_calls):
    return DeepLinkRouter(auth_state, focus=lambda: focus_calls.append(True))


# ---------------------------------------------------------------------------
# Payload and argv parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "payload",
    [
        "kiro://cb?state=abc",
        json.dumps("kiro://cb?state=abc"),
        json.dumps(json.dumps("kiro://cb?state=abc")),
        json.dumps({"url": "kiro://cb?state=abc"}),
        b"kiro://cb?state=abc",
    ],
)
def test_decode_event_payload_shapes(payload):
    assert decode_event_payload(payload) == "kiro://cb?state=abc"


def test_decode_event_payload_empty():
    assert decode_event_payload("") is None
    assert decode_event_payload(None) is None


@pytest.mark.parametrize(
    "argv",
    [
        ["app.exe", "kiro://cb?state=abc"],
        ["app.exe", "--open-url", "kiro://cb?state=abc"],
        ["app.exe", "open-url", "--", "kiro://cb?state=abc"],
        ["app.exe", "open-url", "--", '"kiro://cb?state=abc"'],
        ["app.exe", "kiro://cb?state=abc", "--minimized"],
    ],
)
def test_extract_url_layouts(argv):
    assert extract_url_from_args(argv) == "kiro://cb?state=abc"


def test_extract_url_ignores_other_schemes():
    assert extract_url_from_args(["app", "https://example.com"]) is None
    assert extract_url_from_args(["app"]) is None


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def test_double_encoded_event_completes_login(router, auth_state):
    async def scenario():
        pending = await auth_state.begin_login("Google")
        payload = json.dumps(json.dumps(callback_url(pending.correlation_token)))
        return await router.handle_event(payload)

    account = run(scenario())
    assert account.provider == ProviderKind.SOCIAL_LOGIN


def test_relaunch_completes_login_and_focuses(router, auth_state, focus_calls):
    async def scenario():
        pending = await auth_state.begin_login("Github")
        argv = ["kiro-accounts", "open-url", "--", callback_url(pending.correlation_token)]
        return await router.handle_relaunch(argv)

    assert run(scenario()) is not None
    assert focus_calls == [True]


def test_relaunch_without_url_still_focuses(router, focus_calls):
    assert run(router.handle_relaunch(["kiro-accounts"])) is None
    assert focus_calls == [True]


def test_relaunch_error_still_focuses(router, auth_state, focus_calls):
    async def scenario():
        await auth_state.begin_login("Google")
        await router.handle_relaunch(["app", callback_url("forged")])

    with pytest.raises(CorrelationMismatch):
        run(scenario())
    assert focus_calls == [True]


def test_malformed_callback_is_dropped(router, auth_state):
    async def scenario():
        pending = await auth_state.begin_login("Google")
        result = await router.handle_local("kiro://kiro.kiroAgent/authenticate-success?code=x")
        return pending, result

    pending, result = run(scenario())
    assert result is None
    assert pending.status == LoginStatus.PENDING


def test_unrecognized_event_is_dropped(router):
    assert run(router.handle_event('{"something": "else"}')) is None


def test_duplicate_delivery_raises_no_pending_login(router, auth_state, providers):
    async def scenario():
        pending = await auth_state.begin_login("Google")
        url = callback_url(pending.correlation_token)
        first = await router.handle_local(url)
        with pytest.raises(NoPendingLogin):
            await router.handle_event(url)
        return first

    assert run(scenario()) is not None
    assert providers[ProviderKind.SOCIAL_LOGIN].calls.count("finish") == 1


# ---------------------------------------------------------------------------
# Loopback listener
# ---------------------------------------------------------------------------


def test_callback_server_forwards_redirect(router, auth_state):
    async def scenario():
        async with CallbackServer(router) as server:
            pending = await auth_state.begin_login(
                "Google", {"redirect_uri": server.redirect_uri}
            )
            async with httpx.AsyncClient(trust_env=False) as client:
                resp = await client.get(
                    server.redirect_uri,
                    params={"code": "c1", "state": pending.correlation_token},
                )
            return server, pending, resp

    server, pending, resp = run(scenario())
    assert resp.status_code == 200
    assert "Signed in" in resp.text
    assert pending.status == LoginStatus.COMPLETED
    assert server.port is None


def test_callback_server_reports_mismatch(router, auth_state):
    async def scenario():
        async with CallbackServer(router) as server:
            await auth_state.begin_login("Google", {"redirect_uri": server.redirect_uri})
            async with httpx.AsyncClient(trust_env=False) as client:
                return await client.get(
                    server.redirect_uri, params={"code": "c1", "state": "forged"}
                )

    resp = run(scenario())
    assert resp.status_code == 403


def test_canonical_url_uses_registered_redirect(router, settings):
    server = CallbackServer(router)
    assert server.canonical_url("code=1&state=2") == f"{settings.redirect_uri}?code=1&state=2"
