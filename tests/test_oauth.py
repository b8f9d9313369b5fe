"""Tests for the credential store, token refresh and the PKCE login flow."""

import asyncio
import base64
import hashlib
import json
import os
import socket
import stat
import time
from dataclasses import replace
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from codex_proxy.errors import (
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    MissingCodeError,
    OAuthError,
    StateMismatchError,
    TokenExchangeError,
    TokenRefreshError,
)
from codex_proxy.oauth import (
    AuthorizationFlow,
    AuthState,
    Credential,
    CredentialManager,
    build_authorize_url,
    generate_pkce,
    generate_state,
)
from conftest import ISSUER, write_credential


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _token_handler(calls: list[dict[str, str]], *, status: int = 200, body: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == f"{ISSUER}/oauth/token"
        calls.append(_form(request))
        if status != 200:
            return httpx.Response(status, text="invalid_grant")
        return httpx.Response(
            200,
            json=body
            if body is not None
            else {"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600},
        )

    return handler


class TestPkce:
    def test_verifier_length_and_alphabet(self):
        pkce = generate_pkce()
        assert len(pkce.verifier) == 128
        assert set(pkce.verifier) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~")

    def test_challenge_is_s256_of_verifier(self):
        pkce = generate_pkce()
        digest = hashlib.sha256(pkce.verifier.encode()).digest()
        assert pkce.challenge == base64.urlsafe_b64encode(digest).decode().rstrip("=")

    def test_state_is_fresh(self):
        assert generate_state() != generate_state()
        assert len(generate_state()) == 43

    def test_authorize_url(self, settings):
        pkce = generate_pkce()
        url = build_authorize_url(settings, pkce, "st")
        parsed = urlparse(url)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert url.startswith(f"{ISSUER}/oauth/authorize?")
        assert query["response_type"] == "code"
        assert query["client_id"] == settings.client_id
        assert query["redirect_uri"] == f"http://localhost:{settings.oauth_port}/auth/callback"
        assert query["code_challenge"] == pkce.challenge
        assert query["code_challenge_method"] == "S256"
        assert query["state"] == "st"
        assert "offline_access" in query["scope"]


class TestCredentialStore:
    def test_load_missing_file(self, settings):
        assert CredentialManager(settings).load() is None

    def test_save_and_load(self, settings):
        manager = CredentialManager(settings)
        cred = Credential("a", "r", 1_900_000_000_000)
        manager.save(cred)
        assert manager.load() == cred
        assert manager.state is AuthState.AUTHENTICATED

    def test_saved_file_is_owner_only(self, settings):
        manager = CredentialManager(settings)
        manager.save(Credential("a", "r", 1_900_000_000_000))
        mode = stat.S_IMODE(os.stat(manager.path).st_mode)
        assert mode == 0o600

    def test_save_replaces_previous_credential(self, settings):
        manager = CredentialManager(settings)
        manager.save(Credential("a", "r", 1))
        manager.save(Credential("b", "s", 2))
        assert json.loads(manager.path.read_text()) == {"access_token": "b", "refresh_token": "s", "expires_at": 2}
        assert [p.name for p in manager.path.parent.iterdir()] == [manager.path.name]

    @pytest.mark.parametrize(
        "content",
        [
            "not json",
            "[]",
            json.dumps({"access_token": "a", "expires_at": 1}),
            json.dumps({"access_token": "", "refresh_token": "r", "expires_at": 1}),
            json.dumps({"access_token": "a", "refresh_token": "r"}),
            json.dumps({"access_token": "a", "refresh_token": "r", "expires_at": "soon"}),
        ],
    )
    def test_incomplete_file_is_treated_as_absent(self, settings, content):
        path = Path(settings.token_file)
        path.parent.mkdir(parents=True)
        path.write_text(content)
        assert CredentialManager(settings).load() is None

    def test_clear(self, settings, logged_in):
        manager = CredentialManager(settings)
        manager.clear()
        assert not logged_in.exists()
        assert manager.load() is None
        manager.clear()

    def test_status(self, settings):
        manager = CredentialManager(settings, clock=lambda: 1000.0)
        assert manager.status().authenticated is False

        manager.save(Credential("a", "r", 1000 * 1000 + 30 * 60_000))
        status = manager.status()
        assert status.authenticated is True
        assert status.expired is False
        assert status.minutes_remaining == 30

        manager.save(Credential("a", "r", 999 * 1000))
        status = manager.status()
        assert status.expired is True
        assert status.minutes_remaining == 0


class TestRefresh:
    @pytest.mark.asyncio
    async def test_valid_token_returned_without_refresh(self, settings, logged_in, mock_client):
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls)) as client:
            token = await CredentialManager(settings, client=client).get_valid_access_token()
        assert token == "access-1"
        assert calls == []

    @pytest.mark.asyncio
    async def test_no_credential(self, settings, mock_client):
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls)) as client:
            assert await CredentialManager(settings, client=client).get_valid_access_token() is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_refresh_within_margin(self, settings, mock_client):
        write_credential(Path(settings.token_file), expires_in_s=4 * 60)
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls)) as client:
            manager = CredentialManager(settings, client=client)
            token = await manager.get_valid_access_token()

        assert token == "access-2"
        assert calls == [{"grant_type": "refresh_token", "refresh_token": "refresh-1", "client_id": settings.client_id}]
        stored = manager.load()
        assert stored is not None
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-2"
        assert stored.expires_at > (time.time() + 3500) * 1000

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token_when_none_returned(self, settings, mock_client):
        write_credential(Path(settings.token_file), expires_in_s=-10)
        calls: list[dict[str, str]] = []
        handler = _token_handler(calls, body={"access_token": "access-2"})
        async with mock_client(handler) as client:
            manager = CredentialManager(settings, client=client)
            assert await manager.get_valid_access_token() == "access-2"
        stored = manager.load()
        assert stored is not None
        assert stored.refresh_token == "refresh-1"
        # Missing expires_in falls back to the default lifetime.
        assert stored.expires_at > (time.time() + 3500) * 1000

    @pytest.mark.asyncio
    async def test_failed_refresh_reports_unauthenticated(self, settings, mock_client):
        write_credential(Path(settings.token_file), expires_in_s=60)
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls, status=400)) as client:
            manager = CredentialManager(settings, client=client)
            assert await manager.get_valid_access_token() is None
        assert manager.state is AuthState.FAILED
        # The stored credential is left alone for a later login/refresh.
        stored = manager.load()
        assert stored is not None
        assert stored.access_token == "access-1"

    @pytest.mark.asyncio
    async def test_refresh_error_carries_status_and_body(self, settings, mock_client):
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls, status=401)) as client:
            with pytest.raises(TokenRefreshError) as excinfo:
                await CredentialManager(settings, client=client).refresh("refresh-1")
        assert excinfo.value.status_code == 401
        assert excinfo.value.body == "invalid_grant"
        assert "401" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, settings, mock_client):
        write_credential(Path(settings.token_file), expires_in_s=60)
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls)) as client:
            manager = CredentialManager(settings, client=client)
            tokens = await asyncio.gather(*(manager.get_valid_access_token() for _ in range(5)))
        assert tokens == ["access-2"] * 5
        assert len(calls) == 1


class TestExchange:
    @pytest.mark.asyncio
    async def test_exchange_code(self, settings, mock_client):
        calls: list[dict[str, str]] = []
        pkce = generate_pkce()
        async with mock_client(_token_handler(calls)) as client:
            cred = await CredentialManager(settings, client=client).exchange_code("the-code", pkce)
        assert cred.access_token == "access-2"
        assert calls == [
            {
                "grant_type": "authorization_code",
                "code": "the-code",
                "redirect_uri": settings.oauth_redirect_uri,
                "client_id": settings.client_id,
                "code_verifier": pkce.verifier,
            }
        ]

    @pytest.mark.asyncio
    async def test_exchange_non_200(self, settings, mock_client):
        async with mock_client(_token_handler([], status=400)) as client:
            with pytest.raises(TokenExchangeError) as excinfo:
                await CredentialManager(settings, client=client).exchange_code("c", generate_pkce())
        assert excinfo.value.status_code == 400

    @pytest.mark.asyncio
    async def test_exchange_without_access_token(self, settings, mock_client):
        handler = _token_handler([], body={"refresh_token": "r"})
        async with mock_client(handler) as client:
            with pytest.raises(OAuthError):
                await CredentialManager(settings, client=client).exchange_code("c", generate_pkce())


def _awaiting_flow(manager: CredentialManager, urls: list[str] | None = None) -> AuthorizationFlow:
    flow = AuthorizationFlow(manager, open_browser=None, on_url=(urls.append if urls is not None else lambda _: None))
    flow.begin()
    flow.await_callback()
    return flow


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_success_persists_credential(self, settings, mock_client):
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls)) as client:
            manager = CredentialManager(settings, client=client)
            urls: list[str] = []
            flow = _awaiting_flow(manager, urls)
            assert urls == [flow.authorize_url]
            cred = await flow.handle_callback({"code": "abc", "state": flow.expected_state})

        assert flow.state is AuthState.AUTHENTICATED
        assert manager.load() == cred
        assert calls[0]["code"] == "abc"
        assert calls[0]["code_verifier"] == flow.pkce.verifier

    @pytest.mark.asyncio
    async def test_state_mismatch(self, settings, mock_client):
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls)) as client:
            manager = CredentialManager(settings, client=client)
            flow = _awaiting_flow(manager)
            with pytest.raises(StateMismatchError):
                await flow.handle_callback({"code": "abc", "state": "forged"})
        assert flow.state is AuthState.FAILED
        assert calls == []
        assert manager.load() is None

    @pytest.mark.asyncio
    async def test_missing_code(self, settings):
        flow = _awaiting_flow(CredentialManager(settings))
        with pytest.raises(MissingCodeError):
            await flow.handle_callback({"state": flow.expected_state})
        assert flow.state is AuthState.FAILED

    @pytest.mark.asyncio
    async def test_provider_error_checked_first(self, settings):
        flow = _awaiting_flow(CredentialManager(settings))
        with pytest.raises(AuthorizationDeniedError, match="user said no"):
            await flow.handle_callback({"error": "access_denied", "error_description": "user said no"})
        assert flow.state is AuthState.FAILED

    @pytest.mark.asyncio
    async def test_exchange_failure_fails_flow(self, settings, mock_client):
        async with mock_client(_token_handler([], status=500)) as client:
            manager = CredentialManager(settings, client=client)
            flow = _awaiting_flow(manager)
            with pytest.raises(TokenExchangeError):
                await flow.handle_callback({"code": "abc", "state": flow.expected_state})
        assert flow.state is AuthState.FAILED
        assert manager.load() is None

    @pytest.mark.asyncio
    async def test_callback_before_awaiting_is_rejected(self, settings):
        flow = AuthorizationFlow(CredentialManager(settings))
        with pytest.raises(OAuthError):
            await flow.handle_callback({"code": "abc", "state": "x"})

    @pytest.mark.asyncio
    async def test_missing_verifier_fails_flow(self, settings):
        flow = _awaiting_flow(CredentialManager(settings))
        flow.pkce = None
        with pytest.raises(OAuthError, match="PKCE"):
            await flow.handle_callback({"code": "abc", "state": flow.expected_state})
        assert flow.state is AuthState.FAILED

    @pytest.mark.asyncio
    async def test_repeated_callback_during_exchange_does_not_fail_login(self, settings):
        release = asyncio.Event()
        calls: list[dict[str, str]] = []

        async def slow_token_endpoint(request: httpx.Request) -> httpx.Response:
            calls.append(_form(request))
            await release.wait()
            return httpx.Response(200, json={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600})

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow_token_endpoint)) as token_client:
            manager = CredentialManager(settings, client=token_client)
            flow = AuthorizationFlow(manager, on_url=lambda _: None)
            task = asyncio.create_task(flow.run())
            await _wait_for_state(flow, AuthState.AWAITING_CALLBACK, task)

            url = f"http://127.0.0.1:{settings.oauth_port}/auth/callback"
            params = {"code": "abc", "state": flow.expected_state}
            async with httpx.AsyncClient(trust_env=False) as browser:
                first = asyncio.create_task(browser.get(url, params=params))
                await _wait_for_state(flow, AuthState.EXCHANGING, task)

                reload = await browser.get(url, params=params)
                assert reload.status_code == 409
                assert not task.done()

                release.set()
                assert (await first).status_code == 200

            cred = await asyncio.wait_for(task, timeout=10)

        assert cred.access_token == "access-2"
        assert manager.load() == cred
        assert flow.state is AuthState.AUTHENTICATED
        assert len(calls) == 1

    def test_browser_failure_is_not_fatal(self, settings):
        def broken(url: str) -> None:
            raise RuntimeError("no display")

        flow = AuthorizationFlow(CredentialManager(settings), open_browser=broken, on_url=lambda _: None)
        flow.begin()
        flow.await_callback()
        assert flow.state is AuthState.AWAITING_CALLBACK


async def _wait_for_state(flow: AuthorizationFlow, state: AuthState, task: asyncio.Task) -> None:
    for _ in range(500):
        if flow.state is state:
            return
        if task.done():
            task.result()
        await asyncio.sleep(0.01)
    raise AssertionError(f"flow never reached {state}")


class TestAuthorizationFlowRun:
    @pytest.mark.asyncio
    async def test_full_login_through_callback_listener(self, settings, mock_client):
        calls: list[dict[str, str]] = []
        async with mock_client(_token_handler(calls)) as token_client:
            manager = CredentialManager(settings, client=token_client)
            opened: list[str] = []
            flow = AuthorizationFlow(manager, open_browser=opened.append, on_url=lambda _: None)
            task = asyncio.create_task(flow.run())
            await _wait_for_state(flow, AuthState.AWAITING_CALLBACK, task)
            assert opened == [flow.authorize_url]

            async with httpx.AsyncClient(trust_env=False) as browser:
                resp = await browser.get(
                    f"http://127.0.0.1:{settings.oauth_port}/auth/callback",
                    params={"code": "abc", "state": flow.expected_state},
                )
            assert resp.status_code == 200
            assert "Authorization Successful" in resp.text

            cred = await asyncio.wait_for(task, timeout=10)

        assert cred.access_token == "access-2"
        assert manager.load() == cred
        assert flow.state is AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_bad_state_callback_renders_error_page(self, settings):
        flow = AuthorizationFlow(CredentialManager(settings), on_url=lambda _: None)
        task = asyncio.create_task(flow.run())
        await _wait_for_state(flow, AuthState.AWAITING_CALLBACK, task)

        async with httpx.AsyncClient(trust_env=False) as browser:
            resp = await browser.get(
                f"http://127.0.0.1:{settings.oauth_port}/auth/callback",
                params={"code": "abc", "state": "forged"},
            )
        assert resp.status_code == 400
        assert "Invalid state" in resp.text

        with pytest.raises(StateMismatchError):
            await asyncio.wait_for(task, timeout=10)

    @pytest.mark.asyncio
    async def test_timeout(self, settings):
        settings = replace(settings, oauth_timeout_seconds=1)
        flow = AuthorizationFlow(CredentialManager(settings), on_url=lambda _: None)
        with pytest.raises(AuthorizationTimeoutError):
            await flow.run()
        assert flow.state is AuthState.FAILED

    @pytest.mark.asyncio
    async def test_port_in_use(self, settings):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", settings.oauth_port))
        blocker.listen(1)
        try:
            flow = AuthorizationFlow(CredentialManager(settings), on_url=lambda _: None)
            with pytest.raises(OAuthError, match="cannot listen"):
                await flow.run()
            assert flow.state is AuthState.FAILED
        finally:
            blocker.close()
