from __future__ import annotations

import asyncio
import base64
import enum
import hashlib
import html
import json
import logging
import os
import secrets
import socket
import time
import webbrowser
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from .config import Settings
from .errors import (
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    MissingCodeError,
    OAuthError,
    StateMismatchError,
    TokenEndpointError,
    TokenExchangeError,
    TokenRefreshError,
)
from .http_client import get_async_client, request_json_with_retries

logger = logging.getLogger("uvicorn.error")

_PKCE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
_SCOPE = "openid profile email offline_access"
_TOKEN_TIMEOUT_S = 30


class AuthState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"


_FLOW_TRANSITIONS: dict[AuthState, frozenset[AuthState]] = {
    AuthState.UNAUTHENTICATED: frozenset({AuthState.AUTHORIZING}),
    AuthState.AUTHORIZING: frozenset({AuthState.AWAITING_CALLBACK, AuthState.FAILED}),
    AuthState.AWAITING_CALLBACK: frozenset({AuthState.EXCHANGING, AuthState.FAILED}),
    AuthState.EXCHANGING: frozenset({AuthState.AUTHENTICATED, AuthState.FAILED}),
    AuthState.AUTHENTICATED: frozenset(),
    AuthState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds


@dataclass(frozen=True)
class CredentialStatus:
    authenticated: bool
    expired: bool
    expires_at: int | None
    minutes_remaining: int | None


@dataclass(frozen=True)
class PkceCodes:
    verifier: str
    challenge: str


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_pkce(length: int = 128) -> PkceCodes:
    verifier = "".join(secrets.choice(_PKCE_ALPHABET) for _ in range(length))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PkceCodes(verifier=verifier, challenge=challenge)


def generate_state() -> str:
    return _b64url(secrets.token_bytes(32))


def build_authorize_url(settings: Settings, pkce: PkceCodes, state: str) -> str:
    params = {
        "response_type": "code",
        "client_id": settings.client_id,
        "redirect_uri": settings.oauth_redirect_uri,
        "scope": _SCOPE,
        "code_challenge": pkce.challenge,
        "code_challenge_method": "S256",
        "id_token_add_organizations": "true",
        "codex_cli_simplified_flow": "true",
        "state": state,
        "originator": "codex-proxy",
    }
    return f"{settings.issuer.rstrip('/')}/oauth/authorize?{urlencode(params)}"


def _secure_write_json(path: Path, obj: dict[str, Any]) -> None:
    """Atomic replace with 0600 permissions (the file holds tokens)."""
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with suppress(OSError):
        os.chmod(path.parent, 0o700)

    data = json.dumps(obj, ensure_ascii=False, indent=2) + "\n"
    with NamedTemporaryFile("w", encoding="utf-8", dir=str(path.parent), delete=False) as f:
        tmp = Path(f.name)
        with suppress(OSError):
            os.chmod(tmp, 0o600)
        f.write(data)
        f.flush()
        with suppress(OSError):
            os.fsync(f.fileno())
    os.replace(tmp, path)
    with suppress(OSError):
        os.chmod(path, 0o600)


class CredentialManager:
    """Owns the single persisted Codex credential."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.state = AuthState.UNAUTHENTICATED
        self._client = client
        self._clock = clock
        self._refresh_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return Path(self.settings.token_file).expanduser()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_async_client("codex-oauth")

    def load(self) -> Credential | None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(raw, dict):
            return None
        access_token = raw.get("access_token")
        refresh_token = raw.get("refresh_token")
        expires_at = raw.get("expires_at")
        if not isinstance(access_token, str) or not access_token:
            return None
        if not isinstance(refresh_token, str) or not refresh_token:
            return None
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None
        return Credential(access_token, refresh_token, int(expires_at))

    def save(self, credential: Credential) -> None:
        _secure_write_json(self.path, asdict(credential))
        self.state = AuthState.AUTHENTICATED

    def clear(self) -> None:
        with suppress(FileNotFoundError):
            self.path.unlink()
        self.state = AuthState.UNAUTHENTICATED

    def status(self) -> CredentialStatus:
        cred = self.load()
        if cred is None:
            return CredentialStatus(authenticated=False, expired=False, expires_at=None, minutes_remaining=None)
        remaining_ms = cred.expires_at - self._now_ms()
        return CredentialStatus(
            authenticated=True,
            expired=remaining_ms <= 0,
            expires_at=cred.expires_at,
            minutes_remaining=max(remaining_ms, 0) // 60_000,
        )

    def needs_refresh(self, credential: Credential) -> bool:
        return self._now_ms() >= credential.expires_at - self.settings.refresh_margin_seconds * 1000

    def _credential_from_token_response(
        self,
        data: Any,
        *,
        previous_refresh_token: str | None = None,
    ) -> Credential:
        if not isinstance(data, dict):
            raise OAuthError("token endpoint returned a non-object JSON body")
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise OAuthError("token endpoint response is missing access_token")
        refresh_token = data.get("refresh_token") or previous_refresh_token
        if not isinstance(refresh_token, str) or not refresh_token:
            raise OAuthError("token endpoint response is missing refresh_token")
        expires_in = data.get("expires_in")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool) or expires_in <= 0:
            expires_in = self.settings.default_token_lifetime_seconds
        return Credential(access_token, refresh_token, self._now_ms() + int(expires_in) * 1000)

    async def _post_token(
        self,
        form: dict[str, str],
        *,
        error_cls: type[TokenEndpointError],
        label: str,
    ) -> Any:
        url = f"{self.settings.issuer.rstrip('/')}/oauth/token"
        client = await self._http()
        try:
            resp = await request_json_with_retries(
                client=client,
                method="POST",
                url=url,
                timeout_s=_TOKEN_TIMEOUT_S,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"{label} failed: {e}") from e
        if resp.status_code != 200:
            raise error_cls(f"{label} failed", resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise OAuthError(f"{label} failed: invalid JSON response") from e

    async def exchange_code(self, code: str, pkce: PkceCodes) -> Credential:
        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.oauth_redirect_uri,
                "client_id": self.settings.client_id,
                "code_verifier": pkce.verifier,
            },
            error_cls=TokenExchangeError,
            label="Token exchange",
        )
        return self._credential_from_token_response(data)

    async def refresh(self, refresh_token: str) -> Credential:
        data = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.settings.client_id,
            },
            error_cls=TokenRefreshError,
            label="Token refresh",
        )
        return self._credential_from_token_response(data, previous_refresh_token=refresh_token)

    async def get_valid_access_token(self) -> str | None:
        """Return a usable access token, refreshing it when close to expiry.

        A failed refresh is reported as None, exactly like never having logged in.
        """
        cred = self.load()
        if cred is None:
            return None
        if not self.needs_refresh(cred):
            return cred.access_token

        # Single flight: late arrivals re-read whatever the first refresh stored.
        async with self._refresh_lock:
            current = self.load()
            if current is None:
                return None
            if not self.needs_refresh(current):
                return current.access_token

            logger.info("Codex access token expires soon, refreshing")
            self.state = AuthState.REFRESHING
            try:
                refreshed = await self.refresh(current.refresh_token)
            except OAuthError as e:
                self.state = AuthState.FAILED
                logger.error("Failed to refresh Codex token: %s", e)
                return None
            self.save(refreshed)
            logger.info("Codex access token refreshed (expires_at=%d)", refreshed.expires_at)
            return refreshed.access_token

    async def authorize(
        self,
        *,
        open_browser: Callable[[str], Any] | None = webbrowser.open,
        on_url: Callable[[str], None] | None = None,
    ) -> Credential:
        flow = AuthorizationFlow(self, open_browser=open_browser, on_url=on_url)
        return await flow.run()


_HTML_STYLE = """
    body { font-family: system-ui, -apple-system, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; background: #1a1a2e; color: #eee; }
    .container { text-align: center; padding: 2rem; }
    h1 { margin-bottom: 1rem; }
    p { color: #aaa; }
    .error { color: #fca5a5; font-family: monospace; margin-top: 1rem; padding: 1rem; background: rgba(248,113,113,0.1); border-radius: 0.5rem; }
"""


def _html_page(title: str, heading: str, color: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        f"  <title>Codex Proxy - {title}</title>\n"
        f"  <style>{_HTML_STYLE}    h1 {{ color: {color}; }}\n  </style>\n"
        "</head>\n<body>\n  <div class=\"container\">\n"
        f"    <h1>{heading}</h1>\n{body}  </div>\n</body>\n</html>"
    )


HTML_SUCCESS = _html_page(
    "Authorization Successful",
    "Authorization Successful!",
    "#4ade80",
    "    <p>You can close this window and return to the terminal.</p>\n",
)


def html_error(message: str) -> str:
    return _html_page(
        "Authorization Failed",
        "Authorization Failed",
        "#f87171",
        "    <p>An error occurred during authorization.</p>\n"
        f"    <div class=\"error\">{html.escape(message)}</div>\n",
    )


class AuthorizationFlow:
    """One interactive PKCE login.

    UNAUTHENTICATED -> AUTHORIZING -> AWAITING_CALLBACK -> EXCHANGING -> AUTHENTICATED,
    with FAILED reachable from every non-terminal state (the timeout is the
    AWAITING_CALLBACK -> FAILED edge).
    """

    def __init__(
        self,
        manager: CredentialManager,
        *,
        open_browser: Callable[[str], Any] | None = None,
        on_url: Callable[[str], None] | None = None,
    ) -> None:
        self.manager = manager
        self.settings = manager.settings
        self.state = AuthState.UNAUTHENTICATED
        self.pkce: PkceCodes | None = None
        self.expected_state: str | None = None
        self.authorize_url: str | None = None
        self._open_browser = open_browser
        self._on_url = on_url
        self._result: asyncio.Future[Credential] | None = None

    def _transition(self, new_state: AuthState) -> None:
        if new_state not in _FLOW_TRANSITIONS[self.state]:
            raise OAuthError(f"invalid authorization transition {self.state.value} -> {new_state.value}")
        logger.debug("oauth flow: %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _fail(self) -> None:
        if self.state not in (AuthState.AUTHENTICATED, AuthState.FAILED):
            self._transition(AuthState.FAILED)

    def begin(self) -> str:
        self._transition(AuthState.AUTHORIZING)
        self.pkce = generate_pkce()
        self.expected_state = generate_state()
        self.authorize_url = build_authorize_url(self.settings, self.pkce, self.expected_state)
        return self.authorize_url

    def await_callback(self) -> None:
        self._transition(AuthState.AWAITING_CALLBACK)
        url = self.authorize_url or ""
        if self._on_url is not None:
            self._on_url(url)
        else:
            logger.info("Open this URL to authorize: %s", url)
        if self._open_browser is not None:
            try:
                self._open_browser(url)
            except Exception as e:
                # The operator can still open the printed URL by hand.
                logger.debug("could not open browser: %s", e)

    async def handle_callback(self, params: Mapping[str, str]) -> Credential:
        if self.state is not AuthState.AWAITING_CALLBACK:
            raise OAuthError("authorization flow is not awaiting a callback")

        error = params.get("error")
        if error:
            self._fail()
            raise AuthorizationDeniedError(params.get("error_description") or error)
        if params.get("state") != self.expected_state:
            self._fail()
            raise StateMismatchError("Invalid state - potential CSRF attack")
        code = params.get("code")
        if not code:
            self._fail()
            raise MissingCodeError("Missing authorization code")

        if self.pkce is None:
            self._fail()
            raise OAuthError("authorization flow has no PKCE verifier")

        self._transition(AuthState.EXCHANGING)
        try:
            credential = await self.manager.exchange_code(code, self.pkce)
            self.manager.save(credential)
        except (OAuthError, OSError):
            self._fail()
            raise
        self._transition(AuthState.AUTHENTICATED)
        return credential

    def _settle(self, *, result: Credential | None = None, exc: BaseException | None = None) -> None:
        fut = self._result
        if fut is None or fut.done():
            return
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(result)  # type: ignore[arg-type]

    def _callback_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get("/auth/callback")
        async def callback(request: Request):
            if self.state is not AuthState.AWAITING_CALLBACK:
                # Reloads and prefetches of the redirect; the first callback
                # settles the login.
                logger.debug("ignoring callback in state %s", self.state.value)
                return HTMLResponse(html_error("Authorization is no longer pending"), status_code=409)
            try:
                credential = await self.handle_callback(dict(request.query_params))
            except TokenEndpointError as e:
                self._settle(exc=e)
                return HTMLResponse(html_error(str(e)), status_code=500)
            except (OAuthError, OSError) as e:
                self._settle(exc=e)
                return HTMLResponse(html_error(str(e)), status_code=400)
            self._settle(result=credential)
            return HTMLResponse(HTML_SUCCESS)

        return app

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", self.settings.oauth_port))
        except OSError as e:
            sock.close()
            raise OAuthError(f"cannot listen for the OAuth callback on port {self.settings.oauth_port}: {e}") from e
        return sock

    async def run(self) -> Credential:
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        self.begin()

        try:
            sock = self._bind()
        except OAuthError:
            self._fail()
            raise
        config = uvicorn.Config(self._callback_app(), log_level="warning", lifespan="off")
        server = uvicorn.Server(config)
        serve_task = asyncio.create_task(server.serve(sockets=[sock]))
        try:
            while not server.started:
                if serve_task.done():
                    self._fail()
                    raise OAuthError("OAuth callback listener failed to start")
                await asyncio.sleep(0.01)

            self.await_callback()
            done, _ = await asyncio.wait(
                {self._result, serve_task},
                timeout=self.settings.oauth_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if self._result in done:
                return self._result.result()
            self._fail()
            if serve_task in done:
                raise OAuthError("OAuth callback listener stopped before authorization completed")
            raise AuthorizationTimeoutError("OAuth timeout - authorization took too long")
        finally:
            server.should_exit = True
            try:
                await serve_task
            except Exception:
                logger.debug("OAuth callback listener exited with an error", exc_info=True)
            sock.close()
            if not self._result.done():
                self._result.cancel()
