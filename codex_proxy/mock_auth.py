"""Canned responses for the Anthropic web/auth endpoints.

Clients check their login state against these before sending chat requests;
the proxy answers as if a Pro subscription were active.
"""

from __future__ import annotations

import time
from typing import Any
from urllib.parse import urlencode

from fastapi.responses import JSONResponse, RedirectResponse, Response

MOCK_USER_ID = "mock_user_123"
MOCK_AUTH_CODE = "mock_auth_code_12345"
DEFAULT_REDIRECT_URI = "https://platform.claude.com/oauth/code/callback"
_FAR_FUTURE = "2099-12-31T23:59:59Z"

SESSION_PATHS = frozenset({"/v1/oauth/hello", "/api/hello", "/v1/auth/session"})
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def session_body() -> dict[str, Any]:
    stamp = _now_ms()
    return {
        "authenticated": True,
        "user": {
            "id": MOCK_USER_ID,
            "email": "user@example.com",
            "name": "Claude User",
            "subscription": {"type": "pro", "status": "active", "expires_at": _FAR_FUTURE, "plan": "pro"},
            "flags": {"claude_code": True, "claude_code_enabled": True},
        },
        "session": {"id": f"mock_session_{stamp}", "valid": True, "expires_at": _FAR_FUTURE},
        "token": {"access_token": f"mock_token_{stamp}", "expires_in": 3600, "token_type": "Bearer"},
    }


def token_body() -> dict[str, Any]:
    stamp = _now_ms()
    return {
        "access_token": f"mock_anthropic_token_{stamp}",
        "refresh_token": f"mock_refresh_token_{stamp}",
        "expires_in": 3600,
        "token_type": "Bearer",
        "scope": "user:profile user:inference user:sessions:claude_code",
    }


def user_body() -> dict[str, Any]:
    return {
        "id": MOCK_USER_ID,
        "email": "user@example.com",
        "name": "Claude User",
        "subscription": {"type": "pro", "status": "active", "expires_at": _FAR_FUTURE},
        "features": {"claude_code": True, "max_context": 200000, "api_access": True},
    }


def api_key_body() -> dict[str, Any]:
    return {
        "id": "key_mock_123",
        "name": "Claude Code Key",
        "type": "api_key",
        "created_at": "2024-01-01T00:00:00Z",
        "owner": {"id": MOCK_USER_ID, "type": "user"},
    }


def handle_auth_request(method: str, path: str, query: dict[str, str]) -> Response:
    if path in SESSION_PATHS:
        return JSONResponse(session_body())
    if method.upper() == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    if path.startswith("/oauth/authorize"):
        redirect_uri = query.get("redirect_uri") or DEFAULT_REDIRECT_URI
        state = query.get("state") or "mock_state"
        sep = "&" if "?" in redirect_uri else "?"
        location = f"{redirect_uri}{sep}{urlencode({'code': MOCK_AUTH_CODE, 'state': state})}"
        return RedirectResponse(location, status_code=302)
    if path.startswith(("/oauth/token", "/api/auth/token")):
        return JSONResponse(token_body())
    if path.startswith(("/api/user", "/v1/account")):
        return JSONResponse(user_body())
    if path.startswith("/v1/keys"):
        return JSONResponse(api_key_body())
    return JSONResponse({"status": "ok", "authenticated": True})
