from __future__ import annotations

import enum

from .config import Settings

CHAT_PATH_PREFIX = "/v1/messages"
AUTH_PATH_PREFIXES = (
    "/oauth",
    "/api/auth",
    "/api/user",
    "/api/hello",
    "/v1/oauth",
    "/v1/auth",
    "/v1/keys",
    "/v1/account",
)


class Classification(str, enum.Enum):
    CHAT_COMPLETION = "chat_completion"
    AUTH_MOCK = "auth_mock"
    HEALTH_CHECK = "health_check"
    PASSTHROUGH = "passthrough"


def _normalize_host(host: str | None) -> str:
    h = (host or "").strip().lower()
    if h.startswith("["):
        # IPv6 literal, keep as-is up to the closing bracket.
        return h.split("]", 1)[0] + "]"
    return h.split(":", 1)[0]


def classify(method: str, host: str | None, path: str, settings: Settings) -> Classification:
    """Pick the handling class for an inbound request. Never fails."""
    h = _normalize_host(host)
    p = path or "/"

    if settings.anthropic_api_host in h or p.startswith(CHAT_PATH_PREFIX):
        return Classification.CHAT_COMPLETION
    if any(auth_host in h for auth_host in settings.auth_hosts) or p.startswith(AUTH_PATH_PREFIXES):
        return Classification.AUTH_MOCK
    if p == settings.health_path:
        return Classification.HEALTH_CHECK
    return Classification.PASSTHROUGH
