from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from . import __version__

# Source model id -> Codex model id. `default` catches everything else.
MODEL_MAPPING: dict[str, str] = {
    "claude-sonnet-4-5-20250929": "gpt-5.2-codex",
    "claude-opus-4-5-20250929": "gpt-5.2-codex",
    "claude-haiku-4-5-20250929": "gpt-5.1-codex-mini",
    "claude-3-5-sonnet-20241022": "gpt-5.2-codex",
    "claude-3-opus-20240229": "gpt-5.2-codex",
    "claude-3-haiku-20240307": "gpt-5.1-codex-mini",
    "default": "gpt-5.2-codex",
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw


def _env_csv(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    items: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            items.append(part)
    return tuple(items)


def _env_mapping(name: str) -> dict[str, str]:
    # `src=dst,src2=dst2`
    out: dict[str, str] = {}
    for item in _env_csv(name):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            out[key.strip()] = value.strip()
    return out


def _default_token_file() -> str:
    return str(Path.home() / ".codex-proxy" / "tokens.json")


@dataclass(frozen=True)
class Settings:
    host: str = _env_str("CODEX_PROXY_HOST", "127.0.0.1")
    port: int = _env_int("CODEX_PROXY_PORT", 8080)

    # OpenAI auth (Codex CLI public client).
    issuer: str = _env_str("CODEX_PROXY_ISSUER", "https://auth.openai.com")
    client_id: str = _env_str("CODEX_PROXY_CLIENT_ID", "app_EMoamEEZ73f0CkXaXp7hrann")
    oauth_port: int = _env_int("CODEX_PROXY_OAUTH_PORT", 1455)
    oauth_timeout_seconds: int = _env_int("CODEX_PROXY_OAUTH_TIMEOUT_SECONDS", 300)
    token_file: str = _env_str("CODEX_PROXY_TOKEN_FILE", _default_token_file())
    refresh_margin_seconds: int = _env_int("CODEX_PROXY_REFRESH_MARGIN_SECONDS", 300)
    default_token_lifetime_seconds: int = _env_int("CODEX_PROXY_TOKEN_LIFETIME_SECONDS", 3600)

    # Upstream Codex backend.
    codex_api_endpoint: str = _env_str(
        "CODEX_PROXY_CODEX_ENDPOINT", "https://chatgpt.com/backend-api/codex/responses"
    )
    timeout_seconds: int = _env_int("CODEX_PROXY_TIMEOUT_SECONDS", 600)
    user_agent: str = _env_str("CODEX_PROXY_USER_AGENT", f"codex-proxy/{__version__}")
    include_instructions: bool = _env_bool("CODEX_PROXY_INCLUDE_INSTRUCTIONS", True)
    # Overlay on top of MODEL_MAPPING, e.g. `claude-foo=gpt-5.1-codex`.
    model_map: dict[str, str] = field(default_factory=lambda: _env_mapping("CODEX_PROXY_MODEL_MAP"))

    # Inbound (Anthropic-style) side.
    api_key_prefix: str = _env_str("CODEX_PROXY_API_KEY_PREFIX", "sk-ant-")
    anthropic_api_host: str = _env_str("CODEX_PROXY_ANTHROPIC_HOST", "api.anthropic.com")
    auth_hosts: tuple[str, ...] = _env_csv("CODEX_PROXY_AUTH_HOSTS", ("claude.ai", "platform.claude.com"))
    health_path: str = "/health"

    verbose: bool = _env_bool("CODEX_PROXY_VERBOSE", False)
    log_max_chars: int = _env_int("CODEX_PROXY_LOG_MAX_CHARS", 500)

    @property
    def oauth_redirect_uri(self) -> str:
        return f"http://localhost:{self.oauth_port}/auth/callback"

    def effective_model_map(self) -> dict[str, str]:
        merged = dict(MODEL_MAPPING)
        merged.update(self.model_map)
        return merged


settings = Settings()
